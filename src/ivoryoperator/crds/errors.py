class PodExecError(RuntimeError):
    """Raised when a command executed inside a pod exits non-zero."""

    def __init__(self, message: str, returncode: int, stderr: str = "") -> None:
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr
