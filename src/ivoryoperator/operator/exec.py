"""
Command execution inside running pods.
"""
import json
import logging
from typing import List, Optional

from kubernetes import client
from kubernetes.stream import stream

from ..crds.errors import PodExecError
from ..crds.exec import ExecResult


class PodExecutor:
    """Runs commands in pod containers through the exec subresource."""

    def __init__(self, core_v1: Optional[client.CoreV1Api] = None) -> None:
        self.core_v1 = core_v1 or client.CoreV1Api()

    def exec(
        self,
        namespace: str,
        pod_name: str,
        container: str,
        command: List[str],
        stdin: Optional[str] = None,
        logger: Optional[logging.Logger] = None,
    ) -> ExecResult:
        """
        Executes a command inside a container, similar to subprocess.run.

        Args:
            namespace: Namespace of the pod.
            pod_name: Name of the pod.
            container: Container to run the command in.
            command: The command and its arguments.
            stdin: Text written to the command's standard input, then closed.

        Returns:
            An ExecResult object with stdout, stderr, and returncode.

        Raises:
            PodExecError: If the command exits non-zero.
        """
        effective_logger = logger or logging.getLogger(__name__)
        effective_logger.debug(f"Executing {command[0]!r} in {namespace}/{pod_name}/{container}")

        exec_command = list(command)
        if stdin is not None:
            # The exec subresource cannot close stdin, so the input reaches the
            # command through a bash here-string instead.
            exec_command = [
                "bash", "-ceu", "--", 'input="$1"; shift; exec "$@" <<< "${input}"',
                "-", stdin, *command,
            ]

        api_response = stream(
            self.core_v1.connect_get_namespaced_pod_exec,
            pod_name,
            namespace,
            container=container,
            command=exec_command,
            stderr=True,
            stdin=False,
            stdout=True,
            tty=False,
            _preload_content=False,
        )

        stdout = ""
        stderr = ""
        error = ""
        while api_response.is_open():
            api_response.update(timeout=1)
            if api_response.peek_stdout():
                stdout += api_response.read_stdout()
            if api_response.peek_stderr():
                stderr += api_response.read_stderr()
            if api_response.peek_channel(3):
                error += api_response.read_channel(3)

        api_response.close()

        returncode = 0
        if error:
            status = json.loads(error)
            if status.get("status") == "Failure":
                returncode = 1
                # The exit code is in the 'details' field.
                details = status.get("details", {})
                for cause in details.get("causes", []):
                    if cause.get("reason") == "ExitCode":
                        returncode = int(cause.get("message", 1))
                        break

        result = ExecResult(stdout=stdout, stderr=stderr, returncode=returncode)
        if result.returncode != 0:
            raise PodExecError(
                f"Command {command[0]!r} in {namespace}/{pod_name}/{container} "
                f"exited with {result.returncode}",
                returncode=result.returncode,
                stderr=stderr,
            )
        return result
