import base64
import hashlib
import hmac
import os
import secrets
import string
from typing import Tuple

DEFAULT_PASSWORD_LENGTH = 24
SCRAM_ITERATIONS = 4096

_ALPHABET = string.ascii_letters + string.digits


def generate_password(length: int = DEFAULT_PASSWORD_LENGTH) -> str:
    return "".join(secrets.choice(_ALPHABET) for _ in range(length))


def scram_verifier(password: str, salt: bytes = b"", iterations: int = SCRAM_ITERATIONS) -> str:
    """
    The SCRAM-SHA-256 verifier PostgreSQL stores for password, in the
    ``SCRAM-SHA-256$<iterations>:<salt>$<StoredKey>:<ServerKey>`` format.
    """
    salt = salt or os.urandom(16)
    salted = hashlib.pbkdf2_hmac("sha256", password.encode(), salt, iterations)
    client_key = hmac.new(salted, b"Client Key", hashlib.sha256).digest()
    stored_key = hashlib.sha256(client_key).digest()
    server_key = hmac.new(salted, b"Server Key", hashlib.sha256).digest()

    def b64(value: bytes) -> str:
        return base64.b64encode(value).decode()

    return f"SCRAM-SHA-256${iterations}:{b64(salt)}${b64(stored_key)}:{b64(server_key)}"


def generate_password_and_verifier() -> Tuple[str, str]:
    password = generate_password()
    return password, scram_verifier(password)
