"""
Password-based key derivation for backup files.

Keys are derived with PBKDF2-HMAC-SHA256. The iteration count is bound to
the backup format version rather than stored in the file, so raising it
means introducing a new format version; older files keep decrypting with
the count they were written with.
"""

import os

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

# Security parameters - do not reduce these values
# OWASP 2023 recommends 600,000 iterations for PBKDF2-SHA256
PBKDF2_ITERATIONS = 600_000
KEY_LENGTH = 32  # 256 bits for AES-256
SALT_LENGTH = 16  # 128 bits

# Iteration count per envelope format version
_ITERATIONS_BY_VERSION: dict[int, int] = {
    1: 600_000,
    2: PBKDF2_ITERATIONS,
}


def iterations_for(version: int) -> int:
    """
    Return the PBKDF2 iteration count used by a format version.

    Raises:
        KeyError: If the version is unknown.
    """
    return _ITERATIONS_BY_VERSION[int(version)]


def generate_salt() -> bytes:
    """Generate a fresh random salt."""
    return os.urandom(SALT_LENGTH)


def derive_key(password: bytes | str, salt: bytes, iterations: int) -> bytes:
    """
    Derive a 256-bit key from a password and salt.

    Every call does the full derivation; keys are never cached.

    Args:
        password: User password. Strings are UTF-8 encoded as-is.
        salt: 16-byte random salt.
        iterations: PBKDF2 iteration count.

    Returns:
        32-byte key.

    Raises:
        ValueError: If the salt length or iteration count is invalid.
    """
    if len(salt) != SALT_LENGTH:
        raise ValueError(f"salt must be {SALT_LENGTH} bytes")
    if iterations < 1:
        raise ValueError("iterations must be positive")

    if isinstance(password, str):
        password = password.encode("utf-8")

    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(password)
