"""
Cryptographic building blocks for arrvault backups.

This package provides the pieces the backup manager composes:
key derivation (PBKDF2-HMAC-SHA256), the versioned envelope codec and the
per-version ciphers (AES-256-GCM, legacy AES-256-CBC decrypt only).
"""

from arrvault.crypto.cipher import (
    AuthenticationFailed,
    CipherError,
    GcmCipher,
    InternalCipherFailure,
    LegacyCbcCipher,
    LegacyDecryptError,
    UnsupportedOperation,
    cipher_for,
    decrypt,
    encrypt,
)
from arrvault.crypto.envelope import (
    CURRENT_VERSION,
    NONCE_LENGTHS,
    BackupEnvelope,
    EnvelopeError,
    FormatVersion,
    MalformedEnvelopeError,
    parse,
    serialize,
)
from arrvault.crypto.kdf import (
    KEY_LENGTH,
    PBKDF2_ITERATIONS,
    SALT_LENGTH,
    derive_key,
    generate_salt,
    iterations_for,
)

__all__ = [
    # Key derivation
    "derive_key",
    "generate_salt",
    "iterations_for",
    "PBKDF2_ITERATIONS",
    "KEY_LENGTH",
    "SALT_LENGTH",
    # Envelope
    "BackupEnvelope",
    "FormatVersion",
    "CURRENT_VERSION",
    "NONCE_LENGTHS",
    "serialize",
    "parse",
    "EnvelopeError",
    "MalformedEnvelopeError",
    # Ciphers
    "GcmCipher",
    "LegacyCbcCipher",
    "cipher_for",
    "encrypt",
    "decrypt",
    "CipherError",
    "AuthenticationFailed",
    "LegacyDecryptError",
    "InternalCipherFailure",
    "UnsupportedOperation",
]
