"""
Authenticated encryption for backup files.

Each format version maps to one cipher, resolved once with cipher_for():

    - v2 (GcmCipher): AES-256-GCM. Encrypts new backups. Decryption fails
      closed with AuthenticationFailed when the tag does not verify, which
      covers both a wrong password and tampering.
    - v1 (LegacyCbcCipher): AES-256-CBC with PKCS7 padding, decrypt only.
      There is no integrity check; a wrong password usually shows up as bad
      padding (LegacyDecryptError) and otherwise only through validation of
      the recovered plaintext.
"""

from __future__ import annotations

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from arrvault.crypto.envelope import NONCE_LENGTHS, FormatVersion
from arrvault.crypto.kdf import KEY_LENGTH

_BLOCK_SIZE_BITS = algorithms.AES.block_size


class CipherError(Exception):
    """Base exception for cipher errors."""

    pass


class AuthenticationFailed(CipherError):
    """Raised when an authentication tag does not verify."""

    pass


class LegacyDecryptError(CipherError):
    """Raised when legacy CBC ciphertext cannot be unpadded."""

    pass


class InternalCipherFailure(CipherError):
    """Raised when the underlying primitive fails unexpectedly."""

    pass


class UnsupportedOperation(CipherError):
    """Raised when encrypting with a decrypt-only format."""

    pass


class GcmCipher:
    """AES-256-GCM, the current format."""

    version = FormatVersion.GCM

    def encrypt(self, key: bytes, nonce: bytes, plaintext: bytes) -> bytes:
        """
        Encrypt plaintext.

        Returns:
            Ciphertext with the 16-byte tag appended.

        Raises:
            InternalCipherFailure: If the primitive rejects its inputs.
        """
        _check_inputs(key, nonce, self.version)
        try:
            return AESGCM(key).encrypt(nonce, plaintext, None)
        except (ValueError, TypeError, OverflowError) as e:
            raise InternalCipherFailure("AES-GCM encryption failed") from e

    def decrypt(self, key: bytes, nonce: bytes, ciphertext: bytes) -> bytes:
        """
        Decrypt and verify ciphertext.

        Raises:
            AuthenticationFailed: If the tag does not verify.
            InternalCipherFailure: If the primitive rejects its inputs.
        """
        _check_inputs(key, nonce, self.version)
        try:
            return AESGCM(key).decrypt(nonce, ciphertext, None)
        except InvalidTag as e:
            raise AuthenticationFailed("Authentication tag mismatch") from e
        except (ValueError, TypeError, OverflowError) as e:
            raise InternalCipherFailure("AES-GCM decryption failed") from e


class LegacyCbcCipher:
    """AES-256-CBC, readable for old backups only."""

    version = FormatVersion.LEGACY_CBC

    def encrypt(self, key: bytes, nonce: bytes, plaintext: bytes) -> bytes:
        raise UnsupportedOperation("Version 1 backups can no longer be written")

    def decrypt(self, key: bytes, nonce: bytes, ciphertext: bytes) -> bytes:
        """
        Decrypt and unpad ciphertext.

        Raises:
            LegacyDecryptError: If the ciphertext is not whole blocks or the
                padding is invalid.
            InternalCipherFailure: If the primitive rejects its inputs.
        """
        _check_inputs(key, nonce, self.version)
        if not ciphertext or len(ciphertext) % (_BLOCK_SIZE_BITS // 8):
            raise LegacyDecryptError("Ciphertext is not a whole number of blocks")

        try:
            decryptor = Cipher(algorithms.AES(key), modes.CBC(nonce)).decryptor()
            padded = decryptor.update(ciphertext) + decryptor.finalize()
        except (ValueError, TypeError) as e:
            raise InternalCipherFailure("AES-CBC decryption failed") from e

        unpadder = padding.PKCS7(_BLOCK_SIZE_BITS).unpadder()
        try:
            return unpadder.update(padded) + unpadder.finalize()
        except ValueError as e:
            raise LegacyDecryptError("Invalid padding") from e


_CIPHERS: dict[FormatVersion, GcmCipher | LegacyCbcCipher] = {
    FormatVersion.GCM: GcmCipher(),
    FormatVersion.LEGACY_CBC: LegacyCbcCipher(),
}


def cipher_for(version: int) -> GcmCipher | LegacyCbcCipher:
    """
    Resolve the cipher for a format version.

    Raises:
        UnsupportedOperation: If no cipher handles the version.
    """
    try:
        return _CIPHERS[FormatVersion(version)]
    except ValueError as e:
        raise UnsupportedOperation(f"No cipher for format version {version}") from e


def encrypt(key: bytes, nonce: bytes, plaintext: bytes) -> bytes:
    """Encrypt with the current format's cipher."""
    return _CIPHERS[FormatVersion.GCM].encrypt(key, nonce, plaintext)


def decrypt(version: int, key: bytes, nonce: bytes, ciphertext: bytes) -> bytes:
    """Decrypt with the cipher of the given format version."""
    return cipher_for(version).decrypt(key, nonce, ciphertext)


def _check_inputs(key: bytes, nonce: bytes, version: FormatVersion) -> None:
    if len(key) != KEY_LENGTH:
        raise InternalCipherFailure(f"Key must be {KEY_LENGTH} bytes")
    if len(nonce) != NONCE_LENGTHS[version]:
        raise InternalCipherFailure(
            f"Nonce must be {NONCE_LENGTHS[version]} bytes for version {int(version)}"
        )
