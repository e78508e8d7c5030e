"""
Versioned container format for backup files.

Layout (fixed order, no padding)::

    [VERSION(1)][SALT(16)][NONCE(n)][CIPHERTEXT...]

The nonce width depends on the version: 12 bytes for the GCM format (v2)
and 16 bytes for the legacy CBC format (v1), whose IV is one AES block.
For v2 the ciphertext carries the 16-byte GCM tag at its end.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import IntEnum

from arrvault.crypto.kdf import SALT_LENGTH

GCM_TAG_LENGTH = 16

_VERSION_FORMAT = ">B"
_VERSION_LENGTH = struct.calcsize(_VERSION_FORMAT)


class FormatVersion(IntEnum):
    """Known backup format versions."""

    LEGACY_CBC = 1
    GCM = 2


CURRENT_VERSION = FormatVersion.GCM

NONCE_LENGTHS: dict[FormatVersion, int] = {
    FormatVersion.LEGACY_CBC: 16,
    FormatVersion.GCM: 12,
}


class EnvelopeError(Exception):
    """Base exception for envelope errors."""

    pass


class MalformedEnvelopeError(EnvelopeError):
    """Raised when bytes are not a recognizable backup envelope."""

    pass


def header_length(version: FormatVersion) -> int:
    """Length of the fixed fields for a version."""
    return _VERSION_LENGTH + SALT_LENGTH + NONCE_LENGTHS[version]


@dataclass(frozen=True)
class BackupEnvelope:
    """A parsed backup file."""

    version: FormatVersion
    salt: bytes
    nonce: bytes
    ciphertext: bytes

    def to_bytes(self) -> bytes:
        """Serialize to the on-disk layout."""
        return serialize(self.version, self.salt, self.nonce, self.ciphertext)

    @classmethod
    def from_bytes(cls, data: bytes) -> BackupEnvelope:
        """Parse the on-disk layout."""
        return parse(data)


def serialize(version: int, salt: bytes, nonce: bytes, ciphertext: bytes) -> bytes:
    """
    Serialize envelope fields to bytes.

    Raises:
        ValueError: If the version is unknown or a fixed field has the
            wrong width for it.
    """
    try:
        version = FormatVersion(version)
    except ValueError as e:
        raise ValueError(f"Unknown format version: {version}") from e

    if len(salt) != SALT_LENGTH:
        raise ValueError(f"salt must be {SALT_LENGTH} bytes")
    if len(nonce) != NONCE_LENGTHS[version]:
        raise ValueError(
            f"nonce must be {NONCE_LENGTHS[version]} bytes for version {int(version)}"
        )

    return struct.pack(_VERSION_FORMAT, version) + bytes(salt) + bytes(nonce) + bytes(ciphertext)


def parse(data: bytes) -> BackupEnvelope:
    """
    Parse envelope bytes.

    Raises:
        MalformedEnvelopeError: If the data is truncated or carries an
            unknown version tag.
    """
    data = bytes(data)

    if len(data) < _VERSION_LENGTH:
        raise MalformedEnvelopeError("Backup data is empty")

    (raw_version,) = struct.unpack_from(_VERSION_FORMAT, data)
    try:
        version = FormatVersion(raw_version)
    except ValueError as e:
        raise MalformedEnvelopeError(f"Unsupported backup version: {raw_version}") from e

    fixed = header_length(version)
    if len(data) < fixed:
        raise MalformedEnvelopeError("Backup data is truncated")

    offset = _VERSION_LENGTH
    salt = data[offset : offset + SALT_LENGTH]
    offset += SALT_LENGTH
    nonce = data[offset : offset + NONCE_LENGTHS[version]]
    offset += NONCE_LENGTHS[version]
    ciphertext = data[offset:]

    if version is FormatVersion.GCM and len(ciphertext) < GCM_TAG_LENGTH:
        raise MalformedEnvelopeError("Backup data is truncated")

    return BackupEnvelope(version=version, salt=salt, nonce=nonce, ciphertext=ciphertext)
