"""
Backup export and import for arrvault.

Turns a set of instance records into a single password-protected file and
back. Exports always use the current format (AES-256-GCM); imports also read
the legacy AES-256-CBC format when that compatibility mode is enabled.

Nothing here touches the filesystem or the instance store. An import only
computes an ImportDiff; applying it is left to the caller.

Every operation walks a small state machine:

    IDLE -> VALIDATING -> KEY_DERIVING -> CIPHERING -> DONE            (export)
    IDLE -> VALIDATING -> KEY_DERIVING -> CIPHERING -> DIFFING -> DONE (import)

and drops to FAILED on the first error. Failures are returned as result
values carrying a FailureReason and a generic message; nothing is retried.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum

from arrvault.crypto.cipher import (
    AuthenticationFailed,
    InternalCipherFailure,
    LegacyDecryptError,
    UnsupportedOperation,
    cipher_for,
)
from arrvault.crypto.envelope import (
    CURRENT_VERSION,
    NONCE_LENGTHS,
    BackupEnvelope,
    FormatVersion,
    MalformedEnvelopeError,
    parse,
    serialize,
)
from arrvault.crypto.kdf import derive_key, generate_salt, iterations_for
from arrvault.models import (
    ActiveIds,
    BackupPayload,
    ImportDiff,
    InstanceRecord,
    ServiceType,
)

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 12


class FailureReason(str, Enum):
    """Why a backup operation failed."""

    WEAK_PASSWORD = "weak_password"
    CORRUPT_BACKUP = "corrupt_backup"
    WRONG_PASSWORD_OR_CORRUPT = "wrong_password_or_corrupt"
    LEGACY_FORMAT_DISABLED = "legacy_format_disabled"
    INTERNAL_CIPHER_FAILURE = "internal_cipher_failure"
    INVALID_INPUT = "invalid_input"


# User-facing messages. These never say which byte or field failed.
FAILURE_MESSAGES: dict[FailureReason, str] = {
    FailureReason.WEAK_PASSWORD: (
        f"Password must be at least {MIN_PASSWORD_LENGTH} characters."
    ),
    FailureReason.CORRUPT_BACKUP: "The file is not a valid backup or is corrupted.",
    FailureReason.WRONG_PASSWORD_OR_CORRUPT: "Wrong password or corrupted file.",
    FailureReason.LEGACY_FORMAT_DISABLED: (
        "This backup uses the old unauthenticated format, which is disabled. "
        "Enable legacy imports or re-export it with a current version."
    ),
    FailureReason.INTERNAL_CIPHER_FAILURE: "Encryption failed unexpectedly.",
    FailureReason.INVALID_INPUT: (
        "The password or an instance record contains invalid characters or fields."
    ),
}


class BackupError(Exception):
    """Base exception for backup operations."""

    reason: FailureReason = FailureReason.CORRUPT_BACKUP

    @property
    def user_message(self) -> str:
        """Generic message safe to show to the user."""
        return FAILURE_MESSAGES[self.reason]


class WeakPasswordError(BackupError):
    """Raised when an export password is too short."""

    reason = FailureReason.WEAK_PASSWORD


class CorruptBackupError(BackupError):
    """Raised when a file is not an envelope or its contents fail validation."""

    reason = FailureReason.CORRUPT_BACKUP


class WrongPasswordOrCorruptError(BackupError):
    """Raised when authenticated decryption fails."""

    reason = FailureReason.WRONG_PASSWORD_OR_CORRUPT


class LegacyFormatDisabledError(BackupError):
    """Raised when a version 1 file is imported with legacy mode off."""

    reason = FailureReason.LEGACY_FORMAT_DISABLED


class CipherFailureError(BackupError):
    """Raised when the cryptographic primitive fails unexpectedly."""

    reason = FailureReason.INTERNAL_CIPHER_FAILURE


class InvalidInputError(BackupError):
    """Raised when a password or record cannot be written to a backup."""

    reason = FailureReason.INVALID_INPUT


class OperationState(str, Enum):
    """Phases of a single export or import."""

    IDLE = "idle"
    VALIDATING = "validating"
    KEY_DERIVING = "key_deriving"
    CIPHERING = "ciphering"
    DIFFING = "diffing"
    DONE = "done"
    FAILED = "failed"


_TRANSITIONS: dict[OperationState, frozenset[OperationState]] = {
    OperationState.IDLE: frozenset({OperationState.VALIDATING}),
    OperationState.VALIDATING: frozenset(
        {OperationState.KEY_DERIVING, OperationState.FAILED}
    ),
    OperationState.KEY_DERIVING: frozenset(
        {OperationState.CIPHERING, OperationState.FAILED}
    ),
    OperationState.CIPHERING: frozenset(
        {OperationState.DIFFING, OperationState.DONE, OperationState.FAILED}
    ),
    OperationState.DIFFING: frozenset({OperationState.DONE, OperationState.FAILED}),
    OperationState.DONE: frozenset(),
    OperationState.FAILED: frozenset(),
}


class _Operation:
    """Tracks the state of one operation and notifies the observer."""

    def __init__(
        self,
        name: str,
        observer: Callable[[OperationState], None] | None = None,
    ) -> None:
        self.name = name
        self.state = OperationState.IDLE
        self.history: list[OperationState] = [OperationState.IDLE]
        self._observer = observer

    def advance(self, state: OperationState) -> None:
        if state not in _TRANSITIONS[self.state]:
            raise RuntimeError(
                f"Illegal {self.name} transition: {self.state.value} -> {state.value}"
            )
        logger.debug("%s: %s -> %s", self.name, self.state.value, state.value)
        self.state = state
        self.history.append(state)
        if self._observer is not None:
            self._observer(state)

    def fail(self, error: BackupError) -> None:
        logger.warning("Backup %s failed: %s", self.name, error.reason.value)
        logger.debug("Failure detail: %s", error)
        self.advance(OperationState.FAILED)


@dataclass
class ExportResult:
    """Result of an export."""

    success: bool
    data: bytes | None = field(default=None, repr=False)
    record_count: int = 0
    reason: FailureReason | None = None
    error: str | None = None
    states: tuple[OperationState, ...] = ()


@dataclass
class ImportResult:
    """Result of an import."""

    success: bool
    diff: ImportDiff | None = None
    version: int | None = None
    reason: FailureReason | None = None
    error: str | None = None
    states: tuple[OperationState, ...] = ()


@dataclass
class ValidationResult:
    """Result of validating a backup without importing it."""

    success: bool
    version: int | None = None
    sonarr_count: int = 0
    radarr_count: int = 0
    active_ids: ActiveIds | None = None
    reason: FailureReason | None = None
    error: str | None = None
    states: tuple[OperationState, ...] = ()


def diff_records(
    payload: BackupPayload,
    existing_records: Iterable[InstanceRecord],
) -> ImportDiff:
    """
    Compare backed-up records with existing ones, keyed by id.

    Records whose id already exists are full replacements; the rest are new.
    Active ids are passed through for the caller to apply.
    """
    existing_ids = {record.id for record in existing_records}

    to_create: list[InstanceRecord] = []
    to_overwrite: list[InstanceRecord] = []
    for record in payload.records:
        if record.id in existing_ids:
            to_overwrite.append(record)
        else:
            to_create.append(record)

    return ImportDiff(
        to_create=tuple(to_create),
        to_overwrite=tuple(to_overwrite),
        preserved_active_ids=payload.active_ids,
    )


def _encode_password(password: str) -> bytes:
    # getpass can return lone surrogates under a non-UTF-8 locale
    try:
        return password.encode("utf-8")
    except UnicodeEncodeError as e:
        raise InvalidInputError("Password is not valid UTF-8 text") from e


class BackupManager:
    """
    Exports and imports encrypted instance backups.

    Usage:
        manager = BackupManager()

        result = manager.export_backup(records, active_ids, password)
        if result.success:
            path.write_bytes(result.data)

        result = manager.import_backup(path.read_bytes(), password, existing)
        if result.success:
            store.apply_diff(result.diff)

    Attributes:
        kdf_iterations: PBKDF2 iteration override. None uses the count bound
            to each format version.
        allow_legacy_v1: Whether version 1 (CBC) files may be imported.
        kdf: Key derivation function, (password, salt, iterations) -> key.
        observer: Optional callback notified of every state transition.
    """

    def __init__(
        self,
        kdf_iterations: int | None = None,
        allow_legacy_v1: bool = False,
        kdf: Callable[[bytes | str, bytes, int], bytes] = derive_key,
        observer: Callable[[OperationState], None] | None = None,
    ) -> None:
        if kdf_iterations is not None and kdf_iterations < 1:
            raise ValueError("kdf_iterations must be positive")
        self.kdf_iterations = kdf_iterations
        self.allow_legacy_v1 = allow_legacy_v1
        self.kdf = kdf
        self.observer = observer

    def export_backup(
        self,
        records: Iterable[InstanceRecord],
        active_ids: ActiveIds | None,
        password: str,
    ) -> ExportResult:
        """
        Encrypt records into backup bytes.

        A fresh salt and nonce are generated on every call, so two exports
        of the same records never produce the same bytes.

        Args:
            records: Records to back up, in order.
            active_ids: Active instance ids to carry along.
            password: Backup password (minimum 12 characters).

        Returns:
            ExportResult with the envelope bytes on success.
        """
        op = _Operation("export", self.observer)
        try:
            op.advance(OperationState.VALIDATING)
            if len(password) < MIN_PASSWORD_LENGTH:
                raise WeakPasswordError(
                    f"Password shorter than {MIN_PASSWORD_LENGTH} characters"
                )
            secret = _encode_password(password)
            payload = BackupPayload(
                records=tuple(records),
                active_ids=active_ids or ActiveIds(),
            )
            # Anything that import would reject must fail here instead.
            try:
                payload.validate()
                plaintext = payload.to_json_bytes()
            except ValueError as e:
                raise InvalidInputError(str(e)) from e

            op.advance(OperationState.KEY_DERIVING)
            salt = generate_salt()
            key = self._derive(secret, salt, CURRENT_VERSION)

            op.advance(OperationState.CIPHERING)
            nonce = os.urandom(NONCE_LENGTHS[CURRENT_VERSION])
            ciphertext = self._encrypt(key, nonce, plaintext)
            data = serialize(CURRENT_VERSION, salt, nonce, ciphertext)

            op.advance(OperationState.DONE)
        except BackupError as e:
            op.fail(e)
            return ExportResult(
                success=False,
                reason=e.reason,
                error=e.user_message,
                states=tuple(op.history),
            )

        logger.info(
            "Exported %d instance records (format v%d, %d bytes)",
            len(payload.records),
            CURRENT_VERSION,
            len(data),
        )
        return ExportResult(
            success=True,
            data=data,
            record_count=len(payload.records),
            states=tuple(op.history),
        )

    def import_backup(
        self,
        data: bytes,
        password: str,
        existing_records: Iterable[InstanceRecord] = (),
    ) -> ImportResult:
        """
        Decrypt backup bytes and diff them against existing records.

        Args:
            data: Envelope bytes as produced by export_backup.
            password: Backup password.
            existing_records: Records currently in the caller's store.

        Returns:
            ImportResult with the ImportDiff on success. Nothing is applied.
        """
        op = _Operation("import", self.observer)
        try:
            envelope, payload = self._open(data, password, op)

            op.advance(OperationState.DIFFING)
            diff = diff_records(payload, existing_records)

            op.advance(OperationState.DONE)
        except BackupError as e:
            op.fail(e)
            return ImportResult(
                success=False,
                reason=e.reason,
                error=e.user_message,
                states=tuple(op.history),
            )

        logger.info(
            "Imported backup (format v%d): %d to create, %d to overwrite",
            envelope.version,
            len(diff.to_create),
            len(diff.to_overwrite),
        )
        return ImportResult(
            success=True,
            diff=diff,
            version=int(envelope.version),
            states=tuple(op.history),
        )

    def validate_backup(self, data: bytes, password: str) -> ValidationResult:
        """
        Check that a backup decrypts and is well formed, without diffing.

        Returns:
            ValidationResult with a summary of the backup contents.
        """
        op = _Operation("validate", self.observer)
        try:
            envelope, payload = self._open(data, password, op)
            op.advance(OperationState.DONE)
        except BackupError as e:
            op.fail(e)
            return ValidationResult(
                success=False,
                reason=e.reason,
                error=e.user_message,
                states=tuple(op.history),
            )

        return ValidationResult(
            success=True,
            version=int(envelope.version),
            sonarr_count=len(payload.records_for(ServiceType.SONARR)),
            radarr_count=len(payload.records_for(ServiceType.RADARR)),
            active_ids=payload.active_ids,
            states=tuple(op.history),
        )

    def _open(
        self,
        data: bytes,
        password: str,
        op: _Operation,
    ) -> tuple[BackupEnvelope, BackupPayload]:
        """Parse, decrypt and validate a backup, advancing op through ciphering."""
        op.advance(OperationState.VALIDATING)
        try:
            envelope = parse(data)
        except MalformedEnvelopeError as e:
            raise CorruptBackupError(str(e)) from e
        if envelope.version is FormatVersion.LEGACY_CBC and not self.allow_legacy_v1:
            raise LegacyFormatDisabledError("Version 1 backups are disabled")
        secret = _encode_password(password)

        op.advance(OperationState.KEY_DERIVING)
        key = self._derive(secret, envelope.salt, envelope.version)

        op.advance(OperationState.CIPHERING)
        plaintext = self._decrypt(envelope, key)

        # Version 1 has no integrity check, so this is its only safety net.
        try:
            payload = BackupPayload.from_json_bytes(plaintext)
        except ValueError as e:
            raise CorruptBackupError(str(e)) from e

        return envelope, payload

    def _derive(self, password: bytes, salt: bytes, version: FormatVersion) -> bytes:
        iterations = self.kdf_iterations or iterations_for(version)
        return self.kdf(password, salt, iterations)

    def _encrypt(self, key: bytes, nonce: bytes, plaintext: bytes) -> bytes:
        try:
            return cipher_for(CURRENT_VERSION).encrypt(key, nonce, plaintext)
        except (InternalCipherFailure, UnsupportedOperation) as e:
            raise CipherFailureError(str(e)) from e

    def _decrypt(self, envelope: BackupEnvelope, key: bytes) -> bytes:
        try:
            return cipher_for(envelope.version).decrypt(key, envelope.nonce, envelope.ciphertext)
        except AuthenticationFailed as e:
            raise WrongPasswordOrCorruptError(str(e)) from e
        except LegacyDecryptError as e:
            raise CorruptBackupError(str(e)) from e
        except (InternalCipherFailure, UnsupportedOperation) as e:
            raise CipherFailureError(str(e)) from e
