"""
Encrypted backup and restore of instance records.

This package turns instance records into a password-protected backup and
back. BackupManager does the work synchronously; BackupWorker runs it in a
worker pool so interactive callers are never blocked by key derivation.

Usage:
    from arrvault.backup import BackupManager

    # Export
    manager = BackupManager()
    result = manager.export_backup(records, active_ids, password)

    # Import (returns a diff, applies nothing)
    result = manager.import_backup(data, password, existing_records)

    # Check a file and password without importing
    result = manager.validate_backup(data, password)
"""

from arrvault.backup.manager import (
    FAILURE_MESSAGES,
    MIN_PASSWORD_LENGTH,
    BackupError,
    BackupManager,
    CipherFailureError,
    CorruptBackupError,
    ExportResult,
    FailureReason,
    ImportResult,
    InvalidInputError,
    LegacyFormatDisabledError,
    OperationState,
    ValidationResult,
    WeakPasswordError,
    WrongPasswordOrCorruptError,
    diff_records,
)
from arrvault.backup.offload import BackupWorker

__all__ = [
    "BackupManager",
    "BackupWorker",
    "ExportResult",
    "ImportResult",
    "ValidationResult",
    "OperationState",
    "FailureReason",
    "FAILURE_MESSAGES",
    "MIN_PASSWORD_LENGTH",
    "diff_records",
    "BackupError",
    "WeakPasswordError",
    "CorruptBackupError",
    "WrongPasswordOrCorruptError",
    "LegacyFormatDisabledError",
    "CipherFailureError",
    "InvalidInputError",
]
