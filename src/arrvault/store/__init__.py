"""
Encrypted persistence for instance records.

The InstanceStore keeps every configured Sonarr/Radarr connection encrypted
at rest and applies the diffs produced by backup imports.
"""

from arrvault.store.instances import (
    MIN_PASSPHRASE_LENGTH,
    ApplyResult,
    DuplicateRecordError,
    InstanceStore,
    InvalidPassphraseError,
    RecordNotFoundError,
    StoreError,
    StoreLockedError,
    StoreNotInitializedError,
    StoreSession,
)

__all__ = [
    "InstanceStore",
    "StoreSession",
    "ApplyResult",
    "MIN_PASSPHRASE_LENGTH",
    "StoreError",
    "StoreNotInitializedError",
    "StoreLockedError",
    "InvalidPassphraseError",
    "RecordNotFoundError",
    "DuplicateRecordError",
]
