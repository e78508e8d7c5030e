"""
Encrypted storage for Sonarr/Radarr instance records.

The store holds every configured instance, including API keys and basic-auth
passwords, and the active instance id per service. It is the persistence
side of backup imports: the backup manager computes an ImportDiff and
apply_diff() writes it here in one step.

Security Design:
    - Records are never stored in plaintext
    - Fernet encryption, key derived with PBKDF2-SHA256 (600,000 iterations)
    - Random 256-bit salt generated per installation and stored separately
    - Minimum 12-character passphrase required
    - File permissions set to owner-only (0600), writes are atomic

File Structure:
    <data_dir>/salt          - Random salt for key derivation (32 bytes)
    <data_dir>/instances.enc - Encrypted JSON of all records and active ids
"""

from __future__ import annotations

import base64
import json
import logging
import os
import secrets
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from arrvault.crypto.kdf import PBKDF2_ITERATIONS
from arrvault.models import ActiveIds, ImportDiff, InstanceRecord, ServiceType

logger = logging.getLogger(__name__)

SALT_LENGTH = 32  # 256 bits
SESSION_TIMEOUT_SECONDS = 3600  # 1 hour default
MIN_PASSPHRASE_LENGTH = 12


class StoreError(Exception):
    """Base exception for instance store errors."""

    pass


class StoreNotInitializedError(StoreError):
    """Raised when the store has not been initialized."""

    pass


class StoreLockedError(StoreError):
    """Raised when the store is locked and the passphrase is required."""

    pass


class InvalidPassphraseError(StoreError):
    """Raised when the provided passphrase is incorrect."""

    pass


class RecordNotFoundError(StoreError):
    """Raised when a requested record does not exist."""

    pass


class DuplicateRecordError(StoreError):
    """Raised when adding a record whose id is already taken."""

    pass


@dataclass
class StoreSession:
    """
    An unlocked store session.

    Expires after timeout_seconds, after which the passphrase must be
    entered again.
    """

    fernet: Fernet
    created_at: float = field(default_factory=time.time)
    timeout_seconds: int = SESSION_TIMEOUT_SECONDS

    def is_expired(self) -> bool:
        """Check if this session has expired."""
        return time.time() - self.created_at > self.timeout_seconds

    def clear(self) -> None:
        """
        Drop the key reference.

        Python does not guarantee the key bytes are wiped; they remain until
        garbage collected.
        """
        self.fernet = None  # type: ignore


@dataclass
class ApplyResult:
    """Outcome of applying an ImportDiff."""

    created: int = 0
    overwritten: int = 0
    active_applied: dict[str, str] = field(default_factory=dict)
    active_skipped: dict[str, str] = field(default_factory=dict)


class InstanceStore:
    """
    Encrypted, session-based store of instance records.

    Usage:
        store = InstanceStore(data_dir)

        if not store.is_initialized():
            store.initialize("my-secure-passphrase")

        store.unlock("my-secure-passphrase")
        store.add_record(record)
        records = store.list_all_records()
        store.lock()

    Attributes:
        data_dir: Directory holding the store files.
        salt_path: Path to the salt file.
        instances_path: Path to the encrypted records file.
    """

    def __init__(self, data_dir: Path) -> None:
        self.data_dir = Path(data_dir)
        self.salt_path = self.data_dir / "salt"
        self.instances_path = self.data_dir / "instances.enc"
        self._session: StoreSession | None = None

    def is_initialized(self) -> bool:
        """Check whether salt and records files exist."""
        return self.salt_path.exists() and self.instances_path.exists()

    def initialize(self, passphrase: str) -> None:
        """
        Create an empty store protected by the passphrase.

        Raises:
            StoreError: If the store is already initialized.
            ValueError: If the passphrase is shorter than 12 characters.
        """
        if self.is_initialized():
            raise StoreError(f"Instance store already initialized at {self.data_dir}")

        if len(passphrase) < MIN_PASSPHRASE_LENGTH:
            raise ValueError(
                f"Passphrase must be at least {MIN_PASSPHRASE_LENGTH} characters."
            )

        self.data_dir.mkdir(parents=True, exist_ok=True)
        try:
            os.chmod(self.data_dir, 0o700)
        except OSError:
            # Windows or permission error - continue anyway
            pass

        salt = secrets.token_bytes(SALT_LENGTH)
        self._write_secure_file(self.salt_path, salt)

        fernet = self._derive_key(passphrase, salt)
        self._session = StoreSession(fernet=fernet)
        self._save(self._empty_state())
        logger.info("Initialized instance store at %s", self.data_dir)

    def unlock(self, passphrase: str, timeout_seconds: int | None = None) -> None:
        """
        Unlock the store.

        Raises:
            StoreNotInitializedError: If the store is not initialized.
            InvalidPassphraseError: If the passphrase is incorrect.
        """
        if not self.is_initialized():
            raise StoreNotInitializedError(
                "Instance store not initialized. Run 'arrvault init' first."
            )

        fernet = self._derive_key(passphrase, self.salt_path.read_bytes())
        try:
            fernet.decrypt(self.instances_path.read_bytes())
        except InvalidToken as e:
            raise InvalidPassphraseError("Invalid passphrase. Cannot decrypt store.") from e

        self._session = StoreSession(
            fernet=fernet,
            timeout_seconds=timeout_seconds or SESSION_TIMEOUT_SECONDS,
        )

    def lock(self) -> None:
        """Clear the session; the passphrase is needed again afterwards."""
        if self._session is not None:
            self._session.clear()
            self._session = None

    def is_unlocked(self) -> bool:
        """True if unlocked and the session has not expired."""
        if self._session is None:
            return False
        if self._session.is_expired():
            self.lock()
            return False
        return True

    def change_passphrase(self, old_passphrase: str, new_passphrase: str) -> None:
        """
        Re-encrypt the store under a new passphrase and fresh salt.

        Raises:
            InvalidPassphraseError: If the old passphrase is incorrect.
            ValueError: If the new passphrase is too short.
        """
        if len(new_passphrase) < MIN_PASSPHRASE_LENGTH:
            raise ValueError(
                f"New passphrase must be at least {MIN_PASSPHRASE_LENGTH} characters."
            )

        self.unlock(old_passphrase)
        state = self._load()
        self.lock()

        new_salt = secrets.token_bytes(SALT_LENGTH)
        self._write_secure_file(self.salt_path, new_salt)
        self._session = StoreSession(fernet=self._derive_key(new_passphrase, new_salt))
        self._save(state)

    def list_all_records(self) -> list[InstanceRecord]:
        """Return every record, sonarr first, in insertion order."""
        self._require_unlocked()
        return self._records(self._load())

    def get_active_ids(self) -> ActiveIds:
        """Return the active instance id per service."""
        self._require_unlocked()
        active = self._load()["active"]
        return ActiveIds(sonarr=active.get("sonarr"), radarr=active.get("radarr"))

    def get_record(self, record_id: str) -> InstanceRecord:
        """
        Return one record by id.

        Raises:
            RecordNotFoundError: If no record has the id.
        """
        for record in self.list_all_records():
            if record.id == record_id:
                return record
        raise RecordNotFoundError(f"No instance with id: {record_id}")

    def add_record(self, record: InstanceRecord) -> None:
        """
        Add a new record. The first record of a service becomes active.

        Raises:
            DuplicateRecordError: If the id is already in use.
        """
        self._require_unlocked()
        state = self._load()
        if self._find(state, record.id) is not None:
            raise DuplicateRecordError(f"Instance id already exists: {record.id}")

        self._append(state, record)
        self._save(state)
        logger.info("Added %s instance %s", record.service.value, record.id)

    def update_record(self, record: InstanceRecord) -> None:
        """
        Replace an existing record with the same id.

        Raises:
            RecordNotFoundError: If no record has the id.
        """
        self._require_unlocked()
        state = self._load()
        if self._find(state, record.id) is None:
            raise RecordNotFoundError(f"No instance with id: {record.id}")

        self._replace(state, record)
        self._save(state)

    def remove_record(self, record_id: str) -> InstanceRecord:
        """
        Remove a record.

        If it was the active one, the first remaining record of its service
        becomes active, or none if the service has no records left.

        Raises:
            RecordNotFoundError: If no record has the id.
        """
        self._require_unlocked()
        state = self._load()
        found = self._find(state, record_id)
        if found is None:
            raise RecordNotFoundError(f"No instance with id: {record_id}")

        service, index = found
        entry = self._pop(state, service, index)
        self._save(state)
        logger.info("Removed %s instance %s", service.value, record_id)
        return InstanceRecord.from_dict(entry, service)

    def set_active_id(self, service: ServiceType, record_id: str | None) -> None:
        """
        Mark a record as the active one for its service.

        Raises:
            RecordNotFoundError: If the id is not a record of that service.
        """
        self._require_unlocked()
        state = self._load()
        if record_id is not None:
            found = self._find(state, record_id)
            if found is None or found[0] is not service:
                raise RecordNotFoundError(
                    f"No {service.value} instance with id: {record_id}"
                )
        state["active"][service.value] = record_id
        self._save(state)

    def apply_diff(self, diff: ImportDiff) -> ApplyResult:
        """
        Apply an import diff in a single write.

        Overwrites replace whole records. Created records follow the same
        rule as add_record. A preserved active id is applied only if the
        record it names exists after the merge.
        """
        self._require_unlocked()
        state = self._load()
        result = ApplyResult()

        # The store may have changed since the diff was computed, so
        # placement is decided again by id here.
        for record in (*diff.to_create, *diff.to_overwrite):
            if self._find(state, record.id) is None:
                self._append(state, record)
                result.created += 1
            else:
                self._replace(state, record)
                result.overwritten += 1

        for service in ServiceType:
            active_id = diff.preserved_active_ids.get(service)
            if active_id is None:
                continue
            found = self._find(state, active_id)
            if found is not None and found[0] is service:
                state["active"][service.value] = active_id
                result.active_applied[service.value] = active_id
            else:
                result.active_skipped[service.value] = active_id

        self._save(state)
        logger.info(
            "Applied import: %d created, %d overwritten",
            result.created,
            result.overwritten,
        )
        return result

    def _require_unlocked(self) -> None:
        """Raise an error if the store is not unlocked."""
        if not self.is_unlocked():
            raise StoreLockedError(
                "Instance store is locked. Call unlock() with passphrase first."
            )

    def _derive_key(self, passphrase: str, salt: bytes) -> Fernet:
        """Derive the Fernet key from passphrase and salt."""
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,  # Fernet requires 32-byte keys
            salt=salt,
            iterations=PBKDF2_ITERATIONS,
        )
        key = base64.urlsafe_b64encode(kdf.derive(passphrase.encode()))
        return Fernet(key)

    @staticmethod
    def _empty_state() -> dict[str, Any]:
        return {
            "instances": {service.value: [] for service in ServiceType},
            "active": {service.value: None for service in ServiceType},
        }

    @staticmethod
    def _records(state: dict[str, Any]) -> list[InstanceRecord]:
        return [
            InstanceRecord.from_dict(entry, service)
            for service in ServiceType
            for entry in state["instances"][service.value]
        ]

    @staticmethod
    def _find(state: dict[str, Any], record_id: str) -> tuple[ServiceType, int] | None:
        for service in ServiceType:
            for index, entry in enumerate(state["instances"][service.value]):
                if entry["id"] == record_id:
                    return service, index
        return None

    def _replace(self, state: dict[str, Any], record: InstanceRecord) -> None:
        """Replace a record in place, moving it if its service changed."""
        found = self._find(state, record.id)
        assert found is not None
        service, index = found
        if service is record.service:
            state["instances"][service.value][index] = record.to_dict()
            return

        self._pop(state, service, index)
        self._append(state, record)

    @staticmethod
    def _append(state: dict[str, Any], record: InstanceRecord) -> None:
        """Append a record; the first record of a service becomes active."""
        entries = state["instances"][record.service.value]
        entries.append(record.to_dict())
        if len(entries) == 1:
            state["active"][record.service.value] = record.id

    @staticmethod
    def _pop(state: dict[str, Any], service: ServiceType, index: int) -> dict[str, Any]:
        """Remove an entry, handing the active id to the first remaining one."""
        entries = state["instances"][service.value]
        entry = entries.pop(index)
        if state["active"].get(service.value) == entry["id"]:
            state["active"][service.value] = entries[0]["id"] if entries else None
        return entry

    def _load(self) -> dict[str, Any]:
        """Load and decrypt the store."""
        assert self._session is not None

        decrypted = self._session.fernet.decrypt(self.instances_path.read_bytes())
        state: dict[str, Any] = json.loads(decrypted.decode("utf-8"))
        return state

    def _save(self, state: dict[str, Any]) -> None:
        """Encrypt and save the store."""
        assert self._session is not None

        encrypted = self._session.fernet.encrypt(json.dumps(state).encode("utf-8"))
        self._write_secure_file(self.instances_path, encrypted)

    def _write_secure_file(self, path: Path, data: bytes) -> None:
        """
        Write data to file with restrictive permissions.

        Uses atomic write (write to temp, then rename) to prevent
        partial writes from corrupting the file.
        """
        temp_path = path.with_suffix(".tmp")

        try:
            temp_path.write_bytes(data)

            try:
                os.chmod(temp_path, 0o600)
            except OSError:
                # Windows or permission error - continue anyway
                pass

            temp_path.replace(path)

        except Exception:
            if temp_path.exists():
                temp_path.unlink()
            raise
