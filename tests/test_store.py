"""Tests for the encrypted instance store."""

import shutil
import stat
import tempfile
import time
import unittest
from pathlib import Path

from arrvault.models import ActiveIds, ImportDiff, InstanceRecord, ServiceType
from arrvault.store import (
    DuplicateRecordError,
    InstanceStore,
    InvalidPassphraseError,
    RecordNotFoundError,
    StoreError,
    StoreLockedError,
    StoreNotInitializedError,
    StoreSession,
)
from arrvault.store.instances import SALT_LENGTH, SESSION_TIMEOUT_SECONDS


def sonarr(record_id: str, **overrides) -> InstanceRecord:
    values = {
        "id": record_id,
        "name": f"Sonarr {record_id}",
        "base_url": f"http://{record_id}:8989",
        "api_key": f"key-{record_id}",
        "service": ServiceType.SONARR,
    }
    values.update(overrides)
    return InstanceRecord(**values)


def radarr(record_id: str, **overrides) -> InstanceRecord:
    values = {
        "id": record_id,
        "name": f"Radarr {record_id}",
        "base_url": f"http://{record_id}:7878",
        "api_key": f"key-{record_id}",
        "service": ServiceType.RADARR,
    }
    values.update(overrides)
    return InstanceRecord(**values)


class TestStoreSession(unittest.TestCase):
    """Tests for StoreSession."""

    def test_default_timeout(self) -> None:
        """Test sessions use the default timeout."""
        session = StoreSession(fernet=None)  # type: ignore[arg-type]

        self.assertEqual(session.timeout_seconds, SESSION_TIMEOUT_SECONDS)
        self.assertFalse(session.is_expired())

    def test_expired(self) -> None:
        """Test sessions expire after the timeout."""
        session = StoreSession(fernet=None, timeout_seconds=10)  # type: ignore[arg-type]
        session.created_at = time.time() - 11

        self.assertTrue(session.is_expired())


class TestInstanceStoreLifecycle(unittest.TestCase):
    """Tests for initializing, unlocking and locking the store."""

    def setUp(self) -> None:
        """Create temporary directory for tests."""
        self.temp_dir = tempfile.mkdtemp()
        self.data_dir = Path(self.temp_dir)
        self.passphrase = "test-secure-passphrase-123"

    def tearDown(self) -> None:
        """Clean up temporary directory."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_paths(self) -> None:
        """Test the store file locations."""
        store = InstanceStore(self.data_dir)

        self.assertEqual(store.salt_path, self.data_dir / "salt")
        self.assertEqual(store.instances_path, self.data_dir / "instances.enc")
        self.assertFalse(store.is_initialized())

    def test_initialize(self) -> None:
        """Test initialize creates files and unlocks the store."""
        store = InstanceStore(self.data_dir)
        store.initialize(self.passphrase)

        self.assertTrue(store.is_initialized())
        self.assertTrue(store.is_unlocked())
        self.assertEqual(len(store.salt_path.read_bytes()), SALT_LENGTH)
        self.assertEqual(store.list_all_records(), [])
        self.assertEqual(store.get_active_ids(), ActiveIds())

    def test_file_permissions(self) -> None:
        """Test store files are owner-only."""
        store = InstanceStore(self.data_dir)
        store.initialize(self.passphrase)

        mode = stat.S_IMODE(store.instances_path.stat().st_mode)
        self.assertEqual(mode, 0o600)

    def test_initialize_twice(self) -> None:
        """Test initializing twice raises error."""
        store = InstanceStore(self.data_dir)
        store.initialize(self.passphrase)

        with self.assertRaises(StoreError) as ctx:
            store.initialize(self.passphrase)

        self.assertIn("already initialized", str(ctx.exception))

    def test_initialize_short_passphrase(self) -> None:
        """Test passphrase must be at least 12 characters."""
        store = InstanceStore(self.data_dir)

        with self.assertRaises(ValueError):
            store.initialize("short")

    def test_unlock_not_initialized(self) -> None:
        """Test unlock fails when not initialized."""
        with self.assertRaises(StoreNotInitializedError):
            InstanceStore(self.data_dir).unlock(self.passphrase)

    def test_unlock_wrong_passphrase(self) -> None:
        """Test unlocking with wrong passphrase raises error."""
        store = InstanceStore(self.data_dir)
        store.initialize(self.passphrase)
        store.lock()

        with self.assertRaises(InvalidPassphraseError):
            store.unlock("wrong-passphrase")

    def test_lock_and_unlock(self) -> None:
        """Test records survive lock and a fresh store object."""
        store = InstanceStore(self.data_dir)
        store.initialize(self.passphrase)
        store.add_record(sonarr("a"))
        store.lock()

        self.assertFalse(store.is_unlocked())
        with self.assertRaises(StoreLockedError):
            store.list_all_records()

        reopened = InstanceStore(self.data_dir)
        reopened.unlock(self.passphrase)
        self.assertEqual(reopened.list_all_records(), [sonarr("a")])

    def test_session_expiry_locks(self) -> None:
        """Test an expired session locks the store."""
        store = InstanceStore(self.data_dir)
        store.initialize(self.passphrase)

        store._session.timeout_seconds = 0
        store._session.created_at = time.time() - 1

        self.assertFalse(store.is_unlocked())
        self.assertIsNone(store._session)

    def test_records_not_stored_in_plaintext(self) -> None:
        """Test the api key never appears on disk."""
        store = InstanceStore(self.data_dir)
        store.initialize(self.passphrase)
        store.add_record(sonarr("a", api_key="very-secret-api-key"))

        self.assertNotIn(b"very-secret-api-key", store.instances_path.read_bytes())

    def test_change_passphrase(self) -> None:
        """Test records remain readable under the new passphrase."""
        store = InstanceStore(self.data_dir)
        store.initialize(self.passphrase)
        store.add_record(sonarr("a"))
        old_salt = store.salt_path.read_bytes()

        store.change_passphrase(self.passphrase, "another-passphrase-456")
        store.lock()

        self.assertNotEqual(store.salt_path.read_bytes(), old_salt)
        with self.assertRaises(InvalidPassphraseError):
            store.unlock(self.passphrase)
        store.unlock("another-passphrase-456")
        self.assertEqual(store.list_all_records(), [sonarr("a")])


class TestInstanceStoreRecords(unittest.TestCase):
    """Tests for record management."""

    @classmethod
    def setUpClass(cls) -> None:
        """Create one initialized store and keep a pristine copy."""
        cls.template_dir = tempfile.mkdtemp()
        InstanceStore(Path(cls.template_dir)).initialize("test-secure-passphrase-123")

    @classmethod
    def tearDownClass(cls) -> None:
        shutil.rmtree(cls.template_dir, ignore_errors=True)

    def setUp(self) -> None:
        """Copy the pristine store and unlock it."""
        self.temp_dir = tempfile.mkdtemp()
        self.data_dir = Path(self.temp_dir) / "store"
        shutil.copytree(self.template_dir, self.data_dir)
        self.store = InstanceStore(self.data_dir)
        self.store.unlock("test-secure-passphrase-123")

    def tearDown(self) -> None:
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_first_record_becomes_active(self) -> None:
        """Test the first record of each service is made active."""
        self.store.add_record(sonarr("s1"))
        self.store.add_record(sonarr("s2"))
        self.store.add_record(radarr("r1"))

        self.assertEqual(self.store.get_active_ids(), ActiveIds(sonarr="s1", radarr="r1"))

    def test_list_orders_sonarr_first(self) -> None:
        """Test listing groups by service in insertion order."""
        self.store.add_record(radarr("r1"))
        self.store.add_record(sonarr("s1"))
        self.store.add_record(sonarr("s2"))

        ids = [record.id for record in self.store.list_all_records()]
        self.assertEqual(ids, ["s1", "s2", "r1"])

    def test_duplicate_id(self) -> None:
        """Test ids are unique across services."""
        self.store.add_record(sonarr("x"))

        with self.assertRaises(DuplicateRecordError):
            self.store.add_record(radarr("x"))

    def test_get_record(self) -> None:
        """Test fetching a record by id."""
        record = radarr("r1", basic_auth_username="u", basic_auth_password="p")
        self.store.add_record(record)

        self.assertEqual(self.store.get_record("r1"), record)
        with self.assertRaises(RecordNotFoundError):
            self.store.get_record("missing")

    def test_update_record(self) -> None:
        """Test updating replaces the record."""
        self.store.add_record(sonarr("s1"))
        self.store.update_record(sonarr("s1", name="Renamed"))

        self.assertEqual(self.store.get_record("s1").name, "Renamed")

        with self.assertRaises(RecordNotFoundError):
            self.store.update_record(sonarr("missing"))

    def test_update_record_changing_service(self) -> None:
        """Test a record that changes service moves lists and active ids."""
        self.store.add_record(sonarr("x"))
        self.store.add_record(sonarr("y"))
        self.store.update_record(radarr("x"))

        self.assertEqual(self.store.get_record("x").service, ServiceType.RADARR)
        self.assertEqual(self.store.get_active_ids(), ActiveIds(sonarr="y", radarr="x"))

    def test_remove_active_record_promotes_first_remaining(self) -> None:
        """Test removing the active record activates the first one left."""
        self.store.add_record(sonarr("s1"))
        self.store.add_record(sonarr("s2"))
        self.store.add_record(sonarr("s3"))

        removed = self.store.remove_record("s1")

        self.assertEqual(removed, sonarr("s1"))
        self.assertEqual(self.store.get_active_ids().sonarr, "s2")
        self.assertEqual([r.id for r in self.store.list_all_records()], ["s2", "s3"])

    def test_remove_inactive_record_keeps_active(self) -> None:
        """Test removing another record leaves the active id alone."""
        self.store.add_record(sonarr("s1"))
        self.store.add_record(sonarr("s2"))

        self.store.remove_record("s2")

        self.assertEqual(self.store.get_active_ids().sonarr, "s1")

    def test_remove_last_record_clears_active(self) -> None:
        """Test removing the only record of a service clears its active id."""
        self.store.add_record(sonarr("s1"))
        self.store.add_record(radarr("r1"))

        self.store.remove_record("s1")

        self.assertEqual(self.store.get_active_ids(), ActiveIds(sonarr=None, radarr="r1"))

    def test_remove_missing(self) -> None:
        """Test removing an unknown id raises error."""
        with self.assertRaises(RecordNotFoundError):
            self.store.remove_record("missing")

    def test_set_active_id(self) -> None:
        """Test switching the active record."""
        self.store.add_record(sonarr("s1"))
        self.store.add_record(sonarr("s2"))

        self.store.set_active_id(ServiceType.SONARR, "s2")
        self.assertEqual(self.store.get_active_ids().sonarr, "s2")

        self.store.set_active_id(ServiceType.SONARR, None)
        self.assertIsNone(self.store.get_active_ids().sonarr)

    def test_set_active_id_wrong_service(self) -> None:
        """Test an id from another service cannot be made active."""
        self.store.add_record(sonarr("s1"))

        with self.assertRaises(RecordNotFoundError):
            self.store.set_active_id(ServiceType.RADARR, "s1")

    def test_apply_diff(self) -> None:
        """Test creates and overwrites are applied in one step."""
        self.store.add_record(sonarr("b", name="Old"))
        diff = ImportDiff(
            to_create=(sonarr("a"), radarr("c")),
            to_overwrite=(sonarr("b", name="New"),),
            preserved_active_ids=ActiveIds(sonarr="a", radarr="c"),
        )

        result = self.store.apply_diff(diff)

        self.assertEqual(result.created, 2)
        self.assertEqual(result.overwritten, 1)
        self.assertEqual(result.active_applied, {"sonarr": "a", "radarr": "c"})
        self.assertEqual(result.active_skipped, {})
        self.assertEqual(self.store.get_record("b").name, "New")
        self.assertEqual(self.store.get_active_ids(), ActiveIds(sonarr="a", radarr="c"))
        self.assertEqual(len(self.store.list_all_records()), 3)

    def test_apply_diff_skips_unknown_active_id(self) -> None:
        """Test an active id naming no record is not applied."""
        self.store.add_record(sonarr("s1"))
        diff = ImportDiff(
            to_create=(sonarr("s2"),),
            preserved_active_ids=ActiveIds(sonarr="ghost", radarr="s2"),
        )

        result = self.store.apply_diff(diff)

        self.assertEqual(result.active_skipped, {"sonarr": "ghost", "radarr": "s2"})
        self.assertEqual(self.store.get_active_ids(), ActiveIds(sonarr="s1"))

    def test_apply_diff_activates_first_created_record(self) -> None:
        """Test created records fill an empty service's active id."""
        self.store.add_record(sonarr("s1"))
        diff = ImportDiff(to_create=(sonarr("s2"), radarr("r1"), radarr("r2")))

        result = self.store.apply_diff(diff)

        self.assertEqual(result.active_applied, {})
        self.assertEqual(self.store.get_active_ids(), ActiveIds(sonarr="s1", radarr="r1"))

    def test_apply_diff_after_store_changed(self) -> None:
        """Test a stale diff is placed by id at apply time."""
        diff = ImportDiff(to_create=(sonarr("a"),))
        self.store.add_record(sonarr("a", name="Added meanwhile"))

        result = self.store.apply_diff(diff)

        self.assertEqual(result.created, 0)
        self.assertEqual(result.overwritten, 1)
        self.assertEqual(self.store.get_record("a").name, "Sonarr a")

    def test_apply_diff_locked(self) -> None:
        """Test applying requires an unlocked store."""
        self.store.lock()

        with self.assertRaises(StoreLockedError):
            self.store.apply_diff(ImportDiff())


if __name__ == "__main__":
    unittest.main()
