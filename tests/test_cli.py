"""
Tests for the CLI commands.

Uses Python's unittest module.
Tests argument parsing and the export/import/verify commands end to end
against a temporary instance store.
"""

from __future__ import annotations

import io
import json
import os
import shutil
import stat
import tempfile
import unittest
from contextlib import redirect_stderr, redirect_stdout
from pathlib import Path
from unittest.mock import patch

from arrvault.cli import (
    BACKUP_PASSWORD_ENV,
    PASSPHRASE_ENV,
    create_parser,
    main,
)
from arrvault.models import InstanceRecord, ServiceType
from arrvault.store import InstanceStore

STORE_PASSPHRASE = "store-passphrase-123"
BACKUP_PASSWORD = "backup-password-456"


class TestArgumentParser(unittest.TestCase):
    """Tests for CLI argument parsing."""

    def setUp(self) -> None:
        """Set up parser for tests."""
        self.parser = create_parser()

    def test_version_argument(self) -> None:
        """Test --version argument."""
        with redirect_stdout(io.StringIO()):
            with self.assertRaises(SystemExit) as cm:
                self.parser.parse_args(["--version"])

        self.assertEqual(cm.exception.code, 0)

    def test_no_command_defaults(self) -> None:
        """Test parsing with no command."""
        args = self.parser.parse_args([])

        self.assertIsNone(args.command)
        self.assertEqual(args.verbose, 0)
        self.assertFalse(args.quiet)

    def test_verbose_flag(self) -> None:
        """Test -v verbose flag."""
        self.assertEqual(self.parser.parse_args(["-vv"]).verbose, 2)

    def test_add_command(self) -> None:
        """Test add command arguments."""
        args = self.parser.parse_args(
            ["add", "radarr", "--name", "Movies", "--url", "http://r:7878", "--id", "r1"]
        )

        self.assertEqual(args.service, "radarr")
        self.assertEqual(args.name, "Movies")
        self.assertEqual(args.url, "http://r:7878")
        self.assertEqual(args.record_id, "r1")
        self.assertIsNone(args.basic_auth_user)

    def test_add_invalid_service(self) -> None:
        """Test add rejects unknown services."""
        with redirect_stderr(io.StringIO()):
            with self.assertRaises(SystemExit):
                self.parser.parse_args(["add", "lidarr", "--name", "x", "--url", "y"])

    def test_export_output(self) -> None:
        """Test export -o argument."""
        args = self.parser.parse_args(["export", "-o", "/tmp/backup.bin"])
        self.assertEqual(args.output, "/tmp/backup.bin")

    def test_import_flags(self) -> None:
        """Test import flags."""
        args = self.parser.parse_args(["import", "backup.bin", "--dry-run", "--force"])

        self.assertEqual(args.backup_file, "backup.bin")
        self.assertTrue(args.dry_run)
        self.assertTrue(args.force)

    def test_verify_command(self) -> None:
        """Test verify command is parsed."""
        args = self.parser.parse_args(["verify", "backup.bin"])
        self.assertTrue(hasattr(args, "func"))


class CliTestCase(unittest.TestCase):
    """Base class running commands against a temporary store."""

    @classmethod
    def setUpClass(cls) -> None:
        """Create a populated store once; tests work on copies."""
        cls.template_dir = tempfile.mkdtemp()
        store = InstanceStore(Path(cls.template_dir))
        store.initialize(STORE_PASSPHRASE)
        store.add_record(
            InstanceRecord(
                id="s1", name="TV", base_url="http://tv:8989",
                api_key="sonarr-api-key", service=ServiceType.SONARR,
            )
        )
        store.add_record(
            InstanceRecord(
                id="r1", name="Movies", base_url="http://movies:7878",
                api_key="radarr-api-key", service=ServiceType.RADARR,
                basic_auth_username="admin", basic_auth_password="hunter2",
            )
        )
        store.lock()

    @classmethod
    def tearDownClass(cls) -> None:
        shutil.rmtree(cls.template_dir, ignore_errors=True)

    def setUp(self) -> None:
        """Copy the store and write a config pointing at it."""
        self.temp_dir = Path(tempfile.mkdtemp())
        self.data_dir = self.temp_dir / "store"
        shutil.copytree(self.template_dir, self.data_dir)
        self.backup_dir = self.temp_dir / "backups"

        self.config_path = self.temp_dir / "config.yaml"
        self.config_path.write_text(
            f"arrvault:\n"
            f"  data_dir: {self.data_dir}\n"
            f"backup:\n"
            f"  executor: thread\n"
            f"  output_dir: {self.backup_dir}\n"
        )

        self.env = patch.dict(
            os.environ,
            {PASSPHRASE_ENV: STORE_PASSPHRASE, BACKUP_PASSWORD_ENV: BACKUP_PASSWORD},
        )
        self.env.start()

    def tearDown(self) -> None:
        self.env.stop()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def run_cli(self, *argv: str) -> tuple[int, str, str]:
        """Run main() and return (exit code, stdout, stderr)."""
        stdout = io.StringIO()
        stderr = io.StringIO()
        with patch("sys.argv", ["arrvault", "--config", str(self.config_path), *argv]):
            with redirect_stdout(stdout), redirect_stderr(stderr):
                with self.assertRaises(SystemExit) as cm:
                    main()
        return cm.exception.code, stdout.getvalue(), stderr.getvalue()

    def make_empty_store(self) -> InstanceStore:
        """Replace the configured store with an empty one."""
        shutil.rmtree(self.data_dir)
        store = InstanceStore(self.data_dir)
        store.initialize(STORE_PASSPHRASE)
        store.lock()
        return store


class TestStoreCommands(CliTestCase):
    """Tests for list, activate and remove."""

    def test_list_json(self) -> None:
        """Test list output never includes secrets."""
        code, out, _ = self.run_cli("list", "--json")

        self.assertEqual(code, 0)
        rows = json.loads(out)
        self.assertEqual([row["id"] for row in rows], ["s1", "r1"])
        self.assertTrue(all(row["active"] for row in rows))
        self.assertNotIn("api-key", out)
        self.assertNotIn("hunter2", out)

    def test_wrong_store_passphrase(self) -> None:
        """Test an invalid passphrase exits with code 2."""
        with patch.dict(os.environ, {PASSPHRASE_ENV: "not-the-passphrase"}):
            code, _, err = self.run_cli("list")

        self.assertEqual(code, 2)
        self.assertIn("Invalid passphrase", err)

    def test_remove_unknown(self) -> None:
        """Test removing an unknown id exits with code 1."""
        code, _, err = self.run_cli("remove", "missing")

        self.assertEqual(code, 1)
        self.assertIn("missing", err)


class TestBackupCommands(CliTestCase):
    """Tests for export, import and verify."""

    def export(self) -> Path:
        backup_path = self.temp_dir / "out" / "backup.bin"
        code, out, err = self.run_cli("export", "-o", str(backup_path))
        self.assertEqual(code, 0, msg=err)
        self.assertIn("Backup created successfully", out)
        return backup_path

    def test_export_writes_private_file(self) -> None:
        """Test export writes an owner-only v2 backup."""
        backup_path = self.export()

        data = backup_path.read_bytes()
        self.assertEqual(data[0], 2)
        self.assertNotIn(b"sonarr-api-key", data)
        self.assertEqual(stat.S_IMODE(backup_path.stat().st_mode), 0o600)

    def test_export_default_location(self) -> None:
        """Test export names the file inside output_dir by default."""
        code, _, _ = self.run_cli("export")

        self.assertEqual(code, 0)
        files = list(self.backup_dir.glob("arrvault-backup-*.bin"))
        self.assertEqual(len(files), 1)

    def test_export_output_without_suffix_is_a_file(self) -> None:
        """Test -o names the backup file even without an extension."""
        backup_path = self.temp_dir / "mybackup"

        code, _, err = self.run_cli("export", "-o", str(backup_path))

        self.assertEqual(code, 0, msg=err)
        self.assertTrue(backup_path.is_file())
        self.assertEqual(backup_path.read_bytes()[0], 2)

    def test_export_output_to_existing_directory(self) -> None:
        """Test -o pointing at a directory writes a timestamped file inside it."""
        target = self.temp_dir / "exports"
        target.mkdir()

        code, _, err = self.run_cli("export", "-o", str(target))

        self.assertEqual(code, 0, msg=err)
        self.assertEqual(len(list(target.glob("arrvault-backup-*.bin"))), 1)

    def test_export_weak_password(self) -> None:
        """Test a short backup password is refused."""
        with patch.dict(os.environ, {BACKUP_PASSWORD_ENV: "too-short"}):
            code, _, err = self.run_cli("export", "-o", str(self.temp_dir / "b.bin"))

        self.assertEqual(code, 1)
        self.assertIn("at least 12 characters", err)
        self.assertFalse((self.temp_dir / "b.bin").exists())

    def test_export_then_import_into_empty_store(self) -> None:
        """Test a backup restores every instance and the active ids."""
        backup_path = self.export()
        store = self.make_empty_store()

        code, out, err = self.run_cli("import", str(backup_path))

        self.assertEqual(code, 0, msg=err)
        self.assertIn("Created: 2", out)
        store.unlock(STORE_PASSPHRASE)
        records = {record.id: record for record in store.list_all_records()}
        self.assertEqual(records["r1"].basic_auth_password, "hunter2")
        self.assertEqual(records["s1"].api_key, "sonarr-api-key")
        self.assertEqual(store.get_active_ids().sonarr, "s1")

    def test_import_overwrite_with_force(self) -> None:
        """Test existing instances are replaced when forced."""
        backup_path = self.export()
        store = InstanceStore(self.data_dir)
        store.unlock(STORE_PASSPHRASE)
        store.remove_record("r1")
        store.lock()

        code, out, _ = self.run_cli("import", str(backup_path), "--force")

        self.assertEqual(code, 0)
        self.assertIn("Created: 1", out)
        self.assertIn("Replaced: 1", out)

    def test_import_dry_run(self) -> None:
        """Test a dry run leaves the store unchanged."""
        backup_path = self.export()
        store = self.make_empty_store()

        code, out, _ = self.run_cli("import", str(backup_path), "--dry-run")

        self.assertEqual(code, 0)
        self.assertIn("Dry run", out)
        store.unlock(STORE_PASSPHRASE)
        self.assertEqual(store.list_all_records(), [])

    def test_import_wrong_password(self) -> None:
        """Test a wrong backup password fails with the generic message."""
        backup_path = self.export()

        with patch.dict(os.environ, {BACKUP_PASSWORD_ENV: "wrong-password-789"}):
            code, _, err = self.run_cli("import", str(backup_path), "--force")

        self.assertEqual(code, 1)
        self.assertIn("Wrong password or corrupted file.", err)

    def test_import_closed_stdin_cancels(self) -> None:
        """Test end of input at the overwrite prompt cancels the import."""
        backup_path = self.export()

        with patch("builtins.input", side_effect=EOFError):
            code, out, _ = self.run_cli("import", str(backup_path))

        self.assertEqual(code, 0)
        self.assertIn("Import cancelled.", out)
        store = InstanceStore(self.data_dir)
        store.unlock(STORE_PASSPHRASE)
        self.assertEqual(store.get_record("s1").name, "TV")

    def test_import_declined_keeps_store(self) -> None:
        """Test answering no at the overwrite prompt changes nothing."""
        backup_path = self.export()
        store = InstanceStore(self.data_dir)
        store.unlock(STORE_PASSPHRASE)
        store.update_record(InstanceRecord(
            id="s1", name="Renamed", base_url="http://tv:8989",
            api_key="sonarr-api-key", service=ServiceType.SONARR,
        ))
        store.lock()

        with patch("builtins.input", return_value="n"):
            code, out, _ = self.run_cli("import", str(backup_path))

        self.assertEqual(code, 0)
        self.assertIn("Import cancelled.", out)
        store.unlock(STORE_PASSPHRASE)
        self.assertEqual(store.get_record("s1").name, "Renamed")

    def test_import_locks_store_on_every_path(self) -> None:
        """Test the store is locked after dry runs and failed imports."""
        backup_path = self.export()
        original_lock = InstanceStore.lock

        with patch.object(
            InstanceStore, "lock", autospec=True, side_effect=original_lock
        ) as lock:
            code, _, _ = self.run_cli("import", str(backup_path), "--dry-run")
            self.assertEqual(code, 0)
            self.assertEqual(lock.call_count, 1)

            with patch.dict(os.environ, {BACKUP_PASSWORD_ENV: "wrong-password-789"}):
                code, _, _ = self.run_cli("import", str(backup_path), "--force")
            self.assertEqual(code, 1)
            self.assertEqual(lock.call_count, 2)

    def test_import_missing_file(self) -> None:
        """Test importing a missing file fails."""
        code, _, err = self.run_cli("import", str(self.temp_dir / "nope.bin"))

        self.assertEqual(code, 1)
        self.assertIn("not found", err)

    def test_verify(self) -> None:
        """Test verify reports the backup contents."""
        backup_path = self.export()

        code, out, _ = self.run_cli("verify", str(backup_path))

        self.assertEqual(code, 0)
        self.assertIn("Format: v2", out)
        self.assertIn("Sonarr instances: 1", out)
        self.assertIn("Radarr instances: 1", out)

    def test_verify_corrupt_file(self) -> None:
        """Test verify rejects files that are not backups."""
        bogus = self.temp_dir / "bogus.bin"
        bogus.write_bytes(b"not a backup")

        code, _, err = self.run_cli("verify", str(bogus))

        self.assertEqual(code, 1)
        self.assertIn("not a valid backup", err)


if __name__ == "__main__":
    unittest.main()
