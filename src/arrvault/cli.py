"""
Command-line interface for arrvault.

Provides commands to manage the encrypted instance store and to export,
import and verify encrypted backups of it.

Uses Python's argparse module (no external CLI libraries).
"""

from __future__ import annotations

import argparse
import getpass
import json
import logging
import os
import sys
import uuid
from datetime import datetime
from pathlib import Path
from typing import NoReturn

from arrvault import __version__
from arrvault.backup import MIN_PASSWORD_LENGTH, BackupWorker
from arrvault.config.settings import (
    DEFAULT_CONFIG_FILE,
    ConfigurationError,
    Settings,
    load_config,
    save_config,
)
from arrvault.models import InstanceRecord, ServiceType
from arrvault.store import (
    InstanceStore,
    InvalidPassphraseError,
    StoreError,
    StoreLockedError,
    StoreNotInitializedError,
)

# Set up logging
logger = logging.getLogger(__name__)

# Global verbosity settings (set during main() based on args)
_quiet_mode = False

PASSPHRASE_ENV = "ARRVAULT_PASSPHRASE"
BACKUP_PASSWORD_ENV = "ARRVAULT_BACKUP_PASSWORD"


def set_output_mode(quiet: bool = False) -> None:
    """Set the output mode for the CLI."""
    global _quiet_mode
    _quiet_mode = quiet


def output(message: str = "", force: bool = False) -> None:
    """
    Print a message to stdout, respecting quiet mode.

    Args:
        message: The message to print.
        force: If True, print even in quiet mode (for essential output like JSON).
    """
    if force or not _quiet_mode:
        print(message)


def output_error(message: str) -> None:
    """Print an error message (always shown, even in quiet mode)."""
    print(message, file=sys.stderr)


def create_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser for arrvault CLI."""
    parser = argparse.ArgumentParser(
        prog="arrvault",
        description="Encrypted backups of Sonarr/Radarr connection credentials",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"arrvault {__version__}",
    )

    parser.add_argument(
        "--config",
        metavar="PATH",
        help="Override config file location (default: ~/.arrvault/config.yaml)",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase output verbosity (can be repeated)",
    )

    parser.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Suppress non-essential output",
    )

    subparsers = parser.add_subparsers(
        title="commands",
        dest="command",
        metavar="<command>",
    )

    # init command
    init_parser = subparsers.add_parser(
        "init",
        help="Create the encrypted instance store",
        description="Create the config file and an empty encrypted instance store.",
    )
    init_parser.set_defaults(func=cmd_init)

    # info command
    info_parser = subparsers.add_parser(
        "info",
        help="Show configuration and store locations",
    )
    info_parser.add_argument("--json", action="store_true", help="Output as JSON")
    info_parser.set_defaults(func=cmd_info)

    # add command
    add_parser = subparsers.add_parser(
        "add",
        help="Add a Sonarr or Radarr instance",
        description="Add an instance. The API key is prompted for and never echoed.",
    )
    add_parser.add_argument(
        "service",
        choices=[service.value for service in ServiceType],
        help="Service type",
    )
    add_parser.add_argument("--name", required=True, help="Display name")
    add_parser.add_argument("--url", required=True, help="Server base URL")
    add_parser.add_argument("--id", dest="record_id", help="Instance id (default: random)")
    add_parser.add_argument(
        "--basic-auth-user",
        metavar="USER",
        help="HTTP basic-auth username (password is prompted)",
    )
    add_parser.set_defaults(func=cmd_add)

    # list command
    list_parser = subparsers.add_parser("list", help="List configured instances")
    list_parser.add_argument("--json", action="store_true", help="Output as JSON")
    list_parser.set_defaults(func=cmd_list)

    # remove command
    remove_parser = subparsers.add_parser("remove", help="Remove an instance")
    remove_parser.add_argument("record_id", metavar="ID", help="Instance id")
    remove_parser.set_defaults(func=cmd_remove)

    # activate command
    activate_parser = subparsers.add_parser(
        "activate",
        help="Make an instance the active one for its service",
    )
    activate_parser.add_argument("record_id", metavar="ID", help="Instance id")
    activate_parser.set_defaults(func=cmd_activate)

    # export command
    export_parser = subparsers.add_parser(
        "export",
        help="Export all instances to an encrypted backup file",
        description="Write every instance, with credentials, to a password-protected file.",
    )
    export_parser.add_argument(
        "-o", "--output",
        metavar="PATH",
        help="Output file or directory (default: backup.output_dir from config)",
    )
    export_parser.set_defaults(func=cmd_export)

    # import command
    import_parser = subparsers.add_parser(
        "import",
        help="Import instances from an encrypted backup file",
        description="Restore instances from a backup. Existing instances with the "
        "same id are replaced.",
    )
    import_parser.add_argument("backup_file", metavar="FILE", help="Backup file")
    import_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would change without writing anything",
    )
    import_parser.add_argument(
        "--force",
        action="store_true",
        help="Skip confirmation prompt",
    )
    import_parser.set_defaults(func=cmd_import)

    # verify command
    verify_parser = subparsers.add_parser(
        "verify",
        help="Check a backup file and password without importing",
    )
    verify_parser.add_argument("backup_file", metavar="FILE", help="Backup file")
    verify_parser.set_defaults(func=cmd_verify)

    return parser


def setup_logging(verbose: int, quiet: bool) -> None:
    """Configure logging based on verbosity level."""
    if quiet:
        level = logging.WARNING
    elif verbose == 0:
        level = logging.INFO
    else:
        level = logging.DEBUG

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _load_settings(args: argparse.Namespace) -> Settings:
    config_path = Path(args.config) if args.config else None
    return load_config(config_path)


def _make_worker(settings: Settings) -> BackupWorker:
    return BackupWorker(
        kdf_iterations=settings.backup.kdf_iterations,
        allow_legacy_v1=settings.backup.allow_legacy_v1,
        executor=settings.backup.executor,
    )


def _open_store(settings: Settings) -> InstanceStore:
    """Open and unlock the instance store, prompting for the passphrase."""
    store = InstanceStore(Path(settings.data_dir).expanduser())
    if not store.is_initialized():
        raise StoreNotInitializedError(
            "Instance store not initialized. Run 'arrvault init' first."
        )

    passphrase = os.environ.get(PASSPHRASE_ENV)
    if not passphrase:
        passphrase = getpass.getpass("Enter store passphrase: ")
    store.unlock(passphrase)
    return store


def _prompt_backup_password(confirm: bool) -> str | None:
    """Get the backup password from the environment or a prompt."""
    password = os.environ.get(BACKUP_PASSWORD_ENV)
    if password:
        return password

    password = getpass.getpass("Enter backup password: ")
    if confirm:
        if len(password) < MIN_PASSWORD_LENGTH:
            output_error(
                f"Error: Backup password must be at least {MIN_PASSWORD_LENGTH} characters."
            )
            return None
        if password != getpass.getpass("Confirm backup password: "):
            output_error("Error: Passwords do not match.")
            return None
    return password


def _write_backup_file(path: Path, data: bytes) -> None:
    """Write backup bytes with owner-only permissions."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(data)


def cmd_init(args: argparse.Namespace) -> int:
    """Create config file and instance store."""
    settings = _load_settings(args)
    store = InstanceStore(Path(settings.data_dir).expanduser())

    if store.is_initialized():
        output(f"arrvault is already initialized at: {store.data_dir}")
        return 0

    output("arrvault Initialization")
    output("=" * 50)
    output()
    output("Enter a passphrase to encrypt the instance store.")
    output(f"Minimum {MIN_PASSWORD_LENGTH} characters.")
    output()

    while True:
        passphrase = getpass.getpass("Enter passphrase: ")
        if len(passphrase) < MIN_PASSWORD_LENGTH:
            output_error(
                f"Error: Passphrase must be at least {MIN_PASSWORD_LENGTH} characters."
            )
            continue

        confirm = getpass.getpass("Confirm passphrase: ")
        if passphrase != confirm:
            output_error("Error: Passphrases do not match.")
            continue

        break

    store.initialize(passphrase)
    output(f"Instance store created: {store.instances_path}")

    config_path = Path(args.config) if args.config else DEFAULT_CONFIG_FILE
    if not config_path.exists():
        save_config(settings, config_path)
        output(f"Configuration file created: {config_path}")

    return 0


def cmd_info(args: argparse.Namespace) -> int:
    """Show configuration details."""
    settings = _load_settings(args)
    store = InstanceStore(Path(settings.data_dir).expanduser())

    info = {
        "version": __version__,
        "config_file": str(Path(args.config) if args.config else DEFAULT_CONFIG_FILE),
        "data_dir": str(store.data_dir),
        "store_initialized": store.is_initialized(),
        "backup": {
            "kdf_iterations": settings.backup.kdf_iterations or "per format version",
            "allow_legacy_v1": settings.backup.allow_legacy_v1,
            "executor": settings.backup.executor,
            "output_dir": settings.backup.output_dir,
        },
    }

    if args.json:
        output(json.dumps(info, indent=2), force=True)
        return 0

    output(f"arrvault {__version__}")
    output(f"  Config file: {info['config_file']}")
    output(f"  Data directory: {info['data_dir']}")
    output(f"  Store initialized: {info['store_initialized']}")
    output("  Backup:")
    for key, value in info["backup"].items():
        output(f"    {key}: {value}")
    return 0


def cmd_add(args: argparse.Namespace) -> int:
    """Add an instance to the store."""
    settings = _load_settings(args)
    store = _open_store(settings)

    api_key = getpass.getpass("API key: ")
    if not api_key:
        output_error("Error: API key is required.")
        return 1

    basic_auth_password = None
    if args.basic_auth_user:
        basic_auth_password = getpass.getpass("Basic-auth password: ") or None

    record = InstanceRecord(
        id=args.record_id or str(uuid.uuid4()),
        name=args.name,
        base_url=args.url,
        api_key=api_key,
        service=ServiceType(args.service),
        basic_auth_username=args.basic_auth_user,
        basic_auth_password=basic_auth_password,
    )
    store.add_record(record)
    store.lock()

    output(f"Added {record.service.value} instance '{record.name}' ({record.id})")
    return 0


def cmd_list(args: argparse.Namespace) -> int:
    """List instances (never shows secrets)."""
    settings = _load_settings(args)
    store = _open_store(settings)
    records = store.list_all_records()
    active = store.get_active_ids()
    store.lock()

    rows = [
        {
            "id": record.id,
            "service": record.service.value,
            "name": record.name,
            "base_url": record.base_url,
            "basic_auth": record.basic_auth_username is not None,
            "active": active.get(record.service) == record.id,
        }
        for record in records
    ]

    if args.json:
        output(json.dumps(rows, indent=2), force=True)
        return 0

    if not rows:
        output("No instances configured.")
        return 0

    for row in rows:
        marker = "*" if row["active"] else " "
        output(f"{marker} [{row['service']}] {row['name']}  {row['base_url']}  ({row['id']})")
    return 0


def cmd_remove(args: argparse.Namespace) -> int:
    """Remove an instance."""
    settings = _load_settings(args)
    store = _open_store(settings)
    record = store.remove_record(args.record_id)
    store.lock()

    output(f"Removed {record.service.value} instance '{record.name}'")
    return 0


def cmd_activate(args: argparse.Namespace) -> int:
    """Set the active instance for a service."""
    settings = _load_settings(args)
    store = _open_store(settings)
    record = store.get_record(args.record_id)
    store.set_active_id(record.service, record.id)
    store.lock()

    output(f"Active {record.service.value} instance: '{record.name}'")
    return 0


def cmd_export(args: argparse.Namespace) -> int:
    """Export all instances to an encrypted backup."""
    settings = _load_settings(args)
    store = _open_store(settings)
    records = store.list_all_records()
    active_ids = store.get_active_ids()
    store.lock()

    if not records:
        output_error("Error: No instances to export.")
        return 1

    if args.output:
        output_path = Path(args.output).expanduser()
        to_directory = output_path.is_dir() or args.output.endswith(("/", os.sep))
    else:
        output_path = Path(settings.backup.output_dir).expanduser()
        to_directory = True
    if to_directory:
        timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        output_path = output_path / f"arrvault-backup-{timestamp}.bin"

    password = _prompt_backup_password(confirm=True)
    if password is None:
        return 1

    output(f"Encrypting {len(records)} instances...")
    with _make_worker(settings) as worker:
        result = worker.submit_export(records, active_ids, password).result()

    if not result.success or result.data is None:
        output_error(f"Export failed: {result.error}")
        return 1

    _write_backup_file(output_path, result.data)
    output()
    output("Backup created successfully!")
    output(f"  File: {output_path}")
    output(f"  Instances: {result.record_count}")
    output()
    output("To restore from this backup, run:")
    output(f"  arrvault import {output_path}")
    return 0


def cmd_import(args: argparse.Namespace) -> int:
    """Import instances from an encrypted backup."""
    settings = _load_settings(args)
    backup_path = Path(args.backup_file)

    if not backup_path.exists():
        output_error(f"Error: Backup file not found: {backup_path}")
        return 1

    store = _open_store(settings)
    try:
        return _import_into(store, backup_path, args, settings)
    finally:
        store.lock()


def _confirm(prompt: str) -> bool:
    """Ask a yes/no question; a closed stdin counts as no."""
    try:
        response = input(prompt)
    except EOFError:
        output()
        return False
    return response.strip().lower() in ("y", "yes")


def _import_into(
    store: InstanceStore,
    backup_path: Path,
    args: argparse.Namespace,
    settings: Settings,
) -> int:
    existing = store.list_all_records()
    data = backup_path.read_bytes()
    password = _prompt_backup_password(confirm=False)
    if password is None:
        return 1

    output("Decrypting backup...")
    with _make_worker(settings) as worker:
        result = worker.submit_import(data, password, existing).result()

    if not result.success or result.diff is None:
        output_error(f"Import failed: {result.error}")
        return 1

    diff = result.diff
    output()
    output(f"Backup format: v{result.version}")
    output(f"  New instances: {len(diff.to_create)}")
    for record in diff.to_create:
        output(f"    + [{record.service.value}] {record.name}")
    output(f"  Replaced instances: {len(diff.to_overwrite)}")
    for record in diff.to_overwrite:
        output(f"    ~ [{record.service.value}] {record.name}")
    output()

    if args.dry_run:
        output("Dry run: nothing was changed.")
        return 0

    if not args.force and diff.to_overwrite:
        if not _confirm("Replace existing instances? [y/N]: "):
            output("Import cancelled.")
            return 0

    applied = store.apply_diff(diff)

    output("Import completed successfully!")
    output(f"  Created: {applied.created}")
    output(f"  Replaced: {applied.overwritten}")
    for service, record_id in applied.active_skipped.items():
        output(f"  Active {service} instance {record_id} not found; left unchanged")
    return 0


def cmd_verify(args: argparse.Namespace) -> int:
    """Verify a backup file and password."""
    settings = _load_settings(args)
    backup_path = Path(args.backup_file)

    if not backup_path.exists():
        output_error(f"Error: Backup file not found: {backup_path}")
        return 1

    password = _prompt_backup_password(confirm=False)
    if password is None:
        return 1

    with _make_worker(settings) as worker:
        result = worker.submit_validate(backup_path.read_bytes(), password).result()

    if not result.success:
        output_error(f"Verification failed: {result.error}")
        return 1

    output("Backup verified successfully.")
    output(f"  Format: v{result.version}")
    output(f"  Sonarr instances: {result.sonarr_count}")
    output(f"  Radarr instances: {result.radarr_count}")
    return 0


def main() -> NoReturn:
    """Main entry point for arrvault CLI."""
    parser = create_parser()
    args = parser.parse_args()

    setup_logging(args.verbose, args.quiet)
    set_output_mode(args.quiet)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    try:
        exit_code = args.func(args)
        sys.exit(exit_code)
    except KeyboardInterrupt:
        output("\nOperation cancelled.")
        sys.exit(130)
    except InvalidPassphraseError:
        output_error("Error: Invalid passphrase.")
        sys.exit(2)
    except (StoreNotInitializedError, StoreLockedError) as e:
        output_error(f"Store error: {e}")
        sys.exit(2)
    except ConfigurationError as e:
        output_error(f"Configuration error: {e}")
        sys.exit(2)
    except StoreError as e:
        output_error(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
