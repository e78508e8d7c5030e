"""
arrvault - Encrypted backups of Sonarr/Radarr connection credentials

Turns the configured server connections (URLs, API keys, basic-auth
credentials) into a single password-protected, tamper-evident file and
restores them later, on another device or after a reinstall.

Key Features:
    - AES-256-GCM backups with PBKDF2-SHA256 (600,000 iterations) keys
    - Fresh salt and nonce on every export
    - Read support for legacy AES-256-CBC backups (opt-in)
    - Imports produce a diff; nothing is written until the caller applies it
    - Key derivation runs in a worker pool, off the interactive path
"""

__version__ = "0.1.0"

from arrvault.backup import BackupManager, BackupWorker
from arrvault.models import ActiveIds, ImportDiff, InstanceRecord, ServiceType

__all__ = [
    "__version__",
    "BackupManager",
    "BackupWorker",
    "InstanceRecord",
    "ActiveIds",
    "ImportDiff",
    "ServiceType",
]
