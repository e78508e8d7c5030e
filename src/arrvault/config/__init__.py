"""
Configuration management for arrvault.

This module handles loading, validating, and saving configuration settings.
"""

from arrvault.config.settings import (
    DEFAULT_CONFIG_DIR,
    DEFAULT_CONFIG_FILE,
    BackupConfig,
    ConfigurationError,
    Settings,
    load_config,
    save_config,
)

__all__ = [
    "Settings",
    "BackupConfig",
    "load_config",
    "save_config",
    "ConfigurationError",
    "DEFAULT_CONFIG_DIR",
    "DEFAULT_CONFIG_FILE",
]
