"""
Configuration settings management for arrvault.

This module handles loading, validating, and saving configuration settings
from YAML files with support for environment variable overrides.

Configuration is loaded from ~/.arrvault/config.yaml by default, with the
path overridable via the ARRVAULT_CONFIG environment variable.
"""

import os
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from arrvault.crypto.kdf import PBKDF2_ITERATIONS

# Default configuration directory
DEFAULT_CONFIG_DIR = Path.home() / ".arrvault"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.yaml"

VALID_EXECUTORS = ("process", "thread")


@dataclass
class BackupConfig:
    """
    Backup encryption settings.

    Attributes:
        kdf_iterations: PBKDF2 iteration override. None uses the count
            bound to each backup format version. Never below 600,000.
        allow_legacy_v1: Accept version 1 (unauthenticated CBC) backups.
        executor: Worker pool used for key derivation ("process" or "thread").
        output_dir: Default directory for exported backups.
    """

    kdf_iterations: int | None = None
    allow_legacy_v1: bool = False
    executor: str = "process"
    output_dir: str = str(DEFAULT_CONFIG_DIR / "backups")


@dataclass
class Settings:
    """
    Complete arrvault configuration settings.

    Attributes:
        data_dir: Directory holding the encrypted instance store.
        log_level: Logging verbosity (DEBUG, INFO, WARNING, ERROR).
        backup: Backup encryption settings.
    """

    data_dir: str = str(DEFAULT_CONFIG_DIR / "data")
    log_level: str = "INFO"

    backup: BackupConfig = field(default_factory=BackupConfig)


class ConfigurationError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


def get_config_path() -> Path:
    """
    Get the configuration file path.

    Returns the path from ARRVAULT_CONFIG environment variable if set,
    otherwise returns the default path (~/.arrvault/config.yaml).
    """
    env_path = os.environ.get("ARRVAULT_CONFIG")
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_FILE


def load_config(config_path: Path | None = None) -> Settings:
    """
    Load configuration from YAML file.

    Reads configuration from the specified path (or default if not provided),
    applies environment variable overrides, and validates the configuration.

    Args:
        config_path: Optional path to configuration file. If not provided,
                    uses ARRVAULT_CONFIG environment variable or default path.

    Returns:
        Validated Settings instance.

    Raises:
        ConfigurationError: If the configuration file cannot be read or
                          contains invalid settings.
    """
    if config_path is None:
        config_path = get_config_path()

    settings = Settings()

    if config_path.exists():
        try:
            with open(config_path) as f:
                config_data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}") from e
        except OSError as e:
            raise ConfigurationError(f"Cannot read config file: {e}") from e

        if not isinstance(config_data, dict):
            raise ConfigurationError("Config file must contain a mapping")

        settings = _apply_config_data(settings, config_data)

    settings = _apply_environment_overrides(settings)

    _validate_config(settings)

    return settings


def save_config(settings: Settings, config_path: Path | None = None) -> None:
    """
    Save configuration to YAML file.

    Raises:
        ConfigurationError: If the configuration cannot be written.
    """
    if config_path is None:
        config_path = get_config_path()

    config_path.parent.mkdir(parents=True, exist_ok=True)

    config_data = _settings_to_dict(settings)

    try:
        with open(config_path, "w") as f:
            yaml.safe_dump(config_data, f, default_flow_style=False, sort_keys=False)
    except OSError as e:
        raise ConfigurationError(f"Cannot write config file: {e}") from e


def _apply_config_data(settings: Settings, data: dict[str, Any]) -> Settings:
    """Apply configuration data from parsed YAML to settings."""
    arrvault_data = data.get("arrvault") or {}

    if "data_dir" in arrvault_data:
        settings.data_dir = str(arrvault_data["data_dir"])
    if "log_level" in arrvault_data:
        settings.log_level = str(arrvault_data["log_level"]).upper()

    backup = data.get("backup") or {}
    try:
        if backup.get("kdf_iterations") is not None:
            settings.backup.kdf_iterations = int(backup["kdf_iterations"])
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"kdf_iterations must be an integer: {e}") from e
    if "allow_legacy_v1" in backup:
        settings.backup.allow_legacy_v1 = bool(backup["allow_legacy_v1"])
    if "executor" in backup:
        settings.backup.executor = str(backup["executor"])
    if "output_dir" in backup:
        settings.backup.output_dir = str(backup["output_dir"])

    return settings


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _parse_int(value: str) -> int:
    try:
        return int(value)
    except ValueError as e:
        raise ConfigurationError(f"Expected an integer, got: {value!r}") from e


def _apply_environment_overrides(settings: Settings) -> Settings:
    """Apply environment variable overrides to settings."""
    env_map: dict[str, tuple[str, Callable[[str], Any]]] = {
        "ARRVAULT_DATA_DIR": ("data_dir", str),
        "ARRVAULT_LOG_LEVEL": ("log_level", lambda x: x.upper()),
        "ARRVAULT_KDF_ITERATIONS": ("backup.kdf_iterations", _parse_int),
        "ARRVAULT_ALLOW_LEGACY_V1": ("backup.allow_legacy_v1", _parse_bool),
        "ARRVAULT_EXECUTOR": ("backup.executor", str),
    }

    for env_var, (attr_path, converter) in env_map.items():
        value = os.environ.get(env_var)
        if value is not None:
            _set_nested_attr(settings, attr_path, converter(value))

    return settings


def _set_nested_attr(obj: Any, path: str, value: Any) -> None:
    """Set a nested attribute on an object using dot notation."""
    parts = path.split(".")
    for part in parts[:-1]:
        obj = getattr(obj, part)
    setattr(obj, parts[-1], value)


def _validate_config(settings: Settings) -> None:
    """
    Validate configuration settings.

    Raises:
        ConfigurationError: If configuration is invalid.
    """
    valid_log_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
    if settings.log_level not in valid_log_levels:
        raise ConfigurationError(
            f"Invalid log_level: {settings.log_level}. "
            f"Must be one of: {', '.join(sorted(valid_log_levels))}"
        )

    iterations = settings.backup.kdf_iterations
    if iterations is not None and iterations < PBKDF2_ITERATIONS:
        raise ConfigurationError(
            f"kdf_iterations must be at least {PBKDF2_ITERATIONS:,}; "
            "it is never lowered"
        )

    if settings.backup.executor not in VALID_EXECUTORS:
        raise ConfigurationError(
            f"Invalid executor: {settings.backup.executor}. "
            f"Must be one of: {', '.join(VALID_EXECUTORS)}"
        )


def _settings_to_dict(settings: Settings) -> dict[str, Any]:
    """Convert Settings instance to dictionary for YAML serialization."""
    backup: dict[str, Any] = {
        "allow_legacy_v1": settings.backup.allow_legacy_v1,
        "executor": settings.backup.executor,
        "output_dir": settings.backup.output_dir,
    }
    if settings.backup.kdf_iterations is not None:
        backup["kdf_iterations"] = settings.backup.kdf_iterations

    return {
        "arrvault": {
            "data_dir": settings.data_dir,
            "log_level": settings.log_level,
        },
        "backup": backup,
    }
