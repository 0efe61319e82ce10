"""Configuration helpers for FleetSync.

Settings come from the optional ``config/local.yml`` file. Every section is
optional; missing values fall back to the defaults below and invalid values
raise :class:`SettingsError` naming the offending field.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

from fleetsync.core.session import SessionTimeouts
from fleetsync.core.storage import PROJECT_ROOT, load_local_config

DEFAULT_LOG_DIRECTORY = Path("/var/log/fleetsync")
DEFAULT_LOG_FILENAME = "fleetsync.log"
DEFAULT_INVENTORY = PROJECT_ROOT / "config" / "inventory.yml"
DEFAULT_BACKUP_INTERVAL = 12 * 60 * 60.0
DEFAULT_UPGRADE_INTERVAL = 60.0
DEFAULT_QUEUE = "hotspot-default/hotspot-default"


class SettingsError(ValueError):
    """Raised when local.yml contains an invalid value."""


@dataclass(slots=True)
class LoggingSettings:
    """Where logs go and how verbose they are."""

    directory: Path = DEFAULT_LOG_DIRECTORY
    filename: str = DEFAULT_LOG_FILENAME
    level: int = logging.INFO


@dataclass(slots=True)
class Settings:
    """Application settings resolved from local.yml."""

    archive_dir: Path | None = None
    inventory_path: Path = DEFAULT_INVENTORY
    timeouts: SessionTimeouts = field(default_factory=SessionTimeouts)
    backup_interval: float = DEFAULT_BACKUP_INTERVAL
    upgrade_interval: float = DEFAULT_UPGRADE_INTERVAL
    default_queue: str = DEFAULT_QUEUE
    logging: LoggingSettings = field(default_factory=LoggingSettings)


def _section(raw: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    value = raw.get(name)
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise SettingsError(f"section '{name}' must be a mapping.")
    return value


def _positive_number(section: Mapping[str, Any], key: str, context: str, default: float) -> float:
    value = section.get(key)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise SettingsError(f"{context}.{key} must be a number.")
    if value <= 0:
        raise SettingsError(f"{context}.{key} must be greater than zero.")
    return float(value)


def _path(value: Any, context: str) -> Path | None:
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise SettingsError(f"{context} must be a string path.")
    candidate = Path(value).expanduser()
    if not candidate.is_absolute():
        candidate = PROJECT_ROOT / candidate
    return candidate


def _string(section: Mapping[str, Any], key: str, context: str, default: str) -> str:
    value = section.get(key)
    if value is None:
        return default
    if not isinstance(value, str) or not value.strip():
        raise SettingsError(f"{context}.{key} must be a non-empty string.")
    return value


def level_from_value(raw_level: Any, default: int = logging.INFO) -> int:
    """Translate a level name or number into a logging level."""

    if isinstance(raw_level, str):
        level = logging.getLevelName(raw_level.upper())
        if isinstance(level, int):
            return level
    if isinstance(raw_level, int) and not isinstance(raw_level, bool):
        return raw_level
    return default


def parse_settings(raw: Mapping[str, Any]) -> Settings:
    """Validate a local.yml mapping and build :class:`Settings`."""

    archive = _section(raw, "archive")
    inventory = _section(raw, "inventory")
    session = _section(raw, "session")
    scheduler = _section(raw, "scheduler")
    mikrotik = _section(raw, "mikrotik")
    logging_section = _section(raw, "logging")

    timeouts = SessionTimeouts(
        connect=_positive_number(session, "connect_timeout", "session", 10.0),
        command=_positive_number(session, "command_timeout", "session", 30.0),
        transfer=_positive_number(session, "transfer_timeout", "session", 60.0),
    )

    log_directory = logging_section.get("directory")
    return Settings(
        archive_dir=_path(archive.get("directory"), "archive.directory"),
        inventory_path=_path(inventory.get("path"), "inventory.path") or DEFAULT_INVENTORY,
        timeouts=timeouts,
        backup_interval=_positive_number(scheduler, "backup_interval", "scheduler", DEFAULT_BACKUP_INTERVAL),
        upgrade_interval=_positive_number(scheduler, "upgrade_interval", "scheduler", DEFAULT_UPGRADE_INTERVAL),
        default_queue=_string(mikrotik, "default_queue", "mikrotik", DEFAULT_QUEUE),
        logging=LoggingSettings(
            directory=Path(str(log_directory)).expanduser() if log_directory else DEFAULT_LOG_DIRECTORY,
            filename=str(logging_section.get("filename") or DEFAULT_LOG_FILENAME),
            level=level_from_value(logging_section.get("level")),
        ),
    )


def load_settings(config_path: str | Path | None = None, logger: logging.Logger | None = None) -> Settings:
    """Load local.yml (if present) and return validated settings."""

    raw = load_local_config(config_path, logger) or {}
    return parse_settings(raw)
