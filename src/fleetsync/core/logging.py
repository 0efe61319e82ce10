"""Central logging configuration for FleetSync.

Logs go to a file in the configured directory and to stdout. If the
configured directory is not writable, logging falls back to ``./logs`` while
recording a warning. Secrets are scrubbed from log messages and the
``device`` context is always present in the format.
"""

from __future__ import annotations

import logging
import re
import sys
from pathlib import Path

from fleetsync.core.config import LoggingSettings

FALLBACK_DIRECTORY = Path("./logs")

LOG_FORMAT = "%(asctime)s | %(levelname)s | device=%(device)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class DeviceContextFilter(logging.Filter):
    """Ensure every record contains a device name."""

    def filter(self, record: logging.LogRecord) -> bool:  # pragma: no cover - logging hook
        if not getattr(record, "device", None):
            record.device = "-"
        return True


class SecretScrubberFilter(logging.Filter):
    """Mask credentials that end up in log messages."""

    SECRET_PATTERN = re.compile(r"(password|secret|token)=([^\s]+)", re.IGNORECASE)

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        cleaned = self.SECRET_PATTERN.sub(r"\1=***", message)
        if cleaned != message:
            record.msg = cleaned
            record.args = ()
        return True


def _ensure_writable_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    marker = path / ".write-test"
    with marker.open("a", encoding="utf-8"):
        marker.touch()
    marker.unlink(missing_ok=True)


def _determine_log_directory(target: Path, fallback: Path) -> tuple[Path, bool]:
    for index, candidate in enumerate((target, fallback)):
        try:
            _ensure_writable_directory(candidate)
            return candidate, index == 1
        except OSError:
            continue
    raise OSError("Unable to create a writable logging directory.")


def build_handlers(log_path: Path | None) -> list[logging.Handler]:
    """File (when ``log_path`` is set) and stdout handlers sharing one format."""

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_path is not None:
        handlers.insert(0, logging.FileHandler(log_path, encoding="utf-8"))

    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(DeviceContextFilter())
        handler.addFilter(SecretScrubberFilter())
    return handlers


def setup_logging(settings: LoggingSettings | None = None, cli_level: int | None = None) -> logging.Logger:
    """Configure application-wide logging.

    Parameters
    ----------
    settings:
        Logging section of local.yml. Defaults apply when omitted.
    cli_level:
        Level forced from the command line (``--debug``); overrides settings.
    """

    settings = settings or LoggingSettings()
    level = cli_level if cli_level is not None else settings.level
    log_directory, used_fallback = _determine_log_directory(settings.directory, FALLBACK_DIRECTORY)
    log_path = log_directory / settings.filename

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(level)
    for handler in build_handlers(log_path):
        root_logger.addHandler(handler)

    logger = logging.getLogger("fleetsync")
    logger.setLevel(level)
    logger.propagate = True

    if used_fallback:
        logger.warning(
            "Logging directory '%s' is not writable. Falling back to '%s'.",
            settings.directory,
            log_directory,
        )

    logger.info("Logging initialized at %s level=%s", log_path, logging.getLevelName(level))
    return logger
