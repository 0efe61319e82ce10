"""Storage helpers for the on-disk snapshot archive."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

import yaml

PROJECT_ROOT = Path(__file__).resolve().parents[3]
FALLBACK_ARCHIVE_DIR = PROJECT_ROOT / "backup"
DEFAULT_LOCAL_CONFIG = PROJECT_ROOT / "config" / "local.yml"

EXPORT_DIRNAME = "export"
BINARY_DIRNAME = "binary"
DIFF_DIRNAME = "diff"


@dataclass(slots=True)
class DeviceArchive:
    """The three sibling directories holding one device's history."""

    root: Path

    @property
    def export_dir(self) -> Path:
        return self.root / EXPORT_DIRNAME

    @property
    def binary_dir(self) -> Path:
        return self.root / BINARY_DIRNAME

    @property
    def diff_dir(self) -> Path:
        return self.root / DIFF_DIRNAME

    def export_path(self, stamp: str, suffix: str) -> Path:
        return self.export_dir / f"config-{stamp}{suffix}"

    def binary_path(self, stamp: str) -> Path:
        return self.binary_dir / f"backup-{stamp}.backup"

    def diff_path(self, stamp: str) -> Path:
        return self.diff_dir / f"diff-{stamp}.txt"

    def exports(self) -> list[Path]:
        """Archived exports, oldest first (names sort in capture order)."""

        if not self.export_dir.is_dir():
            return []
        return sorted(path for path in self.export_dir.glob("config-*") if path.is_file())


def ensure_directory(path: Path) -> Path:
    """Ensure the target directory exists and return it."""

    path.mkdir(parents=True, exist_ok=True)
    return path


def device_archive(archive_dir: Path, device_id: int) -> DeviceArchive:
    return DeviceArchive(archive_dir / str(device_id))


def write_atomic(path: Path, data: bytes) -> Path:
    """Write ``data`` to a temporary sibling, then rename it into place.

    Readers never observe a partially written file; the temporary file is
    removed if the write fails.
    """

    ensure_directory(path.parent)
    temporary = path.with_name(f".{path.name}.tmp")
    try:
        with temporary.open("wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temporary, path)
    except BaseException:
        temporary.unlink(missing_ok=True)
        raise
    return path


def load_local_config(
    config_path: str | Path | None = None, logger: logging.Logger | None = None
) -> Mapping[str, Any] | None:
    """Load local.yml if it exists and return the mapping."""

    config_file = Path(config_path) if config_path else DEFAULT_LOCAL_CONFIG
    if not config_file.is_absolute():
        config_file = PROJECT_ROOT / config_file

    if logger:
        logger.debug("loading local config from %s", config_file)

    if not config_file.exists():
        if logger:
            logger.debug("local config not found at %s", config_file)
        return None

    try:
        with config_file.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except (OSError, yaml.YAMLError) as exc:
        if logger:
            logger.warning("unable to read local config file=%s reason=\"%s\"", config_file, exc)
        return None

    return data if isinstance(data, Mapping) else None


def _check_writable(path: Path) -> tuple[bool, str | None]:
    """Try to create and write to the directory, returning success and reason."""

    try:
        path.mkdir(parents=True, exist_ok=True)
        test_file = path / ".write-test"
        with test_file.open("w", encoding="utf-8") as handle:
            handle.write("ok")
        test_file.unlink(missing_ok=True)
        return True, None
    except OSError as exc:
        return False, str(exc)


def resolve_archive_dir(
    cli_archive_dir: str | Path | None, configured_dir: Path | None, logger: logging.Logger
) -> Path:
    """Determine the archive directory with priority: CLI > local.yml > fallback."""

    candidates: list[tuple[str, Path]] = []

    if cli_archive_dir:
        candidates.append(("cli", Path(cli_archive_dir).expanduser()))

    if configured_dir:
        candidates.append(("local_yml", configured_dir))

    for source, candidate in candidates:
        ok, reason = _check_writable(candidate)
        if ok:
            logger.info("archive_dir source=%s path=%s", source, candidate)
            return candidate

        logger.warning(
            'archive_dir source=%s path=%s fallback=%s reason="%s"',
            source,
            candidate,
            FALLBACK_ARCHIVE_DIR,
            reason or "unavailable",
        )

    ok, fallback_reason = _check_writable(FALLBACK_ARCHIVE_DIR)
    if not ok:
        logger.error(
            'archive_dir fallback=%s reason="%s"', FALLBACK_ARCHIVE_DIR, fallback_reason or "unavailable"
        )
        raise OSError(f"Unable to use fallback archive directory: {FALLBACK_ARCHIVE_DIR}")

    if not candidates:
        logger.info('archive_dir source=fallback path=%s reason="%s"', FALLBACK_ARCHIVE_DIR, "not provided")
    else:
        logger.info("archive_dir source=fallback path=%s", FALLBACK_ARCHIVE_DIR)

    return FALLBACK_ARCHIVE_DIR
