"""Content-addressed configuration history.

Every capture writes the text export (and, when the dialect has one, the
binary snapshot) into the device archive under a timestamp-ordered name,
diffs the export against the immediately preceding one and appends a
:class:`ConfigSnapshot` record. A capture is all-or-nothing: if any file or
the record cannot be written, every file of that capture is removed.
"""

from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import Callable

from fleetsync.common.diff import DiffOutcome, compare_with_previous, encode_diff, sha256_hex
from fleetsync.core.errors import FleetSyncError, PersistenceError
from fleetsync.core.models import ConfigSnapshot, Device
from fleetsync.core.repository import Repository
from fleetsync.core.storage import DeviceArchive, device_archive, write_atomic

STAMP_WIDTH = 13


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


def format_stamp(stamp: int) -> str:
    return f"{stamp:0{STAMP_WIDTH}d}"


def _stamp_of(path: Path) -> int | None:
    digits = path.name.removeprefix("config-").split(".", 1)[0]
    return int(digits) if digits.isdigit() else None


class ConfigVersionStore:
    """Append-only archive of configuration snapshots per device."""

    def __init__(
        self,
        archive_dir: Path,
        repository: Repository,
        logger: logging.Logger | None = None,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self.archive_dir = archive_dir
        self.repository = repository
        self.logger = logger or logging.getLogger(__name__)
        self._clock = clock
        self._lock = threading.Lock()

    def archive_for(self, device_id: int) -> DeviceArchive:
        return device_archive(self.archive_dir, device_id)

    def _next_stamp(self, archive: DeviceArchive) -> int:
        stamp = self._clock()
        exports = archive.exports()
        if exports:
            latest = _stamp_of(exports[-1])
            if latest is not None and stamp <= latest:
                stamp = latest + 1
        return stamp

    def capture(
        self,
        device: Device,
        export: str | bytes,
        binary: bytes | None = None,
        suffix: str = ".rsc",
    ) -> ConfigSnapshot:
        """Persist one export (and optional binary) and append the snapshot."""

        if device.id is None:
            raise PersistenceError("device must be persisted before capture", device=device.ip)

        export_bytes = export.encode("utf-8") if isinstance(export, str) else export
        log_extra = {"device": device.label}
        archive = self.archive_for(device.id)

        with self._lock:
            stamp = self._next_stamp(archive)
            stamp_text = format_stamp(stamp)
            exports = archive.exports()
            previous = exports[-1] if exports else None
            written: list[Path] = []

            try:
                text_path = archive.export_path(stamp_text, suffix)
                outcome = compare_with_previous(previous, export_bytes, text_path.name)
                written.append(write_atomic(text_path, export_bytes))

                binary_path: Path | None = None
                binary_hash: str | None = None
                if binary is not None:
                    binary_hash = sha256_hex(binary)
                    binary_path = write_atomic(archive.binary_path(stamp_text), binary)
                    written.append(binary_path)

                diff_path: Path | None = None
                if not outcome.first_backup:
                    diff_path = write_atomic(archive.diff_path(stamp_text), encode_diff(outcome.diff_text or ""))
                    written.append(diff_path)

                snapshot = self.repository.add_snapshot(
                    ConfigSnapshot(
                        device_id=device.id,
                        captured_at=stamp,
                        text_export_path=str(text_path),
                        text_hash=outcome.current_sha256 or sha256_hex(export_bytes),
                        binary_blob_path=str(binary_path) if binary_path else None,
                        binary_hash=binary_hash,
                        diff_path=str(diff_path) if diff_path else None,
                    )
                )
            except BaseException as exc:
                for path in written:
                    path.unlink(missing_ok=True)
                if not isinstance(exc, (OSError, FleetSyncError)):
                    raise
                self.logger.error("snapshot capture aborted reason=\"%s\"", exc, extra=log_extra)
                if isinstance(exc, PersistenceError):
                    raise
                raise PersistenceError(f"snapshot capture failed ({exc})", device=device.label) from exc

        self._log_outcome(outcome, snapshot, log_extra)
        return snapshot

    def _log_outcome(self, outcome: DiffOutcome, snapshot: ConfigSnapshot, log_extra: dict[str, str]) -> None:
        self.logger.info("saved path=%s sha256=%s", snapshot.text_export_path, snapshot.text_hash, extra=log_extra)
        if snapshot.binary_blob_path:
            self.logger.info("binary-backup saved path=%s", snapshot.binary_blob_path, extra=log_extra)
        if outcome.first_backup:
            self.logger.info("first_backup=true", extra=log_extra)
            return
        self.logger.info("config_changed=%s", outcome.config_changed, extra=log_extra)
        self.logger.debug("diff added=%d removed=%d", outcome.added, outcome.removed, extra=log_extra)
        self.logger.info("diff_saved=%s", snapshot.diff_path, extra=log_extra)

    def verify(self, snapshot: ConfigSnapshot) -> bool:
        """Recompute content hashes from the archived files."""

        try:
            if sha256_hex(Path(snapshot.text_export_path).read_bytes()) != snapshot.text_hash:
                return False
            if snapshot.binary_blob_path is not None:
                return sha256_hex(Path(snapshot.binary_blob_path).read_bytes()) == snapshot.binary_hash
        except FileNotFoundError:
            return False
        return True

    def read_diff(self, snapshot: ConfigSnapshot) -> str | None:
        if snapshot.diff_path is None:
            return None
        return Path(snapshot.diff_path).read_bytes().decode("utf-8", errors="surrogateescape")
