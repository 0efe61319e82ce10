"""Periodic drivers for backups and firmware pushes.

Each scheduler owns one :class:`PeriodicLoop` with an explicit
``start()``/``stop()`` lifecycle. The engine is injected, so a sweep can be
run directly with ``run_once()`` without any thread.
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from fleetsync.common.engine import SyncEngine
from fleetsync.common.run_summary import DeviceResultData, RunSummaryBuilder, TaskResultData
from fleetsync.core.errors import FleetSyncError
from fleetsync.core.models import Device, UpgradeJob

DEFAULT_BACKUP_INTERVAL = 12 * 60 * 60.0
DEFAULT_UPGRADE_INTERVAL = 60.0


class PeriodicLoop:
    """Call ``task`` every ``interval`` seconds on a daemon thread."""

    def __init__(
        self,
        name: str,
        interval: float,
        task: Callable[[], object],
        logger: logging.Logger | None = None,
        run_immediately: bool = False,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.name = name
        self.interval = interval
        self.task = task
        self.run_immediately = run_immediately
        self.logger = logger or logging.getLogger(__name__)
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()
        self.logger.info("scheduler started loop=%s interval=%s", self.name, self.interval)

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        self.logger.info("scheduler stopped loop=%s", self.name)

    def _tick(self) -> None:
        try:
            self.task()
        except Exception:
            self.logger.exception("scheduled task failed loop=%s", self.name)

    def _run(self) -> None:
        if self.run_immediately:
            self._tick()
        while not self._stop.wait(self.interval):
            self._tick()


def _utc_stamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d_%H%M%S")


class BackupScheduler:
    """Back up every registered device, then resync its ports."""

    def __init__(
        self,
        engine: SyncEngine,
        *,
        interval: float = DEFAULT_BACKUP_INTERVAL,
        summary_dir: Path | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.engine = engine
        self.summary_dir = summary_dir
        self.logger = logger or logging.getLogger(__name__)
        self.loop = PeriodicLoop("backup-sweep", interval, self.run_once, self.logger)

    def start(self) -> None:
        self.loop.start()

    def stop(self, timeout: float | None = None) -> None:
        self.loop.stop(timeout)

    def run_once(self) -> dict[str, object]:
        devices = self.engine.repository.list_devices()
        stamp = _utc_stamp()
        builder = RunSummaryBuilder(run_id=stamp, timestamp=stamp)
        builder.set_devices_total(len(devices))
        self.logger.info("Starting backup for %d device(s).", len(devices))

        for device in devices:
            builder.add_device(self._sync_device(device))

        if self.summary_dir is not None:
            builder.save(self.summary_dir, self.logger)
        return builder.build()

    def _sync_device(self, device: Device) -> DeviceResultData:
        log_extra = {"device": device.label}
        result = DeviceResultData(device_id=device.id, name=device.label, dialect=device.dialect.value, status="success")

        try:
            snapshot = self.engine.run_backup(device.id)
        except FleetSyncError as exc:
            self.logger.error("Backup failed for device. reason=\"%s\"", exc, extra=log_extra)
            result.status = "failed"
            result.error = str(exc)
            result.tasks["backup"] = TaskResultData(performed=False, error=str(exc))
            return result

        result.tasks["backup"] = TaskResultData(
            performed=True,
            saved_path=snapshot.text_export_path,
            text_hash=snapshot.text_hash,
            diff_path=snapshot.diff_path,
        )

        driver = self.engine.drivers.get(device.dialect)
        if driver is None or not driver.discovers_inventory:
            return result

        try:
            ports = self.engine.resync_ports(device.id)
        except FleetSyncError as exc:
            self.logger.warning("port resync failed reason=\"%s\"", exc, extra=log_extra)
            result.tasks["ports"] = TaskResultData(performed=False, error=str(exc))
        else:
            result.tasks["ports"] = TaskResultData(
                performed=True, ports_created=len(ports.created), ports_updated=len(ports.updated)
            )
        return result


class UpgradeScheduler:
    """Push firmware images for jobs whose scheduled time has passed."""

    def __init__(
        self,
        engine: SyncEngine,
        *,
        interval: float = DEFAULT_UPGRADE_INTERVAL,
        logger: logging.Logger | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.engine = engine
        self.logger = logger or logging.getLogger(__name__)
        self._clock = clock
        self.loop = PeriodicLoop("upgrade-jobs", interval, self.run_once, self.logger)

    def start(self) -> None:
        self.loop.start()

    def stop(self, timeout: float | None = None) -> None:
        self.loop.stop(timeout)

    def run_once(self) -> list[UpgradeJob]:
        jobs = self.engine.repository.list_pending_jobs(self._clock())
        if jobs:
            self.logger.info("running %d pending upgrade job(s)", len(jobs))
        return [self.engine.push_firmware(job) for job in jobs]
