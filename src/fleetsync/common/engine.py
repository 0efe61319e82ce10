"""Device synchronization engine.

:class:`SyncEngine` combines the session adapter, the dialect drivers, the
version store and the inventory reconciler into the two main flows:
adding a device and backing it up. Operations against the same device are
serialized through :class:`DeviceLocks`; different devices can be processed
concurrently.
"""

from __future__ import annotations

import logging
import threading
from contextlib import AbstractContextManager, contextmanager
from pathlib import Path
from typing import Callable, Iterator, Mapping

from fleetsync.common.driver import DeviceDriver, get_driver
from fleetsync.common.reconcile import InventoryReconciler, PortReconcileResult
from fleetsync.common.versioning import ConfigVersionStore
from fleetsync.core.errors import (
    BackupError,
    DuplicateError,
    FleetSyncError,
    NotFoundError,
    TransportError,
    UnsupportedOperationError,
)
from fleetsync.core.models import (
    ConfigSnapshot,
    Credential,
    Device,
    DeviceRole,
    Dialect,
    LimiterRecord,
    ParsedLimiter,
    ParsedPort,
    PortRecord,
    PortUsage,
    UpgradeJob,
)
from fleetsync.core.repository import Repository
from fleetsync.core.session import Session, SessionTarget, SessionTimeouts, open_session

SessionOpener = Callable[[SessionTarget, SessionTimeouts, logging.Logger], AbstractContextManager[Session]]


class DeviceLocks:
    """One mutual-exclusion lock per device ip."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
        with lock:
            yield


class SyncEngine:
    """Facade over discovery, backup and inventory operations."""

    def __init__(
        self,
        repository: Repository,
        store: ConfigVersionStore,
        *,
        timeouts: SessionTimeouts | None = None,
        drivers: Mapping[Dialect, DeviceDriver] | None = None,
        session_opener: SessionOpener = open_session,
        locks: DeviceLocks | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.repository = repository
        self.store = store
        self.timeouts = timeouts or SessionTimeouts()
        self.logger = logger or logging.getLogger(__name__)
        self.drivers = dict(drivers) if drivers else {dialect: get_driver(dialect, self.logger) for dialect in Dialect}
        self.reconciler = InventoryReconciler(repository, self.logger)
        self._open_session = session_opener
        self.locks = locks or DeviceLocks()

    # helpers

    def _driver(self, dialect: Dialect) -> DeviceDriver:
        try:
            return self.drivers[dialect]
        except KeyError as exc:
            raise UnsupportedOperationError(f"no driver for dialect '{dialect}'") from exc

    def _credential(self, credential_id: int, device: str) -> Credential:
        credential = self.repository.get_credential(credential_id)
        if credential is None:
            raise NotFoundError(f"credential {credential_id} not found", device=device)
        return credential

    def _load(self, device_id: int) -> tuple[Device, Credential]:
        device = self.repository.get_device(device_id)
        if device is None:
            raise NotFoundError(f"device {device_id} not found")
        return device, self._credential(device.credential_id, device.label)

    def _session(self, device: Device, credential: Credential) -> AbstractContextManager[Session]:
        target = SessionTarget(
            host=device.ip,
            username=credential.username,
            password=credential.secret,
            port=device.port,
            name=device.label,
        )
        return self._open_session(target, self.timeouts, self.logger)

    def _capture(self, driver: DeviceDriver, session: Session, device: Device) -> ConfigSnapshot:
        log_extra = {"device": device.label}
        try:
            export = driver.export_config(session)
            binary = driver.export_binary(session)
        except TransportError as exc:
            self.logger.error("backup aborted reason=\"%s\"", exc, extra=log_extra)
            raise BackupError(f"backup aborted: {exc}", device=device.label, command=exc.command) from exc
        return self.store.capture(device, export, binary, suffix=driver.export_suffix)

    # flows

    def add_device(
        self,
        ip: str,
        credential_id: int,
        site_id: int | None,
        dialect: Dialect | str,
        role: DeviceRole = "node",
        port: int = 22,
    ) -> Device:
        """Discover a device, register it and take its first backup."""

        dialect = Dialect(dialect)
        log_extra = {"device": ip}
        credential = self._credential(credential_id, ip)
        if site_id is not None and self.repository.get_site(site_id) is None:
            raise NotFoundError(f"site {site_id} not found", device=ip)
        driver = self._driver(dialect)

        with self.locks.hold(ip):
            if self.repository.find_device_by_ip(ip) is not None:
                self.logger.info("device already registered", extra=log_extra)
                raise DuplicateError("device already exists", device=ip)

            candidate = Device(ip=ip, dialect=dialect, credential_id=credential_id, site_id=site_id, role=role, port=port)
            self.logger.info("start discovery dialect=%s", dialect.value, extra=log_extra)
            with self._session(candidate, credential) as session:
                discovery = driver.discover(session)
                identity = discovery.identity
                model = self.repository.upsert_model(identity.chassis) if identity.chassis else None

                candidate.hostname = identity.hostname or ip
                candidate.chassis = identity.chassis
                candidate.serial = identity.serial
                candidate.version = identity.version
                candidate.model_id = model.id if model else None
                device = self.repository.add_device(candidate)
                log_extra = {"device": device.label}
                self.logger.info(
                    "device registered id=%s chassis=%s serial=%s version=%s",
                    device.id,
                    device.chassis or "-",
                    device.serial or "-",
                    device.version or "-",
                    extra=log_extra,
                )

                if driver.discovers_inventory:
                    self._store_inventory(device, discovery.ports, discovery.limiters)

                try:
                    self._capture(driver, session, device)
                except FleetSyncError:
                    self.logger.warning("initial backup failed, device kept", exc_info=True, extra=log_extra)

        return device

    def _store_inventory(self, device: Device, ports: list[ParsedPort], limiters: list[ParsedLimiter]) -> None:
        log_extra = {"device": device.label}
        try:
            self.reconciler.reconcile_ports(device, ports)
        except FleetSyncError:
            self.logger.exception("port inventory not saved", extra=log_extra)
        try:
            self.reconciler.capture_limiters(device, limiters)
        except FleetSyncError:
            self.logger.exception("limiter inventory not saved", extra=log_extra)

    def run_backup(self, device_id: int) -> ConfigSnapshot:
        """Export the device configuration and append it to its history."""

        device, credential = self._load(device_id)
        driver = self._driver(device.dialect)
        log_extra = {"device": device.label}

        with self.locks.hold(device.ip):
            self.logger.info("start backup host=%s", device.ip, extra=log_extra)
            try:
                with self._session(device, credential) as session:
                    snapshot = self._capture(driver, session, device)
            except TransportError as exc:
                self.logger.error("backup aborted reason=\"%s\"", exc, extra=log_extra)
                raise BackupError(f"backup aborted: {exc}", device=device.label) from exc

        self.logger.info("backup completed path=%s", snapshot.text_export_path, extra=log_extra)
        return snapshot

    def resync_ports(self, device_id: int) -> PortReconcileResult:
        """Re-read the device interfaces and reconcile the port inventory."""

        device, credential = self._load(device_id)
        driver = self._driver(device.dialect)
        with self.locks.hold(device.ip):
            with self._session(device, credential) as session:
                parsed = driver.ports(session)
            return self.reconciler.reconcile_ports(device, parsed)

    # inventory operations

    def list_ports(self, device_id: int) -> list[PortRecord]:
        return self.repository.list_ports(device_id)

    def port_usage(self, device_id: int) -> PortUsage:
        """Count free and occupied ports of a registered device."""

        if self.repository.get_device(device_id) is None:
            raise NotFoundError(f"device {device_id} not found")
        return PortUsage.from_ports(self.repository.list_ports(device_id))

    def list_limiters(self, device_id: int) -> list[LimiterRecord]:
        return self.repository.list_limiters(device_id)

    def list_snapshots(self, device_id: int) -> list[ConfigSnapshot]:
        return self.repository.list_snapshots(device_id)

    def add_limiter(self, device_id: int, name: str, bandwidth: str, port: str) -> LimiterRecord:
        """Create a queue rule on the device, then record it."""

        device, credential = self._load(device_id)
        driver = self._driver(device.dialect)
        if not driver.supports_limiters:
            raise UnsupportedOperationError("limiters are only supported on RouterOS devices", device=device.label)

        limiter = ParsedLimiter(
            name=name.replace('"', "").strip(),
            bandwidth=bandwidth.replace('"', "").strip(),
            port=port.replace('"', "").strip(),
        )
        with self.locks.hold(device.ip):
            if any(existing.name == limiter.name for existing in self.repository.list_limiters(device.id)):
                raise DuplicateError(f"limiter {limiter.name} already exists", device=device.label)
            with self._session(device, credential) as session:
                driver.add_limiter(session, limiter)
            record = self.reconciler.add_limiter(device, limiter)

        self.logger.info("limiter created name=%s target=%s", record.name, record.target_port, extra={"device": device.label})
        return record

    def remove_limiter(self, device_id: int, limiter_id: int) -> None:
        """Remove a queue rule from the device, then drop its row."""

        device, credential = self._load(device_id)
        driver = self._driver(device.dialect)

        with self.locks.hold(device.ip):
            limiter = next((row for row in self.repository.list_limiters(device.id) if row.id == limiter_id), None)
            if limiter is None:
                raise NotFoundError(f"limiter {limiter_id} not found", device=device.label)
            with self._session(device, credential) as session:
                driver.remove_limiter(session, limiter.name)
            self.reconciler.remove_limiter(limiter)

        self.logger.info("limiter removed name=%s", limiter.name, extra={"device": device.label})

    def bind_port_to_client(self, port_id: int) -> PortRecord:
        return self.reconciler.bind_client(port_id)

    def release_port(self, port_id: int) -> PortRecord:
        return self.reconciler.release_client(port_id)

    def push_firmware(self, job: UpgradeJob) -> UpgradeJob:
        """Upload the job's image to its device and record the outcome."""

        device = self.repository.get_device(job.device_id)
        credential = self.repository.get_credential(device.credential_id) if device else None
        image = Path(job.image_path)
        log_extra = {"device": device.label if device else "-"}

        if device is None or credential is None or not image.is_file():
            self.logger.error("upgrade job %s missing device, credential or image", job.id, extra=log_extra)
            job.status = "failed"
            return self.repository.update_job(job)

        with self.locks.hold(device.ip):
            try:
                with self._session(device, credential) as session:
                    session.transfer_to_device(image, image.name)
            except TransportError:
                self.logger.exception("firmware upload failed image=%s", image.name, extra=log_extra)
                job.status = "failed"
            else:
                self.logger.info("firmware uploaded image=%s", image.name, extra=log_extra)
                job.status = "completed"
        return self.repository.update_job(job)
