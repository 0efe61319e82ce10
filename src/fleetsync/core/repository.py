"""Record storage consumed by the synchronization engine.

The engine only needs a handful of create/find/update operations, captured
by :class:`Repository`. :class:`InMemoryRepository` keeps everything in
process memory; :class:`YamlRepository` additionally persists every write to
an inventory file so the CLI can be run repeatedly against the same fleet.
"""

from __future__ import annotations

import copy
import logging
import threading
from contextlib import contextmanager
from dataclasses import asdict, replace
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Protocol, TypeVar

import yaml

from fleetsync.core.errors import DuplicateError, NotFoundError, PersistenceError
from fleetsync.core.models import (
    ConfigSnapshot,
    Credential,
    Device,
    DeviceModel,
    Dialect,
    LimiterRecord,
    PortRecord,
    PortStatus,
    Site,
    UpgradeJob,
)
from fleetsync.core.storage import write_atomic

logger = logging.getLogger(__name__)

T = TypeVar("T")

TABLES: dict[str, type] = {
    "credentials": Credential,
    "sites": Site,
    "models": DeviceModel,
    "devices": Device,
    "ports": PortRecord,
    "limiters": LimiterRecord,
    "snapshots": ConfigSnapshot,
    "jobs": UpgradeJob,
}


class Repository(Protocol):
    """Persistence operations used by the engine."""

    def get_credential(self, credential_id: int) -> Credential | None: ...

    def get_site(self, site_id: int) -> Site | None: ...

    def get_device(self, device_id: int) -> Device | None: ...

    def find_device_by_ip(self, ip: str) -> Device | None: ...

    def list_devices(self) -> list[Device]: ...

    def add_device(self, device: Device) -> Device: ...

    def update_device(self, device: Device) -> Device: ...

    def upsert_model(self, chassis: str) -> DeviceModel: ...

    def get_port(self, port_id: int) -> PortRecord | None: ...

    def list_ports(self, device_id: int) -> list[PortRecord]: ...

    def add_ports(self, ports: list[PortRecord]) -> list[PortRecord]: ...

    def update_port(self, port: PortRecord) -> PortRecord: ...

    def list_limiters(self, device_id: int) -> list[LimiterRecord]: ...

    def add_limiters(self, limiters: list[LimiterRecord]) -> list[LimiterRecord]: ...

    def delete_limiter(self, limiter_id: int) -> None: ...

    def add_snapshot(self, snapshot: ConfigSnapshot) -> ConfigSnapshot: ...

    def list_snapshots(self, device_id: int) -> list[ConfigSnapshot]: ...

    def list_pending_jobs(self, now: float) -> list[UpgradeJob]: ...

    def update_job(self, job: UpgradeJob) -> UpgradeJob: ...


class InMemoryRepository:
    """Thread-safe repository holding records in dictionaries.

    Records handed out are copies; callers change state only through the
    update methods.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._tables: dict[str, dict[int, Any]] = {name: {} for name in TABLES}
        self._last_ids: dict[str, int] = {name: 0 for name in TABLES}

    @contextmanager
    def _transaction(self) -> Iterator[None]:
        with self._lock:
            tables = copy.deepcopy(self._tables)
            last_ids = dict(self._last_ids)
            try:
                yield
                self._commit()
            except BaseException:
                self._tables = tables
                self._last_ids = last_ids
                raise

    def _commit(self) -> None:
        """Hook for subclasses that persist state."""

    def _insert(self, table: str, record: T) -> T:
        self._last_ids[table] += 1
        stored = replace(record, id=self._last_ids[table])
        self._tables[table][stored.id] = stored
        return replace(stored)

    def _get(self, table: str, record_id: int) -> Any:
        with self._lock:
            record = self._tables[table].get(record_id)
            return replace(record) if record is not None else None

    def _select(self, table: str, **criteria: Any) -> list[Any]:
        with self._lock:
            return [
                replace(record)
                for record in self._tables[table].values()
                if all(getattr(record, key) == value for key, value in criteria.items())
            ]

    def _update(self, table: str, record: T) -> T:
        with self._transaction():
            if record.id not in self._tables[table]:
                raise NotFoundError(f"{table} record {record.id} not found")
            self._tables[table][record.id] = replace(record)
        return replace(record)

    # credentials and sites

    def add_credential(self, username: str, secret: str) -> Credential:
        with self._transaction():
            return self._insert("credentials", Credential(id=0, username=username, secret=secret))

    def get_credential(self, credential_id: int) -> Credential | None:
        return self._get("credentials", credential_id)

    def add_site(self, name: str) -> Site:
        with self._transaction():
            return self._insert("sites", Site(id=0, name=name))

    def get_site(self, site_id: int) -> Site | None:
        return self._get("sites", site_id)

    # devices and models

    def get_device(self, device_id: int) -> Device | None:
        return self._get("devices", device_id)

    def find_device_by_ip(self, ip: str) -> Device | None:
        matches = self._select("devices", ip=ip)
        return matches[0] if matches else None

    def list_devices(self) -> list[Device]:
        return sorted(self._select("devices"), key=lambda device: device.id)

    def add_device(self, device: Device) -> Device:
        with self._transaction():
            if any(existing.ip == device.ip for existing in self._tables["devices"].values()):
                raise DuplicateError("device already exists", device=device.ip)
            return self._insert("devices", device)

    def update_device(self, device: Device) -> Device:
        return self._update("devices", device)

    def upsert_model(self, chassis: str) -> DeviceModel:
        with self._transaction():
            for model in self._tables["models"].values():
                if model.chassis == chassis:
                    return replace(model)
            return self._insert("models", DeviceModel(id=0, chassis=chassis))

    # ports

    def get_port(self, port_id: int) -> PortRecord | None:
        return self._get("ports", port_id)

    def list_ports(self, device_id: int) -> list[PortRecord]:
        return sorted(self._select("ports", device_id=device_id), key=lambda port: port.physical_name)

    def add_ports(self, ports: list[PortRecord]) -> list[PortRecord]:
        with self._transaction():
            for port in ports:
                if any(
                    existing.device_id == port.device_id and existing.physical_name == port.physical_name
                    for existing in self._tables["ports"].values()
                ):
                    raise DuplicateError(f"port {port.physical_name} already exists", device=str(port.device_id))
            return [self._insert("ports", port) for port in ports]

    def update_port(self, port: PortRecord) -> PortRecord:
        return self._update("ports", port)

    # limiters

    def list_limiters(self, device_id: int) -> list[LimiterRecord]:
        return sorted(self._select("limiters", device_id=device_id), key=lambda limiter: limiter.name)

    def add_limiters(self, limiters: list[LimiterRecord]) -> list[LimiterRecord]:
        with self._transaction():
            return [self._insert("limiters", limiter) for limiter in limiters]

    def delete_limiter(self, limiter_id: int) -> None:
        with self._transaction():
            if self._tables["limiters"].pop(limiter_id, None) is None:
                raise NotFoundError(f"limiter {limiter_id} not found")

    # snapshots

    def add_snapshot(self, snapshot: ConfigSnapshot) -> ConfigSnapshot:
        with self._transaction():
            return self._insert("snapshots", snapshot)

    def list_snapshots(self, device_id: int) -> list[ConfigSnapshot]:
        return sorted(self._select("snapshots", device_id=device_id), key=lambda snap: snap.captured_at)

    # upgrade jobs

    def add_job(self, job: UpgradeJob) -> UpgradeJob:
        with self._transaction():
            return self._insert("jobs", job)

    def list_pending_jobs(self, now: float) -> list[UpgradeJob]:
        jobs = [job for job in self._select("jobs", status="pending") if job.scheduled_at <= now]
        return sorted(jobs, key=lambda job: (job.scheduled_at, job.id))

    def update_job(self, job: UpgradeJob) -> UpgradeJob:
        return self._update("jobs", job)


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    return value


def _row_to_record(table: str, row: dict[str, Any]) -> Any:
    record_type = TABLES[table]
    if table == "devices":
        row = {**row, "dialect": Dialect(row["dialect"])}
    elif table == "ports":
        row = {**row, "status": PortStatus(row["status"])}
    return record_type(**row)


class YamlRepository(InMemoryRepository):
    """Repository persisted to a YAML inventory file after every write."""

    def __init__(self, path: Path) -> None:
        super().__init__()
        self.path = path
        if path.exists():
            self._load()

    def _load(self) -> None:
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                data = yaml.safe_load(handle) or {}
        except (OSError, yaml.YAMLError) as exc:
            raise PersistenceError(f"unable to read inventory file {self.path}") from exc

        if not isinstance(data, dict):
            raise PersistenceError(f"inventory file {self.path} must contain a mapping")

        for table in TABLES:
            for row in data.get(table) or []:
                record = _row_to_record(table, row)
                self._tables[table][record.id] = record
                self._last_ids[table] = max(self._last_ids[table], record.id)

        logger.debug("inventory loaded path=%s devices=%d", self.path, len(self._tables["devices"]))

    def _commit(self) -> None:
        data = {
            table: [
                {key: _plain(value) for key, value in asdict(record).items()}
                for record in sorted(rows.values(), key=lambda record: record.id)
            ]
            for table, rows in self._tables.items()
        }
        try:
            write_atomic(self.path, yaml.safe_dump(data, sort_keys=False, allow_unicode=True).encode("utf-8"))
        except (OSError, yaml.YAMLError) as exc:
            raise PersistenceError(f"unable to write inventory file {self.path}") from exc
