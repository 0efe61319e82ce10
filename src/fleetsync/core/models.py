"""Data models for device inventory and configuration history."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Literal


DeviceRole = Literal["node", "client"]
JobStatus = Literal["pending", "completed", "failed"]


class Dialect(str, Enum):
    """CLI grammar spoken by a device."""

    ROUTEROS = "routeros"
    SWITCH = "switch"


class PortStatus(str, Enum):
    """Assignment state of a physical port."""

    FREE = "Free"
    ASSIGNED = "Assigned"
    ASSIGNED_TO_CLIENT = "AssignedToClient"


@dataclass(slots=True)
class Credential:
    """Username/secret pair shared by any number of devices."""

    id: int
    username: str
    secret: str


@dataclass(slots=True)
class Site:
    """Physical location a device belongs to."""

    id: int
    name: str


@dataclass(slots=True)
class DeviceModel:
    """Hardware model, keyed by chassis name."""

    id: int
    chassis: str


@dataclass(slots=True)
class Device:
    """Representation of a managed network device."""

    ip: str
    dialect: Dialect
    credential_id: int
    site_id: int | None = None
    role: DeviceRole = "node"
    hostname: str = ""
    chassis: str = ""
    serial: str = ""
    version: str = ""
    model_id: int | None = None
    port: int = 22
    id: int | None = None

    @property
    def label(self) -> str:
        """Name used in log lines and error context."""

        return self.hostname or self.ip


@dataclass(slots=True)
class PortRecord:
    """Inventory row for one physical interface of a device."""

    device_id: int
    physical_name: str
    description: str
    status: PortStatus
    id: int | None = None


@dataclass(slots=True)
class PortUsage:
    """Occupancy of the port inventory of one device."""

    total: int
    in_use: int
    free: int

    @property
    def usage_percent(self) -> float:
        return self.in_use / self.total * 100 if self.total else 0.0

    @property
    def free_percent(self) -> float:
        return self.free / self.total * 100 if self.total else 0.0

    @classmethod
    def from_ports(cls, ports: list[PortRecord]) -> PortUsage:
        free = sum(1 for port in ports if port.status is PortStatus.FREE)
        return cls(total=len(ports), in_use=len(ports) - free, free=free)


@dataclass(slots=True)
class LimiterRecord:
    """Inventory row for one bandwidth-limiting queue rule."""

    device_id: int
    name: str
    bandwidth_limit: str
    target_port: str
    id: int | None = None


@dataclass(slots=True)
class ConfigSnapshot:
    """Immutable record of one captured configuration."""

    device_id: int
    captured_at: int
    text_export_path: str
    text_hash: str
    binary_blob_path: str | None = None
    binary_hash: str | None = None
    diff_path: str | None = None
    id: int | None = None


@dataclass(slots=True)
class UpgradeJob:
    """Scheduled upload of a firmware image to a device."""

    device_id: int
    image_path: str
    scheduled_at: float
    status: JobStatus = "pending"
    id: int | None = None


@dataclass(slots=True)
class DeviceIdentity:
    """Identity and hardware facts reported by a device."""

    hostname: str = ""
    chassis: str = ""
    serial: str = ""
    version: str = ""


@dataclass(slots=True)
class ParsedPort:
    """Port as reported by the device, before reconciliation."""

    physical_name: str
    description: str
    status: PortStatus


@dataclass(slots=True)
class ParsedLimiter:
    """Queue rule as reported by the device, before reconciliation."""

    name: str
    bandwidth: str
    port: str


@dataclass(slots=True)
class DiscoveryResult:
    """Transient output of one discovery pass."""

    identity: DeviceIdentity
    ports: list[ParsedPort] = field(default_factory=list)
    limiters: list[ParsedLimiter] = field(default_factory=list)


@dataclass(slots=True)
class CommandResult:
    """Raw output of a single remote command."""

    stdout: str
    stderr: str
    exit_status: int

    @property
    def ok(self) -> bool:
        return self.exit_status == 0
