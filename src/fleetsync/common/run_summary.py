"""Machine-readable summary of one backup sweep."""

from __future__ import annotations

import json
import logging
from collections import Counter
from dataclasses import asdict, dataclass, field
from pathlib import Path


@dataclass(slots=True)
class TaskResultData:
    """Outcome of one task (backup or port resync) on one device."""

    performed: bool
    saved_path: str | None = None
    text_hash: str | None = None
    diff_path: str | None = None
    ports_created: int | None = None
    ports_updated: int | None = None
    error: str | None = None


@dataclass(slots=True)
class DeviceResultData:
    device_id: int
    name: str
    dialect: str
    status: str
    tasks: dict[str, TaskResultData] = field(default_factory=dict)
    error: str | None = None

    @property
    def snapshot_created(self) -> bool:
        backup = self.tasks.get("backup")
        return backup is not None and backup.performed and bool(backup.saved_path)


class RunSummaryBuilder:
    """Collect device results of a sweep and render them as JSON."""

    def __init__(self, *, run_id: str, timestamp: str) -> None:
        self.run_id = run_id
        self.timestamp = timestamp
        self.devices_total = 0
        self._statuses: Counter[str] = Counter()
        self._devices: list[DeviceResultData] = []

    def set_devices_total(self, total: int) -> None:
        self.devices_total = max(0, total)

    def add_device(self, device: DeviceResultData) -> None:
        self._devices.append(device)
        self._statuses[device.status] += 1

    def build(self) -> dict[str, object]:
        return {
            "run_id": self.run_id,
            "timestamp": self.timestamp,
            "totals": {
                "devices_total": self.devices_total,
                "devices_success": self._statuses["success"],
                "devices_failed": self._statuses["failed"],
                "snapshots_created": sum(1 for device in self._devices if device.snapshot_created),
            },
            "devices": [asdict(device) for device in self._devices],
        }

    def save(self, summary_dir: Path, logger: logging.Logger) -> Path:
        summary_dir.mkdir(parents=True, exist_ok=True)
        target = summary_dir / f"run_{self.run_id}.json"
        target.write_text(json.dumps(self.build(), indent=2, ensure_ascii=False), encoding="utf-8")
        logger.info("run summary saved path=%s", target)
        return target
