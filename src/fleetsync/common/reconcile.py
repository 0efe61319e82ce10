"""Reconciliation of parsed device state with persisted inventory.

Port status moves between ``Free`` and ``Assigned`` from the live naming
comparison on every resync. ``Assigned`` and ``AssignedToClient`` are
exchanged only through :meth:`InventoryReconciler.bind_client` and
:meth:`InventoryReconciler.release_client`; a resync never touches a port
bound to a client. Ports missing from the device are left in place.

Queue rules carry no stable identifier on the device, so they are captured
once when the device is added and later changed only through explicit
add/remove operations.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace

from fleetsync.core.errors import NotFoundError, StateTransitionError
from fleetsync.core.models import Device, LimiterRecord, ParsedLimiter, ParsedPort, PortRecord, PortStatus
from fleetsync.core.repository import Repository


@dataclass(slots=True)
class PortReconcileResult:
    """Rows touched by one port resync."""

    created: list[PortRecord] = field(default_factory=list)
    updated: list[PortRecord] = field(default_factory=list)
    unchanged: int = 0
    client_bound: int = 0


class InventoryReconciler:
    """Applies the port state machine and limiter capture rules."""

    def __init__(self, repository: Repository, logger: logging.Logger | None = None) -> None:
        self.repository = repository
        self.logger = logger or logging.getLogger(__name__)

    def reconcile_ports(self, device: Device, parsed: list[ParsedPort]) -> PortReconcileResult:
        log_extra = {"device": device.label}
        existing = {port.physical_name: port for port in self.repository.list_ports(device.id)}
        result = PortReconcileResult()
        new_rows: list[PortRecord] = []

        for port in parsed:
            current = existing.get(port.physical_name)
            if current is None:
                if any(row.physical_name == port.physical_name for row in new_rows):
                    continue
                new_rows.append(PortRecord(device.id, port.physical_name, port.description, port.status))
                continue

            if current.status is PortStatus.ASSIGNED_TO_CLIENT:
                result.client_bound += 1
                continue

            if current.status is port.status and current.description == port.description:
                result.unchanged += 1
                continue

            if current.status is not port.status:
                self.logger.info(
                    "port status changed port=%s from=%s to=%s",
                    port.physical_name,
                    current.status.value,
                    port.status.value,
                    extra=log_extra,
                )
            result.updated.append(
                self.repository.update_port(replace(current, description=port.description, status=port.status))
            )

        if new_rows:
            result.created = self.repository.add_ports(new_rows)

        self.logger.info(
            "ports reconciled created=%d updated=%d unchanged=%d client_bound=%d",
            len(result.created),
            len(result.updated),
            result.unchanged,
            result.client_bound,
            extra=log_extra,
        )
        return result

    def capture_limiters(self, device: Device, parsed: list[ParsedLimiter]) -> list[LimiterRecord]:
        """Insert discovered queue rules, skipping names already stored."""

        known = {limiter.name for limiter in self.repository.list_limiters(device.id)}
        new_rows: list[LimiterRecord] = []
        for limiter in parsed:
            if limiter.name in known:
                self.logger.debug("duplicate limiter skipped name=%s", limiter.name, extra={"device": device.label})
                continue
            known.add(limiter.name)
            new_rows.append(LimiterRecord(device.id, limiter.name, limiter.bandwidth, limiter.port))

        created = self.repository.add_limiters(new_rows) if new_rows else []
        self.logger.info("limiters captured created=%d", len(created), extra={"device": device.label})
        return created

    def add_limiter(self, device: Device, limiter: ParsedLimiter) -> LimiterRecord:
        return self.repository.add_limiters([LimiterRecord(device.id, limiter.name, limiter.bandwidth, limiter.port)])[0]

    def remove_limiter(self, limiter: LimiterRecord) -> None:
        self.repository.delete_limiter(limiter.id)

    def _transition(self, port_id: int, source: PortStatus, target: PortStatus) -> PortRecord:
        port = self.repository.get_port(port_id)
        if port is None:
            raise NotFoundError(f"port {port_id} not found")
        if port.status is not source:
            raise StateTransitionError(
                f"port {port.physical_name} is {port.status.value}, expected {source.value}", device=str(port.device_id)
            )
        return self.repository.update_port(replace(port, status=target))

    def bind_client(self, port_id: int) -> PortRecord:
        return self._transition(port_id, PortStatus.ASSIGNED, PortStatus.ASSIGNED_TO_CLIENT)

    def release_client(self, port_id: int) -> PortRecord:
        return self._transition(port_id, PortStatus.ASSIGNED_TO_CLIENT, PortStatus.ASSIGNED)
