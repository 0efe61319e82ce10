"""Dialect-independent driver interface."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from fleetsync.core.errors import CommandError, UnsupportedOperationError
from fleetsync.core.models import DeviceIdentity, Dialect, DiscoveryResult, ParsedLimiter, ParsedPort
from fleetsync.core.session import Session


class DeviceDriver(ABC):
    """Commands and parsers for one CLI dialect.

    ``discovers_inventory`` marks dialects whose ports and limiters are
    captured when a device is added.
    """

    dialect: Dialect
    export_suffix = ".txt"
    discovers_inventory = False
    supports_limiters = False

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self.logger = logger or logging.getLogger(__name__)

    def run_checked(self, session: Session, command: str) -> str:
        """Run ``command`` and return stdout, failing on a non-zero status or stderr."""

        result = session.run(command)
        if result.exit_status > 0 or result.stderr.strip():
            error_message = result.stderr.strip() or f"exit_status={result.exit_status}"
            self.logger.warning(
                "command failed command=%s status=%s", command, result.exit_status, extra={"device": session.target.name}
            )
            raise CommandError(error_message, device=session.target.name, command=command)
        return result.stdout

    @abstractmethod
    def identity(self, session: Session) -> DeviceIdentity:
        """Read hostname and hardware facts."""

    def ports(self, session: Session) -> list[ParsedPort]:
        raise UnsupportedOperationError(f"{self.dialect.value} does not list ports", device=session.target.name)

    def limiters(self, session: Session) -> list[ParsedLimiter]:
        raise UnsupportedOperationError(f"{self.dialect.value} has no limiters", device=session.target.name)

    @abstractmethod
    def export_config(self, session: Session) -> bytes:
        """Return the text export of the running configuration."""

    def export_binary(self, session: Session) -> bytes | None:
        return None

    def add_limiter(self, session: Session, limiter: ParsedLimiter) -> None:
        raise UnsupportedOperationError(f"{self.dialect.value} has no limiters", device=session.target.name)

    def remove_limiter(self, session: Session, name: str) -> None:
        raise UnsupportedOperationError(f"{self.dialect.value} has no limiters", device=session.target.name)

    def discover(self, session: Session) -> DiscoveryResult:
        """Identity, plus ports and limiters for dialects that discover inventory."""

        result = DiscoveryResult(identity=self.identity(session))
        if self.discovers_inventory:
            result.ports = self.ports(session)
            result.limiters = self.limiters(session)
        return result


def get_driver(dialect: Dialect | str, logger: logging.Logger | None = None) -> DeviceDriver:
    """Return the driver implementing ``dialect``."""

    from fleetsync.cisco.driver import SwitchDriver
    from fleetsync.mikrotik.driver import RouterOSDriver

    drivers: dict[Dialect, type[DeviceDriver]] = {
        Dialect.ROUTEROS: RouterOSDriver,
        Dialect.SWITCH: SwitchDriver,
    }
    try:
        driver_type = drivers[Dialect(dialect)]
    except ValueError as exc:
        raise UnsupportedOperationError(f"unknown dialect '{dialect}'") from exc
    return driver_type(logger=logger)
