"""Routing-switch dialect (IOS-style CLI)."""

from __future__ import annotations

from fleetsync.common.driver import DeviceDriver
from fleetsync.core.errors import CommandError, ParseError
from fleetsync.core.models import DeviceIdentity, Dialect, ParsedPort
from fleetsync.core.session import Session
from fleetsync.parsers.identity import parse_field, parse_uptime_hostname, parse_version
from fleetsync.parsers.ports import parse_port_table

VERSION_COMMAND = "show version"
PORTS_COMMAND = "show interfaces description"
EXPORT_COMMANDS = ("terminal length 0", "show running-config")


class SwitchDriver(DeviceDriver):
    """Driver for IOS-style routing switches. Text export only."""

    dialect = Dialect.SWITCH
    export_suffix = ".cfg"

    def identity(self, session: Session) -> DeviceIdentity:
        output = self.run_checked(session, VERSION_COMMAND)
        if not output.strip():
            raise ParseError("empty version output", device=session.target.name, command=VERSION_COMMAND)

        return DeviceIdentity(
            hostname=parse_uptime_hostname(output),
            chassis=parse_field(output, "Model number"),
            serial=parse_field(output, "System serial number"),
            version=parse_version(output),
        )

    def ports(self, session: Session) -> list[ParsedPort]:
        return parse_port_table(self.run_checked(session, PORTS_COMMAND))

    def export_config(self, session: Session) -> bytes:
        running_config = session.run_interactive(EXPORT_COMMANDS)[-1]
        if not running_config.strip():
            raise CommandError("empty running-config", device=session.target.name, command=EXPORT_COMMANDS[-1])
        self.logger.debug(
            "export received bytes=%d", len(running_config.encode("utf-8")), extra={"device": session.target.name}
        )
        return running_config.encode("utf-8")
