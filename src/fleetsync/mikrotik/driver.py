"""RouterOS dialect: identity, interfaces, simple queues and backups."""

from __future__ import annotations

import logging
import uuid
from pathlib import Path
from tempfile import TemporaryDirectory

from fleetsync.common.driver import DeviceDriver
from fleetsync.core.errors import CommandError, ParseError, TransferError, TransportError
from fleetsync.core.models import DeviceIdentity, Dialect, ParsedLimiter, ParsedPort
from fleetsync.core.session import Session
from fleetsync.parsers.identity import parse_field
from fleetsync.parsers.limiters import parse_limiters
from fleetsync.parsers.ports import parse_port_pairs

ROUTERBOARD_COMMAND = "/system routerboard print"
IDENTITY_COMMAND = "/system identity print"
PORTS_COMMAND = (
    ":foreach i in=[/interface ethernet find] do={:put ([/interface ethernet get $i default-name]"
    ' . " - " . [/interface ethernet get $i name])}'
)
QUEUE_EXPORT_COMMAND = "/queue simple export"
DEFAULT_QUEUE = "hotspot-default/hotspot-default"


def _clean(value: str) -> str:
    return value.replace('"', "").strip()


def _artifact_name() -> str:
    return f"fleetsync-{uuid.uuid4().hex[:12]}"


class RouterOSDriver(DeviceDriver):
    """Driver for RouterOS devices."""

    dialect = Dialect.ROUTEROS
    export_suffix = ".rsc"
    discovers_inventory = True
    supports_limiters = True

    def __init__(self, logger: logging.Logger | None = None, default_queue: str = DEFAULT_QUEUE) -> None:
        super().__init__(logger)
        self.default_queue = default_queue

    def identity(self, session: Session) -> DeviceIdentity:
        output = self.run_checked(session, ROUTERBOARD_COMMAND)
        if not output.strip():
            raise ParseError("empty routerboard output", device=session.target.name, command=ROUTERBOARD_COMMAND)

        hostname = parse_field(self.run_checked(session, IDENTITY_COMMAND), "name:")
        return DeviceIdentity(
            hostname=hostname,
            chassis=parse_field(output, "model:"),
            serial=parse_field(output, "serial-number:"),
            version=parse_field(output, "upgrade-firmware:"),
        )

    def ports(self, session: Session) -> list[ParsedPort]:
        return parse_port_pairs(self.run_checked(session, PORTS_COMMAND))

    def limiters(self, session: Session) -> list[ParsedLimiter]:
        return parse_limiters(self.run_checked(session, QUEUE_EXPORT_COMMAND))

    def add_limiter(self, session: Session, limiter: ParsedLimiter) -> None:
        command = (
            f'/queue simple add max-limit={_clean(limiter.bandwidth)} name="{_clean(limiter.name)}" '
            f"queue={self.default_queue} target={_clean(limiter.port)}"
        )
        self.run_checked(session, command)

    def remove_limiter(self, session: Session, name: str) -> None:
        self.run_checked(session, f'/queue simple remove [find name="{_clean(name)}"]')

    def cleanup_remote_file(self, session: Session, filename: str) -> bool:
        """Remove a temporary file from the device without failing the caller."""

        log_extra = {"device": session.target.name}
        try:
            self.run_checked(session, f'/file remove [find name="{filename}"]')
        except TransportError as exc:
            self.logger.warning("failed to remove remote file filename=%s error=%s", filename, exc, extra=log_extra)
            return False
        self.logger.info("remote file cleanup requested filename=%s", filename, extra=log_extra)
        return True

    def _download(self, session: Session, remote_name: str) -> bytes:
        with TemporaryDirectory(prefix="fleetsync-") as tmpdir:
            local_path = session.transfer_from_device(remote_name, Path(tmpdir) / remote_name)
            data = local_path.read_bytes()
        if not data:
            self.logger.warning(
                "downloaded file empty, remote file kept for manual recovery filename=%s",
                remote_name,
                extra={"device": session.target.name},
            )
            raise TransferError(f"downloaded file failed verification: {remote_name}", device=session.target.name)
        return data

    def export_config(self, session: Session) -> bytes:
        name = _artifact_name()
        remote_name = f"{name}.rsc"
        command = f"/export file={name}"
        self.run_checked(session, command)
        if session.remote_size(remote_name) <= 0:
            raise CommandError("export file is empty on device", device=session.target.name, command=command)

        data = self._download(session, remote_name)
        self.logger.debug("export received bytes=%d", len(data), extra={"device": session.target.name})
        self.cleanup_remote_file(session, remote_name)
        return data

    def export_binary(self, session: Session) -> bytes:
        name = _artifact_name()
        remote_name = f"{name}.backup"
        command = f"/system backup save name={name} dont-encrypt=yes"
        self.logger.info("start system-backup filename=%s", remote_name, extra={"device": session.target.name})
        self.run_checked(session, command)
        if session.remote_size(remote_name) <= 0:
            raise CommandError("backup file is empty on device", device=session.target.name, command=command)

        data = self._download(session, remote_name)
        self.logger.info("binary-backup downloaded size=%d", len(data), extra={"device": session.target.name})
        self.cleanup_remote_file(session, remote_name)
        return data
