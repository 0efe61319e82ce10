"""SSH session adapter shared by every device dialect.

A :class:`Session` wraps one authenticated ``paramiko.SSHClient``. Sessions
are acquired through :func:`open_session`, which guarantees that the SSH
connection (and any SFTP channel opened on it) is closed on every exit path,
including command failures, timeouts and caller cancellation.
"""

from __future__ import annotations

import logging
import re
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterator, Sequence

import paramiko

from fleetsync.core.errors import (
    AuthError,
    CommandError,
    ConnectError,
    SessionTimeoutError,
    TransferError,
)
from fleetsync.core.models import CommandResult

DEFAULT_PROMPT = re.compile(r"[\w.\-@()/:]+[>#]\s*$")
RECV_CHUNK = 65535
POLL_INTERVAL = 0.05

ClientFactory = Callable[[], Any]


@dataclass(slots=True)
class SessionTimeouts:
    """Deadlines (seconds) for the blocking steps of a session."""

    connect: float = 10.0
    command: float = 30.0
    transfer: float = 60.0


@dataclass(slots=True)
class SessionTarget:
    """Where and how to log in."""

    host: str
    username: str
    password: str
    port: int = 22
    name: str = "-"


def _strip_echo_and_prompt(text: str) -> str:
    lines = text.split("\n")
    body = lines[1:-1]
    if not body:
        return ""
    return "\n".join(body) + "\n"


class Session:
    """Command execution and file transfer over one SSH connection."""

    def __init__(
        self,
        client: Any,
        target: SessionTarget,
        timeouts: SessionTimeouts,
        logger: logging.Logger | None = None,
    ) -> None:
        self._client = client
        self._sftp: Any = None
        self._closed = False
        self.target = target
        self.timeouts = timeouts
        self._logger = logger or logging.getLogger(__name__)
        self._log_extra = {"device": target.name}

    @property
    def closed(self) -> bool:
        return self._closed

    def __enter__(self) -> Session:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _ensure_open(self, command: str | None = None) -> None:
        if self._closed:
            raise CommandError("session already closed", device=self.target.name, command=command)

    def run(self, command: str) -> CommandResult:
        """Execute ``command`` and return its output and exit status.

        ``exit_status`` is -1 when the device closes the channel without
        reporting one, which some switch firmwares always do.
        """

        self._ensure_open(command)
        self._logger.debug("executing command='%s'", command, extra=self._log_extra)
        try:
            _, stdout, _ = self._client.exec_command(command, timeout=self.timeouts.command)
            raw_output, raw_error = self._drain(stdout.channel, command)
            exit_status = stdout.channel.recv_exit_status()
            output = raw_output.decode("utf-8", errors="replace")
            error_output = raw_error.decode("utf-8", errors="replace")
        except TimeoutError as exc:
            raise SessionTimeoutError(
                f"command exceeded {self.timeouts.command}s", device=self.target.name, command=command
            ) from exc
        except (paramiko.SSHException, EOFError, OSError) as exc:
            raise CommandError(
                f"channel closed unexpectedly ({exc})", device=self.target.name, command=command
            ) from exc

        self._logger.debug(
            "command finished status=%d bytes=%d", exit_status, len(output.encode("utf-8")), extra=self._log_extra
        )
        return CommandResult(stdout=output, stderr=error_output, exit_status=exit_status)

    def _drain(self, channel: Any, command: str) -> tuple[bytes, bytes]:
        """Read stdout and stderr until the command exits or its deadline passes.

        The deadline covers the whole command, so a device trickling output
        cannot keep the channel open past the command timeout.
        """

        deadline = time.monotonic() + self.timeouts.command
        output = bytearray()
        error_output = bytearray()
        while True:
            if time.monotonic() > deadline:
                channel.close()
                raise SessionTimeoutError(
                    f"command exceeded {self.timeouts.command}s", device=self.target.name, command=command
                )
            if channel.recv_ready():
                output += channel.recv(RECV_CHUNK)
            elif channel.recv_stderr_ready():
                error_output += channel.recv_stderr(RECV_CHUNK)
            elif channel.exit_status_ready():
                return bytes(output), bytes(error_output)
            else:
                time.sleep(POLL_INTERVAL)

    def run_interactive(self, commands: Sequence[str], prompt: re.Pattern[str] = DEFAULT_PROMPT) -> list[str]:
        """Send ``commands`` through an interactive shell, one per prompt.

        Returns the output of each command with the echoed command line and
        the trailing prompt removed.
        """

        self._ensure_open(commands[0] if commands else None)
        try:
            channel = self._client.invoke_shell(width=511, height=0)
        except paramiko.SSHException as exc:
            raise CommandError("unable to open interactive shell", device=self.target.name) from exc

        try:
            channel.settimeout(self.timeouts.command)
            self._read_until_prompt(channel, prompt, None)
            outputs: list[str] = []
            for command in commands:
                self._logger.debug("executing interactive command='%s'", command, extra=self._log_extra)
                channel.send(f"{command}\n")
                outputs.append(_strip_echo_and_prompt(self._read_until_prompt(channel, prompt, command)))
            return outputs
        finally:
            channel.close()

    def _read_until_prompt(self, channel: Any, prompt: re.Pattern[str], command: str | None) -> str:
        deadline = time.monotonic() + self.timeouts.command
        buffer = ""
        while True:
            if time.monotonic() > deadline:
                raise SessionTimeoutError(
                    f"no prompt within {self.timeouts.command}s", device=self.target.name, command=command
                )
            try:
                chunk = channel.recv(RECV_CHUNK)
            except TimeoutError as exc:
                raise SessionTimeoutError(
                    f"no prompt within {self.timeouts.command}s", device=self.target.name, command=command
                ) from exc
            except (paramiko.SSHException, OSError) as exc:
                raise CommandError("interactive channel failed", device=self.target.name, command=command) from exc

            if not chunk:
                raise CommandError("channel closed unexpectedly", device=self.target.name, command=command)

            buffer += chunk.decode("utf-8", errors="replace")
            normalized = buffer.replace("\r\n", "\n").replace("\r", "\n")
            if prompt.search(normalized):
                return normalized

    def _open_sftp(self) -> Any:
        if self._sftp is None:
            try:
                self._sftp = self._client.open_sftp()
            except (paramiko.SSHException, OSError) as exc:
                raise TransferError("unable to open SFTP session", device=self.target.name) from exc
            self._sftp.get_channel().settimeout(self.timeouts.transfer)
        return self._sftp

    def remote_size(self, remote_name: str) -> int:
        """Return the size of a file on the device."""

        self._ensure_open()
        sftp = self._open_sftp()
        try:
            return sftp.stat(remote_name).st_size
        except FileNotFoundError as exc:
            raise TransferError(f"remote file not found: {remote_name}", device=self.target.name) from exc
        except (OSError, paramiko.SSHException) as exc:
            raise TransferError(f"unable to access remote file: {remote_name}", device=self.target.name) from exc

    def transfer_from_device(self, remote_name: str, local_path: Path) -> Path:
        """Download ``remote_name`` into ``local_path``."""

        self._ensure_open()
        sftp = self._open_sftp()
        local_path.parent.mkdir(parents=True, exist_ok=True)
        self._logger.debug("downloading file=%s to=%s", remote_name, local_path, extra=self._log_extra)
        try:
            sftp.get(remote_name, str(local_path))
        except (OSError, paramiko.SSHException) as exc:
            raise TransferError(f"download failed file={remote_name} reason=\"{exc}\"", device=self.target.name) from exc
        return local_path

    def transfer_to_device(self, local_path: Path, remote_name: str) -> None:
        """Upload ``local_path`` to the device as ``remote_name``."""

        self._ensure_open()
        sftp = self._open_sftp()
        self._logger.debug("uploading file=%s as=%s", local_path, remote_name, extra=self._log_extra)
        try:
            sftp.put(str(local_path), remote_name)
        except (OSError, paramiko.SSHException) as exc:
            raise TransferError(f"upload failed file={local_path} reason=\"{exc}\"", device=self.target.name) from exc

    def close(self) -> None:
        """Release the SFTP channel and the SSH connection. Safe to call twice."""

        if self._closed:
            return
        self._closed = True
        try:
            if self._sftp is not None:
                self._sftp.close()
        finally:
            self._client.close()
            self._logger.debug("ssh session closed host=%s", self.target.host, extra=self._log_extra)


def _connect_client(ssh: Any, target: SessionTarget, timeouts: SessionTimeouts) -> None:
    try:
        ssh.connect(
            target.host,
            port=target.port,
            username=target.username,
            password=target.password,
            look_for_keys=False,
            allow_agent=False,
            timeout=timeouts.connect,
            banner_timeout=timeouts.connect,
            auth_timeout=timeouts.connect,
        )
    except paramiko.AuthenticationException as exc:
        raise AuthError("SSH authentication failed", device=target.name) from exc
    except TimeoutError as exc:
        raise SessionTimeoutError(f"SSH connection exceeded {timeouts.connect}s", device=target.name) from exc
    except (paramiko.SSHException, OSError) as exc:
        raise ConnectError(f"SSH connection failed host={target.host} port={target.port}", device=target.name) from exc


def connect(
    target: SessionTarget,
    timeouts: SessionTimeouts | None = None,
    logger: logging.Logger | None = None,
    client_factory: ClientFactory = paramiko.SSHClient,
) -> Session:
    """Open an authenticated session. Prefer :func:`open_session`."""

    timeouts = timeouts or SessionTimeouts()
    logger = logger or logging.getLogger(__name__)
    log_extra = {"device": target.name}

    ssh = client_factory()
    ssh.set_missing_host_key_policy(paramiko.AutoAddPolicy())
    logger.debug("opening ssh session host=%s port=%s", target.host, target.port, extra=log_extra)
    try:
        _connect_client(ssh, target, timeouts)
    except BaseException:
        ssh.close()
        raise

    logger.info("ssh ok host=%s port=%s", target.host, target.port, extra=log_extra)
    return Session(ssh, target, timeouts, logger)


@contextmanager
def open_session(
    target: SessionTarget,
    timeouts: SessionTimeouts | None = None,
    logger: logging.Logger | None = None,
    client_factory: ClientFactory = paramiko.SSHClient,
) -> Iterator[Session]:
    """Open a session and close it when the block exits, however it exits."""

    session = connect(target, timeouts, logger, client_factory)
    try:
        yield session
    finally:
        session.close()
