"""Exception hierarchy shared by every FleetSync component."""

from __future__ import annotations


class FleetSyncError(RuntimeError):
    """Base exception carrying the device and command that failed."""

    def __init__(self, message: str, *, device: str | None = None, command: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.device = device
        self.command = command

    def __str__(self) -> str:
        parts = [self.message]
        if self.device:
            parts.append(f"device={self.device}")
        if self.command:
            parts.append(f"command='{self.command}'")
        return " ".join(parts)


class TransportError(FleetSyncError):
    """Base exception for remote session failures."""


class ConnectError(TransportError):
    """Raised when the device cannot be reached."""


class AuthError(TransportError):
    """Raised when SSH authentication fails."""


class SessionTimeoutError(TransportError):
    """Raised when connecting, a command or a transfer exceeds its deadline."""


class CommandError(TransportError):
    """Raised when a command cannot be executed successfully."""


class TransferError(TransportError):
    """Raised when a file cannot be copied to or from the device."""


class ParseError(FleetSyncError):
    """Raised when mandatory device output is structurally unusable."""


class DuplicateError(FleetSyncError):
    """Raised when a device with the same ip is already registered."""


class NotFoundError(FleetSyncError):
    """Raised when a referenced entity does not exist."""


class PersistenceError(FleetSyncError):
    """Raised when a snapshot or inventory write fails."""


class BackupError(FleetSyncError):
    """Raised when a backup run is aborted by a remote failure."""


class StateTransitionError(FleetSyncError):
    """Raised when a port status change is not allowed from its current state."""


class UnsupportedOperationError(FleetSyncError):
    """Raised when a dialect does not implement the requested capability."""
