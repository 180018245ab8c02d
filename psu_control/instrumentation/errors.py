"""Error taxonomy shared by the transport, protocol and orchestration layers."""

from __future__ import annotations


class PowerSupplyError(RuntimeError):
    """Base error for everything raised by the control core."""


# -- connection -------------------------------------------------------------
class ConnectError(PowerSupplyError):
    """A connection attempt was aborted."""


class PortUnavailable(ConnectError):
    """The serial device does not exist or cannot be opened."""


class PermissionDenied(ConnectError):
    """The OS refused access to the serial device."""


class SyncFailed(ConnectError):
    """A state-synchronisation query failed while connecting."""


# -- commands ---------------------------------------------------------------
class CommandError(PowerSupplyError):
    """A command could not be executed."""


class NotConnectedError(CommandError):
    """No device is connected (or the connection is being torn down)."""


class CommandRejected(CommandError):
    """The command is not accepted through this entry point."""


class CommandTimeout(CommandError):
    """No response line arrived within the read timeout."""


class MalformedResponse(CommandError):
    """A response line could not be parsed into the expected type."""

    def __init__(self, message: str, raw: str = "") -> None:
        super().__init__(message)
        self.raw = raw


class TransportError(CommandError):
    """I/O-level failure on the serial link. Always fatal to the connection."""


class DeviceDisconnected(TransportError):
    """The serial device vanished (cable pulled, USB adapter reset)."""


# -- automation -------------------------------------------------------------
class AutomationError(PowerSupplyError):
    """The waveform loop could not be started or was aborted."""


class InvalidConfig(AutomationError, ValueError):
    """Configuration rejected at the API boundary."""


class AutomationBusy(AutomationError):
    """A waveform loop is already running."""
