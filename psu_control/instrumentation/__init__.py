"""Instrument communication: serial transport, SCPI protocol, command gate."""

from .errors import (
    AutomationBusy,
    AutomationError,
    CommandError,
    CommandRejected,
    CommandTimeout,
    ConnectError,
    DeviceDisconnected,
    InvalidConfig,
    MalformedResponse,
    NotConnectedError,
    PermissionDenied,
    PortUnavailable,
    PowerSupplyError,
    SyncFailed,
    TransportError,
)
from .scpi import Command, CommandKind, Measurement, ScpiClient, Setpoints
from .serializer import CommandSerializer, Producer
from .transport import LineTransport, PortDescriptor, SerialTransport, list_available_ports

__all__ = [
    "AutomationBusy",
    "AutomationError",
    "Command",
    "CommandError",
    "CommandKind",
    "CommandRejected",
    "CommandSerializer",
    "CommandTimeout",
    "ConnectError",
    "DeviceDisconnected",
    "InvalidConfig",
    "LineTransport",
    "MalformedResponse",
    "Measurement",
    "NotConnectedError",
    "PermissionDenied",
    "PortDescriptor",
    "PortUnavailable",
    "PowerSupplyError",
    "Producer",
    "ScpiClient",
    "SerialTransport",
    "Setpoints",
    "SyncFailed",
    "TransportError",
    "list_available_ports",
]
