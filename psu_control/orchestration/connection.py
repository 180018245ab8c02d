"""Connection lifecycle: open, synchronise, serve, unlock, close."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, List, Optional, Union

from psu_control.instrumentation.errors import (
    ConnectError,
    NotConnectedError,
    PowerSupplyError,
    SyncFailed,
    TransportError,
)
from psu_control.instrumentation.scpi import Command, Response, ScpiClient
from psu_control.instrumentation.serializer import CommandSerializer, Producer
from psu_control.instrumentation.transport import LineTransport, PortDescriptor, SerialTransport
from psu_control.io.settings import SerialSettings
from psu_control.telemetry.status import DEFAULT_TOLERANCE, DeviceSnapshot, Tolerance, build_snapshot

logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    DISCONNECTED = "Disconnected"
    CONNECTING = "Connecting"
    SYNCING_STATE = "SyncingState"
    CONNECTED = "Connected"
    DISCONNECTING = "Disconnecting"


class FaultReason(Enum):
    TRANSPORT_ERROR = "transport_error"
    POLL_FAILURES = "poll_failures"


@dataclass(frozen=True)
class ConnectionEvent:
    """One state transition, as delivered to listeners."""

    state: ConnectionState
    previous: ConnectionState
    reason: Optional[FaultReason] = None
    detail: Optional[str] = None


TransportFactory = Callable[[str], LineTransport]
ConnectionListener = Callable[[ConnectionEvent], None]


class ConnectionManager:
    """Owns the transport and the command gate for the lifetime of one connection.

    No other component opens or closes the serial handle.
    """

    def __init__(
        self,
        transport_factory: Optional[TransportFactory] = None,
        serial_settings: Optional[SerialSettings] = None,
        tolerance: Tolerance = DEFAULT_TOLERANCE,
    ) -> None:
        self.serial_settings = serial_settings or SerialSettings()
        self.tolerance = tolerance
        self._transport_factory = transport_factory or self._open_serial
        self._state = ConnectionState.DISCONNECTED
        self._lock = threading.Lock()
        self._listeners: List[ConnectionListener] = []
        self._transport: Optional[LineTransport] = None
        self._serializer: Optional[CommandSerializer] = None
        self._identity: Optional[str] = None
        self._port: Optional[str] = None

    # ------------------------------------------------------------------
    # Introspection
    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def identity(self) -> Optional[str]:
        return self._identity

    @property
    def port(self) -> Optional[str]:
        return self._port

    def add_listener(self, listener: ConnectionListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: ConnectionListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    # ------------------------------------------------------------------
    # Lifecycle
    def connect(self, port: Union[str, PortDescriptor]) -> DeviceSnapshot:
        """Open *port*, read back the device state and enter ``Connected``.

        Raises :class:`PortUnavailable`/:class:`PermissionDenied` if the port cannot be
        opened and :class:`SyncFailed` if any synchronisation query fails. In both cases
        the manager is back in ``Disconnected`` with the handle closed.
        """
        port_name = port.device if isinstance(port, PortDescriptor) else str(port)
        if not self._transition(ConnectionState.CONNECTING, expect=(ConnectionState.DISCONNECTED,)):
            raise ConnectError(f"Cannot connect while {self._state.value}")

        try:
            transport = self._transport_factory(port_name)
        except ConnectError as exc:
            self._transition(ConnectionState.DISCONNECTED, detail=str(exc))
            raise
        serializer = CommandSerializer(ScpiClient(transport))
        serializer.start()
        with self._lock:
            self._transport = transport
            self._serializer = serializer
            self._port = port_name

        self._transition(ConnectionState.SYNCING_STATE)
        try:
            identity = serializer.execute(Command.query_identity(), Producer.CONNECTION)
            output_enabled = serializer.execute(Command.query_output_state(), Producer.CONNECTION)
            setpoints = serializer.execute(Command.query_active_setpoints(), Producer.CONNECTION)
            measurement = serializer.execute(Command.query_measured_all(), Producer.CONNECTION)
        except PowerSupplyError as exc:
            logger.error("State sync with %s failed: %s", port_name, exc)
            self._transition(ConnectionState.DISCONNECTED, detail=str(exc), action=self._teardown)
            raise SyncFailed(f"Could not synchronise with device on {port_name}: {exc}") from exc

        self._identity = identity
        snapshot = build_snapshot(output_enabled, setpoints, measurement, tolerance=self.tolerance)
        self._transition(ConnectionState.CONNECTED)
        logger.info("Connected to %s (%s)", port_name, identity)
        return snapshot

    def disconnect(self) -> None:
        """Unlock the front panel and close the port.

        An in-flight transaction is allowed to finish first. Queued work from other
        producers is cancelled.
        """
        if not self._transition(ConnectionState.DISCONNECTING, expect=(ConnectionState.CONNECTED,)):
            logger.debug("Disconnect ignored in state %s", self._state.value)
            return
        serializer = self._serializer
        if serializer is not None:
            serializer.restrict((Producer.CONNECTION,))
            try:
                serializer.execute(Command.unlock(), Producer.CONNECTION)
            except PowerSupplyError as exc:
                logger.warning("Panel unlock failed, closing anyway: %s", exc)
        self._transition(ConnectionState.DISCONNECTED, action=self._teardown)
        logger.info("Disconnected from %s", self._port)

    def fault(self, reason: FaultReason, detail: Optional[str] = None) -> bool:
        """Drop a connection believed to be broken. Returns False if not connected."""
        if not self._transition(
            ConnectionState.DISCONNECTED,
            expect=(ConnectionState.CONNECTED,),
            reason=reason,
            detail=detail,
            action=self._teardown,
        ):
            return False
        logger.error("Connection to %s lost (%s): %s", self._port, reason.value, detail)
        return True

    # ------------------------------------------------------------------
    # Command path
    def submit(self, command: Command, producer: Producer):
        """Queue *command* and return its future without waiting."""
        serializer = self._serializer
        if serializer is None or not self.is_connected:
            raise NotConnectedError(f"Cannot send {command}: {self._state.value}")
        return serializer.submit(command, producer)

    def execute(self, command: Command, producer: Producer) -> Response:
        """Run *command* through the gate and wait for its result.

        A transport error faults the connection before it is re-raised.
        """
        future = self.submit(command, producer)
        try:
            return future.result()
        except TransportError as exc:
            self.fault(FaultReason.TRANSPORT_ERROR, str(exc))
            raise

    # ------------------------------------------------------------------
    def _open_serial(self, port: str) -> LineTransport:
        return SerialTransport.open(port, self.serial_settings)

    def _teardown(self) -> None:
        serializer, transport = self._serializer, self._transport
        self._serializer = None
        self._transport = None
        self._identity = None
        if serializer is not None:
            serializer.restrict(())
            serializer.stop(timeout=self.serial_settings.timeout_s * 4 + 1.0)
        if transport is not None:
            try:
                transport.close()
            except (PowerSupplyError, OSError) as exc:
                logger.warning("Error while closing %s: %s", self._port, exc)

    def _transition(
        self,
        new_state: ConnectionState,
        expect: Optional[Iterable[ConnectionState]] = None,
        reason: Optional[FaultReason] = None,
        detail: Optional[str] = None,
        action: Optional[Callable[[], None]] = None,
    ) -> bool:
        with self._lock:
            previous = self._state
            if expect is not None and previous not in tuple(expect):
                return False
            self._state = new_state
            if action is not None:
                action()
        logger.debug("%s -> %s", previous.value, new_state.value)
        event = ConnectionEvent(state=new_state, previous=previous, reason=reason, detail=detail)
        for listener in list(self._listeners):
            listener(event)
        return True
