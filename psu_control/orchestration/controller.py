"""Presentation-facing facade over the connection, polling and automation engines."""

from __future__ import annotations

import logging
import math
from typing import Callable, List, Optional, Union

from psu_control.instrumentation.errors import AutomationError, CommandRejected
from psu_control.instrumentation.scpi import SETPOINT_CHANGING, Command, CommandKind, Response, Setpoints
from psu_control.instrumentation.serializer import Producer
from psu_control.instrumentation.transport import PortDescriptor, list_available_ports
from psu_control.io.settings import ControllerSettings
from psu_control.orchestration.automation import AutomationConfig, AutomationEngine
from psu_control.orchestration.connection import (
    ConnectionEvent,
    ConnectionListener,
    ConnectionManager,
    ConnectionState,
    TransportFactory,
)
from psu_control.orchestration.polling import PollingEngine
from psu_control.telemetry.series import SampleHistory
from psu_control.telemetry.status import DeviceSnapshot, Tolerance, build_snapshot
from psu_control.telemetry.stream import SnapshotHub, SnapshotSubscription

logger = logging.getLogger(__name__)

MANUAL_COMMANDS = frozenset(
    {
        CommandKind.SET_VOLTAGE,
        CommandKind.SET_CURRENT_LIMIT,
        CommandKind.SET_OUTPUT_ENABLED,
        CommandKind.SET_BEEPER_ENABLED,
        CommandKind.RESET,
        CommandKind.MEASURE_VOLTAGE,
        CommandKind.MEASURE_CURRENT,
        CommandKind.RAW,
    }
)

SETPOINT_KINDS = frozenset({CommandKind.SET_VOLTAGE, CommandKind.SET_CURRENT_LIMIT})


class PowerSupplyController:
    """Everything a front end needs to drive one supply.

    Example::

        controller = PowerSupplyController()
        snapshot = controller.connect("/dev/ttyUSB0")
        controller.set_voltage(5.0)
        for snapshot in controller.subscribe_snapshots():
            ...
    """

    def __init__(
        self,
        settings: Optional[ControllerSettings] = None,
        transport_factory: Optional[TransportFactory] = None,
    ) -> None:
        self.settings = settings or ControllerSettings()
        tolerance = Tolerance(
            voltage=self.settings.status.voltage_epsilon_v,
            current=self.settings.status.current_epsilon_a,
        )
        self.connection = ConnectionManager(
            transport_factory=transport_factory,
            serial_settings=self.settings.serial,
            tolerance=tolerance,
        )
        self.hub = SnapshotHub(history_points=self.settings.polling.history_points)
        self.polling = PollingEngine(
            execute=lambda command: self.connection.execute(command, Producer.POLLING),
            publish=self.hub.publish,
            on_fault=self.connection.fault,
            interval_ms=self.settings.polling.interval_ms,
            failure_threshold=self.settings.polling.failure_threshold,
            tolerance=tolerance,
        )
        self.polling.set_enabled(self.settings.polling.enabled)
        self.automation = AutomationEngine(
            execute=lambda command: self.connection.execute(command, Producer.AUTOMATION),
            min_interval_ms=self.settings.automation.min_interval_ms,
            on_error=self._automation_failed,
            on_applied=lambda _level: self.polling.mark_setpoints_dirty(),
        )
        self._automation_error_listeners: List[Callable[[Exception], None]] = []
        self.connection.add_listener(self._on_connection_event)

    def __enter__(self) -> "PowerSupplyController":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Discovery and lifecycle
    @staticmethod
    def list_available_ports() -> List[PortDescriptor]:
        return list_available_ports()

    def connect(self, port: Union[str, PortDescriptor]) -> DeviceSnapshot:
        snapshot = self.connection.connect(port)
        self.hub.reset()
        self.polling.update_setpoints(
            Setpoints(voltage=snapshot.voltage_setpoint, current=snapshot.current_limit),
            snapshot.output_enabled,
        )
        self.hub.publish(snapshot)
        if self.connection.is_connected:
            self.polling.start()
        return snapshot

    def disconnect(self) -> None:
        self.connection.disconnect()

    def close(self) -> None:
        self.automation.stop()
        self.polling.stop()
        self.connection.disconnect()

    @property
    def state(self) -> ConnectionState:
        return self.connection.state

    @property
    def identity(self) -> Optional[str]:
        return self.connection.identity

    def add_state_listener(self, listener: ConnectionListener) -> None:
        self.connection.add_listener(listener)

    def add_automation_error_listener(self, listener: Callable[[Exception], None]) -> None:
        self._automation_error_listeners.append(listener)

    # ------------------------------------------------------------------
    # Manual commands
    def submit_manual_command(self, command: Command, confirmed: bool = False) -> Response:
        """Execute a user-initiated command. Writes are never retried."""
        if command.kind not in MANUAL_COMMANDS:
            raise CommandRejected(f"{command.kind.value} cannot be sent manually")
        if command.kind is CommandKind.RESET and not confirmed:
            raise CommandRejected("Factory reset requires explicit confirmation")
        if command.kind in SETPOINT_KINDS:
            value = float(command.value)
            if not math.isfinite(value) or value < 0:
                raise CommandRejected(f"{command.kind.value} needs a finite, non-negative value, got {command.value!r}")
        result = self.connection.execute(command, Producer.MANUAL)
        if command.kind in SETPOINT_CHANGING:
            self.polling.mark_setpoints_dirty()
        return result

    def set_voltage(self, volts: float) -> None:
        self.submit_manual_command(Command.set_voltage(volts))

    def set_current_limit(self, amps: float) -> None:
        self.submit_manual_command(Command.set_current_limit(amps))

    def set_output(self, enabled: bool) -> None:
        self.submit_manual_command(Command.set_output_enabled(enabled))

    def set_beeper(self, enabled: bool) -> None:
        self.submit_manual_command(Command.set_beeper_enabled(enabled))

    def reset(self, confirmed: bool = False) -> None:
        self.submit_manual_command(Command.reset(), confirmed=confirmed)

    def measure_voltage(self) -> float:
        return self.submit_manual_command(Command.measure_voltage())

    def measure_current(self) -> float:
        return self.submit_manual_command(Command.measure_current())

    def send_raw(self, text: str) -> Optional[str]:
        return self.submit_manual_command(Command.raw(text))

    def refresh(self) -> DeviceSnapshot:
        """Read setpoints, output state and measurements now and publish the result."""
        setpoints = self.connection.execute(Command.query_active_setpoints(), Producer.MANUAL)
        output_enabled = self.connection.execute(Command.query_output_state(), Producer.MANUAL)
        measurement = self.connection.execute(Command.query_measured_all(), Producer.MANUAL)
        snapshot = build_snapshot(output_enabled, setpoints, measurement, tolerance=self.polling.tolerance)
        self.polling.update_setpoints(setpoints, output_enabled)
        self.hub.publish(snapshot)
        return snapshot

    # ------------------------------------------------------------------
    # Snapshots and polling
    def subscribe_snapshots(self) -> SnapshotSubscription:
        return self.hub.subscribe()

    @property
    def latest_snapshot(self) -> Optional[DeviceSnapshot]:
        return self.hub.latest

    @property
    def history(self) -> SampleHistory:
        return self.hub.history

    def set_poll_interval(self, interval_ms: float) -> int:
        return self.polling.set_interval(interval_ms)

    def set_polling_enabled(self, enabled: bool) -> None:
        self.polling.set_enabled(enabled)
        logger.info("Auto-refresh %s", "enabled" if enabled else "paused")

    # ------------------------------------------------------------------
    # Automation
    def start_automation(self, config: AutomationConfig) -> None:
        if not self.connection.is_connected:
            raise AutomationError("Cannot start automation while not connected")
        self.automation.start(config)

    def stop_automation(self) -> None:
        self.automation.stop()

    # ------------------------------------------------------------------
    def _on_connection_event(self, event: ConnectionEvent) -> None:
        if event.state in (ConnectionState.DISCONNECTING, ConnectionState.DISCONNECTED):
            self.automation.stop()
            self.polling.stop()
        if event.state is ConnectionState.DISCONNECTED and event.previous in (
            ConnectionState.CONNECTED,
            ConnectionState.DISCONNECTING,
        ):
            self.hub.close_all()

    def _automation_failed(self, exc: Exception) -> None:
        for listener in list(self._automation_error_listeners):
            listener(exc)
