"""Qt adapter exposing :class:`PowerSupplyController` as signals and slots.

A window connects its widgets to the slots and renders whatever arrives on the
signals. Blocking serial work never runs on the GUI thread: commands go to a
one-thread worker pool and snapshots are pumped from a subscription thread. Qt
queues the cross-thread emissions onto the receivers' thread.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Optional

from PySide6.QtCore import QObject, Signal, Slot

from psu_control.instrumentation.errors import PowerSupplyError
from psu_control.orchestration.automation import AutomationConfig
from psu_control.orchestration.connection import ConnectionEvent, ConnectionState
from psu_control.orchestration.controller import PowerSupplyController
from psu_control.telemetry.status import DeviceSnapshot
from psu_control.telemetry.stream import SnapshotSubscription

logger = logging.getLogger(__name__)


class ControllerBridge(QObject):
    """Signals/slots facade for a Qt front end."""

    snapshot_received = Signal(object)
    state_changed = Signal(str, str)
    automation_failed = Signal(str)
    command_failed = Signal(str)

    def __init__(self, controller: PowerSupplyController, parent: Optional[QObject] = None) -> None:
        super().__init__(parent)
        self._controller = controller
        self._pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="psu-ui")
        self._pump_thread: Optional[threading.Thread] = None
        self._subscription: Optional[SnapshotSubscription] = None
        controller.add_state_listener(self._on_state)
        controller.add_automation_error_listener(self._on_automation_error)

    @property
    def controller(self) -> PowerSupplyController:
        return self._controller

    # ------------------------------------------------------------------
    # Slots
    @Slot(str)
    def connect_port(self, port: str) -> None:
        self._run(self._connect_and_pump, port)

    @Slot()
    def disconnect_port(self) -> None:
        self._run(self._controller.disconnect)

    @Slot(float)
    def apply_voltage(self, volts: float) -> None:
        self._run(self._controller.set_voltage, volts)

    @Slot(float)
    def apply_current_limit(self, amps: float) -> None:
        self._run(self._controller.set_current_limit, amps)

    @Slot(bool)
    def set_output(self, enabled: bool) -> None:
        self._run(self._controller.set_output, enabled)

    @Slot(bool)
    def set_beeper(self, enabled: bool) -> None:
        self._run(self._controller.set_beeper, enabled)

    @Slot()
    def confirm_reset(self) -> None:
        """Called after the operator confirmed the factory-reset dialog."""
        self._run(self._controller.reset, True)

    @Slot(str)
    def send_command(self, text: str) -> None:
        self._run(self._controller.send_raw, text)

    @Slot()
    def refresh(self) -> None:
        self._run(self._controller.refresh)

    @Slot(int)
    def set_poll_interval(self, interval_ms: int) -> None:
        self._controller.set_poll_interval(interval_ms)

    @Slot(bool)
    def set_auto_refresh(self, enabled: bool) -> None:
        self._controller.set_polling_enabled(enabled)

    @Slot(float, float, int)
    def toggle_loop(self, level_a: float, level_b: float, interval_ms: int) -> None:
        """Start the A/B loop, or stop it if it is already running."""
        if self._controller.automation.is_running:
            self._run(self._controller.stop_automation)
            return
        config = AutomationConfig(level_a=level_a, level_b=level_b, interval_ms=interval_ms)
        self._run(self._controller.start_automation, config)

    # ------------------------------------------------------------------
    def flush(self, timeout: Optional[float] = None) -> None:
        """Wait until every command queued so far has run."""
        self._pool.submit(lambda: None).result(timeout=timeout)

    def shutdown(self) -> None:
        self._run(self._controller.close)
        self._pool.shutdown(wait=True)
        self._stop_pump()

    # ------------------------------------------------------------------
    def _run(self, fn: Callable, *args) -> "Future":
        future = self._pool.submit(fn, *args)
        future.add_done_callback(self._report)
        return future

    def _report(self, future: "Future") -> None:
        exc = future.exception()
        if exc is None:
            return
        if isinstance(exc, PowerSupplyError):
            logger.warning("Command failed: %s", exc)
            self.command_failed.emit(str(exc))
        else:
            logger.error("Unexpected error in command worker", exc_info=exc)
            self.command_failed.emit(f"Unexpected error: {exc}")

    def _connect_and_pump(self, port: str) -> None:
        self._stop_pump()
        subscription = self._controller.subscribe_snapshots()
        try:
            self._controller.connect(port)
        except PowerSupplyError:
            subscription.close()
            raise
        self._subscription = subscription
        self._pump_thread = threading.Thread(target=self._pump, args=(subscription,), name="psu-snapshots", daemon=True)
        self._pump_thread.start()

    def _pump(self, subscription: SnapshotSubscription) -> None:
        for snapshot in subscription:
            self._deliver(snapshot)

    def _deliver(self, snapshot: DeviceSnapshot) -> None:
        self.snapshot_received.emit(snapshot)

    def _stop_pump(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        thread = self._pump_thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=1.0)
        self._pump_thread = None

    def _on_state(self, event: ConnectionEvent) -> None:
        detail = event.reason.value if event.reason is not None else (event.detail or "")
        if event.state is ConnectionState.CONNECTED and self._controller.identity:
            detail = self._controller.identity
        self.state_changed.emit(event.state.value, detail)

    def _on_automation_error(self, exc: Exception) -> None:
        self.automation_failed.emit(str(exc))
