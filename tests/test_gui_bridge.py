import threading
from concurrent.futures import Future

import pytest

QtCore = pytest.importorskip("PySide6.QtCore")

from psu_control.gui import ControllerBridge  # noqa: E402
from psu_control.instrumentation import CommandRejected  # noqa: E402
from psu_control.orchestration import (  # noqa: E402
    AutomationConfig,
    ConnectionEvent,
    ConnectionState,
    FaultReason,
)
from psu_control.telemetry import DeviceSnapshot, RegulationMode  # noqa: E402


class FakeAutomation:
    def __init__(self):
        self.is_running = False


class FakeController:
    """Records the calls a bridge makes."""

    def __init__(self):
        self.calls = []
        self.identity = None
        self.automation = FakeAutomation()
        self.state_listeners = []
        self.error_listeners = []

    def add_state_listener(self, listener):
        self.state_listeners.append(listener)

    def add_automation_error_listener(self, listener):
        self.error_listeners.append(listener)

    def stop_automation(self):
        self.calls.append(("stop_automation", ()))
        self.stop_thread = threading.current_thread()

    def __getattr__(self, name):
        def record(*args):
            self.calls.append((name, args))

        return record


@pytest.fixture(scope="module")
def qt_app():
    app = QtCore.QCoreApplication.instance() or QtCore.QCoreApplication([])
    yield app


@pytest.fixture
def bridge(qt_app):
    controller = FakeController()
    bridge = ControllerBridge(controller)
    yield bridge
    bridge._pool.shutdown(wait=True)


def test_slots_forward_to_controller(bridge):
    bridge.apply_voltage(5.0)
    bridge.apply_current_limit(0.5)
    bridge.set_output(True)
    bridge.set_beeper(False)
    bridge.confirm_reset()
    bridge.send_command("*IDN?")
    bridge.flush(timeout=2)

    assert bridge.controller.calls == [
        ("set_voltage", (5.0,)),
        ("set_current_limit", (0.5,)),
        ("set_output", (True,)),
        ("set_beeper", (False,)),
        ("reset", (True,)),
        ("send_raw", ("*IDN?",)),
    ]


def test_polling_controls_are_immediate(bridge):
    bridge.set_poll_interval(300)
    bridge.set_auto_refresh(False)
    assert bridge.controller.calls == [("set_poll_interval", (300,)), ("set_polling_enabled", (False,))]


def test_toggle_loop_starts_then_stops(bridge):
    bridge.toggle_loop(5.0, 10.0, 500)
    bridge.flush(timeout=2)
    assert bridge.controller.calls == [
        ("start_automation", (AutomationConfig(level_a=5.0, level_b=10.0, interval_ms=500),))
    ]

    bridge.controller.automation.is_running = True
    bridge.toggle_loop(5.0, 10.0, 500)
    bridge.flush(timeout=2)
    assert bridge.controller.calls[-1] == ("stop_automation", ())
    assert bridge.controller.stop_thread is not threading.current_thread()


def test_state_changes_are_emitted(bridge):
    received = []
    bridge.state_changed.connect(lambda state, detail: received.append((state, detail)))
    bridge.controller.identity = "ACME,PSU-3005"

    listener = bridge.controller.state_listeners[0]
    listener(ConnectionEvent(ConnectionState.CONNECTED, ConnectionState.SYNCING_STATE))
    listener(
        ConnectionEvent(
            ConnectionState.DISCONNECTED,
            ConnectionState.CONNECTED,
            reason=FaultReason.POLL_FAILURES,
            detail="3 consecutive polls failed",
        )
    )

    assert received == [
        ("Connected", "ACME,PSU-3005"),
        ("Disconnected", FaultReason.POLL_FAILURES.value),
    ]


def test_snapshots_are_emitted(bridge):
    received = []
    bridge.snapshot_received.connect(received.append)
    snapshot = DeviceSnapshot(
        output_enabled=True,
        voltage_setpoint=12.0,
        current_limit=1.5,
        measured_voltage=11.99,
        measured_current=0.4,
        mode=RegulationMode.CV,
        power=11.99 * 0.4,
        timestamp=1.0,
    )
    bridge._deliver(snapshot)
    assert received == [snapshot]


def test_command_errors_are_reported(bridge):
    messages = []
    bridge.command_failed.connect(messages.append)

    future = Future()
    future.set_exception(CommandRejected("Factory reset requires explicit confirmation"))
    bridge._report(future)

    done = Future()
    done.set_result(None)
    bridge._report(done)

    assert messages == ["Factory reset requires explicit confirmation"]


def test_automation_errors_are_emitted(bridge):
    messages = []
    bridge.automation_failed.connect(messages.append)
    bridge.controller.error_listeners[0](RuntimeError("no response"))
    assert messages == ["no response"]
