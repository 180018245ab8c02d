import pytest

from conftest import FakeSupply
from psu_control.instrumentation import (
    Command,
    CommandTimeout,
    ConnectError,
    MalformedResponse,
    NotConnectedError,
    PortUnavailable,
    Producer,
    SyncFailed,
    TransportError,
)
from psu_control.orchestration import ConnectionManager, ConnectionState, FaultReason
from psu_control.telemetry import RegulationMode


def make_manager(supply):
    events = []
    opened = []

    def factory(port):
        opened.append(port)
        return supply

    manager = ConnectionManager(transport_factory=factory)
    manager.add_listener(events.append)
    return manager, events, opened


def states(events):
    return [event.state for event in events]


def test_connect_syncs_state_before_connected(supply):
    manager, events, opened = make_manager(supply)

    snapshot = manager.connect("/dev/ttyUSB0")

    assert manager.state is ConnectionState.CONNECTED
    assert opened == ["/dev/ttyUSB0"]
    assert manager.identity == supply.identity
    assert supply.lines[:4] == ["*IDN?", "OUTPut?", "SOUR:VOLT:LEV:IMM:AMPL?", "SOUR:CURR:LEV:IMM:AMPL?"]
    assert snapshot.voltage_setpoint == 12.0
    assert snapshot.current_limit == 1.5
    assert snapshot.mode is RegulationMode.CV
    assert states(events) == [
        ConnectionState.CONNECTING,
        ConnectionState.SYNCING_STATE,
        ConnectionState.CONNECTED,
    ]
    manager.disconnect()


@pytest.mark.parametrize(
    "line, exc",
    [
        ("*IDN?", CommandTimeout("silent")),
        ("OUTPut?", MalformedResponse("garbage")),
        ("SOUR:CURR:LEV:IMM:AMPL?", TransportError("unplugged")),
    ],
)
def test_failed_sync_never_reaches_connected(supply, line, exc):
    supply.fail(line, exc)
    manager, events, _ = make_manager(supply)

    with pytest.raises(SyncFailed) as excinfo:
        manager.connect("/dev/ttyUSB0")

    assert excinfo.value.__cause__ is exc
    assert manager.state is ConnectionState.DISCONNECTED
    assert ConnectionState.CONNECTED not in states(events)
    assert supply.closed
    assert manager.identity is None


def test_open_failure_returns_to_disconnected():
    def factory(port):
        raise PortUnavailable(f"Could not open {port}")

    manager = ConnectionManager(transport_factory=factory)
    with pytest.raises(PortUnavailable):
        manager.connect("/dev/ttyUSB7")
    assert manager.state is ConnectionState.DISCONNECTED


def test_connect_twice_is_refused(supply):
    manager, _, _ = make_manager(supply)
    manager.connect("/dev/ttyUSB0")
    with pytest.raises(ConnectError):
        manager.connect("/dev/ttyUSB0")
    manager.disconnect()


def test_disconnect_unlocks_before_closing(supply):
    manager, events, _ = make_manager(supply)
    manager.connect("/dev/ttyUSB0")
    supply.fail("MEAS:VOLT?", CommandTimeout("silent"))
    with pytest.raises(CommandTimeout):
        manager.execute(Command.measure_voltage(), Producer.MANUAL)

    manager.disconnect()

    assert supply.closed
    assert supply.lines[supply.lines_at_close - 1] == "SYST:COMM:RLST LOC"
    assert states(events)[-2:] == [ConnectionState.DISCONNECTING, ConnectionState.DISCONNECTED]
    assert events[-1].reason is None


def test_disconnect_closes_even_if_unlock_fails(supply):
    manager, _, _ = make_manager(supply)
    manager.connect("/dev/ttyUSB0")
    supply.fail("SYST:COMM:RLST LOC", TransportError("write failed"))

    manager.disconnect()

    assert supply.closed
    assert manager.state is ConnectionState.DISCONNECTED


def test_commands_rejected_when_not_connected(supply):
    manager, _, _ = make_manager(supply)
    with pytest.raises(NotConnectedError):
        manager.execute(Command.set_voltage(1.0), Producer.MANUAL)


def test_transport_error_faults_the_connection(supply):
    manager, events, _ = make_manager(supply)
    manager.connect("/dev/ttyUSB0")
    supply.fail("VOLT 1.000", TransportError("cable pulled"))

    with pytest.raises(TransportError):
        manager.execute(Command.set_voltage(1.0), Producer.MANUAL)

    assert manager.state is ConnectionState.DISCONNECTED
    assert events[-1].reason is FaultReason.TRANSPORT_ERROR
    assert "cable pulled" in events[-1].detail
    assert supply.closed
    # A fault skips the unlock; the link is believed broken.
    assert "SYST:COMM:RLST LOC" not in supply.lines


def test_fault_is_ignored_unless_connected(supply):
    manager, events, _ = make_manager(supply)
    assert manager.fault(FaultReason.POLL_FAILURES, "late") is False
    assert events == []


def test_reconnect_after_fault_starts_fresh():
    supplies = [FakeSupply(identity="first"), FakeSupply(identity="second")]
    manager = ConnectionManager(transport_factory=lambda port: supplies.pop(0))

    manager.connect("/dev/ttyUSB0")
    manager.fault(FaultReason.POLL_FAILURES, "3 misses")
    assert manager.identity is None

    manager.connect("/dev/ttyUSB0")
    assert manager.identity == "second"
    manager.disconnect()
