import threading

import pytest

from conftest import FakeSupply
from psu_control.instrumentation import (
    Command,
    CommandSerializer,
    CommandTimeout,
    NotConnectedError,
    Producer,
    ScpiClient,
)


def make_serializer(supply):
    serializer = CommandSerializer(ScpiClient(supply))
    serializer.start()
    return serializer


def test_concurrent_producers_never_overlap():
    supply = FakeSupply(delay=0.002)
    serializer = make_serializer(supply)

    def producer(kind: Producer, commands):
        for command in commands:
            serializer.execute(command, kind)

    threads = [
        threading.Thread(target=producer, args=(Producer.POLLING, [Command.query_measured_all()] * 15)),
        threading.Thread(target=producer, args=(Producer.MANUAL, [Command.set_current_limit(1.0)] * 15)),
        threading.Thread(
            target=producer,
            args=(Producer.AUTOMATION, [Command.set_voltage(5.0 if i % 2 == 0 else 10.0) for i in range(15)]),
        ),
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)
    serializer.stop()

    assert supply.overlaps == 0
    assert len(supply.lines) == 45
    automation_lines = [line for line in supply.lines if line.startswith("VOLT")]
    expected = ["VOLT 5.000" if i % 2 == 0 else "VOLT 10.000" for i in range(15)]
    assert automation_lines == expected


def test_results_and_errors_reach_the_submitter():
    supply = FakeSupply()
    supply.fail("MEAS:VOLT?", CommandTimeout("no response"))
    serializer = make_serializer(supply)

    failed = serializer.submit(Command.measure_voltage(), Producer.POLLING)
    ok = serializer.submit(Command.measure_current(), Producer.POLLING)

    with pytest.raises(CommandTimeout):
        failed.result(timeout=2)
    assert ok.result(timeout=2) == pytest.approx(0.40)
    serializer.stop()


def test_restrict_rejects_other_producers():
    serializer = make_serializer(FakeSupply())
    serializer.restrict((Producer.CONNECTION,))

    with pytest.raises(NotConnectedError):
        serializer.submit(Command.measure_voltage(), Producer.MANUAL)
    assert serializer.execute(Command.unlock(), Producer.CONNECTION) is None
    serializer.stop()


def test_cancel_pending_fails_queued_work_but_not_in_flight():
    supply = FakeSupply(delay=0.05)
    serializer = make_serializer(supply)

    first = serializer.submit(Command.set_voltage(1.0), Producer.MANUAL)
    queued = [serializer.submit(Command.set_voltage(2.0), Producer.AUTOMATION) for _ in range(3)]
    while serializer.in_flight is None and not first.done():
        pass
    serializer.cancel_pending()

    assert first.result(timeout=2) is None
    for future in queued:
        with pytest.raises(NotConnectedError):
            future.result(timeout=2)
    assert supply.lines == ["VOLT 1.000"]
    serializer.stop()


def test_submit_after_stop_is_rejected():
    serializer = make_serializer(FakeSupply())
    serializer.stop()
    assert not serializer.is_running
    with pytest.raises(NotConnectedError):
        serializer.submit(Command.measure_voltage(), Producer.MANUAL)
