import queue
import threading

import pytest

from psu_control.telemetry import DeviceSnapshot, RegulationMode, SampleHistory, SnapshotHub


def make_snapshot(t: float, voltage: float = 5.0, current: float = 0.5) -> DeviceSnapshot:
    return DeviceSnapshot(
        output_enabled=True,
        voltage_setpoint=5.0,
        current_limit=1.0,
        measured_voltage=voltage,
        measured_current=current,
        mode=RegulationMode.CV,
        power=voltage * current,
        timestamp=t,
    )


def test_sample_history_evicts_oldest():
    history = SampleHistory(max_points=3)
    history.extend(make_snapshot(float(t), voltage=1.0 + t / 10) for t in range(1, 5))

    data = history.to_dict_of_lists()
    assert data["timestamp"] == [2.0, 3.0, 4.0]
    assert data["voltage"][-1] == 1.4
    assert history.latest().timestamp == 4.0
    assert len(history) == 3


def test_sample_history_rejects_zero_capacity():
    with pytest.raises(ValueError):
        SampleHistory(max_points=0)


def test_hub_fans_out_to_subscribers():
    hub = SnapshotHub(history_points=10)
    first = hub.subscribe()
    second = hub.subscribe()

    hub.publish(make_snapshot(1.0))
    hub.publish(make_snapshot(2.0))

    assert first.get(timeout=1).timestamp == 1.0
    assert first.get(timeout=1).timestamp == 2.0
    assert second.get(timeout=1).timestamp == 1.0
    assert hub.latest.timestamp == 2.0
    assert len(hub.history) == 2


def test_subscription_only_sees_later_snapshots():
    hub = SnapshotHub()
    hub.publish(make_snapshot(1.0))
    subscription = hub.subscribe()
    with pytest.raises(queue.Empty):
        subscription.get(timeout=0.01)


def test_close_all_ends_iteration():
    hub = SnapshotHub()
    subscription = hub.subscribe()
    received = []

    consumer = threading.Thread(target=lambda: received.extend(subscription))
    consumer.start()
    hub.publish(make_snapshot(1.0))
    hub.close_all()
    consumer.join(timeout=2)

    assert not consumer.is_alive()
    assert [s.timestamp for s in received] == [1.0]
    assert subscription.ended


def test_unsubscribed_consumer_gets_nothing_more():
    hub = SnapshotHub()
    with hub.subscribe() as subscription:
        pass
    hub.publish(make_snapshot(1.0))
    assert list(subscription) == []


def test_slow_subscriber_drops_oldest():
    hub = SnapshotHub(backlog=2)
    subscription = hub.subscribe()
    for t in range(5):
        hub.publish(make_snapshot(float(t)))
    assert subscription.get(timeout=1).timestamp == 3.0
    assert subscription.get(timeout=1).timestamp == 4.0
