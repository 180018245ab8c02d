"""Fan-out of published snapshots to any number of subscribers."""

from __future__ import annotations

import logging
import queue
import threading
from typing import Iterator, List, Optional

from psu_control.telemetry.series import SampleHistory
from psu_control.telemetry.status import DeviceSnapshot

logger = logging.getLogger(__name__)

_END = object()


class SnapshotSubscription:
    """Blocking iterator over snapshots published after it was created.

    Iteration ends when the subscriber closes it or the connection goes away. A slow
    consumer loses the oldest queued snapshots, never the newest.
    """

    def __init__(self, hub: "SnapshotHub", backlog: int) -> None:
        self._hub = hub
        self._queue: "queue.Queue[object]" = queue.Queue(maxsize=backlog)
        self._ended = False

    def __iter__(self) -> Iterator[DeviceSnapshot]:
        return self

    def __next__(self) -> DeviceSnapshot:
        item = self.get()
        if item is None:
            raise StopIteration
        return item

    def __enter__(self) -> "SnapshotSubscription":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def ended(self) -> bool:
        return self._ended

    def get(self, timeout: Optional[float] = None) -> Optional[DeviceSnapshot]:
        """Next snapshot, or ``None`` once the stream has ended.

        Raises :class:`queue.Empty` if *timeout* expires first.
        """
        if self._ended:
            return None
        item = self._queue.get(timeout=timeout)
        if item is _END:
            self._ended = True
            return None
        return item  # type: ignore[return-value]

    def close(self) -> None:
        self._hub._remove(self)
        self._finish()

    def _offer(self, snapshot: DeviceSnapshot) -> None:
        while True:
            try:
                self._queue.put_nowait(snapshot)
                return
            except queue.Full:
                try:
                    self._queue.get_nowait()
                except queue.Empty:
                    pass

    def _finish(self) -> None:
        self._offer(_END)  # type: ignore[arg-type]


class SnapshotHub:
    """Keeps the latest snapshot and the trend history, and feeds subscribers."""

    def __init__(self, history_points: int = 600, backlog: int = 256) -> None:
        self.history = SampleHistory(max_points=history_points)
        self._backlog = backlog
        self._subscribers: List[SnapshotSubscription] = []
        self._lock = threading.Lock()
        self._latest: Optional[DeviceSnapshot] = None

    @property
    def latest(self) -> Optional[DeviceSnapshot]:
        return self._latest

    def subscribe(self) -> SnapshotSubscription:
        subscription = SnapshotSubscription(self, self._backlog)
        with self._lock:
            self._subscribers.append(subscription)
        return subscription

    def publish(self, snapshot: DeviceSnapshot) -> None:
        with self._lock:
            self._latest = snapshot
            self.history.append(snapshot)
            subscribers = list(self._subscribers)
        for subscription in subscribers:
            subscription._offer(snapshot)

    def close_all(self) -> None:
        """End every open subscription (the device went away)."""
        with self._lock:
            subscribers = list(self._subscribers)
            self._subscribers.clear()
        for subscription in subscribers:
            subscription._finish()
        if subscribers:
            logger.debug("Ended %d snapshot subscription(s)", len(subscribers))

    def reset(self) -> None:
        with self._lock:
            self._latest = None
        self.history.clear()

    def _remove(self, subscription: SnapshotSubscription) -> None:
        with self._lock:
            if subscription in self._subscribers:
                self._subscribers.remove(subscription)
