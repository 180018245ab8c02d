"""In-memory snapshot history for trend plotting."""

from __future__ import annotations

import threading
from collections import deque
from typing import Deque, Dict, Iterable, Iterator, List, Optional

from psu_control.telemetry.status import DeviceSnapshot


class SampleHistory:
    """Maintains a rolling window of snapshots suitable for plotting.

    Appends happen on the polling thread while a chart reads from the GUI thread, so
    access is guarded and readers get copies.
    """

    def __init__(self, max_points: int = 600) -> None:
        if max_points < 1:
            raise ValueError("max_points must be at least 1")
        self.max_points = max_points
        self._records: Deque[DeviceSnapshot] = deque(maxlen=max_points)
        self._lock = threading.Lock()

    def append(self, snapshot: DeviceSnapshot) -> None:
        with self._lock:
            self._records.append(snapshot)

    def extend(self, snapshots: Iterable[DeviceSnapshot]) -> None:
        for snapshot in snapshots:
            self.append(snapshot)

    def clear(self) -> None:
        with self._lock:
            self._records.clear()

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[DeviceSnapshot]:
        with self._lock:
            return iter(list(self._records))

    def to_dict_of_lists(self) -> Dict[str, List[float]]:
        with self._lock:
            records = list(self._records)
        return {
            "timestamp": [rec.timestamp for rec in records],
            "voltage": [rec.measured_voltage for rec in records],
            "current": [rec.measured_current for rec in records],
            "power": [rec.power for rec in records],
        }

    def latest(self) -> Optional[DeviceSnapshot]:
        with self._lock:
            return self._records[-1] if self._records else None
