"""Periodic read-back of the supply's measurements and setpoints."""

from __future__ import annotations

import logging
import math
import threading
import time
from typing import Callable, Optional

from psu_control.instrumentation.errors import (
    CommandTimeout,
    InvalidConfig,
    MalformedResponse,
    NotConnectedError,
    TransportError,
)
from psu_control.instrumentation.scpi import Command, Response, Setpoints
from psu_control.orchestration.connection import FaultReason
from psu_control.telemetry.status import DEFAULT_TOLERANCE, DeviceSnapshot, Tolerance, build_snapshot

logger = logging.getLogger(__name__)

POLL_INTERVAL_FLOOR_MS = 200
DEFAULT_FAILURE_THRESHOLD = 3

Executor = Callable[[Command], Response]
Sleeper = Callable[[threading.Event, float], bool]


def clamp_poll_interval(interval_ms: float) -> int:
    """Effective polling period: never faster than the request or the 200 ms floor."""
    if not math.isfinite(interval_ms):
        raise InvalidConfig(f"Poll interval must be a finite number of milliseconds, got {interval_ms!r}")
    return max(math.ceil(interval_ms), POLL_INTERVAL_FLOOR_MS)


def _event_wait(event: threading.Event, timeout: float) -> bool:
    return event.wait(timeout)


class PollingEngine:
    """Background poller feeding snapshots to a publish callback.

    Started when the connection reaches ``Connected`` and stopped on any other state.
    A single missed poll is tolerated; *failure_threshold* consecutive misses ask the
    connection to fault.
    """

    def __init__(
        self,
        execute: Executor,
        publish: Callable[[DeviceSnapshot], None],
        on_fault: Callable[[FaultReason, str], None],
        interval_ms: int = 1000,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        tolerance: Tolerance = DEFAULT_TOLERANCE,
        clock: Callable[[], float] = time.monotonic,
        sleeper: Sleeper = _event_wait,
    ) -> None:
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        self._execute = execute
        self._publish = publish
        self._on_fault = on_fault
        self._interval_ms = clamp_poll_interval(interval_ms)
        self.failure_threshold = failure_threshold
        self.tolerance = tolerance
        self._clock = clock
        self._sleeper = sleeper

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._enabled = True
        self._failures = 0
        self._setpoints: Optional[Setpoints] = None
        self._output_enabled = False
        self._dirty = True

    # ------------------------------------------------------------------
    @property
    def interval_ms(self) -> int:
        return self._interval_ms

    def set_interval(self, interval_ms: float) -> int:
        """Change the period, effective from the next tick. Returns the clamped value."""
        effective = clamp_poll_interval(interval_ms)
        if interval_ms < POLL_INTERVAL_FLOOR_MS:
            logger.info("Poll interval %s ms raised to the %d ms floor", interval_ms, POLL_INTERVAL_FLOOR_MS)
        self._interval_ms = effective
        return effective

    @property
    def enabled(self) -> bool:
        return self._enabled

    def set_enabled(self, enabled: bool) -> None:
        self._enabled = bool(enabled)

    @property
    def consecutive_failures(self) -> int:
        return self._failures

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def update_setpoints(self, setpoints: Setpoints, output_enabled: bool) -> None:
        """Record device-confirmed setpoints (after connect or a manual sync)."""
        self._setpoints = setpoints
        self._output_enabled = bool(output_enabled)
        self._dirty = False

    def mark_setpoints_dirty(self) -> None:
        """A write may have changed the limits; re-read them on the next tick."""
        self._dirty = True

    # ------------------------------------------------------------------
    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event = threading.Event()
        self._failures = 0
        self._thread = threading.Thread(target=self._run, name="psu-poll", daemon=True)
        self._thread.start()
        logger.info("Polling every %d ms", self._interval_ms)

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)
        self._thread = None

    def poll_once(self) -> Optional[DeviceSnapshot]:
        """Run one poll cycle. Returns the published snapshot, or None on a miss."""
        refresh = self._dirty or self._setpoints is None
        try:
            if refresh:
                self._dirty = False
                setpoints = self._execute(Command.query_active_setpoints())
                output_enabled = self._execute(Command.query_output_state())
                self._setpoints = setpoints
                self._output_enabled = bool(output_enabled)
            measurement = self._execute(Command.query_measured_all())
        except (CommandTimeout, TransportError) as exc:
            if refresh:
                self._dirty = True
            self._record_failure(exc)
            return None
        except MalformedResponse as exc:
            if refresh:
                self._dirty = True
            logger.warning("Ignoring malformed poll response %r: %s", exc.raw, exc)
            return None
        except NotConnectedError:
            self._stop_event.set()
            return None

        self._failures = 0
        snapshot = build_snapshot(self._output_enabled, self._setpoints, measurement, tolerance=self.tolerance)
        self._publish(snapshot)
        return snapshot

    # ------------------------------------------------------------------
    def _record_failure(self, exc: Exception) -> None:
        self._failures += 1
        logger.warning("Poll missed (%d/%d): %s", self._failures, self.failure_threshold, exc)
        if self._failures >= self.failure_threshold:
            self._stop_event.set()
            detail = f"{self._failures} consecutive polls failed, last: {exc}"
            self._on_fault(FaultReason.POLL_FAILURES, detail)

    def _run(self) -> None:
        stop_event = self._stop_event
        while not stop_event.is_set():
            started = self._clock()
            if self._enabled:
                self.poll_once()
            if stop_event.is_set():
                break
            remaining = self._interval_ms / 1000.0 - (self._clock() - started)
            if self._sleeper(stop_event, max(0.0, remaining)):
                break
