"""Square-wave voltage automation: alternate between two levels on a fixed period."""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from psu_control.instrumentation.errors import AutomationBusy, AutomationError, CommandError, InvalidConfig
from psu_control.instrumentation.scpi import Command, Response

logger = logging.getLogger(__name__)

AUTOMATION_INTERVAL_FLOOR_MS = 200

Executor = Callable[[Command], Response]
Sleeper = Callable[[threading.Event, float], bool]


class AutomationState(Enum):
    IDLE = "Idle"
    RUNNING = "Running"


class AutomationPhase(Enum):
    AT_LEVEL_A = "AtLevelA"
    AT_LEVEL_B = "AtLevelB"


@dataclass(frozen=True)
class AutomationConfig:
    """Two voltage levels and the dwell time at each."""

    level_a: float
    level_b: float
    interval_ms: int

    def validate(self, min_interval_ms: int = AUTOMATION_INTERVAL_FLOOR_MS) -> None:
        for name, level in (("level_a", self.level_a), ("level_b", self.level_b)):
            if not math.isfinite(level):
                raise InvalidConfig(f"{name} must be a finite voltage, got {level!r}")
            if level < 0:
                raise InvalidConfig(f"{name} must not be negative, got {level}")
        if self.level_a == self.level_b:
            raise InvalidConfig("level_a and level_b are equal; the loop would have zero amplitude")
        if self.interval_ms < min_interval_ms:
            raise InvalidConfig(f"interval_ms must be at least {min_interval_ms}, got {self.interval_ms}")


def _event_wait(event: threading.Event, timeout: float) -> bool:
    return event.wait(timeout)


class AutomationEngine:
    """Idle/Running state machine issuing SetVoltage on its own timer thread.

    Stopping leaves whichever level was last applied in effect. A failed write ends the
    loop and is reported through *on_error*.
    """

    def __init__(
        self,
        execute: Executor,
        min_interval_ms: int = AUTOMATION_INTERVAL_FLOOR_MS,
        on_error: Optional[Callable[[Exception], None]] = None,
        on_applied: Optional[Callable[[float], None]] = None,
        clock: Callable[[], float] = time.monotonic,
        sleeper: Sleeper = _event_wait,
    ) -> None:
        self._execute = execute
        self.min_interval_ms = min_interval_ms
        self.on_error = on_error
        self.on_applied = on_applied
        self._clock = clock
        self._sleeper = sleeper

        self._lock = threading.Lock()
        self._state = AutomationState.IDLE
        self._phase: Optional[AutomationPhase] = None
        self._config: Optional[AutomationConfig] = None
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.last_error: Optional[Exception] = None

    @property
    def state(self) -> AutomationState:
        return self._state

    @property
    def phase(self) -> Optional[AutomationPhase]:
        return self._phase

    @property
    def config(self) -> Optional[AutomationConfig]:
        return self._config

    @property
    def is_running(self) -> bool:
        return self._state is AutomationState.RUNNING

    # ------------------------------------------------------------------
    def start(self, config: AutomationConfig) -> None:
        """Apply level A now and toggle every ``interval_ms`` until :meth:`stop`."""
        with self._lock:
            if self._state is AutomationState.RUNNING:
                raise AutomationBusy("Automation is already running")
            config.validate(self.min_interval_ms)

            # Armed before the first write so a stop() issued meanwhile is seen below.
            stop_event = threading.Event()
            self._stop_event = stop_event
            self._config = config
            self._phase = None
            self.last_error = None
            self._state = AutomationState.RUNNING
            try:
                self._apply(config.level_a)
            except CommandError as exc:
                self.last_error = exc
                self._state = AutomationState.IDLE
                raise AutomationError(f"Could not apply level A ({config.level_a} V): {exc}") from exc

            self._phase = AutomationPhase.AT_LEVEL_A
            if stop_event.is_set():
                self._state = AutomationState.IDLE
                logger.info("Automation stopped before the first toggle")
                return
            self._thread = threading.Thread(target=self._run, args=(config, stop_event), name="psu-automation", daemon=True)
            self._thread.start()
        logger.info(
            "Automation started: %.3f V <-> %.3f V every %d ms", config.level_a, config.level_b, config.interval_ms
        )

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        """Cancel the pending toggle. Does not change the output voltage."""
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)
        self._thread = None
        if self._state is AutomationState.RUNNING:
            logger.info("Automation stopped")
        self._state = AutomationState.IDLE

    # ------------------------------------------------------------------
    def _apply(self, level: float) -> None:
        self._execute(Command.set_voltage(level))
        if self.on_applied:
            self.on_applied(level)

    def _run(self, config: AutomationConfig, stop_event: threading.Event) -> None:
        interval = config.interval_ms / 1000.0
        next_fire = self._clock() + interval
        while True:
            if self._sleeper(stop_event, max(0.0, next_fire - self._clock())):
                return
            if stop_event.is_set():
                return
            if self._phase is AutomationPhase.AT_LEVEL_A:
                level, phase = config.level_b, AutomationPhase.AT_LEVEL_B
            else:
                level, phase = config.level_a, AutomationPhase.AT_LEVEL_A
            try:
                self._apply(level)
            except CommandError as exc:
                self._fail(exc)
                return
            self._phase = phase
            logger.debug("Automation applied %.3f V", level)
            next_fire += interval
            now = self._clock()
            if next_fire < now:
                # Fell a whole period behind (slow link); do not burst to catch up.
                next_fire = now + interval

    def _fail(self, exc: CommandError) -> None:
        self.last_error = exc
        self._state = AutomationState.IDLE
        self._stop_event.set()
        logger.error("Automation aborted: %s", exc)
        if self.on_error:
            self.on_error(exc)
