import threading
import time
from collections import defaultdict
from typing import Dict, List, Optional

import pytest

from psu_control.instrumentation import TransportError


class FakeSupply:
    """In-memory stand-in for a serial SCPI supply.

    Answers the queries the controller uses, applies writes to its state and counts
    overlapping transactions so tests can check the single-writer invariant.
    """

    def __init__(
        self,
        identity: str = "ACME,PSU-3005,SN0001,1.2",
        voltage: float = 12.0,
        current: float = 1.5,
        output: bool = True,
        measured=(11.99, 0.40),
        delay: float = 0.0,
    ) -> None:
        self.identity = identity
        self.voltage = voltage
        self.current = current
        self.output = output
        self.measured = measured
        self.delay = delay
        self.lines: List[str] = []
        self.closed = False
        self.lines_at_close: Optional[int] = None
        self.overlaps = 0
        self._busy = False
        self._pending: Optional[str] = None
        self._failures: Dict[str, List[Exception]] = defaultdict(list)
        self._guard = threading.Lock()

    # -- scripting -------------------------------------------------------
    def fail(self, line: str, exc: Exception, times: int = 1) -> None:
        """Make the next *times* transactions for *line* raise *exc*."""
        self._failures[line].extend([exc] * times)

    # -- LineTransport ---------------------------------------------------
    def write_line(self, line: str) -> None:
        if self.closed:
            raise TransportError("port closed")
        with self._guard:
            if self._busy:
                self.overlaps += 1
            self._busy = True
        if self.delay:
            time.sleep(self.delay)
        self.lines.append(line)
        failures = self._failures.get(line)
        if failures:
            exc = failures.pop(0)
            self._busy = False
            if "?" in line:
                self._pending = exc
                self._busy = True
                return
            raise exc
        self._pending = self._respond(line)
        if self._pending is None:
            self._busy = False

    def read_line(self, timeout=None) -> str:
        pending, self._pending = self._pending, None
        self._busy = False
        if isinstance(pending, Exception):
            raise pending
        if pending is None:
            raise AssertionError("read_line without a preceding query")
        return pending

    def discard_input(self) -> None:
        pass

    def close(self) -> None:
        self.closed = True
        self.lines_at_close = len(self.lines)

    # -- device model ----------------------------------------------------
    def _respond(self, line: str) -> Optional[str]:
        head, _, arg = line.partition(" ")
        if line == "*IDN?":
            return self.identity
        if line == "OUTPut?":
            return "1" if self.output else "0"
        if line == "SOUR:VOLT:LEV:IMM:AMPL?":
            return f"{self.voltage:.3f}"
        if line == "SOUR:CURR:LEV:IMM:AMPL?":
            return f"{self.current:.3f}"
        if line == "MEAS:ALL?":
            return f"{self.measured[0]:.3f},{self.measured[1]:.3f},{self.measured[0] * self.measured[1]:.3f}"
        if line == "MEAS:VOLT?":
            return f"{self.measured[0]:.3f}"
        if line == "MEAS:CURR?":
            return f"{self.measured[1]:.3f}"
        if head == "VOLT":
            self.voltage = float(arg)
            return None
        if head == "CURR":
            self.current = float(arg)
            return None
        if head == "OUTP":
            self.output = arg == "ON"
            return None
        if "?" in line:
            return "0"
        return None


@pytest.fixture
def supply() -> FakeSupply:
    return FakeSupply()
