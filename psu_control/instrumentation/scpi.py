"""SCPI command set and request/response client for the power supply."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from psu_control.instrumentation.errors import MalformedResponse
from psu_control.instrumentation.transport import LineTransport

logger = logging.getLogger(__name__)


class Wire:
    """Literal SCPI strings understood by the supply."""

    IDN = "*IDN?"
    RESET = "*RST"
    UNLOCK = "SYST:COMM:RLST LOC"
    SET_VOLT = "VOLT"
    SET_CURR = "CURR"
    READ_ALL = "MEAS:ALL?"
    READ_VOLT = "MEAS:VOLT?"
    READ_CURR = "MEAS:CURR?"
    READ_OUTP = "OUTPut?"
    OUTP = "OUTP"
    BEEP = "SYST:CONF:BEEP"
    GET_SET_VOLT = "SOUR:VOLT:LEV:IMM:AMPL?"
    GET_SET_CURR = "SOUR:CURR:LEV:IMM:AMPL?"


class CommandKind(Enum):
    SET_VOLTAGE = "set_voltage"
    SET_CURRENT_LIMIT = "set_current_limit"
    SET_OUTPUT_ENABLED = "set_output_enabled"
    SET_BEEPER_ENABLED = "set_beeper_enabled"
    RESET = "reset"
    UNLOCK = "unlock"
    QUERY_MEASURED_ALL = "query_measured_all"
    QUERY_ACTIVE_SETPOINTS = "query_active_setpoints"
    QUERY_OUTPUT_STATE = "query_output_state"
    QUERY_IDENTITY = "query_identity"
    MEASURE_VOLTAGE = "measure_voltage"
    MEASURE_CURRENT = "measure_current"
    RAW = "raw"


# Commands that may change what the supply regulates to.
SETPOINT_CHANGING = frozenset(
    {
        CommandKind.SET_VOLTAGE,
        CommandKind.SET_CURRENT_LIMIT,
        CommandKind.SET_OUTPUT_ENABLED,
        CommandKind.RESET,
        CommandKind.RAW,
    }
)


@dataclass(frozen=True)
class Measurement:
    voltage: float
    current: float


@dataclass(frozen=True)
class Setpoints:
    """Limits actually programmed on the device."""

    voltage: float
    current: float


Response = Union[None, float, bool, str, Measurement, Setpoints]


@dataclass(frozen=True)
class Command:
    """One logical operation on the supply."""

    kind: CommandKind
    value: Union[None, float, bool, str] = None

    # -- factory helpers -------------------------------------------------
    @classmethod
    def set_voltage(cls, volts: float) -> "Command":
        return cls(CommandKind.SET_VOLTAGE, float(volts))

    @classmethod
    def set_current_limit(cls, amps: float) -> "Command":
        return cls(CommandKind.SET_CURRENT_LIMIT, float(amps))

    @classmethod
    def set_output_enabled(cls, enabled: bool) -> "Command":
        return cls(CommandKind.SET_OUTPUT_ENABLED, bool(enabled))

    @classmethod
    def set_beeper_enabled(cls, enabled: bool) -> "Command":
        return cls(CommandKind.SET_BEEPER_ENABLED, bool(enabled))

    @classmethod
    def reset(cls) -> "Command":
        return cls(CommandKind.RESET)

    @classmethod
    def unlock(cls) -> "Command":
        return cls(CommandKind.UNLOCK)

    @classmethod
    def query_measured_all(cls) -> "Command":
        return cls(CommandKind.QUERY_MEASURED_ALL)

    @classmethod
    def query_active_setpoints(cls) -> "Command":
        return cls(CommandKind.QUERY_ACTIVE_SETPOINTS)

    @classmethod
    def query_output_state(cls) -> "Command":
        return cls(CommandKind.QUERY_OUTPUT_STATE)

    @classmethod
    def query_identity(cls) -> "Command":
        return cls(CommandKind.QUERY_IDENTITY)

    @classmethod
    def measure_voltage(cls) -> "Command":
        return cls(CommandKind.MEASURE_VOLTAGE)

    @classmethod
    def measure_current(cls) -> "Command":
        return cls(CommandKind.MEASURE_CURRENT)

    @classmethod
    def raw(cls, text: str) -> "Command":
        text = text.strip()
        if not text:
            raise ValueError("Raw SCPI command must not be empty")
        return cls(CommandKind.RAW, text)

    # ---------------------------------------------------------------------
    @property
    def is_query(self) -> bool:
        if self.kind is CommandKind.RAW:
            return "?" in str(self.value)
        return self.kind in _QUERIES

    def __str__(self) -> str:
        if self.value is None:
            return self.kind.value
        return f"{self.kind.value}({self.value})"


_QUERIES = frozenset(
    {
        CommandKind.QUERY_MEASURED_ALL,
        CommandKind.QUERY_ACTIVE_SETPOINTS,
        CommandKind.QUERY_OUTPUT_STATE,
        CommandKind.QUERY_IDENTITY,
        CommandKind.MEASURE_VOLTAGE,
        CommandKind.MEASURE_CURRENT,
    }
)


def _on_off(enabled: object) -> str:
    return "ON" if enabled else "OFF"


def encode(command: Command) -> str:
    """Return the wire line for a write command or single-line query."""
    kind = command.kind
    if kind is CommandKind.SET_VOLTAGE:
        return f"{Wire.SET_VOLT} {command.value:.3f}"
    if kind is CommandKind.SET_CURRENT_LIMIT:
        return f"{Wire.SET_CURR} {command.value:.3f}"
    if kind is CommandKind.SET_OUTPUT_ENABLED:
        return f"{Wire.OUTP} {_on_off(command.value)}"
    if kind is CommandKind.SET_BEEPER_ENABLED:
        return f"{Wire.BEEP} {_on_off(command.value)}"
    if kind is CommandKind.RESET:
        return Wire.RESET
    if kind is CommandKind.UNLOCK:
        return Wire.UNLOCK
    if kind is CommandKind.QUERY_MEASURED_ALL:
        return Wire.READ_ALL
    if kind is CommandKind.QUERY_OUTPUT_STATE:
        return Wire.READ_OUTP
    if kind is CommandKind.QUERY_IDENTITY:
        return Wire.IDN
    if kind is CommandKind.MEASURE_VOLTAGE:
        return Wire.READ_VOLT
    if kind is CommandKind.MEASURE_CURRENT:
        return Wire.READ_CURR
    if kind is CommandKind.RAW:
        return str(command.value)
    raise ValueError(f"{kind.value} has no single-line encoding")


# ---------------------------------------------------------------------------
# Response parsing


def parse_float(line: str) -> float:
    try:
        return float(line.strip())
    except ValueError as exc:
        raise MalformedResponse(f"Expected a number, got {line!r}", raw=line) from exc


def parse_bool(line: str) -> bool:
    token = line.strip().upper()
    if token in ("1", "ON"):
        return True
    if token in ("0", "OFF"):
        return False
    raise MalformedResponse(f"Expected ON/OFF, got {line!r}", raw=line)


def parse_measurement(line: str) -> Measurement:
    """Parse ``MEAS:ALL?`` output. Fields past voltage and current are ignored."""
    parts = [part.strip() for part in line.split(",")]
    if len(parts) < 2:
        raise MalformedResponse(f"Expected 'voltage,current', got {line!r}", raw=line)
    return Measurement(voltage=parse_float(parts[0]), current=parse_float(parts[1]))


def parse_identity(line: str) -> str:
    text = line.strip()
    if not text:
        raise MalformedResponse("Empty identity string", raw=line)
    return text


# ---------------------------------------------------------------------------


class ScpiClient:
    """Encodes commands, writes them and reads back exactly one line per query.

    Not thread-safe on its own; callers go through the command serializer.
    """

    def __init__(self, transport: LineTransport, response_timeout: Optional[float] = None) -> None:
        self.transport = transport
        self.response_timeout = response_timeout

    def close(self) -> None:
        self.transport.close()

    # -- basic helpers ---------------------------------------------------
    def write(self, line: str) -> None:
        logger.debug("TX: %s", line)
        self.transport.write_line(line)

    def query(self, line: str) -> str:
        self.transport.discard_input()
        self.write(line)
        response = self.transport.read_line(timeout=self.response_timeout)
        logger.debug("RX: %s", response)
        return response

    # -- command API -----------------------------------------------------
    def execute(self, command: Command) -> Response:
        kind = command.kind
        if kind is CommandKind.QUERY_ACTIVE_SETPOINTS:
            voltage = parse_float(self.query(Wire.GET_SET_VOLT))
            current = parse_float(self.query(Wire.GET_SET_CURR))
            return Setpoints(voltage=voltage, current=current)

        line = encode(command)
        if not command.is_query:
            self.write(line)
            return None

        response = self.query(line)
        if kind is CommandKind.QUERY_MEASURED_ALL:
            return parse_measurement(response)
        if kind is CommandKind.QUERY_OUTPUT_STATE:
            return parse_bool(response)
        if kind is CommandKind.QUERY_IDENTITY:
            return parse_identity(response)
        if kind in (CommandKind.MEASURE_VOLTAGE, CommandKind.MEASURE_CURRENT):
            return parse_float(response)
        return response
