"""Derived status: regulation mode and output power."""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

from psu_control.instrumentation.scpi import Measurement, Setpoints


class RegulationMode(Enum):
    CC = "CC"
    CV = "CV"
    UNKNOWN = "Unknown"


@dataclass(frozen=True)
class Tolerance:
    """Comparison band around the active setpoints.

    Sized to the supply's read-back resolution (10 mV / 1 mA class instruments plus a
    few counts of meter noise), never to how precisely a value can be typed in.
    """

    voltage: float = 0.05
    current: float = 0.01


DEFAULT_TOLERANCE = Tolerance()


def classify_mode(
    measured_voltage: float,
    measured_current: float,
    voltage_setpoint: float,
    current_limit: float,
    tolerance: Tolerance = DEFAULT_TOLERANCE,
    output_enabled: bool = True,
) -> RegulationMode:
    """Classify CC/CV against the device-confirmed setpoints."""
    if not output_enabled:
        return RegulationMode.UNKNOWN
    at_current_limit = abs(measured_current - current_limit) <= tolerance.current
    voltage_sagged = measured_voltage < voltage_setpoint - tolerance.voltage
    if at_current_limit and voltage_sagged:
        return RegulationMode.CC
    if abs(measured_voltage - voltage_setpoint) <= tolerance.voltage:
        return RegulationMode.CV
    return RegulationMode.UNKNOWN


def compute_status(
    measured_voltage: float,
    measured_current: float,
    voltage_setpoint: float,
    current_limit: float,
    tolerance: Tolerance = DEFAULT_TOLERANCE,
    output_enabled: bool = True,
) -> Tuple[RegulationMode, float]:
    """Return ``(mode, power)``. Pure: identical inputs give identical results."""
    mode = classify_mode(
        measured_voltage,
        measured_current,
        voltage_setpoint,
        current_limit,
        tolerance=tolerance,
        output_enabled=output_enabled,
    )
    return mode, measured_voltage * measured_current


@dataclass(frozen=True, slots=True)
class DeviceSnapshot:
    """Immutable view of the supply after one read cycle."""

    output_enabled: bool
    voltage_setpoint: float
    current_limit: float
    measured_voltage: float
    measured_current: float
    mode: RegulationMode
    power: float
    timestamp: float


def build_snapshot(
    output_enabled: bool,
    setpoints: Setpoints,
    measurement: Measurement,
    tolerance: Tolerance = DEFAULT_TOLERANCE,
    timestamp: Optional[float] = None,
) -> DeviceSnapshot:
    mode, power = compute_status(
        measurement.voltage,
        measurement.current,
        setpoints.voltage,
        setpoints.current,
        tolerance=tolerance,
        output_enabled=output_enabled,
    )
    return DeviceSnapshot(
        output_enabled=output_enabled,
        voltage_setpoint=setpoints.voltage,
        current_limit=setpoints.current,
        measured_voltage=measurement.voltage,
        measured_current=measurement.current,
        mode=mode,
        power=power,
        timestamp=time.monotonic() if timestamp is None else timestamp,
    )
