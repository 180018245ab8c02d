"""Derived device status, snapshot history and subscriptions."""

from .series import SampleHistory
from .status import (
    DEFAULT_TOLERANCE,
    DeviceSnapshot,
    RegulationMode,
    Tolerance,
    build_snapshot,
    classify_mode,
    compute_status,
)
from .stream import SnapshotHub, SnapshotSubscription

__all__ = [
    "DEFAULT_TOLERANCE",
    "DeviceSnapshot",
    "RegulationMode",
    "SampleHistory",
    "SnapshotHub",
    "SnapshotSubscription",
    "Tolerance",
    "build_snapshot",
    "classify_mode",
    "compute_status",
]
