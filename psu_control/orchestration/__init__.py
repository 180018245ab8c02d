"""Connection lifecycle, polling, automation and the controller facade."""

from .automation import (
    AUTOMATION_INTERVAL_FLOOR_MS,
    AutomationConfig,
    AutomationEngine,
    AutomationPhase,
    AutomationState,
)
from .connection import ConnectionEvent, ConnectionManager, ConnectionState, FaultReason
from .controller import PowerSupplyController
from .polling import POLL_INTERVAL_FLOOR_MS, PollingEngine, clamp_poll_interval

__all__ = [
    "AUTOMATION_INTERVAL_FLOOR_MS",
    "POLL_INTERVAL_FLOOR_MS",
    "AutomationConfig",
    "AutomationEngine",
    "AutomationPhase",
    "AutomationState",
    "ConnectionEvent",
    "ConnectionManager",
    "ConnectionState",
    "FaultReason",
    "PollingEngine",
    "PowerSupplyController",
    "clamp_poll_interval",
]
