"""I/O utilities (configuration)."""

from .settings import (
    DEFAULT_SETTINGS_PATH,
    AutomationSettings,
    ControllerSettings,
    PollingSettings,
    SerialSettings,
    StatusSettings,
    find_project_root,
    load_controller_settings,
    load_settings,
    update_settings_value,
)

__all__ = [
    "DEFAULT_SETTINGS_PATH",
    "AutomationSettings",
    "ControllerSettings",
    "PollingSettings",
    "SerialSettings",
    "StatusSettings",
    "find_project_root",
    "load_controller_settings",
    "load_settings",
    "update_settings_value",
]
