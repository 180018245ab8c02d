import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Union

import yaml

logger = logging.getLogger(__name__)

PROJECT_MARKERS: Iterable[str] = (".git", "pyproject.toml", "config")
DEFAULT_SETTINGS_PATH = Path("config/settings.yml")

PathLike = Union[str, os.PathLike]


def find_project_root(markers: Iterable[str] = PROJECT_MARKERS) -> Path:
    """Attempt to locate the repository root by walking up until a marker file/dir appears."""
    start = Path(__file__).resolve().parent
    for candidate in [start] + list(start.parents):
        for marker in markers:
            if (candidate / marker).exists():
                return candidate
    return start


def _resolve(path: PathLike, project_root: Path) -> Path:
    target = Path(path)
    if not target.is_absolute():
        target = project_root / target
    return target


def _load_yaml(target: Path) -> Dict[str, Any]:
    if not target.exists():
        raise FileNotFoundError(f"settings file not found: {target}")
    with open(target, "r", encoding="utf-8") as handle:
        return yaml.safe_load(handle) or {}


def load_settings(path: Optional[PathLike] = None) -> Dict[str, Any]:
    """Load the YAML settings file, defaulting to ``config/settings.yml`` under the project root."""
    project_root = find_project_root()
    target = _resolve(path or DEFAULT_SETTINGS_PATH, project_root)
    return _load_yaml(target)


def update_settings_value(identifier: str, value: Any, path: Optional[PathLike] = None) -> None:
    """Update a value inside ``settings.yml`` given a dotted identifier such as ``serial.port``."""

    project_root = find_project_root()
    target = _resolve(path or DEFAULT_SETTINGS_PATH, project_root)
    data = _load_yaml(target)

    parts = identifier.split(".") if identifier else []
    if not parts:
        raise ValueError("Identifier must not be empty")

    cursor = data
    for key in parts[:-1]:
        if key not in cursor:
            raise KeyError(f"Missing key '{key}' in settings for '{identifier}'")
        cursor = cursor[key]
        if not isinstance(cursor, dict):
            raise TypeError(f"Expected mapping at '{key}' but found {type(cursor).__name__}")
    cursor[parts[-1]] = value

    with open(target, "w", encoding="utf-8") as handle:
        yaml.safe_dump(data, handle, sort_keys=False)


# ---------------------------------------------------------------------------
# Typed view


@dataclass(frozen=True)
class SerialSettings:
    """Line settings for the supply's serial port."""

    port: Optional[str] = None
    baudrate: int = 9600
    bytesize: int = 8
    parity: str = "N"
    stopbits: float = 1
    timeout_s: float = 0.5
    write_terminator: str = "\r\n"


@dataclass(frozen=True)
class PollingSettings:
    interval_ms: int = 1000
    enabled: bool = True
    failure_threshold: int = 3
    history_points: int = 600


@dataclass(frozen=True)
class StatusSettings:
    voltage_epsilon_v: float = 0.05
    current_epsilon_a: float = 0.01


@dataclass(frozen=True)
class AutomationSettings:
    min_interval_ms: int = 200


@dataclass(frozen=True)
class ControllerSettings:
    """Everything the controller reads from ``settings.yml``."""

    serial: SerialSettings = field(default_factory=SerialSettings)
    polling: PollingSettings = field(default_factory=PollingSettings)
    status: StatusSettings = field(default_factory=StatusSettings)
    automation: AutomationSettings = field(default_factory=AutomationSettings)

    @classmethod
    def from_mapping(cls, data: Optional[Dict[str, Any]]) -> "ControllerSettings":
        data = data or {}
        serial_raw = data.get("serial") or {}
        polling_raw = data.get("polling") or {}
        status_raw = data.get("status") or {}
        automation_raw = data.get("automation") or {}

        serial = SerialSettings(
            port=serial_raw.get("port"),
            baudrate=int(serial_raw.get("baudrate", SerialSettings.baudrate)),
            bytesize=int(serial_raw.get("bytesize", SerialSettings.bytesize)),
            parity=str(serial_raw.get("parity", SerialSettings.parity)),
            stopbits=float(serial_raw.get("stopbits", SerialSettings.stopbits)),
            timeout_s=float(serial_raw.get("timeout_s", SerialSettings.timeout_s)),
            write_terminator=str(serial_raw.get("write_terminator", SerialSettings.write_terminator)),
        )
        polling = PollingSettings(
            interval_ms=int(polling_raw.get("interval_ms", PollingSettings.interval_ms)),
            enabled=bool(polling_raw.get("enabled", PollingSettings.enabled)),
            failure_threshold=int(polling_raw.get("failure_threshold", PollingSettings.failure_threshold)),
            history_points=int(polling_raw.get("history_points", PollingSettings.history_points)),
        )
        status = StatusSettings(
            voltage_epsilon_v=float(status_raw.get("voltage_epsilon_v", StatusSettings.voltage_epsilon_v)),
            current_epsilon_a=float(status_raw.get("current_epsilon_a", StatusSettings.current_epsilon_a)),
        )
        automation = AutomationSettings(
            min_interval_ms=int(automation_raw.get("min_interval_ms", AutomationSettings.min_interval_ms)),
        )
        if polling.failure_threshold < 1:
            raise ValueError("polling.failure_threshold must be at least 1")
        if polling.history_points < 1:
            raise ValueError("polling.history_points must be at least 1")
        return cls(serial=serial, polling=polling, status=status, automation=automation)


def load_controller_settings(path: Optional[PathLike] = None) -> ControllerSettings:
    """Load ``settings.yml`` into a :class:`ControllerSettings`.

    An explicit *path* must exist. Without one, built-in defaults are used when the
    project has no settings file.
    """
    if path is not None:
        return ControllerSettings.from_mapping(load_settings(path))
    try:
        data = load_settings()
    except FileNotFoundError:
        logger.info("No settings file found under %s, using defaults", find_project_root())
        data = {}
    return ControllerSettings.from_mapping(data)
