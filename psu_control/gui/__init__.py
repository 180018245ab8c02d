"""Qt integration for an external front end."""

from __future__ import annotations

from .bridge import ControllerBridge

__all__ = ["ControllerBridge"]
