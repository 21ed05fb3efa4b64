"""Event bus and websocket hub exports."""

from .bus import EventBus, EventListener
from .ws import hub

__all__ = ["EventBus", "EventListener", "hub"]
