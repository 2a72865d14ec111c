"""Thread persistence and the notification event bus"""

from .events import Event, EventBus, EventTypes
from .thread_store import ThreadStore

__all__ = ["Event", "EventBus", "EventTypes", "ThreadStore"]
