"""Notification bus between the loop manager and whatever hosts it (daemon, UI)"""

import asyncio
import logging
import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Callable, Deque, Dict, List, Optional, Set

logger = logging.getLogger(__name__)


class EventTypes:
    """Event types published by loopwork"""

    TOAST = "toast"
    THREADS_CHANGED = "threads_changed"
    AGENT_STREAM = "agent_stream"

    SYSTEM_STARTUP = "system_startup"
    SYSTEM_SHUTDOWN = "system_shutdown"


@dataclass
class Event:
    type: str
    data: Dict[str, Any]
    timestamp: float = field(default_factory=time.time)


class EventBus:
    """Pub/sub by event type, with a bounded history for late subscribers.

    Loop runs report through two helpers: ``broadcast`` for user-visible
    toasts and ``threads_changed`` whenever a thread's persisted loop state
    was rewritten.
    """

    def __init__(self, max_history: int = 1000):
        self.handlers: Dict[str, List[Callable]] = defaultdict(list)
        self.event_history: Deque[Event] = deque(maxlen=max_history)
        self._pending: Set[asyncio.Task] = set()

    def on(self, event_type: str, handler: Callable):
        """Subscribe a sync or async handler to event_type"""
        self.handlers[event_type].append(handler)
        logger.debug(f"Registered handler for event: {event_type}")

    def off(self, event_type: str, handler: Callable):
        if handler in self.handlers.get(event_type, ()):
            self.handlers[event_type].remove(handler)

    def _deliver(self, event: Event) -> List[Any]:
        """Call sync handlers now; return coroutines from async ones"""
        self.event_history.append(event)
        pending = []
        for handler in list(self.handlers.get(event.type, ())):
            try:
                result = handler(event)
            except Exception as e:
                logger.error(f"Handler for '{event.type}' failed: {e}", exc_info=True)
                continue
            if asyncio.iscoroutine(result):
                pending.append(result)
        return pending

    async def emit(self, event: Event):
        """Publish and wait for async handlers to finish"""
        for coro in self._deliver(event):
            try:
                await coro
            except Exception as e:
                logger.error(f"Handler for '{event.type}' failed: {e}", exc_info=True)

    def publish(self, event: Event):
        """Publish from sync code; async handlers run as tasks on the current loop"""
        for coro in self._deliver(event):
            task = asyncio.get_running_loop().create_task(coro)
            self._pending.add(task)
            task.add_done_callback(partial(self._handler_done, event.type))

    def _handler_done(self, event_type: str, task: asyncio.Task):
        self._pending.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Handler for '{event_type}' failed: {error}", exc_info=error)

    async def drain(self):
        """Wait for async handlers started by publish"""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def broadcast(self, kind: str, message: str):
        """Toast for the user; kind is "error", "info", ..."""
        self.publish(Event(type=EventTypes.TOAST, data={"kind": kind, "message": message}))

    def threads_changed(self, thread_id: Optional[str] = None):
        self.publish(Event(type=EventTypes.THREADS_CHANGED, data={"thread_id": thread_id}))

    def get_history(self, event_type: Optional[str] = None, limit: int = 100) -> List[Event]:
        events = [e for e in self.event_history if event_type is None or e.type == event_type]
        return events[-limit:]

    def clear_history(self):
        self.event_history.clear()
