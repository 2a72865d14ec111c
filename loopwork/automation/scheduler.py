"""Cron scheduling for loop triggers"""

import logging
import asyncio
from typing import Awaitable, Callable, Optional
from datetime import datetime
from croniter import croniter

from .errors import CronError

logger = logging.getLogger(__name__)


def compute_next_run(cron_expression: str, now: datetime) -> datetime:
    """Next fire time strictly after now.

    Supports standard 5-field cron expressions:
    - * * * * * (every minute)
    - */5 * * * * (every 5 minutes)
    - 0 * * * * (every hour)
    - 0 0 * * 0 (weekly on Sunday)

    Raises:
        CronError: expression is empty or cannot be parsed
    """
    if not cron_expression or not cron_expression.strip():
        raise CronError("empty cron expression")
    try:
        return croniter(cron_expression.strip(), now).get_next(datetime)
    except Exception as e:
        raise CronError(str(e)) from e


class ScheduledTask:
    """A single-shot timer: sleep for delay seconds, then fire the callback once.

    Periodic behaviour comes from the callback arming a fresh ScheduledTask,
    so a slow fire never stacks up missed ticks.
    """

    def __init__(
        self,
        delay: float,
        callback: Callable[[], Awaitable[None]],
        name: str = "loop",
        due_at: Optional[datetime] = None,
    ):
        self.delay = max(0.0, delay)
        self.callback = callback
        self.name = name
        self.due_at = due_at
        self.fire_count = 0
        self._task: Optional[asyncio.Task] = None

    def arm(self) -> "ScheduledTask":
        """Start the countdown; must be called from a running event loop"""
        self._task = asyncio.create_task(self._wait(), name=f"scheduled:{self.name}")
        logger.debug(f"Armed '{self.name}' in {self.delay:.1f}s")
        return self

    async def _wait(self):
        await asyncio.sleep(self.delay)
        await self.fire()

    async def fire(self):
        """Run the callback now. Errors are logged, never raised."""
        self.fire_count += 1
        try:
            await self.callback()
        except Exception as e:
            logger.error(f"Scheduled task '{self.name}' failed: {e}", exc_info=True)

    def cancel(self):
        if self._task and not self._task.done():
            self._task.cancel()
        self._task = None

    @property
    def armed(self) -> bool:
        return self._task is not None and not self._task.done()
