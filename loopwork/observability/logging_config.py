"""Logging setup for the daemon and CLI.

Log records emitted while a loop is handling a thread carry that thread's id
(``record.thread_id``); the manager sets it with ``bind_thread`` at the start
of each fire and run.
"""

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

_current_thread_id: ContextVar[Optional[str]] = ContextVar("loop_thread_id", default=None)

TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(thread_id)s] %(message)s"

NOISY_LOGGERS = ("watchdog", "aiohttp.access")


def bind_thread(thread_id: Optional[str]) -> None:
    """Tag log records from the current task with a thread id."""
    _current_thread_id.set(thread_id)


class ThreadIdFilter(logging.Filter):
    """Attach the bound thread id (or "-") to every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "thread_id", None):
            record.thread_id = _current_thread_id.get() or "-"
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "thread_id": getattr(record, "thread_id", "-"),
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def setup_logging(
    level: str = "INFO",
    json_format: bool = False,
    log_file: Optional[str] = None,
    quiet: Iterable[str] = NOISY_LOGGERS,
) -> None:
    """Replace root handlers with stdout (and optionally file) output."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    for existing in root.handlers[:]:
        root.removeHandler(existing)

    formatter = JsonFormatter() if json_format else logging.Formatter(TEXT_FORMAT)
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(ThreadIdFilter())
        root.addHandler(handler)

    for name in quiet:
        logging.getLogger(name).setLevel(logging.WARNING)
