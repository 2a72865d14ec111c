"""Observability: structured logging and loop metrics."""

from .logging_config import setup_logging, bind_thread, JsonFormatter, ThreadIdFilter
from .metrics import MetricsCollector

__all__ = [
    "setup_logging",
    "bind_thread",
    "JsonFormatter",
    "ThreadIdFilter",
    "MetricsCollector",
]
