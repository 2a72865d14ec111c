"""Loop configuration, trigger and event models"""

import copy
import json
from dataclasses import dataclass, field, replace
from typing import Any, ClassVar, Dict, List, Optional, Union

from .errors import LoopConfigError

DEFAULT_PREVIEW_LINES = 200
DEFAULT_PREVIEW_BYTES = 8192
DEFAULT_QUEUE_MERGE_WINDOW_SEC = 300
DEFAULT_API_TIMEOUT_MS = 10000

CONDITION_OPS = ("equals", "contains", "truthy")
HTTP_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE")


def _int_field(data: Dict[str, Any], key: str, default: Optional[int] = 0) -> Optional[int]:
    """Read an integer field; missing or empty values give default"""
    value = data.get(key)
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        raise LoopConfigError(f"{key} must be an integer, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise LoopConfigError(f"{key} must be an integer, got {value!r}") from e


@dataclass
class LoopQueueConfig:
    """Queue policy; only "strict" merge-window coalescing is supported"""
    policy: str = "strict"
    merge_window_sec: int = DEFAULT_QUEUE_MERGE_WINDOW_SEC

    def to_dict(self) -> Dict[str, Any]:
        return {"policy": self.policy, "mergeWindowSec": self.merge_window_sec}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "LoopQueueConfig":
        data = data or {}
        return cls(
            policy=data.get("policy") or "strict",
            merge_window_sec=_int_field(data, "mergeWindowSec") or 0,
        )


@dataclass
class ScheduleTrigger:
    """Fire on every cron tick"""
    type: ClassVar[str] = "schedule"
    cron: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "cron": self.cron}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScheduleTrigger":
        return cls(cron=data.get("cron") or "")


@dataclass
class ApiTrigger:
    """Poll an HTTP endpoint on every cron tick and fire when the condition holds"""
    type: ClassVar[str] = "api"
    cron: str = ""
    url: str = ""
    method: str = "GET"
    headers: Dict[str, str] = field(default_factory=dict)
    body_json: Optional[Dict[str, Any]] = None
    json_path: str = "$"
    op: str = "truthy"
    expected: Optional[str] = None
    timeout_ms: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "type": self.type,
            "cron": self.cron,
            "url": self.url,
            "method": self.method,
            "headers": dict(self.headers),
            "bodyJson": copy.deepcopy(self.body_json),
            "jsonPath": self.json_path,
            "op": self.op,
        }
        if self.expected is not None:
            data["expected"] = self.expected
        if self.timeout_ms is not None:
            data["timeoutMs"] = self.timeout_ms
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ApiTrigger":
        op = data.get("op") or "truthy"
        if op not in CONDITION_OPS:
            raise LoopConfigError(f"Unknown condition op: {op}")
        method = (data.get("method") or "GET").upper()
        if method not in HTTP_METHODS:
            raise LoopConfigError(f"Unsupported HTTP method: {method}")
        headers = data.get("headers") or {}
        if not isinstance(headers, dict):
            raise LoopConfigError("headers must be an object")
        expected = data.get("expected")
        return cls(
            cron=data.get("cron") or "",
            url=data.get("url") or "",
            method=method,
            headers={str(k): str(v) for k, v in headers.items()},
            body_json=copy.deepcopy(data.get("bodyJson")),
            json_path=data.get("jsonPath") or "$",
            op=op,
            expected=expected if expected is None or isinstance(expected, str) else json.dumps(expected),
            timeout_ms=_int_field(data, "timeoutMs", default=None),
        )


@dataclass
class FileTrigger:
    """Fire when a new file appears under watch_path"""
    type: ClassVar[str] = "file"
    watch_path: str = ""
    suffixes: List[str] = field(default_factory=list)
    preview_max_lines: int = 0
    preview_max_bytes: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "watchPath": self.watch_path,
            "suffixes": list(self.suffixes),
            "previewMaxLines": self.preview_max_lines,
            "previewMaxBytes": self.preview_max_bytes,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FileTrigger":
        return cls(
            watch_path=data.get("watchPath") or "",
            suffixes=[s for s in (data.get("suffixes") or []) if s],
            preview_max_lines=_int_field(data, "previewMaxLines") or 0,
            preview_max_bytes=_int_field(data, "previewMaxBytes") or 0,
        )


LoopTrigger = Union[ScheduleTrigger, ApiTrigger, FileTrigger]

_TRIGGER_TYPES = {t.type: t for t in (ScheduleTrigger, ApiTrigger, FileTrigger)}


def trigger_from_dict(data: Optional[Dict[str, Any]]) -> LoopTrigger:
    """Build a trigger from its persisted dict, dispatching on "type"."""
    if not data:
        raise LoopConfigError("Loop configuration has no trigger")
    if not isinstance(data, dict):
        raise LoopConfigError("Loop trigger must be an object")
    trigger_cls = _TRIGGER_TYPES.get(data.get("type"))
    if trigger_cls is None:
        raise LoopConfigError(f"Unknown trigger type: {data.get('type')!r}")
    return trigger_cls.from_dict(data)


@dataclass
class LoopConfig:
    """Per-thread loop configuration, persisted under the "loop" metadata key"""
    trigger: LoopTrigger
    enabled: bool = False
    content_template: str = ""
    queue: LoopQueueConfig = field(default_factory=LoopQueueConfig)
    last_run_at: Optional[str] = None
    last_error: Optional[str] = None
    next_run_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "contentTemplate": self.content_template,
            "trigger": self.trigger.to_dict(),
            "queue": self.queue.to_dict(),
            "lastRunAt": self.last_run_at,
            "lastError": self.last_error,
            "nextRunAt": self.next_run_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LoopConfig":
        if not isinstance(data, dict):
            raise LoopConfigError("Loop configuration must be an object")
        return cls(
            trigger=trigger_from_dict(data.get("trigger")),
            enabled=bool(data.get("enabled", False)),
            content_template=data.get("contentTemplate") or "",
            queue=LoopQueueConfig.from_dict(data.get("queue")),
            last_run_at=data.get("lastRunAt"),
            last_error=data.get("lastError"),
            next_run_at=data.get("nextRunAt"),
        )


def normalize_loop_config(config: LoopConfig) -> LoopConfig:
    """Fill defaults so downstream code can assume required fields are set.

    Pure and idempotent: returns a new LoopConfig, the input is untouched.
    """
    queue = LoopQueueConfig(
        policy="strict",
        merge_window_sec=config.queue.merge_window_sec or DEFAULT_QUEUE_MERGE_WINDOW_SEC,
    )
    trigger = copy.deepcopy(config.trigger)
    if isinstance(trigger, FileTrigger):
        trigger = replace(
            trigger,
            preview_max_lines=trigger.preview_max_lines or DEFAULT_PREVIEW_LINES,
            preview_max_bytes=trigger.preview_max_bytes or DEFAULT_PREVIEW_BYTES,
        )
    return replace(config, queue=queue, trigger=trigger)


@dataclass
class ScheduleEvent:
    ts: float
    type: ClassVar[str] = "schedule"


@dataclass
class ApiEvent:
    ts: float
    response: Any = None
    path_value: Any = None
    status: int = 0
    type: ClassVar[str] = "api"


@dataclass
class FileEvent:
    ts: float
    file_path: str = ""
    preview: str = ""
    size: int = 0
    type: ClassVar[str] = "file"


LoopEvent = Union[ScheduleEvent, ApiEvent, FileEvent]


@dataclass
class LoopStatus:
    running: bool = False
    queue_length: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"running": self.running, "queueLength": self.queue_length}
