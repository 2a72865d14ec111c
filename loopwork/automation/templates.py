"""Message templates for loop runs"""

import json
import re
from datetime import datetime
from typing import Any, Dict

from .models import ApiEvent, ApiTrigger, FileEvent, LoopConfig, LoopEvent, ScheduleEvent, ScheduleTrigger

API_JSON_MAX_CHARS = 4000
API_PATH_VALUE_MAX_CHARS = 2000
TRUNCATION_MARKER = "\n...[truncated]"

_TOKEN_RE = re.compile(r"{{\s*([^}]+?)\s*}}")


def format_local_time(ts: float) -> str:
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M:%S")


def stringify_limited(value: Any, max_chars: int) -> str:
    """Dump value as text, truncated to max_chars."""
    if isinstance(value, str):
        text = value
    else:
        try:
            text = json.dumps(value, indent=2, ensure_ascii=False)
        except (TypeError, ValueError):
            text = str(value)
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + TRUNCATION_MARKER


def build_template_variables(config: LoopConfig, event: LoopEvent) -> Dict[str, str]:
    """Variables available to {{ name }} tokens for this event."""
    variables = {
        "trigger.type": event.type,
        "time": format_local_time(event.ts),
    }
    trigger = config.trigger
    if isinstance(event, ScheduleEvent) and isinstance(trigger, ScheduleTrigger):
        variables["schedule.cron"] = trigger.cron
    elif isinstance(event, ApiEvent):
        variables["api.url"] = trigger.url if isinstance(trigger, ApiTrigger) else ""
        variables["api.status"] = str(event.status)
        variables["api.json"] = stringify_limited(event.response, API_JSON_MAX_CHARS)
        variables["api.pathValue"] = stringify_limited(event.path_value, API_PATH_VALUE_MAX_CHARS)
    elif isinstance(event, FileEvent):
        variables["file.path"] = event.file_path
        variables["file.preview"] = event.preview
        variables["file.size"] = str(event.size)
    return variables


def apply_template(template: str, variables: Dict[str, str]) -> str:
    """Replace every {{ name }} token; unknown names become ""."""
    return _TOKEN_RE.sub(lambda m: variables.get(m.group(1), ""), template or "")


def build_message(config: LoopConfig, event: LoopEvent) -> str:
    """Marker line plus the rendered template, or just the marker."""
    marker = f"[Loop Trigger @{format_local_time(event.ts)}]"
    rendered = apply_template(config.content_template, build_template_variables(config, event))
    return f"{marker}\n{rendered}" if rendered else marker
