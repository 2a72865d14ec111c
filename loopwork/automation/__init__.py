"""Loop automation: schedule, API-poll and file triggers feeding single-flight agent runs"""

from .errors import (
    LoopError,
    LoopConfigError,
    CronError,
    WatchPathError,
    ApiPollError,
    AgentRunError,
)
from .models import (
    LoopConfig,
    LoopQueueConfig,
    ScheduleTrigger,
    ApiTrigger,
    FileTrigger,
    ScheduleEvent,
    ApiEvent,
    FileEvent,
    LoopStatus,
    normalize_loop_config,
)
from .conditions import get_json_path_value, check_condition
from .templates import apply_template, build_template_variables, build_message
from .scheduler import ScheduledTask, compute_next_run
from .file_watcher import FileWatcher, FileCandidate

__all__ = [
    "LoopError", "LoopConfigError", "CronError", "WatchPathError", "ApiPollError", "AgentRunError",
    "LoopConfig", "LoopQueueConfig", "ScheduleTrigger", "ApiTrigger", "FileTrigger",
    "ScheduleEvent", "ApiEvent", "FileEvent", "LoopStatus", "normalize_loop_config",
    "get_json_path_value", "check_condition",
    "apply_template", "build_template_variables", "build_message",
    "ScheduledTask", "compute_next_run",
    "FileWatcher", "FileCandidate",
]
