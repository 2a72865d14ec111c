"""Tests for loop message templates"""
from loopwork.automation.models import (
    ApiEvent,
    ApiTrigger,
    FileEvent,
    FileTrigger,
    LoopConfig,
    ScheduleEvent,
    ScheduleTrigger,
)
from loopwork.automation.templates import (
    apply_template,
    build_message,
    build_template_variables,
    format_local_time,
    stringify_limited,
)

TS = 1_772_359_650.0


def test_apply_template_tolerates_whitespace():
    out = apply_template("a={{a}} b={{  b  }} c={{ missing }}", {"a": "1", "b": "2"})
    assert out == "a=1 b=2 c="


def test_stringify_limited_truncates():
    text = stringify_limited({"k": "v" * 50}, 20)
    assert len(text) == 20 + len("\n...[truncated]")
    assert text.endswith("\n...[truncated]")
    assert stringify_limited("short", 20) == "short"


def test_schedule_variables():
    config = LoopConfig(trigger=ScheduleTrigger(cron="*/5 * * * *"))
    variables = build_template_variables(config, ScheduleEvent(ts=TS))
    assert variables["trigger.type"] == "schedule"
    assert variables["schedule.cron"] == "*/5 * * * *"
    assert variables["time"] == format_local_time(TS)


def test_api_variables():
    config = LoopConfig(trigger=ApiTrigger(cron="* * * * *", url="http://x.test/s"))
    event = ApiEvent(ts=TS, response={"ready": True}, path_value=True, status=200)
    variables = build_template_variables(config, event)
    assert variables["api.url"] == "http://x.test/s"
    assert variables["api.status"] == "200"
    assert '"ready": true' in variables["api.json"]
    assert variables["api.pathValue"] == "true"


def test_file_variables():
    config = LoopConfig(trigger=FileTrigger(watch_path="/w"))
    event = FileEvent(ts=TS, file_path="/w/new.md", preview="hello", size=5)
    variables = build_template_variables(config, event)
    assert variables["file.path"] == "/w/new.md"
    assert variables["file.preview"] == "hello"
    assert variables["file.size"] == "5"


def test_build_message_with_template():
    config = LoopConfig(trigger=FileTrigger(watch_path="/w"), content_template="Summarize {{ file.path }}")
    message = build_message(config, FileEvent(ts=TS, file_path="/w/a.txt"))
    marker, body = message.split("\n", 1)
    assert marker == f"[Loop Trigger @{format_local_time(TS)}]"
    assert body == "Summarize /w/a.txt"


def test_build_message_marker_only_when_template_renders_empty():
    config = LoopConfig(trigger=ScheduleTrigger(cron="* * * * *"), content_template="{{ nothing }}")
    assert build_message(config, ScheduleEvent(ts=TS)) == f"[Loop Trigger @{format_local_time(TS)}]"
