"""Loop manager: per-thread trigger runners with a single-flight run queue.

Each thread with an active loop gets a LoopRunner holding its timer or file
watcher, its pending events and the cancel handle of the run in flight.
The persisted LoopConfig (thread metadata "loop" key) is the source of
truth; runners are an in-memory cache rebuilt from it on start.
"""

import asyncio
import copy
import logging
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from functools import partial
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

from loopwork.agent.service import AgentExecutionService, AgentRunRequest, CancelToken
from loopwork.gateway.events import EventBus
from loopwork.gateway.thread_store import ThreadStore
from loopwork.observability.logging_config import bind_thread
from loopwork.observability.metrics import MetricsCollector

from .api_poll import poll_api
from .errors import AgentRunError, ApiPollError, CronError, LoopConfigError, WatchPathError
from .file_watcher import DEFAULT_SETTLE_SECONDS, FileWatcher, list_files_recursive, validate_watch_path
from .models import (
    DEFAULT_API_TIMEOUT_MS,
    DEFAULT_QUEUE_MERGE_WINDOW_SEC,
    ApiTrigger,
    FileEvent,
    FileTrigger,
    LoopConfig,
    LoopEvent,
    LoopStatus,
    ScheduleEvent,
    ScheduleTrigger,
    normalize_loop_config,
)
from .scheduler import ScheduledTask, compute_next_run
from .templates import build_message

logger = logging.getLogger(__name__)

LOOP_METADATA_KEY = "loop"
WORKSPACE_METADATA_KEY = "workspacePath"
MODEL_METADATA_KEY = "model"


@dataclass
class LoopRunner:
    """Live state of one thread's loop. Not persisted."""
    thread_id: str
    config: LoopConfig
    running: bool = False
    queue: List[LoopEvent] = field(default_factory=list)
    last_enqueue_at: Optional[float] = None
    schedule_task: Optional[ScheduledTask] = None
    file_watcher: Optional[FileWatcher] = None
    known_files: Set[str] = field(default_factory=set)
    cancel_token: Optional[CancelToken] = None
    run_task: Optional[asyncio.Task] = None
    # bumped on every teardown so stale timers, watchers and runs can tell
    generation: int = 0


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat()


class LoopManager:
    """Owns every LoopRunner; the only way to change loop state.

    Control surface: get_config, update_config, start, stop, status.
    Lifecycle hooks: reset_all_on_startup, stop_all, cleanup_thread.
    """

    def __init__(
        self,
        store: ThreadStore,
        agent_service: AgentExecutionService,
        events: Optional[EventBus] = None,
        metrics: Optional[MetricsCollector] = None,
        clock: Callable[[], float] = time.time,
        api_timeout_ms: int = DEFAULT_API_TIMEOUT_MS,
        settle_seconds: float = DEFAULT_SETTLE_SECONDS,
        watcher_factory: Callable[..., FileWatcher] = FileWatcher,
    ):
        self.store = store
        self.agent_service = agent_service
        self.events = events or EventBus()
        self.metrics = metrics or MetricsCollector()
        self.runners: Dict[str, LoopRunner] = {}
        self._clock = clock
        self._api_timeout_ms = api_timeout_ms
        self._settle_seconds = settle_seconds
        self._watcher_factory = watcher_factory
        self._tasks: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock()).astimezone()

    def _load_config(self, thread_id: str) -> Optional[LoopConfig]:
        raw = self.store.get_metadata(thread_id).get(LOOP_METADATA_KEY)
        if not raw:
            return None
        return normalize_loop_config(LoopConfig.from_dict(raw))

    def _save_config(self, thread_id: str, config: LoopConfig) -> None:
        self.store.update_metadata(thread_id, {LOOP_METADATA_KEY: config.to_dict()})
        self.events.threads_changed(thread_id)

    def _get_workspace_path(self, thread_id: str) -> Optional[str]:
        return self.store.get_metadata(thread_id).get(WORKSPACE_METADATA_KEY) or None

    def _mark_error(self, runner: LoopRunner, message: str) -> None:
        logger.warning(f"Loop {runner.thread_id}: {message}")
        runner.config.last_error = message
        self._save_config(runner.thread_id, runner.config)

    def _spawn(self, coro: Awaitable[Any], name: str) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ------------------------------------------------------------------
    # Control surface
    # ------------------------------------------------------------------
    def get_config(self, thread_id: str) -> Optional[LoopConfig]:
        return self._load_config(thread_id)

    def status(self, thread_id: str) -> LoopStatus:
        runner = self.runners.get(thread_id)
        if not runner:
            return LoopStatus()
        return LoopStatus(running=runner.running, queue_length=len(runner.queue))

    def stats(self, thread_id: Optional[str] = None) -> Dict[str, Any]:
        return self.metrics.get_stats(thread_id)

    async def update_config(
        self, thread_id: str, config: Union[LoopConfig, Dict[str, Any]]
    ) -> LoopConfig:
        """Normalize, persist, and restart (or tear down) the runner to match."""
        if isinstance(config, dict):
            config = LoopConfig.from_dict(config)
        normalized = normalize_loop_config(config)
        if not normalized.enabled or isinstance(normalized.trigger, FileTrigger):
            normalized.next_run_at = None
        self._save_config(thread_id, normalized)

        runner = self.runners.get(thread_id)
        if runner is None and normalized.enabled:
            runner = self._create_runner(thread_id, normalized)
        if runner is None:
            return copy.deepcopy(normalized)

        runner.config = normalized
        if normalized.enabled:
            await self._start_runner(runner)
        else:
            self._stop_runner(runner)
        return copy.deepcopy(runner.config)

    async def start(self, thread_id: str) -> LoopConfig:
        config = self._load_config(thread_id)
        if config is None:
            raise LoopConfigError("Missing loop configuration")
        normalized = normalize_loop_config(replace(config, enabled=True, last_error=None))
        self._save_config(thread_id, normalized)

        runner = self.runners.get(thread_id)
        if runner is None:
            runner = self._create_runner(thread_id, normalized)
        else:
            runner.config = normalized
        await self._start_runner(runner)
        logger.info(f"Loop started for thread {thread_id} ({normalized.trigger.type})")
        return copy.deepcopy(runner.config)

    async def stop(self, thread_id: str) -> LoopConfig:
        config = self._load_config(thread_id)
        if config is None:
            raise LoopConfigError("Missing loop configuration")
        normalized = normalize_loop_config(replace(config, enabled=False, next_run_at=None))
        self._save_config(thread_id, normalized)

        runner = self.runners.get(thread_id)
        if runner:
            runner.config = normalized
            self._stop_runner(runner)
        logger.info(f"Loop stopped for thread {thread_id}")
        return copy.deepcopy(normalized)

    def stop_all(self) -> None:
        """Tear down every runner (process shutdown)."""
        for runner in self.runners.values():
            self._stop_runner(runner)
        self.runners.clear()

    def cleanup_thread(self, thread_id: str) -> None:
        """Tear down and forget a thread's runner (thread deleted)."""
        runner = self.runners.pop(thread_id, None)
        if runner:
            self._stop_runner(runner)

    def reset_all_on_startup(self) -> int:
        """Pause every persisted loop; loops never resume across restarts.

        Returns:
            Number of configs that were switched off
        """
        reset = 0
        for thread_id in self.store.list_thread_ids():
            try:
                config = self._load_config(thread_id)
            except LoopConfigError as e:
                logger.warning(f"Skipping unreadable loop config for {thread_id}: {e}")
                continue
            if config and config.enabled:
                self._save_config(thread_id, replace(config, enabled=False, next_run_at=None))
                reset += 1
        if reset:
            logger.info(f"Paused {reset} loop(s) from the previous session")
        return reset

    # ------------------------------------------------------------------
    # Runner lifecycle
    # ------------------------------------------------------------------
    def _create_runner(self, thread_id: str, config: LoopConfig) -> LoopRunner:
        runner = LoopRunner(thread_id=thread_id, config=config)
        self.runners[thread_id] = runner
        return runner

    async def _start_runner(self, runner: LoopRunner) -> None:
        self._stop_runner(runner)
        trigger = runner.config.trigger
        if isinstance(trigger, (ScheduleTrigger, ApiTrigger)):
            self._schedule_next(runner)
        elif isinstance(trigger, FileTrigger):
            runner.config.next_run_at = None
            self._save_config(runner.thread_id, runner.config)
            await self._start_file_watcher(runner, trigger)

    def _stop_runner(self, runner: LoopRunner) -> None:
        runner.generation += 1
        if runner.schedule_task:
            runner.schedule_task.cancel()
            runner.schedule_task = None
        if runner.file_watcher:
            runner.file_watcher.stop()
            runner.file_watcher = None
        if runner.cancel_token:
            runner.cancel_token.cancel()
            runner.cancel_token = None
        if runner.run_task and not runner.run_task.done():
            runner.run_task.cancel()
        runner.run_task = None
        runner.running = False
        runner.queue.clear()
        runner.last_enqueue_at = None
        runner.known_files = set()

    # ------------------------------------------------------------------
    # Schedule / API triggers
    # ------------------------------------------------------------------
    def _schedule_next(self, runner: LoopRunner, after: Optional[datetime] = None) -> None:
        trigger = runner.config.trigger
        now = self._now()
        base = after if after is not None and after > now else now
        try:
            next_at = compute_next_run(trigger.cron, base)
        except CronError as e:
            runner.config.next_run_at = None
            self._save_config(runner.thread_id, runner.config)
            self._mark_error(runner, f"Invalid cron expression: {e}")
            return

        delay = max(0.0, (next_at - now).total_seconds())
        runner.config.next_run_at = _iso(next_at)
        self._save_config(runner.thread_id, runner.config)

        callback = partial(self._on_schedule_fire, runner, runner.generation, next_at)
        runner.schedule_task = ScheduledTask(
            delay, callback, name=f"loop:{runner.thread_id}", due_at=next_at
        ).arm()

    async def _on_schedule_fire(self, runner: LoopRunner, generation: int, due_at: datetime) -> None:
        if not runner.config.enabled or runner.generation != generation:
            return
        bind_thread(runner.thread_id)
        trigger = runner.config.trigger
        try:
            if isinstance(trigger, ApiTrigger):
                await self._handle_api_trigger(runner, trigger)
            else:
                self.enqueue(runner, ScheduleEvent(ts=self._clock()))
        except Exception as e:
            if runner.generation == generation:
                self._mark_error(runner, f"Schedule trigger failed: {e}")
        finally:
            if runner.config.enabled and runner.generation == generation:
                self._schedule_next(runner, after=due_at)

    async def _handle_api_trigger(self, runner: LoopRunner, trigger: ApiTrigger) -> None:
        try:
            event = await poll_api(trigger, default_timeout_ms=self._api_timeout_ms, clock=self._clock)
        except ApiPollError as e:
            self.metrics.record_poll(runner.thread_id, error=True)
            self._mark_error(runner, f"API trigger failed: {e}")
            return
        except Exception as e:
            logger.error(f"Loop {runner.thread_id}: API poll crashed: {e}", exc_info=True)
            self.metrics.record_poll(runner.thread_id, error=True)
            self._mark_error(runner, f"API trigger failed: {e}")
            return
        self.metrics.record_poll(runner.thread_id, matched=event is not None)
        if event is not None:
            self.enqueue(runner, event)

    # ------------------------------------------------------------------
    # File triggers
    # ------------------------------------------------------------------
    async def _start_file_watcher(self, runner: LoopRunner, trigger: FileTrigger) -> None:
        generation = runner.generation
        workspace_path = self._get_workspace_path(runner.thread_id)
        try:
            root = await asyncio.to_thread(validate_watch_path, trigger.watch_path, workspace_path)
            known_files = await asyncio.to_thread(list_files_recursive, root)
        except WatchPathError as e:
            self._mark_error(runner, str(e))
            return
        except OSError as e:
            self._mark_error(runner, f"Failed to read watch path: {e}")
            return
        if runner.generation != generation:
            return

        runner.known_files = known_files
        watcher = self._watcher_factory(
            root,
            trigger,
            known_files,
            on_event=partial(self._on_file_event, runner, generation),
            on_error=partial(self._on_file_error, runner, generation),
            settle_seconds=self._settle_seconds,
            clock=self._clock,
        )
        try:
            watcher.start()
        except OSError as e:
            self._mark_error(runner, f"Failed to watch path: {e}")
            return
        runner.file_watcher = watcher
        logger.info(f"Loop {runner.thread_id}: watching {root} ({len(known_files)} existing files)")

    def _on_file_event(self, runner: LoopRunner, generation: int, event: FileEvent) -> None:
        if runner.generation == generation:
            self.enqueue(runner, event)

    def _on_file_error(self, runner: LoopRunner, generation: int, message: str) -> None:
        if runner.generation == generation:
            self._mark_error(runner, message)

    # ------------------------------------------------------------------
    # Queue and run executor
    # ------------------------------------------------------------------
    def enqueue(self, runner: LoopRunner, event: LoopEvent) -> bool:
        """Queue an event under the merge-window policy and kick a drain.

        Inside the window a pending event is replaced by the newer one; an
        empty queue always receives the event. Returns False when the loop is
        disabled and the event was dropped.
        """
        if not runner.config.enabled:
            self.metrics.record_enqueue(runner.thread_id, dropped=True)
            return False
        window = runner.config.queue.merge_window_sec or DEFAULT_QUEUE_MERGE_WINDOW_SEC
        now = self._clock()
        merged = (
            runner.last_enqueue_at is not None
            and now - runner.last_enqueue_at < window
            and len(runner.queue) > 0
        )
        if merged:
            runner.queue[-1] = event
        else:
            runner.queue.append(event)
        runner.last_enqueue_at = now
        self.metrics.record_enqueue(runner.thread_id, merged=merged)
        self._spawn(self._run_next(runner), name=f"loop-run:{runner.thread_id}")
        return True

    async def _run_next(self, runner: LoopRunner) -> None:
        if runner.running or not runner.queue:
            return
        event = runner.queue.pop(0)
        generation = runner.generation
        bind_thread(runner.thread_id)
        token = CancelToken()
        runner.running = True
        runner.cancel_token = token
        runner.run_task = asyncio.current_task()
        started = time.monotonic()

        try:
            await self._execute(runner, event, token)
            runner.config.last_run_at = _iso(self._now())
            runner.config.last_error = None
            self._save_config(runner.thread_id, runner.config)
            self.metrics.record_run(runner.thread_id, time.monotonic() - started)
        except asyncio.CancelledError:
            self.metrics.record_cancelled(runner.thread_id)
            logger.info(f"Loop {runner.thread_id}: run cancelled")
            raise
        except Exception as e:
            message = str(e) or e.__class__.__name__
            self.metrics.record_run(runner.thread_id, time.monotonic() - started, error=True)
            if runner.generation == generation:
                self._mark_error(runner, message)
            self.events.broadcast("error", f"[Loop] {message}")
        finally:
            if runner.generation == generation:
                runner.running = False
                runner.cancel_token = None
                runner.run_task = None
                if runner.queue:
                    self._spawn(self._run_next(runner), name=f"loop-run:{runner.thread_id}")

    async def _execute(self, runner: LoopRunner, event: LoopEvent, token: CancelToken) -> None:
        message = build_message(runner.config, event)
        metadata = self.store.get_metadata(runner.thread_id)
        workspace_path = metadata.get(WORKSPACE_METADATA_KEY)
        if not workspace_path:
            raise AgentRunError("Workspace path is required to run loop tasks.")
        logger.info(f"Loop {runner.thread_id}: running {event.type} trigger")
        await self.agent_service.run(AgentRunRequest(
            thread_id=runner.thread_id,
            workspace_path=workspace_path,
            message=message,
            cancel_token=token,
            model_id=metadata.get(MODEL_METADATA_KEY),
            disable_approvals=True,
        ))

    async def wait_idle(self) -> None:
        """Wait until every spawned drain has finished (shutdown, tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
