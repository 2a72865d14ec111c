"""File watcher for loop file triggers: detect new files and build previews."""

import asyncio
import logging
import os
import re
import stat
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Set, Tuple

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .errors import WatchPathError
from .models import DEFAULT_PREVIEW_BYTES, DEFAULT_PREVIEW_LINES, FileEvent, FileTrigger
from .templates import TRUNCATION_MARKER

logger = logging.getLogger(__name__)

DEFAULT_SETTLE_SECONDS = 0.2

# Dependency and cache directories never produce triggers
IGNORED_DIR_NAMES = frozenset({"node_modules", "__pycache__", "venv", "site-packages"})

_LINE_SPLIT_RE = re.compile(r"\r?\n")


@dataclass(frozen=True)
class FileCandidate:
    """A path reported by the OS watcher (or injected by a caller)"""
    path: str


def should_ignore_path(path: str) -> bool:
    """True for dotfiles and anything under a dot or dependency directory.

    Pass paths relative to the watch root so the root's own location is not judged.
    """
    parts = [p for p in Path(path).parts if p != Path(path).anchor]
    return any((p.startswith(".") and p not in (".", "..")) or p in IGNORED_DIR_NAMES for p in parts)


def matches_suffix(path: str, suffixes: Optional[Iterable[str]] = None) -> bool:
    suffixes = [s for s in (suffixes or []) if s]
    if not suffixes:
        return True
    lower = path.lower()
    return any(lower.endswith(s.lower()) for s in suffixes)


def is_within(path: Path, root: Path) -> bool:
    try:
        path.relative_to(root)
        return True
    except ValueError:
        return False


def validate_watch_path(watch_path: str, workspace_path: Optional[str] = None) -> Path:
    """Resolve and check a watch path.

    Relative paths are taken relative to the workspace when there is one.

    Raises:
        WatchPathError: missing, outside the workspace, unreadable, or not a directory
    """
    if not watch_path or not watch_path.strip():
        raise WatchPathError("Missing watch path for file trigger.")
    path = Path(watch_path).expanduser()
    if workspace_path:
        workspace = Path(workspace_path).expanduser().resolve()
        if not path.is_absolute():
            path = workspace / path
        path = path.resolve()
        if not is_within(path, workspace):
            raise WatchPathError("Watch path must be within the workspace.")
    else:
        path = path.resolve()
    try:
        mode = path.stat().st_mode
    except OSError as e:
        raise WatchPathError(f"Failed to read watch path: {e}") from e
    if not stat.S_ISDIR(mode):
        raise WatchPathError("Watch path must be a directory.")
    return path


def list_files_recursive(root: Path) -> Set[str]:
    """Baseline of existing files; pre-existing files never trigger."""
    files: Set[str] = set()
    stack: List[str] = [str(root)]
    while stack:
        current = stack.pop()
        with os.scandir(current) as entries:
            for entry in entries:
                if entry.name.startswith(".") or entry.name in IGNORED_DIR_NAMES:
                    continue
                if entry.is_dir(follow_symlinks=False):
                    stack.append(entry.path)
                else:
                    files.add(os.path.abspath(entry.path))
    return files


def read_file_preview(
    file_path: str,
    max_lines: int = DEFAULT_PREVIEW_LINES,
    max_bytes: int = DEFAULT_PREVIEW_BYTES,
) -> Tuple[str, int]:
    """Read at most max_bytes and max_lines of a file.

    Returns:
        (preview, size) where size is the file's size on disk
    """
    size = os.stat(file_path).st_size
    with open(file_path, "rb") as f:
        raw = f.read(max_bytes)
    text = raw.decode("utf-8", errors="replace")
    lines = _LINE_SPLIT_RE.split(text)
    preview = "\n".join(lines[:max_lines])
    if len(lines) > max_lines or size > max_bytes:
        preview += TRUNCATION_MARKER
    return preview, size


class _CandidateHandler(FileSystemEventHandler):
    """Forward watchdog events from the observer thread onto the event loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop, queue: "asyncio.Queue[FileCandidate]"):
        self.loop = loop
        self.queue = queue

    def on_any_event(self, event: FileSystemEvent):
        if event.is_directory or event.event_type == "deleted":
            return
        path = getattr(event, "dest_path", "") or event.src_path
        if isinstance(path, bytes):
            path = os.fsdecode(path)
        if not path:
            return
        try:
            self.loop.call_soon_threadsafe(self.queue.put_nowait, FileCandidate(path))
        except RuntimeError:
            # loop already closed during shutdown
            pass


class FileWatcher:
    """Watch a directory tree and emit a FileEvent for each genuinely new file.

    The OS observer only produces FileCandidate messages; filtering, the
    settle delay and preview reading happen on the event loop. inject()
    feeds candidates directly, bypassing the observer.
    """

    def __init__(
        self,
        root: Path,
        trigger: FileTrigger,
        known_files: Set[str],
        on_event: Callable[[FileEvent], None],
        on_error: Callable[[str], None],
        settle_seconds: float = DEFAULT_SETTLE_SECONDS,
        clock: Callable[[], float] = time.time,
        use_observer: bool = True,
    ):
        self.root = Path(root)
        self.trigger = trigger
        self.known_files = known_files
        self.on_event = on_event
        self.on_error = on_error
        self.settle_seconds = settle_seconds
        self.clock = clock
        self.use_observer = use_observer
        self._queue: Optional[asyncio.Queue] = None
        self._consumer: Optional[asyncio.Task] = None
        self._pending: Set[asyncio.Task] = set()
        self._observer = None

    @property
    def running(self) -> bool:
        return self._consumer is not None and not self._consumer.done()

    def start(self) -> None:
        loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        if self.use_observer:
            observer = Observer()
            observer.schedule(_CandidateHandler(loop, self._queue), str(self.root), recursive=True)
            observer.start()
            self._observer = observer
        self._consumer = loop.create_task(self._consume(), name=f"file-watch:{self.root}")
        logger.info(f"File watcher started for {self.root}")

    def inject(self, candidate: FileCandidate) -> None:
        if self._queue is None:
            raise RuntimeError("File watcher is not started")
        self._queue.put_nowait(candidate)

    def stop(self) -> None:
        if self._observer:
            try:
                self._observer.stop()
                self._observer.join(timeout=2)
            except Exception as e:
                logger.debug(f"File watcher stop: {e}")
            self._observer = None
        if self._consumer:
            self._consumer.cancel()
            self._consumer = None
        for task in list(self._pending):
            task.cancel()
        self._pending.clear()
        logger.info(f"File watcher stopped for {self.root}")

    async def _consume(self) -> None:
        while True:
            candidate = await self._queue.get()
            try:
                await self._handle(candidate)
            except Exception as e:
                logger.error(f"File watcher error for {candidate.path}: {e}", exc_info=True)
                self.on_error(f"File watcher error: {e}")

    async def _handle(self, candidate: FileCandidate) -> None:
        full_path = os.path.abspath(os.path.join(self.root, candidate.path))
        try:
            relative = os.path.relpath(full_path, self.root)
        except ValueError:
            return
        if relative == os.pardir or relative.startswith(os.pardir + os.sep):
            return
        if should_ignore_path(relative):
            return
        if not matches_suffix(full_path, self.trigger.suffixes):
            return
        if not await asyncio.to_thread(os.path.isfile, full_path):
            return
        if full_path in self.known_files:
            return
        self.known_files.add(full_path)

        task = asyncio.create_task(self._settle_and_emit(full_path))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _settle_and_emit(self, full_path: str) -> None:
        # let the writer finish before reading
        await asyncio.sleep(self.settle_seconds)
        try:
            preview, size = await asyncio.to_thread(
                read_file_preview,
                full_path,
                self.trigger.preview_max_lines or DEFAULT_PREVIEW_LINES,
                self.trigger.preview_max_bytes or DEFAULT_PREVIEW_BYTES,
            )
        except OSError as e:
            self.on_error(f"Failed to read file: {e}")
            return
        logger.info(f"New file detected: {full_path} ({size} bytes)")
        self.on_event(FileEvent(ts=self.clock(), file_path=full_path, preview=preview, size=size))
