"""Tests for file trigger helpers and the FileWatcher pipeline"""
import asyncio
import os

import pytest

from loopwork.automation.errors import WatchPathError
from loopwork.automation.file_watcher import (
    FileCandidate,
    FileWatcher,
    list_files_recursive,
    matches_suffix,
    read_file_preview,
    should_ignore_path,
    validate_watch_path,
)
from loopwork.automation.models import FileTrigger
from tests.helpers import wait_for


class TestValidateWatchPath:
    def test_missing(self, workspace):
        with pytest.raises(WatchPathError, match="Missing watch path"):
            validate_watch_path("  ", str(workspace))

    def test_relative_resolves_against_workspace(self, workspace):
        (workspace / "inbox").mkdir()
        assert validate_watch_path("inbox", str(workspace)) == (workspace / "inbox").resolve()

    def test_escape_rejected(self, workspace):
        with pytest.raises(WatchPathError, match="within the workspace"):
            validate_watch_path("../", str(workspace))

    def test_sibling_with_common_prefix_rejected(self, tmp_path, workspace):
        sibling = tmp_path / "workspace-other"
        sibling.mkdir()
        with pytest.raises(WatchPathError, match="within the workspace"):
            validate_watch_path(str(sibling), str(workspace))

    def test_nonexistent(self, workspace):
        with pytest.raises(WatchPathError, match="Failed to read watch path"):
            validate_watch_path("gone", str(workspace))

    def test_file_is_not_directory(self, workspace):
        (workspace / "a.txt").write_text("x")
        with pytest.raises(WatchPathError, match="must be a directory"):
            validate_watch_path("a.txt", str(workspace))

    def test_no_workspace(self, tmp_path):
        assert validate_watch_path(str(tmp_path)) == tmp_path.resolve()


class TestFilters:
    @pytest.mark.parametrize("path,ignored", [
        ("notes.md", False),
        ("sub/notes.md", False),
        (".env", True),
        (".git/config", True),
        ("node_modules/pkg/index.js", True),
        ("src/__pycache__/mod.pyc", True),
        ("venv/lib/x.py", True),
    ])
    def test_should_ignore_path(self, path, ignored):
        assert should_ignore_path(path) is ignored

    def test_matches_suffix(self):
        assert matches_suffix("/a/b.MD", [".md"])
        assert not matches_suffix("/a/b.txt", [".md", ".csv"])
        assert matches_suffix("/a/b.txt", [])
        assert matches_suffix("/a/b.txt", None)

    def test_baseline_skips_hidden_and_dependencies(self, tmp_path):
        (tmp_path / "a.txt").write_text("a")
        (tmp_path / "sub").mkdir()
        (tmp_path / "sub" / "b.txt").write_text("b")
        (tmp_path / ".git").mkdir()
        (tmp_path / ".git" / "HEAD").write_text("ref")
        (tmp_path / "node_modules").mkdir()
        (tmp_path / "node_modules" / "x.js").write_text("x")

        files = list_files_recursive(tmp_path)
        assert files == {
            os.path.abspath(tmp_path / "a.txt"),
            os.path.abspath(tmp_path / "sub" / "b.txt"),
        }


class TestPreview:
    def test_short_file_untouched(self, tmp_path):
        path = tmp_path / "a.txt"
        path.write_text("one\ntwo")
        assert read_file_preview(str(path), 10, 100) == ("one\ntwo", 7)

    def test_line_limit(self, tmp_path):
        path = tmp_path / "a.txt"
        path.write_text("\n".join(str(i) for i in range(10)))
        preview, size = read_file_preview(str(path), 3, 1000)
        assert preview == "0\n1\n2\n...[truncated]"
        assert size == 19

    def test_byte_limit(self, tmp_path):
        path = tmp_path / "a.txt"
        path.write_bytes(b"x" * 100)
        preview, size = read_file_preview(str(path), 200, 10)
        assert preview == "x" * 10 + "\n...[truncated]"
        assert size == 100

    def test_crlf_lines(self, tmp_path):
        path = tmp_path / "a.txt"
        path.write_bytes(b"a\r\nb\r\nc")
        assert read_file_preview(str(path), 2, 100)[0] == "a\nb\n...[truncated]"


class TestFileWatcher:
    @pytest.mark.asyncio
    async def test_injected_candidates_filtered(self, tmp_path):
        events, errors = [], []
        (tmp_path / "old.md").write_text("old")
        known = list_files_recursive(tmp_path)
        watcher = FileWatcher(
            tmp_path,
            FileTrigger(watch_path=str(tmp_path), suffixes=[".md"]),
            known,
            on_event=events.append,
            on_error=errors.append,
            settle_seconds=0,
            clock=lambda: 123.0,
            use_observer=False,
        )
        watcher.start()
        try:
            (tmp_path / "new.md").write_text("fresh")
            (tmp_path / ".hidden.md").write_text("h")
            watcher.inject(FileCandidate("old.md"))
            watcher.inject(FileCandidate(".hidden.md"))
            watcher.inject(FileCandidate("missing.md"))
            watcher.inject(FileCandidate(str(tmp_path.parent / "elsewhere.md")))
            watcher.inject(FileCandidate(str(tmp_path / "new.md")))

            await wait_for(lambda: len(events) == 1)
            await asyncio.sleep(0.05)
        finally:
            watcher.stop()

        assert len(events) == 1
        event = events[0]
        assert event.file_path == os.path.abspath(tmp_path / "new.md")
        assert event.preview == "fresh"
        assert event.size == 5
        assert event.ts == 123.0
        assert errors == []

    def test_inject_before_start(self, tmp_path):
        watcher = FileWatcher(tmp_path, FileTrigger(), set(), print, print, use_observer=False)
        with pytest.raises(RuntimeError):
            watcher.inject(FileCandidate("a"))

    @pytest.mark.asyncio
    async def test_observer_reports_new_file(self, tmp_path):
        events = []
        watcher = FileWatcher(
            tmp_path,
            FileTrigger(watch_path=str(tmp_path)),
            set(),
            on_event=events.append,
            on_error=lambda message: None,
            settle_seconds=0.05,
        )
        watcher.start()
        try:
            await asyncio.sleep(0.2)
            (tmp_path / "dropped.txt").write_text("data")
            await wait_for(lambda: len(events) >= 1, timeout=5)
        finally:
            watcher.stop()

        assert events[0].file_path == os.path.abspath(tmp_path / "dropped.txt")
