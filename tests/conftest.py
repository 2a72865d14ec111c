"""
Pytest configuration for loopwork tests
"""
from datetime import datetime, timezone
from functools import partial

import pytest
import pytest_asyncio

from loopwork.agent.service import CallbackAgentService
from loopwork.automation.file_watcher import FileWatcher
from loopwork.automation.manager import LoopManager
from loopwork.gateway.events import EventBus
from loopwork.gateway.thread_store import ThreadStore
from tests.helpers import FakeClock, GatedAgent

# 2026-03-01 10:07:30 UTC
FIXED_NOW = datetime(2026, 3, 1, 10, 7, 30, tzinfo=timezone.utc).timestamp()


@pytest.fixture
def clock():
    return FakeClock(FIXED_NOW)


@pytest.fixture
def store(tmp_path):
    return ThreadStore(str(tmp_path / "threads.db"))


@pytest.fixture
def workspace(tmp_path):
    ws = tmp_path / "workspace"
    ws.mkdir()
    return ws


@pytest.fixture
def event_bus():
    return EventBus()


@pytest_asyncio.fixture
async def agent():
    return GatedAgent()


@pytest_asyncio.fixture
async def manager(store, agent, clock, event_bus):
    """LoopManager with a gated agent and an observer-less file watcher"""
    mgr = LoopManager(
        store,
        CallbackAgentService(agent),
        events=event_bus,
        clock=clock,
        settle_seconds=0,
        watcher_factory=partial(FileWatcher, use_observer=False),
    )
    yield mgr
    agent.gate.set()
    mgr.stop_all()
    await mgr.wait_idle()
