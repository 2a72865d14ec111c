from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Callable, Optional

from aiohttp import web
from aiohttp.test_utils import TestServer

from loopwork.agent.service import AgentRunRequest
from loopwork.automation.models import LoopConfig
from loopwork.gateway.thread_store import ThreadStore


class FakeClock:
    """Manually advanced epoch-seconds clock"""

    def __init__(self, start: float):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class GatedAgent:
    """Agent callback that records requests and blocks until the gate opens"""

    def __init__(self) -> None:
        self.requests: list[AgentRunRequest] = []
        self.gate = asyncio.Event()
        self.started = asyncio.Event()
        self.active = 0
        self.max_active = 0
        self.cancelled = 0
        self.fail_with: Optional[Exception] = None

    async def __call__(self, request: AgentRunRequest) -> None:
        self.requests.append(request)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        self.started.set()
        try:
            await self.gate.wait()
            if self.fail_with is not None:
                raise self.fail_with
        except asyncio.CancelledError:
            self.cancelled += 1
            raise
        finally:
            self.active -= 1


def seed_loop(
    store: ThreadStore,
    thread_id: str,
    config: LoopConfig,
    workspace: Any = None,
) -> None:
    patch: dict[str, Any] = {"loop": config.to_dict()}
    if workspace is not None:
        patch["workspacePath"] = str(workspace)
    store.update_metadata(thread_id, patch)


async def wait_for(predicate: Callable[[], bool], timeout: float = 3.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


@asynccontextmanager
async def json_server(handler: Callable, path: str = "/status"):
    """Serve handler on a local port; yields the full URL for path"""
    app = web.Application()
    app.router.add_route("*", path, handler)
    server = TestServer(app)
    await server.start_server()
    try:
        yield str(server.make_url(path))
    finally:
        await server.close()
