"""Agent execution services used by loop runs.

The agent itself (reasoning, tools, sandboxing) lives outside this package.
A loop run hands an AgentRunRequest to an AgentExecutionService and waits
for it to finish; failures are raised, cancellation is signalled through the
request's CancelToken.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

import aiohttp

from loopwork.automation.errors import AgentRunError
from loopwork.gateway.events import Event, EventBus, EventTypes

logger = logging.getLogger(__name__)


class CancelToken:
    """Cancellation handle for one agent run"""

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class AgentRunRequest:
    thread_id: str
    workspace_path: str
    message: str
    cancel_token: CancelToken = field(default_factory=CancelToken)
    model_id: Optional[str] = None
    disable_approvals: bool = True

    def to_payload(self) -> Dict[str, Any]:
        return {
            "threadId": self.thread_id,
            "workspacePath": self.workspace_path,
            "message": self.message,
            "modelId": self.model_id,
            "disableApprovals": self.disable_approvals,
        }


class AgentExecutionService(ABC):
    """Runs the agent for one message against a workspace"""

    @abstractmethod
    async def run(self, request: AgentRunRequest) -> None:
        """Run to completion.

        Raises:
            AgentRunError: the agent reported a failure
            asyncio.CancelledError: the run was cancelled
        """


class CallbackAgentService(AgentExecutionService):
    """Delegate runs to an async callable (embedding hosts, tests)"""

    def __init__(self, callback: Callable[[AgentRunRequest], Awaitable[Any]]):
        self.callback = callback

    async def run(self, request: AgentRunRequest) -> None:
        await _race_cancel(self.callback(request), request.cancel_token)


class HTTPAgentService(AgentExecutionService):
    """POST runs to an agent endpoint and stream its output onto the event bus.

    The endpoint receives the request payload as JSON at {base_url}/runs and
    answers with newline-delimited output. A final JSON line of the form
    {"error": "..."} marks a failed run.
    """

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 0,
        event_bus: Optional[EventBus] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.event_bus = event_bus

    async def run(self, request: AgentRunRequest) -> None:
        await _race_cancel(self._post(request), request.cancel_token)

    async def _post(self, request: AgentRunRequest) -> None:
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds or None, connect=30)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(f"{self.base_url}/runs", json=request.to_payload()) as resp:
                    if resp.status >= 400:
                        text = await resp.text()
                        raise AgentRunError(f"Agent endpoint returned {resp.status}: {text[:200]}")
                    async for raw in resp.content:
                        line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                        if line:
                            self._handle_line(request, line)
        except asyncio.TimeoutError as e:
            raise AgentRunError(f"Agent run timed out after {self.timeout_seconds}s") from e
        except aiohttp.ClientError as e:
            raise AgentRunError(f"Agent endpoint unreachable: {e}") from e

    def _handle_line(self, request: AgentRunRequest, line: str) -> None:
        try:
            data = json.loads(line)
        except ValueError:
            data = None
        if isinstance(data, dict) and data.get("error"):
            raise AgentRunError(str(data["error"]))
        if self.event_bus:
            self.event_bus.publish(Event(
                type=EventTypes.AGENT_STREAM,
                data={"thread_id": request.thread_id, "chunk": line},
            ))


async def _race_cancel(coro: Awaitable[Any], token: CancelToken) -> Any:
    """Await coro unless token is cancelled first, in which case cancel it."""
    work = asyncio.ensure_future(coro)
    waiter = asyncio.ensure_future(token.wait())
    try:
        await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        if not work.done():
            work.cancel()
        waiter.cancel()
    if work.cancelled() or not work.done():
        raise asyncio.CancelledError()
    return work.result()
