"""Agent execution services invoked by loop runs"""

from .service import (
    AgentExecutionService,
    AgentRunRequest,
    CallbackAgentService,
    CancelToken,
    HTTPAgentService,
)

__all__ = [
    "AgentExecutionService",
    "AgentRunRequest",
    "CallbackAgentService",
    "CancelToken",
    "HTTPAgentService",
]
