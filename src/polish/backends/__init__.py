from polish.backends.base import (
    AgentBackend,
    AgentExecutionError,
    AgentMessage,
    AgentProcessError,
    AgentRequest,
    AgentTimeoutError,
)
from polish.backends.claude import ClaudeCodeBackend

__all__ = [
    "AgentBackend",
    "AgentExecutionError",
    "AgentMessage",
    "AgentProcessError",
    "AgentRequest",
    "AgentTimeoutError",
    "ClaudeCodeBackend",
]
