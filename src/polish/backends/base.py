from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal

from polish.errors import AgentExecutionError, AgentProcessError, AgentTimeoutError

if TYPE_CHECKING:
    from polish.capabilities import ResolvedOptions

MessageKind = Literal["tool_pre", "tool_post", "text", "thinking", "result", "system"]
PermissionMode = Literal["default", "acceptEdits", "bypassPermissions", "plan"]

__all__ = [
    "AgentBackend",
    "AgentExecutionError",
    "AgentMessage",
    "AgentProcessError",
    "AgentRequest",
    "AgentTimeoutError",
]


@dataclass(slots=True)
class AgentRequest:
    prompt: str
    cwd: Path
    system_prompt: str | None = None
    options: ResolvedOptions | None = None
    max_turns: int = 30
    resume_session_id: str | None = None
    model: str | None = None
    permission_mode: PermissionMode = "bypassPermissions"


@dataclass(slots=True)
class AgentMessage:
    kind: MessageKind
    tool: str | None = None
    tool_input: dict[str, Any] = field(default_factory=dict)
    tool_output: str | None = None
    tool_use_id: str | None = None
    text: str = ""
    subtype: str | None = None
    session_id: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


class AgentBackend(ABC):
    name: str = "agent"

    @abstractmethod
    async def execute(self, request: AgentRequest) -> AsyncIterator[AgentMessage]:
        """Run one agent invocation and stream its tool, text and result messages."""
