from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from contextlib import aclosing
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from polish.backends.base import AgentBackend, AgentMessage, AgentRequest, PermissionMode
from polish.capabilities import ResolvedOptions
from polish.events import EventType

logger = logging.getLogger(__name__)

EmitFn = Callable[[EventType, dict[str, Any]], Any]

FILE_WRITING_TOOLS = frozenset({"Write", "Edit", "MultiEdit", "NotebookEdit"})
MAX_TURNS_SUBTYPE = "error_max_turns"
TOOL_OUTPUT_LIMIT = 2000


@dataclass(slots=True)
class ToolCall:
    tool: str
    input: dict[str, Any] = field(default_factory=dict)
    output: str | None = None
    tool_use_id: str | None = None


@dataclass(slots=True)
class AgentRunResult:
    text: str = ""
    subtype: str | None = None
    session_id: str | None = None
    continuations: int = 0
    tool_calls: list[ToolCall] = field(default_factory=list)
    files_created: list[str] = field(default_factory=list)
    files_modified: list[str] = field(default_factory=list)
    aborted: bool = False

    @property
    def edited(self) -> bool:
        return any(call.tool in FILE_WRITING_TOOLS for call in self.tool_calls)

    @property
    def hit_turn_limit(self) -> bool:
        return self.subtype == MAX_TURNS_SUBTYPE


class AgentRunner:
    """Runs one logical agent task, resuming the session when it runs out of turns."""

    def __init__(
        self,
        backend: AgentBackend,
        *,
        max_turns: int = 30,
        max_continuations: int = 5,
        model: str | None = None,
    ) -> None:
        self.backend = backend
        self.max_turns = max_turns
        self.max_continuations = max_continuations
        self.model = model

    async def run(
        self,
        prompt: str,
        cwd: Path,
        *,
        system_prompt: str | None = None,
        options: ResolvedOptions | None = None,
        emit: EmitFn | None = None,
        continue_prompt: str | None = None,
        permission_mode: PermissionMode = "bypassPermissions",
        abort: asyncio.Event | None = None,
        on_text: Callable[[str], Any] | None = None,
        max_turns: int | None = None,
    ) -> AgentRunResult:
        result = AgentRunResult()
        pending: dict[str, ToolCall] = {}
        request = AgentRequest(
            prompt=prompt,
            cwd=cwd,
            system_prompt=system_prompt,
            options=options,
            max_turns=max_turns or self.max_turns,
            model=self.model,
            permission_mode=permission_mode,
        )
        texts: list[str] = []

        while True:
            final_text: str | None = None
            async with aclosing(self.backend.execute(request)) as stream:
                async for message in stream:
                    if abort is not None and abort.is_set():
                        result.aborted = True
                        break
                    if message.session_id:
                        result.session_id = message.session_id
                    if message.kind == "result":
                        result.subtype = message.subtype
                        final_text = message.text
                        continue
                    self._observe(message, result, pending, texts, emit, on_text)

            if result.aborted:
                break
            if final_text:
                texts.append(final_text)
            if (
                not result.hit_turn_limit
                or not continue_prompt
                or not result.session_id
                or result.continuations >= self.max_continuations
            ):
                break
            result.continuations += 1
            logger.info(
                "Agent hit its turn limit; continuing session %s (%d/%d)",
                result.session_id,
                result.continuations,
                self.max_continuations,
            )
            request = AgentRequest(
                prompt=continue_prompt,
                cwd=cwd,
                system_prompt=system_prompt,
                options=options,
                max_turns=max_turns or self.max_turns,
                resume_session_id=result.session_id,
                model=self.model,
                permission_mode=permission_mode,
            )

        # The result message repeats the last assistant text; keep the final answer only once.
        result.text = texts[-1] if texts else ""
        return result

    @staticmethod
    def _observe(
        message: AgentMessage,
        result: AgentRunResult,
        pending: dict[str, ToolCall],
        texts: list[str],
        emit: EmitFn | None,
        on_text: Callable[[str], Any] | None,
    ) -> None:
        if message.kind == "tool_pre":
            call = ToolCall(
                tool=message.tool or "unknown",
                input=dict(message.tool_input),
                tool_use_id=message.tool_use_id,
            )
            result.tool_calls.append(call)
            if message.tool_use_id:
                pending[message.tool_use_id] = call
            file_path = call.input.get("file_path")
            if isinstance(file_path, str) and file_path:
                if call.tool == "Write" and file_path not in result.files_created:
                    result.files_created.append(file_path)
                elif (
                    call.tool in FILE_WRITING_TOOLS
                    and file_path not in result.files_modified
                    and file_path not in result.files_created
                ):
                    result.files_modified.append(file_path)
            if emit is not None:
                emit(EventType.AGENT, {"tool": call.tool, "phase": "pre", "input": call.input})
        elif message.kind == "tool_post":
            call = pending.pop(message.tool_use_id or "", None)
            if call is not None:
                call.output = message.tool_output
            if emit is not None:
                emit(
                    EventType.AGENT,
                    {
                        "tool": message.tool or (call.tool if call else "unknown"),
                        "phase": "post",
                        "output": (message.tool_output or "")[:TOOL_OUTPUT_LIMIT],
                    },
                )
        elif message.kind == "text":
            texts.append(message.text)
            if on_text is not None:
                on_text(message.text)
