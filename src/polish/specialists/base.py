from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from polish.agent import AgentRunner, AgentRunResult, EmitFn
from polish.backends.base import PermissionMode
from polish.capabilities import ResolvedOptions
from polish.models import Phase


@dataclass(slots=True)
class SpecialistResponse:
    role: str
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)
    result: AgentRunResult | None = None


class SpecialistAgent:
    role: str = "specialist"
    phase: Phase = Phase.IMPLEMENT
    fallback_prompt: str = "You are a software specialist."
    permission_mode: PermissionMode = "bypassPermissions"
    continue_prompt: str | None = None

    def __init__(self, runner: AgentRunner, *, system_prompt_override: str | None = None) -> None:
        self.runner = runner
        self.system_prompt = (system_prompt_override or self.fallback_prompt).strip()

    async def run(
        self,
        instruction: str,
        cwd: Path,
        *,
        options: ResolvedOptions | None = None,
        emit: EmitFn | None = None,
        abort: asyncio.Event | None = None,
        on_text: Callable[[str], Any] | None = None,
        max_turns: int | None = None,
    ) -> SpecialistResponse:
        result = await self.runner.run(
            instruction,
            cwd,
            system_prompt=self.system_prompt,
            options=options,
            emit=emit,
            continue_prompt=self.continue_prompt,
            permission_mode=self.permission_mode,
            abort=abort,
            on_text=on_text,
            max_turns=max_turns,
        )
        return SpecialistResponse(
            role=self.role,
            content=result.text.strip(),
            metadata={
                "phase": str(self.phase),
                "subtype": result.subtype,
                "continuations": result.continuations,
                "tool_calls": len(result.tool_calls),
                "allowed_tools": list(options.tools) if options else None,
            },
            result=result,
        )
