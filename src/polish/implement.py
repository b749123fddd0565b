from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from polish import git
from polish.agent import AgentRunner
from polish.capabilities import ResolvedOptions
from polish.errors import AgentExecutionError, GitCommandError
from polish.events import EventChannel, EventType
from polish.models import Phase, Plan
from polish.specialists.implementer import ImplementerAgent

logger = logging.getLogger(__name__)


def wip_commit_message(mission: str) -> str:
    short = mission if len(mission) <= 50 else mission[:47] + "..."
    return f"feat: {short} (WIP)"


@dataclass(slots=True)
class ImplementContext:
    mission: str
    project_path: Path
    feedback: str | None = None
    retry_count: int = 0
    plan: Plan | None = None
    excluded: Sequence[str] = ()


@dataclass(slots=True)
class ImplementResult:
    commit_hash: str | None = None
    message: str | None = None
    files_created: list[str] = field(default_factory=list)
    files_modified: list[str] = field(default_factory=list)
    edited: bool = False
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "commit_hash": self.commit_hash,
            "message": self.message,
            "files_created": list(self.files_created),
            "files_modified": list(self.files_modified),
        }


def _relative(path: str, root: Path) -> str:
    candidate = Path(path)
    if not candidate.is_absolute():
        return path
    try:
        return str(candidate.resolve().relative_to(root.resolve()))
    except ValueError:
        return path


async def run_implement_phase(
    context: ImplementContext,
    runner: AgentRunner,
    channel: EventChannel,
    *,
    options: ResolvedOptions | None = None,
    system_prompt: str | None = None,
    abort: asyncio.Event | None = None,
) -> ImplementResult:
    """Run the implementer once and commit whatever it produced as a WIP commit.

    Agent failures are reported as an ``error`` event and returned, never raised.
    """
    channel.emit(
        EventType.STATUS,
        {"phase": str(Phase.IMPLEMENT), "message": "Starting implementation..."},
    )

    agent = ImplementerAgent(runner, system_prompt_override=system_prompt)
    prompt = agent.build_prompt(
        context.mission,
        feedback=context.feedback,
        retry_count=context.retry_count,
        plan=context.plan,
    )
    base = await asyncio.to_thread(git.last_commit_hash, context.project_path)
    try:
        response = await agent.run(
            prompt, context.project_path, options=options, emit=channel.emit, abort=abort
        )
    except AgentExecutionError as exc:
        message = f"Implementation failed: {exc}"
        channel.emit(EventType.ERROR, {"message": message, "error_type": type(exc).__name__})
        return ImplementResult(error=message)

    run = response.result
    result = ImplementResult(edited=bool(run and run.edited))
    if run is None or run.aborted:
        return result
    if run.continuations:
        channel.emit(
            EventType.STATUS,
            {
                "phase": str(Phase.IMPLEMENT),
                "message": f"Implementation resumed {run.continuations} time(s)",
            },
        )
    if run.subtype and run.subtype != "success":
        channel.emit(
            EventType.STATUS,
            {"phase": str(Phase.IMPLEMENT), "message": f"Implementation stopped: {run.subtype}"},
        )

    try:
        if base is not None:
            await asyncio.to_thread(git.absorb_commits, context.project_path, base)
        entries = await asyncio.to_thread(
            git.status_entries, context.project_path, context.excluded
        )
        created = [_relative(path, context.project_path) for path in run.files_created]
        modified = [_relative(path, context.project_path) for path in run.files_modified]
        for code, path in entries:
            bucket = created if code in ("??", "A ") else modified
            if path not in created and path not in modified:
                bucket.append(path)
        result.files_created = created
        result.files_modified = modified

        if not entries:
            channel.emit(
                EventType.STATUS,
                {"phase": str(Phase.IMPLEMENT), "message": "No changes made during implementation"},
            )
            return result

        message = wip_commit_message(context.mission)
        result.commit_hash = await asyncio.to_thread(
            git.commit_all, context.project_path, message, context.excluded
        )
        result.message = message
    except GitCommandError as exc:
        message = f"Implementation failed: {exc}"
        channel.emit(EventType.ERROR, {"message": message, "error_type": type(exc).__name__})
        result.error = message
        return result

    channel.emit(
        EventType.IMPLEMENT_DONE,
        {
            "commit_hash": result.commit_hash,
            "message": result.message,
            "files_created": result.files_created,
            "files_modified": result.files_modified,
        },
    )
    channel.emit(
        EventType.STATUS,
        {"phase": str(Phase.IMPLEMENT), "message": f"Committed: {result.message}"},
    )
    logger.info("Implementation committed as %s", result.commit_hash)
    return result
