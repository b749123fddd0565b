from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from polish import git
from polish.agent import AgentRunner
from polish.backends.base import AgentBackend
from polish.capabilities import ResolvedOptions, resolve_capabilities
from polish.config import Preset, SessionConfig, validate_reviewers
from polish.errors import MissingMetricsError, PolishError, SessionNotFoundError
from polish.events import Event, EventChannel, EventType
from polish.implement import ImplementContext, run_implement_phase
from polish.models import (
    CommitInfo,
    MetricResult,
    Phase,
    Plan,
    ReviewDecision,
    SessionStatus,
    StopReason,
    Verdict,
)
from polish.planner import ApproveCallback, Planner, PlanningContext, auto_approve
from polish.plugins import PluginResolver
from polish.review import ReviewContext, ReviewGate
from polish.store import SessionStore
from polish.summary import SummaryGenerator
from polish.testing_loop import TestingLoop, TestingLoopResult
from polish.worktree import WorktreeConfig, WorktreeManager, generate_session_id

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SessionOutcome:
    session_id: str
    status: SessionStatus = SessionStatus.PENDING
    success: bool = False
    stopped_reason: StopReason | None = None
    initial_score: float | None = None
    final_score: float | None = None
    commits: list[CommitInfo] = field(default_factory=list)
    iterations: int = 0
    review_iterations: int = 0
    duration_seconds: float = 0.0
    branch_name: str | None = None
    worktree_kept: bool | None = None
    plan: Plan | None = None
    review: ReviewDecision | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "status": str(self.status),
            "success": self.success,
            "stopped_reason": str(self.stopped_reason) if self.stopped_reason else None,
            "initial_score": self.initial_score,
            "final_score": self.final_score,
            "commits": [commit.to_dict() for commit in self.commits],
            "iterations": self.iterations,
            "review_iterations": self.review_iterations,
            "duration_seconds": round(self.duration_seconds, 3),
            "branch_name": self.branch_name,
            "worktree_kept": self.worktree_kept,
            "plan": self.plan.to_dict() if self.plan else None,
            "review": self.review.to_dict() if self.review else None,
            "error": self.error,
        }


@dataclass(slots=True)
class _RunState:
    outcome: SessionOutcome
    workdir: Path
    worktree: WorktreeConfig | None = None
    excluded: list[str] = field(default_factory=list)
    base_commit: str | None = None
    changed_files: list[str] = field(default_factory=list)
    implement_commit: str | None = None
    edited: bool = False
    metrics: list[MetricResult] = field(default_factory=list)

    def finish(self, status: SessionStatus, reason: StopReason, *, success: bool) -> None:
        self.outcome.status = status
        self.outcome.stopped_reason = reason
        self.outcome.success = success


class Orchestrator:
    """Runs one session: planning, implement, testing loop and review, with redirects.

    Every phase transition and the terminal state are announced on the channel;
    a structural ``PolishError`` ends the session as failed with an ``error`` event.
    """

    def __init__(
        self,
        session: SessionConfig,
        preset: Preset,
        backend: AgentBackend,
        *,
        channel: EventChannel | None = None,
        store: SessionStore | None = None,
        worktrees: WorktreeManager | None = None,
        plugin_resolver: PluginResolver | None = None,
        approve_plan: ApproveCallback | None = None,
        summarizer: SummaryGenerator | None = None,
        abort: asyncio.Event | None = None,
        session_id: str | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.session = session
        self.preset = preset
        self.backend = backend
        self.session_id = session_id or generate_session_id()
        self.channel = channel or EventChannel(self.session_id)
        self.store = store
        self.worktrees = worktrees or WorktreeManager(
            preset.worktree.root_path(), link_dirs=preset.worktree.link_dirs
        )
        self.plugin_resolver = plugin_resolver or PluginResolver()
        self.approve_plan = approve_plan
        self.summarizer = summarizer
        self.abort = abort or asyncio.Event()
        self.clock = clock
        self.runner = AgentRunner(
            backend,
            max_turns=preset.agent.max_turns,
            max_continuations=preset.agent.max_continuations,
            model=preset.agent.model,
        )

    def cancel(self) -> None:
        self.abort.set()

    def options_for(self, phase: Phase) -> ResolvedOptions:
        return resolve_capabilities(
            self.preset,
            phase,
            self.session.capability_overrides,
            plugin_resolver=self.plugin_resolver,
        )

    # Store ---------------------------------------------------------------------------
    def _register_session(self) -> Callable[[], None] | None:
        if self.store is None:
            return None
        try:
            self.store.get_session(self.session_id)
        except SessionNotFoundError:
            retry = self.session.retry
            self.store.create_session(
                self.session.project_path,
                self.session.mission,
                session_id=self.session_id,
                retry_count=retry.retry_count if retry else 0,
            )
        store = self.store

        def _persist(event: Event) -> None:
            store.add_event(self.session_id, event)

        return self.channel.add_sink(_persist)

    def _update_store(self, **fields: Any) -> None:
        if self.store is None:
            return
        try:
            self.store.update_session(self.session_id, **fields)
        except PolishError as exc:
            logger.warning("Could not update session %s: %s", self.session_id, exc)

    def _enter(self, phase: Phase, status: SessionStatus, iteration: int | None = None) -> None:
        data: dict[str, Any] = {"phase": str(phase)}
        if self.session.mission:
            data["mission"] = self.session.mission
        if iteration is not None:
            data["iteration"] = iteration
        self.channel.emit(EventType.PHASE, data)
        self._update_store(status=status)

    def _aborted(self, state: _RunState) -> bool:
        if not self.abort.is_set():
            return False
        self.channel.emit(EventType.STATUS, {"message": "Session cancelled"})
        state.finish(SessionStatus.CANCELLED, StopReason.CANCELLED, success=False)
        return True

    # Setup ---------------------------------------------------------------------------
    async def _isolate(self, state: _RunState) -> None:
        project_path = self.session.project_path
        base_branch = await asyncio.to_thread(self.worktrees.preflight, project_path)
        if not self.preset.metrics:
            raise MissingMetricsError(
                f"Preset {self.preset.name!r} defines no metrics; add [[metrics]] to polish.toml"
            )
        if self.session.mission:
            validate_reviewers(self.preset.review.reviewers)

        retry = self.session.retry
        if retry is not None:
            self.channel.emit(
                EventType.RETRY,
                {
                    "retry_count": retry.retry_count,
                    "feedback": retry.feedback,
                    "branch_name": self.session.isolation.existing_branch,
                },
            )

        isolation = self.session.isolation
        if not isolation.enabled:
            state.outcome.branch_name = base_branch
            self.channel.emit(
                EventType.STATUS, {"message": f"Working directly in {project_path}"}
            )
        else:
            if isolation.existing_branch:
                worktree = await asyncio.to_thread(
                    self.worktrees.create_from_branch,
                    project_path,
                    isolation.existing_branch,
                    session_id=self.session_id,
                )
            else:
                worktree = await asyncio.to_thread(
                    self.worktrees.create,
                    project_path,
                    self.session.base_branch or base_branch,
                    session_id=self.session_id,
                )
            state.worktree = worktree
            state.workdir = worktree.worktree_path
            state.excluded = list(worktree.linked_dirs)
            state.outcome.branch_name = worktree.branch_name
            self.channel.emit(
                EventType.WORKTREE_CREATED,
                {
                    "worktree_path": str(worktree.worktree_path),
                    "branch_name": worktree.branch_name,
                    "base_branch": worktree.base_branch,
                },
            )
            self.channel.emit(
                EventType.STATUS,
                {"message": f"Isolated worktree ready on branch {worktree.branch_name}"},
            )
        self._update_store(branch_name=state.outcome.branch_name)
        state.base_commit = await asyncio.to_thread(git.last_commit_hash, state.workdir)

    async def _plan(self, state: _RunState) -> bool:
        mission = self.session.mission or ""
        self._enter(Phase.PLANNING, SessionStatus.PLANNING)
        planner = Planner(
            self.runner,
            self.channel,
            options=self.options_for(Phase.PLANNING),
            max_rounds=self.preset.planning.max_rounds,
            abort=self.abort,
        )
        callback = self.approve_plan

        def _approve(plan: Plan, context: PlanningContext) -> Any:
            self._update_store(status=SessionStatus.AWAITING_APPROVAL)
            if callback is None:
                return auto_approve(plan, context)
            return callback(plan, context)

        outcome = await planner.negotiate(
            PlanningContext(
                mission=mission,
                project_path=state.workdir,
                thoroughness=self.preset.planning.thoroughness,
            ),
            _approve,
        )
        state.outcome.plan = outcome.plan if outcome.approved else None
        if not outcome.approved:
            state.finish(SessionStatus.CANCELLED, StopReason.CANCELLED, success=False)
        return outcome.approved

    # Phases --------------------------------------------------------------------------
    async def _implement(self, state: _RunState, feedback: str | None, iteration: int) -> bool:
        mission = self.session.mission or ""
        self._enter(Phase.IMPLEMENT, SessionStatus.IMPLEMENTING, iteration)
        retry = self.session.retry
        result = await run_implement_phase(
            ImplementContext(
                mission=mission,
                project_path=state.workdir,
                feedback=feedback,
                retry_count=retry.retry_count if retry else 0,
                plan=state.outcome.plan,
                excluded=state.excluded,
            ),
            self.runner,
            self.channel,
            options=self.options_for(Phase.IMPLEMENT),
            abort=self.abort,
        )
        state.edited = state.edited or result.edited
        for path in [*result.files_created, *result.files_modified]:
            if path not in state.changed_files:
                state.changed_files.append(path)
        if result.commit_hash:
            state.implement_commit = result.commit_hash
        if not result.ok:
            state.outcome.error = result.error
            state.finish(SessionStatus.FAILED, StopReason.ERROR, success=False)
            return False
        return True

    async def _testing(
        self, state: _RunState, feedback: str | None, iteration: int, started: float
    ) -> TestingLoopResult:
        self._enter(Phase.TESTING, SessionStatus.TESTING, iteration)
        loop = TestingLoop(
            self.preset,
            state.workdir,
            self.runner,
            self.channel,
            max_duration_seconds=self.session.max_duration_seconds,
            max_iterations=self.session.max_iterations,
            max_stalled=self.session.effective_max_stalled(self.preset),
            target_score=self.session.effective_target_score(self.preset),
            options=self.options_for(Phase.TESTING),
            feedback=feedback,
            excluded=state.excluded,
            abort=self.abort,
            clock=self.clock,
            started_at=started,
            announce_baseline=state.outcome.initial_score is None,
        )
        result = await loop.run()
        outcome = state.outcome
        if outcome.initial_score is None:
            outcome.initial_score = result.initial_score
            self._update_store(initial_score=result.initial_score)
        outcome.final_score = result.final_score
        outcome.commits.extend(result.commits)
        outcome.iterations += result.iterations
        state.edited = state.edited or result.edited
        state.metrics = list(result.metrics)
        return result

    async def _review(self, state: _RunState, iteration: int, history: list[str]) -> ReviewDecision:
        self._enter(Phase.REVIEW, SessionStatus.REVIEWING, iteration)
        changed = list(state.changed_files)
        if state.base_commit:
            for path in await asyncio.to_thread(git.diff_names, state.workdir, state.base_commit):
                if path not in changed:
                    changed.append(path)
        gate = ReviewGate(
            self.runner,
            self.preset.review.reviewers,
            approval=self.preset.review.approval,
            max_iterations=self.session.max_review_iterations,
            options=self.options_for(Phase.REVIEW),
            max_turns=self.preset.review.max_turns,
            abort=self.abort,
        )
        decision = await gate.run(
            ReviewContext(
                mission=self.session.mission or "",
                project_path=state.workdir,
                changed_files=changed,
                iteration=iteration,
                previous_feedback=list(history),
            ),
            self.channel,
        )
        state.outcome.review = decision
        state.outcome.review_iterations = iteration
        return decision

    async def _execute(self, state: _RunState, started: float) -> None:
        await self._isolate(state)
        mission = self.session.mission
        if self._aborted(state):
            return
        if mission and self.session.enable_planning:
            if not await self._plan(state):
                return
            if self._aborted(state):
                return

        retry = self.session.retry
        feedback = retry.feedback if retry else None
        history: list[str] = [feedback] if feedback else []
        phase = Phase.IMPLEMENT if mission else Phase.TESTING
        iteration = 0

        while True:
            iteration += 1
            if phase is Phase.IMPLEMENT:
                if not await self._implement(state, feedback, iteration):
                    return
                if self._aborted(state):
                    return

            testing = await self._testing(state, feedback, iteration, started)
            if self._aborted(state):
                return
            if not mission:
                state.finish(SessionStatus.COMPLETED, testing.stopped_reason, success=testing.success)
                return

            decision = await self._review(state, iteration, history)
            match decision.verdict:
                case Verdict.APPROVED:
                    state.finish(SessionStatus.COMPLETED, StopReason.APPROVED, success=True)
                    return
                case Verdict.REJECTED:
                    state.finish(SessionStatus.FAILED, StopReason.REJECTED, success=False)
                    return
                case Verdict.NEEDS_CHANGES:
                    if iteration >= self.session.max_review_iterations:
                        state.finish(
                            SessionStatus.COMPLETED, StopReason.MAX_ITERATIONS, success=False
                        )
                        return
                    feedback = decision.feedback
                    history.append(decision.feedback)
                    phase = Phase(str(decision.redirect_to or Phase.IMPLEMENT))
            if self._aborted(state):
                return

    # Teardown ------------------------------------------------------------------------
    async def _summarize(self, state: _RunState) -> None:
        outcome = state.outcome
        if not outcome.commits or self.summarizer is None or outcome.stopped_reason is None:
            return
        try:
            summary = await self.summarizer.generate(
                mission=self.session.mission,
                initial_score=outcome.initial_score or 0.0,
                final_score=outcome.final_score or 0.0,
                commits=outcome.commits,
                metrics=state.metrics,
                stopped_reason=outcome.stopped_reason,
            )
        except Exception as exc:
            logger.warning("Session summary failed: %s", exc)
            return
        self.channel.emit(EventType.SESSION_SUMMARY, summary.to_dict())

    async def _cleanup(self, state: _RunState) -> None:
        worktree = state.worktree
        if worktree is None:
            return
        keep = bool(state.outcome.commits) or bool(state.implement_commit) or state.edited
        await asyncio.to_thread(self.worktrees.cleanup, worktree, keep_branch=keep)
        state.outcome.worktree_kept = keep
        self.channel.emit(
            EventType.WORKTREE_CLEANUP,
            {
                "worktree_path": str(worktree.worktree_path),
                "branch_name": worktree.branch_name,
                "kept": keep,
            },
        )

    def _emit_result(self, state: _RunState) -> None:
        outcome = state.outcome
        self.channel.emit(
            EventType.RESULT,
            {
                "success": outcome.success,
                "initial_score": outcome.initial_score,
                "final_score": outcome.final_score,
                "commits": [commit.to_dict() for commit in outcome.commits],
                "iterations": outcome.iterations,
                "review_iterations": outcome.review_iterations,
                "duration_seconds": round(outcome.duration_seconds, 3),
                "stopped_reason": str(outcome.stopped_reason),
            },
        )

    async def run(self) -> SessionOutcome:
        started = self.clock()
        remove_sink = self._register_session()
        state = _RunState(
            outcome=SessionOutcome(session_id=self.session_id),
            workdir=self.session.project_path,
        )
        logger.info("Session %s started in %s", self.session_id, self.session.project_path)
        try:
            try:
                await self._execute(state, started)
            except PolishError as exc:
                logger.error("Session %s failed: %s", self.session_id, exc)
                self.channel.emit(
                    EventType.ERROR, {"message": str(exc), "error_type": type(exc).__name__}
                )
                state.outcome.error = str(exc)
                state.finish(SessionStatus.FAILED, StopReason.ERROR, success=False)
            state.outcome.duration_seconds = self.clock() - started
            self._emit_result(state)
            await self._summarize(state)
        finally:
            await self._cleanup(state)
            outcome = state.outcome
            if outcome.status.terminal:
                self._update_store(
                    status=outcome.status,
                    final_score=outcome.final_score,
                    commit_count=len(outcome.commits),
                    stopped_reason=str(outcome.stopped_reason) if outcome.stopped_reason else None,
                    error=outcome.error,
                )
            if remove_sink is not None:
                remove_sink()
            self.channel.close()
        logger.info(
            "Session %s finished: %s (%s)", self.session_id, outcome.status, outcome.stopped_reason
        )
        return outcome
