from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from polish import git
from polish.agent import AgentRunner
from polish.capabilities import ResolvedOptions
from polish.config import Preset
from polish.errors import AgentExecutionError
from polish.events import EventChannel, EventType
from polish.executor import run_command
from polish.models import CommitInfo, FailedAttempt, FailureReason, MetricResult, Phase, StopReason
from polish.scorer import calculate_score, get_strategy_for_metric, get_worst_metric, run_all_metrics
from polish.specialists.fixer import FixerAgent

logger = logging.getLogger(__name__)

FAILED_ATTEMPT_CONTEXT = 3
# Absorbs float noise so that a delta of exactly the threshold commits.
SCORE_EPSILON = 1e-9


@dataclass(slots=True)
class TestingLoopResult:
    __test__ = False

    success: bool
    initial_score: float
    final_score: float
    commits: list[CommitInfo] = field(default_factory=list)
    iterations: int = 0
    duration_seconds: float = 0.0
    stopped_reason: StopReason = StopReason.MAX_ITERATIONS
    metrics: list[MetricResult] = field(default_factory=list)
    failed_attempts: list[FailedAttempt] = field(default_factory=list)
    edited: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "initial_score": round(self.initial_score, 2),
            "final_score": round(self.final_score, 2),
            "commits": [commit.to_dict() for commit in self.commits],
            "iterations": self.iterations,
            "duration_seconds": round(self.duration_seconds, 3),
            "stopped_reason": str(self.stopped_reason),
        }


STOP_MESSAGES: dict[StopReason, str] = {
    StopReason.TIMEOUT: "Stopping: time budget exhausted",
    StopReason.MAX_SCORE: "Score meets the target; nothing left to polish",
    StopReason.PLATEAU: "Stopping: too many consecutive attempts without improvement",
    StopReason.MAX_ITERATIONS: "Stopping: reached the maximum number of iterations",
    StopReason.CANCELLED: "Stopping: session cancelled",
}


class TestingLoop:
    """Metric-driven fix loop: one strategy, one agent run and one commit or rollback per turn."""

    __test__ = False

    def __init__(
        self,
        preset: Preset,
        project_path: Path,
        runner: AgentRunner,
        channel: EventChannel,
        *,
        max_duration_seconds: float = 2 * 60 * 60,
        max_iterations: int = 100,
        max_stalled: int = 5,
        target_score: float = 100.0,
        options: ResolvedOptions | None = None,
        feedback: str | None = None,
        excluded: Sequence[str] = (),
        abort: asyncio.Event | None = None,
        clock: Callable[[], float] = time.monotonic,
        started_at: float | None = None,
        announce_baseline: bool = True,
        system_prompt: str | None = None,
    ) -> None:
        self.preset = preset
        self.project_path = Path(project_path)
        self.runner = runner
        self.channel = channel
        self.max_duration_seconds = max_duration_seconds
        self.max_iterations = max_iterations
        self.max_stalled = max_stalled
        self.target_score = target_score
        self.options = options
        self.feedback = feedback
        self.excluded = list(excluded)
        self.abort = abort
        self.clock = clock
        self.started_at = started_at
        self.announce_baseline = announce_baseline
        self.fixer = FixerAgent(
            runner,
            system_prompt_override=system_prompt or FixerAgent.build_system_prompt(preset.rules),
        )

    def _stop_reason(
        self, *, elapsed: float, score: float, stalled: int, iteration: int
    ) -> StopReason | None:
        if self.abort is not None and self.abort.is_set():
            return StopReason.CANCELLED
        if elapsed >= self.max_duration_seconds:
            return StopReason.TIMEOUT
        if score >= self.target_score:
            return StopReason.MAX_SCORE
        if stalled >= self.max_stalled:
            return StopReason.PLATEAU
        if iteration > self.max_iterations:
            return StopReason.MAX_ITERATIONS
        return None

    async def _measure(self) -> tuple[float, list[MetricResult]]:
        results = await run_all_metrics(self.preset.metrics, self.project_path)
        return calculate_score(results), results

    async def _tests_pass(self) -> bool:
        command = self.preset.testing.test_command
        if not command:
            return True
        result = await run_command(
            command, self.project_path, timeout_seconds=self.preset.testing.test_timeout_seconds
        )
        return result.exit_code == 0 or "passed" in result.stdout

    async def _rollback(self, before: str | None) -> None:
        await asyncio.to_thread(git.rollback, self.project_path, self.excluded, to_commit=before)

    def _fail(
        self,
        failed: list[FailedAttempt],
        strategy: str,
        reason: FailureReason,
        iteration: int,
        *,
        announce: bool = True,
    ) -> None:
        failed.append(FailedAttempt(strategy=strategy, reason=reason))
        if announce:
            self.channel.emit(
                EventType.ROLLBACK,
                {"reason": str(reason), "failed_strategy": strategy, "iteration": iteration},
            )

    async def run(self) -> TestingLoopResult:
        started = self.started_at if self.started_at is not None else self.clock()
        emit = self.channel.emit

        current_score, current_metrics = await self._measure()
        initial_score = current_score
        if self.announce_baseline:
            emit(
                EventType.INIT,
                {
                    "project_path": str(self.project_path),
                    "preset": self.preset.name,
                    "initial_score": initial_score,
                    "metrics": [metric.to_dict() for metric in current_metrics],
                },
            )
        emit(
            EventType.SCORE,
            {"score": current_score, "metrics": [metric.to_dict() for metric in current_metrics]},
        )

        commits: list[CommitInfo] = []
        failed: list[FailedAttempt] = []
        stalled = 0
        iteration = 0
        edited = False
        min_improvement = self.preset.thresholds.min_improvement

        while True:
            iteration += 1
            reason = self._stop_reason(
                elapsed=self.clock() - started,
                score=current_score,
                stalled=stalled,
                iteration=iteration,
            )
            worst = get_worst_metric(current_metrics)
            if reason is not None or worst is None:
                reason = reason or StopReason.MAX_SCORE
                break

            strategy = get_strategy_for_metric(worst.name, self.preset.strategies)
            if strategy is None:
                logger.debug("No strategy targets metric %s; counting a stall", worst.name)
                stalled += 1
                continue

            emit(
                EventType.STRATEGY,
                {
                    "name": strategy.name,
                    "focus": strategy.focus,
                    "prompt": strategy.prompt,
                    "metric": worst.name,
                    "iteration": iteration,
                },
            )
            before = await asyncio.to_thread(git.last_commit_hash, self.project_path)
            prompt = FixerAgent.build_prompt(
                strategy,
                worst,
                failed_attempts=[a for a in failed if a.strategy == strategy.name][
                    -FAILED_ATTEMPT_CONTEXT:
                ],
                rules=self.preset.rules,
                feedback=self.feedback,
            )

            try:
                response = await self.fixer.run(
                    prompt, self.project_path, options=self.options, emit=emit, abort=self.abort
                )
            except AgentExecutionError as exc:
                logger.warning("Fix agent failed on %s: %s", strategy.name, exc)
                emit(EventType.ERROR, {"message": f"Fix agent failed: {exc}", "recoverable": True})
                await self._rollback(before)
                self._fail(failed, strategy.name, FailureReason.ERROR, iteration)
                stalled += 1
                continue

            run = response.result
            edited = edited or bool(run and run.edited)
            if run is not None and run.aborted:
                await self._rollback(before)
                continue

            if before is not None:
                await asyncio.to_thread(git.absorb_commits, self.project_path, before)
            if not await asyncio.to_thread(git.has_changes, self.project_path, self.excluded):
                self._fail(
                    failed, strategy.name, FailureReason.NO_IMPROVEMENT, iteration, announce=False
                )
                stalled += 1
                continue

            if not await self._tests_pass():
                await self._rollback(before)
                self._fail(failed, strategy.name, FailureReason.TESTS_FAILED, iteration)
                stalled += 1
                continue

            new_score, new_metrics = await self._measure()
            delta = new_score - current_score
            if delta + SCORE_EPSILON < min_improvement:
                await self._rollback(before)
                self._fail(failed, strategy.name, FailureReason.NO_IMPROVEMENT, iteration)
                stalled += 1
                continue

            message = f"fix({strategy.focus}): {strategy.name} - +{delta:.1f} pts"
            commit_hash = await asyncio.to_thread(
                git.commit_all, self.project_path, message, self.excluded
            )
            commits.append(CommitInfo(hash=commit_hash, message=message, score_delta=delta))
            emit(
                EventType.COMMIT,
                {
                    "hash": commit_hash,
                    "message": message,
                    "score_delta": delta,
                    "iteration": iteration,
                },
            )
            current_score, current_metrics = new_score, new_metrics
            stalled = 0
            emit(
                EventType.SCORE,
                {
                    "score": new_score,
                    "metrics": [metric.to_dict() for metric in new_metrics],
                    "delta": delta,
                },
            )

        duration = self.clock() - started
        emit(
            EventType.STATUS,
            {
                "phase": str(Phase.TESTING),
                "message": STOP_MESSAGES[reason],
                "stopped_reason": str(reason),
                "score": current_score,
            },
        )
        return TestingLoopResult(
            success=current_score >= initial_score,
            initial_score=initial_score,
            final_score=current_score,
            commits=commits,
            iterations=iteration - 1,
            duration_seconds=duration,
            stopped_reason=reason,
            metrics=current_metrics,
            failed_attempts=failed,
            edited=edited,
        )
