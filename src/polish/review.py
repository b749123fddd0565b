from __future__ import annotations

import asyncio
import json
import logging
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from polish.agent import AgentRunner
from polish.capabilities import ResolvedOptions, read_only
from polish.config import validate_reviewers
from polish.events import EventChannel, EventType
from polish.models import (
    ApprovalPolicy,
    RedirectTarget,
    ReviewDecision,
    ReviewResult,
    StopReason,
    Verdict,
)
from polish.specialists.reviewers import REVIEWER_CLASSES, ReviewerAgent

logger = logging.getLogger(__name__)

JSON_BLOCK_PATTERN = re.compile(r"```json\s*([\s\S]*?)\s*```", re.IGNORECASE)
APPROVED_PATTERN = re.compile(r"\bapproved\b|\blgtm\b|looks good", re.IGNORECASE)
REJECTED_PATTERN = re.compile(r"\brejected\b", re.IGNORECASE)
FALLBACK_FEEDBACK_LIMIT = 1000

PendingEvent = tuple[EventType, dict[str, Any]]


def _extract_json_objects(raw_text: str) -> list[dict[str, Any]]:
    payloads: list[dict[str, Any]] = []
    for raw_line in raw_text.splitlines():
        line = raw_line.strip()
        if not (line.startswith("{") and line.endswith("}")):
            continue
        try:
            parsed = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            payloads.append(parsed)
    return payloads


def _review_payload(text: str) -> dict[str, Any] | None:
    for match in JSON_BLOCK_PATTERN.finditer(text):
        try:
            parsed = json.loads(match.group(1))
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed
    candidates = [payload for payload in _extract_json_objects(text) if "verdict" in payload]
    return candidates[-1] if candidates else None


def _as_verdict(value: Any) -> Verdict:
    try:
        return Verdict(str(value).strip().lower())
    except ValueError:
        return Verdict.NEEDS_CHANGES


def _as_redirect(value: Any) -> RedirectTarget | None:
    if value is None:
        return None
    try:
        return RedirectTarget(str(value).strip().lower())
    except ValueError:
        return None


def _as_score(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        return None
    try:
        return max(0.0, min(100.0, float(value)))
    except ValueError:
        return None


def parse_review_response(text: str, agent: str) -> ReviewResult:
    """Parse a reviewer's answer; unparseable text is classified by keywords."""
    payload = _review_payload(text)
    if payload is not None:
        concerns = payload.get("concerns") or []
        if not isinstance(concerns, list):
            concerns = [concerns]
        return ReviewResult(
            agent=agent,
            verdict=_as_verdict(payload.get("verdict")),
            feedback=str(payload.get("feedback") or "No feedback provided"),
            concerns=[str(item) for item in concerns if str(item).strip()],
            score=_as_score(payload.get("score")),
            redirect_to=_as_redirect(payload.get("redirectTo", payload.get("redirect_to"))),
        )

    if APPROVED_PATTERN.search(text):
        verdict = Verdict.APPROVED
    elif REJECTED_PATTERN.search(text):
        verdict = Verdict.REJECTED
    else:
        verdict = Verdict.NEEDS_CHANGES
    return ReviewResult(
        agent=agent,
        verdict=verdict,
        feedback=text.strip()[:FALLBACK_FEEDBACK_LIMIT],
        concerns=[],
        redirect_to=RedirectTarget.IMPLEMENT,
    )


def _approved_enough(approved: int, total: int, policy: ApprovalPolicy) -> bool:
    match policy:
        case ApprovalPolicy.ALL:
            return approved == total
        case ApprovalPolicy.MAJORITY:
            return approved * 2 > total
        case ApprovalPolicy.ANY:
            return approved >= 1


def aggregate_reviews(
    results: Sequence[ReviewResult], policy: ApprovalPolicy = ApprovalPolicy.ALL
) -> tuple[Verdict, RedirectTarget | None]:
    if not results:
        raise ValueError("Cannot aggregate an empty set of reviews")
    if any(result.verdict is Verdict.REJECTED for result in results):
        return Verdict.REJECTED, None
    approved = sum(1 for result in results if result.verdict is Verdict.APPROVED)
    if _approved_enough(approved, len(results), ApprovalPolicy(policy)):
        return Verdict.APPROVED, None
    wants_implement = any(
        result.verdict is Verdict.NEEDS_CHANGES and result.redirect_to is RedirectTarget.IMPLEMENT
        for result in results
    )
    return Verdict.NEEDS_CHANGES, (
        RedirectTarget.IMPLEMENT if wants_implement else RedirectTarget.TESTING
    )


def reviewer_label(agent: str) -> str:
    return agent.replace("_", " ").upper()


def combine_feedback(results: Sequence[ReviewResult]) -> str:
    sections: list[str] = []
    for result in results:
        if result.verdict is Verdict.APPROVED:
            continue
        section = f"[{reviewer_label(result.agent)}]\n{result.feedback}"
        if result.concerns:
            section += "\n\nConcerns:\n" + "\n".join(f"- {concern}" for concern in result.concerns)
        sections.append(section)
    return "\n\n---\n\n".join(sections)


@dataclass(slots=True)
class ReviewContext:
    mission: str
    project_path: Path
    changed_files: list[str] = field(default_factory=list)
    iteration: int = 1
    previous_feedback: list[str] = field(default_factory=list)


class ReviewGate:
    """Runs every configured reviewer once, concurrently, and aggregates their verdicts."""

    def __init__(
        self,
        runner: AgentRunner,
        reviewers: Sequence[str],
        *,
        approval: ApprovalPolicy = ApprovalPolicy.ALL,
        max_iterations: int = 3,
        options: ResolvedOptions | None = None,
        system_prompts: Mapping[str, str] | None = None,
        max_turns: int | None = None,
        abort: asyncio.Event | None = None,
    ) -> None:
        validate_reviewers(list(reviewers))
        self.runner = runner
        self.reviewers = list(dict.fromkeys(reviewers))
        self.approval = ApprovalPolicy(approval)
        self.max_iterations = max_iterations
        self.options = read_only(options)
        self.system_prompts = dict(system_prompts or {})
        self.max_turns = max_turns
        self.abort = abort

    def _reviewer(self, role: str) -> ReviewerAgent:
        return REVIEWER_CLASSES[role](
            self.runner, system_prompt_override=self.system_prompts.get(role)
        )

    async def _run_reviewer(
        self, role: str, context: ReviewContext
    ) -> tuple[list[PendingEvent], ReviewResult]:
        events: list[PendingEvent] = []

        def _collect(type: EventType, data: dict[str, Any]) -> None:
            events.append((type, {**data, "reviewer": role}))

        reviewer = self._reviewer(role)
        prompt = reviewer.build_prompt(
            context.mission, context.changed_files, context.iteration, context.previous_feedback
        )
        try:
            response = await reviewer.run(
                prompt,
                context.project_path,
                options=self.options,
                emit=_collect,
                abort=self.abort,
                max_turns=self.max_turns,
            )
        except Exception as exc:
            logger.warning("Reviewer %s failed: %s", role, exc)
            return events, ReviewResult(
                agent=role,
                verdict=Verdict.REJECTED,
                feedback=f"Review agent error: {exc}",
                concerns=["Review agent failed to complete"],
                redirect_to=RedirectTarget.IMPLEMENT,
            )
        return events, parse_review_response(response.content, role)

    async def run(self, context: ReviewContext, channel: EventChannel) -> ReviewDecision:
        for role in self.reviewers:
            channel.emit(EventType.REVIEW_START, {"iteration": context.iteration, "agent": role})

        outcomes = await asyncio.gather(
            *(self._run_reviewer(role, context) for role in self.reviewers)
        )

        results: list[ReviewResult] = []
        for events, result in outcomes:
            for type, data in events:
                channel.emit(type, data)
            channel.emit(
                EventType.REVIEW_RESULT,
                {"iteration": context.iteration, **result.to_dict()},
            )
            results.append(result)

        verdict, redirect = aggregate_reviews(results, self.approval)
        feedback = combine_feedback(results)
        decision = ReviewDecision(
            verdict=verdict,
            iteration=context.iteration,
            reviews=results,
            feedback=feedback,
            redirect_to=redirect,
        )
        complete: dict[str, Any] = {
            "iteration": context.iteration,
            "verdict": str(verdict),
            "approved": decision.approved,
            "feedback": feedback,
        }

        if verdict is Verdict.NEEDS_CHANGES:
            if context.iteration >= self.max_iterations:
                complete["stopped_reason"] = str(StopReason.MAX_ITERATIONS)
            else:
                channel.emit(
                    EventType.REVIEW_REDIRECT,
                    {
                        "iteration": context.iteration,
                        "redirect_to": str(redirect),
                        "feedback": feedback,
                    },
                )
        channel.emit(EventType.REVIEW_COMPLETE, complete)
        logger.info("Review iteration %d finished: %s", context.iteration, verdict)
        return decision
