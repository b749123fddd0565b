from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from openai import OpenAI

from polish.models import CommitInfo, MetricResult, StopReason

logger = logging.getLogger(__name__)

DEFAULT_SUMMARY_MODEL = "gpt-4o-mini"

SUMMARY_INSTRUCTIONS = """
You summarise an automated code-improvement session for a developer.
Answer with a single JSON object and nothing else:
{"overview": "...", "achievements": ["..."], "metrics": "...", "explanation": "..."}
Keep every field short and factual; do not invent changes that are not listed.
""".strip()

STOP_EXPLANATIONS: dict[StopReason, str] = {
    StopReason.TIMEOUT: "The session ran out of its time budget.",
    StopReason.MAX_SCORE: "The composite score reached the target.",
    StopReason.PLATEAU: "Several consecutive attempts produced no measurable improvement.",
    StopReason.MAX_ITERATIONS: "The iteration limit was reached.",
    StopReason.APPROVED: "The reviewers approved the changes.",
    StopReason.REJECTED: "The reviewers rejected the changes.",
    StopReason.CANCELLED: "The session was cancelled.",
    StopReason.ERROR: "The session stopped on an error.",
}


@dataclass(slots=True)
class SessionSummary:
    overview: str
    achievements: list[str] = field(default_factory=list)
    metrics: str = ""
    explanation: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "overview": self.overview,
            "achievements": list(self.achievements),
            "metrics": self.metrics,
            "explanation": self.explanation,
        }


def fallback_summary(
    *,
    mission: str | None,
    initial_score: float,
    final_score: float,
    commits: Sequence[CommitInfo],
    stopped_reason: StopReason,
) -> SessionSummary:
    delta = final_score - initial_score
    target = f'"{mission}"' if mission else "metric polishing"
    return SessionSummary(
        overview=f"Session on {target} produced {len(commits)} commit(s).",
        achievements=[commit.message for commit in commits],
        metrics=f"Score {initial_score:.1f} -> {final_score:.1f} ({delta:+.1f} pts)",
        explanation=STOP_EXPLANATIONS.get(stopped_reason, str(stopped_reason)),
    )


class SummaryGenerator:
    """Summarises a finished session with an OpenAI model, falling back to a fixed template."""

    def __init__(self, *, model: str = DEFAULT_SUMMARY_MODEL, client: Any | None = None) -> None:
        self.model = model
        self._client: Any | None = client
        if self._client is None:
            try:
                self._client = OpenAI()
            except Exception:
                self._client = None

    @property
    def available(self) -> bool:
        return self._client is not None

    @staticmethod
    def _build_input(
        mission: str | None,
        initial_score: float,
        final_score: float,
        commits: Sequence[CommitInfo],
        metrics: Sequence[MetricResult],
        stopped_reason: StopReason,
    ) -> str:
        context = {
            "mission": mission,
            "initial_score": round(initial_score, 2),
            "final_score": round(final_score, 2),
            "stopped_reason": str(stopped_reason),
            "commits": [commit.to_dict() for commit in commits],
            "metrics": [metric.to_dict() for metric in metrics],
        }
        return "Session data:\n" + json.dumps(context, ensure_ascii=False, indent=2)

    @staticmethod
    def _extract_text(payload: Any) -> str:
        if payload is None:
            return ""
        output_text = getattr(payload, "output_text", None)
        if isinstance(output_text, str):
            return output_text
        if isinstance(payload, dict):
            value = payload.get("output_text")
            if isinstance(value, str):
                return value
        return str(output_text or "")

    @staticmethod
    def _parse(text: str) -> SessionSummary | None:
        start, end = text.find("{"), text.rfind("}")
        if start < 0 or end <= start:
            return None
        try:
            payload = json.loads(text[start : end + 1])
        except json.JSONDecodeError:
            return None
        if not isinstance(payload, dict) or not payload.get("overview"):
            return None
        achievements = payload.get("achievements") or []
        if not isinstance(achievements, list):
            achievements = [achievements]
        return SessionSummary(
            overview=str(payload["overview"]),
            achievements=[str(item) for item in achievements],
            metrics=str(payload.get("metrics") or ""),
            explanation=str(payload.get("explanation") or ""),
        )

    async def generate(
        self,
        *,
        mission: str | None,
        initial_score: float,
        final_score: float,
        commits: Sequence[CommitInfo],
        metrics: Sequence[MetricResult] = (),
        stopped_reason: StopReason,
    ) -> SessionSummary:
        fallback = fallback_summary(
            mission=mission,
            initial_score=initial_score,
            final_score=final_score,
            commits=commits,
            stopped_reason=stopped_reason,
        )
        if self._client is None:
            return fallback

        prompt = self._build_input(
            mission, initial_score, final_score, commits, metrics, stopped_reason
        )

        def _request() -> Any:
            return self._client.responses.create(
                model=self.model,
                input=[
                    {"role": "system", "content": SUMMARY_INSTRUCTIONS},
                    {"role": "user", "content": prompt},
                ],
            )

        try:
            payload = await asyncio.to_thread(_request)
        except Exception as exc:
            logger.warning("Summary generation failed, using the template: %s", exc)
            return fallback

        return self._parse(self._extract_text(payload).strip()) or fallback
