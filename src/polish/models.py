from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class SessionStatus(StrEnum):
    PENDING = "pending"
    PLANNING = "planning"
    AWAITING_APPROVAL = "awaiting_approval"
    IMPLEMENTING = "implementing"
    TESTING = "testing"
    REVIEWING = "reviewing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.CANCELLED}
)


class Phase(StrEnum):
    PLANNING = "planning"
    IMPLEMENT = "implement"
    TESTING = "testing"
    REVIEW = "review"


class Verdict(StrEnum):
    APPROVED = "approved"
    NEEDS_CHANGES = "needs_changes"
    REJECTED = "rejected"


class RedirectTarget(StrEnum):
    IMPLEMENT = "implement"
    TESTING = "testing"


class StopReason(StrEnum):
    TIMEOUT = "timeout"
    MAX_SCORE = "max_score"
    PLATEAU = "plateau"
    MAX_ITERATIONS = "max_iterations"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    ERROR = "error"


class FailureReason(StrEnum):
    TESTS_FAILED = "tests_failed"
    NO_IMPROVEMENT = "no_improvement"
    ERROR = "error"


class ApprovalPolicy(StrEnum):
    ALL = "all"
    MAJORITY = "majority"
    ANY = "any"


@dataclass(slots=True)
class MetricResult:
    name: str
    raw_value: float
    score: float
    weight: float
    target: float
    higher_is_better: bool
    diagnostic: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "raw_value": self.raw_value,
            "score": round(self.score, 2),
            "weight": self.weight,
            "target": self.target,
            "higher_is_better": self.higher_is_better,
            "diagnostic": self.diagnostic,
        }


@dataclass(slots=True)
class CommitInfo:
    hash: str
    message: str
    score_delta: float
    timestamp: str = field(default_factory=_utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "hash": self.hash,
            "message": self.message,
            "score_delta": round(self.score_delta, 2),
            "timestamp": self.timestamp,
        }


@dataclass(slots=True)
class FailedAttempt:
    strategy: str
    reason: FailureReason
    timestamp: str = field(default_factory=_utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {"strategy": self.strategy, "reason": str(self.reason), "timestamp": self.timestamp}


@dataclass(slots=True)
class ReviewResult:
    agent: str
    verdict: Verdict
    feedback: str
    concerns: list[str] = field(default_factory=list)
    score: float | None = None
    redirect_to: RedirectTarget | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent": self.agent,
            "verdict": str(self.verdict),
            "feedback": self.feedback,
            "concerns": list(self.concerns),
            "score": self.score,
            "redirect_to": str(self.redirect_to) if self.redirect_to else None,
        }


@dataclass(slots=True)
class ReviewDecision:
    verdict: Verdict
    iteration: int
    reviews: list[ReviewResult] = field(default_factory=list)
    feedback: str = ""
    redirect_to: RedirectTarget | None = None

    @property
    def approved(self) -> bool:
        return self.verdict is Verdict.APPROVED

    def to_dict(self) -> dict[str, Any]:
        return {
            "verdict": str(self.verdict),
            "iteration": self.iteration,
            "reviews": [review.to_dict() for review in self.reviews],
            "feedback": self.feedback,
            "redirect_to": str(self.redirect_to) if self.redirect_to else None,
        }


@dataclass(slots=True)
class Plan:
    summary: str
    approach: list[str] = field(default_factory=list)
    files_to_modify: list[str] = field(default_factory=list)
    files_to_create: list[str] = field(default_factory=list)
    risks: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Plan:
        def _strings(key: str) -> list[str]:
            value = data.get(key) or []
            if not isinstance(value, list):
                return []
            return [str(item).strip() for item in value if str(item).strip()]

        return cls(
            summary=str(data.get("summary") or "").strip(),
            approach=_strings("approach"),
            files_to_modify=_strings("files_to_modify"),
            files_to_create=_strings("files_to_create"),
            risks=_strings("risks"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "summary": self.summary,
            "approach": list(self.approach),
            "files_to_modify": list(self.files_to_modify),
            "files_to_create": list(self.files_to_create),
            "risks": list(self.risks),
        }

    def to_markdown(self) -> str:
        lines = ["## Summary", self.summary or "-", "", "## Approach"]
        lines.extend(f"- {step}" for step in self.approach)
        if self.files_to_modify:
            lines.extend(["", "## Files to modify"])
            lines.extend(f"- `{path}`" for path in self.files_to_modify)
        if self.files_to_create:
            lines.extend(["", "## Files to create"])
            lines.extend(f"- `{path}`" for path in self.files_to_create)
        if self.risks:
            lines.extend(["", "## Risks"])
            lines.extend(f"- {risk}" for risk in self.risks)
        return "\n".join(lines)


@dataclass(slots=True)
class PlanMessage:
    role: str
    content: str
    timestamp: str = field(default_factory=_utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {"role": self.role, "content": self.content, "timestamp": self.timestamp}


@dataclass(slots=True)
class SessionRecord:
    id: str
    project_path: str
    mission: str | None = None
    status: SessionStatus = SessionStatus.PENDING
    initial_score: float | None = None
    final_score: float | None = None
    commit_count: int = 0
    branch_name: str | None = None
    stopped_reason: str | None = None
    error: str | None = None
    retry_of: str | None = None
    retry_count: int = 0
    created_at: str = field(default_factory=_utcnow_iso)
    updated_at: str = field(default_factory=_utcnow_iso)
    completed_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "project_path": self.project_path,
            "mission": self.mission,
            "status": str(self.status),
            "initial_score": self.initial_score,
            "final_score": self.final_score,
            "commit_count": self.commit_count,
            "branch_name": self.branch_name,
            "stopped_reason": self.stopped_reason,
            "error": self.error,
            "retry_of": self.retry_of,
            "retry_count": self.retry_count,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "completed_at": self.completed_at,
        }
