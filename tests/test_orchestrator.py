import asyncio
import re
from pathlib import Path
from types import SimpleNamespace
from typing import Any

import pytest

from conftest import ScriptedBackend, git_cmd, result_message, write_file
from polish import git
from polish.backends import AgentExecutionError, AgentMessage, AgentRequest
from polish.config import (
    IsolationConfig,
    Metric,
    Preset,
    RetryConfig,
    ReviewConfig,
    SessionConfig,
    Strategy,
)
from polish.events import EventChannel, EventType
from polish.models import SessionStatus, StopReason
from polish.orchestrator import Orchestrator
from polish.planner import PlanDecision
from polish.store import SessionStore
from polish.summary import SummaryGenerator
from polish.worktree import WorktreeManager

ITERATION_PATTERN = re.compile(r"\(iteration (\d+)\)")
PLAN_REPLY = (
    "```json\n"
    '{"summary": "Write feature.txt", "approach": ["Create the file"], '
    '"files_to_create": ["feature.txt"]}\n```'
)


class ProjectAgent(ScriptedBackend):
    """Implements, fixes and reviews according to a script, routed on the prompt."""

    def __init__(
        self,
        *,
        fixes: list[str | None] | None = None,
        reviews: dict[int, tuple[str, str]] | None = None,
        implement_error: bool = False,
    ) -> None:
        super().__init__(self._answer)
        self.fixes = list(fixes if fixes is not None else ["19\n"])
        self.reviews = reviews or {}
        self.implement_error = implement_error
        self.implement_prompts: list[str] = []
        self.review_prompts: list[str] = []
        self.plan_prompts: list[str] = []

    def _answer(self, request: AgentRequest) -> list[AgentMessage]:
        prompt = request.prompt
        if prompt.startswith("Implement the following"):
            self.implement_prompts.append(prompt)
            if self.implement_error:
                raise AgentExecutionError("agent crashed", backend=self.name, retriable=False)
            count = len(self.implement_prompts)
            return [
                *write_file(request.cwd, "feature.txt", f"feature v{count}\n"),
                result_message("Implemented"),
            ]
        if prompt.startswith("Fix ONE problem"):
            value = self.fixes.pop(0) if self.fixes else None
            if value is None:
                return [result_message("Nothing to fix")]
            return [
                *write_file(request.cwd, "value.txt", value, tool="Edit"),
                result_message("Fixed"),
            ]
        if prompt.startswith("## Code review request"):
            self.review_prompts.append(prompt)
            match = ITERATION_PATTERN.search(prompt)
            iteration = int(match.group(1)) if match else 1
            verdict, redirect = self.reviews.get(iteration, ("approved", "testing"))
            return [
                result_message(
                    "```json\n"
                    f'{{"verdict": "{verdict}", "redirectTo": "{redirect}", '
                    f'"feedback": "round {iteration}: {verdict}"}}\n```'
                )
            ]
        if prompt.startswith(("## Mission to plan", "## Original mission")):
            self.plan_prompts.append(prompt)
            return [result_message(PLAN_REPLY)]
        return [result_message("")]


def _preset(**overrides: Any) -> Preset:
    preset = Preset(
        name="value",
        metrics=[Metric(name="value", command="cat value.txt", weight=1, target=0)],
        strategies=[Strategy("reduce-value", "value")],
        review=ReviewConfig(reviewers=["mission_reviewer", "code_reviewer"]),
    )
    for key, value in overrides.items():
        setattr(preset, key, value)
    return preset


def _failing_summarizer() -> SummaryGenerator:
    def _create(**kwargs: Any) -> Any:
        raise RuntimeError("offline")

    return SummaryGenerator(client=SimpleNamespace(responses=SimpleNamespace(create=_create)))


def _orchestrate(
    project: Path,
    worktree_root: Path,
    backend: ProjectAgent,
    *,
    mission: str | None = "Add a feature file",
    preset: Preset | None = None,
    store: SessionStore | None = None,
    **session: Any,
) -> tuple[Any, EventChannel]:
    session.setdefault("max_stalled", 1)
    channel = EventChannel()
    orchestrator = Orchestrator(
        SessionConfig(project_path=project, mission=mission, **session),
        preset or _preset(),
        backend,
        channel=channel,
        store=store,
        worktrees=WorktreeManager(worktree_root),
        summarizer=_failing_summarizer(),
    )
    return asyncio.run(orchestrator.run()), channel


def _types(channel: EventChannel) -> list[str]:
    return [str(event.type) for event in channel.history]


def test_approved_session_keeps_the_branch_and_summarizes(
    scored_repo: Path, worktree_root: Path, tmp_path: Path
) -> None:
    store = SessionStore(tmp_path / "sessions.db")
    backend = ProjectAgent()

    outcome, channel = _orchestrate(scored_repo, worktree_root, backend, store=store)

    assert outcome.status is SessionStatus.COMPLETED
    assert outcome.stopped_reason is StopReason.APPROVED
    assert outcome.success
    assert outcome.initial_score == pytest.approx(60.0)
    assert outcome.final_score == pytest.approx(62.0)
    assert len(outcome.commits) == 1
    assert outcome.review_iterations == 1
    assert outcome.worktree_kept is True

    branch = outcome.branch_name
    assert branch is not None and branch.startswith("polish/session-")
    assert git.branch_exists(scored_repo, branch)
    subjects = git_cmd(scored_repo, "log", branch, "--format=%s").splitlines()
    assert subjects[0].startswith("fix(value): reduce-value")
    assert subjects[1] == "feat: Add a feature file (WIP)"
    assert not (scored_repo / "feature.txt").exists()
    assert "feature.txt" in backend.review_prompts[0]

    types = _types(channel)
    assert types[0] == "worktree_created"
    assert types.index("implement_done") < types.index("commit") < types.index("review_start")
    assert types[-3:] == ["result", "session_summary", "worktree_cleanup"]
    result = channel.events_of(EventType.RESULT)[0].data
    assert result["success"] is True
    assert result["stopped_reason"] == "approved"
    assert result["review_iterations"] == 1
    summary = channel.events_of(EventType.SESSION_SUMMARY)[0].data
    assert summary["achievements"] == [outcome.commits[0].message]
    assert channel.closed

    record = store.get_session(outcome.session_id)
    assert record.status is SessionStatus.COMPLETED
    assert record.branch_name == branch
    assert record.commit_count == 1
    assert record.stopped_reason == "approved"
    stored = [event["type"] for event in store.get_events(outcome.session_id)]
    assert stored == types
    store.close()


def test_testing_redirect_skips_implementation(scored_repo: Path, worktree_root: Path) -> None:
    backend = ProjectAgent(
        fixes=["19\n", None, "18\n"],
        reviews={1: ("needs_changes", "testing")},
    )

    outcome, channel = _orchestrate(scored_repo, worktree_root, backend)

    assert outcome.stopped_reason is StopReason.APPROVED
    assert outcome.review_iterations == 2
    assert len(backend.implement_prompts) == 1
    assert len(outcome.commits) == 2
    assert outcome.final_score == pytest.approx(64.0)
    assert "round 1: needs_changes" in backend.review_prompts[-1]
    redirect = channel.events_of(EventType.REVIEW_REDIRECT)[0].data
    assert redirect["redirect_to"] == "testing"


def test_review_iterations_are_capped(scored_repo: Path, worktree_root: Path) -> None:
    backend = ProjectAgent(
        fixes=[],
        reviews={
            1: ("needs_changes", "implement"),
            2: ("needs_changes", "implement"),
        },
    )

    outcome, _ = _orchestrate(scored_repo, worktree_root, backend, max_review_iterations=2)

    assert outcome.status is SessionStatus.COMPLETED
    assert outcome.stopped_reason is StopReason.MAX_ITERATIONS
    assert outcome.success is False
    assert len(backend.implement_prompts) == 2
    assert "round 1: needs_changes" in backend.implement_prompts[1]
    assert outcome.worktree_kept is True


def test_rejection_fails_the_session(scored_repo: Path, worktree_root: Path) -> None:
    backend = ProjectAgent(reviews={1: ("rejected", "implement")})

    outcome, channel = _orchestrate(scored_repo, worktree_root, backend)

    assert outcome.status is SessionStatus.FAILED
    assert outcome.stopped_reason is StopReason.REJECTED
    assert channel.events_of(EventType.RESULT)[0].data["success"] is False


def test_without_mission_only_the_testing_loop_runs(scored_repo: Path, worktree_root: Path) -> None:
    backend = ProjectAgent(fixes=["19\n"])

    outcome, channel = _orchestrate(scored_repo, worktree_root, backend, mission=None)

    assert outcome.status is SessionStatus.COMPLETED
    assert outcome.stopped_reason is StopReason.PLATEAU
    assert outcome.success
    assert backend.implement_prompts == []
    assert backend.review_prompts == []
    phases = [event.data["phase"] for event in channel.events_of(EventType.PHASE)]
    assert phases == ["testing"]


def test_untouched_branch_is_deleted(scored_repo: Path, worktree_root: Path) -> None:
    backend = ProjectAgent(fixes=[])

    outcome, channel = _orchestrate(scored_repo, worktree_root, backend, mission=None)

    assert outcome.commits == []
    assert outcome.worktree_kept is False
    assert not git.branch_exists(scored_repo, outcome.branch_name)
    cleanup = channel.events_of(EventType.WORKTREE_CLEANUP)[0].data
    assert cleanup["kept"] is False
    assert channel.events_of(EventType.SESSION_SUMMARY) == []


def test_missing_metrics_fail_before_isolation(git_repo: Path, worktree_root: Path) -> None:
    outcome, channel = _orchestrate(git_repo, worktree_root, ProjectAgent(), preset=Preset())

    assert outcome.status is SessionStatus.FAILED
    assert outcome.stopped_reason is StopReason.ERROR
    error = channel.events_of(EventType.ERROR)[0].data
    assert error["error_type"] == "MissingMetricsError"
    assert channel.events_of(EventType.WORKTREE_CREATED) == []
    assert channel.events_of(EventType.RESULT)[0].data["stopped_reason"] == "error"


def test_plain_directory_is_refused(tmp_path: Path, worktree_root: Path) -> None:
    plain = tmp_path / "plain"
    plain.mkdir()

    outcome, channel = _orchestrate(plain, worktree_root, ProjectAgent())

    assert outcome.status is SessionStatus.FAILED
    assert channel.events_of(EventType.ERROR)[0].data["error_type"] == "NotAGitRepositoryError"


def test_implementation_error_fails_the_session(scored_repo: Path, worktree_root: Path) -> None:
    backend = ProjectAgent(implement_error=True)

    outcome, channel = _orchestrate(scored_repo, worktree_root, backend)

    assert outcome.status is SessionStatus.FAILED
    assert outcome.stopped_reason is StopReason.ERROR
    assert outcome.error is not None and "agent crashed" in outcome.error
    assert backend.review_prompts == []
    assert outcome.worktree_kept is False


def test_review_still_runs_when_testing_times_out(scored_repo: Path, worktree_root: Path) -> None:
    backend = ProjectAgent()

    outcome, channel = _orchestrate(scored_repo, worktree_root, backend, max_duration_seconds=0)

    stops = [
        event.data["stopped_reason"]
        for event in channel.events_of(EventType.STATUS)
        if "stopped_reason" in event.data
    ]
    assert stops == ["timeout"]
    assert len(backend.review_prompts) == 1
    assert outcome.status is SessionStatus.COMPLETED
    assert outcome.stopped_reason is StopReason.APPROVED
    assert outcome.commits == []
    assert outcome.worktree_kept is True


def test_unknown_reviewer_role_fails_before_any_agent_work(
    scored_repo: Path, worktree_root: Path, tmp_path: Path
) -> None:
    store = SessionStore(tmp_path / "sessions.db")
    preset = _preset()
    preset.review.reviewers.append("ux_reviewer")
    backend = ProjectAgent()

    outcome, channel = _orchestrate(scored_repo, worktree_root, backend, preset=preset, store=store)

    assert outcome.status is SessionStatus.FAILED
    assert outcome.stopped_reason is StopReason.ERROR
    error = channel.events_of(EventType.ERROR)[0].data
    assert error["error_type"] == "InvalidPresetError"
    assert "ux_reviewer" in error["message"]
    assert channel.events_of(EventType.RESULT)[0].data["stopped_reason"] == "error"
    assert backend.implement_prompts == []
    assert backend.review_prompts == []
    record = store.get_session(outcome.session_id)
    assert record.status is SessionStatus.FAILED
    assert record.stopped_reason == "error"
    store.close()


def test_without_isolation_commits_land_in_the_project(
    scored_repo: Path, worktree_root: Path
) -> None:
    backend = ProjectAgent()

    outcome, channel = _orchestrate(
        scored_repo,
        worktree_root,
        backend,
        isolation=IsolationConfig(enabled=False),
    )

    assert outcome.stopped_reason is StopReason.APPROVED
    assert outcome.branch_name == "main"
    assert outcome.worktree_kept is None
    assert (scored_repo / "feature.txt").exists()
    assert (scored_repo / "value.txt").read_text(encoding="utf-8") == "19\n"
    assert channel.events_of(EventType.WORKTREE_CREATED) == []


def test_retry_resumes_the_previous_branch(scored_repo: Path, worktree_root: Path) -> None:
    first, _ = _orchestrate(
        scored_repo,
        worktree_root,
        ProjectAgent(reviews={1: ("rejected", "implement")}),
    )
    backend = ProjectAgent(fixes=[])

    outcome, channel = _orchestrate(
        scored_repo,
        worktree_root,
        backend,
        isolation=IsolationConfig(existing_branch=first.branch_name),
        retry=RetryConfig(feedback="Use a config flag instead", retry_count=1),
    )

    assert outcome.branch_name == first.branch_name
    assert outcome.stopped_reason is StopReason.APPROVED
    retry = channel.events_of(EventType.RETRY)[0].data
    assert retry == {
        "retry_count": 1,
        "feedback": "Use a config flag instead",
        "branch_name": first.branch_name,
    }
    assert "Use a config flag instead" in backend.implement_prompts[0]
    assert outcome.initial_score == pytest.approx(62.0)


def test_cancel_before_work_starts(scored_repo: Path, worktree_root: Path) -> None:
    channel = EventChannel()
    orchestrator = Orchestrator(
        SessionConfig(project_path=scored_repo, mission="Anything"),
        _preset(),
        ProjectAgent(),
        channel=channel,
        worktrees=WorktreeManager(worktree_root),
    )
    orchestrator.cancel()

    outcome = asyncio.run(orchestrator.run())

    assert outcome.status is SessionStatus.CANCELLED
    assert outcome.stopped_reason is StopReason.CANCELLED
    assert channel.events_of(EventType.PHASE) == []


def test_approved_plan_is_handed_to_the_implementer(
    scored_repo: Path, worktree_root: Path
) -> None:
    backend = ProjectAgent()

    outcome, channel = _orchestrate(scored_repo, worktree_root, backend, enable_planning=True)

    assert outcome.stopped_reason is StopReason.APPROVED
    assert outcome.plan is not None and outcome.plan.files_to_create == ["feature.txt"]
    assert "## Approved plan" in backend.implement_prompts[0]
    phases = [event.data["phase"] for event in channel.events_of(EventType.PHASE)]
    assert phases[:3] == ["planning", "implement", "testing"]


def test_rejected_plan_cancels_the_session(scored_repo: Path, worktree_root: Path) -> None:
    backend = ProjectAgent()
    channel = EventChannel()
    orchestrator = Orchestrator(
        SessionConfig(project_path=scored_repo, mission="Anything", enable_planning=True),
        _preset(),
        backend,
        channel=channel,
        worktrees=WorktreeManager(worktree_root),
        approve_plan=lambda plan, context: PlanDecision.reject(),
    )

    outcome = asyncio.run(orchestrator.run())

    assert outcome.status is SessionStatus.CANCELLED
    assert outcome.plan is None
    assert backend.implement_prompts == []
    assert channel.events_of(EventType.PLAN_REJECTED)[0].data["reason"] == "Plan rejected"
