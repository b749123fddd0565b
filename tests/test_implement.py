import asyncio
from pathlib import Path

from conftest import ScriptedBackend, git_cmd, result_message, write_file
from polish import git
from polish.agent import AgentRunner
from polish.backends import AgentExecutionError, AgentMessage, AgentRequest
from polish.events import EventChannel, EventType
from polish.implement import ImplementContext, run_implement_phase, wip_commit_message
from polish.models import Plan


def _run(context: ImplementContext, backend: ScriptedBackend) -> tuple[object, EventChannel]:
    channel = EventChannel()
    result = asyncio.run(run_implement_phase(context, AgentRunner(backend), channel))
    return result, channel


def test_wip_message_truncates_long_missions() -> None:
    assert wip_commit_message("Add a flag") == "feat: Add a flag (WIP)"
    long = wip_commit_message("x" * 80)
    assert long == f"feat: {'x' * 47}... (WIP)"


def test_changes_are_committed_as_work_in_progress(git_repo: Path) -> None:
    def handler(request: AgentRequest) -> list[AgentMessage]:
        (request.cwd / "untracked.txt").write_text("shell output\n", encoding="utf-8")
        return [
            *write_file(request.cwd, "src/flag.py", "FLAG = True\n"),
            *write_file(request.cwd, "README.md", "seed\nflag\n", tool="Edit"),
            result_message("Implemented"),
        ]

    backend = ScriptedBackend(handler)
    result, channel = _run(ImplementContext("Add a flag", git_repo), backend)

    assert result.ok
    assert result.edited
    assert result.files_created == ["src/flag.py", "untracked.txt"]
    assert result.files_modified == ["README.md"]
    assert result.commit_hash == git.last_commit_hash(git_repo)
    assert git_cmd(git_repo, "log", "-1", "--format=%s") == "feat: Add a flag (WIP)"
    assert not git.has_changes(git_repo)
    done = channel.events_of(EventType.IMPLEMENT_DONE)[0].data
    assert done["commit_hash"] == result.commit_hash
    assert backend.requests[0].permission_mode == "acceptEdits"


def test_prompt_carries_plan_and_feedback(git_repo: Path) -> None:
    backend = ScriptedBackend(lambda request: [result_message("ok")])
    context = ImplementContext(
        "Add a flag",
        git_repo,
        feedback="Name it --dry-run",
        retry_count=1,
        plan=Plan(summary="Flag plan", approach=["Add option"]),
    )

    _run(context, backend)

    prompt = backend.requests[0].prompt
    assert prompt.startswith("Implement the following feature in this project.")
    assert "## Approved plan\n## Summary\nFlag plan" in prompt
    assert "## Reviewer feedback to address (attempt 2)\nName it --dry-run" in prompt


def test_no_changes_means_no_commit(git_repo: Path) -> None:
    before = git.last_commit_hash(git_repo)
    backend = ScriptedBackend(lambda request: [result_message("Nothing needed")])

    result, channel = _run(ImplementContext("Add a flag", git_repo), backend)

    assert result.ok
    assert result.commit_hash is None
    assert git.last_commit_hash(git_repo) == before
    messages = [event.data["message"] for event in channel.events_of(EventType.STATUS)]
    assert "No changes made during implementation" in messages
    assert channel.events_of(EventType.IMPLEMENT_DONE) == []


def test_agent_commits_are_squashed_into_the_wip_commit(git_repo: Path) -> None:
    base = git.last_commit_hash(git_repo)

    def handler(request: AgentRequest) -> list[AgentMessage]:
        (request.cwd / "a.txt").write_text("a\n", encoding="utf-8")
        git_cmd(request.cwd, "add", "a.txt")
        git_cmd(request.cwd, "commit", "-m", "agent: a")
        return [result_message("done")]

    result, _ = _run(ImplementContext("Add a", git_repo), ScriptedBackend(handler))

    assert result.commit_hash is not None
    assert git_cmd(git_repo, "rev-parse", "HEAD~1") == base
    assert git_cmd(git_repo, "log", "-1", "--format=%s") == "feat: Add a (WIP)"


def test_agent_failure_is_reported_not_raised(git_repo: Path) -> None:
    def handler(request: AgentRequest) -> list[AgentMessage]:
        raise AgentExecutionError("rate limited", backend="scripted")

    result, channel = _run(ImplementContext("Add a flag", git_repo), ScriptedBackend(handler))

    assert not result.ok
    assert result.error == "Implementation failed: rate limited"
    error = channel.events_of(EventType.ERROR)[0].data
    assert error["error_type"] == "AgentExecutionError"


def test_turn_limit_resumes_and_is_reported(git_repo: Path) -> None:
    answers = iter(
        [
            [result_message("", subtype="error_max_turns")],
            [*write_file(git_repo, "late.txt", "late\n"), result_message("done")],
        ]
    )
    backend = ScriptedBackend(lambda request: next(answers))

    result, channel = _run(ImplementContext("Add late", git_repo), backend)

    assert result.commit_hash is not None
    assert backend.requests[1].prompt == "Continue implementing the remaining features."
    messages = [event.data["message"] for event in channel.events_of(EventType.STATUS)]
    assert "Implementation resumed 1 time(s)" in messages
