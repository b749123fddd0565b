import subprocess
from collections.abc import AsyncIterator, Callable, Iterable
from pathlib import Path

import pytest

from polish.backends import AgentBackend, AgentMessage, AgentRequest


def git_cmd(repo: Path, *args: str) -> str:
    proc = subprocess.run(
        ["git", *args], cwd=repo, check=True, text=True, capture_output=True
    )
    return proc.stdout.strip()


def _init_git_repo(repo_path: Path) -> None:
    repo_path.mkdir(parents=True, exist_ok=True)
    git_cmd(repo_path, "init")
    git_cmd(repo_path, "symbolic-ref", "HEAD", "refs/heads/main")
    git_cmd(repo_path, "config", "user.email", "test@example.com")
    git_cmd(repo_path, "config", "user.name", "Test User")
    git_cmd(repo_path, "config", "commit.gpgsign", "false")
    (repo_path / "README.md").write_text("seed\n", encoding="utf-8")
    git_cmd(repo_path, "add", "README.md")
    git_cmd(repo_path, "commit", "-m", "initial")


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    repo = tmp_path / "project"
    _init_git_repo(repo)
    return repo


@pytest.fixture
def worktree_root(tmp_path: Path) -> Path:
    return tmp_path / "worktrees"


@pytest.fixture
def scored_repo(git_repo: Path) -> Path:
    """A repository whose single metric is the number stored in value.txt."""
    (git_repo / "value.txt").write_text("20\n", encoding="utf-8")
    git_cmd(git_repo, "add", "value.txt")
    git_cmd(git_repo, "commit", "-m", "chore: baseline value")
    return git_repo


class ScriptedBackend(AgentBackend):
    """Answers every request through ``handler``; it may edit files in ``request.cwd``."""

    name = "scripted"

    def __init__(self, handler: Callable[[AgentRequest], Iterable[AgentMessage]]) -> None:
        self.handler = handler
        self.requests: list[AgentRequest] = []

    async def execute(self, request: AgentRequest) -> AsyncIterator[AgentMessage]:
        self.requests.append(request)
        for message in self.handler(request):
            yield message


def text_message(text: str) -> AgentMessage:
    return AgentMessage(kind="text", text=text, session_id="sess-1")


def result_message(text: str = "", subtype: str = "success") -> AgentMessage:
    return AgentMessage(kind="result", text=text, subtype=subtype, session_id="sess-1")


def write_file(cwd: Path, name: str, content: str, tool: str = "Write") -> list[AgentMessage]:
    path = cwd / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return [
        AgentMessage(
            kind="tool_pre",
            tool=tool,
            tool_input={"file_path": str(path)},
            tool_use_id=f"tu-{name}",
        ),
        AgentMessage(kind="tool_post", tool=tool, tool_output="ok", tool_use_id=f"tu-{name}"),
    ]
