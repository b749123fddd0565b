from __future__ import annotations

import subprocess
from collections.abc import Sequence
from pathlib import Path

from polish.errors import GitCommandError


def run_git(
    repo: Path, args: list[str], *, check: bool = True
) -> subprocess.CompletedProcess[str]:
    proc = subprocess.run(
        ["git", "--no-pager", *args],
        cwd=repo,
        text=True,
        capture_output=True,
    )
    if check and proc.returncode != 0:
        raise GitCommandError(
            proc.stderr.strip() or proc.stdout.strip() or f"git {' '.join(args)} failed",
            args=args,
            exit_code=proc.returncode,
        )
    return proc


def _pathspec(excluded: Sequence[str]) -> list[str]:
    return ["--", ".", *(f":(exclude){path}" for path in excluded)]


def _status_line_path(status_line: str) -> str:
    candidate = status_line[3:].strip()
    if " -> " in candidate:
        candidate = candidate.split(" -> ", maxsplit=1)[1].strip()
    return candidate.strip('"')


def is_git_repository(path: Path) -> bool:
    if not path.is_dir():
        return False
    proc = run_git(path, ["rev-parse", "--is-inside-work-tree"], check=False)
    return proc.returncode == 0 and proc.stdout.strip() == "true"


def current_branch(repo: Path) -> str:
    proc = run_git(repo, ["rev-parse", "--abbrev-ref", "HEAD"], check=False)
    branch = proc.stdout.strip()
    if proc.returncode != 0 or not branch or branch == "HEAD":
        # Unborn or detached HEAD: fall back to the symbolic ref or the raw commit.
        symbolic = run_git(repo, ["symbolic-ref", "--short", "HEAD"], check=False)
        if symbolic.returncode == 0 and symbolic.stdout.strip():
            return symbolic.stdout.strip()
        return run_git(repo, ["rev-parse", "HEAD"]).stdout.strip()
    return branch


def branch_exists(repo: Path, branch: str) -> bool:
    proc = run_git(repo, ["show-ref", "--verify", "--quiet", f"refs/heads/{branch}"], check=False)
    return proc.returncode == 0


def last_commit_hash(repo: Path) -> str | None:
    proc = run_git(repo, ["rev-parse", "HEAD"], check=False)
    if proc.returncode != 0:
        return None
    return proc.stdout.strip() or None


def status_entries(repo: Path, excluded: Sequence[str] = ()) -> list[tuple[str, str]]:
    proc = run_git(repo, ["status", "--porcelain", "--untracked-files=all", *_pathspec(excluded)])
    entries: list[tuple[str, str]] = []
    for line in proc.stdout.splitlines():
        if len(line) < 4:
            continue
        entries.append((line[:2], _status_line_path(line)))
    return entries


def has_changes(repo: Path, excluded: Sequence[str] = ()) -> bool:
    return bool(status_entries(repo, excluded))


def commit_all(repo: Path, message: str, excluded: Sequence[str] = ()) -> str:
    run_git(repo, ["add", "-A", *_pathspec(excluded)])
    run_git(repo, ["commit", "--no-verify", "-m", message])
    return run_git(repo, ["rev-parse", "HEAD"]).stdout.strip()


def rollback(repo: Path, excluded: Sequence[str] = (), *, to_commit: str | None = None) -> None:
    """Discard tracked modifications and remove untracked files."""
    run_git(repo, ["reset", "--hard", to_commit or "HEAD"])
    run_git(repo, ["clean", "-fd", *_pathspec(excluded)])


def absorb_commits(repo: Path, base: str) -> bool:
    """Fold commits made on top of ``base`` back into the working tree."""
    head = last_commit_hash(repo)
    if head is None or head == base:
        return False
    run_git(repo, ["reset", "--soft", base])
    run_git(repo, ["reset", "--quiet"], check=False)
    return True


def diff_names(repo: Path, base: str, head: str = "HEAD") -> list[str]:
    proc = run_git(repo, ["diff", "--name-only", f"{base}...{head}"], check=False)
    if proc.returncode != 0:
        return []
    return [line.strip() for line in proc.stdout.splitlines() if line.strip()]
