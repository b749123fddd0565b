from __future__ import annotations

import logging
import secrets
import shutil
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from polish import git
from polish.errors import GitCommandError, NotAGitRepositoryError, WorktreeError

logger = logging.getLogger(__name__)

BRANCH_PREFIX = "polish/session-"


def generate_session_id() -> str:
    return f"{int(time.time() * 1000)}-{secrets.token_hex(3)}"


@dataclass(slots=True)
class WorktreeConfig:
    original_path: Path
    worktree_path: Path
    branch_name: str
    base_branch: str
    session_id: str
    linked_dirs: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "original_path": str(self.original_path),
            "worktree_path": str(self.worktree_path),
            "branch_name": self.branch_name,
            "base_branch": self.base_branch,
            "session_id": self.session_id,
            "linked_dirs": list(self.linked_dirs),
        }


class WorktreeManager:
    def __init__(self, root: Path, *, link_dirs: Sequence[str] = ("node_modules", ".venv")) -> None:
        self.root = Path(root)
        self.link_dirs = list(link_dirs)

    def preflight(self, project_path: Path) -> str:
        """Return the current branch, failing fast outside a git repository."""
        project_path = Path(project_path).resolve()
        if not git.is_git_repository(project_path):
            raise NotAGitRepositoryError(str(project_path))
        return git.current_branch(project_path)

    def create(
        self,
        project_path: Path,
        base_branch: str | None = None,
        *,
        session_id: str | None = None,
    ) -> WorktreeConfig:
        project_path = Path(project_path).resolve()
        resolved_base = base_branch or self.preflight(project_path)
        session_id = session_id or generate_session_id()
        branch_name = f"{BRANCH_PREFIX}{session_id}"
        worktree_path = self._worktree_path(project_path, session_id)
        try:
            git.run_git(
                project_path,
                ["worktree", "add", "-b", branch_name, str(worktree_path), resolved_base],
            )
        except GitCommandError as exc:
            raise WorktreeError(f"Could not create worktree for {branch_name}: {exc}") from exc

        config = WorktreeConfig(
            original_path=project_path,
            worktree_path=worktree_path,
            branch_name=branch_name,
            base_branch=resolved_base,
            session_id=session_id,
        )
        config.linked_dirs = self._link_dependency_dirs(config)
        logger.info("Created worktree %s on branch %s", worktree_path, branch_name)
        return config

    def create_from_branch(
        self,
        project_path: Path,
        branch_name: str,
        *,
        session_id: str | None = None,
    ) -> WorktreeConfig:
        project_path = Path(project_path).resolve()
        base_branch = self.preflight(project_path)
        if not git.branch_exists(project_path, branch_name):
            raise WorktreeError(f"Branch does not exist: {branch_name}")
        session_id = session_id or generate_session_id()
        worktree_path = self._worktree_path(project_path, session_id)
        try:
            git.run_git(project_path, ["worktree", "add", str(worktree_path), branch_name])
        except GitCommandError as exc:
            raise WorktreeError(f"Could not check out {branch_name} in a worktree: {exc}") from exc

        config = WorktreeConfig(
            original_path=project_path,
            worktree_path=worktree_path,
            branch_name=branch_name,
            base_branch=base_branch,
            session_id=session_id,
        )
        config.linked_dirs = self._link_dependency_dirs(config)
        logger.info("Resumed branch %s in worktree %s", branch_name, worktree_path)
        return config

    def cleanup(self, config: WorktreeConfig, keep_branch: bool = True) -> None:
        """Remove the worktree and optionally its branch. Never raises."""
        removed = git.run_git(
            config.original_path,
            ["worktree", "remove", "--force", str(config.worktree_path)],
            check=False,
        )
        if removed.returncode != 0:
            logger.debug(
                "git worktree remove failed for %s: %s",
                config.worktree_path,
                removed.stderr.strip(),
            )
            try:
                shutil.rmtree(config.worktree_path, ignore_errors=True)
                git.run_git(config.original_path, ["worktree", "prune"], check=False)
            except OSError as exc:
                logger.warning("Worktree cleanup failed for %s: %s", config.worktree_path, exc)

        if not keep_branch:
            deleted = git.run_git(
                config.original_path, ["branch", "-D", config.branch_name], check=False
            )
            if deleted.returncode != 0:
                logger.debug("Branch %s not deleted: %s", config.branch_name, deleted.stderr.strip())

    def _worktree_path(self, project_path: Path, session_id: str) -> Path:
        self.root.mkdir(parents=True, exist_ok=True)
        worktree_path = (self.root / session_id).resolve()
        if worktree_path == project_path or project_path in worktree_path.parents:
            raise WorktreeError(
                f"Worktree path {worktree_path} must live outside the project {project_path}"
            )
        return worktree_path

    def _link_dependency_dirs(self, config: WorktreeConfig) -> list[str]:
        linked: list[str] = []
        for name in self.link_dirs:
            source = config.original_path / name
            target = config.worktree_path / name
            if not source.is_dir() or target.exists() or target.is_symlink():
                continue
            try:
                target.symlink_to(source, target_is_directory=True)
            except OSError as exc:
                logger.debug("Could not link %s into worktree: %s", name, exc)
                continue
            linked.append(name)
        return linked
