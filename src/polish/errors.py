from __future__ import annotations


class PolishError(RuntimeError):
    """Base class for structural failures that end a session."""


class NotAGitRepositoryError(PolishError):
    """Raised when the target project is not under git version control."""

    def __init__(self, path: str) -> None:
        super().__init__(f"Not a git repository: {path}")
        self.path = path


class PresetNotFoundError(PolishError):
    """Raised when no preset file can be located for a project."""


class InvalidPresetError(PolishError):
    """Raised when a preset holds values that cannot drive a session."""


class MissingMetricsError(PolishError):
    """Raised when a preset defines no metrics to score against."""


class GitCommandError(PolishError):
    """Raised when a git subprocess exits non-zero."""

    def __init__(self, message: str, *, args: list[str] | None = None, exit_code: int | None = None) -> None:
        super().__init__(message)
        self.git_args = list(args or [])
        self.exit_code = exit_code


class WorktreeError(PolishError):
    """Raised when an isolated worktree cannot be created."""


class SessionNotFoundError(PolishError):
    """Raised when a session id is unknown to the store."""


class SessionClosedError(PolishError):
    """Raised when a terminal session is mutated."""


class AgentExecutionError(PolishError):
    """Raised when the external coding agent fails."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable


class AgentTimeoutError(AgentExecutionError):
    """Raised when an agent invocation exceeds its time budget."""


class AgentProcessError(AgentExecutionError):
    """Raised when the agent process cannot be started or loses its pipes."""
