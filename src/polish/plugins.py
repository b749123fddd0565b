from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from polish.config import PluginConfig

logger = logging.getLogger(__name__)

PACKAGE_ROOT = Path(__file__).resolve().parent


@dataclass(slots=True, frozen=True)
class ResolvedPlugin:
    path: str
    type: str = "local"

    def to_dict(self) -> dict[str, str]:
        return {"type": self.type, "path": self.path}


class PluginResolver:
    """Maps plugin declarations to local directories the agent can load.

    Plugins live next to polish, never inside the target repository, so that
    any repository can be polished with the same plugin set.
    """

    def __init__(
        self,
        *,
        base_dir: Path | None = None,
        bundled_dir: Path | None = None,
        user_dir: Path | None = None,
    ) -> None:
        self.base_dir = base_dir or PACKAGE_ROOT
        self.bundled_dir = bundled_dir or self.base_dir / "plugins"
        self.user_dir = user_dir or Path.home() / ".polish" / "plugins"

    def resolve_path(self, plugin: PluginConfig) -> Path:
        if not plugin.identifier:
            raise ValueError(f"Plugin of type {plugin.type!r} has no name, path, package or url")
        if plugin.type == "bundled":
            return self.bundled_dir / plugin.identifier
        if plugin.type == "local":
            path = Path(plugin.identifier).expanduser()
            return path if path.is_absolute() else (self.base_dir / path).resolve()
        if plugin.type == "npm":
            return self.base_dir / "node_modules" / plugin.identifier
        raise ValueError(f"URL plugins are not supported: {plugin.identifier}")

    @staticmethod
    def validate(path: Path) -> str | None:
        if not path.exists():
            return f"Plugin path does not exist: {path}"
        if (path / ".claude-plugin" / "plugin.json").is_file():
            return None
        if (path / "SKILL.md").is_file():
            return None
        return f"Invalid plugin: missing .claude-plugin/plugin.json or SKILL.md at {path}"

    def resolve_all(
        self, plugins: Sequence[PluginConfig], *, validate: bool = True
    ) -> list[ResolvedPlugin]:
        resolved: list[ResolvedPlugin] = []
        seen: set[str] = set()
        for plugin in plugins:
            try:
                path = self.resolve_path(plugin)
            except ValueError as exc:
                logger.warning("Skipping plugin: %s", exc)
                continue
            if validate:
                error = self.validate(path)
                if error:
                    logger.warning("Skipping invalid plugin: %s", error)
                    continue
            if str(path) in seen:
                continue
            seen.add(str(path))
            resolved.append(ResolvedPlugin(path=str(path)))
        return resolved

    @staticmethod
    def _list_dirs(root: Path) -> list[str]:
        if not root.is_dir():
            return []
        return sorted(entry.name for entry in root.iterdir() if entry.is_dir())

    def list_bundled(self) -> list[str]:
        return self._list_dirs(self.bundled_dir)

    def list_user(self) -> list[str]:
        return self._list_dirs(self.user_dir)
