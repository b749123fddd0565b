from __future__ import annotations

import json
import tempfile
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from polish.errors import InvalidPresetError, PresetNotFoundError
from polish.models import ApprovalPolicy

PRESET_FILENAMES = ("polish.toml", ".polish/polish.toml", "polish.config.json")
REVIEWER_ROLES = ("mission_reviewer", "senior_engineer", "code_reviewer", "security_reviewer")
DEFAULT_REVIEWERS = list(REVIEWER_ROLES[:3])
CAPABILITY_SECTIONS = ("shared", "implement", "testing", "review", "planning")

PluginType = Literal["bundled", "local", "npm", "url"]
OverrideType = Literal["tool", "mcpServer", "plugin", "agent"]
Thoroughness = Literal["quick", "medium", "thorough"]
StackName = Literal["python", "node", "rust", "unknown"]


@dataclass(slots=True)
class Metric:
    name: str
    command: str
    weight: float = 1.0
    target: float = 0.0
    higher_is_better: bool = False
    timeout_seconds: float = 30.0

    def __post_init__(self) -> None:
        if self.weight < 0:
            raise InvalidPresetError(f"Metric {self.name!r} has a negative weight: {self.weight}")


@dataclass(slots=True)
class Strategy:
    name: str
    focus: str
    prompt: str = ""


@dataclass(slots=True)
class Thresholds:
    min_improvement: float = 0.5
    max_stalled: int | None = None
    max_score: float | None = None


@dataclass(slots=True)
class PluginConfig:
    type: PluginType
    name: str | None = None
    path: str | None = None
    package: str | None = None
    url: str | None = None

    @property
    def identifier(self) -> str:
        if self.type == "bundled":
            return self.name or ""
        if self.type == "local":
            return self.path or ""
        if self.type == "npm":
            return self.package or ""
        return self.url or ""

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": self.type}
        for key in ("name", "path", "package", "url"):
            value = getattr(self, key)
            if value:
                payload[key] = value
        return payload


@dataclass(slots=True)
class AgentDefinition:
    description: str = ""
    prompt: str | None = None
    tools: list[str] | None = None
    model: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"description": self.description}
        if self.prompt:
            payload["prompt"] = self.prompt
        if self.tools is not None:
            payload["tools"] = list(self.tools)
        if self.model:
            payload["model"] = self.model
        return payload


@dataclass(slots=True)
class PhaseCapabilities:
    tools: list[str] | None = None
    allowed_tools: list[str] = field(default_factory=list)
    disallowed_tools: list[str] = field(default_factory=list)
    mcp_servers: dict[str, dict[str, Any]] = field(default_factory=dict)
    plugins: list[PluginConfig] = field(default_factory=list)
    agents: dict[str, AgentDefinition] = field(default_factory=dict)
    setting_sources: list[str] | None = None
    system_prompt_append: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PhaseCapabilities:
        tools = data.get("tools")
        sources = data.get("setting_sources")
        return cls(
            tools=[str(item) for item in tools] if tools is not None else None,
            allowed_tools=[str(item) for item in data.get("allowed_tools", [])],
            disallowed_tools=[str(item) for item in data.get("disallowed_tools", [])],
            mcp_servers={
                str(key): dict(value) for key, value in data.get("mcp_servers", {}).items()
            },
            plugins=[PluginConfig(**item) for item in data.get("plugins", [])],
            agents={
                str(key): AgentDefinition(**value) for key, value in data.get("agents", {}).items()
            },
            setting_sources=[str(item) for item in sources] if sources is not None else None,
            system_prompt_append=data.get("system_prompt_append"),
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        if self.tools is not None:
            payload["tools"] = list(self.tools)
        if self.allowed_tools:
            payload["allowed_tools"] = list(self.allowed_tools)
        if self.disallowed_tools:
            payload["disallowed_tools"] = list(self.disallowed_tools)
        if self.mcp_servers:
            payload["mcp_servers"] = {key: dict(value) for key, value in self.mcp_servers.items()}
        if self.plugins:
            payload["plugins"] = [plugin.to_dict() for plugin in self.plugins]
        if self.agents:
            payload["agents"] = {key: value.to_dict() for key, value in self.agents.items()}
        if self.setting_sources is not None:
            payload["setting_sources"] = list(self.setting_sources)
        if self.system_prompt_append:
            payload["system_prompt_append"] = self.system_prompt_append
        return payload


@dataclass(slots=True)
class CapabilitiesConfig:
    shared: PhaseCapabilities | None = None
    implement: PhaseCapabilities | None = None
    testing: PhaseCapabilities | None = None
    review: PhaseCapabilities | None = None
    planning: PhaseCapabilities | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CapabilitiesConfig:
        sections = dict(data)
        # "polish" is the former name of the testing phase.
        if "testing" not in sections and "polish" in sections:
            sections["testing"] = sections["polish"]
        return cls(
            **{
                name: PhaseCapabilities.from_dict(sections[name])
                for name in CAPABILITY_SECTIONS
                if isinstance(sections.get(name), dict)
            }
        )

    def section(self, name: str) -> PhaseCapabilities | None:
        if name == "polish":
            name = "testing"
        if name not in CAPABILITY_SECTIONS:
            return None
        return getattr(self, name)

    def to_dict(self) -> dict[str, Any]:
        return {
            name: section.to_dict()
            for name in CAPABILITY_SECTIONS
            if (section := getattr(self, name)) is not None
        }


def validate_reviewers(reviewers: list[str] | tuple[str, ...]) -> None:
    if not reviewers:
        raise InvalidPresetError("The review gate needs at least one reviewer")
    unknown = [role for role in reviewers if role not in REVIEWER_ROLES]
    if unknown:
        raise InvalidPresetError(
            f"Unknown reviewer role(s): {', '.join(unknown)} "
            f"(expected one of {', '.join(REVIEWER_ROLES)})"
        )


@dataclass(slots=True)
class ReviewConfig:
    reviewers: list[str] = field(default_factory=lambda: list(DEFAULT_REVIEWERS))
    approval: ApprovalPolicy = ApprovalPolicy.ALL
    max_turns: int = 30

    def __post_init__(self) -> None:
        self.approval = ApprovalPolicy(self.approval)
        validate_reviewers(self.reviewers)


@dataclass(slots=True)
class AgentConfig:
    binary: str = "claude"
    model: str | None = None
    max_turns: int = 30
    max_continuations: int = 5
    timeout_seconds: float = 1800.0


@dataclass(slots=True)
class TestingConfig:
    test_command: str = ""
    test_timeout_seconds: float = 120.0


@dataclass(slots=True)
class WorktreeSettings:
    root: str = ""
    link_dirs: list[str] = field(default_factory=lambda: ["node_modules", ".venv"])

    def root_path(self) -> Path:
        if self.root:
            return Path(self.root).expanduser()
        return Path(tempfile.gettempdir()) / "polish-worktrees"


@dataclass(slots=True)
class PlanningConfig:
    thoroughness: Thoroughness = "medium"
    max_rounds: int = 5


@dataclass(slots=True)
class Preset:
    name: str = "custom"
    rules: list[str] = field(default_factory=list)
    thresholds: Thresholds = field(default_factory=Thresholds)
    metrics: list[Metric] = field(default_factory=list)
    strategies: list[Strategy] = field(default_factory=list)
    capabilities: CapabilitiesConfig = field(default_factory=CapabilitiesConfig)
    review: ReviewConfig = field(default_factory=ReviewConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    testing: TestingConfig = field(default_factory=TestingConfig)
    worktree: WorktreeSettings = field(default_factory=WorktreeSettings)
    planning: PlanningConfig = field(default_factory=PlanningConfig)

    @classmethod
    def default(cls) -> Preset:
        return cls()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Preset:
        return cls(
            name=str(data.get("name", "custom")),
            rules=[str(rule) for rule in data.get("rules", [])],
            thresholds=Thresholds(**data.get("thresholds", {})),
            metrics=[Metric(**item) for item in data.get("metrics", [])],
            strategies=[Strategy(**item) for item in data.get("strategies", [])],
            capabilities=CapabilitiesConfig.from_dict(data.get("capabilities", {})),
            review=ReviewConfig(**data.get("review", {})),
            agent=AgentConfig(**data.get("agent", {})),
            testing=TestingConfig(**data.get("testing", {})),
            worktree=WorktreeSettings(**data.get("worktree", {})),
            planning=PlanningConfig(**data.get("planning", {})),
        )

    def to_dict(self) -> dict[str, Any]:
        thresholds: dict[str, Any] = {"min_improvement": self.thresholds.min_improvement}
        if self.thresholds.max_stalled is not None:
            thresholds["max_stalled"] = self.thresholds.max_stalled
        if self.thresholds.max_score is not None:
            thresholds["max_score"] = self.thresholds.max_score
        agent: dict[str, Any] = {
            "binary": self.agent.binary,
            "max_turns": self.agent.max_turns,
            "max_continuations": self.agent.max_continuations,
            "timeout_seconds": self.agent.timeout_seconds,
        }
        if self.agent.model:
            agent["model"] = self.agent.model
        return {
            "name": self.name,
            "rules": list(self.rules),
            "thresholds": thresholds,
            "metrics": [
                {
                    "name": metric.name,
                    "command": metric.command,
                    "weight": metric.weight,
                    "target": metric.target,
                    "higher_is_better": metric.higher_is_better,
                    "timeout_seconds": metric.timeout_seconds,
                }
                for metric in self.metrics
            ],
            "strategies": [
                {"name": strategy.name, "focus": strategy.focus, "prompt": strategy.prompt}
                for strategy in self.strategies
            ],
            "capabilities": self.capabilities.to_dict(),
            "review": {
                "reviewers": list(self.review.reviewers),
                "approval": str(self.review.approval),
                "max_turns": self.review.max_turns,
            },
            "agent": agent,
            "testing": {
                "test_command": self.testing.test_command,
                "test_timeout_seconds": self.testing.test_timeout_seconds,
            },
            "worktree": {
                "root": self.worktree.root,
                "link_dirs": list(self.worktree.link_dirs),
            },
            "planning": {
                "thoroughness": self.planning.thoroughness,
                "max_rounds": self.planning.max_rounds,
            },
        }


@dataclass(slots=True)
class CapabilityOverride:
    type: OverrideType
    id: str
    enabled: bool = False
    phases: list[str] = field(default_factory=list)

    def applies_to(self, phase: str) -> bool:
        if not self.phases:
            return True
        if phase in self.phases or "both" in self.phases:
            return True
        return phase == "testing" and "polish" in self.phases


@dataclass(slots=True)
class IsolationConfig:
    enabled: bool = True
    existing_branch: str | None = None


@dataclass(slots=True)
class RetryConfig:
    feedback: str
    retry_count: int = 1


@dataclass(slots=True)
class SessionConfig:
    project_path: Path
    mission: str | None = None
    max_duration_seconds: float = 2 * 60 * 60
    max_iterations: int = 100
    max_stalled: int = 5
    target_score: float = 100.0
    isolation: IsolationConfig = field(default_factory=IsolationConfig)
    retry: RetryConfig | None = None
    capability_overrides: list[CapabilityOverride] = field(default_factory=list)
    enable_planning: bool = False
    max_review_iterations: int = 3
    base_branch: str | None = None

    def __post_init__(self) -> None:
        self.project_path = Path(self.project_path).resolve()
        if self.mission is not None:
            self.mission = self.mission.strip() or None

    def effective_max_stalled(self, preset: Preset) -> int:
        return preset.thresholds.max_stalled or self.max_stalled

    def effective_target_score(self, preset: Preset) -> float:
        return preset.thresholds.max_score or self.target_score


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    if isinstance(value, dict):
        if not value:
            return "{}"
        items = ", ".join(f"{_toml_key(key)} = {_toml_value(item)}" for key, item in value.items())
        return "{ " + items + " }"
    return json.dumps(str(value), ensure_ascii=False)


def _toml_key(key: str) -> str:
    if key.replace("_", "").replace("-", "").isalnum():
        return key
    return json.dumps(key, ensure_ascii=False)


def dumps_toml(preset: Preset) -> str:
    data = preset.to_dict()
    lines: list[str] = [f"name = {_toml_value(data['name'])}"]
    lines.append(f"rules = {_toml_value(data['rules'])}")
    lines.append("")
    for section in ("thresholds", "review", "agent", "testing", "worktree", "planning"):
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    for table in ("metrics", "strategies"):
        for item in data[table]:
            lines.append(f"[[{table}]]")
            for key, value in item.items():
                lines.append(f"{key} = {_toml_value(value)}")
            lines.append("")
    for name, section in data["capabilities"].items():
        lines.append(f"[capabilities.{name}]")
        for key, value in section.items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def find_preset(project_path: Path) -> Path | None:
    for filename in PRESET_FILENAMES:
        candidate = project_path / filename
        if candidate.is_file():
            return candidate
    return None


def load_preset_file(path: Path) -> Preset:
    if not path.exists():
        raise PresetNotFoundError(f"Preset file not found: {path}")
    text = path.read_text(encoding="utf-8")
    if path.suffix == ".json":
        return Preset.from_dict(json.loads(text))
    return Preset.from_dict(tomllib.loads(text))


def load_preset(project_path: Path, path: Path | None = None) -> Preset:
    if path is not None:
        return load_preset_file(path)
    found = find_preset(project_path)
    if found is None:
        return Preset.default()
    return load_preset_file(found)


def save_preset(path: Path, preset: Preset) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_toml(preset), encoding="utf-8")


BASE_RULES = [
    "Make exactly one atomic change per iteration",
    "Do not modify configuration files without a valid reason",
    "Prefer removing dead code over adding code",
    "Keep the existing test suite passing",
]


def detect_stack(project_path: Path) -> StackName:
    package_json = project_path / "package.json"
    if package_json.is_file():
        try:
            payload = json.loads(package_json.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            payload = {}
        if isinstance(payload, dict) and (
            payload.get("dependencies") or payload.get("devDependencies")
        ):
            return "node"
    if (project_path / "pyproject.toml").is_file() or (project_path / "requirements.txt").is_file():
        return "python"
    if (project_path / "Cargo.toml").is_file():
        return "rust"
    return "unknown"


def starter_preset(stack: StackName) -> Preset:
    preset = Preset(name=stack, rules=list(BASE_RULES))
    if stack == "python":
        preset.metrics = [
            Metric(
                name="lint_errors",
                command="ruff check . --output-format concise --quiet | grep -c . || true",
                weight=40,
            ),
            Metric(
                name="type_errors",
                command="mypy . 2>/dev/null | grep -c 'error:' || true",
                weight=30,
            ),
            Metric(
                name="test_failures",
                command=(
                    "pytest -q 2>&1 | grep -Eo '[0-9]+ failed' | grep -Eo '[0-9]+' || echo 0"
                ),
                weight=30,
                timeout_seconds=300,
            ),
        ]
        preset.strategies = [
            Strategy("fix-lint", "lint_errors", "Fix one ruff finding reported by `ruff check .`."),
            Strategy("fix-types", "type_errors", "Fix one type error reported by `mypy .`."),
            Strategy("fix-tests", "test_failures", "Make one failing pytest test pass."),
        ]
        preset.testing.test_command = "pytest -q"
    elif stack == "node":
        preset.metrics = [
            Metric(
                name="lint_errors",
                command="npx eslint . -f unix 2>/dev/null | grep -c ':[0-9]*:[0-9]*:' || true",
                weight=50,
            ),
            Metric(
                name="type_errors",
                command="npx tsc --noEmit 2>&1 | grep -c 'error TS' || true",
                weight=50,
            ),
        ]
        preset.strategies = [
            Strategy("fix-lint", "lint_errors", "Fix one ESLint error reported by `npx eslint .`."),
            Strategy("fix-types", "type_errors", "Fix one TypeScript error from `npx tsc --noEmit`."),
        ]
        preset.testing.test_command = "npm test -- --passWithNoTests"
    elif stack == "rust":
        preset.metrics = [
            Metric(
                name="clippy_warnings",
                command="cargo clippy --quiet 2>&1 | grep -c '^warning' || true",
                weight=100,
                timeout_seconds=300,
            )
        ]
        preset.strategies = [
            Strategy("fix-clippy", "clippy_warnings", "Fix one warning reported by `cargo clippy`."),
        ]
        preset.testing.test_command = "cargo test --quiet"
    return preset
