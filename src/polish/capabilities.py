from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any

from polish.config import (
    AgentDefinition,
    CapabilitiesConfig,
    CapabilityOverride,
    PhaseCapabilities,
    Preset,
)
from polish.models import Phase
from polish.plugins import PluginResolver, ResolvedPlugin

DEFAULT_TOOLS: dict[Phase, tuple[str, ...]] = {
    Phase.IMPLEMENT: ("Read", "Write", "Edit", "Bash", "Glob", "Grep", "WebSearch", "Task"),
    Phase.TESTING: ("Read", "Edit", "Bash", "Glob", "Grep", "WebSearch", "Task"),
    Phase.REVIEW: ("Read", "Glob", "Grep", "Bash"),
    Phase.PLANNING: ("Read", "Glob", "Grep", "Bash", "Task"),
}


@dataclass(slots=True)
class ResolvedOptions:
    tools: list[str] = field(default_factory=list)
    allowed_tools: list[str] = field(default_factory=list)
    disallowed_tools: list[str] = field(default_factory=list)
    mcp_servers: dict[str, dict[str, Any]] = field(default_factory=dict)
    plugins: list[ResolvedPlugin] = field(default_factory=list)
    agents: dict[str, AgentDefinition] = field(default_factory=dict)
    setting_sources: list[str] = field(default_factory=list)
    system_prompt_append: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "tools": list(self.tools),
            "allowed_tools": list(self.allowed_tools),
            "disallowed_tools": list(self.disallowed_tools),
            "mcp_servers": {key: dict(value) for key, value in self.mcp_servers.items()},
            "plugins": [plugin.to_dict() for plugin in self.plugins],
            "agents": {key: value.to_dict() for key, value in self.agents.items()},
            "setting_sources": list(self.setting_sources),
            "system_prompt_append": self.system_prompt_append,
        }


def _dedupe(items: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(items))


def merge_phase_capabilities(
    shared: PhaseCapabilities | None, phase: PhaseCapabilities | None
) -> PhaseCapabilities:
    s = shared or PhaseCapabilities()
    p = phase or PhaseCapabilities()
    return PhaseCapabilities(
        tools=list(p.tools) if p.tools is not None else (list(s.tools) if s.tools else None),
        allowed_tools=[*s.allowed_tools, *p.allowed_tools],
        disallowed_tools=[*s.disallowed_tools, *p.disallowed_tools],
        mcp_servers={**s.mcp_servers, **p.mcp_servers},
        plugins=[*s.plugins, *p.plugins],
        agents={**s.agents, **p.agents},
        setting_sources=p.setting_sources or s.setting_sources,
        system_prompt_append=p.system_prompt_append or s.system_prompt_append,
    )


def apply_overrides(
    capabilities: PhaseCapabilities,
    overrides: Sequence[CapabilityOverride],
    phase: Phase,
) -> PhaseCapabilities:
    """Apply session overrides; they only ever narrow what the agent may use."""
    disallowed = list(capabilities.disallowed_tools)
    mcp_servers = dict(capabilities.mcp_servers)
    plugins = list(capabilities.plugins)
    agents = dict(capabilities.agents)
    override_denied: set[str] = set()

    for override in overrides:
        if not override.applies_to(str(phase)):
            continue
        match override.type:
            case "tool":
                if not override.enabled:
                    if override.id not in disallowed:
                        disallowed.append(override.id)
                        override_denied.add(override.id)
                elif override.id in override_denied:
                    # Re-enabling only undoes an earlier override, never a preset deny.
                    disallowed.remove(override.id)
                    override_denied.discard(override.id)
            case "mcpServer":
                if not override.enabled:
                    mcp_servers.pop(override.id, None)
            case "plugin":
                if not override.enabled:
                    plugins = [plugin for plugin in plugins if plugin.identifier != override.id]
            case "agent":
                if not override.enabled:
                    agents.pop(override.id, None)
            case _:
                raise ValueError(f"Unknown capability override type: {override.type!r}")

    return PhaseCapabilities(
        tools=capabilities.tools,
        allowed_tools=list(capabilities.allowed_tools),
        disallowed_tools=disallowed,
        mcp_servers=mcp_servers,
        plugins=plugins,
        agents=agents,
        setting_sources=capabilities.setting_sources,
        system_prompt_append=capabilities.system_prompt_append,
    )


def resolve_capabilities(
    capabilities: CapabilitiesConfig | Preset,
    phase: Phase,
    overrides: Sequence[CapabilityOverride] = (),
    *,
    plugin_resolver: PluginResolver | None = None,
) -> ResolvedOptions:
    """Resolve the agent options for one phase.

    Pure apart from plugin validation, which only skips and warns.
    """
    caps = capabilities.capabilities if isinstance(capabilities, Preset) else capabilities
    phase = Phase(phase)
    merged = merge_phase_capabilities(caps.shared, caps.section(str(phase)))
    if not merged.tools:
        merged.tools = list(DEFAULT_TOOLS[phase])
    if overrides:
        merged = apply_overrides(merged, overrides, phase)

    resolver = plugin_resolver or PluginResolver()
    return ResolvedOptions(
        tools=_dedupe(merged.tools or []),
        allowed_tools=_dedupe(merged.allowed_tools),
        disallowed_tools=_dedupe(merged.disallowed_tools),
        mcp_servers=dict(merged.mcp_servers),
        plugins=resolver.resolve_all(merged.plugins, validate=True) if merged.plugins else [],
        agents=dict(merged.agents),
        setting_sources=list(merged.setting_sources or []),
        system_prompt_append=merged.system_prompt_append,
    )


def available_capabilities(
    capabilities: CapabilitiesConfig | Preset,
    *,
    plugin_resolver: PluginResolver | None = None,
) -> dict[str, Any]:
    caps = capabilities.capabilities if isinstance(capabilities, Preset) else capabilities
    shared = caps.shared or PhaseCapabilities()
    sections = [
        section
        for section in (caps.implement, caps.testing, caps.review, caps.planning)
        if section is not None
    ]

    tools = list(shared.tools or DEFAULT_TOOLS[Phase.IMPLEMENT])
    mcp_servers = list(shared.mcp_servers)
    agents = list(shared.agents)
    plugins = list(shared.plugins)
    for section in sections:
        tools.extend(section.tools or [])
        mcp_servers.extend(section.mcp_servers)
        agents.extend(section.agents)
        plugins.extend(section.plugins)

    plugin_entries: list[dict[str, str]] = []
    seen: set[str] = set()
    for plugin in plugins:
        if plugin.identifier in seen:
            continue
        seen.add(plugin.identifier)
        plugin_entries.append({"type": plugin.type, "id": plugin.identifier})

    listing: dict[str, Any] = {
        "tools": _dedupe(tools),
        "mcp_servers": _dedupe(mcp_servers),
        "plugins": plugin_entries,
        "agents": _dedupe(agents),
    }
    if plugin_resolver is not None:
        listing["installed_plugins"] = {
            "bundled": plugin_resolver.list_bundled(),
            "user": plugin_resolver.list_user(),
        }
    return listing


WRITE_TOOLS = frozenset({"Write", "Edit", "MultiEdit", "NotebookEdit"})


def read_only(options: ResolvedOptions | None) -> ResolvedOptions | None:
    """Strip file-writing tools and explicitly deny Write and Edit."""
    if options is None:
        return None
    return ResolvedOptions(
        tools=[tool for tool in options.tools if tool not in WRITE_TOOLS],
        allowed_tools=[tool for tool in options.allowed_tools if tool not in WRITE_TOOLS],
        disallowed_tools=_dedupe([*options.disallowed_tools, "Write", "Edit"]),
        mcp_servers=dict(options.mcp_servers),
        plugins=list(options.plugins),
        agents=dict(options.agents),
        setting_sources=list(options.setting_sources),
        system_prompt_append=options.system_prompt_append,
    )
