from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from typing import Any

from polish.backends.base import (
    AgentBackend,
    AgentExecutionError,
    AgentMessage,
    AgentProcessError,
    AgentRequest,
    AgentTimeoutError,
)

logger = logging.getLogger(__name__)

STREAM_LIMIT = 2**24


class ClaudeCodeBackend(AgentBackend):
    """Drives the Claude Code CLI in headless stream-json mode."""

    name = "claude"

    def __init__(
        self,
        binary: str = "claude",
        *,
        model: str | None = None,
        timeout_seconds: float = 1800.0,
    ) -> None:
        self.binary = binary
        self.model = model
        self.timeout_seconds = timeout_seconds

    def build_command(self, request: AgentRequest) -> list[str]:
        command = [
            self.binary,
            "-p",
            request.prompt,
            "--output-format",
            "stream-json",
            "--verbose",
            "--max-turns",
            str(request.max_turns),
        ]
        if request.resume_session_id:
            command.extend(["--resume", request.resume_session_id])
        model = request.model or self.model
        if model:
            command.extend(["--model", model])
        if request.permission_mode:
            command.extend(["--permission-mode", request.permission_mode])

        append_parts = [request.system_prompt or ""]
        options = request.options
        if options is not None:
            if options.tools:
                command.extend(["--tools", ",".join(options.tools)])
            allowed = list(dict.fromkeys([*options.tools, *options.allowed_tools]))
            if allowed:
                command.extend(["--allowedTools", ",".join(allowed)])
            if options.disallowed_tools:
                command.extend(["--disallowedTools", ",".join(options.disallowed_tools)])
            if options.mcp_servers:
                command.extend(
                    ["--mcp-config", json.dumps({"mcpServers": options.mcp_servers})]
                )
            if options.agents:
                command.extend(
                    [
                        "--agents",
                        json.dumps(
                            {key: value.to_dict() for key, value in options.agents.items()}
                        ),
                    ]
                )
            for plugin in options.plugins:
                command.extend(["--plugin-dir", plugin.path])
            if options.setting_sources:
                command.extend(["--setting-sources", ",".join(options.setting_sources)])
            append_parts.append(options.system_prompt_append or "")

        append = "\n\n".join(part.strip() for part in append_parts if part and part.strip())
        if append:
            command.extend(["--append-system-prompt", append])
        return command

    @staticmethod
    def _appears_partial_json(raw: str) -> bool:
        return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")

    @staticmethod
    def _tool_output(content: Any) -> str:
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            parts: list[str] = []
            for item in content:
                if isinstance(item, dict) and isinstance(item.get("text"), str):
                    parts.append(item["text"])
            return "\n".join(parts)
        if content is None:
            return ""
        return json.dumps(content, ensure_ascii=False)

    def parse_event(
        self, event: dict[str, Any], tool_names: dict[str, str]
    ) -> list[AgentMessage]:
        """Translate one stream-json event into agent messages.

        ``tool_names`` maps tool_use ids to tool names so results can be attributed.
        """
        event_type = event.get("type")
        session_id = event.get("session_id")
        messages: list[AgentMessage] = []

        if event_type == "assistant":
            content = (event.get("message") or {}).get("content") or []
            for block in content:
                if not isinstance(block, dict):
                    continue
                block_type = block.get("type")
                if block_type == "text" and block.get("text"):
                    messages.append(
                        AgentMessage(kind="text", text=block["text"], session_id=session_id)
                    )
                elif block_type == "thinking" and block.get("thinking"):
                    messages.append(
                        AgentMessage(
                            kind="thinking", text=block["thinking"], session_id=session_id
                        )
                    )
                elif block_type == "tool_use":
                    tool_use_id = str(block.get("id") or "")
                    tool = str(block.get("name") or "unknown")
                    tool_names[tool_use_id] = tool
                    tool_input = block.get("input")
                    messages.append(
                        AgentMessage(
                            kind="tool_pre",
                            tool=tool,
                            tool_input=tool_input if isinstance(tool_input, dict) else {},
                            tool_use_id=tool_use_id,
                            session_id=session_id,
                        )
                    )
        elif event_type == "user":
            content = (event.get("message") or {}).get("content") or []
            if isinstance(content, list):
                for block in content:
                    if not isinstance(block, dict) or block.get("type") != "tool_result":
                        continue
                    tool_use_id = str(block.get("tool_use_id") or "")
                    messages.append(
                        AgentMessage(
                            kind="tool_post",
                            tool=tool_names.get(tool_use_id, "unknown"),
                            tool_output=self._tool_output(block.get("content")),
                            tool_use_id=tool_use_id,
                            session_id=session_id,
                        )
                    )
        elif event_type == "result":
            result = event.get("result")
            messages.append(
                AgentMessage(
                    kind="result",
                    text=result if isinstance(result, str) else "",
                    subtype=str(event.get("subtype") or "success"),
                    session_id=session_id,
                    raw=event,
                )
            )
        elif event_type == "system":
            messages.append(
                AgentMessage(
                    kind="system",
                    subtype=event.get("subtype"),
                    session_id=session_id,
                    raw=event,
                )
            )
        return messages

    async def execute(self, request: AgentRequest) -> AsyncIterator[AgentMessage]:
        command = self.build_command(request)
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(request.cwd),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT,
            )
        except FileNotFoundError as exc:
            raise AgentProcessError(
                f"Claude binary not found: {self.binary}",
                backend=self.name,
                retriable=False,
            ) from exc

        if process.stdout is None:
            raise AgentProcessError(
                "Claude backend did not expose stdout.", backend=self.name, retriable=False
            )

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout_seconds
        tool_names: dict[str, str] = {}
        saw_result = False
        parse_buffer = ""
        try:
            while True:
                remaining = max(0.0, deadline - loop.time())
                try:
                    raw_line = await asyncio.wait_for(process.stdout.readline(), timeout=remaining)
                except TimeoutError as exc:
                    raise AgentTimeoutError(
                        f"Claude backend timed out after {self.timeout_seconds:g}s",
                        backend=self.name,
                        retriable=True,
                    ) from exc
                if not raw_line:
                    break
                line = raw_line.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                candidate = f"{parse_buffer}{line}" if parse_buffer else line
                try:
                    event = json.loads(candidate)
                    parse_buffer = ""
                except json.JSONDecodeError:
                    if self._appears_partial_json(candidate):
                        parse_buffer = candidate
                        continue
                    parse_buffer = ""
                    logger.debug("Ignoring non-JSON agent output: %s", line[:200])
                    continue
                if not isinstance(event, dict):
                    continue
                for message in self.parse_event(event, tool_names):
                    if message.kind == "result":
                        saw_result = True
                    yield message

            return_code = await process.wait()
            stderr_output = ""
            if process.stderr is not None:
                stderr_output = (
                    (await process.stderr.read()).decode("utf-8", errors="replace").strip()
                )
            if return_code != 0 and not saw_result:
                raise AgentExecutionError(
                    f"Claude backend failed with exit code {return_code}: {stderr_output}",
                    backend=self.name,
                    exit_code=return_code,
                    retriable=True,
                )
        finally:
            if process.returncode is None:
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
                await process.wait()
