from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ExecResult:
    command: str
    exit_code: int
    stdout: str
    stderr: str
    timed_out: bool = False
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    def to_dict(self) -> dict[str, Any]:
        return {
            "command": self.command,
            "exit_code": self.exit_code,
            "stdout_tail": self.stdout[-1000:],
            "stderr_tail": self.stderr[-1000:],
            "timed_out": self.timed_out,
            "duration_seconds": round(self.duration_seconds, 3),
        }


def _kill_process_group(process: asyncio.subprocess.Process) -> None:
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        try:
            process.kill()
        except ProcessLookupError:
            pass


async def run_command(
    command: str,
    cwd: Path,
    *,
    timeout_seconds: float = 60.0,
    env: dict[str, str] | None = None,
) -> ExecResult:
    """Run a shell command in its own process group.

    On timeout the whole group is killed and the result carries exit code -1.
    Spawn failures are reported the same way instead of raising.
    """
    started = time.monotonic()
    try:
        process = await asyncio.create_subprocess_shell(
            command,
            cwd=str(cwd),
            env={**os.environ, **(env or {})},
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
    except OSError as exc:
        return ExecResult(
            command=command,
            exit_code=-1,
            stdout="",
            stderr=str(exc),
            duration_seconds=time.monotonic() - started,
        )

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout_seconds)
    except TimeoutError:
        logger.warning("Command timed out after %.1fs: %s", timeout_seconds, command)
        _kill_process_group(process)
        await process.wait()
        return ExecResult(
            command=command,
            exit_code=-1,
            stdout="",
            stderr=f"Command timed out after {timeout_seconds:g}s",
            timed_out=True,
            duration_seconds=time.monotonic() - started,
        )
    except asyncio.CancelledError:
        _kill_process_group(process)
        raise

    return ExecResult(
        command=command,
        exit_code=process.returncode if process.returncode is not None else -1,
        stdout=stdout.decode("utf-8", errors="replace").strip(),
        stderr=stderr.decode("utf-8", errors="replace").strip(),
        duration_seconds=time.monotonic() - started,
    )
