import asyncio
from pathlib import Path

from polish.executor import run_command


def test_run_command_captures_output(tmp_path: Path) -> None:
    result = asyncio.run(run_command("echo hello && echo oops >&2", tmp_path))

    assert result.ok
    assert result.exit_code == 0
    assert result.stdout == "hello"
    assert result.stderr == "oops"
    assert result.timed_out is False


def test_run_command_reports_non_zero_exit(tmp_path: Path) -> None:
    result = asyncio.run(run_command("exit 3", tmp_path))

    assert result.exit_code == 3
    assert not result.ok


def test_run_command_runs_in_cwd_with_extra_env(tmp_path: Path) -> None:
    (tmp_path / "marker.txt").write_text("x", encoding="utf-8")
    result = asyncio.run(
        run_command("ls && echo $POLISH_TEST_VALUE", tmp_path, env={"POLISH_TEST_VALUE": "42"})
    )

    assert "marker.txt" in result.stdout
    assert result.stdout.endswith("42")


def test_run_command_kills_process_group_on_timeout(tmp_path: Path) -> None:
    result = asyncio.run(run_command("sleep 5; echo late", tmp_path, timeout_seconds=0.3))

    assert result.timed_out is True
    assert result.exit_code == -1
    assert "late" not in result.stdout
    assert result.duration_seconds < 4
    assert result.to_dict()["timed_out"] is True
