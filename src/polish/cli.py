from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

import click

from polish import __version__
from polish.backends import AgentBackend, ClaudeCodeBackend
from polish.capabilities import available_capabilities, resolve_capabilities
from polish.config import (
    CapabilityOverride,
    IsolationConfig,
    Preset,
    RetryConfig,
    SessionConfig,
    detect_stack,
    load_preset,
    save_preset,
    starter_preset,
)
from polish.errors import PolishError
from polish.events import Event, EventChannel, EventType
from polish.models import Phase, Plan, SessionStatus
from polish.orchestrator import Orchestrator, SessionOutcome
from polish.planner import PlanDecision, PlanningContext
from polish.plugins import PluginResolver
from polish.scorer import score_preset
from polish.store import DEFAULT_DB_PATH, SessionStore
from polish.summary import SummaryGenerator
from polish.worktree import generate_session_id

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _build_backend(preset: Preset) -> AgentBackend:
    return ClaudeCodeBackend(
        preset.agent.binary,
        model=preset.agent.model,
        timeout_seconds=preset.agent.timeout_seconds,
    )


def _build_summarizer() -> SummaryGenerator:
    return SummaryGenerator()


def _load_preset(project: Path, preset_value: str | None) -> Preset:
    preset_path = None
    if preset_value:
        preset_path = Path(preset_value)
        if not preset_path.is_absolute():
            preset_path = project / preset_path
    try:
        return load_preset(project, preset_path)
    except PolishError as exc:
        raise click.ClickException(str(exc)) from exc
    except (TypeError, ValueError) as exc:
        raise click.ClickException(f"Invalid preset: {exc}") from exc


def _open_store(db: str) -> SessionStore:
    return SessionStore(db)


def _format_event(event: Event) -> str | None:
    data = event.data
    match event.type:
        case EventType.PHASE:
            suffix = f" (iteration {data['iteration']})" if data.get("iteration") else ""
            return f"==> {data.get('phase')}{suffix}"
        case EventType.STATUS:
            return f"    {data.get('message')}"
        case EventType.INIT:
            return f"    Baseline score: {data.get('initial_score', 0):.1f}"
        case EventType.SCORE:
            delta = data.get("delta")
            suffix = f" ({delta:+.1f})" if delta is not None else ""
            return f"    Score: {data.get('score', 0):.1f}{suffix}"
        case EventType.STRATEGY:
            return f"    Strategy {data.get('name')} -> {data.get('metric')}"
        case EventType.COMMIT:
            return f"    Commit {str(data.get('hash'))[:10]} {data.get('message')}"
        case EventType.ROLLBACK:
            return f"    Rollback {data.get('failed_strategy')}: {data.get('reason')}"
        case EventType.IMPLEMENT_DONE:
            return f"    {data.get('message')}"
        case EventType.REVIEW_RESULT:
            return f"    [{data.get('agent')}] {data.get('verdict')}"
        case EventType.REVIEW_REDIRECT:
            return f"    Review redirects to {data.get('redirect_to')}"
        case EventType.WORKTREE_CREATED:
            return f"    Worktree {data.get('worktree_path')} on {data.get('branch_name')}"
        case EventType.WORKTREE_CLEANUP:
            kept = "kept" if data.get("kept") else "deleted"
            return f"    Branch {data.get('branch_name')} {kept}"
        case EventType.PLAN:
            return Plan.from_dict(data).to_markdown()
        case EventType.SESSION_SUMMARY:
            return f"    {data.get('overview')}"
        case EventType.ERROR:
            return f"!!  {data.get('message')}"
        case _:
            return None


def _event_printer(json_output: bool) -> Any:
    def _print(event: Event) -> None:
        if json_output:
            click.echo(event.to_json())
            return
        line = _format_event(event)
        if line:
            click.echo(line)

    return _print


def _prompt_plan(plan: Plan, context: PlanningContext) -> PlanDecision:
    choice = click.prompt(
        "Approve this plan?",
        type=click.Choice(["approve", "revise", "reject"]),
        default="approve",
    )
    if choice == "approve":
        return PlanDecision.approve()
    if choice == "revise":
        return PlanDecision.revise(click.prompt("What should change?"))
    return PlanDecision.reject()


def _execute_session(
    session: SessionConfig,
    preset: Preset,
    store: SessionStore,
    *,
    session_id: str,
    json_output: bool,
    interactive_plan: bool,
) -> SessionOutcome:
    channel = EventChannel(session_id)
    channel.add_sink(_event_printer(json_output))
    orchestrator = Orchestrator(
        session,
        preset,
        _build_backend(preset),
        channel=channel,
        store=store,
        approve_plan=_prompt_plan if interactive_plan else None,
        summarizer=_build_summarizer(),
        session_id=session_id,
    )
    return asyncio.run(orchestrator.run())


def _report(outcome: SessionOutcome, json_output: bool) -> None:
    if json_output:
        click.echo(json.dumps(outcome.to_dict(), ensure_ascii=False))
    else:
        click.echo(f"Session: {outcome.session_id}")
        click.echo(f"Status: {outcome.status} ({outcome.stopped_reason})")
        if outcome.initial_score is not None:
            click.echo(f"Score: {outcome.initial_score:.1f} -> {outcome.final_score or 0:.1f}")
        click.echo(f"Commits: {len(outcome.commits)}")
        if outcome.branch_name:
            click.echo(f"Branch: {outcome.branch_name}")
    if outcome.status is SessionStatus.FAILED:
        raise click.exceptions.Exit(1)


@click.group()
@click.version_option(__version__, prog_name="polish")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """Polish: autonomous, metric-driven code improvement."""
    logging.basicConfig(level=logging.DEBUG if verbose else logging.WARNING, format=LOG_FORMAT)


db_option = click.option(
    "--db",
    default=str(DEFAULT_DB_PATH),
    envvar="POLISH_DB",
    show_default=True,
    help="Session database path.",
)


@cli.command("init")
@click.option("--project", default=".", type=click.Path(file_okay=False, path_type=Path))
@click.option("--force", is_flag=True, default=False, help="Overwrite an existing polish.toml.")
def init_command(project: Path, force: bool) -> None:
    project = project.resolve()
    preset_path = project / "polish.toml"
    if preset_path.exists() and not force:
        raise click.ClickException(f"{preset_path} already exists (use --force to overwrite)")
    stack = detect_stack(project)
    save_preset(preset_path, starter_preset(stack))
    click.echo(f"Detected stack: {stack}")
    click.echo(f"Wrote {preset_path}")


@cli.command("run")
@click.argument("mission", required=False)
@click.option("--project", default=".", type=click.Path(file_okay=False, path_type=Path))
@click.option("--preset", "preset_value", default=None, help="Preset file (default: polish.toml).")
@click.option("--max-duration", type=float, default=7200.0, show_default=True, help="Seconds.")
@click.option("--max-iterations", type=int, default=100, show_default=True)
@click.option("--max-stalled", type=int, default=5, show_default=True)
@click.option("--target-score", type=float, default=100.0, show_default=True)
@click.option("--max-review-iterations", type=int, default=3, show_default=True)
@click.option("--no-isolation", is_flag=True, default=False, help="Work in the project itself.")
@click.option("--base-branch", default=None)
@click.option("--plan", "enable_planning", is_flag=True, default=False)
@click.option("--auto-approve", is_flag=True, default=False, help="Approve plans unattended.")
@click.option("--disable-tool", "disabled_tools", multiple=True, help="Deny a tool in every phase.")
@click.option("--json", "json_output", is_flag=True, default=False)
@db_option
def run_command(
    mission: str | None,
    project: Path,
    preset_value: str | None,
    max_duration: float,
    max_iterations: int,
    max_stalled: int,
    target_score: float,
    max_review_iterations: int,
    no_isolation: bool,
    base_branch: str | None,
    enable_planning: bool,
    auto_approve: bool,
    disabled_tools: tuple[str, ...],
    json_output: bool,
    db: str,
) -> None:
    project = project.resolve()
    preset = _load_preset(project, preset_value)
    session = SessionConfig(
        project_path=project,
        mission=mission,
        max_duration_seconds=max_duration,
        max_iterations=max_iterations,
        max_stalled=max_stalled,
        target_score=target_score,
        isolation=IsolationConfig(enabled=not no_isolation),
        capability_overrides=[
            CapabilityOverride(type="tool", id=tool, enabled=False) for tool in disabled_tools
        ],
        enable_planning=enable_planning,
        max_review_iterations=max_review_iterations,
        base_branch=base_branch,
    )
    session_id = generate_session_id()
    with _open_store(db) as store:
        store.create_session(project, session.mission, session_id=session_id)
        try:
            outcome = _execute_session(
                session,
                preset,
                store,
                session_id=session_id,
                json_output=json_output,
                interactive_plan=enable_planning and not auto_approve,
            )
        except PolishError as exc:
            raise click.ClickException(str(exc)) from exc
    _report(outcome, json_output)


@cli.command("retry")
@click.argument("session_id")
@click.option("--feedback", required=True, help="What the next attempt should do differently.")
@click.option("--preset", "preset_value", default=None)
@click.option("--json", "json_output", is_flag=True, default=False)
@db_option
def retry_command(
    session_id: str, feedback: str, preset_value: str | None, json_output: bool, db: str
) -> None:
    with _open_store(db) as store:
        try:
            previous = store.get_session(session_id)
        except PolishError as exc:
            raise click.ClickException(str(exc)) from exc
        if not previous.status.terminal:
            raise click.ClickException(f"Session {session_id} is still {previous.status}")
        if not previous.branch_name:
            raise click.ClickException(f"Session {session_id} has no branch to retry from")

        project = Path(previous.project_path)
        preset = _load_preset(project, preset_value)
        retry_count = previous.retry_count + 1
        session = SessionConfig(
            project_path=project,
            mission=previous.mission,
            isolation=IsolationConfig(enabled=True, existing_branch=previous.branch_name),
            retry=RetryConfig(feedback=feedback, retry_count=retry_count),
        )
        new_id = generate_session_id()
        store.create_session(
            project,
            previous.mission,
            session_id=new_id,
            retry_of=previous.id,
            retry_count=retry_count,
        )
        try:
            outcome = _execute_session(
                session,
                preset,
                store,
                session_id=new_id,
                json_output=json_output,
                interactive_plan=False,
            )
        except PolishError as exc:
            raise click.ClickException(str(exc)) from exc
    _report(outcome, json_output)


@cli.command("sessions")
@click.option("--limit", type=int, default=20, show_default=True)
@db_option
def sessions_command(limit: int, db: str) -> None:
    with _open_store(db) as store:
        records = store.list_sessions(limit=limit)
    if not records:
        click.echo("No sessions found.")
        return
    for record in records:
        score = f"{record.final_score:.1f}" if record.final_score is not None else "-"
        mission = record.mission or "(polish only)"
        click.echo(f"{record.id}  {record.status:<17} {score:>6}  {mission}")


@cli.command("show")
@click.argument("session_id")
@db_option
def show_command(session_id: str, db: str) -> None:
    with _open_store(db) as store:
        try:
            record = store.get_session(session_id)
        except PolishError as exc:
            raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps(record.to_dict(), ensure_ascii=False, indent=2))


@cli.command("events")
@click.argument("session_id")
@click.option("--after", "after_id", type=int, default=0, help="Only events after this id.")
@click.option("--type", "event_type", type=click.Choice([str(item) for item in EventType]))
@db_option
def events_command(session_id: str, after_id: int, event_type: str | None, db: str) -> None:
    with _open_store(db) as store:
        try:
            store.get_session(session_id)
        except PolishError as exc:
            raise click.ClickException(str(exc)) from exc
        events = store.get_events(session_id, after_id=after_id)
    for event in events:
        if event_type and event["type"] != event_type:
            continue
        click.echo(json.dumps(event, ensure_ascii=False))


@cli.command("capabilities")
@click.option("--project", default=".", type=click.Path(file_okay=False, path_type=Path))
@click.option("--preset", "preset_value", default=None)
@click.option("--phase", type=click.Choice([str(phase) for phase in Phase]), default=None)
def capabilities_command(project: Path, preset_value: str | None, phase: str | None) -> None:
    preset = _load_preset(project.resolve(), preset_value)
    if phase is None:
        payload = available_capabilities(preset, plugin_resolver=PluginResolver())
    else:
        payload = resolve_capabilities(preset, Phase(phase)).to_dict()
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("score")
@click.option("--project", default=".", type=click.Path(file_okay=False, path_type=Path))
@click.option("--preset", "preset_value", default=None)
def score_command(project: Path, preset_value: str | None) -> None:
    project = project.resolve()
    preset = _load_preset(project, preset_value)
    snapshot = asyncio.run(score_preset(preset, project))
    for metric in snapshot.metrics:
        click.echo(f"{metric.name:<24} {metric.raw_value:>10g} {metric.score:>6.1f}  w={metric.weight:g}")
    click.echo(f"Composite score: {snapshot.score:.1f}")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
