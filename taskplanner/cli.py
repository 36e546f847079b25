"""
taskplanner CLI

Operator commands:
  - taskplanner init      (start an orchestration in a project)
  - taskplanner plan      (install the decomposed task list)
  - taskplanner status    (phase, waves, tasks)
  - taskplanner gate      (run the wave gate and advance)
  - taskplanner skip      (skip brainstorm or clarify)
  - taskplanner reset     (delete the task graph)
  - taskplanner unlock    (clear a lock left by a dead process)

Agent runtime hooks (JSON on stdin):
  - taskplanner hook pre-tool-use
  - taskplanner hook subagent-stop
  - taskplanner hook stop
"""

from __future__ import annotations

import json
import os
import sys
from pathlib import Path
from typing import Optional

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from taskplanner.audit_logger import AuditLogger
from taskplanner.config_loader import PlannerConfig, load_config
from taskplanner.event_bus import EventBus
from taskplanner.evidence import read_transcript
from taskplanner.execution import ready_tasks, remaining_tasks
from taskplanner.handlers import EventHandlers, HookDecision
from taskplanner.identity import BANNER, __codename__, __tagline__, __version__
from taskplanner.issue_sync import GitHubIssueSync
from taskplanner.lock import DirLock, LockTimeout
from taskplanner.phases import InvalidTransition, skip_phase
from taskplanner.plan import PlanError, apply_plan, load_plan
from taskplanner.sessions import SessionRegistry
from taskplanner.state import TaskGraph
from taskplanner.store import FileStore, NoActiveGraph, StateCorrupted
from taskplanner.wave_gate import GateCheckFailure, WaveGateController
from taskplanner.workspace import Workspace

app = typer.Typer(
    name="taskplanner",
    help=f"{__codename__} — {__tagline__}\nPhase and wave enforcement for agent orchestration.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)
hook_app = typer.Typer(help="Agent runtime hooks. Read the event as JSON on stdin.")
app.add_typer(hook_app, name="hook")

console = Console()

STATUS_COLORS = {
    "pending": "dim",
    "in_progress": "cyan",
    "implemented": "yellow",
    "completed": "green",
    "failed": "red",
    "passed": "green",
    "blocked": "red",
    "evidence_capture_failed": "red",
}


def version_callback(value: bool):
    if value:
        console.print(f"{__codename__} v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
):
    pass


# ---------------------------------------------------------------------------
# Banner
# ---------------------------------------------------------------------------


def _print_banner():
    console.print(f"[bright_green]{BANNER}[/]")
    console.print(f"  [dim]v{__version__} — {__tagline__}[/]\n")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@app.command()
def init(
    repo: Optional[Path] = typer.Option(None, "--repo", "-r", help="Project directory (default: cwd)"),
    title: str = typer.Option("", "--title", help="Orchestration title"),
    spec_file: str = typer.Option("", "--spec-file", help="Existing spec artifact, relative to the project"),
    issue: Optional[int] = typer.Option(None, "--issue", "-i", help="GitHub issue tracking the work"),
    github_repo: Optional[str] = typer.Option(None, "--github-repo", help="owner/name, if not the checkout's remote"),
    force: bool = typer.Option(False, "--force", help="Replace an existing task graph"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Start an orchestration: create the task graph in the init phase."""
    _print_banner()
    _configure_logging(verbose)
    project, config, store = _open(repo)

    if store.exists() and not force:
        console.print(f"[red]A task graph already exists at {store.path}[/]")
        console.print("[dim]Use --force to replace it, or `taskplanner reset`.[/]")
        raise typer.Exit(1)

    for d in (config.paths.specs_dir, config.paths.plans_dir):
        (project / d).mkdir(parents=True, exist_ok=True)

    graph = TaskGraph(title=title, github_issue=issue, github_repo=github_repo)
    if spec_file:
        graph.spec_file = spec_file
    store.replace(graph)

    gitignore = project / ".gitignore"
    entry = f"{config.paths.log_dir}/"
    if gitignore.exists():
        if entry not in gitignore.read_text():
            with open(gitignore, "a") as f:
                f.write(f"\n# taskplanner\n{entry}\n")
    else:
        gitignore.write_text(f"# taskplanner\n{entry}\n")

    console.print(f"[green]✅ Orchestration started[/] {title}")
    console.print(f"  State: {store.path}")
    console.print(f"  Specs: {project / config.paths.specs_dir}")
    console.print(f"  Plans: {project / config.paths.plans_dir}")


@app.command()
def plan(
    plan_file: Path = typer.Argument(..., help="Task list YAML produced by the decompose phase"),
    repo: Optional[Path] = typer.Option(None, "--repo", "-r"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Install the decomposed task list into the active graph."""
    _configure_logging(verbose)
    _, _, store = _open(repo)

    try:
        tasks = load_plan(plan_file)
        graph = store.update(lambda g: apply_plan(g, tasks))
    except PlanError as e:
        console.print(f"[red]{e}[/]")
        raise typer.Exit(1)
    except NoActiveGraph:
        console.print("[red]No active task graph. Run `taskplanner init` first.[/]")
        raise typer.Exit(1)

    console.print(
        f"[green]✅ Planned {len(graph.tasks)} tasks in {len(graph.wave_gates)} wave(s)[/] "
        f"— starting at wave {graph.current_wave}"
    )


@app.command()
def status(
    repo: Optional[Path] = typer.Option(None, "--repo", "-r"),
    as_json: bool = typer.Option(False, "--json", help="Print the raw task graph"),
):
    """Show phase, wave gates and task status."""
    _configure_logging(False)
    _, _, store = _open(repo)
    graph = _load_or_exit(store)

    if as_json:
        typer.echo(graph.to_json())
        return

    console.print(f"[bold]{graph.title or 'Orchestration'}[/]")
    console.print(f"  Phase:    [cyan]{graph.current_phase}[/]")
    console.print(f"  Wave:     {graph.current_wave} of {graph.max_wave or '-'}")
    if graph.current_phase == "execute" and graph.tasks:
        remaining = remaining_tasks(graph)
        ready = [t.id for t in ready_tasks(graph)]
        console.print(f"  Open:     {', '.join(remaining) or 'none'}")
        console.print(f"  Ready:    {', '.join(ready) or 'none'}")
    if graph.skipped_phases:
        console.print(f"  Skipped:  {', '.join(graph.skipped_phases)}")
    for phase, artifact in graph.phase_artifacts.items():
        console.print(f"  {phase + ':':<9} [dim]{artifact}[/]")
    if graph.github_issue:
        console.print(f"  Issue:    #{graph.github_issue}")

    if graph.tasks:
        task_table = Table(title="Tasks", border_style="cyan")
        for col in ("ID", "Wave", "Agent", "Status", "Tests", "New tests", "Review", "Critical"):
            task_table.add_column(col)
        for t in graph.tasks:
            task_table.add_row(
                t.id,
                str(t.wave),
                t.agent,
                _colored(t.status),
                "[green]✓[/]" if t.tests_passed else "[dim]✗[/]",
                "[dim]n/a[/]" if t.new_tests_required is False else ("[green]✓[/]" if t.new_tests_written else "[dim]✗[/]"),
                _colored(t.review_status),
                str(len(t.critical_findings)) if t.critical_findings else "",
            )
        console.print(task_table)

    if graph.wave_gates:
        gate_table = Table(title="Wave gates", border_style="magenta")
        for col in ("Wave", "Implemented", "Tests", "Reviews", "Blocked", "Checked"):
            gate_table.add_column(col)
        for wave, gate in sorted(graph.wave_gates.items(), key=lambda kv: int(kv[0])):
            gate_table.add_row(
                wave,
                "✓" if gate.impl_complete else "",
                {True: "✓", False: "[red]✗[/]", None: ""}[gate.tests_passed],
                "✓" if gate.reviews_complete else "",
                "[red]BLOCKED[/]" if gate.blocked else "",
                gate.checked_at or "",
            )
        console.print(gate_table)

    if graph.spec_check:
        sc = graph.spec_check
        console.print(
            f"\n[bold]Spec check[/] (wave {sc.wave}): {_colored(sc.verdict.lower())} "
            f"— {sc.critical_count} critical, {sc.high_count} high"
        )


@app.command()
def gate(
    repo: Optional[Path] = typer.Option(None, "--repo", "-r"),
    no_sync: bool = typer.Option(False, "--no-sync", help="Do not update the GitHub issue"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Run the wave gate for the current wave and advance on success."""
    _configure_logging(verbose)
    project, config, store = _open(repo)
    graph = _load_or_exit(store)

    bus = _audit_bus(project, config)
    sync = None if no_sync else GitHubIssueSync(project, graph.github_repo)
    try:
        result = WaveGateController(store, issue_sync=sync, bus=bus).complete()
    except GateCheckFailure as e:
        console.print(f"[red]{e}[/]")
        raise typer.Exit(1)
    except LockTimeout as e:
        console.print(f"[red]{e}[/]")
        raise typer.Exit(1)

    for warning in result.report.warnings:
        console.print(f"[yellow]⚠ {warning}[/]")
    console.print(f"[green]✅ {result.report.message}[/] Completed: {', '.join(result.completed)}")
    if result.all_complete:
        console.print("[bold green]🎉 All waves complete.[/]")
    else:
        console.print(f"  Next: wave {result.graph.current_wave}")


@app.command()
def skip(
    phase: str = typer.Argument(..., help="Phase to skip: brainstorm or clarify"),
    repo: Optional[Path] = typer.Option(None, "--repo", "-r"),
):
    """Mark an optional phase as skipped."""
    _configure_logging(False)
    _, _, store = _open(repo)
    _load_or_exit(store)
    try:
        store.update(lambda g: skip_phase(g, phase))
    except (InvalidTransition, LockTimeout) as e:
        console.print(f"[red]{e}[/]")
        raise typer.Exit(1)
    console.print(f"[green]Skipped {phase}[/]")


@app.command()
def reset(
    repo: Optional[Path] = typer.Option(None, "--repo", "-r"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
):
    """Delete the task graph. This ends the orchestration."""
    _configure_logging(False)
    _, _, store = _open(repo)
    if not store.path.exists():
        console.print("[dim]No task graph to reset.[/]")
        return
    if not yes:
        typer.confirm(f"Delete {store.path}?", abort=True)
    try:
        store.delete()
    except LockTimeout as e:
        console.print(f"[red]{e}[/]")
        raise typer.Exit(1)
    console.print("[green]Task graph deleted.[/]")


@app.command()
def unlock(
    repo: Optional[Path] = typer.Option(None, "--repo", "-r"),
):
    """Remove the state lock left behind by a killed process."""
    _configure_logging(False)
    project, config = _project(repo)
    lock = DirLock(config.lock_path(config.state_path(project)))
    if lock.breaker_path.exists():
        lock.breaker_path.rmdir()
        console.print(f"[green]Stale-lock breaker removed: {lock.breaker_path}[/]")
    if not lock.is_held:
        console.print("[dim]No lock held.[/]")
        return
    holder = lock.holder()
    if holder and _pid_alive(holder):
        console.print(f"[yellow]⚠ Lock is held by running pid {holder}; removing anyway.[/]")
    lock.release()
    console.print(f"[green]Lock removed: {lock.path}[/]")


# ---------------------------------------------------------------------------
# Hooks
# ---------------------------------------------------------------------------

@hook_app.command("pre-tool-use")
def hook_pre_tool_use():
    """Allow or block a tool call (exit 2 blocks, reason on stderr)."""
    payload = _read_payload()
    handlers = _hook_handlers(payload)
    _finish(
        lambda: handlers.pre_tool_use(payload.get("tool_name") or "", payload.get("tool_input") or {}),
        blocking=True,
    )


@hook_app.command("subagent-stop")
def hook_subagent_stop():
    """Record what a finished subagent did."""
    payload = _read_payload()
    handlers = _hook_handlers(payload)
    transcript = read_transcript(payload.get("agent_transcript_path") or payload.get("transcript_path"))
    agent_type = payload.get("agent_type") or payload.get("subagent_type")
    _finish(lambda: handlers.subagent_stop(transcript, agent_type, payload.get("task_id")))


@hook_app.command("stop")
def hook_stop():
    """Record phase completion from the orchestrator's last message."""
    payload = _read_payload()
    handlers = _hook_handlers(payload)
    content = payload.get("last_assistant_message") or read_transcript(
        payload.get("transcript_path"), last_only=True
    )
    _finish(lambda: handlers.assistant_message(content))


def _read_payload() -> dict:
    raw = sys.stdin.read()
    try:
        payload = json.loads(raw) if raw.strip() else {}
    except json.JSONDecodeError as e:
        typer.echo(f"taskplanner: invalid hook input: {e}", err=True)
        raise typer.Exit(1)
    return payload if isinstance(payload, dict) else {}


def _hook_handlers(payload: dict) -> EventHandlers:
    """Build handlers for the project that owns this session's task graph."""
    cwd = Path(payload.get("cwd") or os.getcwd())
    config = load_config(cwd)
    session_id = payload.get("session_id")
    registry = SessionRegistry(
        config.session_dir(), config.lock.max_attempts, config.lock.retry_interval
    )

    local = config.state_path(cwd)
    state_path = registry.resolve_graph(session_id, local) or local
    project = _project_of(state_path, config) if state_path != local else cwd
    if project != cwd:
        config = load_config(project)

    active = state_path.exists()
    _configure_hook_logging(project, config, active)
    bus = _audit_bus(project, config) if active else None

    return EventHandlers(
        FileStore.from_config(state_path, config),
        project,
        config=config,
        session_id=session_id,
        registry=registry,
        workspace=Workspace(project),
        bus=bus,
    )


def _finish(run, blocking: bool = False) -> None:
    try:
        decision: HookDecision = run()
    except (LockTimeout, StateCorrupted, NoActiveGraph) as e:
        logger.error(f"[HOOK] {e}")
        typer.echo(f"taskplanner: {e}", err=True)
        raise typer.Exit(2 if blocking else 1)

    for message in decision.messages:
        typer.echo(message)
    if not decision.allowed:
        typer.echo(decision.reason, err=True)
        raise typer.Exit(2)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _project(repo: Optional[Path]) -> tuple[Path, PlannerConfig]:
    project = (repo or Path.cwd()).resolve()
    return project, load_config(project)


def _open(repo: Optional[Path]) -> tuple[Path, PlannerConfig, FileStore]:
    project, config = _project(repo)
    return project, config, FileStore.from_config(config.state_path(project), config)


def _project_of(state_path: Path, config: PlannerConfig) -> Path:
    """Strip the configured state directory back off a state document path."""
    project = state_path.parent
    for _ in Path(config.paths.state_dir).parts:
        project = project.parent
    return project


def _load_or_exit(store: FileStore) -> TaskGraph:
    try:
        graph = store.load()
    except StateCorrupted as e:
        console.print(f"[red]{e}[/]")
        raise typer.Exit(1)
    if graph is None:
        console.print("[red]No active task graph. Run `taskplanner init` first.[/]")
        raise typer.Exit(1)
    return graph


def _audit_bus(project: Path, config: PlannerConfig) -> EventBus:
    bus = EventBus()
    AuditLogger(str(config.log_dir(project) / "audit.jsonl"), bus)
    return bus


def _colored(value: str) -> str:
    color = STATUS_COLORS.get(value, "white")
    return f"[{color}]{value}[/]"


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _configure_logging(verbose: bool) -> None:
    logger.remove()
    if verbose:
        logger.add(
            lambda msg: console.print(f"[dim]{msg}[/]", highlight=False),
            level="DEBUG",
            format="{time:HH:mm:ss} | {level:<7} | {message}",
        )
    else:
        logger.add(
            lambda msg: console.print(f"[dim]{msg}[/]", highlight=False),
            level="WARNING",
            format="{message}",
        )


def _configure_hook_logging(project: Path, config: PlannerConfig, active: bool) -> None:
    """stdout and stderr belong to the agent runtime; hooks log to a file."""
    logger.remove()
    if not active:
        return
    log_dir = config.log_dir(project)
    log_dir.mkdir(parents=True, exist_ok=True)
    logger.add(
        log_dir / "taskplanner.log",
        level="DEBUG",
        format="{time:YYYY-MM-DD HH:mm:ss} | {level:<7} | {process} | {message}",
        rotation="1 MB",
        retention=3,
    )


# ---------------------------------------------------------------------------
# Entry
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    app()
