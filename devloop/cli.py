"""CLI for devloop.

Provides the driving loop command plus status and task maintenance commands.
"""

import asyncio
import logging
import os
import signal
import sys
import time

import click
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm
from rich.table import Table

from devloop.agent import AgentRunner
from devloop.apply import EditApplier
from devloop.collaborators import CommandTestRunner, PatternLogAnalyzer
from devloop.config import DevloopConfig
from devloop.errors import DevloopError
from devloop.lock import RunLock, is_process_running
from devloop.models import EditSet, RunResult, Task
from devloop.sessions import SessionStore
from devloop.state import StateLedger
from devloop.tasks import LedgerTaskSource
from devloop.telemetry import create_metrics, setup_telemetry
from devloop.workflow import FATAL_CATEGORIES, WorkflowEngine

console = Console()


@click.group()
@click.version_option(package_name="devloop")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
def cli(verbose: bool) -> None:
    """Devloop - Autonomous generate, apply, test and retry loop."""
    logging.basicConfig(
        level=logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger("devloop").setLevel(logging.DEBUG if verbose else logging.INFO)


def _load_config() -> DevloopConfig:
    try:
        return DevloopConfig.from_env().validate()
    except (DevloopError, ValueError) as e:
        console.print(f"[red]Invalid configuration:[/red] {e}")
        sys.exit(1)


async def _confirm_changes(task: Task, edit_set: EditSet) -> bool:
    table = Table(title=f"Changes for task {task.id}")
    table.add_column("Operation")
    table.add_column("Path")
    for edit in edit_set.files:
        table.add_row(edit.operation, edit.path)
    console.print(table)
    console.print(f"Summary: {edit_set.summary}")
    return await asyncio.to_thread(Confirm.ask, "Apply these changes?", default=True)


def build_engine(config: DevloopConfig, require_approval: bool = False) -> WorkflowEngine:
    """Wire the engine and its collaborators from configuration."""
    tracer, meter = setup_telemetry(config)
    create_metrics(meter)

    ledger = StateLedger(config.state_dir)
    sessions = None
    if config.sessions.enabled:
        sessions = SessionStore(config.sessions, config.state_dir, config.agent.provider)
    runner = AgentRunner(config.agent, config.timeouts, sessions=sessions)
    config.workflow.require_approval = config.workflow.require_approval or require_approval

    return WorkflowEngine(
        config.workflow,
        tasks=LedgerTaskSource(ledger, max_retries=config.workflow.max_fix_retries),
        generator=runner,
        applier=EditApplier(config.agent.workspace_path),
        ledger=ledger,
        test_runner=CommandTestRunner(config.agent.workspace_path),
        log_analyzer=PatternLogAnalyzer(),
        testing=config.testing,
        hooks=config.hooks,
        loop_config=config.loop,
        sessions=sessions,
        approver=_confirm_changes,
        tracer=tracer,
    )


@cli.command()
@click.option("--max-iterations", type=int, default=None, help="Stop after N iterations")
@click.option("--once", is_flag=True, help="Run a single iteration")
@click.option("--require-approval", is_flag=True, help="Confirm each edit-set before applying")
def run(max_iterations: int | None, once: bool, require_approval: bool) -> None:
    """Run the loop until no pending tasks remain."""
    config = _load_config()
    if max_iterations is not None:
        config.workflow.max_iterations = max_iterations
    if once:
        config.workflow.max_iterations = 1

    try:
        with RunLock(config.state_dir):
            code = asyncio.run(_run_loop(config, require_approval, once))
    except DevloopError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)
    sys.exit(code)


async def _run_loop(config: DevloopConfig, require_approval: bool, once: bool) -> int:
    """Internal async implementation of the driving loop.

    Returns:
        Process exit code
    """
    engine = build_engine(config, require_approval)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, engine.request_shutdown)

    try:
        for iteration in range(1, config.workflow.max_iterations + 1):
            if engine.shutting_down:
                console.print("[yellow]Stopped[/yellow]")
                return 0

            result = await engine.run_once()
            _print_result(iteration, result)

            if result.no_tasks:
                console.print("[green]No pending tasks remain[/green]")
                return 0
            if result.category in FATAL_CATEGORIES:
                console.print(
                    Panel(result.error or "", title=f"Halted: {result.category}", style="red")
                )
                return 1

        if once:
            return 0
        console.print(
            f"[yellow]Max iterations reached ({config.workflow.max_iterations})[/yellow]"
        )
        return 1
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
        await engine.shutdown()


def _print_result(iteration: int, result: RunResult) -> None:
    if result.completed:
        console.print(f"[{iteration}] Task {result.task_id}: [bold green]DONE[/bold green]")
    elif result.no_tasks:
        return
    else:
        label = (result.category or "failed").upper()
        console.print(
            f"[{iteration}] Task {result.task_id}: [bold yellow]{label}[/bold yellow] "
            f"{(result.error or '')[:200]}"
        )


@cli.command()
def status() -> None:
    """Show the persisted workflow status."""
    config = _load_config()
    state = StateLedger(config.state_dir).load_state()

    table = Table(title="Workflow Status")
    table.add_column("Field")
    table.add_column("Value")
    table.add_row("Status", state.status)
    if state.current_task:
        table.add_row("Current Task", f"{state.current_task.id}: {state.current_task.title}")
    else:
        table.add_row("Current Task", "-")
    table.add_row("Completed", f"{state.completed_tasks}/{state.total_tasks}")
    table.add_row("Progress", f"{state.progress:.0%}")
    console.print(table)

    holder = RunLock(config.state_dir).read()
    if holder is not None and holder.alive:
        since = f", since {holder.started_at}" if holder.started_at else ""
        console.print(f"Running (PID: {holder.pid}{since})")


@cli.command()
def tasks() -> None:
    """List tasks and their status."""
    config = _load_config()
    all_tasks = StateLedger(config.state_dir).get_tasks()
    if not all_tasks:
        console.print("No tasks")
        return

    colors = {"done": "green", "blocked": "red", "in-progress": "cyan", "pending": "white"}
    table = Table(title="Tasks")
    table.add_column("ID")
    table.add_column("Status")
    table.add_column("Priority")
    table.add_column("Retries")
    table.add_column("Title")
    for task in all_tasks:
        color = colors.get(task.status, "white")
        table.add_row(
            task.id,
            f"[{color}]{task.status}[/{color}]",
            task.priority,
            str(task.retry_count),
            task.title,
        )
    console.print(table)


@cli.command()
@click.argument("title")
@click.option("--description", "-d", default="", help="Task description")
@click.option(
    "--priority",
    type=click.Choice(["critical", "high", "medium", "low"]),
    default="medium",
)
@click.option("--analysis", is_flag=True, help="Task may legitimately produce no changes")
def add(title: str, description: str, priority: str, analysis: bool) -> None:
    """Add a pending task."""
    config = _load_config()
    source = LedgerTaskSource(StateLedger(config.state_dir))
    task = asyncio.run(
        source.add_task(
            title,
            description or title,
            priority=priority,
            task_type="analysis" if analysis else None,
        )
    )
    console.print(f"Added task {task.id}: {task.title}")


@cli.command()
@click.argument("task_id", required=False)
@click.option("--all-blocked", is_flag=True, help="Reset every blocked task")
@click.option("--all", "reset_all", is_flag=True, help="Reset every task")
def reset(task_id: str | None, all_blocked: bool, reset_all: bool) -> None:
    """Reset tasks to pending."""
    config = _load_config()
    ledger = StateLedger(config.state_dir)
    all_tasks = ledger.get_tasks()

    if task_id:
        targets = [t for t in all_tasks if t.id == task_id]
        if not targets:
            console.print(f"[red]Task {task_id} not found[/red]")
            sys.exit(1)
    elif all_blocked:
        targets = [t for t in all_tasks if t.status == "blocked"]
    elif reset_all:
        targets = [t for t in all_tasks if t.status != "pending"]
    else:
        console.print("Specify a TASK_ID, --all-blocked or --all")
        sys.exit(1)

    for task in targets:
        task.status = "pending"
        task.retry_count = 0
    ledger.save_tasks(all_tasks)

    state = ledger.load_state()
    for task in targets:
        state.extraction_failures.pop(task.id, None)
        state.timeout_failures.pop(task.id, None)
        state.failure_errors.pop(task.id, None)
    ledger.save_state(state)
    console.print(f"Reset {len(targets)} task(s) to pending")


@cli.command()
@click.option("--grace", type=float, default=5.0, help="Seconds to wait before SIGKILL")
def stop(grace: float) -> None:
    """Stop a running loop."""
    config = _load_config()
    lock = RunLock(config.state_dir)
    holder = lock.read()

    if holder is None or not holder.alive:
        console.print("[yellow]devloop is not running[/yellow]")
        lock.clear_stale()
        sys.exit(0)

    pid = holder.pid
    console.print(f"Stopping devloop (PID: {pid})...")
    os.kill(pid, signal.SIGTERM)
    deadline = time.monotonic() + grace
    while time.monotonic() < deadline:
        if not is_process_running(pid):
            console.print("[green]Stopped[/green]")
            sys.exit(0)
        time.sleep(0.2)

    console.print("[yellow]Process did not stop gracefully, forcing...[/yellow]")
    os.kill(pid, signal.SIGKILL)
    sys.exit(0)
