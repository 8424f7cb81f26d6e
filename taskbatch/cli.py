"""CLI for taskbatch.

Provides command-line interface for running, resuming and inspecting
batches of coding-agent tasks.
"""

import asyncio
import logging
import signal
import sys
from collections import defaultdict
from datetime import datetime, timezone
from pathlib import Path

import click
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table

from taskbatch.claude_executor import default_executor_factory
from taskbatch.config import BatchConfig
from taskbatch.dag import DependencyGraph
from taskbatch.errors import BatchError, StaleEscalationResolutionError
from taskbatch.events import (
    BatchStarted,
    EscalationRaised,
    StateUpdated,
    TaskCancelled,
    TaskCompleted,
    TaskFailed,
    TaskStarted,
    TaskToolUse,
)
from taskbatch.lock import BatchLock
from taskbatch.models import BatchState, EscalationRequest, EscalationResponse
from taskbatch.parser import TaskBatch, load_task_file, validate_batch
from taskbatch.scheduler import BatchScheduler, display_status
from taskbatch.state import StateStore
from taskbatch.telemetry import create_metrics, setup_telemetry

console = Console()

STATUS_COLORS = {
    "pending": "white",
    "queued": "cyan",
    "blocked": "dim",
    "running": "blue",
    "completed": "green",
    "failed": "red",
    "cancelled": "yellow",
}

EXIT_INTERRUPTED = 130


@click.group()
@click.version_option(package_name="taskbatch")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
def cli(verbose: bool) -> None:
    """taskbatch - Run dependent coding-agent tasks in parallel."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def format_tool_call(tool_name: str, tool_input: dict) -> str:
    """Format a tool call for human-readable display.

    Returns:
        Formatted string like "→ Reading config.py..."
    """
    if tool_name in ("Read", "Write", "Edit"):
        file_path = tool_input.get("file_path", "")
        filename = Path(file_path).name if file_path else "file"
        verb = {"Read": "Reading", "Write": "Writing", "Edit": "Editing"}[tool_name]
        return f"→ {verb} {filename}..."

    if tool_name == "Bash":
        command = tool_input.get("command", "")
        if len(command) > 50:
            command = command[:50] + "..."
        return f"→ Running: {command}"

    if tool_name == "Grep":
        return f"→ Searching for {tool_input.get('pattern', '')}..."

    if tool_name == "Glob":
        return f"→ Finding {tool_input.get('pattern', '')}..."

    return f"→ {tool_name}..."


def parse_escalation_answer(
    answer: str, request: EscalationRequest
) -> EscalationResponse:
    """Turn operator input into a response.

    Accepts an option number or id, "a" to let the agent decide, "s" to skip
    the task; anything else is passed on as free-text guidance.
    """
    answer = answer.strip()
    lowered = answer.lower()
    if lowered in ("", "a", "agent"):
        return EscalationResponse.agent_decide()
    if lowered in ("s", "skip"):
        return EscalationResponse.skip()
    if answer.isdigit() and 1 <= int(answer) <= len(request.options):
        return EscalationResponse.choose(request.options[int(answer) - 1].id)
    for option in request.options:
        if lowered == option.id.lower():
            return EscalationResponse.choose(option.id)
    return EscalationResponse.text(answer)


def _ask_escalation(request: EscalationRequest) -> EscalationResponse:
    """Show an escalation and block until the operator answers."""
    body = f"[bold]{request.question}[/bold]\n\nReason: {request.reason}"
    if request.context:
        body += f"\n\n{request.context}"
    console.print()
    console.print(
        Panel(body, title=f"Task {request.task_id} NEEDS INPUT", border_style="yellow")
    )

    if request.options:
        console.print("\n[bold]Options:[/bold]")
        for i, option in enumerate(request.options, 1):
            line = f"  {i}) {option.label}"
            if option.recommended:
                line += " [green](recommended)[/green]"
            if option.description:
                line += f" [dim]- {option.description}[/dim]"
            console.print(line)
    console.print("  a) let the agent decide    s) skip this task")

    console.print()
    answer = Prompt.ask("Your response (option, a, s, or guidance)", default="a")
    return parse_escalation_answer(answer, request)


async def _consume_events(scheduler: BatchScheduler, auto_decide: bool) -> None:
    """Render lifecycle events and answer escalations."""
    async for event in scheduler.events:
        if isinstance(event, BatchStarted):
            console.print(f"[bold]Starting batch:[/bold] {event.batch_id}")
        elif isinstance(event, TaskStarted):
            suffix = " (resuming session)" if event.resumed else ""
            console.print(f"[blue]▶[/blue] {event.task_id} started{suffix}")
        elif isinstance(event, TaskToolUse):
            msg = format_tool_call(event.tool, event.tool_input)
            console.print(f"  [dim]{event.task_id}[/dim] {msg}")
        elif isinstance(event, TaskCompleted):
            console.print(
                f"[green]✓[/green] {event.task_id} [bold green]COMPLETED"
                f"[/bold green] (${event.cost:.2f})"
            )
        elif isinstance(event, TaskFailed):
            console.print(
                f"[red]✗[/red] {event.task_id} [bold red]FAILED[/bold red]: {event.error}"
            )
        elif isinstance(event, TaskCancelled):
            console.print(f"[yellow]-[/yellow] {event.task_id} cancelled")
        elif isinstance(event, StateUpdated):
            stats = event.stats
            done = stats.completed + stats.failed + stats.cancelled
            console.print(
                f"[dim]  {done}/{stats.total} done, {stats.running} running, "
                f"${stats.total_cost:.2f} spent[/dim]"
            )
        elif isinstance(event, EscalationRaised):
            request = event.request
            if auto_decide:
                response = EscalationResponse.agent_decide()
                console.print(
                    f"[yellow]?[/yellow] {request.task_id} asked: {request.question} "
                    "(agent decides)"
                )
            else:
                response = await asyncio.to_thread(_ask_escalation, request)
            try:
                scheduler.resolve_escalation(request.task_id, response)
            except StaleEscalationResolutionError:
                console.print(
                    f"[yellow]Escalation for {request.task_id} was already closed[/yellow]"
                )


async def _run_batch(
    batch: TaskBatch,
    config: BatchConfig,
    saved_state: BatchState | None = None,
    auto_decide: bool = False,
    retry_failed: bool = False,
) -> BatchState:
    """Internal async implementation of batch execution."""
    _, meter = setup_telemetry(config)
    create_metrics(meter)

    store = StateStore.from_config(config)
    factory = default_executor_factory(config, batch.global_instructions)

    if saved_state is None:
        scheduler = BatchScheduler(
            batch.tasks,
            factory,
            store,
            config,
            batch_name=batch.name,
            source_path=batch.source_path,
        )
    else:
        scheduler = BatchScheduler.resume(
            batch.tasks, saved_state, factory, store, config
        )
        if retry_failed:
            for task_id, task_state in scheduler.state.tasks.items():
                if task_state.status == "failed":
                    scheduler.retry_task(task_id)

    loop = asyncio.get_running_loop()
    with BatchLock(config.state_dir, scheduler.batch_id):
        try:
            loop.add_signal_handler(signal.SIGINT, scheduler.interrupt)
        except NotImplementedError:
            pass  # Signal handlers are not available on this platform

        consumer = asyncio.create_task(_consume_events(scheduler, auto_decide))
        try:
            state = await scheduler.start()
        finally:
            await consumer
            try:
                loop.remove_signal_handler(signal.SIGINT)
            except NotImplementedError:
                pass

    return state


def _exit_code(state: BatchState) -> int:
    if state.status == "failed":
        return 1
    if state.status == "cancelled":
        return EXIT_INTERRUPTED
    return 0


def _print_plan(batch: TaskBatch) -> None:
    analysis = DependencyGraph(batch.tasks).analyze()
    console.print(f"[bold]{batch.name}[/bold]: {len(batch.tasks)} tasks")
    for level, task_ids in enumerate(analysis.levels):
        console.print(f"  Level {level}: {', '.join(task_ids)}")


def _print_summary(state: BatchState) -> None:
    """Print batch completion summary."""
    color = STATUS_COLORS.get(state.status, "white")
    tasks = state.tasks.values()
    completed = sum(1 for t in tasks if t.status == "completed")
    failed = sum(1 for t in tasks if t.status == "failed")

    console.print(f"\n[bold {color}]Batch {state.status.upper()}[/bold {color}]")
    console.print(f"  Tasks: {completed}/{len(state.tasks)} completed")
    if state.completed_at is not None:
        elapsed = (state.completed_at - state.started_at).total_seconds()
        console.print(f"  Duration: {_format_duration(elapsed)}")
    console.print(f"  Cost: ${state.total_cost:.2f}")

    if failed:
        console.print(f"  [red]Failed: {failed}[/red]")
    if state.blocked_tasks:
        console.print(
            "  [red]Blocked by unfinished dependencies:[/red] "
            + ", ".join(state.blocked_tasks)
        )
    if state.status in ("failed", "cancelled"):
        console.print(f"\nResume with: taskbatch resume {state.batch_id}")


def _format_duration(seconds: float) -> str:
    """Format duration in human-readable form."""
    if seconds < 60:
        return f"{seconds:.0f}s"
    minutes = int(seconds // 60)
    secs = int(seconds % 60)
    return f"{minutes}m {secs}s"


def _load_batch_or_exit(task_file: str) -> TaskBatch:
    try:
        batch = load_task_file(task_file)
    except BatchError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    errors = validate_batch(batch)
    if errors:
        console.print("[red]Validation failed:[/red]")
        for error in errors:
            console.print(f"  - {error}")
        sys.exit(1)
    return batch


@cli.command()
@click.argument("task_file", type=click.Path(exists=True))
@click.option(
    "-c",
    "--max-concurrent",
    type=click.IntRange(min=1),
    default=None,
    help="Maximum tasks running at once (default: from task file)",
)
@click.option("--dry-run", is_flag=True, help="Validate and show the plan only")
@click.option(
    "--escalation-timeout",
    type=float,
    default=None,
    help="Seconds before an unanswered escalation is left to the agent",
)
@click.option(
    "--auto-decide", is_flag=True, help="Let agents decide escalations themselves"
)
def run(
    task_file: str,
    max_concurrent: int | None,
    dry_run: bool,
    escalation_timeout: float | None,
    auto_decide: bool,
) -> None:
    """Run every task in a task file."""
    batch = _load_batch_or_exit(task_file)
    _print_plan(batch)

    if dry_run:
        console.print("\n[yellow]Dry run: no tasks executed[/yellow]")
        return

    try:
        config = BatchConfig.from_env().with_overrides(
            max_concurrent=max_concurrent or batch.max_concurrent,
            escalation_timeout_seconds=escalation_timeout,
        )
        state = asyncio.run(_run_batch(batch, config, auto_decide=auto_decide))
    except BatchError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    _print_summary(state)
    sys.exit(_exit_code(state))


@cli.command()
@click.argument("batch_id")
@click.option(
    "--retry-failed", is_flag=True, help="Run failed tasks again before continuing"
)
@click.option(
    "-c",
    "--max-concurrent",
    type=click.IntRange(min=1),
    default=None,
    help="Maximum tasks running at once (default: from task file)",
)
@click.option(
    "--auto-decide", is_flag=True, help="Let agents decide escalations themselves"
)
def resume(
    batch_id: str, retry_failed: bool, max_concurrent: int | None, auto_decide: bool
) -> None:
    """Resume a previously interrupted batch."""
    config = BatchConfig.from_env()
    store = StateStore.from_config(config)

    try:
        saved = store.load_batch(batch_id)
    except BatchError as e:
        console.print(f"[red]No saved state for {batch_id}:[/red] {e}")
        console.print("Use 'taskbatch run' to start a new batch.")
        sys.exit(1)

    batch = _load_batch_or_exit(saved.source_path)
    done = sum(1 for t in saved.tasks.values() if t.status == "completed")
    console.print(
        f"[bold]Resuming batch:[/bold] {batch_id} ({done}/{len(saved.tasks)} completed)"
    )

    try:
        config = config.with_overrides(
            max_concurrent=max_concurrent or batch.max_concurrent
        )
        state = asyncio.run(
            _run_batch(
                batch,
                config,
                saved_state=saved,
                auto_decide=auto_decide,
                retry_failed=retry_failed,
            )
        )
    except BatchError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    _print_summary(state)
    sys.exit(_exit_code(state))


@cli.command()
@click.argument("task_file", type=click.Path(exists=True))
def validate(task_file: str) -> None:
    """Validate a task file and show its dependency structure."""
    batch = _load_batch_or_exit(task_file)
    analysis = DependencyGraph(batch.tasks).analyze()

    console.print(f"[green]✓[/green] {batch.name} is valid ({len(batch.tasks)} tasks)")
    console.print(f"  Entry points: {', '.join(analysis.entry_points)}")
    console.print(f"  Exit points: {', '.join(analysis.exit_points)}")
    console.print(f"  Levels: {len(analysis.levels)}")

    table = Table(title="Tasks")
    table.add_column("ID")
    table.add_column("Project")
    table.add_column("Model")
    table.add_column("Budget", justify="right")
    table.add_column("Depends on")
    for task in batch.tasks:
        table.add_row(
            task.id,
            task.project,
            task.model or "-",
            f"${task.budget:.2f}",
            ", ".join(task.depends_on) or "-",
        )
    console.print(table)


@cli.command()
@click.argument("batch_id")
def status(batch_id: str) -> None:
    """Show the saved state of a batch."""
    config = BatchConfig.from_env()
    store = StateStore.from_config(config)

    try:
        state = store.load_batch(batch_id, apply_resume_rule=False)
    except BatchError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    graph = None
    try:
        graph = DependencyGraph(load_task_file(state.source_path).tasks)
    except BatchError:
        console.print("[yellow]Task file unavailable; showing stored statuses[/yellow]")

    stats = store.derive_stats(state)
    color = STATUS_COLORS.get(state.status, "white")
    console.print(
        f"[bold]{state.batch_name}[/bold] ({state.batch_id}): "
        f"[{color}]{state.status}[/{color}]"
    )
    console.print(
        f"  {stats.completed} completed, {stats.failed} failed, "
        f"{stats.cancelled} cancelled, {stats.running} running, "
        f"{stats.pending} pending; ${stats.total_cost:.2f}"
    )

    table = Table()
    table.add_column("Task")
    table.add_column("Status")
    table.add_column("Cost", justify="right")
    table.add_column("Detail")
    for task_id, task_state in state.tasks.items():
        shown = task_state.status
        if graph is not None and task_id in graph:
            shown = display_status(state, graph, task_id)
        task_color = STATUS_COLORS.get(shown, "white")
        detail = task_state.error or task_state.progress or ""
        table.add_row(
            task_id,
            f"[{task_color}]{shown}[/{task_color}]",
            f"${task_state.cost:.2f}",
            detail[:80],
        )
    console.print(table)


@cli.command()
@click.option("--limit", "-n", default=10, help="Number of batches to show")
def history(limit: int) -> None:
    """Show history of batch runs."""
    config = BatchConfig.from_env()
    runs = StateStore.from_config(config).list_states()[:limit]

    if not runs:
        console.print("[yellow]No batch runs found[/yellow]")
        return

    table = Table(title="Batch History")
    table.add_column("Batch")
    table.add_column("Name")
    table.add_column("Started")
    table.add_column("Status")
    table.add_column("Tasks")
    table.add_column("Cost", justify="right")

    for run_state in runs:
        completed = sum(1 for t in run_state.tasks.values() if t.status == "completed")
        color = STATUS_COLORS.get(run_state.status, "white")
        table.add_row(
            run_state.batch_id,
            run_state.batch_name,
            run_state.started_at.strftime("%Y-%m-%d %H:%M"),
            f"[{color}]{run_state.status}[/{color}]",
            f"{completed}/{len(run_state.tasks)}",
            f"${run_state.total_cost:.2f}",
        )

    console.print(table)


@cli.command()
@click.option(
    "--since",
    type=click.DateTime(formats=["%Y-%m-%d"]),
    default=None,
    help="Show costs since date (YYYY-MM-DD)",
)
@click.option("--by-batch/--total", default=True, help="Break down by batch name")
def costs(since: datetime | None, by_batch: bool) -> None:
    """Show cost summary."""
    config = BatchConfig.from_env()

    since_date = datetime.min.replace(tzinfo=timezone.utc)
    if since is not None:
        since_date = since.replace(tzinfo=timezone.utc)

    costs_by_batch: dict[str, float] = defaultdict(float)
    total_cost = 0.0
    for state in StateStore.from_config(config).list_states():
        if state.started_at >= since_date:
            costs_by_batch[state.batch_name] += state.total_cost
            total_cost += state.total_cost

    if not costs_by_batch:
        console.print("[yellow]No matching batch runs found[/yellow]")
        return

    if by_batch:
        table = Table(title="Costs by Batch")
        table.add_column("Batch")
        table.add_column("Cost", justify="right")

        for name, cost in sorted(costs_by_batch.items()):
            table.add_row(name, f"${cost:.2f}")

        table.add_row("[bold]Total[/bold]", f"[bold]${total_cost:.2f}[/bold]")
        console.print(table)
    else:
        console.print(f"Total cost: ${total_cost:.2f}")


def main() -> None:
    """Main entry point for the taskbatch CLI."""
    cli()


if __name__ == "__main__":
    main()
