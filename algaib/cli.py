"""CLI for algaib.

Plans tasks with a coding agent, executes the plans, and lists stored plans.
Permission prompts raised by the agents are answered interactively unless
--yolo is given. Ctrl-C cancels the running subtask; the plan can be resumed
later with ``algaib execute``.
"""

import asyncio
import contextlib
import signal
import threading
from pathlib import Path

import click
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm
from rich.table import Table

from algaib.config import AlgaibConfig
from algaib.errors import AlgaibError
from algaib.logging_config import configure_logging
from algaib.models import AgentResult, PermissionRequest, Plan, Subtask
from algaib.orchestrator import Orchestrator, RunCallbacks, RunOptions, RunResult
from algaib.session import strip_ansi
from algaib.store import PlanRecordStore
from algaib.telemetry import create_metrics, setup_telemetry

console = Console()

STATUS_COLORS = {
    "pending": "dim",
    "running": "yellow",
    "completed": "green",
    "failed": "red",
    "cancelled": "yellow",
}


@click.group()
@click.version_option(package_name="algaib")
@click.option("--verbose", "-v", is_flag=True, help="Log debug output to the console")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """algaib - plan and run tasks with coding-agent CLIs."""
    config = AlgaibConfig.from_env()
    configure_logging(config.log_dir, verbose=verbose)
    ctx.obj = config


@cli.command()
@click.argument("task")
@click.option("--planner", default=None, help="Agent that writes the plan")
@click.option("--executor", default=None, help="Agent that runs every subtask")
@click.option(
    "--skills-file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Skill text included verbatim in the planning prompt",
)
@click.option(
    "--context",
    "-c",
    "context_files",
    multiple=True,
    help="Context file handed to the first subtask (repeatable)",
)
@click.option("--run/--no-run", "run_now", default=True, help="Execute the plan after planning")
@click.option(
    "--yolo/--no-yolo", default=None, help="Auto-approve every permission request"
)
@click.pass_obj
def plan(
    config: AlgaibConfig,
    task: str,
    planner: str | None,
    executor: str | None,
    skills_file: Path | None,
    context_files: tuple[str, ...],
    run_now: bool,
    yolo: bool | None,
) -> None:
    """Plan TASK and (by default) execute the plan."""
    options = RunOptions(
        planner_agent=planner,
        executor_agent=executor,
        skills=skills_file.read_text(encoding="utf-8") if skills_file else None,
        yolo_mode=yolo,
        context_files=list(context_files),
    )
    result = asyncio.run(_run(config, task, options, run_now))
    _exit_for(result)


@cli.command()
@click.argument("plan_id")
@click.option(
    "--yolo/--no-yolo", default=None, help="Auto-approve every permission request"
)
@click.pass_obj
def execute(config: AlgaibConfig, plan_id: str, yolo: bool | None) -> None:
    """Execute (or resume) a stored plan by id or path."""
    try:
        result = asyncio.run(_resume(config, plan_id, RunOptions(yolo_mode=yolo)))
    except AlgaibError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise SystemExit(1)
    _exit_for(result)


@cli.command()
@click.option("--limit", "-n", default=10, help="Number of plans to show")
@click.pass_obj
def plans(config: AlgaibConfig, limit: int) -> None:
    """List stored plans, most recent first."""
    assert config.plan_dir is not None
    summaries = PlanRecordStore(config.plan_dir, config.workspace_root).list_records()[:limit]

    if not summaries:
        console.print("[yellow]No plans found[/yellow]")
        return

    table = Table(title="Plans")
    table.add_column("Plan")
    table.add_column("Created")
    table.add_column("Task")
    table.add_column("Progress")

    for summary in summaries:
        total = sum(summary.counts.values())
        progress = f"{summary.counts['completed']}/{total}"
        if summary.counts["failed"]:
            progress += f" [red]({summary.counts['failed']} failed)[/red]"
        table.add_row(
            summary.plan_id,
            summary.created_at.strftime("%Y-%m-%d %H:%M"),
            _truncate(summary.task_description, 60),
            progress,
        )

    console.print(table)


@cli.command()
@click.argument("plan_id")
@click.pass_obj
def show(config: AlgaibConfig, plan_id: str) -> None:
    """Show the subtasks of a stored plan."""
    assert config.plan_dir is not None
    store = PlanRecordStore(config.plan_dir, config.workspace_root)
    try:
        stored_plan, task = store.load(plan_id)
    except AlgaibError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise SystemExit(1)

    console.print(f"[bold]{stored_plan.id}[/bold]: {task.description}")
    _print_plan(stored_plan)


async def _run(config: AlgaibConfig, task: str, options: RunOptions, run_now: bool) -> RunResult:
    orchestrator = _create_orchestrator(config)
    callbacks = _console_callbacks()
    with _cancel_on_interrupt(orchestrator):
        if run_now:
            result = await orchestrator.run_full_flow(task, options, callbacks)
        else:
            result = await orchestrator.plan_task(task, options, callbacks)
    _print_summary(result)
    return result


async def _resume(config: AlgaibConfig, plan_id: str, options: RunOptions) -> RunResult:
    orchestrator = _create_orchestrator(config)
    with _cancel_on_interrupt(orchestrator):
        result = await orchestrator.execute_plan(plan_id, options, _console_callbacks())
    _print_summary(result)
    return result


def _create_orchestrator(config: AlgaibConfig) -> Orchestrator:
    tracer, meter = setup_telemetry(config)
    create_metrics(meter)
    return Orchestrator(config, tracer=tracer)


class _cancel_on_interrupt:
    """Route SIGINT to Orchestrator.cancel() while a run is active."""

    def __init__(self, orchestrator: Orchestrator) -> None:
        self.orchestrator = orchestrator
        self._loop: asyncio.AbstractEventLoop | None = None

    def __enter__(self) -> "_cancel_on_interrupt":
        self._loop = asyncio.get_running_loop()
        self._loop.add_signal_handler(signal.SIGINT, self._interrupt)
        return self

    def __exit__(self, *exc_info: object) -> None:
        assert self._loop is not None
        self._loop.remove_signal_handler(signal.SIGINT)

    def _interrupt(self) -> None:
        console.print("\n[yellow]Interrupted, cancelling run...[/yellow]")
        self.orchestrator.cancel("Interrupted by user")


def _console_callbacks() -> RunCallbacks:
    def on_plan_created(new_plan: Plan) -> None:
        console.print(f"\n[bold]Plan {new_plan.id}[/bold]")
        _print_plan(new_plan)

    def on_subtask_start(subtask: Subtask) -> None:
        console.rule(f"[bold]{subtask.title}[/bold] ({subtask.agent})")

    def on_subtask_output(subtask: Subtask, text: str) -> None:
        console.print(strip_ansi(text), end="", markup=False, highlight=False)

    def on_subtask_complete(subtask: Subtask, result: AgentResult) -> None:
        note = " (local fallback)" if result.fallback else ""
        console.print(
            f"\n[green]Completed[/green] {subtask.title}{note} "
            f"({result.execution_time_ms / 1000:.0f}s) -> {result.output_file}"
        )

    def on_subtask_fail(subtask: Subtask, result: AgentResult | None, error: str) -> None:
        console.print(f"\n[red]Failed[/red] {subtask.title}: {error}")

    async def on_permission_request(request: PermissionRequest) -> bool:
        console.print(
            Panel(
                request.raw_text.strip() or request.description,
                title=f"Permission requested: {request.type}",
                subtitle=request.description,
                border_style="yellow",
            )
        )
        return await _ask_user("Allow?")

    return RunCallbacks(
        on_plan_created=on_plan_created,
        on_subtask_start=on_subtask_start,
        on_subtask_output=on_subtask_output,
        on_subtask_complete=on_subtask_complete,
        on_subtask_fail=on_subtask_fail,
        on_permission_request=on_permission_request,
    )


async def _ask_user(question: str, default: bool = False) -> bool:
    """Ask a yes/no question without tying up the default executor.

    The prompt blocks in input() on a daemon thread. If the run is cancelled
    while it waits, the await is abandoned and interpreter shutdown does not
    wait for the thread.
    """
    loop = asyncio.get_running_loop()
    answer: asyncio.Future[bool] = loop.create_future()

    def settle(result: bool | None, error: BaseException | None) -> None:
        if answer.done():
            return
        if error is not None:
            answer.set_exception(error)
        else:
            answer.set_result(bool(result))

    def ask() -> None:
        try:
            result, error = Confirm.ask(question, default=default, console=console), None
        except Exception as e:
            result, error = None, e
        # The loop may have closed while the user was thinking
        with contextlib.suppress(RuntimeError):
            loop.call_soon_threadsafe(settle, result, error)

    threading.Thread(target=ask, name="algaib-permission-prompt", daemon=True).start()
    return await answer


def _print_plan(stored_plan: Plan) -> None:
    table = Table()
    table.add_column("#", justify="right")
    table.add_column("Title")
    table.add_column("Agent")
    table.add_column("Status")
    table.add_column("Output")

    for index, subtask in enumerate(stored_plan.subtasks, start=1):
        color = STATUS_COLORS.get(subtask.status, "white")
        table.add_row(
            str(index),
            _truncate(subtask.title, 50),
            subtask.agent,
            f"[{color}]{subtask.status}[/{color}]",
            subtask.output_file,
        )

    console.print(table)


def _print_summary(result: RunResult) -> None:
    color = STATUS_COLORS.get(result.status, "white")
    console.print(f"\n[bold {color}]Run {result.status.upper()}[/bold {color}]")
    if result.plan is not None:
        counts = result.plan.status_counts()
        console.print(f"  Subtasks: {counts['completed']}/{len(result.plan.subtasks)} completed")
    if result.plan_path is not None:
        console.print(f"  Plan record: {result.plan_path}")
    if result.error:
        console.print(f"  [{color}]{result.error}[/{color}]")
    if result.status == "cancelled" and result.plan is not None:
        console.print(f"  Resume with: algaib execute {result.plan.id}")


def _exit_for(result: RunResult) -> None:
    if result.status == "failed":
        raise SystemExit(1)
    if result.status == "cancelled":
        raise SystemExit(130)


def _truncate(text: str, limit: int) -> str:
    text = " ".join(text.split())
    return text if len(text) <= limit else text[: limit - 1] + "…"


def main() -> None:
    """Main entry point for the algaib CLI."""
    cli()


if __name__ == "__main__":
    main()
