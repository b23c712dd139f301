"""CLI interface for Chorus."""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from chorus import __version__
from chorus.core.dag import DAGValidationError
from chorus.core.state import STATE_DIR, StateService
from chorus.core.tasks import InMemoryTaskProvider, TaskStatus
from chorus.errors import ChorusError
from chorus.logging_setup import configure_logging
from chorus.orchestrator import build_session
from chorus.rollback.checkpoints import PRE_MERGE_PREFIX, TAG_PREFIX
from chorus.schemas.config import ChorusConfig
from chorus.schemas.state import AgentStatus, ChorusState, MergeItemStatus, SessionMode
from chorus.schemas.tasks import TaskPlan
from chorus.utils.git import GitService

console = Console()

CONFIG_FILE = "config.yaml"
TASKS_FILE = "tasks.yaml"


class HelpOnUnknownCommand(click.Command):
    """Shows help instead of a usage error for unknown options."""

    def parse_args(self, ctx: click.Context, args: list[str]) -> list[str]:
        try:
            return super().parse_args(ctx, args)
        except click.UsageError:
            click.echo(ctx.get_help())
            ctx.exit(0)


class HelpOnUnknownGroup(click.Group):
    """Shows help for unknown options and unknown commands."""

    command_class = HelpOnUnknownCommand

    def parse_args(self, ctx: click.Context, args: list[str]) -> list[str]:
        try:
            return super().parse_args(ctx, args)
        except click.UsageError:
            click.echo(ctx.get_help())
            ctx.exit(0)

    def resolve_command(self, ctx: click.Context, args: list[str]):
        if args and self.get_command(ctx, args[0]) is None:
            click.echo(ctx.get_help())
            ctx.exit(0)
        return super().resolve_command(ctx, args)


def config_path(project_dir: Path) -> Path:
    return project_dir / STATE_DIR / CONFIG_FILE


def _load_config(project_dir: Path) -> ChorusConfig:
    try:
        config = ChorusConfig.load(config_path(project_dir))
    except ChorusError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)
    configure_logging(config.log_level)
    return config


def _load_tasks(project_dir: Path, tasks_file: Path) -> InMemoryTaskProvider:
    path = tasks_file if tasks_file.is_absolute() else project_dir / tasks_file
    try:
        return InMemoryTaskProvider.from_plan(TaskPlan.load(path))
    except (ChorusError, DAGValidationError) as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)


@click.group(
    cls=HelpOnUnknownGroup,
    context_settings={"help_option_names": ["-h", "--help"]},
)
@click.version_option(__version__, "-v", "--version", prog_name="chorus")
@click.option(
    "--project",
    "-C",
    type=click.Path(file_okay=False, path_type=Path),
    default=".",
    help="Project root (defaults to the current directory)",
)
@click.pass_context
def main(ctx: click.Context, project: Path) -> None:
    """Chorus: parallel coding agents on isolated git worktrees.

    Agents work in their own worktrees; finished work is gated, queued
    and merged one branch at a time.
    """
    ctx.obj = project


@main.command()
@click.option("--force", "-f", is_flag=True, help="Overwrite an existing config")
@click.pass_obj
def init(project: Path, force: bool) -> None:
    """Write a default .chorus/config.yaml."""
    path = config_path(project)
    if path.exists() and not force:
        console.print(f"[yellow]Config already exists:[/yellow] {path}")
        return

    ChorusConfig().save(path)
    console.print(f"[green]Created:[/green] {path}")


@main.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_obj
def status(project: Path, as_json: bool) -> None:
    """Show the current session state."""
    _load_config(project)

    try:
        state = StateService(project).load()
    except ChorusError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)

    if state is None:
        if as_json:
            click.echo(json.dumps({"session": None}))
        else:
            console.print("[yellow]No active session found.[/yellow]")
        return

    if as_json:
        click.echo(json.dumps(state.model_dump(mode="json"), indent=2))
        return

    _print_state(state)


def _print_state(state: ChorusState) -> None:
    paused = " [yellow](paused)[/yellow]" if state.paused else ""
    console.print(Panel(f"[bold]Session: {state.session_id}[/bold]{paused}"))
    console.print(f"Started: {state.started_at}")
    console.print(f"Mode: {state.mode.value}")
    if state.checkpoint:
        console.print(f"Last checkpoint: {state.checkpoint}")

    agents = Table(title="\nAgents")
    agents.add_column("Agent", style="cyan")
    agents.add_column("Task")
    agents.add_column("Status")
    agents.add_column("Iteration")
    agents.add_column("Branch")

    for agent in state.agents.values():
        style = _agent_style(agent.status)
        agents.add_row(
            agent.id,
            agent.task_id,
            f"[{style}]{agent.status.value}[/{style}]",
            str(agent.iteration),
            agent.branch,
        )
    console.print(agents)

    if state.merge_queue:
        queue = Table(title="\nMerge Queue")
        queue.add_column("Task", style="cyan")
        queue.add_column("Status")
        queue.add_column("Priority")
        queue.add_column("Retries")

        for item in state.merge_queue:
            style = "red" if item.status == MergeItemStatus.CONFLICT else "white"
            queue.add_row(
                item.task_id,
                f"[{style}]{item.status.value}[/{style}]",
                str(item.priority),
                str(item.retry_count),
            )
        console.print(queue)

    if state.pending_review:
        console.print(f"\nPending review: {', '.join(state.pending_review)}")

    stats = state.stats
    console.print(
        f"\nCompleted: {stats.tasks_completed}  Failed: {stats.tasks_failed}  "
        f"Merges: {stats.merges_auto} auto / {stats.merges_manual} manual  "
        f"Iterations: {stats.total_iterations}"
    )


def _agent_style(status: AgentStatus) -> str:
    return {
        AgentStatus.IDLE: "dim",
        AgentStatus.RUNNING: "blue",
        AgentStatus.PAUSED: "yellow",
        AgentStatus.STOPPED: "white",
        AgentStatus.ERROR: "red",
    }.get(status, "white")


@main.command()
@click.argument("tasks_file", type=click.Path(dir_okay=False, path_type=Path), default=TASKS_FILE)
@click.option("--autopilot", is_flag=True, help="Switch the session to autopilot before starting")
@click.pass_obj
def run(project: Path, tasks_file: Path, autopilot: bool) -> None:
    """Run the tasks in TASKS_FILE with parallel agents.

    Ready tasks (open, with every dependency closed) get an agent while
    slots are free; the command returns once no agent is running and no
    task is ready.
    """
    config = _load_config(project)
    tasks = _load_tasks(project, tasks_file)
    session = build_session(project, config, tasks)

    console.print(
        f"[bold]Running {len(tasks.tasks)} task(s)[/bold] "
        f"with up to {config.agents.max_parallel} agent(s)"
    )

    async def drive() -> None:
        if autopilot:
            await session.orchestrator.set_mode(SessionMode.AUTOPILOT)
        await session.run()

    asyncio.run(drive())

    table = Table(title="\nTasks")
    table.add_column("Task", style="cyan")
    table.add_column("Status")
    for record in tasks.tasks.values():
        style = _task_style(record.status)
        table.add_row(record.id, f"[{style}]{record.status.value}[/{style}]")
    console.print(table)

    pending = session.orchestrator.state.get().pending_review
    if pending:
        console.print(f"\nPending review: {', '.join(pending)}")


def _task_style(status: TaskStatus) -> str:
    return {
        TaskStatus.OPEN: "dim",
        TaskStatus.IN_PROGRESS: "blue",
        TaskStatus.REVIEWING: "yellow",
        TaskStatus.CLOSED: "green",
    }.get(status, "white")


@main.command()
@click.option("--task", "task_id", help="Revert every commit of this task")
@click.option("--chain", is_flag=True, help="With --task, also revert the tasks depending on it")
@click.option("--checkpoint", "checkpoint_id", help="Reset the session to this checkpoint")
@click.option(
    "--tasks-file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=TASKS_FILE,
    help="Plan holding the task dependencies",
)
@click.pass_obj
def rollback(
    project: Path,
    task_id: str | None,
    chain: bool,
    checkpoint_id: str | None,
    tasks_file: Path,
) -> None:
    """Undo a task, a task chain, or everything since a checkpoint."""
    if (task_id is None) == (checkpoint_id is None):
        console.print("[red]Error:[/red] Give exactly one of --task or --checkpoint")
        sys.exit(1)

    config = _load_config(project)
    plan_path = tasks_file if tasks_file.is_absolute() else project / tasks_file
    tasks = _load_tasks(project, tasks_file) if plan_path.exists() else InMemoryTaskProvider()
    manager = build_session(project, config, tasks).rollback

    if checkpoint_id is not None:
        result = asyncio.run(manager.rollback_session(checkpoint_id))
    elif chain:
        result = asyncio.run(manager.rollback_task_chain(task_id))
    else:
        result = asyncio.run(manager.rollback_task(task_id))

    if not result.success:
        console.print(f"[red]Rollback failed:[/red] {escape(result.message)}")
        sys.exit(1)

    console.print(f"[green]{result.message}[/green]")
    if result.affected_tasks:
        console.print(f"Affected tasks: {', '.join(result.affected_tasks)}")


@main.command()
@click.pass_obj
def checkpoints(project: Path) -> None:
    """List checkpoint tags."""
    _load_config(project)

    git = GitService(project)

    async def collect() -> list[str]:
        return await git.list_tags(f"{TAG_PREFIX}*") + await git.list_tags(f"{PRE_MERGE_PREFIX}*")

    tags = asyncio.run(collect())
    if not tags:
        console.print("[yellow]No checkpoints found.[/yellow]")
        return

    recorded = {}
    try:
        state = StateService(project).load()
    except ChorusError:
        state = None
    if state is not None:
        recorded = {c.tag: c for c in state.checkpoints}

    table = Table(title="Checkpoints")
    table.add_column("Tag", style="cyan")
    table.add_column("Type")
    table.add_column("Created")
    table.add_column("Task")

    for tag in tags:
        checkpoint = recorded.get(tag)
        if checkpoint is None:
            table.add_row(tag, "-", "-", "-")
        else:
            table.add_row(tag, checkpoint.type.value, checkpoint.timestamp, checkpoint.task_id or "-")

    console.print(table)


if __name__ == "__main__":
    main()
