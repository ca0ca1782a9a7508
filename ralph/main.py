"""Ralph CLI entrypoint."""

import asyncio
import signal
import sys
from pathlib import Path

import click

from .agents.registry import build_agent_factory
from .config.loader import ConfigError, create_default_config, load_config
from .config.models import RalphConfig
from .engine.errors import InitializationError
from .engine.machine import ExecutionEngine
from .engine.models import StopReason
from .observability.dashboard import StatusDashboard, TerminalDashboard
from .state.session import load_session
from .trackers.base import BaseTracker, TrackerError
from .trackers.json_tracker import JsonTracker
from .utils.logging import setup_logging

CONTEXT_SETTINGS = {
    "help_option_names": ["-h", "--help"],
}

EXIT_CODES = {
    StopReason.COMPLETE: 0,
    StopReason.NO_TASKS: 0,
    StopReason.MAX_ITERATIONS: 0,
    StopReason.ERROR: 1,
    StopReason.INTERRUPTED: 130,
}


@click.group(context_settings=CONTEXT_SETTINGS)
@click.option(
    "--config",
    "-c",
    default=".ralph/config.yml",
    help="Path to configuration file",
    type=click.Path(exists=False, path_type=Path),
)
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    help="Enable verbose output",
)
@click.pass_context
def cli(ctx: click.Context, config: Path, verbose: bool) -> None:
    """Ralph - drive a coding agent through a task backlog, one task per iteration."""
    log_level = "DEBUG" if verbose else "INFO"
    setup_logging(level=log_level)

    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config
    ctx.obj["verbose"] = verbose


@cli.command()
@click.option(
    "--force",
    "-f",
    is_flag=True,
    help="Overwrite existing configuration",
)
@click.pass_context
def init(ctx: click.Context, force: bool) -> None:
    """Initialize Ralph configuration."""
    config_path: Path = ctx.obj["config_path"]

    if config_path.exists() and not force:
        click.echo(f"Configuration already exists: {config_path}")
        click.echo("Use --force to overwrite")
        sys.exit(1)

    try:
        create_default_config(config_path)
        click.echo(f"✓ Created configuration: {config_path}")
        click.echo("\nNext steps:")
        click.echo(f"  1. Review and customize {config_path}")
        click.echo("  2. Write your user stories to prd.json")
        click.echo("  3. Run: ralph run")
    except OSError as e:
        click.echo(f"✗ Failed to create configuration: {e}", err=True)
        sys.exit(1)


def _load(ctx: click.Context) -> RalphConfig:
    config_path: Path = ctx.obj["config_path"]
    try:
        return load_config(config_path)
    except ConfigError as e:
        click.echo(f"✗ Configuration error: {e}", err=True)
        sys.exit(1)


def _build_engine(config: RalphConfig) -> ExecutionEngine:
    async def tracker_factory() -> BaseTracker:
        if config.tracker.plugin != "json":
            raise TrackerError(f"Unknown tracker plugin: {config.tracker.plugin}")
        return JsonTracker(config.tracker.path)

    return ExecutionEngine(
        config,
        tracker_factory=tracker_factory,
        agent_factory=build_agent_factory(config),
    )


@cli.command()
@click.option(
    "--max-iterations",
    "-n",
    type=int,
    help="Override the iteration budget (0 = unlimited)",
)
@click.option(
    "--agent",
    "-a",
    help="Primary agent to use",
)
@click.option(
    "--auto-commit/--no-auto-commit",
    default=None,
    help="Commit after each completed task",
)
@click.option(
    "--quiet",
    "-q",
    is_flag=True,
    help="Minimal output",
)
@click.pass_context
def run(
    ctx: click.Context,
    max_iterations: int | None,
    agent: str | None,
    auto_commit: bool | None,
    quiet: bool,
) -> None:
    """Run the agent loop over the task backlog."""
    verbose: bool = ctx.obj["verbose"]
    config = _load(ctx)

    overrides = {}
    if max_iterations is not None:
        overrides["max_iterations"] = max_iterations
    if agent is not None:
        overrides["agent"] = agent
    if auto_commit is not None:
        overrides["auto_commit"] = auto_commit
    if overrides:
        try:
            config = RalphConfig(**{**config.model_dump(), **overrides})
        except ValueError as e:
            click.echo(f"✗ Configuration error: {e}", err=True)
            sys.exit(1)

    setup_logging(
        level=config.logging.level,
        log_dir=config.cwd / config.logging.log_dir,
        rotation_mb=config.logging.rotation_mb,
        retention_days=config.logging.retention_days,
        use_colors=verbose,
        console=verbose and not quiet,
    )

    reason = asyncio.run(_run_async(config, verbose=verbose, quiet=quiet))
    sys.exit(EXIT_CODES[reason])


async def _run_async(config: RalphConfig, verbose: bool, quiet: bool) -> StopReason:
    """Async run implementation.

    Ctrl+C stops the engine and puts tasks it left in progress back to open.

    Args:
        config: Ralph configuration
        verbose: Stream agent output
        quiet: Minimal output

    Returns:
        Why the engine stopped
    """
    engine = _build_engine(config)
    engine.on(TerminalDashboard(verbose=verbose, quiet=quiet))
    engine.on(StatusDashboard(config.cwd / config.output_dir / "STATUS.md", engine.get_state))

    try:
        await engine.initialize()
    except InitializationError as e:
        click.echo(f"✗ {e}", err=True)
        return StopReason.ERROR

    loop = asyncio.get_running_loop()
    stop_task = None

    def request_stop() -> None:
        nonlocal stop_task
        if stop_task is None:
            click.echo("\nStopping (Ctrl+C)...", err=True)
            stop_task = asyncio.ensure_future(engine.stop())

    loop.add_signal_handler(signal.SIGINT, request_stop)
    try:
        reason = await engine.start()
    finally:
        loop.remove_signal_handler(signal.SIGINT)

    if reason == StopReason.INTERRUPTED and engine.activated_task_ids:
        count = await engine.reset_tasks_to_open(engine.activated_task_ids)
        click.echo(f"Reset {count} in-progress task(s) to open")

    await engine.dispose()
    return reason


@cli.command()
@click.argument("task_id")
@click.pass_context
def preview(ctx: click.Context, task_id: str) -> None:
    """Print the prompt TASK_ID would receive."""
    config = _load(ctx)
    prompt = asyncio.run(_preview_async(config, task_id))
    if prompt is None:
        click.echo(f"Task not found: {task_id}", err=True)
        sys.exit(1)
    click.echo(prompt)


async def _preview_async(config: RalphConfig, task_id: str) -> str | None:
    engine = _build_engine(config)
    try:
        engine.tracker = await engine.tracker_factory()
        return await engine.generate_prompt_preview(task_id)
    finally:
        await engine.dispose()


@cli.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show the last Ralph session."""
    config = _load(ctx)
    session = load_session(config.cwd / config.output_dir / "session.json")
    if session is None:
        click.echo("No Ralph session found")
        return

    max_iterations = session.max_iterations or "unlimited"
    click.echo(f"Session: {session.session_id}")
    click.echo(f"Status: {session.status.value}")
    click.echo(f"Agent: {session.agent}")
    click.echo(f"Iteration: {session.current_iteration}/{max_iterations}")
    click.echo(f"Tasks completed: {session.tasks_completed}/{session.total_tasks}")
    click.echo(f"Updated: {session.updated_at}")

    if session.active_task_ids:
        click.echo(f"In progress: {', '.join(session.active_task_ids)}")

    if session.iterations:
        click.echo("\nRecent iterations:")
        for record in session.iterations[-5:]:
            mark = "✓" if record.task_completed else "✗"
            click.echo(f"  {mark} #{record.iteration} {record.task_id} ({record.status})")


if __name__ == "__main__":
    cli()
