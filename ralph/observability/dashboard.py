"""Status dashboard and observability."""

import logging
from enum import Enum
from pathlib import Path
from typing import Optional

import click

from ..engine.events import EngineEvent
from ..engine.models import EngineState, IterationResult, IterationStatus

logger = logging.getLogger(__name__)


class StatusSymbol(str, Enum):
    """Symbols for status display."""

    DONE = "✅"
    RUNNING = "🔄"
    PENDING = "⏳"
    FAILED = "❌"
    SKIPPED = "⏭️"


ITERATION_SYMBOLS = {
    IterationStatus.COMPLETED: StatusSymbol.DONE,
    IterationStatus.FAILED: StatusSymbol.FAILED,
    IterationStatus.TIMEOUT: StatusSymbol.FAILED,
    IterationStatus.INTERRUPTED: StatusSymbol.SKIPPED,
}


class StatusDashboard:
    """Generate and update the STATUS.md file from engine state."""

    UPDATE_ON = {
        "engine:started",
        "engine:stopped",
        "engine:paused",
        "engine:resumed",
        "iteration:started",
        "iteration:completed",
        "iteration:failed",
        "agent:switched",
    }

    def __init__(self, status_file: Path, get_state):
        """Initialize status dashboard.

        Args:
            status_file: Markdown file to write
            get_state: Callable returning an EngineState snapshot
        """
        self.status_file = status_file
        self.get_state = get_state

    def __call__(self, event: EngineEvent) -> None:
        if event.type in self.UPDATE_ON:
            self.update()

    def update(self) -> None:
        """Update STATUS.md file."""
        content = self._generate_status(self.get_state())
        self.status_file.parent.mkdir(parents=True, exist_ok=True)

        with open(self.status_file, "w") as f:
            f.write(content)

        logger.debug(f"Updated {self.status_file}")

    def _generate_status(self, state: EngineState) -> str:
        max_iterations = state.max_iterations or "∞"
        lines = [
            "# Ralph Run Status",
            "",
            f"**Started:** {state.started_at or 'not started'}",
            f"**Current State:** `{state.status.value}`",
            f"**Iteration:** {state.current_iteration}/{max_iterations}",
            f"**Tasks Completed:** {state.tasks_completed}/{state.total_tasks}",
            "",
            self._format_current_task(state),
            "",
            self._format_iterations(state.iterations),
        ]
        return "\n".join(lines)

    def _format_current_task(self, state: EngineState) -> str:
        if state.current_task is None:
            return "## Current Task\n\nNo task running"
        task = state.current_task
        return f"## Current Task\n\n**ID:** {task.id}\n**Title:** {task.title}"

    def _format_iterations(self, iterations: list[IterationResult]) -> str:
        lines = ["## Iterations", ""]
        if not iterations:
            lines.append("No iterations yet")
        for result in iterations:
            symbol = ITERATION_SYMBOLS.get(result.status, StatusSymbol.PENDING).value
            suffix = " (task completed)" if result.task_completed else ""
            lines.append(
                f"- {symbol} #{result.iteration} **{result.task.id}** via {result.agent}{suffix}"
            )
        lines.append("")
        return "\n".join(lines)


class TerminalDashboard:
    """Echo engine events to the terminal."""

    def __init__(self, verbose: bool = False, quiet: bool = False):
        """Initialize terminal dashboard.

        Args:
            verbose: Also stream agent output
            quiet: Only print the final outcome
        """
        self.verbose = verbose
        self.quiet = quiet

    def __call__(self, event: EngineEvent) -> None:
        message = self._format(event)
        if message is not None:
            click.echo(message, err=event.type in ("iteration:failed", "agent:all-limited"))

    def _format(self, event: EngineEvent) -> Optional[str]:
        if event.type == "engine:stopped":
            return f"\nStopped: {event.reason.value} ({event.tasks_completed} tasks completed in {event.total_iterations} iterations)"
        if self.quiet:
            return None

        match event.type:
            case "engine:started":
                return f"Session {event.session_id}: {event.total_tasks} tasks"
            case "iteration:started":
                return f"\n[{event.iteration}] {event.task.id}: {event.task.title} ({event.agent})"
            case "iteration:completed":
                result = event.result
                if result.task_completed:
                    return f"{StatusSymbol.DONE.value} {result.task.id} complete"
                return f"{StatusSymbol.PENDING.value} {result.task.id} not finished ({result.status.value})"
            case "iteration:failed":
                return f"{StatusSymbol.FAILED.value} {event.task.id}: {event.error} -> {event.action}"
            case "iteration:retrying":
                return f"Retrying {event.task.id} ({event.retry_attempt}/{event.max_retries}) in {event.delay_ms}ms"
            case "iteration:rate-limited":
                return f"Rate limited on {event.agent}; waiting {event.delay_ms}ms"
            case "agent:switched":
                return f"Agent: {event.previous_agent} -> {event.new_agent} ({event.reason})"
            case "agent:all-limited":
                return f"All agents rate limited: {', '.join(event.tried_agents)}"
            case "task:auto-committed":
                return f"Committed {event.task.id} ({event.commit_sha or 'unknown sha'})"
            case "task:auto-commit-failed":
                return f"Auto-commit failed for {event.task.id}: {event.error}"
            case "engine:paused":
                return "Paused"
            case "engine:resumed":
                return "Resumed"
            case "engine:iterations-added" | "engine:iterations-removed":
                return f"Max iterations: {event.previous_max} -> {event.new_max}"
            case "all:complete":
                return f"{StatusSymbol.DONE.value} All tasks complete"
            case "agent:output" if self.verbose:
                return event.data.rstrip("\n")
        return None
