"""Per-iteration markdown log files."""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

from ..engine.models import AgentSwitchEntry, IterationResult

logger = logging.getLogger(__name__)

RAW_OUTPUT_DIVIDER = "\n--- RAW OUTPUT ---\n"
STDERR_DIVIDER = "\n--- STDERR ---\n"


@dataclass
class IterationLogContext:
    """Run details that are not part of the IterationResult itself."""

    session_id: str
    model: Optional[str] = None
    sandbox_mode: Optional[str] = None
    sandbox_network: Optional[bool] = None
    completion_summary: Optional[str] = None
    agent_switches: list[AgentSwitchEntry] = field(default_factory=list)


def format_duration(ms: int) -> str:
    seconds = ms // 1000
    minutes, hours = seconds // 60, seconds // 3600
    if hours:
        return f"{hours}h {minutes % 60}m {seconds % 60}s"
    if minutes:
        return f"{minutes}m {seconds % 60}s"
    return f"{seconds}s"


def format_log_header(result: IterationResult, context: IterationLogContext) -> str:
    """Build the metadata header of an iteration log."""
    task = result.task
    lines = [f"# Iteration {result.iteration} Log", "", "## Metadata", ""]
    lines.append(f"- **Task ID**: {task.id}")
    lines.append(f"- **Task Title**: {task.title}")
    if task.description:
        suffix = "..." if len(task.description) > 200 else ""
        lines.append(f"- **Description**: {task.description[:200]}{suffix}")
    lines.append(f"- **Status**: {result.status.value}")
    lines.append(f"- **Task Completed**: {'Yes' if result.task_completed else 'No'}")
    lines.append(f"- **Promise Detected**: {'Yes' if result.promise_complete else 'No'}")
    lines.append(f"- **Started At**: {result.started_at}")
    lines.append(f"- **Ended At**: {result.ended_at}")
    lines.append(f"- **Duration**: {format_duration(result.duration_ms)}")
    if result.error:
        lines.append(f"- **Error**: {result.error}")
    lines.append(f"- **Agent**: {result.agent}")
    if context.model:
        lines.append(f"- **Model**: {context.model}")
    if context.sandbox_mode:
        lines.append(f"- **Sandbox Mode**: {context.sandbox_mode}")
    if context.sandbox_network is not None:
        lines.append(
            f"- **Sandbox Network**: {'Enabled' if context.sandbox_network else 'Disabled'}"
        )
    if context.completion_summary:
        lines.append(f"- **Completion Summary**: {context.completion_summary}")
    if result.verification is not None:
        lines.append(f"- **Verification**: {'Passed' if result.verification.passed else 'Failed'}")

    if context.agent_switches:
        lines += ["", "## Agent Switches", ""]
        for sw in context.agent_switches:
            label = "Switched to fallback" if sw.reason == "fallback" else "Recovered to primary"
            lines.append(f"- **{label}**: {sw.from_agent} → {sw.to_agent} at {sw.at}")

    return "\n".join(lines)


def _safe(value: str) -> str:
    return re.sub(r"[^A-Za-z0-9._-]", "_", value)


class IterationLogWriter:
    """Writes one markdown log file per iteration."""

    def __init__(self, log_dir: Path):
        self.log_dir = log_dir

    def log_path(self, result: IterationResult, session_id: str) -> Path:
        started = datetime.fromisoformat(result.started_at).strftime("%Y-%m-%d_%H-%M-%S")
        name = f"{_safe(session_id)}_{result.iteration:03d}_{started}_{_safe(result.task.id)}.log"
        return self.log_dir / name

    def write(self, result: IterationResult, context: IterationLogContext) -> Path:
        """Write the log for an iteration.

        Returns:
            Path of the written file
        """
        self.log_dir.mkdir(parents=True, exist_ok=True)
        path = self.log_path(result, context.session_id)

        stdout = result.agent_result.stdout if result.agent_result else ""
        stderr = result.agent_result.stderr if result.agent_result else ""
        body = format_log_header(result, context) + "\n" + RAW_OUTPUT_DIVIDER + stdout
        if stderr:
            body += STDERR_DIVIDER + stderr

        path.write_text(body, encoding="utf-8")
        logger.debug(f"Wrote iteration log {path}")
        return path

    def list_logs(self) -> list[Path]:
        if not self.log_dir.exists():
            return []
        return sorted(self.log_dir.glob("*.log"))
