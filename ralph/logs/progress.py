"""Cross-iteration progress file included in agent prompts."""

import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from ..engine.completion import PROMISE_TAG
from ..engine.models import IterationResult

logger = logging.getLogger(__name__)

MAX_PROGRESS_SIZE = 50_000

PROGRESS_HEADER = """# Ralph Progress Log

This file tracks progress across iterations. It's automatically updated
after each iteration and included in agent prompts for context.

## Codebase Patterns (Study These First)

*Add reusable patterns discovered during development here.*

---

"""

ENTRY_HEADER = re.compile(r"^## [✓✗] Iteration \d+", re.MULTILINE)
PATTERNS_SECTION = re.compile(
    r"## Codebase Patterns.*?\n(.*?)(?=\n---|\n## [^C])", re.IGNORECASE | re.DOTALL
)
INSIGHT = re.compile(r"`?★ Insight[─\s]*`?\n(.*?)\n`?─+`?", re.DOTALL)


def extract_completion_notes(output: str) -> Optional[str]:
    """Return the last few lines the agent wrote before the completion marker."""
    match = PROMISE_TAG.search(output)
    if not match:
        return None
    lines = [line for line in output[: match.start()][-500:].strip().splitlines() if line.strip()]
    return "\n".join(lines[-5:]) or None


def extract_insights(output: str) -> list[str]:
    return [m.strip() for m in INSIGHT.findall(output) if len(m.strip()) > 10]


def format_progress_entry(result: IterationResult) -> str:
    """Format an iteration as a progress markdown entry."""
    mark = "✓" if result.task_completed else "✗"
    timestamp = datetime.now(timezone.utc).isoformat()
    lines = [
        f"## {mark} Iteration {result.iteration} - {result.task.id}: {result.task.title}",
        f"*{timestamp} ({round(result.duration_ms / 1000)}s)*",
        "",
        "**Status:** Completed" if result.task_completed else "**Status:** Failed/Incomplete",
    ]

    if result.error:
        lines += ["", "**Error:**", result.error]

    if result.diff_summary and not result.diff_summary.is_empty:
        files = [
            *result.diff_summary.files_added,
            *result.diff_summary.files_changed,
            *result.diff_summary.files_deleted,
        ]
        lines += ["", "**Files Changed:**"]
        lines += [f"- {f}" for f in files[:10]]
        if len(files) > 10:
            lines.append(f"- ... and {len(files) - 10} more")

    output = result.agent_result.stdout if result.agent_result else ""
    notes = extract_completion_notes(output)
    if notes:
        lines += ["", "**Notes:**", notes]

    insights = extract_insights(output)
    if insights:
        lines += ["", "**Insights:**", *insights]

    lines += ["", "---", "", ""]
    return "\n".join(lines)


class ProgressLog:
    """Reads and appends the progress markdown file."""

    def __init__(self, path: Path):
        self.path = path

    def read(self) -> str:
        if not self.path.exists():
            return ""
        return self.path.read_text(encoding="utf-8")

    def append(self, result: IterationResult) -> None:
        """Append an iteration entry, trimming old entries past the size cap."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        content = (self.read() or PROGRESS_HEADER) + format_progress_entry(result)

        if len(content) > MAX_PROGRESS_SIZE:
            header_end = content.find("---\n\n") + 5
            header, entries = content[:header_end], content[header_end:]
            keep = entries[-(MAX_PROGRESS_SIZE - len(header) - 1000):]
            clean_break = keep.find("\n## ")
            if clean_break > 0:
                keep = "\n[...older entries truncated...]\n\n" + keep[clean_break + 1:]
            content = header + keep

        self.path.write_text(content, encoding="utf-8")

    def clear(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(PROGRESS_HEADER, encoding="utf-8")

    def recent_summary(self, max_entries: int = 5) -> str:
        """Return the last ``max_entries`` entries under a heading, or ""."""
        content = self.read()
        matches = list(ENTRY_HEADER.finditer(content))
        if not matches:
            return ""
        start = matches[max(0, len(matches) - max_entries)].start()
        count = min(max_entries, len(matches))
        return f"## Recent Progress (last {count} iterations)\n\n{content[start:]}"

    def codebase_patterns(self) -> list[str]:
        """Return the bullet points of the Codebase Patterns section."""
        match = PATTERNS_SECTION.search(self.read())
        if not match:
            return []
        section = match.group(1).strip()
        if not section or section.startswith("*Add reusable patterns"):
            return []
        patterns = [re.sub(r"^[-*•]\s*", "", line).strip() for line in section.splitlines()]
        return [p for p in patterns if p]

    def codebase_patterns_for_prompt(self) -> str:
        patterns = self.codebase_patterns()
        if not patterns:
            return ""
        lines = ["## Codebase Patterns (Study These First)", ""]
        lines += [f"- {p}" for p in patterns]
        return "\n".join(lines) + "\n"
