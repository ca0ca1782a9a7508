"""Summarize working-tree changes for the rolling diff context."""

import logging
from pathlib import Path
from typing import Optional

from ..utils.git import GitOps
from .models import DiffSummary

logger = logging.getLogger(__name__)


def parse_porcelain(porcelain: str) -> DiffSummary:
    """Build a DiffSummary from `git status --porcelain` output.

    Args:
        porcelain: Raw porcelain output

    Returns:
        DiffSummary with "Created/Modified/Deleted" summary lines
    """
    added: list[str] = []
    changed: list[str] = []
    deleted: list[str] = []

    for line in porcelain.splitlines():
        if not line.strip():
            continue
        status = line[:2].strip()
        path = line[3:].strip()
        if " -> " in path:
            path = path.split(" -> ", 1)[1]

        if status in ("A", "??"):
            added.append(path)
        elif status == "D":
            deleted.append(path)
        else:
            changed.append(path)

    parts = []
    if added:
        parts.append(f"Created: {', '.join(added)}")
    if changed:
        parts.append(f"Modified: {', '.join(changed)}")
    if deleted:
        parts.append(f"Deleted: {', '.join(deleted)}")

    return DiffSummary(
        files_changed=tuple(changed),
        files_added=tuple(added),
        files_deleted=tuple(deleted),
        summary="\n".join(parts),
    )


async def generate_diff_summary(cwd: Path) -> Optional[DiffSummary]:
    """Summarize uncommitted changes in the project.

    Returns:
        DiffSummary, or None when the tree is clean

    Raises:
        GitError: If git is unavailable or cwd is not a repository
    """
    porcelain = await GitOps(cwd).status_porcelain()
    if not porcelain.strip():
        return None
    return parse_porcelain(porcelain)


def format_diff_context(entries: list[tuple[int, DiffSummary]]) -> str:
    """Format recent summaries as "### Iteration k" blocks.

    Args:
        entries: (iteration number, summary) pairs, oldest first

    Returns:
        Markdown text, empty when there are no entries
    """
    return "\n\n".join(f"### Iteration {iteration}\n{s.summary}" for iteration, s in entries)
