"""Commit the work of a completed task."""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ..utils.git import GitError, GitOps

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AutoCommitResult:
    """Outcome of an auto-commit attempt."""

    committed: bool
    commit_message: Optional[str] = None
    commit_sha: Optional[str] = None
    skip_reason: Optional[str] = None
    error: Optional[str] = None


def build_commit_message(task_id: str, task_title: str, iteration: Optional[int] = None) -> str:
    title = " ".join(task_title.splitlines()).strip()
    message = f"feat(ralph): {task_id} - {title}"
    if iteration is not None:
        message += f"\n\nIteration: {iteration}\nAgent: ralph"
    return message


async def perform_auto_commit(
    cwd: Path,
    task_id: str,
    task_title: str,
    iteration: Optional[int] = None,
) -> AutoCommitResult:
    """Stage everything and commit with a standard message.

    Never raises; git failures are reported in ``AutoCommitResult.error``.

    Args:
        cwd: Repository directory
        task_id: Completed task ID
        task_title: Completed task title
        iteration: Iteration that completed the task

    Returns:
        AutoCommitResult
    """
    git = GitOps(cwd)
    try:
        if not await git.has_uncommitted_changes():
            return AutoCommitResult(committed=False, skip_reason="no uncommitted changes")

        await git.add_all()
        message = build_commit_message(task_id, task_title, iteration)
        sha = await git.commit(message)
    except GitError as e:
        logger.error(f"Auto-commit failed for {task_id}: {e}")
        return AutoCommitResult(committed=False, error=str(e))

    return AutoCommitResult(committed=True, commit_message=message, commit_sha=sha or None)
