"""Git operations wrapper."""

import logging
from pathlib import Path

from .subprocess import SubprocessError, SubprocessManager

logger = logging.getLogger(__name__)


class GitError(Exception):
    """Git operation error."""

    pass


class GitOps:
    """Git operations wrapper."""

    def __init__(self, repo_root: Path, timeout_sec: int = 30):
        """Initialize Git operations.

        Args:
            repo_root: Repository root directory
            timeout_sec: Default timeout for operations
        """
        self.repo_root = repo_root
        self.timeout_sec = timeout_sec
        self.manager = SubprocessManager(timeout_sec=timeout_sec)

    async def run_git(self, args: list[str], check: bool = True) -> dict:
        """Run git command.

        Args:
            args: Git arguments
            check: Whether to check exit code

        Returns:
            Result dict

        Raises:
            GitError: On failure
        """
        command = ["git"] + args
        try:
            result = await self.manager.run(command, cwd=self.repo_root)

            if check and not result["success"]:
                raise GitError(f"Git command failed: {' '.join(args)}\n{result['output']}")

            return result

        except SubprocessError as e:
            raise GitError(f"Git subprocess error: {e}")

    async def status_porcelain(self) -> str:
        """Get `git status --porcelain` output.

        Returns:
            Raw porcelain output (may be empty)
        """
        result = await self.run_git(["status", "--porcelain"])
        return result["stdout"]

    async def has_uncommitted_changes(self) -> bool:
        """Check whether the working tree has staged, unstaged or untracked changes."""
        return bool((await self.status_porcelain()).strip())

    async def add_all(self) -> None:
        """Stage all changes, including untracked files."""
        await self.run_git(["add", "-A"])

    async def commit(self, message: str) -> str:
        """Commit staged changes.

        Args:
            message: Commit message

        Returns:
            Short commit hash
        """
        await self.run_git(["commit", "-m", message])

        result = await self.run_git(["rev-parse", "--short", "HEAD"])
        commit_hash = result["stdout"].strip()
        logger.info(f"Created commit: {commit_hash}")
        return commit_hash
