"""Unit tests for auto-commit."""

from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from ralph.engine.auto_commit import build_commit_message, perform_auto_commit
from ralph.utils.git import GitError


def mock_git(git_cls, dirty=True, commit_sha="abc1234"):
    git = git_cls.return_value
    git.has_uncommitted_changes = AsyncMock(return_value=dirty)
    git.add_all = AsyncMock()
    git.commit = AsyncMock(return_value=commit_sha)
    return git


def test_build_commit_message():
    """Test the standard commit message layout."""
    assert build_commit_message("US-001", "Add login") == "feat(ralph): US-001 - Add login"
    assert build_commit_message("US-001", "Add\nlogin", 4) == (
        "feat(ralph): US-001 - Add login\n\nIteration: 4\nAgent: ralph"
    )


@pytest.mark.asyncio
async def test_commit_when_dirty():
    """Test changes are staged and committed."""
    with patch("ralph.engine.auto_commit.GitOps") as git_cls:
        git = mock_git(git_cls)
        result = await perform_auto_commit(Path("/repo"), "US-001", "Add login", 2)

    assert result.committed is True
    assert result.commit_sha == "abc1234"
    assert result.commit_message.startswith("feat(ralph): US-001 - Add login")
    git.add_all.assert_awaited_once()
    git.commit.assert_awaited_once_with(result.commit_message)


@pytest.mark.asyncio
async def test_skip_when_clean():
    """Test a clean tree is skipped without committing."""
    with patch("ralph.engine.auto_commit.GitOps") as git_cls:
        git = mock_git(git_cls, dirty=False)
        result = await perform_auto_commit(Path("/repo"), "US-001", "Add login")

    assert result.committed is False
    assert result.skip_reason == "no uncommitted changes"
    assert result.error is None
    git.commit.assert_not_awaited()


@pytest.mark.asyncio
async def test_git_failure_reported_not_raised():
    """Test git errors are returned in the result."""
    with patch("ralph.engine.auto_commit.GitOps") as git_cls:
        git = mock_git(git_cls)
        git.commit = AsyncMock(side_effect=GitError("nothing to commit"))
        result = await perform_auto_commit(Path("/repo"), "US-001", "Add login")

    assert result.committed is False
    assert "nothing to commit" in result.error
