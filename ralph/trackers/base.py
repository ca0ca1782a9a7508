"""Base tracker interface and task models."""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class TrackerError(Exception):
    """Tracker read/write error."""

    pass


class TaskStatus(str, Enum):
    """Task lifecycle states owned by the tracker."""

    OPEN = "open"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Task(BaseModel):
    """A unit of work the engine hands to an agent."""

    id: str
    title: str
    status: TaskStatus = Field(default=TaskStatus.OPEN)
    priority: int = Field(default=2, ge=0, le=4, description="0 = critical, 4 = backlog")
    description: Optional[str] = Field(default=None)
    acceptance_criteria: list[str] = Field(default_factory=list)
    labels: list[str] = Field(default_factory=list)
    type: Optional[str] = Field(default=None, description="feature, bug, epic, ...")
    parent_id: Optional[str] = Field(default=None)
    depends_on: list[str] = Field(default_factory=list)
    blocks: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    updated_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


class TaskFilter(BaseModel):
    """Criteria for selecting tasks."""

    status: Optional[list[TaskStatus]] = Field(default=None)
    labels: Optional[list[str]] = Field(default=None)
    parent_id: Optional[str] = Field(default=None)
    exclude_ids: list[str] = Field(default_factory=list)
    ready: bool = Field(default=False, description="Only tasks whose dependencies are done")

    def matches(self, task: Task) -> bool:
        """Check the non-dependency criteria against a task."""
        if self.status is not None and task.status not in self.status:
            return False
        if self.labels and not set(self.labels) & set(task.labels):
            return False
        if self.parent_id is not None and task.parent_id != self.parent_id:
            return False
        return task.id not in self.exclude_ids


class TaskCompletionResult(BaseModel):
    """Outcome of completing a task."""

    success: bool
    message: str
    task: Optional[Task] = Field(default=None)


class SyncResult(BaseModel):
    """Outcome of syncing with the tracker backend."""

    success: bool
    message: str
    added: int = Field(default=0)
    updated: int = Field(default=0)
    removed: int = Field(default=0)
    synced_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


class BaseTracker(ABC):
    """Base tracker interface.

    The tracker owns task storage and ordering. The engine asks it for the
    next task and reports status changes back; it never reorders tasks itself.
    """

    name: str = "base"

    @abstractmethod
    async def get_tasks(self, task_filter: Optional[TaskFilter] = None) -> list[Task]:
        """Return tasks matching the filter."""
        pass

    @abstractmethod
    async def get_task(self, task_id: str) -> Optional[Task]:
        """Return a single task or None."""
        pass

    @abstractmethod
    async def get_next_task(self, task_filter: Optional[TaskFilter] = None) -> Optional[Task]:
        """Return the next task to work on, honouring dependencies and priority.

        Args:
            task_filter: Selection criteria

        Returns:
            The next ready task, or None if nothing is actionable
        """
        pass

    @abstractmethod
    async def is_complete(self, task_filter: Optional[TaskFilter] = None) -> bool:
        """Return True when every matching task is completed or cancelled."""
        pass

    @abstractmethod
    async def update_task_status(self, task_id: str, status: TaskStatus) -> Optional[Task]:
        """Change a task's status.

        Returns:
            The updated task, or None if it does not exist
        """
        pass

    @abstractmethod
    async def complete_task(
        self, task_id: str, reason: Optional[str] = None
    ) -> TaskCompletionResult:
        """Mark a task completed."""
        pass

    @abstractmethod
    async def sync(self) -> SyncResult:
        """Reload state from the backing store."""
        pass

    def get_template(self) -> Optional[str]:
        """Return a tracker-specific prompt template, if any."""
        return None

    async def dispose(self) -> None:
        """Release tracker resources."""
        return None
