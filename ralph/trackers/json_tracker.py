"""Tracker backed by a prd.json file.

File format::

    {
      "name": "my-feature",
      "description": "optional",
      "userStories": [
        {"id": "US-001", "title": "...", "priority": 1, "passes": false,
         "dependsOn": [], "acceptanceCriteria": ["..."], "labels": []}
      ]
    }

``passes`` is the only persisted status. ``in_progress`` is tracked in memory
for the lifetime of the tracker.
"""

import json
import logging
from pathlib import Path
from typing import Optional

from .base import (
    BaseTracker,
    SyncResult,
    Task,
    TaskCompletionResult,
    TaskFilter,
    TaskStatus,
    TrackerError,
)

logger = logging.getLogger(__name__)

_DONE = (TaskStatus.COMPLETED, TaskStatus.CANCELLED)


def _map_priority(prd_priority: Optional[int]) -> int:
    """Convert a 1-based prd priority to the 0-4 task scale."""
    if prd_priority is None:
        return 2
    return max(0, min(4, prd_priority - 1))


class JsonTracker(BaseTracker):
    """prd.json tracker."""

    name = "json"

    def __init__(self, path: Path):
        """Initialize tracker.

        Args:
            path: Path to prd.json
        """
        self.path = path
        self._data: dict | None = None
        self._in_progress: set[str] = set()

    def _read(self) -> dict:
        """Read and validate the prd file.

        Raises:
            TrackerError: If the file is missing or malformed
        """
        if not self.path.exists():
            raise TrackerError(f"Task file not found: {self.path}")

        try:
            with open(self.path, "r") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise TrackerError(f"Invalid JSON in {self.path}: {e}")

        if not isinstance(data, dict) or not isinstance(data.get("userStories"), list):
            raise TrackerError(f'{self.path} must contain a "userStories" array')

        for i, story in enumerate(data["userStories"]):
            if not isinstance(story, dict) or "id" not in story or "title" not in story:
                raise TrackerError(f'userStories[{i}]: "id" and "title" are required')
            story.setdefault("passes", False)

        self._data = data
        return data

    def _write(self, data: dict) -> None:
        """Write the prd file atomically."""
        temp_path = self.path.with_suffix(".tmp")
        with open(temp_path, "w") as f:
            json.dump(data, f, indent=2)
            f.write("\n")
        temp_path.replace(self.path)
        self._data = data

    @staticmethod
    def _project_name(data: dict) -> Optional[str]:
        return data.get("name") or data.get("project")

    def _to_task(self, story: dict, data: dict) -> Task:
        if story.get("passes"):
            status = TaskStatus.COMPLETED
        elif story["id"] in self._in_progress:
            status = TaskStatus.IN_PROGRESS
        else:
            status = TaskStatus.OPEN

        return Task(
            id=story["id"],
            title=story["title"],
            status=status,
            priority=_map_priority(story.get("priority")),
            description=story.get("description"),
            acceptance_criteria=story.get("acceptanceCriteria") or [],
            labels=story.get("labels") or [],
            type="story",
            parent_id=self._project_name(data),
            depends_on=story.get("dependsOn") or [],
            metadata={"notes": story.get("notes")} if story.get("notes") else {},
        )

    def _all_tasks(self) -> list[Task]:
        data = self._data if self._data is not None else self._read()
        return [self._to_task(story, data) for story in data["userStories"]]

    async def get_tasks(self, task_filter: Optional[TaskFilter] = None) -> list[Task]:
        tasks = self._all_tasks()
        if task_filter is None:
            return tasks

        selected = [t for t in tasks if task_filter.matches(t)]
        if task_filter.ready:
            by_id = {t.id: t for t in tasks}
            selected = [t for t in selected if self._is_ready(t, by_id)]
        return selected

    @staticmethod
    def _is_ready(task: Task, by_id: dict[str, Task]) -> bool:
        """A task is ready when every known dependency is completed or cancelled."""
        for dep_id in task.depends_on:
            dep = by_id.get(dep_id)
            if dep is not None and dep.status not in _DONE:
                return False
        return True

    async def get_task(self, task_id: str) -> Optional[Task]:
        for task in self._all_tasks():
            if task.id == task_id:
                return task
        return None

    async def get_next_task(self, task_filter: Optional[TaskFilter] = None) -> Optional[Task]:
        """Return the highest-priority ready task.

        Ties keep file order. In-progress tasks come first so an interrupted
        task is resumed before new work starts.
        """
        task_filter = task_filter.model_copy() if task_filter else TaskFilter()
        if task_filter.status is None:
            task_filter.status = [TaskStatus.OPEN, TaskStatus.IN_PROGRESS]
        task_filter.ready = True

        tasks = await self.get_tasks(task_filter)
        if not tasks:
            return None

        tasks.sort(key=lambda t: (t.status != TaskStatus.IN_PROGRESS, t.priority))
        return tasks[0]

    async def is_complete(self, task_filter: Optional[TaskFilter] = None) -> bool:
        tasks = await self.get_tasks(task_filter)
        return all(t.status in _DONE for t in tasks)

    def _find_story(self, data: dict, task_id: str) -> Optional[dict]:
        for story in data["userStories"]:
            if story["id"] == task_id:
                return story
        return None

    async def update_task_status(self, task_id: str, status: TaskStatus) -> Optional[Task]:
        data = self._read()
        story = self._find_story(data, task_id)
        if story is None:
            logger.warning(f"Cannot update unknown task: {task_id}")
            return None

        passes = status in _DONE
        if status == TaskStatus.IN_PROGRESS:
            self._in_progress.add(task_id)
        else:
            self._in_progress.discard(task_id)

        if story.get("passes") != passes:
            story["passes"] = passes
            self._write(data)

        return self._to_task(story, data)

    async def complete_task(
        self, task_id: str, reason: Optional[str] = None
    ) -> TaskCompletionResult:
        data = self._read()
        story = self._find_story(data, task_id)
        if story is None:
            return TaskCompletionResult(success=False, message=f"Task {task_id} not found")

        story["passes"] = True
        if reason:
            story["notes"] = reason
        self._in_progress.discard(task_id)
        self._write(data)

        return TaskCompletionResult(
            success=True,
            message=f"Task {task_id} marked as complete",
            task=self._to_task(story, data),
        )

    async def sync(self) -> SyncResult:
        before = {s["id"] for s in self._data["userStories"]} if self._data else set()
        data = self._read()
        after = {s["id"] for s in data["userStories"]}
        return SyncResult(
            success=True,
            message=f"Loaded {len(after)} tasks from {self.path.name}",
            added=len(after - before),
            removed=len(before - after),
        )
