"""Session persistence with atomic writes."""

import json
import logging
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class SessionStatus(str, Enum):
    """Persisted session states."""

    RUNNING = "running"
    PAUSED = "paused"
    INTERRUPTED = "interrupted"
    COMPLETED = "completed"
    FAILED = "failed"


class IterationRecord(BaseModel):
    """Summary of one iteration stored in the session file."""

    iteration: int
    task_id: str
    task_title: str
    status: str
    task_completed: bool = Field(default=False)
    agent: Optional[str] = Field(default=None)
    duration_ms: int = Field(default=0)
    error: Optional[str] = Field(default=None)
    ended_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


class SessionModel(BaseModel):
    """Persisted engine session."""

    session_id: str = Field(description="Unique session identifier")
    status: SessionStatus = Field(default=SessionStatus.RUNNING)
    agent: str = Field(description="Primary agent name")
    tracker: str = Field(description="Tracker name")
    cwd: str = Field(description="Project directory")
    max_iterations: int = Field(default=0, description="Iteration budget (0 = unlimited)")
    current_iteration: int = Field(default=0)
    tasks_completed: int = Field(default=0)
    total_tasks: int = Field(default=0)
    active_task_ids: list[str] = Field(
        default_factory=list, description="Tasks set in_progress by this session"
    )
    iterations: list[IterationRecord] = Field(default_factory=list)
    created_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    updated_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


def generate_session_id() -> str:
    """Generate a timestamp-based session ID."""
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
    return f"session_{timestamp}"


def load_session(session_path: Path) -> Optional[SessionModel]:
    """Load session from file.

    Args:
        session_path: Path to session JSON file

    Returns:
        SessionModel or None if file doesn't exist
    """
    if not session_path.exists():
        return None

    with open(session_path, "r") as f:
        data = json.load(f)

    return SessionModel(**data)


def save_session(session: SessionModel, session_path: Path) -> None:
    """Save session to file with atomic write.

    Args:
        session: Session to save
        session_path: Destination path
    """
    session.updated_at = datetime.now(timezone.utc).isoformat()
    session_path.parent.mkdir(parents=True, exist_ok=True)

    temp_path = session_path.with_suffix(".tmp")
    with open(temp_path, "w") as f:
        json.dump(session.model_dump(mode="json"), f, indent=2)
    temp_path.replace(session_path)


class SessionStore:
    """Keeps the current session in memory and mirrors it to disk."""

    def __init__(self, session_path: Path):
        self.session_path = session_path
        self.session: Optional[SessionModel] = None

    def create(
        self,
        agent: str,
        tracker: str,
        cwd: Path,
        max_iterations: int,
        total_tasks: int,
    ) -> SessionModel:
        """Start a new session and persist it."""
        self.session = SessionModel(
            session_id=generate_session_id(),
            agent=agent,
            tracker=tracker,
            cwd=str(cwd),
            max_iterations=max_iterations,
            total_tasks=total_tasks,
        )
        save_session(self.session, self.session_path)
        logger.info(f"Created session {self.session.session_id}")
        return self.session

    def _require(self) -> SessionModel:
        if self.session is None:
            raise RuntimeError("No active session")
        return self.session

    def update_iteration(self, record: IterationRecord, tasks_completed: int) -> None:
        session = self._require()
        session.iterations.append(record)
        session.current_iteration = record.iteration
        session.tasks_completed = tasks_completed
        save_session(session, self.session_path)

    def update_status(self, status: SessionStatus) -> None:
        session = self._require()
        session.status = status
        save_session(session, self.session_path)

    def update_max_iterations(self, max_iterations: int) -> None:
        session = self._require()
        session.max_iterations = max_iterations
        save_session(session, self.session_path)

    def set_active_tasks(self, task_ids: list[str]) -> None:
        session = self._require()
        session.active_task_ids = list(task_ids)
        save_session(session, self.session_path)
