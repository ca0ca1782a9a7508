"""Engine events and the event bus.

Every event is a frozen dataclass with a literal ``type`` tag, so listeners
can dispatch with ``match event.type`` or ``isinstance``.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Literal, Optional, Union

from ..trackers.base import Task
from .models import IterationResult, RateLimitState, StopReason

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True, kw_only=True)
class BaseEvent:
    timestamp: str = field(default_factory=_now)


# Engine lifecycle


@dataclass(frozen=True, kw_only=True)
class EngineStartedEvent(BaseEvent):
    type: Literal["engine:started"] = field(default="engine:started", init=False)
    session_id: str
    total_tasks: int
    tasks: list[Task] = field(default_factory=list)


@dataclass(frozen=True, kw_only=True)
class EngineStoppedEvent(BaseEvent):
    type: Literal["engine:stopped"] = field(default="engine:stopped", init=False)
    reason: StopReason
    total_iterations: int
    tasks_completed: int


@dataclass(frozen=True, kw_only=True)
class EnginePausedEvent(BaseEvent):
    type: Literal["engine:paused"] = field(default="engine:paused", init=False)
    current_iteration: int


@dataclass(frozen=True, kw_only=True)
class EngineResumedEvent(BaseEvent):
    type: Literal["engine:resumed"] = field(default="engine:resumed", init=False)
    from_iteration: int


@dataclass(frozen=True, kw_only=True)
class IterationsAddedEvent(BaseEvent):
    type: Literal["engine:iterations-added"] = field(
        default="engine:iterations-added", init=False
    )
    added: int
    previous_max: int
    new_max: int
    current_iteration: int


@dataclass(frozen=True, kw_only=True)
class IterationsRemovedEvent(BaseEvent):
    type: Literal["engine:iterations-removed"] = field(
        default="engine:iterations-removed", init=False
    )
    removed: int
    previous_max: int
    new_max: int
    current_iteration: int


# Iterations


@dataclass(frozen=True, kw_only=True)
class IterationStartedEvent(BaseEvent):
    type: Literal["iteration:started"] = field(default="iteration:started", init=False)
    iteration: int
    task: Task
    agent: str


@dataclass(frozen=True, kw_only=True)
class IterationCompletedEvent(BaseEvent):
    type: Literal["iteration:completed"] = field(default="iteration:completed", init=False)
    result: IterationResult


@dataclass(frozen=True, kw_only=True)
class IterationFailedEvent(BaseEvent):
    type: Literal["iteration:failed"] = field(default="iteration:failed", init=False)
    iteration: int
    task: Task
    error: str
    action: Literal["retry", "skip", "abort"]
    result: Optional[IterationResult] = None


@dataclass(frozen=True, kw_only=True)
class IterationRetryingEvent(BaseEvent):
    type: Literal["iteration:retrying"] = field(default="iteration:retrying", init=False)
    iteration: int
    task: Task
    retry_attempt: int
    max_retries: int
    previous_error: str
    delay_ms: int


@dataclass(frozen=True, kw_only=True)
class IterationSkippedEvent(BaseEvent):
    type: Literal["iteration:skipped"] = field(default="iteration:skipped", init=False)
    iteration: int
    task: Task
    reason: str


@dataclass(frozen=True, kw_only=True)
class IterationRateLimitedEvent(BaseEvent):
    type: Literal["iteration:rate-limited"] = field(
        default="iteration:rate-limited", init=False
    )
    iteration: int
    task: Task
    agent: str
    retry_attempt: int
    max_retries: int
    delay_ms: int
    rate_limit_message: Optional[str] = None


# Tasks


@dataclass(frozen=True, kw_only=True)
class TaskSelectedEvent(BaseEvent):
    type: Literal["task:selected"] = field(default="task:selected", init=False)
    task: Task
    iteration: int


@dataclass(frozen=True, kw_only=True)
class TaskActivatedEvent(BaseEvent):
    type: Literal["task:activated"] = field(default="task:activated", init=False)
    task: Task
    iteration: int


@dataclass(frozen=True, kw_only=True)
class TaskCompletedEvent(BaseEvent):
    type: Literal["task:completed"] = field(default="task:completed", init=False)
    task: Task
    iteration: int


@dataclass(frozen=True, kw_only=True)
class TaskAutoCommittedEvent(BaseEvent):
    type: Literal["task:auto-committed"] = field(default="task:auto-committed", init=False)
    task: Task
    iteration: int
    commit_message: str
    commit_sha: Optional[str] = None


@dataclass(frozen=True, kw_only=True)
class TaskAutoCommitFailedEvent(BaseEvent):
    type: Literal["task:auto-commit-failed"] = field(
        default="task:auto-commit-failed", init=False
    )
    task: Task
    iteration: int
    error: str


@dataclass(frozen=True, kw_only=True)
class TaskAutoCommitSkippedEvent(BaseEvent):
    type: Literal["task:auto-commit-skipped"] = field(
        default="task:auto-commit-skipped", init=False
    )
    task: Task
    iteration: int
    reason: str


@dataclass(frozen=True, kw_only=True)
class TasksRefreshedEvent(BaseEvent):
    type: Literal["tasks:refreshed"] = field(default="tasks:refreshed", init=False)
    tasks: list[Task]


@dataclass(frozen=True, kw_only=True)
class AllCompleteEvent(BaseEvent):
    type: Literal["all:complete"] = field(default="all:complete", init=False)
    total_completed: int
    total_iterations: int


# Agents


@dataclass(frozen=True, kw_only=True)
class AgentOutputEvent(BaseEvent):
    type: Literal["agent:output"] = field(default="agent:output", init=False)
    iteration: int
    stream: Literal["stdout", "stderr"]
    data: str


@dataclass(frozen=True, kw_only=True)
class AgentSwitchedEvent(BaseEvent):
    type: Literal["agent:switched"] = field(default="agent:switched", init=False)
    previous_agent: str
    new_agent: str
    reason: Literal["fallback", "primary"]
    rate_limit_state: RateLimitState


@dataclass(frozen=True, kw_only=True)
class AllAgentsLimitedEvent(BaseEvent):
    type: Literal["agent:all-limited"] = field(default="agent:all-limited", init=False)
    tried_agents: list[str]
    task: Optional[Task] = None


EngineEvent = Union[
    EngineStartedEvent,
    EngineStoppedEvent,
    EnginePausedEvent,
    EngineResumedEvent,
    IterationsAddedEvent,
    IterationsRemovedEvent,
    IterationStartedEvent,
    IterationCompletedEvent,
    IterationFailedEvent,
    IterationRetryingEvent,
    IterationSkippedEvent,
    IterationRateLimitedEvent,
    TaskSelectedEvent,
    TaskActivatedEvent,
    TaskCompletedEvent,
    TaskAutoCommittedEvent,
    TaskAutoCommitFailedEvent,
    TaskAutoCommitSkippedEvent,
    TasksRefreshedEvent,
    AllCompleteEvent,
    AgentOutputEvent,
    AgentSwitchedEvent,
    AllAgentsLimitedEvent,
]

EventListener = Callable[[EngineEvent], None]


class EventBus:
    """Synchronous fan-out of engine events.

    Listeners run in registration order. A listener that raises is logged and
    skipped; the remaining listeners and the engine are unaffected.
    """

    def __init__(self):
        self._listeners: list[EventListener] = []

    def on(self, listener: EventListener) -> Callable[[], None]:
        """Register a listener.

        Args:
            listener: Called with every emitted event

        Returns:
            Function that unregisters the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def emit(self, event: EngineEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.debug(f"Listener failed on {event.type}; ignoring", exc_info=True)

    def clear(self) -> None:
        self._listeners.clear()

    def __len__(self) -> int:
        return len(self._listeners)
