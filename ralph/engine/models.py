"""Engine state and result types."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Literal, Optional

from ..agents.base import AgentExecutionResult
from ..trackers.base import Task


class EngineStatus(str, Enum):
    """Engine lifecycle states."""

    IDLE = "idle"
    RUNNING = "running"
    PAUSING = "pausing"
    PAUSED = "paused"
    STOPPING = "stopping"


class StopReason(str, Enum):
    """Why the run loop ended."""

    COMPLETE = "complete"
    NO_TASKS = "no_tasks"
    MAX_ITERATIONS = "max_iterations"
    ERROR = "error"
    INTERRUPTED = "interrupted"


class IterationStatus(str, Enum):
    """Outcome of a single iteration."""

    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"
    INTERRUPTED = "interrupted"


@dataclass(frozen=True)
class DiffSummary:
    """Files changed by one iteration."""

    files_changed: tuple[str, ...] = ()
    files_added: tuple[str, ...] = ()
    files_deleted: tuple[str, ...] = ()
    summary: str = ""

    @property
    def is_empty(self) -> bool:
        return not (self.files_changed or self.files_added or self.files_deleted)


@dataclass(frozen=True)
class CommandResult:
    """One verification command run."""

    command: str
    exit_code: int | None
    stdout: str
    stderr: str
    passed: bool
    duration_ms: int


@dataclass(frozen=True)
class VerificationResult:
    """Outcome of the verification gate."""

    passed: bool
    results: tuple[CommandResult, ...] = ()
    duration_ms: int = 0


@dataclass(frozen=True)
class IterationResult:
    """Immutable record of one iteration."""

    iteration: int
    status: IterationStatus
    task: Task
    task_completed: bool
    promise_complete: bool
    duration_ms: int
    started_at: str
    ended_at: str
    agent: str
    agent_result: Optional[AgentExecutionResult] = None
    error: Optional[str] = None
    diff_summary: Optional[DiffSummary] = None
    verification: Optional[VerificationResult] = None
    model: Optional[str] = None
    completion_strategy: Optional[str] = None


@dataclass
class SubagentInfo:
    """A subagent spawned by the agent during an iteration."""

    id: str
    description: str
    status: str = "running"


@dataclass
class EngineState:
    """Mutable engine state owned by ExecutionEngine."""

    status: EngineStatus = EngineStatus.IDLE
    current_iteration: int = 0
    max_iterations: int = 0
    tasks_completed: int = 0
    total_tasks: int = 0
    current_task: Optional[Task] = None
    iterations: list[IterationResult] = field(default_factory=list)
    subagents: dict[str, SubagentInfo] = field(default_factory=dict)
    started_at: Optional[str] = None
    current_output: str = ""
    current_stderr: str = ""


@dataclass(frozen=True)
class IterationInfo:
    """Snapshot of the iteration budget."""

    current_iteration: int
    max_iterations: int


@dataclass(frozen=True)
class ActiveAgentInfo:
    """Which agent runs the next iteration and why."""

    plugin: str
    reason: Literal["primary", "fallback"]
    since: str


@dataclass(frozen=True)
class RateLimitState:
    """Read-only view of the fallback coordinator."""

    primary_agent: str
    active_agent: str
    active_agent_reason: Literal["primary", "fallback"]
    rate_limited_agents: frozenset[str] = frozenset()
    limited_at: Optional[str] = None


@dataclass(frozen=True)
class AgentSwitchEntry:
    """One agent switch, recorded in the iteration log."""

    at: str
    from_agent: str
    to_agent: str
    reason: Literal["fallback", "primary"]
