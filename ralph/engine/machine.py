"""Execution engine state machine.

The engine owns the run loop and the lifecycle ``idle -> running ->
{pausing -> paused -> running} -> stopping -> idle``. Each loop pass hands a
single iteration to the IterationController; pause is honoured only between
iterations, while stop interrupts the in-flight agent immediately.
"""

import asyncio
import dataclasses
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from ..agents.base import AgentError, BaseAgent, ExecutionHandle
from ..agents.registry import AgentFactory
from ..config.models import RalphConfig
from ..logs.iteration_log import IterationLogWriter
from ..logs.progress import ProgressLog
from ..state.session import SessionStatus, SessionStore
from ..templates.renderer import PromptRenderer
from ..trackers.base import BaseTracker, Task, TaskFilter, TaskStatus
from .auto_commit import AutoCommitResult, perform_auto_commit
from .budget import IterationBudget
from .diff_summary import generate_diff_summary
from .errors import AlreadyRunningError, InitializationError, NotInitializedError
from .escalation import ModelEscalation
from .events import (
    EngineEvent,
    EnginePausedEvent,
    EngineResumedEvent,
    EngineStartedEvent,
    EngineStoppedEvent,
    EventBus,
    IterationsAddedEvent,
    IterationsRemovedEvent,
    TasksRefreshedEvent,
)
from .fallback import AgentFallbackCoordinator
from .iteration import ACTIVE_STATUSES, IterationController
from .models import (
    ActiveAgentInfo,
    DiffSummary,
    EngineState,
    EngineStatus,
    IterationInfo,
    RateLimitState,
    StopReason,
)
from .rate_limit import RateLimitDetector

logger = logging.getLogger(__name__)

TrackerFactory = Callable[[], Awaitable[BaseTracker]]
DiffSummarizer = Callable[[Path], Awaitable[Optional[DiffSummary]]]
AutoCommitter = Callable[[Path, str, str, Optional[int]], Awaitable[AutoCommitResult]]

SESSION_STATUS_FOR_REASON = {
    StopReason.COMPLETE: SessionStatus.COMPLETED,
    StopReason.ERROR: SessionStatus.FAILED,
    StopReason.INTERRUPTED: SessionStatus.INTERRUPTED,
    StopReason.NO_TASKS: SessionStatus.PAUSED,
    StopReason.MAX_ITERATIONS: SessionStatus.PAUSED,
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class ExecutionEngine:
    """Drives a coding agent through the tracker's backlog.

    Collaborators are injected so the engine can run against fakes:
    ``tracker_factory`` and ``agent_factory`` are async factories, the rest
    default to the file-based implementations under ``config.output_dir``.
    """

    def __init__(
        self,
        config: RalphConfig,
        tracker_factory: TrackerFactory,
        agent_factory: AgentFactory,
        session_store: Optional[SessionStore] = None,
        log_writer: Optional[IterationLogWriter] = None,
        progress_log: Optional[ProgressLog] = None,
        renderer: Optional[PromptRenderer] = None,
        diff_summarizer: DiffSummarizer = generate_diff_summary,
        auto_committer: AutoCommitter = perform_auto_commit,
    ):
        """Initialize engine.

        Args:
            config: Loaded configuration
            tracker_factory: Async callable returning the task tracker
            agent_factory: Async callable returning an agent by name
            session_store: Session persistence
            log_writer: Per-iteration log writer
            progress_log: Progress file shared with the agent
            renderer: Prompt renderer
            diff_summarizer: Produces a DiffSummary for the working tree
            auto_committer: Commits the work of a completed task
        """
        self.config = config
        self.tracker_factory = tracker_factory
        self.agent_factory = agent_factory

        output_dir = config.cwd / config.output_dir
        self.session_store = session_store or SessionStore(output_dir / "session.json")
        self.log_writer = log_writer or IterationLogWriter(output_dir / "iterations")
        self.progress_log = progress_log or ProgressLog(config.cwd / config.progress_file)
        self.renderer = renderer or PromptRenderer(config.prompt_template)
        self.diff_summarizer = diff_summarizer
        self.auto_committer = auto_committer

        self.bus = EventBus()
        self.state = EngineState(max_iterations=config.max_iterations)
        self.budget = IterationBudget(config.max_iterations)
        self.coordinator = AgentFallbackCoordinator(
            config.agent, config.fallback_agents, config.rate_limit_handling, self.bus
        )
        self.detector = RateLimitDetector()
        self.escalation = ModelEscalation(config.model_escalation)
        self.controller = IterationController(self)

        self.tracker: Optional[BaseTracker] = None
        self.auto_commit = config.auto_commit
        self.current_handle: Optional[ExecutionHandle] = None

        self._agents: dict[str, BaseAgent] = {}
        self._activated: dict[str, None] = {}
        self._stop_event = asyncio.Event()
        self._resume_event = asyncio.Event()
        self._loop_done: Optional[asyncio.Future] = None
        self._last_stop_reason: Optional[StopReason] = None
        self._initialized = False

    # Collaborators

    @property
    def session_id(self) -> str:
        session = self.session_store.session
        return session.session_id if session else ""

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    async def get_agent(self, name: str) -> BaseAgent:
        """Return a cached agent, creating and probing fallbacks on first use.

        Raises:
            AgentError: If a fallback agent is not available
        """
        if name in self._agents:
            return self._agents[name]

        agent = await self.agent_factory(name)
        if name != self.config.agent:
            detected = await agent.detect()
            if not detected.available:
                raise AgentError(f"Agent {name} not available: {detected.error}")
        self._agents[name] = agent
        return agent

    async def sleep(self, ms: int) -> bool:
        """Sleep unless stopped.

        Returns:
            True if a stop was requested
        """
        if ms > 0 and not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=ms / 1000)
            except TimeoutError:
                pass
        return self._stop_event.is_set()

    def mark_activated(self, task_id: str) -> None:
        self._activated[task_id] = None
        self._persist(lambda store: store.set_active_tasks(list(self._activated)))

    def unmark_activated(self, task_id: str) -> None:
        if task_id in self._activated:
            del self._activated[task_id]
            self._persist(lambda store: store.set_active_tasks(list(self._activated)))

    @property
    def activated_task_ids(self) -> list[str]:
        """Tasks this engine set in_progress and has not completed."""
        return list(self._activated)

    def _persist(self, update: Callable[[SessionStore], None]) -> None:
        if self.session_store.session is None:
            return
        try:
            update(self.session_store)
        except Exception as e:
            logger.warning(f"Failed to update session: {e}")

    def _require_tracker(self) -> BaseTracker:
        if self.tracker is None:
            raise NotInitializedError()
        return self.tracker

    # Lifecycle

    async def initialize(self) -> None:
        """Acquire the tracker and primary agent and create the session.

        Raises:
            InitializationError: If the tracker or agent cannot be set up
        """
        try:
            self.tracker = await self.tracker_factory()
            agent = await self.agent_factory(self.config.agent)
            detected = await agent.detect()
            if not detected.available:
                raise InitializationError(
                    f"Agent {self.config.agent} not available: {detected.error}"
                )
            self._agents[self.config.agent] = agent
            logger.info(f"Agent {self.config.agent} ready ({detected.version or 'unknown version'})")

            await self.tracker.sync()
            tasks = await self.tracker.get_tasks(TaskFilter(status=ACTIVE_STATUSES))
        except InitializationError:
            raise
        except Exception as e:
            raise InitializationError(f"Failed to initialize engine: {e}") from e

        self.state.total_tasks = len(tasks)
        try:
            self.session_store.create(
                agent=self.config.agent,
                tracker=self.config.tracker.plugin,
                cwd=self.config.cwd,
                max_iterations=self.config.max_iterations,
                total_tasks=len(tasks),
            )
        except Exception as e:
            logger.warning(f"Failed to create session: {e}")

        self._initialized = True
        logger.info(f"Engine initialized with {len(tasks)} open tasks")

    def _check_startable(self) -> None:
        if not self._initialized:
            raise NotInitializedError()
        if self.state.status != EngineStatus.IDLE:
            raise AlreadyRunningError(self.state.status.value)

    def _enter_running(self) -> None:
        self.state.status = EngineStatus.RUNNING
        self._stop_event.clear()
        self._resume_event.clear()
        self._loop_done = asyncio.get_running_loop().create_future()

    async def start(self) -> StopReason:
        """Run the loop until a stop condition.

        Returns:
            The reason the engine stopped

        Raises:
            NotInitializedError: If initialize() has not been called
            AlreadyRunningError: If the engine is not idle
        """
        self._check_startable()
        self._enter_running()
        self.state.started_at = _now()
        self.controller.reset()

        try:
            tasks = await self._require_tracker().get_tasks(TaskFilter(status=ACTIVE_STATUSES))
        except Exception as e:
            logger.warning(f"Failed to list tasks at start: {e}")
            tasks = []

        logger.info(f"Engine started: {len(tasks)} tasks, max_iterations={self.budget.max_iterations}")
        self.bus.emit(
            EngineStartedEvent(session_id=self.session_id, total_tasks=len(tasks), tasks=tasks)
        )
        self._persist(lambda store: store.update_status(SessionStatus.RUNNING))
        return await self._run()

    async def continue_execution(self) -> StopReason:
        """Re-enter the loop from idle, typically after add_iterations() returned True.

        Returns:
            The reason the engine stopped
        """
        self._check_startable()
        self._enter_running()
        logger.info(f"Continuing from iteration {self.budget.current_iteration}")
        self.bus.emit(EngineResumedEvent(from_iteration=self.budget.current_iteration))
        self._persist(lambda store: store.update_status(SessionStatus.RUNNING))
        return await self._run()

    async def _run(self) -> StopReason:
        reason = StopReason.ERROR
        try:
            reason = await self._run_loop()
        except asyncio.CancelledError:
            reason = StopReason.INTERRUPTED
            raise
        except Exception as e:
            logger.error(f"Engine loop failed: {e}", exc_info=True)
            reason = StopReason.ERROR
        finally:
            self.state.status = EngineStatus.IDLE
            self.state.current_task = None
            self.current_handle = None
            self._last_stop_reason = reason
            status = (
                SessionStatus.INTERRUPTED
                if self.stop_requested
                else SESSION_STATUS_FOR_REASON[reason]
            )
            self._persist(lambda store: store.update_status(status))
            logger.info(f"Engine stopped: {reason.value}")
            self.bus.emit(
                EngineStoppedEvent(
                    reason=reason,
                    total_iterations=self.budget.current_iteration,
                    tasks_completed=self.state.tasks_completed,
                )
            )
            if self._loop_done is not None and not self._loop_done.done():
                self._loop_done.set_result(reason)
        return reason

    async def _run_loop(self) -> StopReason:
        while True:
            if self.stop_requested:
                return StopReason.INTERRUPTED

            if self.state.status == EngineStatus.PAUSING:
                self.state.status = EngineStatus.PAUSED
                logger.info(f"Paused after iteration {self.budget.current_iteration}")
                self.bus.emit(EnginePausedEvent(current_iteration=self.budget.current_iteration))
                self._persist(lambda store: store.update_status(SessionStatus.PAUSED))
                await self._resume_event.wait()
                self._resume_event.clear()
                if self.stop_requested:
                    return StopReason.INTERRUPTED
                # resume() already set RUNNING; a pause() since then must survive
                logger.info("Resumed")
                self.bus.emit(EngineResumedEvent(from_iteration=self.budget.current_iteration))
                self._persist(lambda store: store.update_status(SessionStatus.RUNNING))
                continue

            if self.budget.exhausted():
                logger.info(f"Reached max iterations ({self.budget.max_iterations})")
                return StopReason.MAX_ITERATIONS

            reason = await self.controller.run_once()
            if reason is not None:
                return reason
            if self.stop_requested:
                return StopReason.INTERRUPTED

            await self.sleep(self.config.iteration_delay_ms)

    def pause(self) -> None:
        """Request a pause at the next iteration boundary."""
        if self.state.status == EngineStatus.RUNNING:
            self.state.status = EngineStatus.PAUSING
            logger.info("Pause requested")

    def resume(self) -> None:
        """Cancel a pending pause or wake a paused loop."""
        if self.state.status == EngineStatus.PAUSING:
            self.state.status = EngineStatus.RUNNING
            logger.info("Pause cancelled")
        elif self.state.status == EngineStatus.PAUSED:
            self.state.status = EngineStatus.RUNNING
            self._resume_event.set()

    async def stop(self) -> None:
        """Interrupt the running agent and wait for the loop to finish."""
        if self.state.status == EngineStatus.IDLE:
            return

        if self.state.status != EngineStatus.STOPPING:
            logger.info("Stopping engine")
            self.state.status = EngineStatus.STOPPING
            self._stop_event.set()
            self._resume_event.set()
            if self.current_handle is not None:
                self.current_handle.interrupt()
            self._persist(lambda store: store.update_status(SessionStatus.INTERRUPTED))

        if self._loop_done is not None:
            await asyncio.shield(self._loop_done)

    async def dispose(self) -> None:
        """Stop if needed and release agents, tracker and listeners."""
        await self.stop()
        for name, agent in self._agents.items():
            try:
                await agent.dispose()
            except Exception as e:
                logger.warning(f"Failed to dispose agent {name}: {e}")
        self._agents.clear()
        if self.tracker is not None:
            try:
                await self.tracker.dispose()
            except Exception as e:
                logger.warning(f"Failed to dispose tracker: {e}")
        self.bus.clear()
        self._initialized = False

    # Requests

    def add_iterations(self, n: int) -> bool:
        """Raise the iteration budget.

        Returns:
            True if the engine is idle because the budget had run out,
            i.e. the caller should continue_execution()
        """
        change = self.budget.add(n)
        if change is None:
            return False
        previous, new_max = change
        self.state.max_iterations = new_max
        self._persist(lambda store: store.update_max_iterations(new_max))
        self.bus.emit(
            IterationsAddedEvent(
                added=n,
                previous_max=previous,
                new_max=new_max,
                current_iteration=self.budget.current_iteration,
            )
        )
        return (
            self.state.status == EngineStatus.IDLE
            and self._last_stop_reason == StopReason.MAX_ITERATIONS
        )

    def remove_iterations(self, n: int) -> bool:
        """Lower the iteration budget, never below 1.

        Returns:
            True if the budget changed
        """
        change = self.budget.remove(n)
        if change is None:
            return False
        previous, new_max = change
        self.state.max_iterations = new_max
        self._persist(lambda store: store.update_max_iterations(new_max))
        self.bus.emit(
            IterationsRemovedEvent(
                removed=previous - new_max,
                previous_max=previous,
                new_max=new_max,
                current_iteration=self.budget.current_iteration,
            )
        )
        return True

    async def refresh_tasks(self) -> list[Task]:
        """Re-sync the tracker and publish the current task list."""
        tracker = self._require_tracker()
        await tracker.sync()
        tasks = await tracker.get_tasks()
        self.state.total_tasks = len([t for t in tasks if t.status in ACTIVE_STATUSES])
        self.bus.emit(TasksRefreshedEvent(tasks=tasks))
        return tasks

    async def reset_tasks_to_open(self, task_ids: list[str]) -> int:
        """Set tasks back to open, e.g. those left in_progress by an interrupted run.

        Returns:
            Number of tasks reset
        """
        tracker = self._require_tracker()
        count = 0
        for task_id in task_ids:
            try:
                await tracker.update_task_status(task_id, TaskStatus.OPEN)
            except Exception as e:
                logger.warning(f"Failed to reset {task_id}: {e}")
                continue
            self.unmark_activated(task_id)
            count += 1
        if count:
            logger.info(f"Reset {count} task(s) to open")
        return count

    def set_auto_commit(self, enabled: bool) -> None:
        self.auto_commit = enabled

    async def generate_prompt_preview(self, task_id: str) -> Optional[str]:
        """Render the prompt a task would receive, or None if it does not exist."""
        task = await self._require_tracker().get_task(task_id)
        if task is None:
            return None
        return await self.controller.build_prompt(task)

    # Snapshots

    def on(self, listener: Callable[[EngineEvent], None]) -> Callable[[], None]:
        return self.bus.on(listener)

    def get_status(self) -> EngineStatus:
        return self.state.status

    def get_state(self) -> EngineState:
        """Return a copy of the engine state."""
        return dataclasses.replace(
            self.state,
            iterations=list(self.state.iterations),
            subagents=dict(self.state.subagents),
        )

    def get_iteration_info(self) -> IterationInfo:
        return self.budget.info()

    def get_active_agent_info(self) -> ActiveAgentInfo:
        return self.coordinator.get_active_agent_info()

    def get_rate_limit_state(self) -> RateLimitState:
        return self.coordinator.get_rate_limit_state()

    def is_paused(self) -> bool:
        return self.state.status == EngineStatus.PAUSED

    def is_pausing(self) -> bool:
        return self.state.status == EngineStatus.PAUSING

    def get_tracker(self) -> Optional[BaseTracker]:
        return self.tracker
