"""One SELECT -> BUILD -> EXECUTE -> DETECT pass of the engine."""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

from ..agents.base import (
    AgentExecutionResult,
    AgentExecutionStatus,
    BaseAgent,
    ExecuteOptions,
)
from ..logs.iteration_log import IterationLogContext
from ..state.session import IterationRecord
from ..templates.renderer import PromptContext
from ..trackers.base import Task, TaskFilter, TaskStatus
from ..utils.logging import log_context
from .completion import detect_completion
from .diff_summary import format_diff_context
from .errors import IterationFailure, IterationTimeout, RateLimited
from .events import (
    AgentOutputEvent,
    AllCompleteEvent,
    IterationCompletedEvent,
    IterationFailedEvent,
    IterationRateLimitedEvent,
    IterationRetryingEvent,
    IterationSkippedEvent,
    IterationStartedEvent,
    TaskActivatedEvent,
    TaskAutoCommitFailedEvent,
    TaskAutoCommitSkippedEvent,
    TaskAutoCommittedEvent,
    TaskCompletedEvent,
    TaskSelectedEvent,
)
from .models import DiffSummary, IterationResult, IterationStatus, StopReason, VerificationResult
from .verification import format_verification_errors, run_verification

if TYPE_CHECKING:
    from .machine import ExecutionEngine

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = [TaskStatus.OPEN, TaskStatus.IN_PROGRESS]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class _Execution:
    """Agent result plus how the engine ended the wait."""

    agent: str
    result: AgentExecutionResult
    timed_out: bool = False
    interrupted: bool = False
    error: Optional[str] = None


class IterationController:
    """Runs iterations for an ExecutionEngine and applies the error policy.

    The controller holds the state that spans iterations within a run: the
    skipped task set, the pending retry, per-task retry counts, the rolling
    diff-context window and verification feedback.
    """

    def __init__(self, engine: "ExecutionEngine"):
        self.engine = engine
        self.config = engine.config

        self.skipped: set[str] = set()
        self.pending_retry: Optional[Task] = None
        self.retry_attempts: dict[str, int] = {}
        self.select_failures = 0
        self.diff_window: deque[tuple[int, DiffSummary]] = deque(
            maxlen=self.config.diff_context_window
        )
        self.verification_errors: dict[str, str] = {}

    def reset(self) -> None:
        """Forget per-run state before a fresh start()."""
        self.skipped.clear()
        self.pending_retry = None
        self.retry_attempts.clear()
        self.select_failures = 0

    # SELECT

    async def _select(self) -> Task | StopReason | None:
        """Pick the next task.

        Returns:
            A task, a StopReason to end the run, or None to try again later
        """
        if self.pending_retry is not None:
            task, self.pending_retry = self.pending_retry, None
            return task

        tracker = self.engine.tracker
        handling = self.config.error_handling
        try:
            task = await tracker.get_next_task(
                TaskFilter(status=ACTIVE_STATUSES, exclude_ids=sorted(self.skipped))
            )
        except Exception as e:
            self.select_failures += 1
            logger.error(f"Task selection failed ({self.select_failures}): {e}")
            if handling.strategy == "abort" or self.select_failures > handling.max_retries:
                return StopReason.ERROR
            await self.engine.sleep(handling.retry_delay_ms)
            return None

        self.select_failures = 0
        if task is not None:
            return task

        try:
            complete = await tracker.is_complete()
        except Exception as e:
            logger.error(f"Tracker completion check failed: {e}")
            complete = False

        if complete:
            logger.info("All tasks complete")
            self.engine.bus.emit(
                AllCompleteEvent(
                    total_completed=self.engine.state.tasks_completed,
                    total_iterations=self.engine.budget.current_iteration,
                )
            )
            return StopReason.COMPLETE

        logger.info("No actionable tasks remain")
        return StopReason.NO_TASKS

    # BUILD

    async def build_prompt(self, task: Task) -> str:
        """Render the prompt for a task with progress, patterns and diff context."""
        engine = self.engine
        context = PromptContext(
            recent_progress=engine.progress_log.recent_summary(5),
            codebase_patterns=engine.progress_log.codebase_patterns_for_prompt(),
            diff_context=format_diff_context(list(self.diff_window)),
            verification_errors=self.verification_errors.get(task.id, ""),
        )
        rendered = engine.renderer.render(task, context, engine.tracker.get_template())
        return rendered.prompt

    def _model_for(self, task: Task) -> Optional[str]:
        if self.config.model_escalation.enabled:
            return self.engine.escalation.model_for(task.id)
        return self.config.model

    # EXECUTE

    async def _acquire_agent(self, name: str, task: Task) -> Optional[tuple[str, BaseAgent]]:
        """Get a usable agent, moving down the fallback list past broken ones."""
        coordinator = self.engine.coordinator
        while True:
            try:
                return name, await self.engine.get_agent(name)
            except Exception as e:
                logger.warning(f"Agent {name} could not be started: {e}")
                next_name = coordinator.mark_unavailable(name, task)
                if next_name is None:
                    return None
                name = next_name

    async def _execute(
        self,
        agent_name: str,
        agent: BaseAgent,
        prompt: str,
        iteration: int,
        model: Optional[str],
    ) -> _Execution:
        engine = self.engine
        state = engine.state

        def on_stdout(line: str) -> None:
            state.current_output += line
            engine.bus.emit(AgentOutputEvent(iteration=iteration, stream="stdout", data=line))

        def on_stderr(line: str) -> None:
            state.current_stderr += line
            engine.bus.emit(AgentOutputEvent(iteration=iteration, stream="stderr", data=line))

        options = ExecuteOptions(
            cwd=self.config.cwd,
            model=model,
            on_stdout=on_stdout,
            on_stderr=on_stderr,
        )
        handle = agent.execute(prompt, [], options)
        engine.current_handle = handle
        if engine.stop_requested:
            handle.interrupt()

        timeout = getattr(agent, "timeout_sec", None) or self.config.timeout_sec
        timed_out = False
        try:
            if timeout:
                result = await asyncio.wait_for(asyncio.shield(handle.task), timeout=timeout)
            else:
                result = await handle.wait()
        except TimeoutError:
            logger.warning(f"Iteration {iteration} timed out after {timeout}s; interrupting agent")
            handle.interrupt()
            result = await handle.wait()
            timed_out = True
        except asyncio.CancelledError:
            handle.interrupt()
            raise
        finally:
            engine.current_handle = None

        if result.status == AgentExecutionStatus.TIMEOUT:
            timed_out = True
        interrupted = not timed_out and (result.interrupted or engine.stop_requested)
        return _Execution(
            agent=agent_name,
            result=result,
            timed_out=timed_out,
            interrupted=interrupted,
            error=str(IterationTimeout(timeout)) if timed_out and timeout else None,
        )

    async def _execute_with_fallback(
        self, task: Task, prompt: str, iteration: int, agent_name: str, model: Optional[str]
    ) -> _Execution | str:
        """Execute, retrying on rate limits and switching agents as needed.

        Returns:
            The final execution, or an error string if no agent could run it
        """
        engine = self.engine
        coordinator = engine.coordinator
        handling = self.config.rate_limit_handling

        while True:
            acquired = await self._acquire_agent(agent_name, task)
            if acquired is None:
                return "No agent available: every configured agent failed to start"
            agent_name, agent = acquired

            execution = await self._execute(agent_name, agent, prompt, iteration, model)
            result = execution.result
            if execution.interrupted or execution.timed_out:
                return execution
            if not handling.enabled or result.exit_code == 0:
                coordinator.reset_retries(task.id)
                return execution

            verdict = engine.detector.detect(result.stderr, result.exit_code, agent_name)
            if not verdict.is_rate_limit:
                coordinator.reset_retries(task.id)
                return execution

            delay = coordinator.next_backoff(task.id, verdict.retry_after)
            if delay is not None:
                attempt = coordinator.retry_attempts(task.id)
                logger.warning(
                    f"Rate limited on {agent_name} (attempt {attempt}/{handling.max_retries}); "
                    f"retrying in {delay}ms"
                )
                engine.bus.emit(
                    IterationRateLimitedEvent(
                        iteration=iteration,
                        task=task,
                        agent=agent_name,
                        retry_attempt=attempt,
                        max_retries=handling.max_retries,
                        delay_ms=delay,
                        rate_limit_message=verdict.message,
                    )
                )
                if await engine.sleep(delay):
                    execution.interrupted = True
                    return execution
                continue

            coordinator.reset_retries(task.id)
            next_agent = coordinator.record_rate_limit(agent_name, task)
            if next_agent is not None:
                agent_name = next_agent
                continue

            error = str(RateLimited(coordinator.agents))
            if verdict.message:
                error = f"{error} ({verdict.message})"
            if handling.all_limited_cooldown_ms:
                await engine.sleep(handling.all_limited_cooldown_ms)
            execution.error = error
            return execution

    # DETECT helpers

    async def _verify(self, task: Task) -> Optional[VerificationResult]:
        verification = self.config.verification
        if not verification.enabled or not verification.commands:
            return None
        result = await run_verification(self.config.cwd, verification)
        if result.passed:
            self.verification_errors.pop(task.id, None)
        else:
            self.verification_errors[task.id] = format_verification_errors(result)
        return result

    async def _capture_diff(self, iteration: int) -> Optional[DiffSummary]:
        """Summarize the working tree; failures are logged and ignored."""
        try:
            summary = await self.engine.diff_summarizer(self.config.cwd)
        except Exception as e:
            logger.warning(f"Diff summary failed: {e}")
            return None
        if summary is not None:
            self.diff_window.append((iteration, summary))
        return summary

    async def _auto_commit(self, task: Task, iteration: int) -> None:
        bus = self.engine.bus
        try:
            result = await self.engine.auto_committer(self.config.cwd, task.id, task.title, iteration)
        except Exception as e:
            logger.error(f"Auto-commit raised: {e}")
            bus.emit(TaskAutoCommitFailedEvent(task=task, iteration=iteration, error=str(e)))
            return

        if result.committed:
            logger.info(f"Committed {task.id}: {result.commit_sha}")
            bus.emit(
                TaskAutoCommittedEvent(
                    task=task,
                    iteration=iteration,
                    commit_message=result.commit_message or "",
                    commit_sha=result.commit_sha,
                )
            )
        elif result.error:
            bus.emit(TaskAutoCommitFailedEvent(task=task, iteration=iteration, error=result.error))
        else:
            bus.emit(
                TaskAutoCommitSkippedEvent(
                    task=task, iteration=iteration, reason=result.skip_reason or "skipped"
                )
            )

    # Main pass

    async def run_once(self) -> Optional[StopReason]:
        """Run one iteration.

        Returns:
            A StopReason when the run should end, otherwise None
        """
        selected = await self._select()
        if selected is None or isinstance(selected, StopReason):
            return selected

        iteration = self.engine.budget.next_iteration()
        with log_context(iteration=iteration, task_id=selected.id):
            return await self._run_task(selected, iteration)

    async def _run_task(self, task: Task, iteration: int) -> Optional[StopReason]:
        engine = self.engine
        state = engine.state

        state.current_iteration = iteration
        state.current_task = task
        state.current_output = ""
        state.current_stderr = ""
        agent_name = engine.coordinator.prepare_iteration()
        started_at = _now()
        start = time.monotonic()

        logger.info(f"Iteration {iteration}: {task.id} - {task.title} (agent={agent_name})")
        engine.bus.emit(IterationStartedEvent(iteration=iteration, task=task, agent=agent_name))
        engine.bus.emit(TaskSelectedEvent(task=task, iteration=iteration))

        model = self._model_for(task)
        try:
            task = await self._activate(task, iteration)
            prompt = await self.build_prompt(task)
        except Exception as e:
            logger.error(f"Failed to prepare iteration {iteration}: {e}")
            result = IterationResult(
                iteration=iteration,
                status=IterationStatus.FAILED,
                task=task,
                task_completed=False,
                promise_complete=False,
                duration_ms=int((time.monotonic() - start) * 1000),
                started_at=started_at,
                ended_at=_now(),
                agent=agent_name,
                error=f"Failed to prepare iteration: {e}",
                model=model,
            )
            return await self._finish(result)

        try:
            outcome = await self._execute_with_fallback(task, prompt, iteration, agent_name, model)
            if isinstance(outcome, str):
                result = IterationResult(
                    iteration=iteration,
                    status=IterationStatus.FAILED,
                    task=task,
                    task_completed=False,
                    promise_complete=False,
                    duration_ms=int((time.monotonic() - start) * 1000),
                    started_at=started_at,
                    ended_at=_now(),
                    agent=engine.coordinator.get_active_agent(),
                    error=outcome,
                    model=model,
                )
            else:
                result = await self._detect(task, iteration, outcome, started_at, start, model)
            return await self._finish(result)
        finally:
            state.current_task = None

    async def _activate(self, task: Task, iteration: int) -> Task:
        engine = self.engine
        updated = await engine.tracker.update_task_status(task.id, TaskStatus.IN_PROGRESS)
        task = updated or task
        engine.mark_activated(task.id)
        engine.bus.emit(TaskActivatedEvent(task=task, iteration=iteration))
        return task

    async def _detect(
        self,
        task: Task,
        iteration: int,
        execution: _Execution,
        started_at: str,
        start: float,
        model: Optional[str],
    ) -> IterationResult:
        engine = self.engine
        agent_result = execution.result
        handling = self.config.error_handling

        strategy = None
        verification = None
        diff_summary = None
        task_completed = False
        error = execution.error or agent_result.error

        if execution.interrupted:
            status = IterationStatus.INTERRUPTED
            error = error or "Interrupted"
        elif execution.timed_out:
            status = IterationStatus.TIMEOUT
            error = error or str(IterationTimeout(self.config.timeout_sec or 0))
        elif execution.error:
            status = IterationStatus.FAILED
        else:
            strategy = detect_completion(agent_result, self.config.completion_strategies)
            if strategy is not None or agent_result.exit_code == 0:
                status = IterationStatus.COMPLETED
            elif handling.continue_on_non_zero_exit:
                logger.warning(f"Agent exited {agent_result.exit_code}; continuing as configured")
                status = IterationStatus.COMPLETED
            else:
                status = IterationStatus.FAILED
                error = error or str(
                    IterationFailure(
                        f"Agent exited with code {agent_result.exit_code}",
                        agent_result.exit_code,
                    )
                )

            if strategy is not None:
                verification = await self._verify(task)
                task_completed = verification is None or verification.passed

        if task_completed:
            try:
                completion = await engine.tracker.complete_task(task.id, "Completed by agent")
            except Exception as e:
                completion = None
                error = f"Failed to mark task complete: {e}"
            if completion is not None and completion.success:
                task = completion.task or task
                engine.state.tasks_completed += 1
                engine.unmark_activated(task.id)
                engine.bus.emit(TaskCompletedEvent(task=task, iteration=iteration))
                engine.coordinator.clear()
                engine.escalation.clear(task.id)
                self.retry_attempts.pop(task.id, None)
                diff_summary = await self._capture_diff(iteration)
                if engine.auto_commit:
                    await self._auto_commit(task, iteration)
            else:
                if completion is not None:
                    error = completion.message
                task_completed = False
                status = IterationStatus.FAILED

        if not task_completed and status != IterationStatus.INTERRUPTED:
            engine.escalation.record_attempt(task.id)

        return IterationResult(
            iteration=iteration,
            status=status,
            task=task,
            task_completed=task_completed,
            promise_complete=strategy is not None,
            duration_ms=int((time.monotonic() - start) * 1000),
            started_at=started_at,
            ended_at=_now(),
            agent=execution.agent,
            agent_result=agent_result,
            error=error,
            diff_summary=diff_summary,
            verification=verification,
            model=model,
            completion_strategy=strategy,
        )

    # Recording and error policy

    def _completion_summary(self, result: IterationResult) -> Optional[str]:
        switches = self.engine.coordinator.switch_history
        if not switches:
            return None
        outcome = "Completed" if result.task_completed else "Finished"
        fallbacks = [s for s in switches if s.reason == "fallback"]
        if fallbacks:
            return f"{outcome} on fallback ({result.agent}) due to rate limit on {fallbacks[0].from_agent}"
        return f"{outcome} on primary ({result.agent}) after recovery"

    def _record(self, result: IterationResult) -> None:
        """Append the result and persist it; persistence failures are logged."""
        engine = self.engine
        engine.state.iterations.append(result)

        try:
            engine.session_store.update_iteration(
                IterationRecord(
                    iteration=result.iteration,
                    task_id=result.task.id,
                    task_title=result.task.title,
                    status=result.status.value,
                    task_completed=result.task_completed,
                    agent=result.agent,
                    duration_ms=result.duration_ms,
                    error=result.error,
                    ended_at=result.ended_at,
                ),
                tasks_completed=engine.state.tasks_completed,
            )
        except Exception as e:
            logger.warning(f"Failed to update session: {e}")

        try:
            engine.log_writer.write(
                result,
                IterationLogContext(
                    session_id=engine.session_id,
                    model=result.model,
                    sandbox_mode=self.config.sandbox.mode,
                    sandbox_network=self.config.sandbox.network,
                    completion_summary=self._completion_summary(result),
                    agent_switches=engine.coordinator.switch_history,
                ),
            )
        except Exception as e:
            logger.warning(f"Failed to write iteration log: {e}")

        try:
            engine.progress_log.append(result)
        except Exception as e:
            logger.warning(f"Failed to append progress: {e}")

    async def _finish(self, result: IterationResult) -> Optional[StopReason]:
        self._record(result)

        if result.status in (IterationStatus.FAILED, IterationStatus.TIMEOUT):
            return await self._handle_failure(result)

        self.engine.bus.emit(IterationCompletedEvent(result=result))
        return None

    async def _handle_failure(self, result: IterationResult) -> Optional[StopReason]:
        """Apply the configured error strategy to a failed or timed-out iteration."""
        engine = self.engine
        task = result.task
        error = result.error or f"Iteration {result.status.value}"
        handling = self.config.error_handling

        if handling.strategy == "abort":
            logger.error(f"Iteration {result.iteration} failed, aborting: {error}")
            engine.bus.emit(
                IterationFailedEvent(
                    iteration=result.iteration, task=task, error=error, action="abort", result=result
                )
            )
            return StopReason.ERROR

        if handling.strategy == "retry":
            attempts = self.retry_attempts.get(task.id, 0)
            if attempts < handling.max_retries:
                self.retry_attempts[task.id] = attempts + 1
                logger.warning(
                    f"Iteration {result.iteration} failed, retrying "
                    f"({attempts + 1}/{handling.max_retries}): {error}"
                )
                engine.bus.emit(
                    IterationFailedEvent(
                        iteration=result.iteration,
                        task=task,
                        error=error,
                        action="retry",
                        result=result,
                    )
                )
                engine.bus.emit(
                    IterationRetryingEvent(
                        iteration=result.iteration,
                        task=task,
                        retry_attempt=attempts + 1,
                        max_retries=handling.max_retries,
                        previous_error=error,
                        delay_ms=handling.retry_delay_ms,
                    )
                )
                self.pending_retry = task
                await engine.sleep(handling.retry_delay_ms)
                return None
            logger.warning(f"Retries exhausted for {task.id}; skipping")

        engine.bus.emit(
            IterationFailedEvent(
                iteration=result.iteration, task=task, error=error, action="skip", result=result
            )
        )
        self.retry_attempts.pop(task.id, None)
        self.skipped.add(task.id)
        logger.warning(f"Skipping {task.id} for the rest of this run: {error}")
        engine.bus.emit(IterationSkippedEvent(iteration=result.iteration, task=task, reason=error))
        return None
