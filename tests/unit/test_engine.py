"""Unit tests for the ExecutionEngine run loop and lifecycle."""

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from ralph.agents.base import AgentError, BaseAgent, DetectResult
from ralph.config.models import RalphConfig
from ralph.engine.auto_commit import AutoCommitResult
from ralph.engine.errors import AlreadyRunningError, InitializationError, NotInitializedError
from ralph.engine.machine import ExecutionEngine
from ralph.engine.models import (
    CommandResult,
    DiffSummary,
    EngineStatus,
    IterationInfo,
    IterationStatus,
    StopReason,
    VerificationResult,
)
from ralph.state.session import SessionStatus, load_session
from ralph.trackers.base import (
    BaseTracker,
    SyncResult,
    Task,
    TaskCompletionResult,
    TaskStatus,
)

PROMISE = "Implemented the feature.\n<promise>COMPLETE</promise>\n"
RATE_LIMITED = {"stderr": "Error: 429 Too Many Requests\n", "exit_code": 1}
HANG = {"hang": True}


def ok(stdout: str = PROMISE) -> dict:
    return {"stdout": stdout, "exit_code": 0}


def fail(stderr: str = "boom\n", exit_code: int = 1) -> dict:
    return {"stderr": stderr, "exit_code": exit_code}


def make_task(task_id: str, status: TaskStatus = TaskStatus.OPEN) -> Task:
    return Task(id=task_id, title=f"Task {task_id}", status=status)


class MemoryTracker(BaseTracker):
    """In-memory tracker returning tasks in insertion order."""

    name = "memory"

    def __init__(self, tasks: list[Task]):
        self.tasks = {t.id: t for t in tasks}
        self.synced = 0
        self.disposed = False

    async def get_tasks(self, task_filter=None):
        return [t for t in self.tasks.values() if task_filter is None or task_filter.matches(t)]

    async def get_task(self, task_id):
        return self.tasks.get(task_id)

    async def get_next_task(self, task_filter=None):
        tasks = await self.get_tasks(task_filter)
        return tasks[0] if tasks else None

    async def is_complete(self, task_filter=None):
        return all(
            t.status in (TaskStatus.COMPLETED, TaskStatus.CANCELLED) for t in self.tasks.values()
        )

    async def update_task_status(self, task_id, status):
        task = self.tasks.get(task_id)
        if task is None:
            return None
        self.tasks[task_id] = task.model_copy(update={"status": status})
        return self.tasks[task_id]

    async def complete_task(self, task_id, reason=None):
        task = await self.update_task_status(task_id, TaskStatus.COMPLETED)
        return TaskCompletionResult(success=task is not None, message="done", task=task)

    async def sync(self):
        self.synced += 1
        return SyncResult(success=True, message="synced")

    async def dispose(self):
        self.disposed = True


class ScriptedAgent(BaseAgent):
    """Agent that replays scripted process outcomes."""

    def __init__(self, name: str, outcomes: list[dict], available: bool = True):
        super().__init__(name)
        self.outcomes = list(outcomes)
        self.available = available
        self.prompts: list[str] = []
        self.models: list[str | None] = []

    async def detect(self):
        if not self.available:
            return DetectResult(available=False, error=f"{self.name} not installed")
        return DetectResult(available=True, version="1.0.0")

    async def _run(self, prompt, files, options, cancel_event, emit_stdout, emit_stderr):
        self.prompts.append(prompt)
        self.models.append(options.model)
        outcome = self.outcomes.pop(0) if self.outcomes else {"stdout": "still working\n"}

        if outcome.get("hang"):
            await cancel_event.wait()
            return {
                "success": False,
                "stdout": "",
                "stderr": "",
                "exit_code": -15,
                "timed_out": False,
                "interrupted": True,
            }

        stdout = outcome.get("stdout", "")
        stderr = outcome.get("stderr", "")
        for line in stdout.splitlines(keepends=True):
            emit_stdout(line)
        for line in stderr.splitlines(keepends=True):
            emit_stderr(line)
        exit_code = outcome.get("exit_code", 0)
        return {
            "success": exit_code == 0,
            "stdout": stdout,
            "stderr": stderr,
            "exit_code": exit_code,
            "timed_out": False,
            "interrupted": False,
        }


def make_config(tmp_path: Path, **overrides) -> RalphConfig:
    data = {
        "cwd": tmp_path,
        "max_iterations": 5,
        "iteration_delay_ms": 0,
        "timeout_sec": 5,
        "agent": "primary",
        "agents": [
            {"name": "primary", "command": ["primary-cli"]},
            {"name": "backup", "command": ["backup-cli"]},
        ],
        "error_handling": {"strategy": "skip", "retry_delay_ms": 0},
        "rate_limit_handling": {"max_retries": 0, "base_backoff_ms": 1},
    }
    data.update(overrides)
    return RalphConfig(**data)


def build_engine(tmp_path, tasks, agents=None, **overrides):
    config = make_config(tmp_path, **overrides)
    tracker = MemoryTracker(tasks)
    agents = agents if agents is not None else {"primary": ScriptedAgent("primary", [])}

    async def tracker_factory():
        return tracker

    async def agent_factory(name):
        if name not in agents:
            raise AgentError(f"Unknown agent {name}")
        return agents[name]

    engine = ExecutionEngine(
        config,
        tracker_factory=tracker_factory,
        agent_factory=agent_factory,
        diff_summarizer=AsyncMock(return_value=None),
        auto_committer=AsyncMock(
            return_value=AutoCommitResult(committed=False, skip_reason="no uncommitted changes")
        ),
    )
    events = []
    engine.on(events.append)
    return engine, tracker, events


async def make_engine(tmp_path, tasks, agents=None, **overrides):
    engine, tracker, events = build_engine(tmp_path, tasks, agents, **overrides)
    await engine.initialize()
    return engine, tracker, events


def event_types(events) -> list[str]:
    return [e.type for e in events]


async def wait_until(predicate, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


class TestInitialization:
    """Tests for initialize() and start() preconditions."""

    @pytest.mark.asyncio
    async def test_start_before_initialize(self, tmp_path):
        """Test start() requires initialize()."""
        engine, _, _ = build_engine(tmp_path, [make_task("T-1")])

        with pytest.raises(NotInitializedError):
            await engine.start()

    @pytest.mark.asyncio
    async def test_unavailable_agent_fails_initialization(self, tmp_path):
        """Test a missing agent CLI raises InitializationError."""
        agents = {"primary": ScriptedAgent("primary", [], available=False)}
        engine, _, _ = build_engine(tmp_path, [make_task("T-1")], agents)

        with pytest.raises(InitializationError, match="not installed"):
            await engine.initialize()

    @pytest.mark.asyncio
    async def test_initialize_syncs_and_counts_tasks(self, tmp_path):
        """Test initialize() syncs the tracker and counts open tasks."""
        tasks = [
            make_task("T-1"),
            make_task("T-2", TaskStatus.IN_PROGRESS),
            make_task("T-3", TaskStatus.COMPLETED),
        ]
        engine, tracker, _ = await make_engine(tmp_path, tasks)

        assert tracker.synced == 1
        assert engine.get_state().total_tasks == 2
        assert engine.session_id.startswith("session_")
        assert engine.get_tracker() is tracker

    @pytest.mark.asyncio
    async def test_double_start_rejected_without_mutation(self, tmp_path):
        """Test a second start() while running raises and leaves state alone."""
        agents = {"primary": ScriptedAgent("primary", [HANG])}
        engine, _, _ = await make_engine(tmp_path, [make_task("T-1")], agents)

        run = asyncio.create_task(engine.start())
        await wait_until(lambda: engine.get_state().current_task is not None)
        before = engine.get_state()

        with pytest.raises(AlreadyRunningError, match="Cannot start engine in running state"):
            await engine.start()

        after = engine.get_state()
        assert after.status == before.status == EngineStatus.RUNNING
        assert after.current_iteration == before.current_iteration
        assert after.started_at == before.started_at

        await engine.stop()
        assert await run == StopReason.INTERRUPTED


class TestStopConditions:
    """Tests for the reasons a run ends."""

    @pytest.mark.asyncio
    async def test_all_complete_without_iterations(self, tmp_path):
        """Test a finished backlog stops with complete and runs no iteration."""
        engine, _, events = await make_engine(
            tmp_path, [make_task("T-1", TaskStatus.COMPLETED)]
        )

        reason = await engine.start()

        assert reason == StopReason.COMPLETE
        assert event_types(events) == ["engine:started", "all:complete", "engine:stopped"]
        assert events[-1].reason == StopReason.COMPLETE
        assert engine.get_iteration_info().current_iteration == 0
        assert engine.get_status() == EngineStatus.IDLE

    @pytest.mark.asyncio
    async def test_no_actionable_tasks(self, tmp_path):
        """Test blocked tasks stop the run with no_tasks and no iteration events."""
        engine, _, events = await make_engine(
            tmp_path, [make_task("T-1", TaskStatus.BLOCKED)]
        )

        reason = await engine.start()

        assert reason == StopReason.NO_TASKS
        assert not [t for t in event_types(events) if t.startswith("iteration:")]
        assert events[-1].type == "engine:stopped"

    @pytest.mark.asyncio
    async def test_completes_task_and_persists(self, tmp_path):
        """Test a promise-tagged run completes the task and writes logs."""
        agents = {"primary": ScriptedAgent("primary", [ok()])}
        engine, tracker, events = await make_engine(tmp_path, [make_task("T-1")], agents)

        reason = await engine.start()

        assert reason == StopReason.COMPLETE
        assert tracker.tasks["T-1"].status == TaskStatus.COMPLETED
        types = event_types(events)
        assert types.index("iteration:started") < types.index("task:selected")
        assert types.index("task:activated") < types.index("task:completed")
        assert types.index("task:completed") < types.index("iteration:completed")

        state = engine.get_state()
        assert state.tasks_completed == 1
        assert state.iterations[0].status == IterationStatus.COMPLETED
        assert state.iterations[0].promise_complete is True
        assert state.iterations[0].completion_strategy == "promise-tag"
        assert "<promise>COMPLETE</promise>" in state.current_output

        session = load_session(tmp_path / ".ralph" / "session.json")
        assert session.status == SessionStatus.COMPLETED
        assert session.iterations[0].task_id == "T-1"

        logs = list((tmp_path / ".ralph" / "iterations").glob("*.log"))
        assert len(logs) == 1
        assert "--- RAW OUTPUT ---" in logs[0].read_text()
        assert "✓ Iteration 1 - T-1" in (tmp_path / ".ralph" / "progress.md").read_text()

    @pytest.mark.asyncio
    async def test_exit_zero_without_marker_leaves_task_open(self, tmp_path):
        """Test a clean exit without the completion marker does not complete the task."""
        agents = {"primary": ScriptedAgent("primary", [ok("all done\n")])}
        engine, tracker, _ = await make_engine(
            tmp_path, [make_task("T-1")], agents, max_iterations=1
        )

        reason = await engine.start()

        assert reason == StopReason.MAX_ITERATIONS
        result = engine.get_state().iterations[0]
        assert result.status == IterationStatus.COMPLETED
        assert result.task_completed is False
        assert tracker.tasks["T-1"].status == TaskStatus.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_listener_errors_are_ignored(self, tmp_path):
        """Test a raising listener does not affect the run."""
        agents = {"primary": ScriptedAgent("primary", [ok()])}
        engine, _, events = await make_engine(tmp_path, [make_task("T-1")], agents)

        def broken(event):
            raise RuntimeError("listener bug")

        engine.on(broken)
        reason = await engine.start()

        assert reason == StopReason.COMPLETE
        assert "engine:stopped" in event_types(events)


class TestIterationBudget:
    """Tests for runtime budget changes."""

    @pytest.mark.asyncio
    async def test_add_iterations_emits_event(self, tmp_path):
        """Test add_iterations(3) raises the budget from 5 to 8."""
        engine, _, events = await make_engine(tmp_path, [make_task("T-1")])

        assert engine.get_iteration_info() == IterationInfo(current_iteration=0, max_iterations=5)
        assert engine.add_iterations(3) is False
        assert engine.get_iteration_info().max_iterations == 8

        added = [e for e in events if e.type == "engine:iterations-added"]
        assert len(added) == 1
        assert (added[0].added, added[0].previous_max, added[0].new_max) == (3, 5, 8)
        assert load_session(tmp_path / ".ralph" / "session.json").max_iterations == 8

    @pytest.mark.asyncio
    async def test_unlimited_budget_ignores_changes(self, tmp_path):
        """Test add/remove are no-ops with max_iterations=0."""
        engine, _, events = await make_engine(tmp_path, [make_task("T-1")], max_iterations=0)

        assert engine.add_iterations(3) is False
        assert engine.remove_iterations(1) is False
        assert engine.get_iteration_info().max_iterations == 0
        assert not [e for e in events if e.type.startswith("engine:iterations")]

    @pytest.mark.asyncio
    async def test_remove_iterations_floors_at_one(self, tmp_path):
        """Test remove_iterations never goes below 1."""
        engine, _, events = await make_engine(tmp_path, [make_task("T-1")])

        assert engine.remove_iterations(0) is False
        assert engine.remove_iterations(10) is True
        assert engine.get_iteration_info().max_iterations == 1
        assert engine.remove_iterations(1) is False

        removed = [e for e in events if e.type == "engine:iterations-removed"]
        assert len(removed) == 1
        assert (removed[0].previous_max, removed[0].new_max) == (5, 1)

    @pytest.mark.asyncio
    async def test_continue_after_budget_exhausted(self, tmp_path):
        """Test add_iterations after max_iterations signals and allows continuation."""
        engine, _, events = await make_engine(tmp_path, [make_task("T-1")], max_iterations=1)

        assert await engine.start() == StopReason.MAX_ITERATIONS
        assert engine.add_iterations(1) is True

        assert await engine.continue_execution() == StopReason.MAX_ITERATIONS
        assert engine.get_iteration_info() == IterationInfo(current_iteration=2, max_iterations=2)
        assert "engine:resumed" in event_types(events)
        assert [r.iteration for r in engine.get_state().iterations] == [1, 2]


class TestPauseStop:
    """Tests for pause, resume and stop."""

    @pytest.mark.asyncio
    async def test_stop_and_resume_idle_are_noops(self, tmp_path):
        """Test stop() and resume() do nothing when idle."""
        engine, _, events = await make_engine(tmp_path, [make_task("T-1")])

        await engine.stop()
        engine.resume()
        engine.pause()

        assert engine.get_status() == EngineStatus.IDLE
        assert events == []

    @pytest.mark.asyncio
    async def test_stop_interrupts_running_agent(self, tmp_path):
        """Test stop() interrupts the agent and ends with interrupted."""
        agents = {"primary": ScriptedAgent("primary", [HANG])}
        engine, _, events = await make_engine(tmp_path, [make_task("T-1")], agents)

        run = asyncio.create_task(engine.start())
        await wait_until(lambda: engine.current_handle is not None)

        await asyncio.gather(engine.stop(), engine.stop())

        assert await run == StopReason.INTERRUPTED
        assert engine.get_status() == EngineStatus.IDLE
        assert engine.get_state().iterations[0].status == IterationStatus.INTERRUPTED
        assert events[-1].reason == StopReason.INTERRUPTED
        assert engine.activated_task_ids == ["T-1"]

        session = load_session(tmp_path / ".ralph" / "session.json")
        assert session.status == SessionStatus.INTERRUPTED

    @pytest.mark.asyncio
    async def test_pause_waits_for_iteration_boundary(self, tmp_path):
        """Test pause takes effect after the current iteration and resume continues."""
        engine, _, events = await make_engine(tmp_path, [make_task("T-1")], max_iterations=2)

        def pause_once(event):
            if event.type == "iteration:completed" and event.result.iteration == 1:
                engine.pause()
                assert engine.is_pausing()

        engine.on(pause_once)
        run = asyncio.create_task(engine.start())
        await wait_until(engine.is_paused)

        assert engine.get_iteration_info().current_iteration == 1
        engine.resume()
        engine.resume()

        assert await run == StopReason.MAX_ITERATIONS
        types = event_types(events)
        assert types.count("engine:paused") == 1
        assert types.count("engine:resumed") == 1
        assert types.index("engine:paused") < types.index("engine:resumed")

    @pytest.mark.asyncio
    async def test_pause_right_after_resume_is_kept(self, tmp_path):
        """Test a pause() issued before the loop wakes from resume() still pauses."""
        engine, _, events = await make_engine(tmp_path, [make_task("T-1")], max_iterations=3)

        def pause_once(event):
            if event.type == "iteration:completed" and event.result.iteration == 1:
                engine.pause()

        engine.on(pause_once)
        run = asyncio.create_task(engine.start())
        await wait_until(engine.is_paused)

        engine.resume()
        engine.pause()
        assert engine.is_pausing()
        await wait_until(engine.is_paused)

        assert engine.get_iteration_info().current_iteration == 1
        assert event_types(events).count("engine:paused") == 2

        engine.resume()
        assert await run == StopReason.MAX_ITERATIONS
        assert engine.get_iteration_info().current_iteration == 3

    @pytest.mark.asyncio
    async def test_resume_cancels_pending_pause(self, tmp_path):
        """Test resume() while pausing returns straight to running."""
        agents = {"primary": ScriptedAgent("primary", [HANG])}
        engine, _, events = await make_engine(tmp_path, [make_task("T-1")], agents)

        run = asyncio.create_task(engine.start())
        await wait_until(lambda: engine.current_handle is not None)

        engine.pause()
        assert engine.is_pausing()
        engine.resume()
        assert engine.get_status() == EngineStatus.RUNNING

        await engine.stop()
        assert await run == StopReason.INTERRUPTED
        assert "engine:paused" not in event_types(events)

    @pytest.mark.asyncio
    async def test_reset_activated_tasks_after_stop(self, tmp_path):
        """Test tasks left in progress by a stopped run can be reset to open."""
        agents = {"primary": ScriptedAgent("primary", [HANG])}
        engine, tracker, _ = await make_engine(tmp_path, [make_task("T-1")], agents)

        run = asyncio.create_task(engine.start())
        await wait_until(lambda: engine.current_handle is not None)
        await engine.stop()
        await run

        count = await engine.reset_tasks_to_open(engine.activated_task_ids + ["missing"])

        assert count == 2
        assert tracker.tasks["T-1"].status == TaskStatus.OPEN
        assert engine.activated_task_ids == []

    @pytest.mark.asyncio
    async def test_dispose_releases_everything(self, tmp_path):
        """Test dispose() disposes agents and tracker and clears listeners."""
        agent = ScriptedAgent("primary", [])
        engine, tracker, _ = await make_engine(tmp_path, [make_task("T-1")], {"primary": agent})
        await agent.initialize()

        await engine.dispose()

        assert agent.initialized is False
        assert tracker.disposed is True
        assert len(engine.bus) == 0


class TestErrorPolicy:
    """Tests for abort, skip and retry strategies."""

    @pytest.mark.asyncio
    async def test_timeout_aborts(self, tmp_path):
        """Test a timed-out iteration fails and aborts the run under abort."""
        agents = {"primary": ScriptedAgent("primary", [HANG])}
        engine, _, events = await make_engine(
            tmp_path,
            [make_task("T-1")],
            agents,
            timeout_sec=0.05,
            error_handling={"strategy": "abort"},
        )

        reason = await engine.start()

        assert reason == StopReason.ERROR
        result = engine.get_state().iterations[0]
        assert result.status == IterationStatus.TIMEOUT
        assert "timed out" in result.error

        failed = [e for e in events if e.type == "iteration:failed"]
        assert len(failed) == 1
        assert failed[0].action == "abort"
        assert events[-1].type == "engine:stopped"
        assert events[-1].reason == StopReason.ERROR

    @pytest.mark.asyncio
    async def test_skip_excludes_failed_task(self, tmp_path):
        """Test a failed task is skipped and the next task runs."""
        agents = {"primary": ScriptedAgent("primary", [fail(), ok()])}
        engine, tracker, events = await make_engine(
            tmp_path, [make_task("T-1"), make_task("T-2")], agents
        )

        reason = await engine.start()

        assert reason == StopReason.NO_TASKS
        skipped = [e for e in events if e.type == "iteration:skipped"]
        assert [e.task.id for e in skipped] == ["T-1"]
        assert tracker.tasks["T-2"].status == TaskStatus.COMPLETED
        assert [e.action for e in events if e.type == "iteration:failed"] == ["skip"]

    @pytest.mark.asyncio
    async def test_retry_reattempts_same_task(self, tmp_path):
        """Test retry runs the same task again as a new iteration."""
        agents = {"primary": ScriptedAgent("primary", [fail(), ok()])}
        engine, tracker, events = await make_engine(
            tmp_path,
            [make_task("T-1")],
            agents,
            error_handling={"strategy": "retry", "max_retries": 2, "retry_delay_ms": 0},
        )

        reason = await engine.start()

        assert reason == StopReason.COMPLETE
        assert tracker.tasks["T-1"].status == TaskStatus.COMPLETED
        retrying = [e for e in events if e.type == "iteration:retrying"]
        assert len(retrying) == 1
        assert retrying[0].retry_attempt == 1
        assert [r.iteration for r in engine.get_state().iterations] == [1, 2]

    @pytest.mark.asyncio
    async def test_retry_exhausted_falls_back_to_skip(self, tmp_path):
        """Test a task is skipped after max_retries failed attempts."""
        agents = {"primary": ScriptedAgent("primary", [fail(), fail()])}
        engine, _, events = await make_engine(
            tmp_path,
            [make_task("T-1")],
            agents,
            error_handling={"strategy": "retry", "max_retries": 1, "retry_delay_ms": 0},
        )

        reason = await engine.start()

        assert reason == StopReason.NO_TASKS
        assert [e.action for e in events if e.type == "iteration:failed"] == ["retry", "skip"]
        assert len([e for e in events if e.type == "iteration:skipped"]) == 1

    @pytest.mark.asyncio
    async def test_tracker_error_while_activating_is_skipped(self, tmp_path):
        """Test a tracker failure before execution fails the iteration under skip."""
        agents = {"primary": ScriptedAgent("primary", [ok()])}
        engine, tracker, events = await make_engine(
            tmp_path, [make_task("T-1"), make_task("T-2")], agents
        )
        update_task_status = tracker.update_task_status

        async def flaky_update(task_id, status):
            if task_id == "T-1":
                raise RuntimeError("tracker offline")
            return await update_task_status(task_id, status)

        tracker.update_task_status = flaky_update

        assert await engine.start() == StopReason.NO_TASKS

        first, second = engine.get_state().iterations
        assert (first.task.id, first.status) == ("T-1", IterationStatus.FAILED)
        assert "tracker offline" in first.error
        assert first.agent_result is None
        assert second.task_completed is True
        assert [e.action for e in events if e.type == "iteration:failed"] == ["skip"]
        assert len(agents["primary"].prompts) == 1

    @pytest.mark.asyncio
    async def test_selection_errors_stop_after_retries(self, tmp_path):
        """Test repeated get_next_task failures end the run with error."""
        engine, tracker, events = await make_engine(
            tmp_path,
            [make_task("T-1")],
            error_handling={"strategy": "skip", "max_retries": 2, "retry_delay_ms": 0},
        )
        tracker.get_next_task = AsyncMock(side_effect=RuntimeError("tracker offline"))

        assert await engine.start() == StopReason.ERROR

        assert tracker.get_next_task.await_count == 3
        assert engine.get_state().iterations == []
        assert not [t for t in event_types(events) if t.startswith("iteration:")]
        assert events[-1].reason == StopReason.ERROR

    @pytest.mark.asyncio
    async def test_selection_error_recovers(self, tmp_path):
        """Test a transient selection failure is retried without using an iteration."""
        agents = {"primary": ScriptedAgent("primary", [ok()])}
        engine, tracker, _ = await make_engine(tmp_path, [make_task("T-1")], agents)
        tracker.get_next_task = AsyncMock(
            side_effect=[RuntimeError("tracker offline"), make_task("T-1"), None]
        )

        assert await engine.start() == StopReason.COMPLETE
        assert tracker.get_next_task.await_count == 3
        assert [r.iteration for r in engine.get_state().iterations] == [1]

    @pytest.mark.asyncio
    async def test_selection_error_aborts_immediately(self, tmp_path):
        """Test abort stops on the first selection failure."""
        engine, tracker, _ = await make_engine(
            tmp_path, [make_task("T-1")], error_handling={"strategy": "abort"}
        )
        tracker.get_next_task = AsyncMock(side_effect=RuntimeError("tracker offline"))

        assert await engine.start() == StopReason.ERROR
        assert tracker.get_next_task.await_count == 1

    @pytest.mark.asyncio
    async def test_continue_on_non_zero_exit(self, tmp_path):
        """Test continue_on_non_zero_exit treats a failing exit as completed."""
        agents = {"primary": ScriptedAgent("primary", [fail()])}
        engine, _, events = await make_engine(
            tmp_path,
            [make_task("T-1")],
            agents,
            max_iterations=1,
            error_handling={"strategy": "abort", "continue_on_non_zero_exit": True},
        )

        assert await engine.start() == StopReason.MAX_ITERATIONS
        assert engine.get_state().iterations[0].status == IterationStatus.COMPLETED
        assert "iteration:failed" not in event_types(events)


class TestRateLimits:
    """Tests for rate limit backoff and agent fallback."""

    @pytest.mark.asyncio
    async def test_backoff_retries_same_agent(self, tmp_path):
        """Test a rate limit is retried on the same agent after a backoff."""
        agents = {"primary": ScriptedAgent("primary", [RATE_LIMITED, ok()])}
        engine, _, events = await make_engine(
            tmp_path,
            [make_task("T-1")],
            agents,
            rate_limit_handling={"max_retries": 2, "base_backoff_ms": 1},
        )

        assert await engine.start() == StopReason.COMPLETE

        limited = [e for e in events if e.type == "iteration:rate-limited"]
        assert len(limited) == 1
        assert (limited[0].agent, limited[0].retry_attempt, limited[0].delay_ms) == ("primary", 1, 1)
        assert engine.get_state().iterations[0].agent == "primary"
        assert len(engine.get_state().iterations) == 1

    @pytest.mark.asyncio
    async def test_switches_to_fallback_agent(self, tmp_path):
        """Test a rate-limited primary hands the iteration to the fallback."""
        agents = {
            "primary": ScriptedAgent("primary", [RATE_LIMITED]),
            "backup": ScriptedAgent("backup", [ok()]),
        }
        engine, tracker, events = await make_engine(
            tmp_path, [make_task("T-1")], agents, fallback_agents=["backup"]
        )

        assert await engine.start() == StopReason.COMPLETE

        switched = [e for e in events if e.type == "agent:switched"]
        assert (switched[0].previous_agent, switched[0].new_agent) == ("primary", "backup")
        assert switched[0].reason == "fallback"
        assert engine.get_state().iterations[0].agent == "backup"
        assert tracker.tasks["T-1"].status == TaskStatus.COMPLETED
        assert engine.get_rate_limit_state().rate_limited_agents == frozenset()

        log = next((tmp_path / ".ralph" / "iterations").glob("*.log")).read_text()
        assert "Switched to fallback" in log

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "recover,expected",
        [(False, ["backup", "backup"]), (True, ["backup", "primary"])],
    )
    async def test_primary_recovery_between_tasks(self, tmp_path, recover, expected):
        """Test the fallback keeps the next task unless primary recovery is enabled."""
        agents = {
            "primary": ScriptedAgent("primary", [RATE_LIMITED, ok()]),
            "backup": ScriptedAgent("backup", [ok(), ok()]),
        }
        engine, tracker, _ = await make_engine(
            tmp_path,
            [make_task("T-1"), make_task("T-2")],
            agents,
            fallback_agents=["backup"],
            rate_limit_handling={
                "max_retries": 0,
                "base_backoff_ms": 1,
                "recover_primary_between_iterations": recover,
            },
        )

        assert await engine.start() == StopReason.COMPLETE

        assert [r.agent for r in engine.get_state().iterations] == expected
        assert engine.get_active_agent_info().plugin == expected[-1]
        assert tracker.tasks["T-2"].status == TaskStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_all_agents_limited_emitted_once(self, tmp_path):
        """Test every agent limited emits one event and resets the limited set."""
        agents = {
            "primary": ScriptedAgent("primary", [RATE_LIMITED]),
            "backup": ScriptedAgent("backup", [RATE_LIMITED]),
        }
        engine, _, events = await make_engine(
            tmp_path, [make_task("T-1")], agents, fallback_agents=["backup"]
        )

        reason = await engine.start()

        assert reason == StopReason.NO_TASKS
        limited = [e for e in events if e.type == "agent:all-limited"]
        assert len(limited) == 1
        assert limited[0].tried_agents == ["primary", "backup"]
        assert engine.get_rate_limit_state().rate_limited_agents == frozenset()

        result = engine.get_state().iterations[0]
        assert result.status == IterationStatus.FAILED
        assert "rate limited" in result.error

    @pytest.mark.asyncio
    async def test_unavailable_fallback_is_skipped(self, tmp_path):
        """Test a fallback that fails detection is treated as limited."""
        agents = {
            "primary": ScriptedAgent("primary", [RATE_LIMITED]),
            "backup": ScriptedAgent("backup", [ok()], available=False),
        }
        engine, _, events = await make_engine(
            tmp_path, [make_task("T-1")], agents, fallback_agents=["backup"]
        )

        assert await engine.start() == StopReason.NO_TASKS
        assert len([e for e in events if e.type == "agent:all-limited"]) == 1
        assert agents["backup"].prompts == []


class TestIterationFeatures:
    """Tests for verification, escalation, diff context and auto-commit."""

    @pytest.mark.asyncio
    async def test_verification_failure_feeds_next_prompt(self, tmp_path):
        """Test a failed gate keeps the task open and adds errors to the next prompt."""
        agent = ScriptedAgent("primary", [ok(), ok()])
        engine, tracker, _ = await make_engine(
            tmp_path,
            [make_task("T-1")],
            {"primary": agent},
            verification={"enabled": True, "commands": ["npm test"]},
        )
        failed = VerificationResult(
            passed=False,
            results=(
                CommandResult(
                    command="npm test",
                    exit_code=1,
                    stdout="",
                    stderr="1 test failed",
                    passed=False,
                    duration_ms=5,
                ),
            ),
        )
        passed = VerificationResult(passed=True)

        with patch(
            "ralph.engine.iteration.run_verification",
            AsyncMock(side_effect=[failed, passed]),
        ):
            reason = await engine.start()

        assert reason == StopReason.COMPLETE
        first, second = engine.get_state().iterations
        assert first.promise_complete is True
        assert first.task_completed is False
        assert second.task_completed is True
        assert "Verification Failed" not in agent.prompts[0]
        assert "1 test failed" in agent.prompts[1]
        assert tracker.tasks["T-1"].status == TaskStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_model_escalation(self, tmp_path):
        """Test the escalated model is used after a failed attempt."""
        agent = ScriptedAgent("primary", [ok("not yet\n"), ok()])
        engine, _, _ = await make_engine(
            tmp_path,
            [make_task("T-1")],
            {"primary": agent},
            model_escalation={"enabled": True, "escalate_after": 1},
        )

        assert await engine.start() == StopReason.COMPLETE
        assert agent.models == ["sonnet", "opus"]

    @pytest.mark.asyncio
    async def test_configured_model_passed_to_agent(self, tmp_path):
        """Test config.model reaches the agent when escalation is off."""
        agent = ScriptedAgent("primary", [ok()])
        engine, _, _ = await make_engine(
            tmp_path, [make_task("T-1")], {"primary": agent}, model="haiku"
        )

        await engine.start()

        assert agent.models == ["haiku"]
        assert engine.get_state().iterations[0].model == "haiku"

    @pytest.mark.asyncio
    async def test_diff_captured_before_auto_commit(self, tmp_path):
        """Test the diff summary is taken before committing and commit events fire."""
        calls = []
        summary = DiffSummary(files_added=("src/app.py",), summary="Created: src/app.py")

        async def summarize(cwd):
            calls.append("diff")
            return summary

        async def commit(cwd, task_id, title, iteration):
            calls.append("commit")
            return AutoCommitResult(
                committed=True, commit_message=f"feat(ralph): {task_id} - {title}", commit_sha="abc1234"
            )

        agents = {"primary": ScriptedAgent("primary", [ok(), ok()])}
        engine, _, events = await make_engine(
            tmp_path, [make_task("T-1"), make_task("T-2")], agents, auto_commit=True
        )
        engine.diff_summarizer = summarize
        engine.auto_committer = commit

        assert await engine.start() == StopReason.COMPLETE

        assert calls == ["diff", "commit", "diff", "commit"]
        committed = [e for e in events if e.type == "task:auto-committed"]
        assert [e.commit_sha for e in committed] == ["abc1234", "abc1234"]
        assert engine.get_state().iterations[0].diff_summary == summary
        assert "### Iteration 1\nCreated: src/app.py" in agents["primary"].prompts[1]

    @pytest.mark.asyncio
    async def test_diff_failure_does_not_fail_iteration(self, tmp_path):
        """Test a failing diff summarizer leaves the completed iteration intact."""
        agents = {"primary": ScriptedAgent("primary", [ok()])}
        engine, tracker, events = await make_engine(
            tmp_path, [make_task("T-1")], agents, auto_commit=True
        )
        engine.diff_summarizer = AsyncMock(side_effect=RuntimeError("not a git repository"))

        assert await engine.start() == StopReason.COMPLETE

        result = engine.get_state().iterations[0]
        assert result.status == IterationStatus.COMPLETED
        assert result.task_completed is True
        assert result.diff_summary is None
        assert tracker.tasks["T-1"].status == TaskStatus.COMPLETED
        engine.auto_committer.assert_awaited_once()
        assert "iteration:failed" not in event_types(events)

    @pytest.mark.asyncio
    async def test_auto_commit_disabled_at_runtime(self, tmp_path):
        """Test set_auto_commit(False) stops commits."""
        agents = {"primary": ScriptedAgent("primary", [ok()])}
        engine, _, events = await make_engine(
            tmp_path, [make_task("T-1")], agents, auto_commit=True
        )
        engine.set_auto_commit(False)

        await engine.start()

        engine.auto_committer.assert_not_awaited()
        assert not [e for e in events if e.type.startswith("task:auto-commit")]


class TestRequestsAndSnapshots:
    """Tests for read-only snapshots and task requests."""

    @pytest.mark.asyncio
    async def test_get_state_returns_copy(self, tmp_path):
        """Test mutating a snapshot does not affect the engine."""
        agents = {"primary": ScriptedAgent("primary", [ok()])}
        engine, _, _ = await make_engine(tmp_path, [make_task("T-1")], agents)
        await engine.start()

        snapshot = engine.get_state()
        snapshot.iterations.clear()
        snapshot.tasks_completed = 99

        assert len(engine.get_state().iterations) == 1
        assert engine.get_state().tasks_completed == 1

    @pytest.mark.asyncio
    async def test_refresh_tasks(self, tmp_path):
        """Test refresh_tasks syncs and emits tasks:refreshed."""
        engine, tracker, events = await make_engine(
            tmp_path, [make_task("T-1"), make_task("T-2", TaskStatus.COMPLETED)]
        )

        tasks = await engine.refresh_tasks()

        assert [t.id for t in tasks] == ["T-1", "T-2"]
        assert tracker.synced == 2
        assert events[-1].type == "tasks:refreshed"
        assert engine.get_state().total_tasks == 1

    @pytest.mark.asyncio
    async def test_generate_prompt_preview(self, tmp_path):
        """Test the preview renders the task prompt."""
        engine, _, _ = await make_engine(tmp_path, [make_task("T-1")])

        prompt = await engine.generate_prompt_preview("T-1")

        assert "**ID**: T-1" in prompt
        assert "<promise>COMPLETE</promise>" in prompt
        assert await engine.generate_prompt_preview("nope") is None

    @pytest.mark.asyncio
    async def test_active_agent_info(self, tmp_path):
        """Test the primary agent is reported as active."""
        engine, _, _ = await make_engine(tmp_path, [make_task("T-1")])

        info = engine.get_active_agent_info()

        assert info.plugin == "primary"
        assert info.reason == "primary"
        assert engine.is_paused() is False
        assert engine.is_pausing() is False
