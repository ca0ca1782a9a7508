"""Base agent interface."""

import asyncio
import logging
import time
import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


class AgentError(Exception):
    """Agent execution error."""

    pass


class AgentExecutionStatus(str, Enum):
    """How an agent process ended."""

    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"
    INTERRUPTED = "interrupted"


@dataclass
class DetectResult:
    """Result of probing for the agent CLI."""

    available: bool
    version: str | None = None
    executable: str | None = None
    error: str | None = None


@dataclass
class PreflightResult:
    """Result of a short end-to-end check of the agent."""

    success: bool
    duration_ms: int = 0
    error: str | None = None


@dataclass
class OutputSegment:
    """A piece of agent output suitable for display."""

    text: str
    stream: str = "stdout"


@dataclass
class AgentExecutionResult:
    """Raw outcome of one agent execution."""

    execution_id: str
    status: AgentExecutionStatus
    exit_code: int | None
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = 0
    interrupted: bool = False
    error: str | None = None
    started_at: str = ""
    ended_at: str = ""


@dataclass
class ExecuteOptions:
    """Per-execution settings and streaming callbacks.

    Callback exceptions are logged and swallowed; they never fail the execution.
    """

    cwd: Path | None = None
    env: dict[str, str] = field(default_factory=dict)
    timeout_sec: float | None = None
    model: str | None = None
    flags: list[str] = field(default_factory=list)
    on_start: Callable[[str], None] | None = None
    on_stdout: Callable[[str], None] | None = None
    on_stdout_segments: Callable[[list[OutputSegment]], None] | None = None
    on_stderr: Callable[[str], None] | None = None
    on_end: Callable[[AgentExecutionResult], None] | None = None


class ExecutionHandle:
    """Handle to an in-flight agent execution.

    ``interrupt()`` sets a cancellation token that the subprocess wrapper
    watches; callers then ``await handle.wait()`` to join on the result.
    """

    def __init__(
        self,
        execution_id: str,
        task: "asyncio.Task[AgentExecutionResult]",
        cancel_event: asyncio.Event,
    ):
        self.execution_id = execution_id
        self.task = task
        self.cancel_event = cancel_event

    def interrupt(self) -> None:
        """Request termination of the running agent process."""
        if not self.cancel_event.is_set():
            logger.info(f"Interrupting execution {self.execution_id}")
            self.cancel_event.set()

    def is_running(self) -> bool:
        """Return True until the execution result is available."""
        return not self.task.done()

    async def wait(self) -> AgentExecutionResult:
        """Wait for the execution result."""
        return await self.task


def _invoke_callback(callback: Callable[..., Any] | None, *args: Any) -> None:
    if callback is None:
        return
    try:
        callback(*args)
    except Exception:
        logger.debug("Agent callback raised; ignoring", exc_info=True)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class BaseAgent(ABC):
    """Base agent interface.

    Subclasses implement ``_run``; ``execute`` wraps it in an asyncio task,
    guards the callbacks and turns unexpected errors into a failed result.
    """

    def __init__(self, name: str):
        """Initialize agent.

        Args:
            name: Agent name used in events and logs
        """
        self.name = name
        self.initialized = False

    @abstractmethod
    async def detect(self) -> DetectResult:
        """Check whether the agent CLI is installed and runnable."""
        pass

    async def initialize(self, config: dict | None = None) -> None:
        """Prepare the agent for execution.

        Args:
            config: Optional agent-specific settings
        """
        self.initialized = True

    @abstractmethod
    async def _run(
        self,
        prompt: str,
        files: list[Path],
        options: ExecuteOptions,
        cancel_event: asyncio.Event,
        emit_stdout: Callable[[str], None],
        emit_stderr: Callable[[str], None],
    ) -> dict:
        """Run the agent process.

        Returns:
            Result dict from SubprocessManager.run
        """
        pass

    def execute(
        self,
        prompt: str,
        files: list[Path] | None = None,
        options: ExecuteOptions | None = None,
    ) -> ExecutionHandle:
        """Start executing the agent with a prompt.

        Args:
            prompt: Prompt to send to the agent
            files: Optional context files
            options: Execution options and callbacks

        Returns:
            ExecutionHandle for the running execution
        """
        options = options or ExecuteOptions()
        execution_id = uuid.uuid4().hex[:12]
        cancel_event = asyncio.Event()
        task = asyncio.create_task(
            self._execute(execution_id, prompt, files or [], options, cancel_event)
        )
        return ExecutionHandle(execution_id, task, cancel_event)

    async def _execute(
        self,
        execution_id: str,
        prompt: str,
        files: list[Path],
        options: ExecuteOptions,
        cancel_event: asyncio.Event,
    ) -> AgentExecutionResult:
        started_at = _now_iso()
        start = time.monotonic()
        _invoke_callback(options.on_start, execution_id)

        def emit_stdout(line: str) -> None:
            _invoke_callback(options.on_stdout, line)
            _invoke_callback(
                options.on_stdout_segments, [OutputSegment(text=line.rstrip("\n"))]
            )

        def emit_stderr(line: str) -> None:
            _invoke_callback(options.on_stderr, line)

        try:
            raw = await self._run(prompt, files, options, cancel_event, emit_stdout, emit_stderr)
            if raw.get("interrupted"):
                status = AgentExecutionStatus.INTERRUPTED
            elif raw.get("timed_out"):
                status = AgentExecutionStatus.TIMEOUT
            elif raw.get("exit_code") == 0:
                status = AgentExecutionStatus.COMPLETED
            else:
                status = AgentExecutionStatus.FAILED
            result = AgentExecutionResult(
                execution_id=execution_id,
                status=status,
                exit_code=raw.get("exit_code"),
                stdout=raw.get("stdout", ""),
                stderr=raw.get("stderr", ""),
                interrupted=bool(raw.get("interrupted")),
            )
        except Exception as e:
            logger.error(f"Agent {self.name} execution failed: {e}")
            result = AgentExecutionResult(
                execution_id=execution_id,
                status=AgentExecutionStatus.FAILED,
                exit_code=None,
                error=str(e),
            )

        result.started_at = started_at
        result.ended_at = _now_iso()
        result.duration_ms = int((time.monotonic() - start) * 1000)
        _invoke_callback(options.on_end, result)
        return result

    async def preflight(self, timeout_sec: float = 60) -> PreflightResult:
        """Run a trivial prompt to verify the agent responds.

        Args:
            timeout_sec: Maximum time to wait

        Returns:
            PreflightResult
        """
        handle = self.execute(
            "Reply with the single word OK.",
            options=ExecuteOptions(timeout_sec=timeout_sec),
        )
        result = await handle.wait()
        if result.status == AgentExecutionStatus.COMPLETED:
            return PreflightResult(success=True, duration_ms=result.duration_ms)
        return PreflightResult(
            success=False,
            duration_ms=result.duration_ms,
            error=result.error or result.stderr.strip() or f"status={result.status.value}",
        )

    async def dispose(self) -> None:
        """Release agent resources."""
        self.initialized = False
