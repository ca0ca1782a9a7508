"""Generic coding-agent CLI wrapper."""

import asyncio
import logging
import os
import shutil
from collections.abc import Callable
from pathlib import Path

from ..config.models import AgentConfig, SandboxConfig
from ..utils.subprocess import SubprocessError, SubprocessManager
from .base import AgentError, BaseAgent, DetectResult, ExecuteOptions
from .sandbox import wrap_command

logger = logging.getLogger(__name__)


class CommandAgent(BaseAgent):
    """Runs an agent CLI such as ``claude --print`` or ``codex exec``.

    The prompt goes to stdin or is appended as the last argument, depending on
    ``prompt_mode``. Output is streamed line by line to the execution callbacks.
    """

    def __init__(
        self,
        config: AgentConfig,
        cwd: Path,
        timeout_sec: float | None = None,
        sandbox: SandboxConfig | None = None,
        log_dir: Path | None = None,
    ):
        """Initialize command agent.

        Args:
            config: Agent definition
            cwd: Default working directory
            timeout_sec: Hard process timeout (the engine applies its own as well)
            sandbox: Optional sandbox configuration
            log_dir: Directory for raw process logs
        """
        super().__init__(config.name)
        self.config = config
        self.cwd = cwd
        self.timeout_sec = config.timeout_sec or timeout_sec
        self.sandbox = sandbox or SandboxConfig()
        self.log_dir = log_dir

    @property
    def sandbox_mode(self) -> str:
        return self.sandbox.mode

    async def detect(self) -> DetectResult:
        """Check the executable exists and reports a version."""
        executable = shutil.which(self.config.command[0])
        if executable is None:
            return DetectResult(
                available=False,
                error=f"{self.config.command[0]} not found in PATH",
            )

        manager = SubprocessManager(timeout_sec=15)
        try:
            result = await manager.run([executable, "--version"], cwd=self.cwd)
        except SubprocessError as e:
            return DetectResult(available=False, executable=executable, error=str(e))

        if not result["success"]:
            return DetectResult(
                available=False,
                executable=executable,
                error=result["stderr"].strip() or f"exit code {result['exit_code']}",
            )

        version = result["stdout"].strip().splitlines()[0] if result["stdout"].strip() else None
        return DetectResult(available=True, version=version, executable=executable)

    def build_command(
        self,
        prompt: str,
        files: list[Path],
        flags: list[str],
        model: str | None = None,
    ) -> list[str]:
        """Assemble the argument list for one execution."""
        command = [*self.config.command, *flags]
        if model and self.config.model_flag:
            command += [self.config.model_flag, model]
        for path in files:
            command.append(f"@{path}")
        if self.config.prompt_mode == "arg":
            command.append(prompt)
        return command

    async def _run(
        self,
        prompt: str,
        files: list[Path],
        options: ExecuteOptions,
        cancel_event: asyncio.Event,
        emit_stdout: Callable[[str], None],
        emit_stderr: Callable[[str], None],
    ) -> dict:
        cwd = options.cwd or self.cwd
        command = wrap_command(
            self.build_command(prompt, files, options.flags, options.model),
            self.sandbox,
            cwd,
        )

        env = {**os.environ, **self.config.env, **options.env}
        manager = SubprocessManager(
            timeout_sec=options.timeout_sec or self.timeout_sec,
            log_dir=self.log_dir,
        )

        try:
            return await manager.run(
                command,
                cwd=cwd,
                env=env,
                on_stdout_line=emit_stdout,
                on_stderr_line=emit_stderr,
                stdin=prompt if self.config.prompt_mode == "stdin" else None,
                cancel_event=cancel_event,
            )
        except SubprocessError as e:
            raise AgentError(f"{self.name}: {e}")
