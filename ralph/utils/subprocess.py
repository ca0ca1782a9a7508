"""Subprocess management with timeouts, stuck detection and cancellation."""

import asyncio
import logging
import os
import shlex
import shutil
import signal
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

logger = logging.getLogger(__name__)


class SubprocessError(Exception):
    """Subprocess execution error."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        timed_out: bool = False,
        stuck: bool = False,
    ):
        super().__init__(message)
        self.exit_code = exit_code
        self.timed_out = timed_out
        self.stuck = stuck


def _signal_group(process: asyncio.subprocess.Process, sig: int) -> bool:
    """Send sig to the process group, falling back to the process itself.

    Returns:
        False once the process is already gone
    """
    try:
        if os.name != "nt":
            os.killpg(process.pid, sig)
            return True
    except ProcessLookupError:
        return False
    except OSError:
        pass
    try:
        process.send_signal(sig)
    except ProcessLookupError:
        return False
    return True


async def terminate_process(process: asyncio.subprocess.Process, grace_sec: float = 2.0) -> None:
    """Stop a process and everything it spawned.

    Agent CLIs start their own children (test runners, language servers), so
    the whole group gets SIGTERM, then SIGKILL after grace_sec.
    """
    for sig in (signal.SIGTERM, signal.SIGKILL):
        if process.returncode is not None or not _signal_group(process, sig):
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=grace_sec)
            return
        except TimeoutError:
            continue
    logger.warning(f"Process {process.pid} did not exit after SIGKILL")


def format_command(command: list[str], max_args: int = 12, max_arg_len: int = 200) -> str:
    """Render a command for logs without dumping whole prompts."""
    shown = [
        f"<{len(arg)} chars>" if len(arg) > max_arg_len else shlex.quote(arg)
        for arg in command[:max_args]
    ]
    if len(command) > max_args:
        shown.append("...")
    return " ".join(shown)


class SubprocessManager:
    """Managed subprocess execution with timeouts and cooperative cancellation."""

    def __init__(
        self,
        timeout_sec: float | None,
        stuck_no_output_sec: int | None = None,
        log_dir: Path | None = None,
    ):
        """Initialize subprocess manager.

        Args:
            timeout_sec: Hard timeout for process (None to wait indefinitely)
            stuck_no_output_sec: Stuck detection threshold (None to disable)
            log_dir: Directory for process logs
        """
        self.timeout_sec = timeout_sec
        self.stuck_no_output_sec = stuck_no_output_sec
        self.log_dir = log_dir

    async def run(
        self,
        command: list[str],
        cwd: Path | None = None,
        env: dict[str, str] | None = None,
        on_stdout_line: Callable[[str], None] | None = None,
        on_stderr_line: Callable[[str], None] | None = None,
        stdin: str | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> dict:
        """Run command with timeout, stuck detection and cancellation.

        Args:
            command: Command and arguments
            cwd: Working directory
            env: Environment variables
            on_stdout_line: Called for every stdout line as it arrives
            on_stderr_line: Called for every stderr line as it arrives
            stdin: Optional string to write to stdin
            cancel_event: Setting this event terminates the process group

        Returns:
            Result dict with keys:
                - success: bool
                - output: str (stdout followed by stderr)
                - stdout: str
                - stderr: str
                - exit_code: int | None
                - timed_out: bool
                - stuck: bool
                - interrupted: bool

        Raises:
            SubprocessError: On execution failure
        """
        logger.info("Running command: %s", format_command(command))

        log_path = None
        if self.log_dir:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            log_path = self.log_dir / f"cmd_{timestamp}.log"

        process: asyncio.subprocess.Process | None = None
        read_task: asyncio.Task[None] | None = None
        try:
            process = await self._spawn(command, cwd, env, stdin is not None)
            logger.debug(f"Subprocess created with PID={process.pid}")

            if stdin is not None and process.stdin:
                process.stdin.write(stdin.encode("utf-8"))
                await process.stdin.drain()
                process.stdin.close()
                logger.debug(f"Wrote {len(stdin)} bytes to stdin")

            last_output_time = {"value": datetime.now()}
            stdout_lines: list[str] = []
            stderr_lines: list[str] = []

            read_task = asyncio.create_task(
                self._read_streams(
                    process,
                    last_output_time,
                    stdout_lines,
                    stderr_lines,
                    log_path,
                    on_stdout_line,
                    on_stderr_line,
                )
            )

            timed_out, stuck, interrupted = await self._wait(process, cancel_event, last_output_time)
            exit_code = None if (timed_out or interrupted) else process.returncode

            # Give the reader a moment to drain any remaining buffered output.
            try:
                await asyncio.wait_for(read_task, timeout=2.0)
            except TimeoutError:
                read_task.cancel()
                try:
                    await read_task
                except asyncio.CancelledError:
                    pass

            stdout = "".join(stdout_lines)
            stderr = "".join(stderr_lines)

            logger.info(
                f"Command completed: exit_code={exit_code}, timed_out={timed_out}, "
                f"stuck={stuck}, interrupted={interrupted}"
            )

            return {
                "success": exit_code == 0,
                "output": stdout + stderr,
                "stdout": stdout,
                "stderr": stderr,
                "exit_code": exit_code,
                "timed_out": timed_out,
                "stuck": stuck,
                "interrupted": interrupted,
            }

        except FileNotFoundError:
            # Either the executable is missing from PATH or the cwd does not exist.
            if cwd is not None and not Path(cwd).exists():
                raise SubprocessError(
                    f"Working directory not found: {cwd} (while running: {command[0]})"
                )
            raise SubprocessError(f"Command not found: {command[0]}")
        except asyncio.CancelledError:
            # Do not leak subprocess transports on cancellation.
            try:
                if read_task is not None and not read_task.done():
                    read_task.cancel()
                if process is not None:
                    await terminate_process(process)
            finally:
                raise
        except SubprocessError:
            raise
        except OSError as e:
            raise SubprocessError(f"Subprocess error: {e}")

    async def _spawn(
        self,
        command: list[str],
        cwd: Path | None,
        env: dict[str, str] | None,
        with_stdin: bool,
    ) -> asyncio.subprocess.Process:
        """Start the process in its own session so its group can be signalled."""
        if env is not None and "PATH" not in env and os.environ.get("PATH"):
            env = {**env, "PATH": os.environ["PATH"]}

        if not os.path.isabs(command[0]):
            resolved = shutil.which(command[0], path=(env or os.environ).get("PATH"))
            if resolved:
                command = [resolved, *command[1:]]

        return await asyncio.create_subprocess_exec(
            *command,
            cwd=cwd,
            env=env,
            start_new_session=(os.name != "nt"),
            stdin=asyncio.subprocess.PIPE if with_stdin else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )

    async def _wait(
        self,
        process: asyncio.subprocess.Process,
        cancel_event: asyncio.Event | None,
        last_output_time: dict[str, datetime],
    ) -> tuple[bool, bool, bool]:
        """Wait for exit, timeout or cancellation.

        Returns:
            Tuple of (timed_out, stuck, interrupted)
        """
        wait_task = asyncio.create_task(process.wait())
        cancel_task = asyncio.create_task(cancel_event.wait()) if cancel_event else None
        waiters = {wait_task} if cancel_task is None else {wait_task, cancel_task}

        try:
            done, _ = await asyncio.wait(
                waiters,
                timeout=self.timeout_sec,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            if cancel_task is not None and not cancel_task.done():
                cancel_task.cancel()

        if wait_task in done:
            return False, False, False

        if cancel_task is not None and cancel_task in done:
            logger.info(f"Cancellation requested, terminating PID={process.pid}")
            await terminate_process(process)
            await wait_task
            return False, False, True

        stuck = False
        if self.stuck_no_output_sec:
            idle = (datetime.now() - last_output_time["value"]).total_seconds()
            stuck = idle > self.stuck_no_output_sec

        logger.warning(f"Process {process.pid} timed out after {self.timeout_sec}s")
        await terminate_process(process)
        await wait_task
        return True, stuck, False

    async def _read_streams(
        self,
        process: asyncio.subprocess.Process,
        last_output_time: dict[str, datetime],
        stdout_lines: list[str],
        stderr_lines: list[str],
        log_path: Path | None = None,
        on_stdout_line: Callable[[str], None] | None = None,
        on_stderr_line: Callable[[str], None] | None = None,
    ) -> None:
        """Read stdout and stderr concurrently until both close."""
        log_file = open(log_path, "w") if log_path else None

        try:
            readers = []
            if process.stdout:
                readers.append(
                    self._read_stream(
                        process.stdout, last_output_time, stdout_lines, log_file, on_stdout_line
                    )
                )
            if process.stderr:
                readers.append(
                    self._read_stream(
                        process.stderr, last_output_time, stderr_lines, log_file, on_stderr_line
                    )
                )
            await asyncio.gather(*readers)
        finally:
            if log_file:
                log_file.close()

    async def _read_stream(
        self,
        stream: asyncio.StreamReader,
        last_output_time: dict[str, datetime],
        lines: list[str],
        log_file: object | None = None,
        on_line: Callable[[str], None] | None = None,
    ) -> None:
        """Read from a single stream.

        Args:
            stream: Stream to read
            last_output_time: Updated when output received
            lines: Accumulates output lines
            log_file: Optional log file
            on_line: Optional per-line callback
        """
        while True:
            line = await stream.readline()
            if not line:
                break

            line_str = line.decode("utf-8", errors="replace")
            lines.append(line_str)
            last_output_time["value"] = datetime.now()
            if on_line:
                on_line(line_str)

            if log_file:
                log_file.write(line_str)
                log_file.flush()
