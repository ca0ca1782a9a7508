"""Verification gate run after the agent signals completion."""

import logging
import time
from pathlib import Path

from ..config.models import VerificationConfig
from ..utils.subprocess import SubprocessError, SubprocessManager
from .models import CommandResult, VerificationResult

logger = logging.getLogger(__name__)

MAX_OUTPUT_CHARS = 2048


async def run_verification(cwd: Path, config: VerificationConfig) -> VerificationResult:
    """Run verification commands in order, stopping at the first failure.

    Args:
        cwd: Project directory
        config: Verification configuration

    Returns:
        VerificationResult (passed when no commands are configured)
    """
    start = time.monotonic()
    results: list[CommandResult] = []
    manager = SubprocessManager(timeout_sec=config.timeout_sec)

    for command in config.commands:
        logger.info(f"Running verification: {command}")
        cmd_start = time.monotonic()
        try:
            raw = await manager.run(["bash", "-lc", command], cwd=cwd)
            exit_code = raw["exit_code"]
            stdout, stderr = raw["stdout"], raw["stderr"]
            if raw["timed_out"]:
                stderr += f"\nTimed out after {config.timeout_sec}s"
        except SubprocessError as e:
            exit_code, stdout, stderr = None, "", str(e)

        passed = exit_code == 0
        results.append(
            CommandResult(
                command=command,
                exit_code=exit_code,
                stdout=stdout,
                stderr=stderr,
                passed=passed,
                duration_ms=int((time.monotonic() - cmd_start) * 1000),
            )
        )
        if not passed:
            logger.warning(f"Verification failed: {command} (exit {exit_code})")
            break

    return VerificationResult(
        passed=all(r.passed for r in results),
        results=tuple(results),
        duration_ms=int((time.monotonic() - start) * 1000),
    )


def _truncate(text: str) -> str:
    if len(text) <= MAX_OUTPUT_CHARS:
        return text
    return text[:MAX_OUTPUT_CHARS] + "... (truncated)"


def format_verification_errors(result: VerificationResult) -> str:
    """Format failed commands for injection into the next prompt."""
    return "\n\n".join(
        f"Verification command failed: `{r.command}`\n"
        f"Exit code: {r.exit_code}\n"
        f"stderr:\n{_truncate(r.stderr)}\n"
        f"stdout:\n{_truncate(r.stdout)}"
        for r in result.results
        if not r.passed
    )
