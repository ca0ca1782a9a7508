"""Wrap agent commands in bubblewrap isolation."""

import os
import shutil
from pathlib import Path

from ..config.models import SandboxConfig

LINUX_SYSTEM_DIRS = ["/usr", "/bin", "/lib", "/lib64", "/sbin", "/etc", "/opt"]


class SandboxError(Exception):
    """Sandbox is configured but cannot be used."""

    pass


def wrap_command(command: list[str], config: SandboxConfig, work_dir: Path) -> list[str]:
    """Return the command to execute, wrapped according to the sandbox mode.

    The working directory and ``allow_paths`` are writable, system directories
    and the user's home are read-only; network is unshared when disabled.

    Args:
        command: Agent command and arguments
        config: Sandbox configuration
        work_dir: Project directory the agent works in

    Returns:
        Command list, unchanged when the sandbox is off

    Raises:
        SandboxError: If bwrap is requested but not installed
    """
    if config.mode == "off":
        return command

    if shutil.which("bwrap") is None:
        raise SandboxError("Sandbox mode 'bwrap' requested but bwrap is not installed")

    work_dir = work_dir.resolve()
    args = ["bwrap", "--die-with-parent", "--dev", "/dev", "--proc", "/proc", "--tmpfs", "/tmp"]
    if not config.network:
        args.append("--unshare-net")

    for directory in LINUX_SYSTEM_DIRS:
        if os.path.exists(directory):
            args.extend(["--ro-bind", directory, directory])

    home = Path.home()
    if home.exists() and not work_dir.is_relative_to(home):
        args.extend(["--ro-bind", str(home), str(home)])

    writable = [work_dir, *((work_dir / p).resolve() for p in config.allow_paths)]
    for path in writable:
        if path.exists():
            args.extend(["--bind", str(path), str(path)])

    args.extend(["--chdir", str(work_dir), "--", *command])
    return args
