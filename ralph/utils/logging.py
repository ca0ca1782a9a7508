"""Run logging: console and rotating file handlers tagged with the iteration."""

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Iterator, Optional

LOG_FILE_PREFIX = "ralph_"

# (iteration, task_id) of the iteration currently running, if any
_iteration_context: ContextVar[Optional[tuple[int, str]]] = ContextVar(
    "ralph_iteration_context", default=None
)


@contextmanager
def log_context(iteration: int, task_id: str) -> Iterator[None]:
    """Tag every record logged inside the block with the iteration and task.

    Args:
        iteration: Iteration number
        task_id: Task being worked on
    """
    token = _iteration_context.set((iteration, task_id))
    try:
        yield
    finally:
        _iteration_context.reset(token)


class RalphFormatter(logging.Formatter):
    """Fixed-width formatter: ``[HH:MM:SS] LEVEL    module         message``."""

    LEVEL_COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, use_colors: bool = True):
        """Initialize formatter.

        Args:
            use_colors: Color the level name when stderr is a terminal
        """
        super().__init__()
        self.use_colors = use_colors

    def _level(self, levelname: str) -> str:
        if not (self.use_colors and sys.stderr.isatty()):
            return levelname
        return f"{self.LEVEL_COLORS.get(levelname, '')}{levelname}{self.RESET}"

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        module = record.name.rsplit(".", 1)[-1]

        message = record.getMessage()
        context = _iteration_context.get()
        if context is not None:
            message = f"[#{context[0]} {context[1]}] {message}"
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"

        return f"[{timestamp}] {self._level(record.levelname):8} {module:14} {message}"


def _prune_logs(log_dir: Path, retention_days: int) -> None:
    """Delete run logs last written more than retention_days ago."""
    if retention_days <= 0:
        return
    cutoff = datetime.now().timestamp() - retention_days * 86400
    for path in log_dir.glob("*.log*"):
        try:
            if path.stat().st_mtime < cutoff:
                path.unlink()
        except OSError:
            continue


def _file_handler(log_file: Path, rotation_mb: int, retention_days: int) -> RotatingFileHandler:
    log_file.parent.mkdir(parents=True, exist_ok=True)
    _prune_logs(log_file.parent, retention_days)
    handler = RotatingFileHandler(
        log_file,
        maxBytes=max(1, rotation_mb) * 1024 * 1024,
        backupCount=max(1, retention_days),
    )
    handler.setFormatter(RalphFormatter(use_colors=False))
    return handler


def setup_logging(
    level: str = "INFO",
    log_file: Optional[Path] = None,
    log_dir: Optional[Path] = None,
    rotation_mb: int = 10,
    retention_days: int = 7,
    use_colors: bool = True,
    console: bool = True,
) -> None:
    """Configure the root logger for a Ralph run.

    Replaces any existing root handlers. When only ``log_dir`` is given a
    timestamped ``ralph_YYYYmmdd_HHMMSS.log`` is created inside it.

    Args:
        level: Level name, case-insensitive
        log_file: Explicit run log path
        log_dir: Directory for a timestamped run log
        rotation_mb: Size at which the run log rotates
        retention_days: Run logs older than this are deleted (<=0 keeps all)
        use_colors: Color console level names
        console: Also log to stderr
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper()))
    root.handlers.clear()

    if console:
        stream = logging.StreamHandler(sys.stderr)
        stream.setFormatter(RalphFormatter(use_colors=use_colors))
        root.addHandler(stream)

    if log_file is None and log_dir is not None:
        log_file = Path(log_dir) / f"{LOG_FILE_PREFIX}{datetime.now():%Y%m%d_%H%M%S}.log"
    if log_file is not None:
        root.addHandler(_file_handler(Path(log_file), rotation_mb, retention_days))

    # Event loop debug chatter
    logging.getLogger("asyncio").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
