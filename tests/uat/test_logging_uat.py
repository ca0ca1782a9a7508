"""UAT tests for logging utilities."""

import logging
from datetime import datetime
from unittest.mock import patch

import pytest

from ralph.utils.logging import RalphFormatter, get_logger, setup_logging


@pytest.fixture(autouse=True)
def reset_logging():
    """Reset logging configuration before and after each test."""
    root = logging.getLogger()
    original_level = root.level
    original_handlers = root.handlers.copy()

    yield

    for handler in root.handlers:
        if handler not in original_handlers:
            handler.close()
    root.setLevel(original_level)
    root.handlers.clear()
    for handler in original_handlers:
        root.addHandler(handler)


class TestUATRalphFormatter:
    """UAT tests for RalphFormatter output formatting."""

    def test_exact_layout_without_colors(self):
        """Test formatter outputs the fixed-width layout when colors are disabled."""
        formatter = RalphFormatter(use_colors=False)
        record = logging.LogRecord(
            name="ralph.engine.iteration",
            level=logging.INFO,
            pathname="iteration.py",
            lineno=1,
            msg="Iteration %d: %s",
            args=(3, "US-007"),
            exc_info=None,
        )
        record.created = datetime(2024, 1, 2, 3, 4, 5).timestamp()

        with patch("sys.stderr.isatty", return_value=True):
            output = formatter.format(record)

        expected = "[03:04:05] " + "INFO".ljust(8) + " " + "iteration".ljust(14) + " Iteration 3: US-007"
        assert output == expected


class TestUATLogFile:
    """UAT tests for the run log file."""

    def test_file_log_is_plain_text(self, tmp_path):
        """Test messages reach the run log without ANSI codes."""
        log_file = tmp_path / "logs" / "ralph.log"
        setup_logging(level="DEBUG", log_file=log_file, use_colors=True, console=False)

        get_logger("ralph.engine.machine").debug("Engine initialized with 2 open tasks")
        for handler in logging.getLogger().handlers:
            handler.flush()

        content = log_file.read_text()
        assert "machine" in content
        assert "Engine initialized with 2 open tasks" in content
        assert "\033[" not in content
