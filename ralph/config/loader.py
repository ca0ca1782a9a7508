"""Configuration loader with validation."""

from pathlib import Path

import yaml
from pydantic import ValidationError

from .models import RalphConfig


class ConfigError(Exception):
    """Configuration error."""

    pass


_RELATIVE_PATH_KEYS = ("output_dir", "progress_file", "prompt_template")


def load_config(config_path: Path) -> RalphConfig:
    """Load and validate configuration from YAML file.

    Relative paths in the file are resolved against the project directory
    (``cwd``), which itself defaults to the directory containing the
    ``.ralph`` folder the config lives in.

    Args:
        config_path: Path to config YAML file

    Returns:
        Validated RalphConfig instance

    Raises:
        ConfigError: If config file missing or invalid
    """
    if not config_path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")

    try:
        with open(config_path, "r") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_path}: {e}")

    if not data:
        raise ConfigError(f"Empty configuration file: {config_path}")
    if not isinstance(data, dict):
        raise ConfigError(f"Configuration must be a mapping: {config_path}")

    base = config_path.resolve().parent
    if base.name == ".ralph":
        base = base.parent

    cwd = Path(data.get("cwd") or base)
    if not cwd.is_absolute():
        cwd = (base / cwd).resolve()
    data["cwd"] = cwd

    for key in _RELATIVE_PATH_KEYS:
        if data.get(key) and not Path(data[key]).is_absolute():
            data[key] = cwd / data[key]

    tracker = data.get("tracker")
    if isinstance(tracker, dict) and tracker.get("path"):
        if not Path(tracker["path"]).is_absolute():
            tracker["path"] = cwd / tracker["path"]

    try:
        return RalphConfig(**data)
    except ValidationError as e:
        raise ConfigError(f"Configuration validation failed: {e}")


def create_default_config(config_path: Path) -> None:
    """Create default configuration file.

    Args:
        config_path: Path where config should be created
    """
    config_path.parent.mkdir(parents=True, exist_ok=True)

    default_config = {
        "max_iterations": 10,
        "iteration_delay_ms": 1000,
        "timeout_sec": 1800,
        "auto_commit": False,
        "output_dir": ".ralph",
        "progress_file": ".ralph/progress.md",
        "diff_context_window": 5,
        "completion_strategies": ["promise-tag"],
        "agent": "claude",
        "fallback_agents": [],
        "agents": [
            {
                "name": "claude",
                "command": "claude --print --permission-mode bypassPermissions",
                "prompt_mode": "stdin",
            },
            {
                "name": "codex",
                "command": "codex exec --full-auto",
                "prompt_mode": "arg",
            },
        ],
        "rate_limit_handling": {
            "enabled": True,
            "max_retries": 3,
            "base_backoff_ms": 5000,
            "recover_primary_between_iterations": True,
        },
        "error_handling": {
            "strategy": "skip",
            "max_retries": 3,
            "retry_delay_ms": 5000,
            "continue_on_non_zero_exit": False,
        },
        "tracker": {
            "plugin": "json",
            "path": "prd.json",
        },
        "verification": {
            "enabled": False,
            "commands": [],
        },
        "logging": {
            "level": "INFO",
            "log_dir": ".ralph/logs",
        },
    }

    with open(config_path, "w") as f:
        yaml.dump(default_config, f, default_flow_style=False, sort_keys=False)
