"""Configuration models for Ralph."""

from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class RateLimitHandlingConfig(BaseModel):
    """Rate limit backoff and agent fallback behaviour."""

    enabled: bool = Field(default=True, description="Detect rate limits and apply backoff")
    max_retries: int = Field(
        default=3, ge=0, description="Backoff retries on the same agent before switching"
    )
    base_backoff_ms: int = Field(
        default=5000, ge=0, description="Base backoff; grows as base * 3^attempt"
    )
    recover_primary_between_iterations: bool = Field(
        default=True,
        description="Try the primary agent again at the start of each iteration",
    )
    all_limited_cooldown_ms: int = Field(
        default=0,
        ge=0,
        description="Wait after every agent was rate limited (0 retries immediately)",
    )


class AgentConfig(BaseModel):
    """A coding-agent CLI that can run one iteration."""

    name: str = Field(description="Agent name used in events, logs and fallback order")
    command: list[str] = Field(description="Executable and fixed arguments")
    prompt_mode: Literal["stdin", "arg"] = Field(
        default="stdin", description="Pass the prompt on stdin or as the last argument"
    )
    model_flag: str = Field(default="--model", description="Flag used to select a model")
    env: dict[str, str] = Field(default_factory=dict, description="Extra environment variables")
    timeout_sec: Optional[float] = Field(
        default=None, description="Per-agent execution timeout (overrides the global one)"
    )

    @model_validator(mode="before")
    @classmethod
    def _split_command(cls, data):
        if isinstance(data, dict) and isinstance(data.get("command"), str):
            data = {**data, "command": data["command"].split()}
        return data


class ErrorHandlingConfig(BaseModel):
    """What to do when an iteration fails or times out."""

    strategy: Literal["abort", "skip", "retry"] = Field(
        default="skip", description="abort, skip or retry"
    )
    max_retries: int = Field(default=3, ge=0, description="Attempts per task under retry")
    retry_delay_ms: int = Field(default=5000, ge=0, description="Delay between retries")
    continue_on_non_zero_exit: bool = Field(
        default=False, description="Treat a non-zero agent exit as a completed iteration"
    )


class TrackerConfig(BaseModel):
    """Task tracker configuration."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    plugin: str = Field(default="json", description="Tracker implementation")
    path: Path = Field(default=Path("prd.json"), description="Task file for the JSON tracker")


class VerificationConfig(BaseModel):
    """Commands that must pass before a completed task is accepted."""

    enabled: bool = Field(default=False, description="Run verification after completion")
    commands: list[str] = Field(default_factory=list, description="Shell commands to run")
    timeout_sec: int = Field(default=300, description="Timeout per command")


class ModelEscalationConfig(BaseModel):
    """Switch to a stronger model after repeated attempts on a task."""

    enabled: bool = Field(default=False, description="Enable model escalation")
    start_model: str = Field(default="sonnet", description="Model for first attempts")
    escalate_model: str = Field(default="opus", description="Model after escalation")
    escalate_after: int = Field(default=1, ge=1, description="Failed attempts before escalating")


class SandboxConfig(BaseModel):
    """Process isolation for agent runs."""

    mode: Literal["off", "bwrap"] = Field(default="off", description="off or bwrap")
    network: bool = Field(default=True, description="Allow network access inside the sandbox")
    allow_paths: list[str] = Field(
        default_factory=list, description="Extra read-write paths inside the sandbox"
    )


class LoggingConfig(BaseModel):
    """Logging configuration."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    level: str = Field(default="INFO", description="Log level")
    log_dir: Path = Field(default=Path(".ralph/logs"), description="Log directory")
    rotation_mb: int = Field(default=10, description="Log rotation size (MB)")
    retention_days: int = Field(default=7, description="Log retention days")


def _default_agents() -> list[AgentConfig]:
    return [
        AgentConfig(
            name="claude",
            command=["claude", "--print", "--permission-mode", "bypassPermissions"],
        ),
    ]


class RalphConfig(BaseModel):
    """Main configuration model."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    cwd: Path = Field(default_factory=Path.cwd, description="Project working directory")
    max_iterations: int = Field(default=10, ge=0, description="Iteration budget (0 = unlimited)")
    iteration_delay_ms: int = Field(default=1000, ge=0, description="Pause between iterations")
    timeout_sec: Optional[float] = Field(
        default=1800, description="Agent execution timeout (None = no timeout)"
    )
    model: Optional[str] = Field(default=None, description="Model passed to the agent")
    auto_commit: bool = Field(default=False, description="Commit after each completed task")
    output_dir: Path = Field(default=Path(".ralph"), description="Session, logs and progress")
    progress_file: Path = Field(default=Path(".ralph/progress.md"), description="Progress log")
    prompt_template: Optional[Path] = Field(default=None, description="Custom jinja2 template")
    diff_context_window: int = Field(
        default=5, ge=0, description="Recent diff summaries injected into prompts"
    )
    completion_strategies: list[Literal["promise-tag", "relaxed-tag", "heuristic"]] = Field(
        default_factory=lambda: ["promise-tag"],
        description="How the agent signals a finished task",
    )

    agent: str = Field(default="claude", description="Primary agent name")
    fallback_agents: list[str] = Field(
        default_factory=list, description="Agents used in order when the primary is limited"
    )
    agents: list[AgentConfig] = Field(default_factory=_default_agents)
    rate_limit_handling: RateLimitHandlingConfig = Field(default_factory=RateLimitHandlingConfig)
    error_handling: ErrorHandlingConfig = Field(default_factory=ErrorHandlingConfig)
    tracker: TrackerConfig = Field(default_factory=TrackerConfig)
    verification: VerificationConfig = Field(default_factory=VerificationConfig)
    model_escalation: ModelEscalationConfig = Field(default_factory=ModelEscalationConfig)
    sandbox: SandboxConfig = Field(default_factory=SandboxConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def _check_agents(self) -> "RalphConfig":
        known = {a.name for a in self.agents}
        for name in [self.agent, *self.fallback_agents]:
            if name not in known:
                raise ValueError(f"Agent '{name}' is not defined in agents")
        return self

    def get_agent(self, name: str) -> AgentConfig:
        """Look up an agent definition by name.

        Raises:
            KeyError: If no agent has that name
        """
        for agent in self.agents:
            if agent.name == name:
                return agent
        raise KeyError(name)
