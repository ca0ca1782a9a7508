"""Engine error taxonomy."""


class EngineError(Exception):
    """Base class for engine errors."""

    pass


class InitializationError(EngineError):
    """Engine could not acquire its tracker or agent."""

    pass


class NotInitializedError(InitializationError):
    """start() was called before initialize()."""

    def __init__(self, message: str = "Engine not initialized. Call initialize() first."):
        super().__init__(message)


class AlreadyRunningError(EngineError):
    """start() was called while the engine was not idle."""

    def __init__(self, status: str):
        super().__init__(f"Cannot start engine in {status} state")
        self.status = status


class IterationTimeout(EngineError):
    """Agent execution exceeded its timeout."""

    def __init__(self, timeout_sec: float):
        super().__init__(f"Agent execution timed out after {timeout_sec:g}s")
        self.timeout_sec = timeout_sec


class IterationFailure(EngineError):
    """Agent exited non-zero without a rate-limit verdict."""

    def __init__(self, message: str, exit_code: int | None = None):
        super().__init__(message)
        self.exit_code = exit_code


class RateLimited(EngineError):
    """Every configured agent is rate limited."""

    def __init__(self, tried_agents: list[str], message: str | None = None):
        super().__init__(
            message or f"All agents rate limited: {', '.join(tried_agents)}"
        )
        self.tried_agents = tried_agents
