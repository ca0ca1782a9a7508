"""Build agent factories from configuration."""

import logging
from collections.abc import Awaitable, Callable

from ..config.models import RalphConfig
from .base import BaseAgent
from .command import CommandAgent

logger = logging.getLogger(__name__)

AgentFactory = Callable[[str], Awaitable[BaseAgent]]


def build_agent_factory(config: RalphConfig) -> AgentFactory:
    """Return an async factory that creates and initializes agents by name.

    Instances are cached so a fallback agent is only created once per run.

    Args:
        config: Loaded configuration

    Returns:
        Async callable ``name -> BaseAgent``
    """
    cache: dict[str, BaseAgent] = {}

    async def factory(name: str) -> BaseAgent:
        if name in cache:
            return cache[name]

        agent_config = config.get_agent(name)
        agent = CommandAgent(
            agent_config,
            cwd=config.cwd,
            timeout_sec=config.timeout_sec,
            sandbox=config.sandbox,
            log_dir=config.cwd / config.output_dir / "agent-logs",
        )
        await agent.initialize()
        logger.debug(f"Created agent {name}: {' '.join(agent_config.command)}")
        cache[name] = agent
        return agent

    return factory
