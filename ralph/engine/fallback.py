"""Agent fallback under rate limiting."""

import logging
from datetime import datetime, timezone
from typing import Literal, Optional

from ..config.models import RateLimitHandlingConfig
from ..trackers.base import Task
from .events import AgentSwitchedEvent, AllAgentsLimitedEvent, EventBus
from .models import ActiveAgentInfo, AgentSwitchEntry, RateLimitState

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class AgentFallbackCoordinator:
    """Chooses the active agent among the primary and ordered fallbacks.

    A rate limit moves the active agent to the first of ``[primary, *fallbacks]``
    that is not limited, and it stays there until another limit hits it or
    ``recover_primary_between_iterations`` brings the primary back. When every
    agent is limited at once the set is cleared (a full reset) after emitting
    ``agent:all-limited``, so later iterations start over from the primary.
    """

    def __init__(
        self,
        primary_agent: str,
        fallback_agents: list[str],
        handling: RateLimitHandlingConfig,
        bus: EventBus,
    ):
        """Initialize coordinator.

        Args:
            primary_agent: Preferred agent name
            fallback_agents: Agents to try in order when the primary is limited
            handling: Rate limit configuration
            bus: Event bus for switch notifications
        """
        self.primary_agent = primary_agent
        self.agents = list(dict.fromkeys([primary_agent, *fallback_agents]))
        self.handling = handling
        self.bus = bus

        self._limited: list[str] = []
        self._limited_at: Optional[str] = None
        self._retry_counts: dict[str, int] = {}
        self._active = primary_agent
        self._active_since = _now()
        self._switches: list[AgentSwitchEntry] = []

    def get_active_agent(self) -> str:
        return self._active

    def _first_available(self) -> str:
        for name in self.agents:
            if name not in self._limited:
                return name
        return self.primary_agent

    def _reason(self, agent: str) -> Literal["primary", "fallback"]:
        return "primary" if agent == self.primary_agent else "fallback"

    def get_active_agent_info(self) -> ActiveAgentInfo:
        return ActiveAgentInfo(
            plugin=self._active,
            reason=self._reason(self._active),
            since=self._active_since,
        )

    def get_rate_limit_state(self) -> RateLimitState:
        return RateLimitState(
            primary_agent=self.primary_agent,
            active_agent=self._active,
            active_agent_reason=self._reason(self._active),
            rate_limited_agents=frozenset(self._limited),
            limited_at=self._limited_at,
        )

    @property
    def switch_history(self) -> list[AgentSwitchEntry]:
        """Agent switches since the current iteration began."""
        return list(self._switches)

    def _switch_to(self, agent: str) -> None:
        if agent == self._active:
            return
        previous = self._active
        reason = self._reason(agent)
        self._active = agent
        self._active_since = _now()
        self._switches.append(
            AgentSwitchEntry(at=self._active_since, from_agent=previous, to_agent=agent, reason=reason)
        )
        logger.info(f"Switching agent: {previous} -> {agent} ({reason})")
        self.bus.emit(
            AgentSwitchedEvent(
                previous_agent=previous,
                new_agent=agent,
                reason=reason,
                rate_limit_state=self.get_rate_limit_state(),
            )
        )

    def prepare_iteration(self) -> str:
        """Prepare for a new iteration and return the agent to use.

        With ``recover_primary_between_iterations`` the primary is optimistically
        released from the limited set; a renewed rate limit re-adds it. Without
        it a fallback stays active until it is limited itself.
        """
        self._switches = []
        if self._active == self.primary_agent:
            return self._active
        if self.handling.recover_primary_between_iterations:
            if self.primary_agent in self._limited:
                self._limited.remove(self.primary_agent)
            logger.info(f"Attempting recovery to primary agent {self.primary_agent}")
            self._switch_to(self.primary_agent)
        elif self._active in self._limited:
            self._switch_to(self._first_available())
        return self._active

    def next_backoff(self, task_id: str, retry_after: Optional[int] = None) -> Optional[int]:
        """Reserve a backoff retry on the current agent.

        Args:
            task_id: Task being retried
            retry_after: Seconds reported by the agent, if any

        Returns:
            Delay in milliseconds, or None when retries are exhausted
        """
        attempt = self._retry_counts.get(task_id, 0)
        if attempt >= self.handling.max_retries:
            return None
        self._retry_counts[task_id] = attempt + 1
        if retry_after:
            return retry_after * 1000
        return self.handling.base_backoff_ms * 3**attempt

    def retry_attempts(self, task_id: str) -> int:
        return self._retry_counts.get(task_id, 0)

    def reset_retries(self, task_id: str) -> None:
        self._retry_counts.pop(task_id, None)

    def record_rate_limit(self, agent: str, task: Optional[Task] = None) -> Optional[str]:
        """Mark an agent as rate limited and move to the next one.

        Args:
            agent: Agent that hit the limit
            task: Task being worked on, for the all-limited event

        Returns:
            Name of the agent to switch to, or None if every agent is limited
            (the limited set has then been reset)
        """
        if agent not in self._limited:
            self._limited.append(agent)
        self._limited_at = _now()

        if all(name in self._limited for name in self.agents):
            tried = list(self._limited)
            logger.warning(f"All agents rate limited: {', '.join(tried)}")
            self.bus.emit(AllAgentsLimitedEvent(tried_agents=tried, task=task))
            self._limited.clear()
            self._switch_to(self.primary_agent)
            return None

        self._switch_to(self._first_available())
        return self._active

    def mark_unavailable(self, agent: str, task: Optional[Task] = None) -> Optional[str]:
        """Treat an agent that cannot be created or detected like a limited one."""
        logger.warning(f"Agent {agent} unavailable; skipping it")
        return self.record_rate_limit(agent, task)

    def clear(self) -> None:
        """Make every agent eligible again, e.g. after a task completes.

        The active agent is left as is; ``prepare_iteration`` decides whether
        to return to the primary.
        """
        self._limited.clear()
        self._retry_counts.clear()
