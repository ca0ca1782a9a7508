"""Detect that the agent finished its task."""

import re
from collections.abc import Callable
from typing import Optional

from ..agents.base import AgentExecutionResult

PROMISE_TAG = re.compile(r"<promise>\s*COMPLETE\s*</promise>", re.IGNORECASE)
RELAXED_PROMISE = re.compile(r"\bpromise\s*:\s*complete\b", re.IGNORECASE)

COMPLETION_PHRASES = (
    "all acceptance criteria met",
    "all tasks complete",
    "implementation complete",
    "all checks pass",
)


def promise_tag(result: AgentExecutionResult) -> bool:
    return bool(PROMISE_TAG.search(result.stdout))


def relaxed_tag(result: AgentExecutionResult) -> bool:
    return promise_tag(result) or bool(RELAXED_PROMISE.search(result.stdout))


def heuristic(result: AgentExecutionResult) -> bool:
    """Look for strong completion phrases at the end of a clean exit."""
    if result.exit_code != 0:
        return False
    tail = result.stdout[-500:].lower()
    return any(phrase in tail for phrase in COMPLETION_PHRASES)


STRATEGIES: dict[str, Callable[[AgentExecutionResult], bool]] = {
    "promise-tag": promise_tag,
    "relaxed-tag": relaxed_tag,
    "heuristic": heuristic,
}


def detect_completion(
    result: AgentExecutionResult,
    strategies: Optional[list[str]] = None,
) -> Optional[str]:
    """Run completion strategies in order.

    Args:
        result: Agent execution result
        strategies: Strategy names (defaults to promise-tag only)

    Returns:
        Name of the first matching strategy, or None
    """
    for name in strategies or ["promise-tag"]:
        strategy = STRATEGIES.get(name)
        if strategy is not None and strategy(result):
            return name
    return None
