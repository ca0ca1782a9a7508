"""Adjustable iteration budget."""

import logging

from .models import IterationInfo

logger = logging.getLogger(__name__)

UNLIMITED = 0


class IterationBudget:
    """Tracks the current iteration number against a runtime-adjustable maximum.

    ``max_iterations == 0`` means unlimited; in that mode add/remove are no-ops.
    """

    def __init__(self, max_iterations: int):
        """Initialize budget.

        Args:
            max_iterations: Iteration limit (0 = unlimited)
        """
        self.current_iteration = 0
        self.max_iterations = max_iterations

    @property
    def unlimited(self) -> bool:
        return self.max_iterations == UNLIMITED

    def info(self) -> IterationInfo:
        return IterationInfo(
            current_iteration=self.current_iteration,
            max_iterations=self.max_iterations,
        )

    def exhausted(self) -> bool:
        """Return True when no iterations remain."""
        return not self.unlimited and self.current_iteration >= self.max_iterations

    def next_iteration(self) -> int:
        """Advance and return the new iteration number."""
        self.current_iteration += 1
        return self.current_iteration

    def add(self, n: int) -> tuple[int, int] | None:
        """Raise the maximum.

        Args:
            n: Iterations to add

        Returns:
            (previous_max, new_max), or None if nothing changed
        """
        if n <= 0 or self.unlimited:
            return None
        previous = self.max_iterations
        self.max_iterations += n
        logger.info(f"Iteration budget raised: {previous} -> {self.max_iterations}")
        return previous, self.max_iterations

    def remove(self, n: int) -> tuple[int, int] | None:
        """Lower the maximum, never below 1.

        Args:
            n: Iterations to remove

        Returns:
            (previous_max, new_max), or None if nothing changed
        """
        if n <= 0 or self.unlimited:
            return None
        previous = self.max_iterations
        new_max = max(1, previous - n)
        if new_max == previous:
            return None
        self.max_iterations = new_max
        logger.info(f"Iteration budget lowered: {previous} -> {new_max}")
        return previous, new_max
