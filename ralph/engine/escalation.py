"""Escalate to a stronger model after repeated attempts on a task."""

from ..config.models import ModelEscalationConfig


class ModelEscalation:
    """Per-task attempt counter that picks the model for the next attempt."""

    def __init__(self, config: ModelEscalationConfig):
        self.config = config
        self.task_attempts: dict[str, int] = {}

    def model_for(self, task_id: str) -> str:
        attempts = self.task_attempts.get(task_id, 0)
        if attempts >= self.config.escalate_after:
            return self.config.escalate_model
        return self.config.start_model

    def record_attempt(self, task_id: str) -> None:
        self.task_attempts[task_id] = self.task_attempts.get(task_id, 0) + 1

    def clear(self, task_id: str) -> None:
        self.task_attempts.pop(task_id, None)
