"""Prompt rendering with jinja2 templates."""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from jinja2 import Environment, StrictUndefined, TemplateError

from ..trackers.base import Task

logger = logging.getLogger(__name__)

DEFAULT_TEMPLATE = """## Task
**ID**: {{ task_id }}
**Title**: {{ task_title }}
{% if task_description %}
## Description
{{ task_description }}
{% endif %}
{% if acceptance_criteria %}
## Acceptance Criteria
{{ acceptance_criteria }}
{% endif %}
{% if labels %}
**Labels**: {{ labels }}
{% endif %}
{% if depends_on %}
**Dependencies**: {{ depends_on }}
{% endif %}
{% if codebase_patterns %}
{{ codebase_patterns }}
{% endif %}
{% if recent_progress %}
## Previous Progress
{{ recent_progress }}
{% endif %}
{% if diff_context %}
## Recent Changes
{{ diff_context }}
{% endif %}
{% if verification_errors %}
## Verification Failed
Your previous attempt signalled completion but verification failed. Fix these problems:

{{ verification_errors }}
{% endif %}
## Instructions
Complete the task described above.

**IMPORTANT**: If the work is already complete (implemented in a previous iteration or already exists), verify it works correctly and signal completion immediately.

When finished (or if already complete), signal completion with:
<promise>COMPLETE</promise>
"""

FALLBACK_TEMPLATE = """## Task: {task_id} - {task_title}

{task_description}

When finished, signal completion with:
<promise>COMPLETE</promise>
"""


@dataclass
class PromptContext:
    """Extra context injected into the prompt besides the task itself."""

    recent_progress: str = ""
    codebase_patterns: str = ""
    diff_context: str = ""
    verification_errors: str = ""


@dataclass
class RenderResult:
    prompt: str
    source: str
    error: Optional[str] = None


def template_variables(task: Task, context: PromptContext) -> dict:
    return {
        "task": task,
        "task_id": task.id,
        "task_title": task.title,
        "task_description": task.description or "",
        "acceptance_criteria": "\n".join(f"- {c}" for c in task.acceptance_criteria),
        "labels": ", ".join(task.labels),
        "depends_on": ", ".join(task.depends_on),
        "blocks": ", ".join(task.blocks),
        "recent_progress": context.recent_progress,
        "codebase_patterns": context.codebase_patterns,
        "diff_context": context.diff_context,
        "verification_errors": context.verification_errors,
    }


class PromptRenderer:
    """Renders agent prompts.

    Template source order: the configured template file, then the tracker's
    template, then the built-in default.
    """

    def __init__(self, template_path: Optional[Path] = None):
        self.template_path = template_path
        self._env = Environment(
            autoescape=False,
            undefined=StrictUndefined,
            trim_blocks=True,
            lstrip_blocks=True,
        )

    def _select_source(self, tracker_template: Optional[str]) -> tuple[str, str]:
        if self.template_path is not None:
            if self.template_path.exists():
                return self.template_path.read_text(encoding="utf-8"), str(self.template_path)
            logger.warning(f"Prompt template not found: {self.template_path}; using default")
        if tracker_template:
            return tracker_template, "tracker"
        return DEFAULT_TEMPLATE, "default"

    def render(
        self,
        task: Task,
        context: Optional[PromptContext] = None,
        tracker_template: Optional[str] = None,
    ) -> RenderResult:
        """Render the prompt for a task.

        Never raises: a broken template is logged and replaced by a minimal prompt.

        Args:
            task: Task to work on
            context: Progress, patterns and diff context
            tracker_template: Template supplied by the tracker, if any

        Returns:
            RenderResult
        """
        context = context or PromptContext()
        source = "default"
        try:
            source_text, source = self._select_source(tracker_template)
            template = self._env.from_string(source_text)
            prompt = template.render(**template_variables(task, context))
            return RenderResult(prompt=prompt.strip() + "\n", source=source)
        except (TemplateError, OSError) as e:
            logger.error(f"Template rendering failed ({source}): {e}")
            prompt = FALLBACK_TEMPLATE.format(
                task_id=task.id,
                task_title=task.title,
                task_description=task.description or "",
            )
            return RenderResult(prompt=prompt, source="fallback", error=str(e))
