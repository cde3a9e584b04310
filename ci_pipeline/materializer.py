"""
Task materialization: binding a task template to one event.

Placeholders have the form {{ variable }}. Only a closed set of variables is
recognised; there are no filters, expressions or nested lookups.

Substitution happens in a single pass over the template text. Substituted
values are never rescanned for placeholders and never evaluated. Inside
command entries each value is shell-quoted so it reaches the container as a
single literal word; values made only of shell-safe characters (commit
SHAs, plain URLs, e-mail addresses) come through unchanged.
"""

import logging
import re
import shlex
from collections.abc import Callable, Mapping

from ci_common.errors import TemplateBindingError
from ci_common.models import (
    Event,
    EventKind,
    MaterializedTask,
    TaskMetadata,
    TaskTemplate,
)

logger = logging.getLogger(__name__)

PLACEHOLDER_PATTERN = re.compile(r"\{\{(.*?)\}\}")

EVENT_VARIABLES: dict[str, Callable[[Event], str | None]] = {
    "event.kind": lambda event: (
        event.kind.value if isinstance(event.kind, EventKind) else event.kind
    ),
    "event.head.repo.url": lambda event: event.repo_url,
    "event.head.sha": lambda event: event.head_sha,
    "event.head.user.email": lambda event: event.user_email,
}


class TaskMaterializer:
    """
    Expands task templates against events.

    Provider-level variables (such as taskcluster.docker.provisionerId) are
    fixed at construction; event variables come from each event.
    """

    def __init__(self, context: Mapping[str, str] | None = None):
        self.context = dict(context or {})

    def variables(self, event: Event) -> dict[str, str | None]:
        """All variable values available for an event (None = no value)."""
        values: dict[str, str | None] = dict(self.context)
        for name, getter in EVENT_VARIABLES.items():
            values[name] = getter(event) or None
        return values

    def materialize(self, template: TaskTemplate, event: Event) -> MaterializedTask:
        """
        Bind every placeholder in a template to the event's values.

        Args:
            template: Task template with placeholders
            event: Event supplying the values

        Returns:
            A fully bound task

        Raises:
            TemplateBindingError: If a referenced variable is unknown or has
                no value for this event. No task is produced in that case.
        """
        values = self.variables(event)

        def plain(text: str) -> str:
            return self._substitute(text, values, quote=False)

        task = MaterializedTask(
            provisioner_id=plain(template.provisioner_id),
            worker_type=plain(template.worker_type),
            image=template.image,
            command=tuple(
                self._substitute(entry, values, quote=True)
                for entry in template.command
            ),
            max_run_time=template.max_run_time,
            shell=template.shell,
            metadata=TaskMetadata(
                name=plain(template.metadata.name),
                description=plain(template.metadata.description),
                owner=plain(template.metadata.owner),
                source=plain(template.metadata.source),
            ),
        )
        logger.debug(f"Materialized task {task.task_id} for {event.head_sha}")
        return task

    @staticmethod
    def _substitute(text: str, values: Mapping[str, str | None], quote: bool) -> str:
        def replace(match: re.Match) -> str:
            name = match.group(1).strip()
            if name not in values:
                raise TemplateBindingError(name, "is not a recognised variable")
            value = values[name]
            if value is None:
                raise TemplateBindingError(name)
            return shlex.quote(value) if quote else value

        return PLACEHOLDER_PATTERN.sub(replace, text)
