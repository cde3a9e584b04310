"""
The event pipeline: match, materialize, run.

Configuration is an explicit immutable object handed to each Pipeline, so
any number of independent pipelines can live in one process.
"""

import asyncio
import logging
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from ci_common.errors import TemplateBindingError
from ci_common.models import (
    Event,
    MaterializedTask,
    RunResult,
    TaskTemplate,
    TriggerRuleSet,
)
from ci_common.repository import RunRepository
from ci_controller.container_manager import ContainerManager
from ci_controller.reporters import (
    HttpStatusReporter,
    LoggingStatusReporter,
    RepositoryStatusReporter,
)
from ci_controller.runner import ExecutionRunner, StatusReporter

from .materializer import TaskMaterializer
from .settings import PipelineSettings
from .trigger import TriggerMatcher

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PipelineConfig:
    """The single trigger rule set and task template of a pipeline."""

    rules: TriggerRuleSet
    template: TaskTemplate


@dataclass(frozen=True)
class DispatchOutcome:
    """What happened to one inbound event."""

    matched: bool
    run_id: str | None = None
    task_id: str | None = None
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "matched": self.matched,
            "run_id": self.run_id,
            "task_id": self.task_id,
            "reason": self.reason,
        }


class Pipeline:
    """
    Turns events into runs.

    Matching and binding problems stay local: the event is logged and no run
    is dispatched. Once a run is dispatched its outcome always reaches the
    runner's status reporters.
    """

    def __init__(
        self,
        config: PipelineConfig,
        runner: ExecutionRunner,
        context: Mapping[str, str] | None = None,
        repository: RunRepository | None = None,
    ):
        """
        Initialize the pipeline.

        Args:
            config: Trigger rules and task template
            runner: Execution runner that owns the containers
            context: Provider variables available to the template
            repository: Optional run history; pending runs are recorded here
        """
        self.config = config
        self.runner = runner
        self.repository = repository
        self.matcher = TriggerMatcher(config.rules)
        self.materializer = TaskMaterializer(context)
        self._tasks: dict[str, asyncio.Task] = {}

    def prepare(self, event: Event) -> MaterializedTask | None:
        """
        Match an event and bind the template to it.

        Returns:
            The materialized task, or None if the event does not match

        Raises:
            TemplateBindingError: If the template needs a value the event lacks
        """
        if not self.matcher.matches(event):
            return None
        return self.materializer.materialize(self.config.template, event)

    async def handle(self, event: Event, run_id: str | None = None) -> RunResult | None:
        """
        Process one event to completion.

        Returns:
            The terminal RunResult, or None if nothing was dispatched
        """
        outcome, task = await self._admit(event, run_id)
        if task is None:
            return None
        return await self.runner.run(task, run_id=outcome.run_id)

    async def dispatch(self, event: Event) -> DispatchOutcome:
        """
        Start processing an event in the background and return at once.

        Returns:
            DispatchOutcome describing whether a run was started
        """
        outcome, task = await self._admit(event)
        if task is None:
            return outcome

        background = asyncio.create_task(
            self.runner.run(task, run_id=outcome.run_id),
            name=f"run-{outcome.run_id}",
        )
        self._tasks[outcome.run_id] = background
        background.add_done_callback(self._on_run_done)
        return outcome

    def cancel(self, run_id: str) -> bool:
        """Cancel a dispatched run. Returns False if it is not in flight."""
        return self.runner.cancel(run_id)

    async def drain(self) -> list[RunResult]:
        """Wait for every background run and return their results."""
        tasks = list(self._tasks.values())
        results = await asyncio.gather(*tasks, return_exceptions=True)
        return [r for r in results if isinstance(r, RunResult)]

    async def shutdown(self) -> None:
        """Cancel all background runs; their containers are torn down."""
        for task in self._tasks.values():
            task.cancel()
        await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        self._tasks.clear()

    async def _admit(
        self, event: Event, run_id: str | None = None
    ) -> tuple[DispatchOutcome, MaterializedTask | None]:
        try:
            task = self.prepare(event)
        except TemplateBindingError as e:
            logger.warning(f"Not dispatching run for {event.head_sha}: {e}")
            return DispatchOutcome(matched=True, reason=str(e)), None

        if task is None:
            return DispatchOutcome(matched=False, reason="Event does not match"), None

        run_id = run_id or str(uuid.uuid4())
        if self.repository is not None:
            await self.repository.create_run(run_id, task, event)

        kind = event.to_dict()["kind"]
        logger.info(f"Event {kind} at {event.head_sha} admitted as run {run_id}")
        return DispatchOutcome(matched=True, run_id=run_id, task_id=task.task_id), task

    def _on_run_done(self, task: asyncio.Task) -> None:
        run_id = task.get_name().removeprefix("run-")
        self._tasks.pop(run_id, None)
        if task.cancelled():
            logger.warning(f"Run {run_id} was cancelled before completion")
        elif task.exception() is not None:
            logger.error(
                f"Run {run_id} crashed: {task.exception()}",
                exc_info=task.exception(),
            )


def build_pipeline(
    settings: PipelineSettings,
    repository: RunRepository,
    config: PipelineConfig | None = None,
) -> Pipeline:
    """
    Wire a pipeline from settings: descriptor, container manager, reporters.

    Args:
        settings: Process settings
        repository: Run history that receives pending and terminal runs
        config: Pipeline configuration (default: loaded from the descriptor path)

    Raises:
        DescriptorError: If the descriptor cannot be loaded
    """
    if config is None:
        from .descriptor import load_descriptor

        config = load_descriptor(settings.descriptor_path)

    reporters: list[StatusReporter] = [
        LoggingStatusReporter(),
        RepositoryStatusReporter(repository),
    ]
    if settings.status_url:
        reporters.append(HttpStatusReporter(settings.status_url))

    runner = ExecutionRunner(
        container_manager=ContainerManager(
            container_name_prefix=settings.container_prefix
        ),
        reporters=reporters,
    )
    return Pipeline(config, runner, context=settings.context, repository=repository)
