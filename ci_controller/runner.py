"""
Execution runner: runs one materialized task in its own container.

A run moves through Pending -> Provisioning -> Running and ends in exactly
one of Succeeded, Failed, TimedOut or Aborted. Every terminal result is
handed to the configured status reporters. There is no retry here.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Protocol

from ci_common.errors import ExecutionTimeout, InvalidTransitionError, ProvisioningError
from ci_common.models import MaterializedTask, RunResult, RunState

from .container_manager import ContainerManager

logger = logging.getLogger(__name__)

TRANSITIONS: dict[RunState, frozenset[RunState]] = {
    RunState.PENDING: frozenset({RunState.PROVISIONING, RunState.ABORTED}),
    RunState.PROVISIONING: frozenset({RunState.RUNNING, RunState.ABORTED}),
    RunState.RUNNING: frozenset(
        {RunState.SUCCEEDED, RunState.FAILED, RunState.TIMED_OUT, RunState.ABORTED}
    ),
    RunState.SUCCEEDED: frozenset(),
    RunState.FAILED: frozenset(),
    RunState.TIMED_OUT: frozenset(),
    RunState.ABORTED: frozenset(),
}


class StatusReporter(Protocol):
    """Receives the terminal result of every run."""

    async def report(self, result: RunResult) -> None: ...


class RunStateMachine:
    """Tracks one run's lifecycle and rejects illegal transitions."""

    def __init__(self, run_id: str):
        self.run_id = run_id
        self.state = RunState.PENDING
        self.history: list[RunState] = [RunState.PENDING]

    def transition(self, new_state: RunState) -> None:
        """
        Move to a new state.

        Raises:
            InvalidTransitionError: If the lifecycle does not allow the move
        """
        if new_state not in TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                f"Run {self.run_id}: cannot go from {self.state.value} to {new_state.value}"
            )
        logger.debug(f"Run {self.run_id}: {self.state.value} -> {new_state.value}")
        self.state = new_state
        self.history.append(new_state)


@dataclass
class _ActiveRun:
    machine: RunStateMachine
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)


@dataclass
class _Outcome:
    state: RunState
    exit_code: int | None = None
    output: bytes = b""
    error: str | None = None


class ExecutionRunner:
    """
    Runs materialized tasks in isolated Docker containers.

    Each run owns its container; runs share nothing but the container
    manager, which is stateless, so any number may execute concurrently.
    """

    def __init__(
        self,
        container_manager: ContainerManager | None = None,
        reporters: list[StatusReporter] | tuple[StatusReporter, ...] = (),
    ):
        """
        Initialize the runner.

        Args:
            container_manager: Container manager for Docker operations
            reporters: Collaborators notified of every terminal result
        """
        self.container_manager = container_manager or ContainerManager()
        self.reporters = list(reporters)
        self._active: dict[str, _ActiveRun] = {}

    def state_of(self, run_id: str) -> RunState | None:
        """Current state of an in-flight run, or None if it is not active."""
        active = self._active.get(run_id)
        return active.machine.state if active else None

    @property
    def active_run_ids(self) -> list[str]:
        return list(self._active)

    def cancel(self, run_id: str) -> bool:
        """
        Request cancellation of a run.

        Cancelling an unknown or already finished run is a no-op.

        Returns:
            True if a cancellation was requested
        """
        active = self._active.get(run_id)
        if active is None or active.machine.state.is_terminal:
            return False
        if not active.cancel_event.is_set():
            logger.info(f"Cancellation requested for run {run_id}")
            active.cancel_event.set()
        return True

    async def run(self, task: MaterializedTask, run_id: str | None = None) -> RunResult:
        """
        Execute a task and report its terminal result.

        Args:
            task: Materialized task to run
            run_id: Optional run identifier (default: new UUID)

        Returns:
            Terminal RunResult
        """
        run_id = run_id or str(uuid.uuid4())
        active = _ActiveRun(RunStateMachine(run_id))
        self._active[run_id] = active

        started_at = datetime.now(UTC)
        started = time.monotonic()
        logger.info(f"Run {run_id} dispatched for task {task.task_id}")

        try:
            outcome = await self._execute(task, run_id, active)
        except asyncio.CancelledError:
            # Interrupted from outside, e.g. shutdown
            outcome = _Outcome(RunState.ABORTED, error="Run interrupted")
            result = self._result(task, run_id, outcome, started_at, started)
            await self._report(result)
            raise
        finally:
            self._active.pop(run_id, None)

        result = self._result(task, run_id, outcome, started_at, started)
        logger.info(
            f"Run {run_id} finished: {result.state.value} "
            f"(exit_code={result.exit_code}, {result.duration_ms}ms)"
        )

        await self._report(result)
        return result

    @staticmethod
    def _result(
        task: MaterializedTask,
        run_id: str,
        outcome: _Outcome,
        started_at: datetime,
        started: float,
    ) -> RunResult:
        return RunResult(
            run_id=run_id,
            task_id=task.task_id,
            state=outcome.state,
            exit_code=outcome.exit_code,
            output=outcome.output,
            duration_ms=int((time.monotonic() - started) * 1000),
            started_at=started_at,
            finished_at=datetime.now(UTC),
            error=outcome.error,
        )

    async def _execute(
        self, task: MaterializedTask, run_id: str, active: _ActiveRun
    ) -> _Outcome:
        machine = active.machine
        cm = self.container_manager

        if active.cancel_event.is_set():
            machine.transition(RunState.ABORTED)
            return _Outcome(RunState.ABORTED, error="Cancelled before dispatch")

        machine.transition(RunState.PROVISIONING)
        container_id = None
        try:
            await cm.provision_image(task.image)
            if task.command:
                container_id = await cm.create_container(
                    run_id, task.image, task.command, shell=task.shell
                )
                await cm.start_container(container_id)
        except asyncio.CancelledError:
            await cm.cleanup_container(run_id)
            raise
        except (ProvisioningError, OSError) as e:
            logger.error(f"Run {run_id} could not be provisioned: {e}")
            if container_id is not None:
                await cm.cleanup_container(run_id)
            machine.transition(RunState.ABORTED)
            return _Outcome(RunState.ABORTED, error=str(e))

        if active.cancel_event.is_set():
            if container_id is not None:
                await self._teardown(run_id, container_id)
            machine.transition(RunState.ABORTED)
            return _Outcome(RunState.ABORTED, error="Cancelled")

        machine.transition(RunState.RUNNING)

        if container_id is None:
            # Nothing to execute
            machine.transition(RunState.SUCCEEDED)
            return _Outcome(RunState.SUCCEEDED, exit_code=0)

        outcome = await self._wait(task, run_id, container_id, active)
        machine.transition(outcome.state)
        return outcome

    async def _wait(
        self,
        task: MaterializedTask,
        run_id: str,
        container_id: str,
        active: _ActiveRun,
    ) -> _Outcome:
        cm = self.container_manager
        wait_task = asyncio.create_task(cm.wait_container(container_id))
        cancel_task = asyncio.create_task(active.cancel_event.wait())

        try:
            done, _ = await asyncio.wait(
                {wait_task, cancel_task},
                timeout=task.max_run_time,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            await self._cancel_tasks(wait_task, cancel_task)
            await self._teardown(run_id, container_id)
            raise

        await self._cancel_tasks(wait_task, cancel_task)

        if wait_task in done and wait_task.exception() is None:
            exit_code = wait_task.result()
            output = await self._collect_output(run_id, container_id)
            await self._teardown(run_id, container_id)
            state = RunState.SUCCEEDED if exit_code == 0 else RunState.FAILED
            return _Outcome(state, exit_code=exit_code, output=output)

        output = await self._collect_output(run_id, container_id, stop_first=True)
        removed = await self._teardown(run_id, container_id)

        if wait_task in done:
            error = f"Lost track of container: {wait_task.exception()}"
            logger.error(f"Run {run_id}: {error}")
            state = RunState.ABORTED
        elif cancel_task in done:
            error = "Cancelled"
            state = RunState.ABORTED
        else:
            error = str(ExecutionTimeout(task.max_run_time))
            logger.warning(f"Run {run_id}: {error}")
            state = RunState.TIMED_OUT

        if not removed:
            error = f"{error}; container {container_id} could not be removed"
        return _Outcome(state, output=output, error=error)

    async def _collect_output(
        self, run_id: str, container_id: str, stop_first: bool = False
    ) -> bytes:
        cm = self.container_manager
        try:
            if stop_first:
                await cm.stop_container(container_id, timeout=0)
            return await cm.read_logs(container_id)
        except RuntimeError as e:
            logger.warning(f"Run {run_id}: could not collect output: {e}")
            return b""

    async def _teardown(self, run_id: str, container_id: str) -> bool:
        removed = await self.container_manager.cleanup_container(run_id)
        if not removed:
            logger.error(f"Run {run_id}: container {container_id} still present")
        return removed

    @staticmethod
    async def _cancel_tasks(*tasks: asyncio.Task) -> None:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def _report(self, result: RunResult) -> None:
        for reporter in self.reporters:
            try:
                await reporter.report(result)
            except Exception as e:
                logger.error(
                    f"Status reporter {type(reporter).__name__} failed for run "
                    f"{result.run_id}: {e}",
                    exc_info=True,
                )

    async def cleanup_orphans(self) -> int:
        """
        Remove run containers that no active run owns (crash recovery).

        Returns:
            Number of containers removed
        """
        removed = 0
        for container in await self.container_manager.list_ci_containers():
            if container.name in self._active:
                continue
            logger.warning(
                f"Found orphaned container {container.container_id} "
                f"(run: {container.name}), cleaning up"
            )
            if await self.container_manager.cleanup_container(container.name):
                removed += 1
        return removed
