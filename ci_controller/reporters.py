"""
Status reporters: where terminal run results are delivered.
"""

import asyncio
import logging

import requests

from ci_common.models import RunResult, RunState
from ci_common.repository import RunRepository

logger = logging.getLogger(__name__)


class LoggingStatusReporter:
    """Writes a one-line summary of every result to the log."""

    async def report(self, result: RunResult) -> None:
        level = logging.INFO if result.state == RunState.SUCCEEDED else logging.WARNING
        logger.log(
            level,
            f"Task {result.task_id} run {result.run_id}: {result.status.value} "
            f"(exit_code={result.exit_code}, {result.duration_ms}ms)",
        )


class HttpStatusReporter:
    """
    POSTs the status report to the event source's status API.

    The request runs in a worker thread so the event loop is never blocked.
    """

    def __init__(
        self,
        url: str,
        timeout: float = 30.0,
        session: requests.Session | None = None,
    ):
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()

    async def report(self, result: RunResult) -> None:
        """
        Raises:
            requests.exceptions.RequestException: If delivery fails
        """
        await asyncio.to_thread(self._post, result.to_status_report())
        logger.debug(f"Reported run {result.run_id} to {self.url}")

    def _post(self, body: dict) -> None:
        response = self.session.post(self.url, json=body, timeout=self.timeout)
        response.raise_for_status()


class RepositoryStatusReporter:
    """Persists every result to the run history."""

    def __init__(self, repository: RunRepository):
        self.repository = repository

    async def report(self, result: RunResult) -> None:
        await self.repository.complete_run(result)
