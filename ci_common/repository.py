"""
Abstract repository interface for run history.

This module defines the contract that any database implementation must follow,
allowing easy swapping between SQLite, PostgreSQL, MySQL, etc.
"""

from abc import ABC, abstractmethod
from typing import Any

from .models import Event, MaterializedTask, RunResult


class RunRepository(ABC):
    """
    Abstract base class for run history storage.

    Implementations must provide async-safe access to run data
    and handle their own connection management.
    """

    @abstractmethod
    async def create_run(
        self, run_id: str, task: MaterializedTask, event: Event | None = None
    ) -> None:
        """
        Record a new run in the pending state.

        Args:
            run_id: Unique run identifier
            task: The materialized task being run
            event: The event that triggered the run, if any

        Raises:
            Exception: If a run with the same ID already exists
        """
        pass

    @abstractmethod
    async def complete_run(self, result: RunResult) -> None:
        """
        Store the terminal result of a run.

        Creates the row if the run was never recorded as pending.

        Args:
            result: Terminal run result
        """
        pass

    @abstractmethod
    async def get_run(self, run_id: str) -> RunResult | None:
        """
        Retrieve a run by its ID.

        Args:
            run_id: Unique run identifier

        Returns:
            RunResult (terminal or not) if found, None otherwise
        """
        pass

    @abstractmethod
    async def get_run_task(self, run_id: str) -> dict[str, Any] | None:
        """
        Retrieve the materialized task document a run executed.

        Args:
            run_id: Unique run identifier

        Returns:
            Task dictionary in descriptor shape if found, None otherwise
        """
        pass

    @abstractmethod
    async def list_runs(self, limit: int = 50) -> list[RunResult]:
        """
        List the most recent runs, newest first, without captured output.

        Args:
            limit: Maximum number of runs to return

        Returns:
            List of RunResult objects with empty output
        """
        pass

    @abstractmethod
    async def initialize(self) -> None:
        """
        Initialize the database (create tables, etc.).

        Called once at application startup.
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """
        Close database connections and cleanup resources.

        Called at application shutdown.
        """
        pass
