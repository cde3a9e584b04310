"""
SQLite implementation of the run repository.

Uses aiosqlite for async operations.
Can be easily replaced with PostgreSQL/MySQL implementations.
"""

import json
from datetime import UTC, datetime
from typing import Any

import aiosqlite

from ci_common.models import Event, MaterializedTask, RunResult, RunState
from ci_common.repository import RunRepository

_RUN_COLUMNS = (
    "id, task_id, state, exit_code, duration_ms, started_at, finished_at, error"
)


class SQLiteRunRepository(RunRepository):
    """
    SQLite-based run history.

    Uses a single database file with one table:
    - runs: Run metadata, the task document it executed, the triggering
      event and the captured output
    """

    def __init__(self, db_path: str = "ci_runs.db"):
        """
        Initialize the SQLite repository.

        Args:
            db_path: Path to the SQLite database file
        """
        self.db_path = db_path
        self._connection: aiosqlite.Connection | None = None

    async def _get_connection(self) -> aiosqlite.Connection:
        """Get or create database connection."""
        if self._connection is None:
            self._connection = await aiosqlite.connect(self.db_path)
        return self._connection

    async def initialize(self) -> None:
        """
        Create database tables if they don't exist.

        Schema:
        - runs table: one row per run, created pending and completed once
        """
        conn = await self._get_connection()

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS runs (
                id TEXT PRIMARY KEY,
                task_id TEXT NOT NULL,
                state TEXT NOT NULL,
                exit_code INTEGER,
                duration_ms INTEGER NOT NULL DEFAULT 0,
                started_at TEXT,
                finished_at TEXT,
                error TEXT,
                output BLOB,
                task_json TEXT,
                event_json TEXT,
                created_at TEXT NOT NULL
            )
        """)

        # Listings are newest first
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_runs_created_at
            ON runs(created_at)
        """)

        await conn.commit()

    async def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    async def create_run(
        self, run_id: str, task: MaterializedTask, event: Event | None = None
    ) -> None:
        """
        Record a new run in the pending state.

        Args:
            run_id: Unique run identifier
            task: The materialized task being run
            event: The event that triggered the run, if any
        """
        conn = await self._get_connection()

        await conn.execute(
            """
            INSERT INTO runs (id, task_id, state, task_json, event_json, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                run_id,
                task.task_id,
                RunState.PENDING.value,
                json.dumps(task.to_dict()),
                json.dumps(event.to_dict()) if event else None,
                datetime.now(UTC).isoformat(),
            ),
        )
        await conn.commit()

    async def complete_run(self, result: RunResult) -> None:
        """
        Store the terminal result of a run.

        Args:
            result: Terminal run result
        """
        conn = await self._get_connection()

        await conn.execute(
            """
            INSERT INTO runs (id, task_id, state, exit_code, duration_ms,
                              started_at, finished_at, error, output, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                state = excluded.state,
                exit_code = excluded.exit_code,
                duration_ms = excluded.duration_ms,
                started_at = excluded.started_at,
                finished_at = excluded.finished_at,
                error = excluded.error,
                output = excluded.output
            """,
            (
                result.run_id,
                result.task_id,
                result.state.value,
                result.exit_code,
                result.duration_ms,
                result.started_at.isoformat() if result.started_at else None,
                result.finished_at.isoformat() if result.finished_at else None,
                result.error,
                result.output,
                datetime.now(UTC).isoformat(),
            ),
        )
        await conn.commit()

    async def get_run(self, run_id: str) -> RunResult | None:
        """
        Retrieve a run with its captured output.

        Args:
            run_id: Unique run identifier

        Returns:
            RunResult if found, None otherwise
        """
        conn = await self._get_connection()

        cursor = await conn.execute(
            f"SELECT {_RUN_COLUMNS}, output FROM runs WHERE id = ?",
            (run_id,),
        )
        row = await cursor.fetchone()

        if row is None:
            return None

        result = self._row_to_result(row[:-1])
        result.output = bytes(row[-1]) if row[-1] is not None else b""
        return result

    async def get_run_task(self, run_id: str) -> dict[str, Any] | None:
        """
        Retrieve the materialized task document a run executed.

        Args:
            run_id: Unique run identifier

        Returns:
            Task dictionary if found, None otherwise
        """
        conn = await self._get_connection()

        cursor = await conn.execute(
            "SELECT task_json FROM runs WHERE id = ?", (run_id,)
        )
        row = await cursor.fetchone()

        if row is None or row[0] is None:
            return None
        return json.loads(row[0])

    async def list_runs(self, limit: int = 50) -> list[RunResult]:
        """
        List the most recent runs, newest first, without captured output.

        Args:
            limit: Maximum number of runs to return

        Returns:
            List of RunResult objects
        """
        conn = await self._get_connection()

        cursor = await conn.execute(
            f"SELECT {_RUN_COLUMNS} FROM runs ORDER BY created_at DESC, rowid DESC LIMIT ?",
            (limit,),
        )
        rows = await cursor.fetchall()

        return [self._row_to_result(row) for row in rows]

    @staticmethod
    def _row_to_result(row: tuple) -> RunResult:
        (
            run_id,
            task_id,
            state,
            exit_code,
            duration_ms,
            started_at_str,
            finished_at_str,
            error,
        ) = row
        return RunResult(
            run_id=run_id,
            task_id=task_id,
            state=RunState(state),
            exit_code=exit_code,
            duration_ms=duration_ms,
            started_at=(
                datetime.fromisoformat(started_at_str) if started_at_str else None
            ),
            finished_at=(
                datetime.fromisoformat(finished_at_str) if finished_at_str else None
            ),
            error=error,
        )
