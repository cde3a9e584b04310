"""
Unit tests for the repository layer.

Tests the SQLite implementation to ensure runs are recorded when admitted
and completed with their terminal result.
"""

import os
import tempfile
from datetime import UTC, datetime

import pytest
import pytest_asyncio

from ci_common.models import MaterializedTask, RunResult, RunState, TaskMetadata
from ci_persistence.sqlite_repository import SQLiteRunRepository


@pytest_asyncio.fixture
async def temp_db():
    """Create a temporary database file for testing."""
    fd, path = tempfile.mkstemp(suffix=".db")
    os.close(fd)

    repo = SQLiteRunRepository(path)
    await repo.initialize()

    yield repo

    await repo.close()
    if os.path.exists(path):
        os.unlink(path)


@pytest.fixture
def task(image):
    return MaterializedTask(
        provisioner_id="local",
        worker_type="docker",
        image=image,
        command=("make test",),
        max_run_time=60,
        metadata=TaskMetadata(name="Tests"),
    )


@pytest.mark.asyncio
async def test_create_and_get_run(temp_db, task, push_event):
    """A new run is recorded as pending with its task document."""
    await temp_db.create_run("run-1", task, push_event)

    run = await temp_db.get_run("run-1")

    assert run is not None
    assert run.state == RunState.PENDING
    assert run.task_id == task.task_id
    assert run.exit_code is None
    assert run.output == b""

    task_doc = await temp_db.get_run_task("run-1")
    assert task_doc == task.to_dict()


@pytest.mark.asyncio
async def test_get_nonexistent_run(temp_db):
    assert await temp_db.get_run("missing") is None
    assert await temp_db.get_run_task("missing") is None


@pytest.mark.asyncio
async def test_complete_run(temp_db, task):
    """Completing a run stores its terminal state and output."""
    await temp_db.create_run("run-1", task)

    started = datetime(2024, 1, 1, 12, 0, tzinfo=UTC)
    finished = datetime(2024, 1, 1, 12, 5, tzinfo=UTC)
    await temp_db.complete_run(
        RunResult(
            run_id="run-1",
            task_id=task.task_id,
            state=RunState.FAILED,
            exit_code=2,
            output=b"FAILED test_x\n",
            duration_ms=300000,
            started_at=started,
            finished_at=finished,
        )
    )

    run = await temp_db.get_run("run-1")
    assert run.state == RunState.FAILED
    assert run.exit_code == 2
    assert run.output == b"FAILED test_x\n"
    assert run.duration_ms == 300000
    assert run.started_at == started
    assert run.finished_at == finished

    # The task document survives completion
    assert (await temp_db.get_run_task("run-1"))["taskId"] == task.task_id


@pytest.mark.asyncio
async def test_complete_run_without_pending_row(temp_db):
    """A result for a run that was never recorded is still stored."""
    await temp_db.complete_run(
        RunResult(
            run_id="run-2",
            task_id="t",
            state=RunState.ABORTED,
            error="Docker is not available",
        )
    )

    run = await temp_db.get_run("run-2")
    assert run.state == RunState.ABORTED
    assert run.error == "Docker is not available"
    assert await temp_db.get_run_task("run-2") is None


@pytest.mark.asyncio
async def test_list_runs_newest_first(temp_db, task):
    for i in range(3):
        await temp_db.create_run(f"run-{i}", task)

    runs = await temp_db.list_runs()
    assert [r.run_id for r in runs] == ["run-2", "run-1", "run-0"]

    limited = await temp_db.list_runs(limit=2)
    assert len(limited) == 2
    assert all(r.output == b"" for r in limited)


@pytest.mark.asyncio
async def test_duplicate_run_id_rejected(temp_db, task):
    await temp_db.create_run("run-1", task)
    with pytest.raises(Exception):
        await temp_db.create_run("run-1", task)
