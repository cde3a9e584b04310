import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Body, Depends, FastAPI, Header, HTTPException
from fastapi.responses import JSONResponse

from ci_common.models import Event
from ci_common.repository import RunRepository
from ci_persistence.sqlite_repository import SQLiteRunRepository
from ci_pipeline.pipeline import Pipeline, build_pipeline
from ci_pipeline.settings import PipelineSettings

logger = logging.getLogger(__name__)

# Global instances (initialized at startup)
repository: RunRepository | None = None
pipeline: Pipeline | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for FastAPI app.

    Handles startup and shutdown events:
    - Startup: Open run history, load the descriptor, remove orphaned containers
    - Shutdown: Cancel in-flight runs, close database connections
    """
    global repository, pipeline

    settings = PipelineSettings.from_env()

    repository = SQLiteRunRepository(settings.db_path)
    await repository.initialize()

    pipeline = build_pipeline(settings, repository)

    try:
        removed = await pipeline.runner.cleanup_orphans()
        if removed:
            logger.info(f"Removed {removed} orphaned containers")
    except (RuntimeError, OSError) as e:
        logger.warning(f"Could not check for orphaned containers: {e}")

    yield

    await pipeline.shutdown()
    await repository.close()


app = FastAPI(lifespan=lifespan)


def get_repository() -> RunRepository:
    """
    Get the global repository instance.

    Raises:
        RuntimeError: If repository is not initialized
    """
    if repository is None:
        raise RuntimeError("Repository not initialized")
    return repository


def get_pipeline() -> Pipeline:
    """
    Get the global pipeline instance.

    Raises:
        RuntimeError: If pipeline is not initialized
    """
    if pipeline is None:
        raise RuntimeError("Pipeline not initialized")
    return pipeline


async def _dispatch(event: Event, pipe: Pipeline) -> JSONResponse:
    outcome = await pipe.dispatch(event)
    status_code = 202 if outcome.run_id else 200
    return JSONResponse(outcome.to_dict(), status_code=status_code)


@app.post("/events")
async def receive_event(
    payload: dict[str, Any] = Body(...),
    pipe: Pipeline = Depends(get_pipeline),
) -> JSONResponse:
    """
    Accept an event notification and dispatch a run if it matches.

    Body: {kind, repo_url, head_sha, user_email, sender_is_member?}

    Returns 202 with the run ID when a run was started, 200 otherwise.
    """
    try:
        event = Event.from_dict(payload)
    except KeyError as e:
        raise HTTPException(status_code=400, detail=f"Invalid event: missing {e}")
    except TypeError as e:
        raise HTTPException(status_code=400, detail=f"Invalid event: {e}")

    return await _dispatch(event, pipe)


@app.post("/github")
async def receive_github_webhook(
    payload: dict[str, Any] = Body(...),
    x_github_event: str = Header(...),
    pipe: Pipeline = Depends(get_pipeline),
) -> JSONResponse:
    """
    Accept a raw GitHub webhook delivery (pull_request or push).

    Other deliveries are accepted and ignored.
    """
    if x_github_event == "ping":
        return JSONResponse({"matched": False, "reason": "pong"})

    try:
        event = Event.from_github(x_github_event, payload)
    except (KeyError, TypeError) as e:
        raise HTTPException(
            status_code=400, detail=f"Invalid {x_github_event} payload: missing {e}"
        )

    return await _dispatch(event, pipe)


@app.get("/health")
async def health_check() -> dict[str, str]:
    """
    Health check endpoint.

    Returns:
        Dictionary with status="ok" if server is running
    """
    return {"status": "ok"}


@app.get("/runs")
async def list_runs(
    limit: int = 50,
    repo: RunRepository = Depends(get_repository),
    pipe: Pipeline = Depends(get_pipeline),
) -> list[dict[str, Any]]:
    """
    List recent runs, newest first.

    In-flight runs report their live state.
    """
    runs = await repo.list_runs(limit=limit)
    summaries = []
    for run in runs:
        summary = run.to_summary_dict()
        live_state = pipe.runner.state_of(run.run_id)
        if live_state is not None:
            summary["state"] = live_state.value
        summaries.append(summary)
    return summaries


@app.get("/runs/{run_id}")
async def get_run(
    run_id: str,
    repo: RunRepository = Depends(get_repository),
    pipe: Pipeline = Depends(get_pipeline),
) -> dict[str, Any]:
    """
    Get a run's state, its task and, once finished, its status report.

    Raises:
        HTTPException: 404 if run_id not found
    """
    run = await repo.get_run(run_id)

    if run is None:
        raise HTTPException(status_code=404, detail="Run not found")

    body = run.to_summary_dict()
    live_state = pipe.runner.state_of(run_id)
    if live_state is not None:
        body["state"] = live_state.value

    body["task"] = await repo.get_run_task(run_id)
    body["report"] = run.to_status_report() if run.state.is_terminal else None
    return body


@app.post("/runs/{run_id}/cancel")
async def cancel_run(
    run_id: str,
    repo: RunRepository = Depends(get_repository),
    pipe: Pipeline = Depends(get_pipeline),
) -> dict[str, Any]:
    """
    Cancel an in-flight run. Cancelling a finished run is a no-op.

    Raises:
        HTTPException: 404 if run_id not found
    """
    run = await repo.get_run(run_id)

    if run is None:
        raise HTTPException(status_code=404, detail="Run not found")

    return {"run_id": run_id, "cancelled": pipe.cancel(run_id)}
