from typing import Any

import requests


def post_event(
    event: dict[str, Any], server_url: str = "http://localhost:8000"
) -> dict[str, Any]:
    """
    Send an event notification to the pipeline server.

    Args:
        event: Event fields (kind, repo_url, head_sha, user_email)
        server_url: Base URL of the CI server

    Returns:
        dict: Dispatch outcome with matched, run_id, task_id and reason

    Raises:
        RuntimeError: If the request fails due to network or server error
    """
    try:
        response = requests.post(f"{server_url}/events", json=event, timeout=30)
        response.raise_for_status()
        return response.json()
    except requests.exceptions.RequestException as e:
        raise RuntimeError(f"Error sending event to CI server: {e}")


def list_runs(
    server_url: str = "http://localhost:8000", limit: int = 50
) -> list[dict[str, Any]]:
    """
    List recent runs, newest first.

    Raises:
        RuntimeError: If the request fails due to network or server error
    """
    try:
        response = requests.get(
            f"{server_url}/runs", params={"limit": limit}, timeout=30
        )
        response.raise_for_status()
        return response.json()
    except requests.exceptions.RequestException as e:
        raise RuntimeError(f"Error listing runs: {e}")


def get_run(run_id: str, server_url: str = "http://localhost:8000") -> dict[str, Any]:
    """
    Fetch one run with its task and, once finished, its status report.

    Raises:
        RuntimeError: If the run does not exist or the request fails
    """
    try:
        response = requests.get(f"{server_url}/runs/{run_id}", timeout=30)
        response.raise_for_status()
        return response.json()
    except requests.exceptions.RequestException as e:
        raise RuntimeError(f"Error fetching run {run_id}: {e}")


def cancel_run(run_id: str, server_url: str = "http://localhost:8000") -> bool:
    """
    Ask the server to cancel a run.

    Returns:
        bool: True if the run was in flight and cancellation was requested

    Raises:
        RuntimeError: If the run does not exist or the request fails
    """
    try:
        response = requests.post(f"{server_url}/runs/{run_id}/cancel", timeout=30)
        response.raise_for_status()
        return response.json()["cancelled"]
    except requests.exceptions.RequestException as e:
        raise RuntimeError(f"Error cancelling run {run_id}: {e}")
