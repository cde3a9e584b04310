"""
Container manager for Docker-based task execution.

This module provides an abstraction over Docker operations for managing
task execution containers. Images are always addressed by digest, and every
container is named "{prefix}{run_id}" and labelled with its run ID so that
independent pipelines never touch each other's containers.
"""

import asyncio
import json
import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Literal

from ci_common.errors import ProvisioningError
from ci_common.models import DEFAULT_SHELL, ImageReference

logger = logging.getLogger(__name__)

RUN_LABEL = "ci.run-id"

# The first argument is the step interpreter; each remaining argument runs as
# one step, stopping at the first failure with that step's exit code.
STEP_RUNNER = (
    'shell="$1"; shift; for step in "$@"; do "$shell" -c "$step" || exit $?; done'
)


@dataclass
class ContainerInfo:
    """
    Information about a Docker container.

    Represents the current state of a container from Docker's perspective.
    """

    container_id: str
    name: str  # Run ID used as container name
    status: Literal[
        "created", "running", "exited", "paused", "restarting", "removing", "dead"
    ]
    exit_code: int | None
    started_at: datetime | None
    finished_at: datetime | None


async def _docker(*args: str) -> tuple[int, bytes, bytes]:
    process = await asyncio.create_subprocess_exec(
        "docker",
        *args,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await process.communicate()
    except asyncio.CancelledError:
        if process.returncode is None:
            process.terminate()
            await process.wait()
        raise
    return process.returncode, stdout, stderr


class ContainerManager:
    """
    Manages Docker containers for CI task execution.

    This class provides high-level operations for provisioning images and
    creating, waiting on, and cleaning up the containers that run tasks.
    """

    def __init__(self, container_name_prefix: str = ""):
        """
        Initialize the container manager.

        Args:
            container_name_prefix: Optional prefix for container names.
                                  Containers are named as "{prefix}{run_id}".
                                  This enables parallel pipelines without interference.
        """
        self.container_name_prefix = container_name_prefix

    def _get_container_name(self, run_id: str) -> str:
        """
        Get the full container name with prefix.

        Args:
            run_id: Run identifier

        Returns:
            Full container name: "{prefix}{run_id}"
        """
        return f"{self.container_name_prefix}{run_id}"

    async def provision_image(self, image: ImageReference) -> str:
        """
        Make the digest-pinned image available locally.

        Args:
            image: Image reference with content digest

        Returns:
            The pinned reference ("name@sha256:...") to create containers from

        Raises:
            ProvisioningError: If the image cannot be pulled or the local
                image does not carry the expected digest
        """
        reference = image.pinned
        try:
            returncode, _, stderr = await _docker("pull", "--quiet", reference)
        except OSError as e:
            raise ProvisioningError(f"Docker is not available: {e}") from e

        if returncode != 0:
            raise ProvisioningError(
                f"Failed to pull image {reference}: {stderr.decode().strip()}"
            )

        returncode, stdout, stderr = await _docker(
            "image", "inspect", "--format", "{{json .RepoDigests}}", reference
        )
        if returncode != 0:
            raise ProvisioningError(
                f"Image {reference} not found after pull: {stderr.decode().strip()}"
            )

        try:
            repo_digests = json.loads(stdout.decode()) or []
        except json.JSONDecodeError as e:
            raise ProvisioningError(f"Failed to parse image digests: {e}") from e

        if not any(entry.endswith(f"@{image.digest}") for entry in repo_digests):
            raise ProvisioningError(
                f"Digest mismatch for {image.name}: expected {image.digest}, "
                f"got {', '.join(repo_digests) or 'none'}"
            )

        logger.debug(f"Provisioned image {reference}")
        return reference

    async def create_container(
        self,
        run_id: str,
        image: ImageReference,
        steps: Sequence[str],
        shell: str = DEFAULT_SHELL,
    ) -> str:
        """
        Create a Docker container that runs shell steps in order.

        Steps are passed as separate arguments to a fixed runner script, so
        the step text is handed to the shell exactly once.

        Args:
            run_id: Unique run identifier (used as container name)
            image: Provisioned image reference
            steps: Ordered shell steps
            shell: Interpreter each step is run with (`shell -c step`)

        Returns:
            Container ID

        Raises:
            ProvisioningError: If container creation fails
        """
        container_name = self._get_container_name(run_id)
        returncode, stdout, stderr = await _docker(
            "create",
            "--name",
            container_name,
            "--label",
            f"{RUN_LABEL}={run_id}",
            image.pinned,
            "/bin/sh",
            "-c",
            STEP_RUNNER,
            "ci-steps",
            shell,
            *steps,
        )

        if returncode != 0:
            raise ProvisioningError(
                f"Failed to create container: {stderr.decode().strip()}"
            )

        return stdout.decode().strip()

    async def start_container(self, container_id: str) -> None:
        """
        Start a created container.

        Args:
            container_id: Docker container ID or name

        Raises:
            ProvisioningError: If container start fails
        """
        returncode, _, stderr = await _docker("start", container_id)

        if returncode != 0:
            raise ProvisioningError(
                f"Failed to start container: {stderr.decode().strip()}"
            )

    async def wait_container(self, container_id: str) -> int:
        """
        Block until a container exits.

        Cancelling the awaiting task terminates the `docker wait` process.

        Args:
            container_id: Docker container ID or name

        Returns:
            The container's exit code

        Raises:
            RuntimeError: If the wait fails
        """
        returncode, stdout, stderr = await _docker("wait", container_id)

        if returncode != 0:
            raise RuntimeError(f"Failed to wait for container: {stderr.decode()}")

        try:
            return int(stdout.decode().strip())
        except ValueError as e:
            raise RuntimeError(f"Unexpected docker wait output: {stdout!r}") from e

    async def read_logs(self, container_id: str) -> bytes:
        """
        Read the combined stdout/stderr of a container.

        Args:
            container_id: Docker container ID or name

        Returns:
            Captured output

        Raises:
            RuntimeError: If logs cannot be read
        """
        process = await asyncio.create_subprocess_exec(
            "docker",
            "logs",
            container_id,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )

        output, _ = await process.communicate()

        if process.returncode != 0:
            raise RuntimeError(f"Failed to read logs: {output.decode()}")

        return output

    async def get_container_info(self, run_id: str) -> ContainerInfo | None:
        """
        Get information about a container by run ID.

        Args:
            run_id: Run identifier (used as container name)

        Returns:
            ContainerInfo if container exists, None otherwise
        """
        container_name = self._get_container_name(run_id)
        returncode, stdout, _ = await _docker("inspect", container_name)

        if returncode != 0:
            # Container doesn't exist
            return None

        try:
            data = json.loads(stdout.decode())
            if not data:
                return None

            container = data[0]
            state = container["State"]

            return ContainerInfo(
                container_id=container["Id"],
                name=run_id,
                status=state["Status"].lower(),
                exit_code=state.get("ExitCode"),
                started_at=_parse_timestamp(state.get("StartedAt")),
                finished_at=_parse_timestamp(state.get("FinishedAt")),
            )
        except (json.JSONDecodeError, KeyError, IndexError) as e:
            raise RuntimeError(f"Failed to parse container info: {e}") from e

    async def stop_container(self, container_id: str, timeout: int = 10) -> None:
        """
        Stop a running container.

        Args:
            container_id: Docker container ID or name
            timeout: Seconds to wait before killing container

        Raises:
            RuntimeError: If stop operation fails
        """
        returncode, _, stderr = await _docker(
            "stop", "--time", str(timeout), container_id
        )

        if returncode != 0:
            raise RuntimeError(f"Failed to stop container: {stderr.decode()}")

    async def remove_container(self, container_id: str, force: bool = False) -> None:
        """
        Remove a container.

        Args:
            container_id: Docker container ID or name
            force: If True, force removal even if running

        Raises:
            RuntimeError: If removal fails
        """
        args = ["rm"]
        if force:
            args.append("--force")
        args.append(container_id)

        returncode, _, stderr = await _docker(*args)

        if returncode != 0:
            # Ignore "already removed" errors
            error = stderr.decode()
            if "No such container" not in error:
                raise RuntimeError(f"Failed to remove container: {error}")

    async def list_ci_containers(self) -> list[ContainerInfo]:
        """
        List all run containers (both running and stopped).

        Returns:
            List of ContainerInfo objects for containers matching our naming pattern
        """
        returncode, stdout, stderr = await _docker(
            "ps",
            "-a",
            "--filter",
            f"label={RUN_LABEL}",
            "--format",
            "{{.Names}}",
        )

        if returncode != 0:
            raise RuntimeError(f"Failed to list containers: {stderr.decode()}")

        containers = []
        for name in stdout.decode().strip().split("\n"):
            if not name:
                continue
            # Only containers with our prefix and a valid run ID
            run_id = self._extract_run_id(name)
            if run_id:
                info = await self.get_container_info(run_id)
                if info:
                    containers.append(info)

        return containers

    def _extract_run_id(self, container_name: str) -> str | None:
        """
        Extract run ID from container name by stripping prefix.

        Args:
            container_name: Full container name from Docker

        Returns:
            Run ID if container matches our prefix and name pattern, None otherwise
        """
        if not container_name.startswith(self.container_name_prefix):
            return None

        potential_run_id = container_name[len(self.container_name_prefix) :]

        # UUID format: 8-4-4-4-12 hex characters
        uuid_pattern = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
        if re.match(uuid_pattern, potential_run_id):
            return potential_run_id

        return None

    async def cleanup_container(self, run_id: str) -> bool:
        """
        Force-remove a run's container and confirm it is gone.

        Args:
            run_id: Run identifier (used as container name)

        Returns:
            True if no container remains for the run
        """
        container_name = self._get_container_name(run_id)
        try:
            await self.remove_container(container_name, force=True)
        except (RuntimeError, OSError) as e:
            logger.warning(f"Failed to remove container {container_name}: {e}")

        try:
            return await self.get_container_info(run_id) is None
        except (RuntimeError, OSError) as e:
            logger.warning(f"Could not confirm removal of {container_name}: {e}")
            return False


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
