"""
Unit tests for ci_controller.container_manager.

Docker is never invoked: asyncio.create_subprocess_exec is patched and each
test checks the docker arguments and how results are interpreted. The step
runner script is also run with the local /bin/sh to check step semantics.
"""

import json
import os
import shutil
import subprocess
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from ci_common.errors import ProvisioningError
from ci_controller.container_manager import (
    RUN_LABEL,
    STEP_RUNNER,
    ContainerManager,
)

from .conftest import DIGEST

RUN_ID = "550e8400-e29b-41d4-a716-446655440000"


def mock_process(returncode=0, stdout=b"", stderr=b""):
    process = MagicMock()
    process.returncode = returncode
    process.communicate = AsyncMock(return_value=(stdout, stderr))
    process.wait = AsyncMock(return_value=returncode)
    return process


def docker_args(mock_exec, call_index=0):
    """Arguments passed to docker (without the executable) for one call."""
    return list(mock_exec.call_args_list[call_index].args[1:])


@pytest.fixture
def container_manager():
    return ContainerManager(container_name_prefix="ci_test_")


class TestContainerNaming:
    def test_extract_run_id_valid(self, container_manager):
        assert container_manager._extract_run_id(f"ci_test_{RUN_ID}") == RUN_ID

    def test_extract_run_id_wrong_prefix(self, container_manager):
        assert container_manager._extract_run_id(f"other_{RUN_ID}") is None

    def test_extract_run_id_rejects_non_uuid(self, container_manager):
        invalid_names = [
            "ci_test_not-a-uuid",
            "ci_test_550e8400",  # Incomplete UUID
            "ci_test_",
            "ci_test_550e8400-e29b-41d4-a716-44665544000g",  # Invalid character
        ]
        for name in invalid_names:
            assert container_manager._extract_run_id(name) is None, (
                f"Should reject: {name}"
            )


class TestProvisionImage:
    @pytest.mark.asyncio
    async def test_pulls_by_digest_and_verifies(self, container_manager, image):
        pull = mock_process()
        inspect = mock_process(
            stdout=json.dumps([f"example/test-image@{DIGEST}"]).encode()
        )

        with patch(
            "asyncio.create_subprocess_exec", side_effect=[pull, inspect]
        ) as mock_exec:
            reference = await container_manager.provision_image(image)

        assert reference == f"example/test-image@{DIGEST}"
        assert docker_args(mock_exec, 0) == ["pull", "--quiet", reference]
        assert docker_args(mock_exec, 1)[:2] == ["image", "inspect"]

    @pytest.mark.asyncio
    async def test_pull_failure(self, container_manager, image):
        pull = mock_process(returncode=1, stderr=b"manifest unknown")

        with patch("asyncio.create_subprocess_exec", return_value=pull):
            with pytest.raises(ProvisioningError, match="manifest unknown"):
                await container_manager.provision_image(image)

    @pytest.mark.asyncio
    async def test_digest_mismatch(self, container_manager, image):
        pull = mock_process()
        inspect = mock_process(stdout=b'["example/test-image@sha256:0000"]')

        with patch("asyncio.create_subprocess_exec", side_effect=[pull, inspect]):
            with pytest.raises(ProvisioningError, match="Digest mismatch"):
                await container_manager.provision_image(image)

    @pytest.mark.asyncio
    async def test_docker_missing(self, container_manager, image):
        with patch(
            "asyncio.create_subprocess_exec", side_effect=FileNotFoundError("docker")
        ):
            with pytest.raises(ProvisioningError, match="not available"):
                await container_manager.provision_image(image)


class TestContainerLifecycle:
    @pytest.mark.asyncio
    async def test_create_container_passes_steps_as_arguments(
        self, container_manager, image
    ):
        process = mock_process(stdout=b"abc123def\n")
        steps = ["echo one", "echo 'two'"]

        with patch("asyncio.create_subprocess_exec", return_value=process) as mock_exec:
            container_id = await container_manager.create_container(
                RUN_ID, image, steps
            )

        assert container_id == "abc123def"
        assert docker_args(mock_exec) == [
            "create",
            "--name",
            f"ci_test_{RUN_ID}",
            "--label",
            f"{RUN_LABEL}={RUN_ID}",
            image.pinned,
            "/bin/sh",
            "-c",
            STEP_RUNNER,
            "ci-steps",
            "/bin/sh",
            "echo one",
            "echo 'two'",
        ]

    @pytest.mark.asyncio
    async def test_create_container_passes_declared_shell(
        self, container_manager, image
    ):
        process = mock_process(stdout=b"abc123def\n")

        with patch("asyncio.create_subprocess_exec", return_value=process) as mock_exec:
            await container_manager.create_container(
                RUN_ID, image, ["[[ a == a ]]"], shell="/bin/bash"
            )

        assert docker_args(mock_exec)[-3:] == ["ci-steps", "/bin/bash", "[[ a == a ]]"]

    @pytest.mark.asyncio
    async def test_create_container_failure(self, container_manager, image):
        process = mock_process(returncode=125, stderr=b"name in use")

        with patch("asyncio.create_subprocess_exec", return_value=process):
            with pytest.raises(ProvisioningError, match="name in use"):
                await container_manager.create_container(RUN_ID, image, ["true"])

    @pytest.mark.asyncio
    async def test_wait_container_returns_exit_code(self, container_manager):
        process = mock_process(stdout=b"3\n")

        with patch("asyncio.create_subprocess_exec", return_value=process):
            assert await container_manager.wait_container("abc") == 3

    @pytest.mark.asyncio
    async def test_wait_container_failure(self, container_manager):
        process = mock_process(returncode=1, stderr=b"No such container")

        with patch("asyncio.create_subprocess_exec", return_value=process):
            with pytest.raises(RuntimeError):
                await container_manager.wait_container("abc")

    @pytest.mark.asyncio
    async def test_read_logs(self, container_manager):
        process = mock_process(stdout=b"line 1\nline 2\n")

        with patch("asyncio.create_subprocess_exec", return_value=process):
            assert await container_manager.read_logs("abc") == b"line 1\nline 2\n"

    @pytest.mark.asyncio
    async def test_remove_ignores_missing_container(self, container_manager):
        process = mock_process(returncode=1, stderr=b"Error: No such container: x")

        with patch("asyncio.create_subprocess_exec", return_value=process):
            await container_manager.remove_container("x", force=True)

    @pytest.mark.asyncio
    async def test_remove_failure(self, container_manager):
        process = mock_process(returncode=1, stderr=b"permission denied")

        with patch("asyncio.create_subprocess_exec", return_value=process):
            with pytest.raises(RuntimeError):
                await container_manager.remove_container("x")


class TestContainerInfo:
    @pytest.mark.asyncio
    async def test_get_container_info_nonexistent(self, container_manager):
        process = mock_process(returncode=1, stderr=b"No such object")

        with patch("asyncio.create_subprocess_exec", return_value=process):
            assert await container_manager.get_container_info(RUN_ID) is None

    @pytest.mark.asyncio
    async def test_get_container_info(self, container_manager):
        inspect_output = [
            {
                "Id": "abc123",
                "State": {
                    "Status": "exited",
                    "ExitCode": 0,
                    "StartedAt": "2024-01-01T00:00:00.000000000Z",
                    "FinishedAt": "0001-01-01T00:00:00Z",
                },
            }
        ]
        process = mock_process(stdout=json.dumps(inspect_output).encode())

        with patch("asyncio.create_subprocess_exec", return_value=process):
            info = await container_manager.get_container_info(RUN_ID)

        assert info is not None
        assert info.container_id == "abc123"
        assert info.name == RUN_ID
        assert info.status == "exited"
        assert info.exit_code == 0

    @pytest.mark.asyncio
    async def test_cleanup_container_confirms_removal(self, container_manager):
        rm = mock_process()
        inspect = mock_process(returncode=1)

        with patch(
            "asyncio.create_subprocess_exec", side_effect=[rm, inspect]
        ) as mock_exec:
            assert await container_manager.cleanup_container(RUN_ID) is True

        assert docker_args(mock_exec, 0) == ["rm", "--force", f"ci_test_{RUN_ID}"]

    @pytest.mark.asyncio
    async def test_cleanup_container_reports_leftover(self, container_manager):
        rm = mock_process(returncode=1, stderr=b"device busy")
        inspect = mock_process(
            stdout=json.dumps([{"Id": "abc", "State": {"Status": "running"}}]).encode()
        )

        with patch("asyncio.create_subprocess_exec", side_effect=[rm, inspect]):
            assert await container_manager.cleanup_container(RUN_ID) is False

    @pytest.mark.asyncio
    async def test_list_ci_containers_filters_by_label_and_prefix(
        self, container_manager
    ):
        ps = mock_process(stdout=f"ci_test_{RUN_ID}\nunrelated\n".encode())
        inspect = mock_process(
            stdout=json.dumps([{"Id": "abc", "State": {"Status": "exited"}}]).encode()
        )

        with patch(
            "asyncio.create_subprocess_exec", side_effect=[ps, inspect]
        ) as mock_exec:
            containers = await container_manager.list_ci_containers()

        assert [c.name for c in containers] == [RUN_ID]
        assert f"label={RUN_LABEL}" in docker_args(mock_exec, 0)


def run_steps(shell, *steps):
    """Run the step runner script locally, the way the container runs it."""
    return subprocess.run(
        ["/bin/sh", "-c", STEP_RUNNER, "ci-steps", shell, *steps],
        capture_output=True,
        text=True,
        timeout=10,
    )


@pytest.mark.skipif(not os.path.exists("/bin/sh"), reason="requires /bin/sh")
class TestStepRunnerScript:
    def test_steps_run_in_order(self):
        result = run_steps("/bin/sh", "echo A", "echo B", "echo C")

        assert result.returncode == 0
        assert result.stdout == "A\nB\nC\n"

    def test_first_failing_step_stops_the_run(self):
        result = run_steps("/bin/sh", "echo A", "exit 3", "echo C")

        assert result.returncode == 3
        assert result.stdout == "A\n"

    def test_single_failing_step_exit_code(self):
        assert run_steps("/bin/sh", "exit 1").returncode == 1

    def test_no_steps_succeeds(self):
        assert run_steps("/bin/sh").returncode == 0

    def test_step_text_is_not_reinterpreted(self):
        result = run_steps("/bin/sh", "echo 'a  b' \"$HOME\" | cat")

        assert result.returncode == 0
        assert result.stdout.startswith("a  b ")

    @pytest.mark.skipif(shutil.which("bash") is None, reason="requires bash")
    def test_declared_shell_runs_each_step(self):
        script = "set -o pipefail && [[ a == a ]] && echo ok"

        result = run_steps(shutil.which("bash"), script)

        assert result.returncode == 0
        assert result.stdout == "ok\n"
