"""
Unit tests for the ci-admin command line interface.
"""

import json
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from click.testing import CliRunner

from ci_admin.cli import cli
from ci_common.models import RunResult, RunState

FIXTURE = str(Path(__file__).parent.parent / "fixtures" / "taskcluster.yml")

PUSH_OPTIONS = [
    "--kind",
    "push",
    "--repo-url",
    "https://github.com/x/y",
    "--head-sha",
    "abc123",
    "--user-email",
    "dev@example.com",
]


@pytest.fixture
def runner():
    return CliRunner()


def invoke(runner, tmp_path, *args):
    return runner.invoke(
        cli,
        ["--descriptor", FIXTURE, "--db-path", str(tmp_path / "runs.db"), *args],
    )


class TestValidate:
    def test_valid_descriptor(self, runner, tmp_path):
        result = invoke(runner, tmp_path, "validate")

        assert result.exit_code == 0
        assert "Descriptor is valid" in result.output
        assert "3600s" in result.output

    def test_invalid_descriptor(self, runner, tmp_path):
        bad = tmp_path / "bad.yml"
        bad.write_text("payload: {image: 'img:latest'}\n")

        result = runner.invoke(cli, ["--descriptor", str(bad), "validate"])

        assert result.exit_code == 1


class TestMatchAndRender:
    def test_match(self, runner, tmp_path):
        result = invoke(runner, tmp_path, "match", *PUSH_OPTIONS)

        assert result.exit_code == 0
        assert "match" in result.output

    def test_no_match(self, runner, tmp_path):
        result = invoke(
            runner,
            tmp_path,
            "match",
            "--kind",
            "closed",
            "--repo-url",
            "u",
            "--head-sha",
            "s",
        )

        assert result.exit_code == 1
        assert "no match" in result.output

    def test_render(self, runner, tmp_path):
        result = invoke(runner, tmp_path, "render", *PUSH_OPTIONS)

        assert result.exit_code == 0
        task = json.loads(result.stdout)
        assert task["provisionerId"] == "local"
        assert task["workerType"] == "docker"
        assert task["metadata"]["owner"] == "dev@example.com"
        assert "git checkout abc123" in task["payload"]["command"][0]

    def test_render_binding_error(self, runner, tmp_path):
        options = PUSH_OPTIONS[:-2]  # Without --user-email

        result = invoke(runner, tmp_path, "render", *options)

        assert result.exit_code == 1

    def test_event_from_file(self, runner, tmp_path):
        event_file = tmp_path / "event.json"
        event_file.write_text(
            json.dumps(
                {
                    "kind": "pushed",
                    "repo_url": "https://github.com/x/y",
                    "head_sha": "abc123",
                    "user_email": "dev@example.com",
                }
            )
        )

        result = invoke(runner, tmp_path, "render", "--event-file", str(event_file))

        assert result.exit_code == 0

    def test_malformed_event_file(self, runner, tmp_path):
        event_file = tmp_path / "event.json"
        event_file.write_text("{not json")

        result = invoke(runner, tmp_path, "render", "--event-file", str(event_file))

        assert result.exit_code == 1
        assert "not valid JSON" in result.output
        assert not isinstance(result.exception, ValueError)

    def test_event_file_with_wrong_types(self, runner, tmp_path):
        event_file = tmp_path / "event.json"
        event_file.write_text(
            json.dumps({"kind": "pushed", "repo_url": "u", "head_sha": 123})
        )

        result = invoke(runner, tmp_path, "match", "--event-file", str(event_file))

        assert result.exit_code == 1
        assert "head_sha" in result.output

    def test_missing_event_options(self, runner, tmp_path):
        result = invoke(runner, tmp_path, "match", "--kind", "push")

        assert result.exit_code == 1


class TestRun:
    def test_run_reports_result(self, runner, tmp_path):
        pipe = MagicMock()
        pipe.handle = AsyncMock(
            return_value=RunResult(
                run_id="run-1",
                task_id="task-1",
                state=RunState.FAILED,
                exit_code=1,
                output=b"1 failed\n",
                duration_ms=42,
            )
        )

        with patch("ci_admin.cli.build_pipeline", return_value=pipe):
            result = invoke(runner, tmp_path, "run", "--json", *PUSH_OPTIONS)

        assert result.exit_code == 1
        report = json.loads(result.stdout)
        assert report["status"] == "failure"
        assert report["exitCode"] == 1

    def test_run_without_match(self, runner, tmp_path):
        pipe = MagicMock()
        pipe.handle = AsyncMock(return_value=None)

        with patch("ci_admin.cli.build_pipeline", return_value=pipe):
            result = invoke(runner, tmp_path, "run", *PUSH_OPTIONS)

        assert result.exit_code == 1


class TestRunsHistory:
    def test_runs_list_empty(self, runner, tmp_path):
        result = invoke(runner, tmp_path, "runs", "list")

        assert result.exit_code == 0
        assert "No runs found." in result.output

    def test_runs_show_missing(self, runner, tmp_path):
        result = invoke(runner, tmp_path, "runs", "show", "nope")

        assert result.exit_code == 1
