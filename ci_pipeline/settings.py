"""
Process settings for the pipeline service and CLI.

Environment Variables:
    CI_DESCRIPTOR_PATH: Task descriptor file (default: .taskcluster.yml)
    CI_DB_PATH: Run history database path (default: ci_runs.db)
    CI_CONTAINER_PREFIX: Container name prefix for namespace isolation (default: "")
    CI_STATUS_URL: Endpoint that receives status reports (default: unset)
    CI_PROVISIONER_ID: Value of taskcluster.docker.provisionerId (default: local)
    CI_WORKER_TYPE: Value of taskcluster.docker.workerType (default: docker)
"""

import os
from collections.abc import Mapping
from dataclasses import dataclass, replace


@dataclass(frozen=True)
class PipelineSettings:
    """Immutable process settings, read once at startup."""

    descriptor_path: str = ".taskcluster.yml"
    db_path: str = "ci_runs.db"
    container_prefix: str = ""
    status_url: str | None = None
    provisioner_id: str = "local"
    worker_type: str = "docker"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "PipelineSettings":
        """
        Build settings from environment variables.

        Args:
            environ: Mapping to read from (default: os.environ)

        Returns:
            PipelineSettings with defaults for anything unset
        """
        env = os.environ if environ is None else environ
        return cls(
            descriptor_path=env.get("CI_DESCRIPTOR_PATH", ".taskcluster.yml"),
            db_path=env.get("CI_DB_PATH", "ci_runs.db"),
            container_prefix=env.get("CI_CONTAINER_PREFIX", ""),
            status_url=env.get("CI_STATUS_URL") or None,
            provisioner_id=env.get("CI_PROVISIONER_ID", "local"),
            worker_type=env.get("CI_WORKER_TYPE", "docker"),
        )

    def override(self, **changes) -> "PipelineSettings":
        """Return a copy with the given non-None values replaced."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})

    @property
    def context(self) -> dict[str, str]:
        """Provider variables available to task templates."""
        return {
            "taskcluster.docker.provisionerId": self.provisioner_id,
            "taskcluster.docker.workerType": self.worker_type,
        }
