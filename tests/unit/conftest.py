"""Shared fixtures for unit tests."""

import pytest

from ci_common.models import (
    Event,
    EventKind,
    ImageReference,
    TaskMetadata,
    TaskTemplate,
    TriggerRuleSet,
)
from ci_pipeline.pipeline import PipelineConfig

DIGEST = "sha256:" + "f" * 64
OTHER_DIGEST = "sha256:" + "0" * 64


@pytest.fixture
def image():
    return ImageReference(name="example/test-image:3.0.0", digest=DIGEST)


@pytest.fixture
def template(image):
    return TaskTemplate(
        provisioner_id="{{ taskcluster.docker.provisionerId }}",
        worker_type="{{ taskcluster.docker.workerType }}",
        image=image,
        command=(
            "git clone {{event.head.repo.url}} repo && cd repo && "
            "git checkout {{event.head.sha}}",
        ),
        max_run_time=3600,
        metadata=TaskMetadata(
            name="Tests",
            description="Run the tests",
            owner="{{ event.head.user.email }}",
            source="{{ event.head.repo.url }}",
        ),
    )


@pytest.fixture
def rules():
    return TriggerRuleSet(
        event_kinds=frozenset(
            {
                EventKind.OPENED,
                EventKind.REOPENED,
                EventKind.SYNCHRONIZED,
                EventKind.PUSHED,
            }
        )
    )


@pytest.fixture
def config(rules, template):
    return PipelineConfig(rules=rules, template=template)


@pytest.fixture
def push_event():
    return Event(
        kind=EventKind.PUSHED,
        repo_url="https://github.com/x/y",
        head_sha="abc123",
        user_email="dev@example.com",
    )


@pytest.fixture
def context():
    return {
        "taskcluster.docker.provisionerId": "local",
        "taskcluster.docker.workerType": "docker",
    }
