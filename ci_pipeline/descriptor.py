"""
Task descriptor loading.

Two layouts are accepted:

Flat document::

    provisionerId: local
    workerType: docker
    allowPullRequests: public
    eventFilters: [opened, pushed]
    payload:
      maxRunTime: 3600
      image: name:tag@sha256:...
      command: [...]
    metadata: {name, description, owner, source}

and the .taskcluster.yml version 0 layout, where the single task sits in a
`tasks` list and its event filters live under `extra.github.events`.

YAML and JSON are both read with yaml.safe_load.
"""

import logging
import os
from pathlib import Path
from typing import Any

import yaml

from ci_common.errors import DescriptorError
from ci_common.models import (
    DEFAULT_SHELL,
    EventKind,
    ImageReference,
    TaskMetadata,
    TaskTemplate,
    TriggerRuleSet,
)

from .pipeline import PipelineConfig

logger = logging.getLogger(__name__)

EXEC_FORM_SHELLS = {"sh", "bash", "dash", "zsh"}


def load_descriptor(path: str | Path) -> PipelineConfig:
    """
    Load a pipeline configuration from a descriptor file.

    Args:
        path: Path to a YAML or JSON descriptor

    Returns:
        Immutable pipeline configuration

    Raises:
        DescriptorError: If the file cannot be read or is invalid
    """
    try:
        raw = Path(path).read_text(encoding="utf-8")
    except OSError as e:
        raise DescriptorError(f"Cannot read descriptor {path}: {e}") from e

    try:
        document = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise DescriptorError(f"Descriptor {path} is not valid YAML: {e}") from e

    config = parse_descriptor(document)
    logger.info(
        f"Loaded descriptor {path}: task {config.template.metadata.name!r}, "
        f"events {sorted(kind.value for kind in config.rules.event_kinds)}"
    )
    return config


def parse_descriptor(document: Any) -> PipelineConfig:
    """
    Build a pipeline configuration from a parsed descriptor document.

    Raises:
        DescriptorError: If a required field is missing or invalid
    """
    if not isinstance(document, dict):
        raise DescriptorError("Descriptor must be a mapping")

    policy = document.get("allowPullRequests", "public")

    if "tasks" in document:
        if document.get("version") != 0:
            raise DescriptorError(
                f"Unsupported descriptor version {document.get('version')!r}"
            )
        tasks = document["tasks"]
        if not isinstance(tasks, list) or len(tasks) != 1:
            raise DescriptorError("Descriptor must define exactly one task")
        task = _mapping(tasks[0], "tasks[0]")
        extra = _mapping(task.get("extra", {}), "extra")
        github = _mapping(extra.get("github", {}), "extra.github")
        event_names = github.get("events", [])
    else:
        task = document
        event_names = document.get("eventFilters", [])

    return PipelineConfig(
        rules=parse_rules(event_names, policy),
        template=parse_template(task),
    )


def parse_rules(event_names: Any, policy: Any = "public") -> TriggerRuleSet:
    """Build the trigger rule set from descriptor event names."""
    if not isinstance(event_names, list):
        raise DescriptorError("Event filters must be a list")

    kinds = set()
    for name in event_names:
        kind = EventKind.parse(name)
        if kind is None:
            raise DescriptorError(f"Unknown event filter {name!r}")
        kinds.add(kind)

    if not kinds:
        logger.warning("Descriptor has no event filters; no event will ever match")

    return TriggerRuleSet(event_kinds=frozenset(kinds), allow_pull_requests=policy)


def parse_template(task: dict[str, Any]) -> TaskTemplate:
    """Build the task template from one task definition."""
    payload = _mapping(task.get("payload"), "payload")
    metadata = _mapping(task.get("metadata", {}), "metadata")

    image = payload.get("image")
    if not isinstance(image, str):
        raise DescriptorError("payload.image must be a string")

    command = payload.get("command", [])
    if not isinstance(command, list) or not all(isinstance(c, str) for c in command):
        raise DescriptorError("payload.command must be a list of strings")

    shell, steps = unwrap_exec_form(command)
    return TaskTemplate(
        provisioner_id=_string(task, "provisionerId"),
        worker_type=_string(task, "workerType"),
        image=ImageReference.parse(image),
        command=steps,
        max_run_time=payload.get("maxRunTime"),
        metadata=TaskMetadata(
            name=str(metadata.get("name", "")),
            description=str(metadata.get("description", "")),
            owner=str(metadata.get("owner", "")),
            source=str(metadata.get("source", "")),
        ),
        shell=shell,
    )


def unwrap_exec_form(command: list[str]) -> tuple[str, tuple[str, ...]]:
    """
    Turn a docker-worker style [shell, "-c", script] into one shell step.

    Any other list is already a sequence of steps for the default shell.

    Returns:
        (shell, steps), where shell is the interpreter the command declared
    """
    if (
        len(command) == 3
        and os.path.basename(command[0]) in EXEC_FORM_SHELLS
        and command[1] == "-c"
    ):
        return command[0], (command[2],)
    return DEFAULT_SHELL, tuple(command)


def _mapping(value: Any, name: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise DescriptorError(f"{name} must be a mapping")
    return value


def _string(task: dict[str, Any], key: str) -> str:
    value = task.get(key)
    if not isinstance(value, str) or not value:
        raise DescriptorError(f"{key} must be a non-empty string")
    return value
