"""
Data models for the CI task pipeline.

These models represent the domain objects used throughout the application,
independent of the webhook source, the container runtime and the storage
mechanism. Everything that crosses a component boundary is immutable except
RunResult, which is assembled by the runner and then only read.
"""

import hashlib
import json
import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Literal

from .errors import DescriptorError

DIGEST_PATTERN = re.compile(r"^sha256:[0-9a-f]{64}$")
DEFAULT_SHELL = "/bin/sh"


class EventKind(str, Enum):
    """Repository event kinds that can trigger a task."""

    OPENED = "opened"
    REOPENED = "reopened"
    SYNCHRONIZED = "synchronized"
    PUSHED = "pushed"

    @property
    def is_pull_request(self) -> bool:
        return self is not EventKind.PUSHED

    @classmethod
    def parse(cls, value: "str | EventKind | None") -> "EventKind | None":
        """
        Resolve an event kind from its enum value or its GitHub spelling.

        Returns None for anything unrecognised so callers can fail closed.
        """
        if isinstance(value, EventKind):
            return value
        if not isinstance(value, str):
            return None
        value = value.strip()
        try:
            return cls(value)
        except ValueError:
            return _GITHUB_EVENT_NAMES.get(value)


_GITHUB_EVENT_NAMES = {
    "push": EventKind.PUSHED,
    "pull_request.opened": EventKind.OPENED,
    "pull_request.reopened": EventKind.REOPENED,
    "pull_request.synchronize": EventKind.SYNCHRONIZED,
}


@dataclass(frozen=True)
class Event:
    """
    One repository occurrence delivered by the webhook source.

    `kind` keeps the raw string when the source sends something we do not
    recognise; the trigger matcher treats that as a non-match.
    """

    kind: EventKind | str
    repo_url: str
    head_sha: str
    user_email: str | None = None
    sender_is_member: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Event":
        """
        Create an event from the inbound notification record.

        Raises:
            KeyError: If a required field is missing
            TypeError: If a field has the wrong type
        """
        for key in ("kind", "repo_url", "head_sha"):
            if not isinstance(data[key], str):
                raise TypeError(f"Field {key!r} must be a string")
        user_email = data.get("user_email")
        if user_email is not None and not isinstance(user_email, str):
            raise TypeError("Field 'user_email' must be a string")
        sender_is_member = data.get("sender_is_member", False)
        if not isinstance(sender_is_member, bool):
            raise TypeError("Field 'sender_is_member' must be a boolean")

        raw_kind = data["kind"]
        return cls(
            kind=EventKind.parse(raw_kind) or raw_kind,
            repo_url=data["repo_url"],
            head_sha=data["head_sha"],
            user_email=user_email or None,
            sender_is_member=sender_is_member,
        )

    @classmethod
    def from_github(cls, event_name: str, payload: dict[str, Any]) -> "Event":
        """
        Create an event from a raw GitHub webhook payload.

        Supports `pull_request` and `push` deliveries. Other deliveries keep
        their name as the raw kind.

        Raises:
            KeyError: If the payload lacks the fields for its event type
        """
        if event_name == "pull_request":
            pull_request = payload["pull_request"]
            head = pull_request["head"]
            association = pull_request.get("author_association", "")
            author = (
                head.get("user") or pull_request.get("user") or payload.get("sender")
            )
            return cls(
                kind=EventKind.parse(f"pull_request.{payload['action']}")
                or f"pull_request.{payload['action']}",
                repo_url=head["repo"]["clone_url"],
                head_sha=head["sha"],
                user_email=_github_user_email(author),
                sender_is_member=association in ("OWNER", "MEMBER", "COLLABORATOR"),
            )

        if event_name == "push":
            head_commit = payload.get("head_commit") or {}
            author = head_commit.get("author") or {}
            pusher = payload.get("pusher") or {}
            return cls(
                kind=EventKind.PUSHED,
                repo_url=payload["repository"]["clone_url"],
                head_sha=payload["after"],
                user_email=author.get("email") or pusher.get("email"),
                sender_is_member=True,
            )

        return cls(
            kind=event_name,
            repo_url=(payload.get("repository") or {}).get("clone_url", ""),
            head_sha="",
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert event to dictionary format (for JSON serialization)."""
        return {
            "kind": self.kind.value if isinstance(self.kind, EventKind) else self.kind,
            "repo_url": self.repo_url,
            "head_sha": self.head_sha,
            "user_email": self.user_email,
            "sender_is_member": self.sender_is_member,
        }


def _github_user_email(user: dict[str, Any] | None) -> str | None:
    """
    E-mail for a GitHub user object.

    Webhook user objects rarely carry an e-mail, so the account's noreply
    address stands in when only the login is known.
    """
    if not user:
        return None
    if user.get("email"):
        return user["email"]
    if user.get("login"):
        return f"{user['login']}@users.noreply.github.com"
    return None


PullRequestPolicy = Literal["public", "collaborators"]


@dataclass(frozen=True)
class TriggerRuleSet:
    """
    Event kinds that authorize task execution.

    An empty set is allowed and simply never matches.
    """

    event_kinds: frozenset[EventKind]
    allow_pull_requests: PullRequestPolicy = "public"

    def __post_init__(self):
        if self.allow_pull_requests not in ("public", "collaborators"):
            raise DescriptorError(
                f"Invalid pull request policy: {self.allow_pull_requests!r}"
            )


@dataclass(frozen=True, eq=False)
class ImageReference:
    """
    A container image pinned by content digest.

    Two references are equal when their digests are equal, whatever name or
    tag they were written with.
    """

    name: str
    digest: str

    def __post_init__(self):
        if not DIGEST_PATTERN.match(self.digest):
            raise DescriptorError(
                f"Image {self.name!r} must be pinned by sha256 digest, got {self.digest!r}"
            )

    @classmethod
    def parse(cls, reference: str) -> "ImageReference":
        """
        Parse "name[:tag]@sha256:<hex>".

        Raises:
            DescriptorError: If the reference carries no digest
        """
        name, sep, digest = reference.strip().partition("@")
        if not sep or not name:
            raise DescriptorError(
                f"Image reference {reference!r} is not pinned by digest"
            )
        return cls(name=name, digest=digest)

    @property
    def repository(self) -> str:
        """Image name without its tag."""
        last_slash = self.name.rfind("/")
        colon = self.name.rfind(":")
        if colon > last_slash:
            return self.name[:colon]
        return self.name

    @property
    def pinned(self) -> str:
        """Reference resolved by digest only, never by tag."""
        return f"{self.repository}@{self.digest}"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ImageReference):
            return NotImplemented
        return self.digest == other.digest

    def __hash__(self) -> int:
        return hash(self.digest)

    def __str__(self) -> str:
        return f"{self.name}@{self.digest}"


@dataclass(frozen=True)
class TaskMetadata:
    """Free-form descriptive fields attached to a task."""

    name: str = ""
    description: str = ""
    owner: str = ""
    source: str = ""

    def to_dict(self) -> dict[str, str]:
        return {
            "name": self.name,
            "description": self.description,
            "owner": self.owner,
            "source": self.source,
        }


@dataclass(frozen=True)
class TaskTemplate:
    """
    Abstract unit of work, before binding to an event.

    String fields may hold {{ variable }} placeholders.
    """

    provisioner_id: str
    worker_type: str
    image: ImageReference
    command: tuple[str, ...]
    max_run_time: int
    metadata: TaskMetadata = field(default_factory=TaskMetadata)
    shell: str = DEFAULT_SHELL  # Interpreter each command step runs under

    def __post_init__(self):
        if (
            isinstance(self.max_run_time, bool)
            or not isinstance(self.max_run_time, int)
            or self.max_run_time <= 0
        ):
            raise DescriptorError(
                f"maxRunTime must be a positive integer, got {self.max_run_time!r}"
            )
        # Lists are accepted for convenience but stored as a tuple
        if not isinstance(self.command, tuple):
            object.__setattr__(self, "command", tuple(self.command))


@dataclass(frozen=True)
class MaterializedTask:
    """A task template with every placeholder bound to one event's values."""

    provisioner_id: str
    worker_type: str
    image: ImageReference
    command: tuple[str, ...]
    max_run_time: int
    metadata: TaskMetadata
    shell: str = DEFAULT_SHELL

    def to_dict(self) -> dict[str, Any]:
        """Render in the task descriptor's shape."""
        return {
            "taskId": self.task_id,
            "provisionerId": self.provisioner_id,
            "workerType": self.worker_type,
            "payload": {
                "maxRunTime": self.max_run_time,
                "image": str(self.image),
                "command": list(self.command),
                "shell": self.shell,
            },
            "metadata": self.metadata.to_dict(),
        }

    @property
    def task_id(self) -> str:
        """Content-derived identifier: identical tasks share an id."""
        body = {
            "provisionerId": self.provisioner_id,
            "workerType": self.worker_type,
            "image": str(self.image),
            "command": list(self.command),
            "shell": self.shell,
            "maxRunTime": self.max_run_time,
            "metadata": self.metadata.to_dict(),
        }
        canonical = json.dumps(body, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode()).hexdigest()[:22]


class RunState(str, Enum):
    """Lifecycle of a single run."""

    PENDING = "pending"
    PROVISIONING = "provisioning"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATES


_TERMINAL_STATES = frozenset(
    {RunState.SUCCEEDED, RunState.FAILED, RunState.TIMED_OUT, RunState.ABORTED}
)


class RunStatus(str, Enum):
    """Outcome reported to the event source."""

    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"
    ABORTED = "aborted"

    @classmethod
    def from_state(cls, state: RunState) -> "RunStatus":
        try:
            return _STATUS_BY_STATE[state]
        except KeyError:
            raise ValueError(f"Run state {state.value} is not terminal") from None


_STATUS_BY_STATE = {
    RunState.SUCCEEDED: RunStatus.SUCCESS,
    RunState.FAILED: RunStatus.FAILURE,
    RunState.TIMED_OUT: RunStatus.TIMEOUT,
    RunState.ABORTED: RunStatus.ABORTED,
}


@dataclass
class RunResult:
    """
    Terminal outcome of one task execution.

    exit_code is None when no command ever ran to completion (aborted,
    timed out).
    """

    run_id: str
    task_id: str
    state: RunState
    exit_code: int | None = None
    output: bytes = b""
    duration_ms: int = 0
    started_at: datetime | None = None
    finished_at: datetime | None = None
    error: str | None = None  # Diagnostic for aborted/timed out runs

    @property
    def status(self) -> RunStatus:
        return RunStatus.from_state(self.state)

    def to_status_report(self) -> dict[str, Any]:
        """Convert to the outbound status report format."""
        return {
            "taskId": self.task_id,
            "status": self.status.value,
            "exitCode": self.exit_code,
            "durationMs": self.duration_ms,
            "output": self.output.decode("utf-8", errors="replace"),
        }

    def to_summary_dict(self) -> dict[str, Any]:
        """Convert run to summary format (without output, for listings)."""
        return {
            "run_id": self.run_id,
            "task_id": self.task_id,
            "state": self.state.value,
            "exit_code": self.exit_code,
            "duration_ms": self.duration_ms,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "error": self.error,
        }
