"""
CI Controller module.

This module contains the execution runner, the Docker container manager it
drives, and the status reporters that receive terminal run results.

The controller has no knowledge of events or templates: it runs whatever
materialized task it is given.
"""

from .container_manager import ContainerInfo, ContainerManager
from .reporters import (
    HttpStatusReporter,
    LoggingStatusReporter,
    RepositoryStatusReporter,
)
from .runner import ExecutionRunner, RunStateMachine, StatusReporter

__all__ = [
    "ContainerInfo",
    "ContainerManager",
    "ExecutionRunner",
    "HttpStatusReporter",
    "LoggingStatusReporter",
    "RepositoryStatusReporter",
    "RunStateMachine",
    "StatusReporter",
]
