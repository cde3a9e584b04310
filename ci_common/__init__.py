"""
CI Common module.

This module contains shared domain models, the error taxonomy and the run
history interface used across the pipeline components (pipeline, controller,
persistence, server).

The common module has no dependencies on other ci_* modules, making it
a pure domain layer that can be imported by any component.
"""

from .errors import (
    DescriptorError,
    ExecutionTimeout,
    InvalidTransitionError,
    PipelineError,
    ProvisioningError,
    TemplateBindingError,
)
from .models import (
    Event,
    EventKind,
    ImageReference,
    MaterializedTask,
    RunResult,
    RunState,
    RunStatus,
    TaskMetadata,
    TaskTemplate,
    TriggerRuleSet,
)
from .repository import RunRepository

__all__ = [
    "DescriptorError",
    "Event",
    "EventKind",
    "ExecutionTimeout",
    "ImageReference",
    "InvalidTransitionError",
    "MaterializedTask",
    "PipelineError",
    "ProvisioningError",
    "RunRepository",
    "RunResult",
    "RunState",
    "RunStatus",
    "TaskMetadata",
    "TaskTemplate",
    "TemplateBindingError",
    "TriggerRuleSet",
]
