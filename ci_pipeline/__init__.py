"""
CI Pipeline module.

This module holds the event-facing half of the system: trigger matching,
task materialization, descriptor loading, process settings, and the
Pipeline that wires them to an execution runner.
"""

from .descriptor import load_descriptor, parse_descriptor
from .materializer import TaskMaterializer
from .pipeline import DispatchOutcome, Pipeline, PipelineConfig, build_pipeline
from .settings import PipelineSettings
from .trigger import TriggerMatcher

__all__ = [
    "DispatchOutcome",
    "Pipeline",
    "PipelineConfig",
    "PipelineSettings",
    "TaskMaterializer",
    "TriggerMatcher",
    "build_pipeline",
    "load_descriptor",
    "parse_descriptor",
]
