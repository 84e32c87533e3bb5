"""Durable world: crash-safe, resumable workflow execution over SQL."""

from .config import WorldConfig, load_config
from .errors import (
    MigrationError,
    RunNotFoundError,
    UnsupportedBackendError,
    WorldClosedError,
    WorldError,
)
from .migrations import Migration, MigrationRegistry, MigrationRunner
from .persistence import WorkflowRun, WorkflowStep, get_store
from .poller import ScheduledStepPoller
from .world import ResumeState, RunStatusSummary, TaskResult, World

__version__ = "0.1.0"
__all__ = [
    "Migration",
    "MigrationError",
    "MigrationRegistry",
    "MigrationRunner",
    "ResumeState",
    "RunNotFoundError",
    "RunStatusSummary",
    "ScheduledStepPoller",
    "TaskResult",
    "UnsupportedBackendError",
    "WorkflowRun",
    "WorkflowStep",
    "World",
    "WorldClosedError",
    "WorldConfig",
    "WorldError",
    "get_store",
    "load_config",
]
