"""Data models for persisted workflow state."""

from __future__ import annotations

import traceback
from datetime import datetime, timezone
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

RunStatus = Literal["running", "completed", "failed", "paused"]
StepStatus = Literal["pending", "running", "completed", "failed", "scheduled"]
LogLevel = Literal["debug", "info", "warn", "error"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SerializedError(BaseModel):
    """Plain-field form of an exception as stored on runs and steps."""

    name: Optional[str] = None
    message: str
    stack: Optional[str] = None

    @classmethod
    def from_exception(cls, error: BaseException | Any) -> "SerializedError":
        """Capture ``error`` as name/message/stack.

        Anything that is not an exception is recorded by its string form only.
        """
        if not isinstance(error, BaseException):
            return cls(message=str(error))
        stack = "".join(
            traceback.format_exception(type(error), error, error.__traceback__)
        )
        return cls(name=type(error).__name__, message=str(error), stack=stack)


class WorkflowRun(BaseModel):
    """One execution instance of a named workflow."""

    id: str
    workflow_id: str
    input: Any = None
    output: Any = None
    status: RunStatus = "running"
    error: Optional[SerializedError] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None


class WorkflowStep(BaseModel):
    """A memoized unit of work within a run, keyed by ``(run_id, step_id)``."""

    run_id: str
    step_id: str
    status: StepStatus = "pending"
    input: Any = None
    output: Any = None
    error: Optional[SerializedError] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    scheduled_for: Optional[datetime] = None
    task_data: Optional[str] = None
    retry_count: int = 0
    parent_step_id: Optional[str] = None


class WorkflowLog(BaseModel):
    """Diagnostic record attached to a run (and optionally a step)."""

    id: Optional[int] = None
    run_id: str
    step_id: Optional[str] = None
    level: LogLevel = "info"
    message: str
    data: Any = None
    timestamp: datetime = Field(default_factory=utcnow)


class SchemaMigration(BaseModel):
    """Ledger row recording an applied migration."""

    version: int
    name: str
    applied_at: Optional[datetime] = None
