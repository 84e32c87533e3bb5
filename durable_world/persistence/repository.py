"""Store abstraction for workflow state persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional, Protocol

from ..migrations import MigrationExecutor, MigrationRegistry
from .models import SerializedError, StepStatus, WorkflowLog, WorkflowRun, WorkflowStep


class WorkflowStore(Protocol):
    """Protocol for workflow state persistence backends.

    Stores hold no business logic. Optional keyword arguments on the update
    methods follow one rule: ``None`` means "keep the stored value".
    """

    @property
    def migrations(self) -> MigrationRegistry:
        """Migration registry for this backend's SQL dialect."""

    def migration_executor(self) -> MigrationExecutor:
        """Return the executor the migration runner drives."""

    async def connect(self) -> None:
        """Open the connection or pool (idempotent)."""

    async def close(self) -> None:
        """Release all connections."""

    # Workflow runs

    async def create_run(self, run: WorkflowRun) -> None:
        """Insert a new run row."""

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        """Fetch a run by id."""

    async def update_run(
        self,
        run_id: str,
        *,
        status: Optional[str] = None,
        output: Any = None,
        error: Optional[SerializedError] = None,
        completed_at: Optional[datetime] = None,
    ) -> None:
        """Merge the supplied fields into the run row."""

    async def list_runs(
        self, workflow_id: Optional[str] = None, limit: int = 100
    ) -> list[WorkflowRun]:
        """Return runs newest first, optionally for one workflow."""

    async def delete_old_runs(self, older_than: datetime) -> int:
        """Delete terminal runs created before ``older_than``."""

    # Workflow steps

    async def upsert_step(self, step: WorkflowStep) -> None:
        """Insert a step or overwrite status/schedule of an existing one.

        Overwriting clears any error recorded by a previous attempt.
        """

    async def get_step(self, run_id: str, step_id: str) -> WorkflowStep | None:
        """Fetch one step."""

    async def get_steps(self, run_id: str) -> list[WorkflowStep]:
        """Return a run's steps by ``started_at``, unstarted last."""

    async def update_step(
        self,
        run_id: str,
        step_id: str,
        *,
        status: Optional[StepStatus] = None,
        output: Any = None,
        error: Optional[SerializedError] = None,
        completed_at: Optional[datetime] = None,
        retry_count: Optional[int] = None,
    ) -> None:
        """Merge the supplied fields into the step row."""

    async def get_scheduled_steps(self, before: datetime) -> list[WorkflowStep]:
        """Return scheduled steps due at or before ``before``."""

    # Workflow logs

    async def append_log(self, log: WorkflowLog) -> None:
        """Persist a diagnostic record."""

    async def get_logs(
        self, run_id: str, limit: Optional[int] = None
    ) -> list[WorkflowLog]:
        """Return a run's diagnostic records, oldest first."""
