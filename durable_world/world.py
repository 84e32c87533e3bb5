"""Durable execution orchestrator for workflow runs."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar, Union

from pydantic import BaseModel, Field

from .config import WorldConfig
from .errors import RunNotFoundError, WorldClosedError
from .migrations import MigrationRunner
from .persistence import get_store
from .persistence.models import (
    LogLevel,
    SerializedError,
    WorkflowLog,
    WorkflowRun,
    WorkflowStep,
    utcnow,
)
from .persistence.repository import WorkflowStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

Task = Callable[[], Union[Awaitable[T], T]]
"""A zero-argument callable producing a JSON-serializable result."""

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


@dataclass(frozen=True)
class TaskResult(Generic[T]):
    """Outcome of :meth:`World.execute_task`."""

    success: bool
    value: Optional[T] = None
    error: Optional[BaseException] = None
    cached: bool = False


class RunStatusSummary(BaseModel):
    status: str
    completed_steps: int
    total_steps: int


class ResumeState(BaseModel):
    """Where a crashed or paused run left off."""

    last_completed_step: Optional[str] = None
    pending_steps: list[str] = Field(default_factory=list)


def _to_base36(number: int) -> str:
    if number == 0:
        return "0"
    digits = []
    while number:
        number, remainder = divmod(number, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits))


def generate_run_id() -> str:
    """Return ``run_<base36 epoch millis>_<8 random base36 chars>``."""
    timestamp = _to_base36(int(time.time() * 1000))
    random_part = "".join(secrets.choice(_BASE36) for _ in range(8))
    return f"run_{timestamp}_{random_part}"


def describe_task(task: Callable[..., Any]) -> str:
    """Serialize a descriptor for a delayed task.

    Callables cannot be persisted, so only their import location is recorded
    (when they have one) for a poller to resolve later. Bound methods are not
    recorded since importing them yields the unbound function.
    """
    descriptor: dict[str, str] = {"type": "delayed_task"}
    module = getattr(task, "__module__", None)
    qualname = getattr(task, "__qualname__", None)
    if inspect.ismethod(task):
        qualname = None
    if module and qualname and "<" not in qualname:
        descriptor["callable"] = f"{module}:{qualname}"
    return json.dumps(descriptor)


class World:
    """Durable execution API over a workflow store.

    Steps are memoized by ``(run_id, step_id)``: once a step is completed its
    stored output is returned instead of invoking the task again. The check is
    read-then-write, so two processes racing on the same step can both invoke
    the task.

    Usage:
        async with World(WorldConfig(connection_string="sqlite://wf.db")) as world:
            run_id = await world.start_run("ingest", {"x": 1})
            result = await world.execute_task(run_id, "fetch", fetch)
            await world.complete_run(run_id, result.value)
    """

    def __init__(
        self,
        config: Optional[WorldConfig] = None,
        store: Optional[WorkflowStore] = None,
        migration_runner: Optional[MigrationRunner] = None,
    ) -> None:
        self._store = store or get_store(config=config)
        self._migrations = migration_runner or MigrationRunner(
            self._store.migration_executor(), self._store.migrations
        )
        self._initialized = False
        self._closed = False
        self._init_lock = asyncio.Lock()

    @property
    def store(self) -> WorkflowStore:
        return self._store

    @property
    def migrations(self) -> MigrationRunner:
        return self._migrations

    async def __aenter__(self) -> "World":
        await self.initialize()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def initialize(self) -> None:
        """Connect the store and apply pending migrations."""
        self._ensure_open()
        if self._initialized:
            return
        async with self._init_lock:
            if self._initialized:
                return
            await self._store.connect()
            applied = await self._migrations.run()
            if applied:
                logger.info(f"Applied {applied} schema migration(s)")
            self._initialized = True

    # ------------------------------------------------------------------
    # Runs
    async def start_run(
        self,
        workflow_id: str,
        input: Any,
        metadata: Optional[dict[str, Any]] = None,
    ) -> str:
        """Persist a new run in status ``running`` and return its id."""
        await self._ready()
        run_id = generate_run_id()
        await self._store.create_run(
            WorkflowRun(
                id=run_id,
                workflow_id=workflow_id,
                input=input,
                status="running",
                metadata=metadata or {},
                created_at=utcnow(),
            )
        )
        logger.info(f"Started run {run_id} for workflow {workflow_id}")
        return run_id

    async def complete_run(self, run_id: str, output: Any) -> None:
        await self._ready()
        await self._store.update_run(
            run_id, status="completed", output=output, completed_at=utcnow()
        )
        logger.info(f"Run {run_id} completed")

    async def fail_run(self, run_id: str, error: BaseException | Any) -> None:
        await self._ready()
        await self._store.update_run(
            run_id,
            status="failed",
            error=SerializedError.from_exception(error),
            completed_at=utcnow(),
        )
        logger.info(f"Run {run_id} failed: {error}")

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        await self._ready()
        return await self._store.get_run(run_id)

    async def list_runs(
        self, workflow_id: Optional[str] = None, limit: int = 100
    ) -> list[WorkflowRun]:
        await self._ready()
        return await self._store.list_runs(workflow_id, limit)

    async def get_run_status(self, run_id: str) -> RunStatusSummary:
        await self._ready()
        run = await self._store.get_run(run_id)
        if run is None:
            raise RunNotFoundError(run_id)

        steps = await self._store.get_steps(run_id)
        completed = sum(1 for s in steps if s.status == "completed")
        return RunStatusSummary(
            status=run.status, completed_steps=completed, total_steps=len(steps)
        )

    async def resume_run(self, run_id: str) -> ResumeState:
        """Report the latest completed step and the steps still pending.

        ``running`` steps count as pending because a crash may have orphaned
        them mid-execution. They are not reset here; re-driving them through
        :meth:`execute_task` is up to the caller.
        """
        await self._ready()
        steps = await self._store.get_steps(run_id)

        completed = [s for s in steps if s.status == "completed"]
        pending = [s for s in steps if s.status in ("running", "scheduled")]

        last_completed = max(
            completed,
            key=lambda s: s.completed_at.timestamp() if s.completed_at else 0.0,
            default=None,
        )
        return ResumeState(
            last_completed_step=last_completed.step_id if last_completed else None,
            pending_steps=[s.step_id for s in pending],
        )

    async def cleanup(self, older_than_days: float = 30) -> int:
        """Delete completed and failed runs older than ``older_than_days``."""
        await self._ready()
        cutoff = utcnow() - timedelta(days=older_than_days)
        deleted = await self._store.delete_old_runs(cutoff)
        logger.info(f"Cleanup removed {deleted} run(s) created before {cutoff}")
        return deleted

    # ------------------------------------------------------------------
    # Steps
    async def execute_task(
        self, run_id: str, step_id: str, task: Task[T]
    ) -> TaskResult[T]:
        """Run ``task`` as step ``step_id`` unless it already completed.

        Exceptions raised by ``task`` are stored on the step and returned in
        the result, never re-raised.
        """
        await self._ready()

        existing = await self._store.get_step(run_id, step_id)
        if existing is not None and existing.status == "completed":
            logger.debug(f"Step {step_id} of run {run_id} already completed")
            return TaskResult(success=True, value=existing.output, cached=True)

        await self._store.upsert_step(
            WorkflowStep(
                run_id=run_id, step_id=step_id, status="running", started_at=utcnow()
            )
        )

        # A result that cannot be persisted fails the step like a raising task.
        try:
            value = task()
            if inspect.isawaitable(value):
                value = await value
            await self._store.update_step(
                run_id,
                step_id,
                status="completed",
                output=value,
                completed_at=utcnow(),
            )
        except Exception as e:
            logger.warning(f"Step {step_id} of run {run_id} failed: {e}")
            await self._store.update_step(
                run_id,
                step_id,
                status="failed",
                error=SerializedError.from_exception(e),
                completed_at=utcnow(),
            )
            return TaskResult(success=False, error=e, cached=False)

        return TaskResult(success=True, value=value, cached=False)

    async def schedule_task(
        self, run_id: str, step_id: str, task: Task[Any], delay_ms: float
    ) -> None:
        """Record ``step_id`` as due ``delay_ms`` from now. Starts no timer.

        A step that already completed is left untouched.
        """
        await self._ready()
        existing = await self._store.get_step(run_id, step_id)
        if existing is not None and existing.status == "completed":
            logger.debug(f"Not rescheduling completed step {step_id} of run {run_id}")
            return
        await self._store.upsert_step(
            WorkflowStep(
                run_id=run_id,
                step_id=step_id,
                status="scheduled",
                scheduled_for=utcnow() + timedelta(milliseconds=delay_ms),
                task_data=describe_task(task),
            )
        )

    async def get_steps(self, run_id: str) -> list[WorkflowStep]:
        await self._ready()
        return await self._store.get_steps(run_id)

    async def get_scheduled_steps(
        self, before: Optional[datetime] = None
    ) -> list[WorkflowStep]:
        """Return scheduled steps due by ``before`` (default: now)."""
        await self._ready()
        return await self._store.get_scheduled_steps(before or utcnow())

    # ------------------------------------------------------------------
    # Logs
    async def log(
        self,
        run_id: str,
        message: str,
        level: LogLevel = "info",
        data: Any = None,
        step_id: Optional[str] = None,
    ) -> None:
        """Persist a diagnostic record for ``run_id``."""
        await self._ready()
        await self._store.append_log(
            WorkflowLog(
                run_id=run_id, step_id=step_id, level=level, message=message, data=data
            )
        )

    async def get_logs(
        self, run_id: str, limit: Optional[int] = None
    ) -> list[WorkflowLog]:
        await self._ready()
        return await self._store.get_logs(run_id, limit)

    # ------------------------------------------------------------------
    async def close(self) -> None:
        """Release database connections. Later calls raise WorldClosedError."""
        if self._closed:
            return
        self._closed = True
        await self._store.close()

    def _ensure_open(self) -> None:
        if self._closed:
            raise WorldClosedError("World has been closed")

    async def _ready(self) -> None:
        self._ensure_open()
        if not self._initialized:
            await self.initialize()
