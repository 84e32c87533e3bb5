"""PostgreSQL implementation of the workflow store."""

from __future__ import annotations

import logging
import ssl as ssl_module
from datetime import datetime
from typing import Any, Optional

import asyncpg

from ..migrations import POSTGRES_MIGRATIONS, Migration, MigrationRegistry
from .models import SerializedError, StepStatus, WorkflowLog, WorkflowRun, WorkflowStep
from .repository import WorkflowStore
from .serialization import dump_blob, log_from_row, run_from_row, step_from_row

logger = logging.getLogger(__name__)


def _affected_rows(status: str) -> int:
    # asyncpg returns the command tag, e.g. "DELETE 5".
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, AttributeError):
        return 0


class PostgresWorkflowStore(WorkflowStore):
    """Persist workflow state using PostgreSQL through an asyncpg pool."""

    def __init__(
        self,
        dsn: str,
        max_connections: int = 10,
        ssl: bool = False,
        idle_timeout: float = 20,
        connect_timeout: float = 10,
    ):
        self._dsn = dsn
        self._max_connections = max_connections
        self._ssl = ssl
        self._idle_timeout = idle_timeout
        self._connect_timeout = connect_timeout
        self._pool: asyncpg.Pool | None = None

    @property
    def migrations(self) -> MigrationRegistry:
        return POSTGRES_MIGRATIONS

    def migration_executor(self) -> "PostgresMigrationExecutor":
        return PostgresMigrationExecutor(self)

    async def connect(self) -> None:
        if self._pool is not None:
            return
        kwargs: dict[str, Any] = {}
        if self._ssl:
            context = ssl_module.create_default_context()
            context.check_hostname = False
            context.verify_mode = ssl_module.CERT_NONE
            kwargs["ssl"] = context
        self._pool = await asyncpg.create_pool(
            self._dsn,
            min_size=1,
            max_size=self._max_connections,
            max_inactive_connection_lifetime=self._idle_timeout,
            timeout=self._connect_timeout,
            **kwargs,
        )
        logger.info(
            f"PostgreSQL connection pool initialized (1-{self._max_connections} connections)"
        )

    async def close(self) -> None:
        if self._pool is not None:
            pool, self._pool = self._pool, None
            await pool.close()

    @property
    def pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise RuntimeError("PostgreSQL store is not connected")
        return self._pool

    # ------------------------------------------------------------------
    # Workflow runs
    async def create_run(self, run: WorkflowRun) -> None:
        await self.pool.execute(
            """
            INSERT INTO workflow_runs (id, workflow_id, input, status, metadata, created_at)
            VALUES ($1, $2, $3::jsonb, $4, $5::jsonb, $6)
            """,
            run.id,
            run.workflow_id,
            dump_blob(run.input),
            run.status,
            dump_blob(run.metadata),
            run.created_at,
        )

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        row = await self.pool.fetchrow(
            "SELECT * FROM workflow_runs WHERE id = $1", run_id
        )
        if row is None:
            return None
        return run_from_row(row)

    async def update_run(
        self,
        run_id: str,
        *,
        status: Optional[str] = None,
        output: Any = None,
        error: Optional[SerializedError] = None,
        completed_at: Optional[datetime] = None,
    ) -> None:
        set_clauses: list[str] = []
        values: list[Any] = []

        if status is not None:
            values.append(status)
            set_clauses.append(f"status = ${len(values)}")
        if output is not None:
            values.append(dump_blob(output))
            set_clauses.append(f"output = ${len(values)}::jsonb")
        if error is not None:
            values.append(dump_blob(error))
            set_clauses.append(f"error = ${len(values)}::jsonb")
        if completed_at is not None:
            values.append(completed_at)
            set_clauses.append(f"completed_at = ${len(values)}")

        if not set_clauses:
            return

        values.append(run_id)
        await self.pool.execute(
            f"UPDATE workflow_runs SET {', '.join(set_clauses)} WHERE id = ${len(values)}",
            *values,
        )

    async def list_runs(
        self, workflow_id: Optional[str] = None, limit: int = 100
    ) -> list[WorkflowRun]:
        if workflow_id:
            rows = await self.pool.fetch(
                """
                SELECT * FROM workflow_runs
                WHERE workflow_id = $1
                ORDER BY created_at DESC
                LIMIT $2
                """,
                workflow_id,
                limit,
            )
        else:
            rows = await self.pool.fetch(
                "SELECT * FROM workflow_runs ORDER BY created_at DESC LIMIT $1",
                limit,
            )
        return [run_from_row(r) for r in rows]

    async def delete_old_runs(self, older_than: datetime) -> int:
        status = await self.pool.execute(
            """
            DELETE FROM workflow_runs
            WHERE created_at < $1
              AND status IN ('completed', 'failed')
            """,
            older_than,
        )
        return _affected_rows(status)

    # ------------------------------------------------------------------
    # Workflow steps
    async def upsert_step(self, step: WorkflowStep) -> None:
        await self.pool.execute(
            """
            INSERT INTO workflow_steps (
                run_id, step_id, status, input, started_at, scheduled_for,
                task_data, parent_step_id
            ) VALUES ($1, $2, $3, $4::jsonb, $5, $6, $7, $8)
            ON CONFLICT (run_id, step_id)
            DO UPDATE SET
                status = EXCLUDED.status,
                started_at = COALESCE(EXCLUDED.started_at, workflow_steps.started_at),
                scheduled_for = EXCLUDED.scheduled_for,
                task_data = EXCLUDED.task_data,
                error = NULL
            """,
            step.run_id,
            step.step_id,
            step.status,
            dump_blob(step.input),
            step.started_at,
            step.scheduled_for,
            step.task_data,
            step.parent_step_id,
        )

    async def get_step(self, run_id: str, step_id: str) -> WorkflowStep | None:
        row = await self.pool.fetchrow(
            "SELECT * FROM workflow_steps WHERE run_id = $1 AND step_id = $2",
            run_id,
            step_id,
        )
        if row is None:
            return None
        return step_from_row(row)

    async def get_steps(self, run_id: str) -> list[WorkflowStep]:
        rows = await self.pool.fetch(
            """
            SELECT * FROM workflow_steps
            WHERE run_id = $1
            ORDER BY started_at ASC NULLS LAST
            """,
            run_id,
        )
        return [step_from_row(r) for r in rows]

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
        await self.pool.execute(
            """
            UPDATE workflow_steps
            SET
                status = COALESCE($1::text, status),
                output = COALESCE($2::jsonb, output),
                error = COALESCE($3::jsonb, error),
                completed_at = COALESCE($4::timestamptz, completed_at),
                retry_count = COALESCE($5::integer, retry_count)
            WHERE run_id = $6 AND step_id = $7
            """,
            status,
            dump_blob(output),
            dump_blob(error),
            completed_at,
            retry_count,
            run_id,
            step_id,
        )

    async def get_scheduled_steps(self, before: datetime) -> list[WorkflowStep]:
        rows = await self.pool.fetch(
            """
            SELECT * FROM workflow_steps
            WHERE status = 'scheduled'
              AND scheduled_for <= $1
            ORDER BY scheduled_for ASC
            """,
            before,
        )
        return [step_from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Workflow logs
    async def append_log(self, log: WorkflowLog) -> None:
        await self.pool.execute(
            """
            INSERT INTO workflow_logs (run_id, step_id, level, message, data, timestamp)
            VALUES ($1, $2, $3, $4, $5::jsonb, $6)
            """,
            log.run_id,
            log.step_id,
            log.level,
            log.message,
            dump_blob(log.data),
            log.timestamp,
        )

    async def get_logs(
        self, run_id: str, limit: Optional[int] = None
    ) -> list[WorkflowLog]:
        rows = await self.pool.fetch(
            """
            SELECT * FROM workflow_logs
            WHERE run_id = $1
            ORDER BY timestamp ASC, id ASC
            LIMIT $2
            """,
            run_id,
            limit,
        )
        return [log_from_row(r) for r in rows]


class PostgresMigrationExecutor:
    """Apply migration scripts to a :class:`PostgresWorkflowStore`."""

    def __init__(self, store: PostgresWorkflowStore) -> None:
        self._store = store

    async def ensure_ledger(self) -> None:
        await self._store.pool.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version INTEGER PRIMARY KEY,
                name TEXT NOT NULL,
                applied_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            )
            """
        )

    async def applied_versions(self) -> list[int]:
        rows = await self._store.pool.fetch(
            "SELECT version FROM schema_migrations ORDER BY version"
        )
        return [r["version"] for r in rows]

    async def apply_migration(self, migration: Migration) -> None:
        async with self._store.pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(migration.up)
                await conn.execute(
                    "INSERT INTO schema_migrations (version, name) VALUES ($1, $2)",
                    migration.version,
                    migration.name,
                )

    async def revert_migration(self, migration: Migration) -> None:
        async with self._store.pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(migration.down)
                await conn.execute(
                    "DELETE FROM schema_migrations WHERE version = $1",
                    migration.version,
                )
