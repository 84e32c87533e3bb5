"""SQLite implementation of the workflow store."""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from ..migrations import SQLITE_MIGRATIONS, Migration, MigrationRegistry
from .models import SerializedError, StepStatus, WorkflowLog, WorkflowRun, WorkflowStep
from .repository import WorkflowStore
from .serialization import (
    dump_blob,
    format_timestamp,
    log_from_row,
    run_from_row,
    step_from_row,
)


class SQLiteWorkflowStore(WorkflowStore):
    """Persist workflow state using SQLite.

    A single connection in autocommit mode is shared by every call; calls run
    in worker threads via ``asyncio.to_thread`` and are serialized by a lock.
    """

    def __init__(self, db_path: str | Path = ":memory:"):
        self.db_path = str(db_path)
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()

    @property
    def migrations(self) -> MigrationRegistry:
        return SQLITE_MIGRATIONS

    def migration_executor(self) -> "SQLiteMigrationExecutor":
        return SQLiteMigrationExecutor(self)

    async def connect(self) -> None:
        if self._conn is None:
            self._conn = await asyncio.to_thread(self._open)

    def _open(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    async def close(self) -> None:
        if self._conn is not None:
            conn, self._conn = self._conn, None
            await asyncio.to_thread(conn.close)

    # ------------------------------------------------------------------
    # Helper methods
    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("SQLite store is not connected")
        return self._conn

    def _execute(self, query: str, *params: Any) -> int:
        with self._lock:
            cur = self._connection().execute(query, params)
            return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            return self._connection().execute(query, params).fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            return self._connection().execute(query, params).fetchall()

    def _executescript(self, script: str) -> None:
        with self._lock:
            conn = self._connection()
            try:
                conn.executescript(script)
            except sqlite3.Error:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise

    # ------------------------------------------------------------------
    # Workflow runs
    async def create_run(self, run: WorkflowRun) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO workflow_runs (id, workflow_id, input, status, metadata, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            run.id,
            run.workflow_id,
            dump_blob(run.input),
            run.status,
            dump_blob(run.metadata),
            format_timestamp(run.created_at),
        )

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT * FROM workflow_runs WHERE id = ?", run_id
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
            set_clauses.append("status = ?")
            values.append(status)
        if output is not None:
            set_clauses.append("output = ?")
            values.append(dump_blob(output))
        if error is not None:
            set_clauses.append("error = ?")
            values.append(dump_blob(error))
        if completed_at is not None:
            set_clauses.append("completed_at = ?")
            values.append(format_timestamp(completed_at))

        if not set_clauses:
            return

        await asyncio.to_thread(
            self._execute,
            f"UPDATE workflow_runs SET {', '.join(set_clauses)} WHERE id = ?",
            *values,
            run_id,
        )

    async def list_runs(
        self, workflow_id: Optional[str] = None, limit: int = 100
    ) -> list[WorkflowRun]:
        if workflow_id:
            rows = await asyncio.to_thread(
                self._fetchall,
                """
                SELECT * FROM workflow_runs
                WHERE workflow_id = ?
                ORDER BY created_at DESC
                LIMIT ?
                """,
                workflow_id,
                limit,
            )
        else:
            rows = await asyncio.to_thread(
                self._fetchall,
                "SELECT * FROM workflow_runs ORDER BY created_at DESC LIMIT ?",
                limit,
            )
        return [run_from_row(r) for r in rows]

    async def delete_old_runs(self, older_than: datetime) -> int:
        return await asyncio.to_thread(
            self._execute,
            """
            DELETE FROM workflow_runs
            WHERE created_at < ?
              AND status IN ('completed', 'failed')
            """,
            format_timestamp(older_than),
        )

    # ------------------------------------------------------------------
    # Workflow steps
    async def upsert_step(self, step: WorkflowStep) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO workflow_steps (
                run_id, step_id, status, input, started_at, scheduled_for,
                task_data, parent_step_id
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (run_id, step_id) DO UPDATE SET
                status = excluded.status,
                started_at = COALESCE(excluded.started_at, workflow_steps.started_at),
                scheduled_for = excluded.scheduled_for,
                task_data = excluded.task_data,
                error = NULL
            """,
            step.run_id,
            step.step_id,
            step.status,
            dump_blob(step.input),
            format_timestamp(step.started_at),
            format_timestamp(step.scheduled_for),
            step.task_data,
            step.parent_step_id,
        )

    async def get_step(self, run_id: str, step_id: str) -> WorkflowStep | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT * FROM workflow_steps WHERE run_id = ? AND step_id = ?",
            run_id,
            step_id,
        )
        if row is None:
            return None
        return step_from_row(row)

    async def get_steps(self, run_id: str) -> list[WorkflowStep]:
        rows = await asyncio.to_thread(
            self._fetchall,
            """
            SELECT * FROM workflow_steps
            WHERE run_id = ?
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
        await asyncio.to_thread(
            self._execute,
            """
            UPDATE workflow_steps
            SET
                status = COALESCE(?, status),
                output = COALESCE(?, output),
                error = COALESCE(?, error),
                completed_at = COALESCE(?, completed_at),
                retry_count = COALESCE(?, retry_count)
            WHERE run_id = ? AND step_id = ?
            """,
            status,
            dump_blob(output),
            dump_blob(error),
            format_timestamp(completed_at),
            retry_count,
            run_id,
            step_id,
        )

    async def get_scheduled_steps(self, before: datetime) -> list[WorkflowStep]:
        rows = await asyncio.to_thread(
            self._fetchall,
            """
            SELECT * FROM workflow_steps
            WHERE status = 'scheduled'
              AND scheduled_for <= ?
            ORDER BY scheduled_for ASC
            """,
            format_timestamp(before),
        )
        return [step_from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Workflow logs
    async def append_log(self, log: WorkflowLog) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO workflow_logs (run_id, step_id, level, message, data, timestamp)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            log.run_id,
            log.step_id,
            log.level,
            log.message,
            dump_blob(log.data),
            format_timestamp(log.timestamp),
        )

    async def get_logs(
        self, run_id: str, limit: Optional[int] = None
    ) -> list[WorkflowLog]:
        rows = await asyncio.to_thread(
            self._fetchall,
            """
            SELECT * FROM workflow_logs
            WHERE run_id = ?
            ORDER BY timestamp ASC, id ASC
            LIMIT ?
            """,
            run_id,
            -1 if limit is None else limit,
        )
        return [log_from_row(r) for r in rows]


class SQLiteMigrationExecutor:
    """Apply migration scripts to a :class:`SQLiteWorkflowStore`.

    ``executescript`` cannot take parameters, so the ledger statement is
    inlined into the same ``BEGIN ... COMMIT`` block as the migration script.
    """

    def __init__(self, store: SQLiteWorkflowStore) -> None:
        self._store = store

    async def ensure_ledger(self) -> None:
        await asyncio.to_thread(
            self._store._execute,
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version INTEGER PRIMARY KEY,
                name TEXT NOT NULL,
                applied_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
            )
            """,
        )

    async def applied_versions(self) -> list[int]:
        rows = await asyncio.to_thread(
            self._store._fetchall,
            "SELECT version FROM schema_migrations ORDER BY version",
        )
        return [r["version"] for r in rows]

    async def apply_migration(self, migration: Migration) -> None:
        name = migration.name.replace("'", "''")
        script = (
            f"BEGIN;\n{migration.up}\n"
            f"INSERT INTO schema_migrations (version, name) "
            f"VALUES ({int(migration.version)}, '{name}');\n"
            "COMMIT;"
        )
        await asyncio.to_thread(self._store._executescript, script)

    async def revert_migration(self, migration: Migration) -> None:
        script = (
            f"BEGIN;\n{migration.down}\n"
            f"DELETE FROM schema_migrations WHERE version = {int(migration.version)};\n"
            "COMMIT;"
        )
        await asyncio.to_thread(self._store._executescript, script)
