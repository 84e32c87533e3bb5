"""SQLite schema migrations.

SQLite has no ``ADD COLUMN IF NOT EXISTS``; migration 2 relies on running
inside the same transaction as its ledger row instead.
"""

from __future__ import annotations

from .runner import Migration, MigrationRegistry

SQLITE_MIGRATIONS = MigrationRegistry(
    [
        Migration(
            version=1,
            name="create_workflow_tables",
            up="""
            CREATE TABLE IF NOT EXISTS workflow_runs (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                input TEXT,
                output TEXT,
                status TEXT NOT NULL DEFAULT 'running'
                    CHECK (status IN ('running', 'completed', 'failed', 'paused')),
                error TEXT,
                created_at TEXT NOT NULL,
                completed_at TEXT
            );

            CREATE TABLE IF NOT EXISTS workflow_steps (
                run_id TEXT NOT NULL REFERENCES workflow_runs(id) ON DELETE CASCADE,
                step_id TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending'
                    CHECK (status IN ('pending', 'running', 'completed', 'failed', 'scheduled')),
                input TEXT,
                output TEXT,
                error TEXT,
                started_at TEXT,
                completed_at TEXT,
                scheduled_for TEXT,
                task_data TEXT,
                retry_count INTEGER DEFAULT 0,
                PRIMARY KEY (run_id, step_id)
            );

            CREATE INDEX IF NOT EXISTS idx_workflow_runs_workflow_id ON workflow_runs(workflow_id);
            CREATE INDEX IF NOT EXISTS idx_workflow_runs_status ON workflow_runs(status);
            CREATE INDEX IF NOT EXISTS idx_workflow_runs_created_at ON workflow_runs(created_at);
            CREATE INDEX IF NOT EXISTS idx_workflow_steps_status ON workflow_steps(status);
            CREATE INDEX IF NOT EXISTS idx_workflow_steps_scheduled ON workflow_steps(scheduled_for)
                WHERE status = 'scheduled';
            """,
            down="""
            DROP TABLE IF EXISTS workflow_steps;
            DROP TABLE IF EXISTS workflow_runs;
            """,
        ),
        Migration(
            version=2,
            name="add_workflow_metadata",
            up="""
            ALTER TABLE workflow_runs ADD COLUMN metadata TEXT DEFAULT '{}';
            ALTER TABLE workflow_steps ADD COLUMN parent_step_id TEXT;

            CREATE INDEX IF NOT EXISTS idx_workflow_steps_parent
            ON workflow_steps(run_id, parent_step_id)
            WHERE parent_step_id IS NOT NULL;
            """,
            down="""
            DROP INDEX IF EXISTS idx_workflow_steps_parent;
            ALTER TABLE workflow_steps DROP COLUMN parent_step_id;
            ALTER TABLE workflow_runs DROP COLUMN metadata;
            """,
        ),
        Migration(
            version=3,
            name="add_execution_logs",
            up="""
            CREATE TABLE IF NOT EXISTS workflow_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                run_id TEXT NOT NULL REFERENCES workflow_runs(id) ON DELETE CASCADE,
                step_id TEXT,
                level TEXT NOT NULL DEFAULT 'info'
                    CHECK (level IN ('debug', 'info', 'warn', 'error')),
                message TEXT NOT NULL,
                data TEXT,
                timestamp TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_workflow_logs_run ON workflow_logs(run_id);
            CREATE INDEX IF NOT EXISTS idx_workflow_logs_timestamp ON workflow_logs(timestamp);
            """,
            down="""
            DROP TABLE IF EXISTS workflow_logs;
            """,
        ),
    ]
)
