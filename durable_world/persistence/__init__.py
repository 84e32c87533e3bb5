"""Persistence layer for durable workflow runs and steps."""

from __future__ import annotations

from typing import Optional

from ..config import WorldConfig, load_config
from ..errors import UnsupportedBackendError
from .models import (
    SchemaMigration,
    SerializedError,
    WorkflowLog,
    WorkflowRun,
    WorkflowStep,
)
from .postgres import PostgresWorkflowStore
from .repository import WorkflowStore
from .sqlite import SQLiteWorkflowStore


def get_store(
    database_url: Optional[str] = None, config: Optional[WorldConfig] = None
) -> WorkflowStore:
    """Factory function to build a workflow store.

    The backend is selected from ``database_url`` when given, otherwise from
    ``config`` (loaded with :func:`load_config` when omitted). ``sqlite://``
    URLs select SQLite (``sqlite://:memory:`` for an in-process database);
    ``postgres://`` and ``postgresql://`` URLs select PostgreSQL.
    """

    config = config or load_config()
    database_url = database_url or config.dsn()

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1) or ":memory:"
        return SQLiteWorkflowStore(path)
    if database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        return PostgresWorkflowStore(
            database_url,
            max_connections=config.max_connections,
            ssl=config.ssl,
            idle_timeout=config.idle_timeout,
            connect_timeout=config.connect_timeout,
        )
    raise UnsupportedBackendError(f"Unsupported database backend: {database_url}")


__all__ = [
    "SchemaMigration",
    "SerializedError",
    "WorkflowLog",
    "WorkflowRun",
    "WorkflowStep",
    "WorkflowStore",
    "SQLiteWorkflowStore",
    "PostgresWorkflowStore",
    "get_store",
]
