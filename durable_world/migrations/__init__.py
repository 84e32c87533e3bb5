"""Schema migrations for the workflow tables."""

from __future__ import annotations

from .postgres import POSTGRES_MIGRATIONS
from .runner import Migration, MigrationExecutor, MigrationRegistry, MigrationRunner
from .sqlite import SQLITE_MIGRATIONS

__all__ = [
    "Migration",
    "MigrationExecutor",
    "MigrationRegistry",
    "MigrationRunner",
    "POSTGRES_MIGRATIONS",
    "SQLITE_MIGRATIONS",
]
