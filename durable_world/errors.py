"""Exceptions raised by the durable world engine."""

from __future__ import annotations

from typing import Optional


class WorldError(Exception):
    """Base exception for engine-level errors."""


class RunNotFoundError(WorldError, LookupError):
    """Raised when a workflow run does not exist."""

    def __init__(self, run_id: str) -> None:
        super().__init__(f"Run {run_id} not found")
        self.run_id = run_id


class WorldClosedError(WorldError):
    """Raised when an operation is attempted on a closed world."""


class MigrationError(WorldError):
    """Raised when a schema migration cannot be applied or reverted."""

    def __init__(
        self, message: str, version: Optional[int] = None, name: Optional[str] = None
    ) -> None:
        super().__init__(message)
        self.version = version
        self.name = name


class UnsupportedBackendError(WorldError, ValueError):
    """Raised when configuration names a database backend we cannot serve."""
