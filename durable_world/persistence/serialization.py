"""Blob and timestamp conversion shared by the SQL stores."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel

from .models import SerializedError, WorkflowLog, WorkflowRun, WorkflowStep


def dump_blob(value: Any) -> Optional[str]:
    """Serialize an opaque payload to JSON text (``None`` stays SQL NULL)."""
    if value is None:
        return None
    if isinstance(value, BaseModel):
        value = value.model_dump(mode="json")
    return json.dumps(value)


def load_blob(text: Any) -> Any:
    """Deserialize JSON text read back from the store."""
    if text is None:
        return None
    if not isinstance(text, (str, bytes)):
        return text
    return json.loads(text)


def to_utc(value: datetime) -> datetime:
    # Naive datetimes are taken to already be UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Render a timestamp as fixed-width ISO text so SQLite compares it correctly."""
    if value is None:
        return None
    return to_utc(value).isoformat(timespec="microseconds")


def parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return to_utc(value)
    return to_utc(datetime.fromisoformat(value))


def _column(row: Any, key: str) -> Any:
    return row[key] if key in row.keys() else None


def _load_error(text: Any) -> Optional[SerializedError]:
    data = load_blob(text)
    return SerializedError.model_validate(data) if data is not None else None


def run_from_row(row: Any) -> WorkflowRun:
    """Map a ``workflow_runs`` row (asyncpg Record or sqlite3.Row)."""
    return WorkflowRun(
        id=row["id"],
        workflow_id=row["workflow_id"],
        input=load_blob(row["input"]),
        output=load_blob(row["output"]),
        status=row["status"],
        error=_load_error(row["error"]),
        metadata=load_blob(_column(row, "metadata")) or {},
        created_at=parse_timestamp(row["created_at"]),
        completed_at=parse_timestamp(row["completed_at"]),
    )


def step_from_row(row: Any) -> WorkflowStep:
    """Map a ``workflow_steps`` row (asyncpg Record or sqlite3.Row)."""
    return WorkflowStep(
        run_id=row["run_id"],
        step_id=row["step_id"],
        status=row["status"],
        input=load_blob(row["input"]),
        output=load_blob(row["output"]),
        error=_load_error(row["error"]),
        started_at=parse_timestamp(row["started_at"]),
        completed_at=parse_timestamp(row["completed_at"]),
        scheduled_for=parse_timestamp(row["scheduled_for"]),
        task_data=row["task_data"],
        retry_count=row["retry_count"] or 0,
        parent_step_id=_column(row, "parent_step_id"),
    )


def log_from_row(row: Any) -> WorkflowLog:
    return WorkflowLog(
        id=row["id"],
        run_id=row["run_id"],
        step_id=row["step_id"],
        level=row["level"],
        message=row["message"],
        data=load_blob(row["data"]),
        timestamp=parse_timestamp(row["timestamp"]),
    )
