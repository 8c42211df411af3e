"""Serialization helpers for auto-sync models.

These helpers convert SQLAlchemy models into JSON-friendly dictionaries for API
responses. Secret-shaped fields are masked here, so no caller can echo a
stored secret verbatim.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from backend.services.autosync.credentials import mask_input_data
from models.sql.autosync import Job, Task


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def job_to_dict(job: Job) -> Dict[str, Any]:
    """Convert a Job to a JSON-friendly dict.

    Args:
        job: Job model.

    Returns:
        Dict[str, Any]: Serialized job with secrets masked.
    """

    return {
        "id": job.id,
        "name": job.name,
        "method": job.method,
        "input_data": mask_input_data(job.input_data),
        "secrets_present": bool(job.secrets_encrypted),
        "destination_token_present": bool(job.destination_token),
        "interval": job.interval,
        "on": job.on,
        "active": bool(job.active),
        "message": job.message,
        "message_status": job.message_status,
        "last_run_at": _iso(job.last_run_at),
        "next_run_at": _iso(job.next_run_at),
        "created_at": _iso(job.created_at),
        "updated_at": _iso(job.updated_at),
    }


def task_to_dict(task: Task) -> Dict[str, Any]:
    """Convert a Task to a JSON-friendly dict."""

    return {
        "id": task.id,
        "job_id": task.job_id,
        "started_at": _iso(task.started_at),
        "finished_at": _iso(task.finished_at),
        "outcome": task.outcome,
        "detail": task.detail or {},
        "created_at": _iso(task.created_at),
    }
