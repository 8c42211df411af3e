"""Automatic backup (auto-sync) models.

This module contains SQLAlchemy ORM models used to persist:
- Jobs (recurring backup definitions bound to one external account)
- Tasks (execution history of a job)

These models are used by the auto-sync API endpoints, the scheduler and the
job executor.
"""

from __future__ import annotations

import uuid

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from models.sql.base import Base


MESSAGE_STATUS_INFO = "info"
MESSAGE_STATUS_WARNING = "warning"
MESSAGE_STATUS_ERROR = "error"

TASK_OUTCOME_SUCCESS = "success"
TASK_OUTCOME_PARTIAL = "partial"
TASK_OUTCOME_FAILURE = "failure"


class Job(Base):
    """A recurring backup bound to one external account.

    Attributes:
        id (str): Primary key UUID.
        owner_id (str): Identity of the user that owns the job.
        name (str): Display name, usually the bound account identity (email).
        method (str): Connector type, e.g. mail-gmail|mail-outlook|db-postgres|db-mysql.
        input_data (dict): Credential bag (public part, or everything when encryption is disabled).
        secrets_encrypted (str): Fernet token holding secret credential fields.
        destination_token (str): Access token of the destination object store.
        interval (str): daily|weekly|monthly.
        on (str): Schedule anchor valid for the interval.
        active (bool): Whether the scheduler picks the job up.
        message (str): Human-readable status message.
        message_status (str): info|warning|error.
        last_run_at (datetime): Start of the last execution.
        next_run_at (datetime): Next due time (UTC).
        running_since (datetime): Claim of the execution in progress, refreshed by its heartbeat.
    """

    __tablename__ = "jobs"
    __table_args__ = (UniqueConstraint("owner_id", "name", name="uq_jobs_owner_name"),)

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    owner_id = Column(String(255), nullable=False, index=True)
    name = Column(String(255), nullable=False, index=True)

    method = Column(String(32), nullable=False)

    input_data = Column(JSON, nullable=False, default=dict)
    secrets_encrypted = Column(Text, nullable=True)

    destination_token = Column(Text, nullable=True)

    interval = Column(String(16), nullable=True)
    on = Column(String(16), nullable=True)

    active = Column(Boolean, default=False, nullable=False)

    message = Column(Text, nullable=True)
    message_status = Column(String(16), nullable=False, default=MESSAGE_STATUS_INFO)

    last_run_at = Column(DateTime(timezone=True), nullable=True)
    next_run_at = Column(DateTime(timezone=True), nullable=True, index=True)
    running_since = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    tasks = relationship(
        "Task",
        back_populates="job",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class Task(Base):
    """An immutable execution record of a job.

    Attributes:
        id (str): Primary key UUID.
        job_id (str): FK to Job.
        started_at (datetime): Execution start.
        finished_at (datetime): Execution end.
        outcome (str): success|partial|failure.
        detail (dict): processed/failed/attempted counts and diagnostics.
    """

    __tablename__ = "tasks"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))

    job_id = Column(String, ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False, index=True)

    started_at = Column(DateTime(timezone=True), nullable=False)
    finished_at = Column(DateTime(timezone=True), nullable=True)

    outcome = Column(String(16), nullable=False)

    detail = Column(JSON, nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    job = relationship("Job", back_populates="tasks")
