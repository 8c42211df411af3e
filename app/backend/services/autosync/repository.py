"""Database access layer for auto-sync jobs and tasks.

Every method takes the SQLAlchemy async session as its first argument so
callers control the transaction boundary.
"""

from __future__ import annotations

from datetime import datetime, timezone
import logging
import uuid
from typing import Any, Dict, List, Mapping, Optional, Tuple

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from backend.services.autosync.errors import ConflictError, PersistenceError
from models.sql.autosync import (
    MESSAGE_STATUS_ERROR,
    MESSAGE_STATUS_INFO,
    TASK_OUTCOME_SUCCESS,
    Job,
    Task,
)


logger = logging.getLogger(__name__)

DEFAULT_TASK_LIMIT = 10
MAX_TASK_LIMIT = 1000

UPDATABLE_JOB_FIELDS = frozenset(
    {
        "input_data",
        "secrets_encrypted",
        "destination_token",
        "interval",
        "on",
        "active",
        "message",
        "message_status",
        "last_run_at",
        "next_run_at",
    }
)


def normalize_pagination(limit: Optional[int], offset: Optional[int]) -> Tuple[int, int]:
    """Clamp task pagination parameters.

    A limit of zero or less (or missing) becomes 10, a limit above 1000
    becomes 1000, and a negative offset becomes 0.
    """

    if limit is None or limit <= 0:
        limit = DEFAULT_TASK_LIMIT
    elif limit > MAX_TASK_LIMIT:
        limit = MAX_TASK_LIMIT

    if offset is None or offset < 0:
        offset = 0

    return int(limit), int(offset)


def stats_status(total: int, active: int, failing: int) -> str:
    """Aggregate status label for a user's jobs."""

    if total == 0:
        return "add accounts"
    if active == 0:
        return "inactive"
    if failing == 0:
        return "success"
    if failing == active:
        return "failed"
    return "partial_success"


class JobRepository:
    """Repository for auto-sync models."""

    async def create_job(
        self,
        session,
        *,
        owner_id: str,
        name: str,
        method: str,
        input_data: Dict[str, Any],
        secrets_encrypted: Optional[str] = None,
    ) -> Job:
        """Create an inactive job.

        Raises:
            ConflictError: When the owner already has a job with this name.
        """

        existing = await session.execute(
            select(Job.id).where(Job.owner_id == owner_id).where(Job.name == name)
        )
        if existing.first() is not None:
            raise ConflictError(f"a job for {name} already exists")

        job = Job(
            id=str(uuid.uuid4()),
            owner_id=owner_id,
            name=name,
            method=method,
            input_data=input_data or {},
            secrets_encrypted=secrets_encrypted,
            active=False,
            message_status=MESSAGE_STATUS_INFO,
            created_at=datetime.now(timezone.utc),
        )
        session.add(job)
        try:
            await session.commit()
        except IntegrityError as exc:
            # Lost a race with a concurrent create for the same name.
            await session.rollback()
            raise ConflictError(f"a job for {name} already exists") from exc

        await session.refresh(job)
        return job

    async def get_job(self, session, job_id: str) -> Optional[Job]:
        """Get a job by id."""

        return await session.get(Job, job_id)

    async def get_job_for_owner(self, session, owner_id: str, job_id: str) -> Optional[Job]:
        """Get a job by id, or None when absent or owned by someone else."""

        result = await session.execute(
            select(Job).where(Job.id == job_id).where(Job.owner_id == owner_id)
        )
        return result.scalars().first()

    async def list_jobs(self, session, owner_id: str) -> List[Job]:
        """List an owner's jobs, oldest first."""

        result = await session.execute(
            select(Job).where(Job.owner_id == owner_id).order_by(Job.created_at.asc(), Job.id.asc())
        )
        return list(result.scalars().all())

    async def lock_job(self, session, job_id: str) -> Optional[Job]:
        """Load a job with a row lock held until the transaction ends."""

        result = await session.execute(
            select(Job).where(Job.id == job_id).with_for_update().execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def update_job(self, session, job_id: str, changes: Mapping[str, Any]) -> Optional[Job]:
        """Apply a partial update under a row lock.

        Only keys present in `changes` are written; omitted fields keep their
        stored values.

        Args:
            session: SQLAlchemy async session.
            job_id: Job id.
            changes: Column name -> new value.

        Returns:
            Optional[Job]: Updated job, or None when it does not exist.

        Raises:
            ValueError: When `changes` names a column that cannot be updated.
        """

        unknown = set(changes) - UPDATABLE_JOB_FIELDS
        if unknown:
            raise ValueError(f"Cannot update job fields: {', '.join(sorted(unknown))}")

        job = await self.lock_job(session, job_id)
        if job is None:
            await session.rollback()
            return None

        for field, value in changes.items():
            setattr(job, field, value)
        job.updated_at = datetime.now(timezone.utc)

        await session.commit()
        await session.refresh(job)
        return job

    async def delete_job(self, session, job: Job) -> None:
        """Delete a job and its tasks."""

        await session.execute(delete(Task).where(Task.job_id == job.id))
        await session.execute(delete(Job).where(Job.id == job.id))
        await session.commit()

    async def list_tasks(self, session, job_id: str, *, limit: Optional[int] = None, offset: Optional[int] = None) -> List[Task]:
        """List a job's tasks, newest first, with normalized pagination."""

        limit, offset = normalize_pagination(limit, offset)
        result = await session.execute(
            select(Task)
            .where(Task.job_id == job_id)
            .order_by(Task.started_at.desc(), Task.id.asc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())

    async def count_tasks(self, session, job_id: str) -> int:
        result = await session.execute(select(func.count(Task.id)).where(Task.job_id == job_id))
        return int(result.scalar_one())

    async def create_task(
        self,
        session,
        *,
        job_id: str,
        started_at: datetime,
        finished_at: datetime,
        outcome: str,
        detail: Dict[str, Any],
    ) -> Task:
        """Add a task record; the caller commits."""

        task = Task(
            id=str(uuid.uuid4()),
            job_id=job_id,
            started_at=started_at,
            finished_at=finished_at,
            outcome=outcome,
            detail=detail or {},
        )
        session.add(task)
        return task

    async def list_due_jobs(
        self,
        session,
        *,
        now: datetime,
        limit: int,
        stale_before: Optional[datetime] = None,
    ) -> List[Job]:
        """Active jobs whose next run time has passed, most overdue first.

        With `stale_before`, jobs claimed by a running execution are left out
        unless the claim is older than that time.
        """

        query = (
            select(Job)
            .where(Job.active.is_(True))
            .where(Job.next_run_at.is_not(None))
            .where(Job.next_run_at <= now)
        )
        if stale_before is not None:
            query = query.where(or_(Job.running_since.is_(None), Job.running_since < stale_before))

        result = await session.execute(query.order_by(Job.next_run_at.asc()).limit(limit))
        return list(result.scalars().all())

    async def claim_job(self, session, job_id: str, *, now: datetime, stale_before: datetime) -> bool:
        """Mark a due job as running; False when another execution holds it.

        The claim is a single conditional UPDATE, so concurrent schedulers over
        the same database cannot both win it. It only succeeds while the job is
        still active and due at `now`, and it takes over a claim older than
        `stale_before` (left behind by a crashed process).
        """

        result = await session.execute(
            update(Job)
            .where(Job.id == job_id)
            .where(Job.active.is_(True))
            .where(Job.next_run_at.is_not(None))
            .where(Job.next_run_at <= now)
            .where(or_(Job.running_since.is_(None), Job.running_since < stale_before))
            .values(running_since=now, updated_at=Job.updated_at)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        return result.rowcount == 1

    async def refresh_claim(self, session, job_id: str, *, now: datetime) -> None:
        """Heartbeat: move an existing claim forward."""

        await session.execute(
            update(Job)
            .where(Job.id == job_id)
            .where(Job.running_since.is_not(None))
            .values(running_since=now, updated_at=Job.updated_at)
            .execution_options(synchronize_session=False)
        )
        await session.commit()

    async def release_claim(self, session, job_id: str) -> None:
        await session.execute(
            update(Job)
            .where(Job.id == job_id)
            .values(running_since=None, updated_at=Job.updated_at)
            .execution_options(synchronize_session=False)
        )
        await session.commit()

    async def _delete_tasks(self, session, job_ids: List[str]) -> None:
        await session.execute(delete(Task).where(Task.job_id.in_(job_ids)))

    async def _delete_jobs(self, session, job_ids: List[str]) -> None:
        await session.execute(delete(Job).where(Job.id.in_(job_ids)))

    async def purge_by_identity(self, session, name: str) -> Tuple[List[str], List[str]]:
        """Delete every job bound to `name` and all of their tasks.

        Runs as a single transaction: on any failure everything is rolled back
        and no partial deletion is visible.

        Returns:
            Tuple[List[str], List[str]]: (deleted job ids, deleted task ids)

        Raises:
            PersistenceError: When any statement fails.
        """

        try:
            job_ids = list((await session.execute(select(Job.id).where(Job.name == name))).scalars().all())
            task_ids: List[str] = []
            if job_ids:
                task_ids = list(
                    (await session.execute(select(Task.id).where(Task.job_id.in_(job_ids)))).scalars().all()
                )
                await self._delete_tasks(session, job_ids)
                await self._delete_jobs(session, job_ids)
            await session.commit()
        except SQLAlchemyError as exc:
            await session.rollback()
            logger.error("Purge for identity failed; rolled back: %s", exc)
            raise PersistenceError(str(exc)) from exc

        return job_ids, task_ids

    async def job_stats(self, session, owner_id: str, *, now: datetime) -> Dict[str, Any]:
        """Summary counters for an owner's jobs.

        Returns:
            Dict[str, Any]: total, active, failing, providers, todays_backups and status.
        """

        async def count(*criteria) -> int:
            result = await session.execute(select(func.count(Job.id)).where(Job.owner_id == owner_id, *criteria))
            return int(result.scalar_one())

        total = await count()
        active = await count(Job.active.is_(True))
        failing = await count(Job.active.is_(True), Job.message_status == MESSAGE_STATUS_ERROR)

        providers_result = await session.execute(
            select(Job.method).where(Job.owner_id == owner_id).distinct().order_by(Job.method)
        )
        providers = list(providers_result.scalars().all())

        start_of_day = now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
        todays = await session.execute(
            select(func.count(Task.id))
            .join(Job, Job.id == Task.job_id)
            .where(Job.owner_id == owner_id)
            .where(Task.outcome == TASK_OUTCOME_SUCCESS)
            .where(Task.started_at >= start_of_day)
        )

        return {
            "total_accounts": total,
            "active_backups": active,
            "failed_backups": failing,
            "providers": providers,
            "todays_backups": int(todays.scalar_one()),
            "status": stats_status(total, active, failing),
        }
