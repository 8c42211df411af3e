from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from backend.services.autosync.errors import ConflictError, PersistenceError
from backend.services.autosync.repository import JobRepository, normalize_pagination, stats_status
from models.sql.autosync import Job, Task


T0 = datetime(2026, 10, 1, tzinfo=timezone.utc)


async def _job(session, repo, owner="user-1", name="shop@db.local"):
    return await repo.create_job(
        session,
        owner_id=owner,
        name=name,
        method="db-postgres",
        input_data={"host": "db.local"},
    )


async def _tasks(session, repo, job_id, count):
    for i in range(count):
        await repo.create_task(
            session,
            job_id=job_id,
            started_at=T0 + timedelta(hours=i),
            finished_at=T0 + timedelta(hours=i, minutes=5),
            outcome="success",
            detail={"processed": i},
        )
    await session.commit()


async def _count(session, model) -> int:
    return int((await session.execute(select(func.count(model.id)))).scalar_one())


@pytest.mark.parametrize(
    "limit,offset,expected",
    [
        (None, None, (10, 0)),
        (0, 0, (10, 0)),
        (-5, -1, (10, 0)),
        (25, 5, (25, 5)),
        (1000, 0, (1000, 0)),
        (5000, 3, (1000, 3)),
    ],
)
def test_normalize_pagination(limit, offset, expected):
    assert normalize_pagination(limit, offset) == expected


@pytest.mark.parametrize(
    "total,active,failing,expected",
    [
        (0, 0, 0, "add accounts"),
        (2, 0, 0, "inactive"),
        (2, 2, 0, "success"),
        (2, 2, 2, "failed"),
        (3, 2, 1, "partial_success"),
    ],
)
def test_stats_status(total, active, failing, expected):
    assert stats_status(total, active, failing) == expected


async def test_duplicate_job_name_per_owner_conflicts(handler):
    repo = JobRepository()
    async with handler.AsyncSessionLocal() as session:
        await _job(session, repo)
        with pytest.raises(ConflictError):
            await _job(session, repo)
        # A different owner may use the same name.
        await _job(session, repo, owner="user-2")


async def test_tasks_are_listed_newest_first_with_clamped_pages(handler):
    repo = JobRepository()
    async with handler.AsyncSessionLocal() as session:
        job = await _job(session, repo)
        await _tasks(session, repo, job.id, 12)

        first_page = await repo.list_tasks(session, job.id, limit=0, offset=-3)
        second_page = await repo.list_tasks(session, job.id, limit=10, offset=10)

        assert len(first_page) == 10
        assert first_page[0].detail == {"processed": 11}
        assert [task.detail["processed"] for task in second_page] == [1, 0]
        assert await repo.count_tasks(session, job.id) == 12


async def test_update_rejects_unknown_columns(handler):
    repo = JobRepository()
    async with handler.AsyncSessionLocal() as session:
        job = await _job(session, repo)
        with pytest.raises(ValueError):
            await repo.update_job(session, job.id, {"owner_id": "someone-else"})


async def test_due_jobs_are_active_and_past_their_next_run(handler):
    repo = JobRepository()
    now = T0 + timedelta(days=3)
    async with handler.AsyncSessionLocal() as session:
        due = await _job(session, repo, name="due")
        future = await _job(session, repo, name="future")
        inactive = await _job(session, repo, name="inactive")
        await repo.update_job(session, due.id, {"active": True, "next_run_at": now - timedelta(hours=1)})
        await repo.update_job(session, future.id, {"active": True, "next_run_at": now + timedelta(hours=1)})
        await repo.update_job(session, inactive.id, {"active": False, "next_run_at": now - timedelta(hours=1)})

        found = await repo.list_due_jobs(session, now=now, limit=10)

        assert [job.id for job in found] == [due.id]


async def test_purge_deletes_all_jobs_with_the_identity(handler):
    repo = JobRepository()
    async with handler.AsyncSessionLocal() as session:
        first = await _job(session, repo, owner="user-1", name="alice@example.com")
        second = await _job(session, repo, owner="user-2", name="alice@example.com")
        keep = await _job(session, repo, owner="user-1", name="bob@example.com")
        await _tasks(session, repo, first.id, 2)
        await _tasks(session, repo, second.id, 1)
        await _tasks(session, repo, keep.id, 1)

        job_ids, task_ids = await repo.purge_by_identity(session, "alice@example.com")

        assert sorted(job_ids) == sorted([first.id, second.id])
        assert len(task_ids) == 3
        assert await _count(session, Job) == 1
        assert await _count(session, Task) == 1


class FailingJobDeleteRepository(JobRepository):
    async def _delete_jobs(self, session, job_ids):
        raise SQLAlchemyError("simulated failure while deleting jobs")


async def test_purge_failure_rolls_back_everything(handler):
    repo = JobRepository()
    async with handler.AsyncSessionLocal() as session:
        job = await _job(session, repo, name="alice@example.com")
        await _tasks(session, repo, job.id, 3)

    async with handler.AsyncSessionLocal() as session:
        with pytest.raises(PersistenceError) as exc_info:
            await FailingJobDeleteRepository().purge_by_identity(session, "alice@example.com")

    assert exc_info.value.message == "internal server error"

    async with handler.AsyncSessionLocal() as session:
        assert await _count(session, Job) == 1
        assert await _count(session, Task) == 3
