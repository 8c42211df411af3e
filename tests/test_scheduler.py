import asyncio
from datetime import datetime, timedelta, timezone

from backend.services.autosync.repository import JobRepository
from backend.services.autosync.scheduler import RunningJobs, Scheduler
from models.sql.autosync import Job


NOW = datetime(2026, 10, 16, 12, tzinfo=timezone.utc)


class GatedExecutor:
    """Executor stand-in that blocks until released."""

    def __init__(self):
        self.calls = []
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def run_job(self, job_id, *, cancel_event=None):
        self.calls.append(job_id)
        self.started.set()
        await self.release.wait()
        return {"job_id": job_id, "outcome": "success"}


class ExplodingExecutor:
    async def run_job(self, job_id, *, cancel_event=None):
        raise RuntimeError("boom")


async def _due_jobs(handler, count, *, owner="user-1"):
    repo = JobRepository()
    ids = []
    async with handler.AsyncSessionLocal() as session:
        for i in range(count):
            job = await repo.create_job(
                session,
                owner_id=owner,
                name=f"job-{i}",
                method="db-postgres",
                input_data={},
            )
            await repo.update_job(
                session,
                job.id,
                {"active": True, "next_run_at": NOW - timedelta(minutes=count - i)},
            )
            ids.append(job.id)
    return ids


def test_running_jobs_marker_is_exclusive():
    running = RunningJobs()

    assert running.try_acquire("a") is True
    assert running.try_acquire("a") is False
    assert "a" in running
    running.release("a")
    assert running.try_acquire("a") is True


async def test_overlapping_ticks_do_not_run_a_job_twice(handler):
    [job_id] = await _due_jobs(handler, 1)
    executor = GatedExecutor()
    scheduler = Scheduler(handler, executor)

    first_tick = asyncio.create_task(scheduler.run_due(NOW))
    await executor.started.wait()
    second = await scheduler.run_due(NOW)
    executor.release.set()
    first = await first_tick

    assert executor.calls == [job_id]
    assert second["count"] == 0
    assert first["results"][0]["status"] == "completed"
    assert job_id not in scheduler.running


async def test_due_jobs_run_concurrently_and_respect_max_jobs(handler):
    ids = await _due_jobs(handler, 3)
    executor = GatedExecutor()
    scheduler = Scheduler(handler, executor, max_jobs=2)

    tick = asyncio.create_task(scheduler.run_due(NOW))
    while len(executor.calls) < 2:
        await asyncio.sleep(0.01)
    executor.release.set()
    summary = await tick

    # Both dispatched jobs were in flight at the same time, most overdue first.
    assert executor.calls == ids[:2]
    assert summary["count"] == 2


async def test_executor_errors_are_reported_per_job(handler):
    [job_id] = await _due_jobs(handler, 1)
    scheduler = Scheduler(handler, ExplodingExecutor())

    summary = await scheduler.run_due(NOW)

    assert summary["results"] == [{"job_id": job_id, "status": "error", "error": "boom"}]
    assert job_id not in scheduler.running


async def test_drain_stops_when_a_batch_is_not_full(handler):
    await _due_jobs(handler, 1)
    scheduler = Scheduler(handler, ExplodingExecutor(), max_jobs=5, clock=lambda: NOW)

    summary = await scheduler.drain_due(max_batches=10)
    await scheduler.wait_for_running()

    assert summary["batches"] == 1
    assert summary["count"] == 1


async def test_run_forever_exits_when_stopped(handler):
    scheduler = Scheduler(handler, GatedExecutor(), clock=lambda: NOW)
    stop = asyncio.Event()

    loop_task = asyncio.create_task(scheduler.run_forever(60, stop))
    await asyncio.sleep(0.05)
    stop.set()

    await asyncio.wait_for(loop_task, timeout=2)


class SelectiveExecutor:
    """Executor stand-in that blocks only the given jobs until released."""

    def __init__(self, blocked):
        self.blocked = set(blocked)
        self.calls = []
        self.release = asyncio.Event()

    async def run_job(self, job_id, *, cancel_event=None):
        self.calls.append(job_id)
        if job_id in self.blocked:
            await self.release.wait()
        return {"job_id": job_id, "outcome": "success"}


class AdvancingExecutor:
    """Executor stand-in that moves the job to its next run like a real execution."""

    def __init__(self, handler):
        self.handler = handler

    async def run_job(self, job_id, *, cancel_event=None):
        async with self.handler.AsyncSessionLocal() as session:
            await JobRepository().update_job(session, job_id, {"next_run_at": NOW + timedelta(days=1)})
        return {"job_id": job_id, "outcome": "success"}


async def _wait_until(predicate, timeout=2.0):
    async def poll():
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout=timeout)


async def _running_since(handler, job_id):
    async with handler.AsyncSessionLocal() as session:
        return (await session.get(Job, job_id)).running_since


async def test_in_process_marker_skips_a_job_already_running(handler):
    [job_id] = await _due_jobs(handler, 1)
    scheduler = Scheduler(handler, GatedExecutor())
    scheduler.running.try_acquire(job_id)

    summary = await scheduler.run_due(NOW)

    assert summary["results"] == [{"job_id": job_id, "status": "skipped", "reason": "already running"}]


async def test_schedulers_sharing_a_database_run_a_job_once(handler):
    [job_id] = await _due_jobs(handler, 1)
    executor = GatedExecutor()
    first = Scheduler(handler, executor, running=RunningJobs())
    second = Scheduler(handler, executor, running=RunningJobs())

    ticks = asyncio.gather(first.run_due(NOW), second.run_due(NOW))
    await executor.started.wait()
    await asyncio.sleep(0.05)
    executor.release.set()
    await ticks

    assert executor.calls == [job_id]
    assert await _running_since(handler, job_id) is None


async def test_stale_claim_is_taken_over(handler):
    [job_id] = await _due_jobs(handler, 1)
    async with handler.AsyncSessionLocal() as session:
        job = await session.get(Job, job_id)
        job.running_since = NOW - timedelta(hours=1)
        await session.commit()
    executor = GatedExecutor()
    executor.release.set()

    fresh = await Scheduler(handler, executor, claim_timeout_seconds=7200).run_due(NOW)
    stale = await Scheduler(handler, executor, claim_timeout_seconds=600).run_due(NOW)

    assert fresh["count"] == 0
    assert stale["results"][0]["status"] == "completed"
    assert executor.calls == [job_id]


async def test_claim_is_refreshed_while_the_job_runs(handler):
    [job_id] = await _due_jobs(handler, 1)
    clock = {"now": NOW}
    executor = GatedExecutor()
    scheduler = Scheduler(handler, executor, heartbeat_seconds=0.01, clock=lambda: clock["now"])

    tick = asyncio.create_task(scheduler.run_due(NOW))
    await executor.started.wait()
    clock["now"] = NOW + timedelta(minutes=5)
    await asyncio.sleep(0.1)
    refreshed = await _running_since(handler, job_id)
    executor.release.set()
    await tick

    assert refreshed.replace(tzinfo=timezone.utc) == NOW + timedelta(minutes=5)


async def test_dispatch_returns_before_jobs_finish(handler):
    [job_id] = await _due_jobs(handler, 1)
    executor = GatedExecutor()
    scheduler = Scheduler(handler, executor)

    summary = await scheduler.dispatch_due(NOW)
    await executor.started.wait()

    assert summary["results"] == [{"job_id": job_id, "status": "dispatched"}]
    assert scheduler.inflight == 1

    executor.release.set()
    await scheduler.shutdown()
    assert scheduler.inflight == 0
    assert job_id not in scheduler.running


async def test_slow_job_does_not_hold_back_later_ticks(handler):
    repo = JobRepository()
    async with handler.AsyncSessionLocal() as session:
        slow = await repo.create_job(session, owner_id="user-1", name="slow", method="db-postgres", input_data={})
        fast = await repo.create_job(session, owner_id="user-1", name="fast", method="db-postgres", input_data={})
        await repo.update_job(session, slow.id, {"active": True, "next_run_at": NOW - timedelta(minutes=1)})
        await repo.update_job(session, fast.id, {"active": True, "next_run_at": NOW + timedelta(minutes=1)})

    clock = {"now": NOW}
    executor = SelectiveExecutor(blocked={slow.id})
    scheduler = Scheduler(handler, executor, clock=lambda: clock["now"])
    stop = asyncio.Event()

    loop_task = asyncio.create_task(scheduler.run_forever(0.01, stop))
    await _wait_until(lambda: slow.id in executor.calls)
    clock["now"] = NOW + timedelta(minutes=2)
    await _wait_until(lambda: fast.id in executor.calls)

    # The slow job is still running when the fast one starts.
    assert not executor.release.is_set()
    assert slow.id in scheduler.running

    stop.set()
    executor.release.set()
    await asyncio.wait_for(loop_task, timeout=2)
    assert scheduler.inflight == 0


async def test_drain_can_wait_for_results(handler):
    ids = await _due_jobs(handler, 3)
    executor = AdvancingExecutor(handler)
    scheduler = Scheduler(handler, executor, max_jobs=2, clock=lambda: NOW)

    summary = await scheduler.drain_due(max_batches=5, wait=True)

    assert summary["batches"] == 2
    assert summary["count"] == 3
    assert sorted(result["job_id"] for result in summary["results"]) == sorted(ids)
    assert all(result["status"] == "completed" for result in summary["results"])
