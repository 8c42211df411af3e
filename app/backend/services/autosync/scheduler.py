"""Due-job scheduler.

A tick picks active jobs whose `next_run_at` has passed and starts each one
through the executor as an independent asyncio task; the tick itself does not
wait for them, so a slow job never delays the other due jobs.

A job is guarded twice before it starts: by `RunningJobs` inside this process
and by a claim stored on the job row (`running_since`) that other processes
sharing the database respect. A running execution refreshes its claim with a
heartbeat; a claim that stops being refreshed is taken over once it is older
than the claim timeout.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
import logging
import threading
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from backend.database.sql_handler import SQLHandler
from backend.services.autosync.executor import JobExecutor
from backend.services.autosync.repository import JobRepository


logger = logging.getLogger(__name__)

Started = Tuple[Dict[str, Any], Optional["asyncio.Task[Dict[str, Any]]"]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RunningJobs:
    """Set of job ids currently executing in this process."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._ids: Set[str] = set()

    def try_acquire(self, job_id: str) -> bool:
        """Mark a job as running; False when it already is."""

        with self._lock:
            if job_id in self._ids:
                return False
            self._ids.add(job_id)
            return True

    def release(self, job_id: str) -> None:
        with self._lock:
            self._ids.discard(job_id)

    def __contains__(self, job_id: object) -> bool:
        with self._lock:
            return job_id in self._ids

    def snapshot(self) -> Set[str]:
        with self._lock:
            return set(self._ids)


async def _collect(started: List[Started]) -> List[Dict[str, Any]]:
    return [await task if task is not None else summary for summary, task in started]


class Scheduler:
    """Find due jobs and dispatch them to the executor."""

    def __init__(
        self,
        handler: SQLHandler,
        executor: JobExecutor,
        *,
        max_jobs: int = 10,
        running: Optional[RunningJobs] = None,
        claim_timeout_seconds: float = 600,
        heartbeat_seconds: float = 60,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """Initialize the scheduler.

        Args:
            handler: SQL database handler.
            executor: Runs a single job.
            max_jobs: Maximum jobs dispatched per tick.
            running: Shared running-job marker set.
            claim_timeout_seconds: Age after which an unrefreshed claim is taken over.
            heartbeat_seconds: How often a running execution refreshes its claim.
            clock: Returns the current UTC time.
        """

        self.handler = handler
        self.executor = executor
        self.max_jobs = max_jobs
        self.running = running or RunningJobs()
        self.claim_timeout = timedelta(seconds=claim_timeout_seconds)
        self.heartbeat_seconds = heartbeat_seconds
        self.clock = clock
        self.repo = JobRepository()
        self._inflight: Set["asyncio.Task[Dict[str, Any]]"] = set()
        self._stopping = asyncio.Event()

    @property
    def inflight(self) -> int:
        """Number of executions started by this scheduler that are still running."""

        return len(self._inflight)

    async def run_due(
        self,
        now: Optional[datetime] = None,
        *,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Dict[str, Any]:
        """Execute all due jobs concurrently and wait for them.

        Args:
            now: Reference time; defaults to the clock.
            cancel_event: Propagated to every execution.

        Returns:
            Dict[str, Any]: Summary with one result per due job.
        """

        now, started = await self._start_due(now, cancel_event)
        results = await _collect(started)
        return {"now": now.isoformat(), "count": len(results), "results": results}

    async def dispatch_due(
        self,
        now: Optional[datetime] = None,
        *,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Dict[str, Any]:
        """Start all due jobs in the background and return without waiting."""

        now, started = await self._start_due(now, cancel_event)
        results = [summary for summary, _ in started]
        return {"now": now.isoformat(), "count": len(results), "results": results}

    async def _start_due(
        self,
        now: Optional[datetime],
        cancel_event: Optional[asyncio.Event],
    ) -> Tuple[datetime, List[Started]]:
        now = now or self.clock()

        async with self.handler.AsyncSessionLocal() as session:
            due = await self.repo.list_due_jobs(
                session,
                now=now,
                limit=self.max_jobs,
                stale_before=now - self.claim_timeout,
            )
            job_ids = [job.id for job in due]

        if job_ids:
            logger.info("Dispatching %d due job(s)", len(job_ids))

        started = [await self._start(job_id, now, cancel_event) for job_id in job_ids]
        return now, started

    async def _start(self, job_id: str, now: datetime, cancel_event: Optional[asyncio.Event]) -> Started:
        if not self.running.try_acquire(job_id):
            logger.info("Job %s is already running; skipping", job_id)
            return {"job_id": job_id, "status": "skipped", "reason": "already running"}, None

        try:
            async with self.handler.AsyncSessionLocal() as session:
                claimed = await self.repo.claim_job(
                    session,
                    job_id,
                    now=now,
                    stale_before=now - self.claim_timeout,
                )
        except Exception:
            self.running.release(job_id)
            raise

        if not claimed:
            self.running.release(job_id)
            logger.info("Job %s is claimed by another runner or no longer due; skipping", job_id)
            return {"job_id": job_id, "status": "skipped", "reason": "running elsewhere"}, None

        task = asyncio.create_task(self._execute(job_id, cancel_event or self._stopping))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return {"job_id": job_id, "status": "dispatched"}, task

    async def _execute(self, job_id: str, cancel_event: asyncio.Event) -> Dict[str, Any]:
        heartbeat = asyncio.create_task(self._heartbeat(job_id))
        try:
            run = await self.executor.run_job(job_id, cancel_event=cancel_event)
            return {"job_id": job_id, "status": "completed", "run": run}
        except Exception as exc:
            logger.exception("Job %s could not be executed", job_id)
            return {"job_id": job_id, "status": "error", "error": str(exc)}
        finally:
            heartbeat.cancel()
            await asyncio.gather(heartbeat, return_exceptions=True)
            await self._release(job_id)
            self.running.release(job_id)

    async def _heartbeat(self, job_id: str) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_seconds)
            try:
                async with self.handler.AsyncSessionLocal() as session:
                    await self.repo.refresh_claim(session, job_id, now=self.clock())
            except Exception as exc:
                logger.warning("Heartbeat for job %s failed: %s", job_id, exc)

    async def _release(self, job_id: str) -> None:
        try:
            async with self.handler.AsyncSessionLocal() as session:
                await self.repo.release_claim(session, job_id)
        except Exception as exc:
            # The claim expires after the claim timeout.
            logger.error("Could not release the claim of job %s: %s", job_id, exc)

    async def drain_due(
        self,
        *,
        max_batches: int = 1,
        cancel_event: Optional[asyncio.Event] = None,
        wait: bool = False,
    ) -> Dict[str, Any]:
        """Dispatch due jobs in batches until a batch is not full.

        Claimed jobs are not listed again, so each batch picks up jobs the
        previous batches did not start.

        Args:
            max_batches: Upper bound on batches per call.
            cancel_event: Propagated to every execution; also stops draining.
            wait: Wait for the started executions and report their results.

        Returns:
            Dict[str, Any]: Dispatched count, batch count and per-job results.
        """

        started: List[Started] = []
        batches = 0
        while batches < max(1, max_batches):
            batches += 1
            _, batch = await self._start_due(None, cancel_event)
            started.extend(batch)
            if len(batch) < self.max_jobs:
                break
            if cancel_event is not None and cancel_event.is_set():
                break
        else:
            logger.warning("Drain stopped after %d batches; more jobs may be due", batches)

        results = await _collect(started) if wait else [summary for summary, _ in started]
        return {"count": len(started), "batches": batches, "results": results}

    async def wait_for_running(self) -> None:
        """Wait until every execution started by this scheduler has finished."""

        while self._inflight:
            await asyncio.gather(*list(self._inflight))

    async def shutdown(self) -> None:
        """Ask background executions to stop starting items and wait for them."""

        self._stopping.set()
        if self._inflight:
            logger.info("Waiting for %d running job(s) to finish", len(self._inflight))
        await self.wait_for_running()

    async def run_forever(
        self,
        interval_seconds: float,
        stop_event: asyncio.Event,
        *,
        drain_max_batches: int = 1,
    ) -> None:
        """Tick every `interval_seconds` until `stop_event` is set.

        Ticks only dispatch; executions keep running across ticks and are
        awaited once the loop stops.
        """

        logger.info("Scheduler started (interval=%ss, max_jobs=%d)", interval_seconds, self.max_jobs)
        while not stop_event.is_set():
            try:
                await self.drain_due(max_batches=drain_max_batches, cancel_event=stop_event)
            except Exception:
                logger.exception("Scheduler tick failed")

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
            except asyncio.TimeoutError:
                pass

        await self.wait_for_running()
        logger.info("Scheduler stopped")
