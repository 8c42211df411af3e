"""Execution engine for auto-sync jobs.

This module contains the orchestration to:
- Re-validate a job's stored credential
- Read every source item through the job's connector
- Reconcile the source listing with the destination and upload what is missing
- Persist the run as an immutable Task and update the job's status and schedule
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import logging
from typing import Any, Callable, Dict, Optional

from fastapi.concurrency import run_in_threadpool

from backend.database.sql_handler import SQLHandler
from backend.services.autosync.config_crypto import SecretSealer
from backend.services.autosync.connectors.registry import ConnectorRegistry
from backend.services.autosync.credentials import check_credential, credential_from_storage
from backend.services.autosync.errors import (
    BlobStoreError,
    ConnectorError,
    CredentialError,
    NotFoundError,
    TransferSetupError,
)
from backend.services.autosync.fanout import FanoutResult
from backend.services.autosync.reconciliation import load_destination_keys, split_synced
from backend.services.autosync.repository import JobRepository
from backend.services.autosync.schedule_timing import compute_next_run_at
from backend.services.autosync.storage.factory import BlobStoreFactory
from backend.services.autosync.sync import fetch_all_items, job_namespace, job_prefix, upload_items
from models.sql.autosync import (
    MESSAGE_STATUS_ERROR,
    MESSAGE_STATUS_INFO,
    MESSAGE_STATUS_WARNING,
    TASK_OUTCOME_FAILURE,
    TASK_OUTCOME_PARTIAL,
    TASK_OUTCOME_SUCCESS,
)


logger = logging.getLogger(__name__)

MAX_FAILED_KEYS_IN_DETAIL = 1000

_STATUS_FOR_OUTCOME = {
    TASK_OUTCOME_SUCCESS: MESSAGE_STATUS_INFO,
    TASK_OUTCOME_PARTIAL: MESSAGE_STATUS_WARNING,
    TASK_OUTCOME_FAILURE: MESSAGE_STATUS_ERROR,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def classify_outcome(processed: int, failed: int, skipped: int = 0) -> str:
    """Map item counts to a task outcome.

    Items skipped by a cancellation count as unfinished: a run that finished
    nothing is a failure, a run that finished some but not all is partial.
    """

    unfinished = failed + skipped
    if unfinished == 0:
        return TASK_OUTCOME_SUCCESS
    if processed == 0:
        return TASK_OUTCOME_FAILURE
    return TASK_OUTCOME_PARTIAL


def failure_message(exc: BaseException) -> str:
    """Human-readable job status for a run that could not start."""

    if isinstance(exc, CredentialError):
        return "Your account credentials are invalid or expired. Please reconnect the account to resume backups."
    if isinstance(exc, (TransferSetupError, BlobStoreError)):
        return "Unable to access the backup destination. Please check your destination token."
    if isinstance(exc, ConnectorError):
        return "Unable to reach the source account. The backup will be retried at the next scheduled time."
    return "Backup failed due to an internal error. It will be retried at the next scheduled time."


def result_message(outcome: str, result: FanoutResult) -> str:
    """Human-readable job status for a run that transferred items."""

    if outcome == TASK_OUTCOME_SUCCESS:
        if not result.processed:
            return "Backup completed. Everything is already up to date."
        return f"Backup completed successfully. {len(result.processed)} new item(s) uploaded."
    if outcome == TASK_OUTCOME_PARTIAL:
        text = f"Backup partially completed: {len(result.processed)} uploaded, {len(result.failed)} failed"
        if result.skipped:
            text += f", {len(result.skipped)} not started before the time limit"
        return text + "."
    if result.skipped and not result.failed:
        return "Backup stopped before any item could be uploaded. It will be retried at the next scheduled time."
    return "Backup failed: none of the items could be uploaded."


async def _link(source: asyncio.Event, target: asyncio.Event) -> None:
    await source.wait()
    target.set()


class JobExecutor:
    """Run one job end to end and record a Task."""

    def __init__(
        self,
        handler: SQLHandler,
        *,
        connectors: ConnectorRegistry,
        sealer: SecretSealer,
        blob_stores: BlobStoreFactory,
        concurrency: int = 10,
        timeout_seconds: Optional[float] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """Initialize the executor.

        Args:
            handler: SQL database handler.
            connectors: Builds the source connector of a job.
            sealer: Opens sealed credentials and destination tokens.
            blob_stores: Resolves a destination token into a blob store.
            concurrency: Fan-out ceiling per job.
            timeout_seconds: Per-job time limit; no new item starts after it.
            clock: Returns the current UTC time.
        """

        self.handler = handler
        self.connectors = connectors
        self.sealer = sealer
        self.blob_stores = blob_stores
        self.concurrency = concurrency
        self.timeout_seconds = timeout_seconds
        self.clock = clock
        self.repo = JobRepository()

    async def run_job(self, job_id: str, *, cancel_event: Optional[asyncio.Event] = None) -> Dict[str, Any]:
        """Execute a job and record a Task.

        Per-item failures and setup failures are recorded in the Task; this
        method only raises when the job does not exist.

        Args:
            job_id: Job id.
            cancel_event: When set, no new item starts; finished items are still recorded.

        Returns:
            Dict[str, Any]: Run summary.

        Raises:
            NotFoundError: If the job does not exist.
        """

        started_at = self.clock()

        async with self.handler.AsyncSessionLocal() as session:
            job = await self.repo.get_job(session, job_id)
            if job is None:
                raise NotFoundError("job not found")
            method, name = job.method, job.name
            input_data, secrets_encrypted = dict(job.input_data or {}), job.secrets_encrypted
            sealed_destination = job.destination_token

        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        timer = loop.call_later(self.timeout_seconds, stop.set) if self.timeout_seconds else None
        linker = asyncio.ensure_future(_link(cancel_event, stop)) if cancel_event is not None else None

        result = FanoutResult()
        error: Optional[BaseException] = None
        synced_count = 0
        try:
            credential = credential_from_storage(method, input_data, secrets_encrypted, self.sealer)
            check_credential(credential, method)

            if not sealed_destination:
                raise TransferSetupError("destination_token is not configured")
            try:
                store = self.blob_stores(self.sealer.open_value(sealed_destination))
            except BlobStoreError:
                raise
            except Exception as exc:
                raise TransferSetupError(f"destination unavailable: {exc}", detail=str(exc)) from exc

            connector = self.connectors.build(method, credential)
            namespace, prefix = job_namespace(method), job_prefix(name)

            items = await fetch_all_items(connector, cancel_event=stop)
            existing = await run_in_threadpool(load_destination_keys, store, namespace, prefix)
            synced, unsynced = split_synced(items, existing, key=lambda item: prefix + item.key)
            synced_count = len(synced)

            logger.info(
                "Job %s (%s): %d source items, %d already synced, %d to upload",
                job_id,
                method,
                len(items),
                len(synced),
                len(unsynced),
            )

            result = await upload_items(
                unsynced,
                store,
                namespace=namespace,
                prefix=prefix,
                concurrency=self.concurrency,
                cancel_event=stop,
            )
        except Exception as exc:
            error = exc
            logger.warning("Job %s (%s) failed before transferring items: %s", job_id, method, exc)
        finally:
            if timer is not None:
                timer.cancel()
            if linker is not None:
                linker.cancel()

        if error is not None:
            outcome = TASK_OUTCOME_FAILURE
            message = failure_message(error)
        else:
            outcome = classify_outcome(len(result.processed), len(result.failed), len(result.skipped))
            message = result_message(outcome, result)

        detail: Dict[str, Any] = {
            "processed": len(result.processed),
            "failed": len(result.failed),
            "attempted": result.attempted,
            "skipped": len(result.skipped),
            "already_synced": synced_count,
            "failed_keys": result.failed[:MAX_FAILED_KEYS_IN_DETAIL],
            "message": message,
        }
        if error is not None:
            detail["error"] = f"{error.__class__.__name__}: {getattr(error, 'detail', None) or error}"
        elif result.errors:
            detail["error"] = "; ".join(f"{key}: {text}" for key, text in list(result.errors.items())[:20])
        if result.cancelled:
            detail["cancelled"] = True

        task_id = await self._record(job_id, started_at, outcome, message, detail)

        logger.info(
            "Job %s finished: outcome=%s processed=%d failed=%d skipped=%d",
            job_id,
            outcome,
            len(result.processed),
            len(result.failed),
            len(result.skipped),
        )
        return {
            "job_id": job_id,
            "task_id": task_id,
            "outcome": outcome,
            "processed": len(result.processed),
            "failed": len(result.failed),
            "skipped": len(result.skipped),
        }

    async def _record(
        self,
        job_id: str,
        started_at: datetime,
        outcome: str,
        message: str,
        detail: Dict[str, Any],
    ) -> Optional[str]:
        """Write the Task and the job's status in one transaction under a row lock."""

        finished_at = self.clock()

        async with self.handler.AsyncSessionLocal() as session:
            job = await self.repo.lock_job(session, job_id)
            if job is None:
                logger.info("Job %s was deleted while running; task not recorded", job_id)
                await session.rollback()
                return None

            task = await self.repo.create_task(
                session,
                job_id=job_id,
                started_at=started_at,
                finished_at=finished_at,
                outcome=outcome,
                detail=detail,
            )

            job.message = message
            job.message_status = _STATUS_FOR_OUTCOME[outcome]
            job.last_run_at = started_at
            if job.active and job.interval and job.on:
                job.next_run_at = compute_next_run_at(reference=finished_at, interval=job.interval, on=job.on)
            else:
                job.next_run_at = None
            job.running_since = None
            job.updated_at = finished_at

            await session.commit()
            return task.id
