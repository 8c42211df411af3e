"""Automatic backup (auto-sync) engine.

`build_services` is the composition point: it wires the SQL handler, the
connector registry, the secret sealer and the blob store factory into the job
service, the executor and the scheduler.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from backend.database.sql_handler import SQLHandler
from backend.services.autosync.config_crypto import SecretSealer
from backend.services.autosync.connectors.registry import ConnectorRegistry
from backend.services.autosync.executor import JobExecutor
from backend.services.autosync.job_service import JobService
from backend.services.autosync.scheduler import RunningJobs, Scheduler
from backend.services.autosync.storage.factory import BlobStoreFactory


@dataclass
class AutoSyncServices:
    """Wired services shared by the API and the runner."""

    handler: SQLHandler
    jobs: JobService
    executor: JobExecutor
    scheduler: Scheduler


def build_services(
    handler: SQLHandler,
    *,
    connectors: ConnectorRegistry,
    sealer: SecretSealer,
    blob_stores: BlobStoreFactory,
    transfer_concurrency: int = 10,
    job_timeout_seconds: Optional[float] = None,
    max_jobs: int = 10,
    claim_timeout_seconds: float = 600,
    heartbeat_seconds: float = 60,
) -> AutoSyncServices:
    """Wire the auto-sync services around one set of collaborators."""

    jobs = JobService(
        handler,
        connectors=connectors,
        sealer=sealer,
        blob_stores=blob_stores,
        transfer_concurrency=transfer_concurrency,
    )
    executor = JobExecutor(
        handler,
        connectors=connectors,
        sealer=sealer,
        blob_stores=blob_stores,
        concurrency=transfer_concurrency,
        timeout_seconds=job_timeout_seconds,
    )
    scheduler = Scheduler(
        handler,
        executor,
        max_jobs=max_jobs,
        running=RunningJobs(),
        claim_timeout_seconds=claim_timeout_seconds,
        heartbeat_seconds=heartbeat_seconds,
    )
    return AutoSyncServices(handler=handler, jobs=jobs, executor=executor, scheduler=scheduler)
