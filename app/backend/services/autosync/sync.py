"""Shared building blocks of a source -> destination sync.

Used by the job executor (scheduled runs) and by the interactive bulk
endpoints, so both read the source and address the destination the same way.
"""

from __future__ import annotations

import asyncio
import logging
from typing import List, Optional, Sequence

from fastapi.concurrency import run_in_threadpool

from backend.services.autosync.connectors.base import Connector, SourceItem
from backend.services.autosync.credentials import DB_MYSQL, DB_POSTGRES, MAIL_GMAIL, MAIL_OUTLOOK
from backend.services.autosync.errors import ConnectorError, ValidationError
from backend.services.autosync.fanout import FanoutResult, run_fanout
from backend.services.autosync.storage.base import BlobStore


logger = logging.getLogger(__name__)

NAMESPACES = {
    MAIL_GMAIL: "gmail",
    MAIL_OUTLOOK: "outlook",
    DB_POSTGRES: "database",
    DB_MYSQL: "database",
}

# Guards against a connector that never returns an empty cursor.
MAX_BATCHES = 10_000


def job_namespace(connector_type: str) -> str:
    """Destination namespace of a connector family."""

    return NAMESPACES[connector_type]


def validate_job_name(job_name: str) -> str:
    """Reject names that would nest one job's keys under another's prefix.

    Raises:
        ValidationError: Empty name or a name containing `/`.
    """

    if not job_name:
        raise ValidationError("job name must not be empty")
    if "/" in job_name:
        raise ValidationError("job name must not contain '/'")
    return job_name


def job_prefix(job_name: str) -> str:
    """Destination key prefix of a job."""

    return f"{validate_job_name(job_name)}/"


async def fetch_all_items(
    connector: Connector,
    *,
    cancel_event: Optional[asyncio.Event] = None,
) -> List[SourceItem]:
    """Page through the source until the cursor is exhausted.

    Raises:
        ConnectorError: When the connector keeps returning cursors.
    """

    items: List[SourceItem] = []
    cursor: Optional[str] = None
    for _ in range(MAX_BATCHES):
        batch, cursor = await run_in_threadpool(connector.fetch_batch, cursor)
        items.extend(batch)
        if cursor is None:
            return items
        if cancel_event is not None and cancel_event.is_set():
            logger.info("Source listing cancelled after %d items", len(items))
            return items

    raise ConnectorError(f"source returned more than {MAX_BATCHES} batches")


async def upload_items(
    items: Sequence[SourceItem],
    store: BlobStore,
    *,
    namespace: str,
    prefix: str,
    concurrency: int,
    cancel_event: Optional[asyncio.Event] = None,
    timeout: Optional[float] = None,
) -> FanoutResult:
    """Upload items under `prefix` with bounded concurrency.

    The namespace is prepared once before the first upload; a failure there
    raises `TransferSetupError` and no item is attempted. The result reports
    source keys (without the prefix).
    """

    def transfer(item: SourceItem) -> None:
        store.put(namespace, prefix + item.key, item.data)

    return await run_fanout(
        items,
        transfer,
        key=lambda item: item.key,
        concurrency=concurrency,
        cancel_event=cancel_event,
        timeout=timeout,
        setup=lambda: store.ensure_namespace(namespace),
    )
