"""Job CRUD, activation rules and interactive bulk transfers."""

from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from fastapi.concurrency import run_in_threadpool

from backend.database.sql_handler import SQLHandler
from backend.services.autosync.config_crypto import SecretSealer
from backend.services.autosync.connectors.base import Connector
from backend.services.autosync.connectors.registry import ConnectorRegistry
from backend.services.autosync.credentials import (
    Credential,
    check_credential,
    credential_from_storage,
    credential_to_storage,
    ensure_connector_type,
    is_database_connector,
    is_mail_connector,
    validate_credential,
)
from backend.services.autosync.errors import (
    AutoSyncError,
    CredentialError,
    IdentityMismatchError,
    NotFoundError,
    TransferSetupError,
    ValidationError,
)
from backend.services.autosync.reconciliation import load_destination_keys, reconcile
from backend.services.autosync.repository import JobRepository, normalize_pagination
from backend.services.autosync.schedule_timing import compute_resumed_next_run_at, validate_interval
from backend.services.autosync.serializers import job_to_dict, task_to_dict
from backend.services.autosync.storage.base import BlobStore
from backend.services.autosync.storage.factory import BlobStoreFactory
from backend.services.autosync.sync import (
    fetch_all_items,
    job_namespace,
    job_prefix,
    upload_items,
    validate_job_name,
)
from models.sql.autosync import MESSAGE_STATUS_INFO, Job


logger = logging.getLogger(__name__)

ACTIVATED_MESSAGE = "Your automatic backup is activated. It will start processing the first backup soon."
DEACTIVATED_MESSAGE = "Your automatic backup is deactivated. It will not process any backups."


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _present(changes: Mapping[str, Any], key: str) -> bool:
    return changes.get(key) is not None


class JobService:
    """Service for managing auto-sync jobs."""

    def __init__(
        self,
        handler: SQLHandler,
        *,
        connectors: ConnectorRegistry,
        sealer: SecretSealer,
        blob_stores: BlobStoreFactory,
        transfer_concurrency: int = 10,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """Initialize the service.

        Args:
            handler: SQL handler.
            connectors: Connector registry used for live credential checks.
            sealer: Seals credential secrets and destination tokens at rest.
            blob_stores: Resolves a destination token into a blob store.
            transfer_concurrency: Ceiling for interactive bulk transfers.
            clock: Returns the current UTC time.
        """

        self.handler = handler
        self.connectors = connectors
        self.sealer = sealer
        self.blob_stores = blob_stores
        self.transfer_concurrency = transfer_concurrency
        self.clock = clock
        self.repo = JobRepository()

    async def _live(self, fn: Callable[[], Any]) -> Any:
        """Run a blocking connector call; unexpected errors become credential errors."""

        try:
            return await run_in_threadpool(fn)
        except AutoSyncError:
            raise
        except Exception as exc:
            logger.warning("Live credential check failed: %s", exc)
            raise CredentialError("Invalid credential. May be it is expired or invalid", detail=str(exc)) from exc

    def _connector(self, connector_type: str, credential: Credential) -> Connector:
        return self.connectors.build(connector_type, credential)

    async def _owned_job(self, session, owner_id: str, job_id: str) -> Job:
        job = await self.repo.get_job_for_owner(session, owner_id, job_id)
        if job is None:
            raise NotFoundError("job not found")
        return job

    async def create_job(self, owner_id: str, connector_type: str, payload: Mapping[str, Any]) -> Dict[str, Any]:
        """Create an inactive job with an immediately validated credential.

        For mail connectors the job name is bound to the account identity
        reported by the connector. Database jobs take `name` from the payload,
        defaulting to `<database_name>@<host>`.

        Raises:
            ValidationError: Unknown or unavailable connector type, or a job name containing `/`.
            CredentialError: Missing field, invalid credential or identity mismatch.
            ConflictError: The owner already has a job with this name.
        """

        ensure_connector_type(connector_type)
        credential = validate_credential(connector_type, payload)
        connector = self._connector(connector_type, credential)

        requested_name = str(payload.get("name") or "").strip()
        if is_mail_connector(connector_type):
            identity = str(await self._live(connector.get_account_identity) or "").strip()
            if not identity:
                raise CredentialError("Invalid credential. Account identity could not be resolved")
            if requested_name and requested_name != identity:
                raise IdentityMismatchError(requested_name, identity)
            name = identity
        else:
            await self._live(connector.validate_credential)
            name = validate_job_name(requested_name or f"{credential.database_name}@{credential.host}")

        input_data, secrets_encrypted = credential_to_storage(credential, self.sealer)

        async with self.handler.AsyncSessionLocal() as session:
            job = await self.repo.create_job(
                session,
                owner_id=owner_id,
                name=name,
                method=connector_type,
                input_data=input_data,
                secrets_encrypted=secrets_encrypted,
            )
            logger.info("Created job %s (%s)", job.id, connector_type)
            return job_to_dict(job)

    async def list_jobs(self, owner_id: str) -> List[Dict[str, Any]]:
        """List an owner's jobs with secrets masked."""

        async with self.handler.AsyncSessionLocal() as session:
            jobs = await self.repo.list_jobs(session, owner_id)
            return [job_to_dict(job) for job in jobs]

    async def get_job(self, owner_id: str, job_id: str) -> Dict[str, Any]:
        """Get one job; a job owned by someone else is reported as not found."""

        async with self.handler.AsyncSessionLocal() as session:
            return job_to_dict(await self._owned_job(session, owner_id, job_id))

    async def _credential_changes(self, job: Job, changes: Mapping[str, Any]) -> Dict[str, Any]:
        """Validate a fresh credential and return the columns to store.

        Raises:
            ValidationError: Credential field not allowed for the job's connector.
            CredentialError: Invalid credential or identity mismatch.
        """

        if _present(changes, "refresh_token"):
            if not is_mail_connector(job.method):
                raise ValidationError("refresh token is not allowed for this method")
            credential = validate_credential(job.method, {"refresh_token": changes["refresh_token"]})
            connector = self._connector(job.method, credential)
            identity = str(await self._live(connector.get_account_identity) or "").strip()
            if identity != job.name:
                logger.warning("Identity mismatch on credential update for job %s", job.id)
                raise IdentityMismatchError(job.name, identity)
        else:
            if not is_database_connector(job.method):
                raise ValidationError("database connection is not allowed for this method")
            credential = validate_credential(job.method, dict(changes["database_connection"] or {}))
            connector = self._connector(job.method, credential)
            await self._live(connector.validate_credential)

        input_data, secrets_encrypted = credential_to_storage(credential, self.sealer)
        return {"input_data": input_data, "secrets_encrypted": secrets_encrypted}

    def _check_activation(self, job: Job, merged: Mapping[str, Any], fresh_credential: bool) -> None:
        """Raise unless the merged job state may be activated."""

        if not merged.get("destination_token"):
            raise ValidationError("destination_token is required when activating backup")
        if not merged.get("interval"):
            raise ValidationError("interval is required when activating backup")
        if not merged.get("on"):
            raise ValidationError("on is required when activating backup")

        if not fresh_credential:
            stored = credential_from_storage(job.method, job.input_data, job.secrets_encrypted, self.sealer)
            check_credential(stored, job.method)

    async def update_job(self, owner_id: str, job_id: str, changes: Mapping[str, Any]) -> Dict[str, Any]:
        """Apply a partial update.

        Supported keys: `interval` + `on` (only together), `refresh_token`
        (mail jobs), `database_connection` (database jobs),
        `destination_token` and `active`. Keys that are absent or None are
        left untouched. Nothing is written when any check fails.

        Raises:
            NotFoundError: The job does not exist or is not owned by the caller.
            ValidationError: Invalid schedule, empty update or unmet activation precondition.
            CredentialError: Invalid credential or identity mismatch.
        """

        async with self.handler.AsyncSessionLocal() as session:
            job = await self._owned_job(session, owner_id, job_id)
            update: Dict[str, Any] = {}

            has_interval, has_on = _present(changes, "interval"), _present(changes, "on")
            if has_interval != has_on:
                raise ValidationError("Both interval and on are required together")
            if has_interval:
                update["interval"], update["on"] = validate_interval(changes["interval"], changes["on"])

            fresh_credential = _present(changes, "refresh_token") or _present(changes, "database_connection")
            if fresh_credential:
                update.update(await self._credential_changes(job, changes))

            if "destination_token" in changes and changes["destination_token"] is not None:
                token = str(changes["destination_token"]).strip()
                if not token:
                    raise ValidationError("destination_token must not be empty")
                update["destination_token"] = self.sealer.seal_value(token)

            # Checks below and the write see the same locked row.
            job = await self.repo.lock_job(session, job.id)
            if job is None or job.owner_id != owner_id:
                raise NotFoundError("job not found")

            merged = {
                "destination_token": update.get("destination_token", job.destination_token),
                "interval": update.get("interval", job.interval),
                "on": update.get("on", job.on),
                "active": bool(job.active),
            }

            now = self.clock()
            if _present(changes, "active"):
                activate = bool(changes["active"])
                if activate:
                    self._check_activation(job, merged, fresh_credential)
                    update["next_run_at"] = compute_resumed_next_run_at(
                        now=now, interval=merged["interval"], on=merged["on"], last_run_at=job.last_run_at
                    )
                    update["message"] = ACTIVATED_MESSAGE
                else:
                    update["next_run_at"] = None
                    update["message"] = DEACTIVATED_MESSAGE
                update["active"] = activate
                update["message_status"] = MESSAGE_STATUS_INFO
            elif has_interval and merged["active"]:
                update["next_run_at"] = compute_resumed_next_run_at(
                    now=now, interval=update["interval"], on=update["on"], last_run_at=job.last_run_at
                )

            if not update:
                raise ValidationError("No valid update fields provided")

            updated = await self.repo.update_job(session, job.id, update)
            if updated is None:
                raise NotFoundError("job not found")

            logger.info("Updated job %s fields=%s", job.id, ",".join(sorted(update)))
            return job_to_dict(updated)

    async def delete_job(self, owner_id: str, job_id: str) -> None:
        """Delete a job and its tasks."""

        async with self.handler.AsyncSessionLocal() as session:
            job = await self._owned_job(session, owner_id, job_id)
            await self.repo.delete_job(session, job)
            logger.info("Deleted job %s", job_id)

    async def list_tasks(
        self,
        owner_id: str,
        job_id: str,
        *,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> Dict[str, Any]:
        """List a job's tasks with normalized pagination."""

        limit, offset = normalize_pagination(limit, offset)
        async with self.handler.AsyncSessionLocal() as session:
            await self._owned_job(session, owner_id, job_id)
            tasks = await self.repo.list_tasks(session, job_id, limit=limit, offset=offset)
            total = await self.repo.count_tasks(session, job_id)
            return {
                "items": [task_to_dict(task) for task in tasks],
                "limit": limit,
                "offset": offset,
                "total": total,
            }

    async def purge_by_identity(self, name: str) -> Dict[str, Any]:
        """Delete every job bound to an identity together with its tasks."""

        if not name:
            raise ValidationError("name is required")

        async with self.handler.AsyncSessionLocal() as session:
            job_ids, task_ids = await self.repo.purge_by_identity(session, name)

        logger.info("Purged %d jobs and %d tasks for an identity", len(job_ids), len(task_ids))
        return {
            "deleted_job_ids": job_ids,
            "deleted_task_ids": task_ids,
            "total_jobs_deleted": len(job_ids),
            "total_tasks_deleted": len(task_ids),
        }

    async def stats(self, owner_id: str) -> Dict[str, Any]:
        async with self.handler.AsyncSessionLocal() as session:
            return await self.repo.job_stats(session, owner_id, now=self.clock())

    async def _source_and_destination(self, owner_id: str, job_id: str):
        async with self.handler.AsyncSessionLocal() as session:
            job = await self._owned_job(session, owner_id, job_id)
            credential = credential_from_storage(job.method, job.input_data, job.secrets_encrypted, self.sealer)
            check_credential(credential, job.method)
            if not job.destination_token:
                raise ValidationError("destination_token is required")
            destination_token = self.sealer.open_value(job.destination_token)
            method, name = job.method, job.name

        connector = self._connector(method, credential)
        items = await fetch_all_items(connector)
        return method, name, destination_token, items

    def _open_store(self, destination_token: str) -> BlobStore:
        try:
            return self.blob_stores(destination_token)
        except AutoSyncError:
            raise
        except Exception as exc:
            raise TransferSetupError(f"destination unavailable: {exc}", detail=str(exc)) from exc

    async def list_items(self, owner_id: str, job_id: str) -> List[Dict[str, Any]]:
        """List the job's source items with their `synced` flag."""

        method, name, destination_token, items = await self._source_and_destination(owner_id, job_id)
        store = self._open_store(destination_token)
        namespace, prefix = job_namespace(method), job_prefix(name)

        existing = await run_in_threadpool(load_destination_keys, store, namespace, prefix)
        flags = reconcile([prefix + item.key for item in items], existing)
        return [
            {"key": item.key, "size": len(item.data), "synced": synced}
            for item, synced in zip(items, flags)
        ]

    async def transfer_items(self, owner_id: str, job_id: str, keys: Sequence[str]) -> Dict[str, Any]:
        """Upload the requested source items now.

        Keys that are not in the source listing are reported as failed.

        Raises:
            TransferSetupError: The destination could not be opened.
        """

        if not keys:
            raise ValidationError("keys must not be empty")

        method, name, destination_token, items = await self._source_and_destination(owner_id, job_id)
        store = self._open_store(destination_token)

        requested = list(dict.fromkeys(keys))
        by_key = {item.key: item for item in items}
        selected = [by_key[key] for key in requested if key in by_key]
        missing = [key for key in requested if key not in by_key]

        result = await upload_items(
            selected,
            store,
            namespace=job_namespace(method),
            prefix=job_prefix(name),
            concurrency=self.transfer_concurrency,
        )

        processed_ids = list(result.processed)
        failed_ids = list(result.failed) + missing
        logger.info("Bulk transfer for job %s: processed=%d failed=%d", job_id, len(processed_ids), len(failed_ids))
        return {
            "message": "some items failed to process" if failed_ids else "all items processed successfully",
            "processed_ids": processed_ids,
            "failed_ids": failed_ids,
            "processed_count": len(processed_ids),
            "failed_count": len(failed_ids),
        }
