"""Application lifecycle event handlers and service composition."""

import logging

from fastapi import FastAPI
from fastapi.concurrency import run_in_threadpool

from api.settings import Settings
from backend.database import close_database, initialize_database
from backend.database.migrations import run_migrations
from backend.database.sql_handler import SQLHandler
from backend.services.autosync import AutoSyncServices, build_services
from backend.services.autosync.config_crypto import SecretSealer
from backend.services.autosync.connectors.registry import ConnectorRegistry
from backend.services.autosync.storage.factory import LocalBlobStoreFactory


logger = logging.getLogger(__name__)


def build_autosync_services(handler: SQLHandler, settings: Settings) -> AutoSyncServices:
    """
    Wire the auto-sync services from settings.

    Shared by the API startup and the runner's direct mode.

    Args:
        handler: Initialized SQL handler
        settings: Loaded settings

    Returns:
        AutoSyncServices: Job service, executor and scheduler
    """
    sealer = SecretSealer(settings.get_config_encryption_key() or None)
    if not sealer.enabled:
        logger.warning("CONFIG_ENCRYPTION_KEY is not set; credentials are stored unencrypted")

    return build_services(
        handler,
        connectors=ConnectorRegistry.with_database_dumps(),
        sealer=sealer,
        blob_stores=LocalBlobStoreFactory(settings.BLOB_STORE_PATH),
        transfer_concurrency=settings.TRANSFER_CONCURRENCY,
        job_timeout_seconds=settings.JOB_TIMEOUT_SECONDS,
        max_jobs=settings.SCHEDULER_MAX_JOBS,
        claim_timeout_seconds=settings.SCHEDULER_CLAIM_TIMEOUT_SECONDS,
        heartbeat_seconds=settings.SCHEDULER_HEARTBEAT_SECONDS,
    )


async def prepare_database(settings: Settings) -> SQLHandler:
    """Initialize the handler and bring the schema up to date."""

    handler = await initialize_database(settings.DATABASE_URL, echo=settings.DEBUG)
    if settings.RUN_MIGRATIONS:
        await run_in_threadpool(run_migrations, settings.DATABASE_URL)
    else:
        logger.info("RUN_MIGRATIONS disabled; creating missing tables from models")
        await handler.create_all()
    return handler


def setup_lifecycle_events(app: FastAPI, settings: Settings) -> None:
    """
    Configure application lifecycle events (startup and shutdown).

    Services already attached to `app.state.autosync` are kept as-is.

    Args:
        app: The FastAPI application instance
        settings: Loaded settings
    """
    @app.on_event("startup")
    async def startup_event():
        if getattr(app.state, "autosync", None) is not None:
            return

        try:
            handler = await prepare_database(settings)
        except Exception:
            logger.exception("Startup failed while preparing the database")
            raise

        app.state.autosync = build_autosync_services(handler, settings)
        logger.info("Auto-sync services ready")

    @app.on_event("shutdown")
    async def shutdown_event():
        services = getattr(app.state, "autosync", None)
        if services is not None:
            await services.scheduler.shutdown()
        await close_database()
