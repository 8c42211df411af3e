# Entry point for the FastAPI app
from typing import Optional

from fastapi import FastAPI

from api.config.lifecycle import setup_lifecycle_events
from api.config.openapi import setup_openapi
from api.errors import setup_exception_handlers
from api.logging_config import configure_logging
from api.middleware import setup_middleware
from api.routes import autosync
from api.settings import Settings, get_settings
from backend.services.autosync import AutoSyncServices


def create_app(
    settings: Optional[Settings] = None,
    services: Optional[AutoSyncServices] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Settings to use; defaults to the environment
        services: Pre-wired services; when given, startup skips database setup

    Returns:
        FastAPI: The application
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="Auto-sync Backup Service",
        description="Recurring backups of mail accounts and databases into per-user object storage",
        version=settings.IMAGE_TAG,
    )
    app.state.settings = settings
    app.state.autosync = services

    setup_openapi(app, identity_header=settings.IDENTITY_HEADER)
    setup_exception_handlers(app)
    setup_middleware(app, debug=settings.DEBUG)
    setup_lifecycle_events(app, settings)

    app.include_router(autosync.router)

    # Health check endpoint.
    @app.get("/health")
    def check_health():
        return {"status": "OK"}

    # Get Image version.
    @app.get("/version")
    def get_version():
        return {"IMAGE_TAG": f"{settings.IMAGE_TAG}"}

    return app


def _build_default_app() -> FastAPI:
    settings = get_settings()
    configure_logging(
        log_dir=settings.LOG_DIR,
        log_level=settings.LOG_LEVEL,
        debug=settings.DEBUG,
        log_filename=settings.LOG_FILENAME,
    )
    return create_app(settings)


app = _build_default_app()
