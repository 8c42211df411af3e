"""Run Alembic migrations programmatically."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from alembic import command
from alembic.config import Config


logger = logging.getLogger(__name__)

DEFAULT_SCRIPT_LOCATION = Path(__file__).resolve().parents[3] / "alembic"


def run_migrations(database_url: str, *, script_location: Optional[Path] = None, revision: str = "head") -> None:
    """Upgrade the database schema.

    The Alembic environment starts its own event loop, so call this from a
    worker thread when an event loop is already running.

    Args:
        database_url: SQLAlchemy async URL.
        script_location: Directory containing `env.py` and `versions/`.
        revision: Target revision.
    """

    location = Path(script_location or DEFAULT_SCRIPT_LOCATION)
    config = Config()
    config.set_main_option("script_location", str(location))
    config.set_main_option("sqlalchemy.url", database_url.replace("%", "%%"))

    logger.info("Running migrations to %s", revision)
    command.upgrade(config, revision)
    logger.info("Migrations completed")
