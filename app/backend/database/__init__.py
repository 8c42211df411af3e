"""Database handler lifecycle for the API process and the runner."""

from __future__ import annotations

import logging
from typing import Optional

from backend.database.sql_handler import SQLHandler


logger = logging.getLogger(__name__)

_handler: Optional[SQLHandler] = None


async def initialize_database(database_url: str, *, echo: bool = False) -> SQLHandler:
    """Create the process-wide SQL handler.

    Args:
        database_url: SQLAlchemy async URL (postgresql+asyncpg://, sqlite+aiosqlite://).
        echo: Log every SQL statement.

    Returns:
        SQLHandler: The handler.
    """

    global _handler
    if _handler is None:
        _handler = SQLHandler(database_url, echo=echo)
        logger.info("Database handler initialized (%s)", database_url.split("://", 1)[0])
    return _handler


def get_database_handler() -> SQLHandler:
    """Return the handler created by `initialize_database`.

    Raises:
        RuntimeError: If the database has not been initialized.
    """

    if _handler is None:
        raise RuntimeError("Database not initialized. Call initialize_database() first.")
    return _handler


async def close_database() -> None:
    """Dispose the engine of the process-wide handler."""

    global _handler
    if _handler is not None:
        await _handler.close()
        _handler = None
        logger.info("Database handler closed")
