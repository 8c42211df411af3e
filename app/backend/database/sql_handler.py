"""Async SQLAlchemy handler."""

from __future__ import annotations

import logging

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

import models.sql.autosync  # noqa: F401  (registers tables on Base.metadata)
from models.sql.base import Base


logger = logging.getLogger(__name__)


def _enable_sqlite_foreign_keys(dbapi_connection, _record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class SQLHandler:
    """Owns the async engine and the session factory.

    Attributes:
        engine: SQLAlchemy async engine.
        AsyncSessionLocal: Session factory; use as `async with handler.AsyncSessionLocal() as session`.
    """

    def __init__(self, database_url: str, *, echo: bool = False):
        self.database_url = database_url
        self.is_sqlite = database_url.startswith("sqlite")

        engine_kwargs = {"echo": echo}
        if not self.is_sqlite:
            engine_kwargs["pool_pre_ping"] = True

        self.engine = create_async_engine(database_url, **engine_kwargs)
        if self.is_sqlite:
            event.listen(self.engine.sync_engine, "connect", _enable_sqlite_foreign_keys)

        self.AsyncSessionLocal = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    async def create_all(self) -> None:
        """Create missing tables from the ORM metadata (used when migrations are disabled)."""

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def test_connection(self) -> bool:
        """Return True when a trivial query succeeds."""

        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except Exception as exc:
            logger.warning("Database connectivity check failed: %s", exc)
            return False

    async def close(self) -> None:
        await self.engine.dispose()
