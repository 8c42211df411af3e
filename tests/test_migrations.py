import pytest
from sqlalchemy import create_engine, inspect

from backend.database import close_database, get_database_handler, initialize_database
from backend.database.migrations import run_migrations


def test_migrations_create_the_schema(tmp_path):
    db_path = tmp_path / "migrated.db"

    run_migrations(f"sqlite+aiosqlite:///{db_path}")

    engine = create_engine(f"sqlite:///{db_path}")
    try:
        inspector = inspect(engine)
        assert {"jobs", "tasks", "alembic_version"} <= set(inspector.get_table_names())
        job_columns = {column["name"] for column in inspector.get_columns("jobs")}
        assert {"owner_id", "name", "method", "input_data", "interval", "on", "next_run_at", "running_since"} <= job_columns
    finally:
        engine.dispose()


async def test_database_handler_lifecycle(tmp_path):
    handler = await initialize_database(f"sqlite+aiosqlite:///{tmp_path / 'lifecycle.db'}")

    assert get_database_handler() is handler
    assert await handler.test_connection() is True

    await close_database()
    with pytest.raises(RuntimeError):
        get_database_handler()
