import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from backend.services.autosync.errors import NotFoundError
from backend.services.autosync.executor import classify_outcome
from backend.services.autosync.repository import JobRepository
from conftest import OWNER, db_payload, items


@pytest.mark.parametrize(
    "processed,failed,skipped,expected",
    [
        (3, 0, 0, "success"),
        (0, 0, 0, "success"),
        (2, 1, 0, "partial"),
        (1, 0, 2, "partial"),
        (0, 3, 0, "failure"),
        (0, 0, 3, "failure"),
    ],
)
def test_classify_outcome(processed, failed, skipped, expected):
    assert classify_outcome(processed, failed, skipped) == expected


async def _active_job(services, *, token="dest-token", database="shop"):
    job = await services.jobs.create_job(OWNER, "db-postgres", db_payload(database_name=database))
    return await services.jobs.update_job(
        OWNER,
        job["id"],
        {"interval": "daily", "on": "12am", "destination_token": token, "active": True},
    )


async def _tasks(services, job_id):
    return (await services.jobs.list_tasks(OWNER, job_id))["items"]


async def test_run_uploads_only_unsynced_items(services, source_data, blob_stores):
    source_data.items["shop"] = items("a.sql", "b.sql", "c.sql")
    job = await _active_job(services)
    blob_stores("dest-token").put("database", f"{job['name']}/b.sql", b"already there")

    summary = await services.executor.run_job(job["id"])

    assert summary["outcome"] == "success"
    assert summary["processed"] == 2
    assert blob_stores.stores["dest-token"].list_keys("database") == {
        "shop@db.local/a.sql",
        "shop@db.local/b.sql",
        "shop@db.local/c.sql",
    }

    [task] = await _tasks(services, job["id"])
    assert task["outcome"] == "success"
    assert task["detail"]["processed"] == 2
    assert task["detail"]["failed"] == 0
    assert task["detail"]["already_synced"] == 1


async def test_partial_failure_is_recorded_with_failed_keys(services, source_data, blob_stores):
    source_data.items["shop"] = items("a.sql", "b.sql", "c.sql")
    job = await _active_job(services)
    blob_stores("dest-token").fail_keys.add("shop@db.local/c.sql")

    summary = await services.executor.run_job(job["id"])

    assert summary["outcome"] == "partial"
    [task] = await _tasks(services, job["id"])
    assert task["detail"]["failed_keys"] == ["c.sql"]
    assert task["detail"]["attempted"] == 3

    stored = await services.jobs.get_job(OWNER, job["id"])
    assert stored["message_status"] == "warning"


async def test_all_items_failing_is_a_failure(services, source_data, blob_stores):
    source_data.items["shop"] = items("a.sql", "b.sql")
    job = await _active_job(services)
    blob_stores("dest-token").fail_keys.update({"shop@db.local/a.sql", "shop@db.local/b.sql"})

    summary = await services.executor.run_job(job["id"])

    assert summary["outcome"] == "failure"
    stored = await services.jobs.get_job(OWNER, job["id"])
    assert stored["message_status"] == "error"
    assert stored["message"] == "Backup failed: none of the items could be uploaded."


async def test_unreachable_destination_fails_without_attempting_items(services, source_data, blob_stores):
    source_data.items["shop"] = items("a.sql")
    job = await _active_job(services, token="broken-token")
    blob_stores.broken_tokens.add("broken-token")

    summary = await services.executor.run_job(job["id"])

    assert summary["outcome"] == "failure"
    [task] = await _tasks(services, job["id"])
    assert task["detail"]["attempted"] == 0
    assert task["detail"]["error"].startswith("TransferSetupError")
    stored = await services.jobs.get_job(OWNER, job["id"])
    assert "destination" in stored["message"]


async def test_cancelled_run_reports_skipped_items(services, source_data):
    source_data.items["shop"] = items("a.sql", "b.sql", "c.sql")
    job = await _active_job(services)
    cancel = asyncio.Event()
    cancel.set()

    summary = await services.executor.run_job(job["id"], cancel_event=cancel)

    assert summary["outcome"] == "failure"
    assert summary["processed"] == 0
    [task] = await _tasks(services, job["id"])
    assert task["detail"]["cancelled"] is True
    assert task["detail"]["attempted"] == 0
    assert task["detail"]["skipped"] >= 1


async def test_finished_run_schedules_the_next_fire_point(services, source_data, handler):
    source_data.items["shop"] = items("a.sql")
    job = await _active_job(services)

    await services.executor.run_job(job["id"])

    stored = await services.jobs.get_job(OWNER, job["id"])
    next_run = datetime.fromisoformat(stored["next_run_at"])
    assert next_run > datetime.now(timezone.utc)
    assert next_run - datetime.now(timezone.utc) <= timedelta(days=1)
    assert (next_run.hour, next_run.minute) == (0, 0)
    assert stored["last_run_at"] is not None


async def test_job_deleted_during_run_records_no_task(services, source_data, handler):
    source_data.items["shop"] = items("a.sql")
    job = await _active_job(services)

    original_record = services.executor._record

    async def delete_then_record(*args, **kwargs):
        await services.jobs.delete_job(OWNER, job["id"])
        return await original_record(*args, **kwargs)

    services.executor._record = delete_then_record
    summary = await services.executor.run_job(job["id"])

    assert summary["task_id"] is None
    async with handler.AsyncSessionLocal() as session:
        assert await JobRepository().count_tasks(session, job["id"]) == 0


async def test_unknown_job_raises_not_found(services):
    with pytest.raises(NotFoundError):
        await services.executor.run_job("missing")


async def test_invalid_stored_credential_fails_the_run_and_reschedules(services, source_data, handler, blob_stores):
    source_data.items["shop"] = items("a.sql")
    job = await _active_job(services)
    async with handler.AsyncSessionLocal() as session:
        await JobRepository().update_job(session, job["id"], {"secrets_encrypted": None})

    summary = await services.executor.run_job(job["id"])

    assert summary["outcome"] == "failure"
    [task] = await _tasks(services, job["id"])
    assert task["outcome"] == "failure"
    assert task["detail"]["attempted"] == 0
    assert task["detail"]["error"].startswith("MissingFieldError")
    assert "dest-token" not in blob_stores.stores

    stored = await services.jobs.get_job(OWNER, job["id"])
    assert stored["message_status"] == "error"
    assert "credentials" in stored["message"]
    assert datetime.fromisoformat(stored["next_run_at"]) > datetime.now(timezone.utc)


async def test_destination_that_cannot_be_prepared_fails_before_any_upload(services, source_data, blob_stores):
    source_data.items["shop"] = items("a.sql", "b.sql")
    job = await _active_job(services)
    blob_stores("dest-token").fail_setup = True

    summary = await services.executor.run_job(job["id"])

    assert summary["outcome"] == "failure"
    [task] = await _tasks(services, job["id"])
    assert task["detail"]["attempted"] == 0
    assert task["detail"]["error"].startswith("TransferSetupError")
    assert blob_stores.stores["dest-token"].objects == {}
