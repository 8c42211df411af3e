"""Auto-sync API routes."""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from api.schemas.autosync import JobCreateRequest, JobUpdateRequest, PurgeRequest, TransferRequest
from api.security import get_owner_id, verify_admin_key, verify_purge_secret
from backend.services.autosync import AutoSyncServices
from backend.services.autosync.schedule_timing import interval_table


router = APIRouter(prefix="/auto-sync", tags=["Auto-sync"])


def _ok(message: str, data: Any = None) -> dict:
    return {"message": message, "data": data}


def get_services(request: Request) -> AutoSyncServices:
    """Return the services wired at startup.

    Raises:
        HTTPException: 503 while the service is not initialized.
    """

    services = getattr(request.app.state, "autosync", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Service is starting up. Please retry shortly.")
    return services


@router.get("/job/")
async def list_jobs(
    owner_id: str = Depends(get_owner_id),
    services: AutoSyncServices = Depends(get_services),
):
    jobs = await services.jobs.list_jobs(owner_id)
    return _ok("jobs fetched successfully", jobs)


@router.get("/job/interval")
async def list_intervals(owner_id: str = Depends(get_owner_id)):
    """Allowed `interval` values and the `on` anchors each accepts."""

    return _ok("intervals fetched successfully", interval_table())


@router.post("/job/{connector_type}", status_code=201)
async def create_job(
    connector_type: str,
    body: JobCreateRequest,
    owner_id: str = Depends(get_owner_id),
    services: AutoSyncServices = Depends(get_services),
):
    job = await services.jobs.create_job(owner_id, connector_type, body.model_dump(exclude_none=True))
    return _ok("job created successfully", job)


@router.get("/job/{job_id}")
async def get_job(
    job_id: str,
    owner_id: str = Depends(get_owner_id),
    services: AutoSyncServices = Depends(get_services),
):
    job = await services.jobs.get_job(owner_id, job_id)
    return _ok("job fetched successfully", job)


@router.put("/job/{job_id}")
async def update_job(
    job_id: str,
    body: JobUpdateRequest,
    owner_id: str = Depends(get_owner_id),
    services: AutoSyncServices = Depends(get_services),
):
    job = await services.jobs.update_job(owner_id, job_id, body.model_dump(exclude_none=True))
    return _ok("job updated successfully", job)


@router.delete("/job/{job_id}")
async def delete_job(
    job_id: str,
    owner_id: str = Depends(get_owner_id),
    services: AutoSyncServices = Depends(get_services),
):
    await services.jobs.delete_job(owner_id, job_id)
    return _ok("job deleted successfully", {"id": job_id})


@router.get("/job/{job_id}/items")
async def list_job_items(
    job_id: str,
    owner_id: str = Depends(get_owner_id),
    services: AutoSyncServices = Depends(get_services),
):
    """Source items of the job, each flagged with whether the destination already has it."""

    items = await services.jobs.list_items(owner_id, job_id)
    return _ok("items fetched successfully", items)


@router.post("/job/{job_id}/transfer")
async def transfer_job_items(
    job_id: str,
    body: TransferRequest,
    owner_id: str = Depends(get_owner_id),
    services: AutoSyncServices = Depends(get_services),
):
    result = await services.jobs.transfer_items(owner_id, job_id, body.keys)
    return _ok(result.pop("message"), result)


@router.get("/task/{job_id}")
async def list_tasks(
    job_id: str,
    limit: Optional[int] = Query(None, description="Page size (default 10, max 1000)"),
    offset: Optional[int] = Query(None, description="Rows to skip"),
    owner_id: str = Depends(get_owner_id),
    services: AutoSyncServices = Depends(get_services),
):
    page = await services.jobs.list_tasks(owner_id, job_id, limit=limit, offset=offset)
    return _ok("tasks fetched successfully", page)


@router.get("/stats")
async def get_stats(
    owner_id: str = Depends(get_owner_id),
    services: AutoSyncServices = Depends(get_services),
):
    stats = await services.jobs.stats(owner_id)
    return _ok("stats fetched successfully", stats)


@router.post("/admin/purge")
async def purge_identity(
    request: Request,
    body: PurgeRequest,
    services: AutoSyncServices = Depends(get_services),
):
    """Delete every job (and its tasks) bound to an account identity."""

    verify_purge_secret(request, body.secret)
    result = await services.jobs.purge_by_identity(body.name.strip())
    return _ok("jobs deleted successfully", result)


@router.post("/runner/run-due")
async def run_due(
    wait: bool = Query(True, description="Wait for the started jobs and report their outcomes"),
    _: str = Depends(verify_admin_key),
    services: AutoSyncServices = Depends(get_services),
):
    """Start every due job once. Called by the periodic runner.

    With `wait=false` the jobs keep running in the background after the
    response is sent.
    """

    if wait:
        summary = await services.scheduler.run_due()
        return _ok("due jobs executed", summary)

    summary = await services.scheduler.dispatch_due()
    return _ok("due jobs dispatched", summary)
