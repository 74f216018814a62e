"""Operator endpoints for jobs and live query snapshots."""

from typing import Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status

from control_plane.deps.security import require_admin_token
from control_plane.jobs.leases import JobConflictError, JobNotFoundError
from control_plane.schemas import JobDetail, QuerySnapshot
from control_plane.services.wiring import Services

router = APIRouter(prefix="/ops", tags=["operator"], dependencies=[Depends(require_admin_token)])
logger = structlog.get_logger(__name__)

_services: Optional[Services] = None


def set_services(services: Optional[Services]) -> None:
    global _services
    _services = services


def _get_services() -> Services:
    if _services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database connection not available",
        )
    return _services


@router.get("/jobs/{job_id}", response_model=JobDetail)
async def get_job(job_id: UUID) -> JobDetail:
    services = _get_services()
    job = await services.stores.jobs.get(job_id)
    if job is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Job {job_id} not found",
        )
    return JobDetail.from_job(job)


@router.post(
    "/jobs/{job_id}/cancel",
    response_model=JobDetail,
    responses={409: {"description": "Only queued jobs can be cancelled"}},
)
async def cancel_job(job_id: UUID) -> JobDetail:
    services = _get_services()
    try:
        job = await services.leases.cancel(job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except JobConflictError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return JobDetail.from_job(job)


@router.get("/instances/{instance_id}/query", response_model=QuerySnapshot)
async def get_instance_query(
    instance_id: int,
    queue_if_stale: bool = Query(False, description="Refresh when the cached result is stale"),
) -> QuerySnapshot:
    """
    Live status snapshot for an instance.

    With queue_if_stale, a stale result is refreshed inline (backend mode)
    or a probe job is queued and the stale snapshot returned (agent mode).
    """
    services = _get_services()
    instance = await services.stores.instances.get(instance_id)
    if instance is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Instance {instance_id} not found",
        )
    snapshot = await services.queries.get_snapshot(instance, queue_if_stale=queue_if_stale)
    return QuerySnapshot(**snapshot)
