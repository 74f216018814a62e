"""Agent poll/claim/report endpoints."""

from typing import Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from control_plane.config import Settings, get_settings
from control_plane.deps.security import require_agent
from control_plane.jobs.leases import (
    InvalidResultStatusError,
    JobConflictError,
    JobNotFoundError,
    parse_result_status,
)
from control_plane.schemas import AgentJob, AgentJobList, JobDetail, JobFinishRequest
from control_plane.services.wiring import Services

router = APIRouter(prefix="/agent", tags=["agent"])
logger = structlog.get_logger(__name__)

# Global state (set during app startup)
_services: Optional[Services] = None


def set_services(services: Optional[Services]) -> None:
    """Set the service container for this router."""
    global _services
    _services = services


def _get_services() -> Services:
    if _services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database connection not available",
        )
    return _services


@router.get("/jobs", response_model=AgentJobList)
async def list_jobs(
    limit: Optional[int] = Query(None, ge=1, le=100),
    agent_id: str = Depends(require_agent),
    settings: Settings = Depends(get_settings),
) -> AgentJobList:
    """Queued jobs for the calling agent, oldest first."""
    services = _get_services()
    jobs = await services.leases.list_queued(agent_id, limit or settings.agent_poll_limit)
    return AgentJobList(jobs=[AgentJob.from_job(job) for job in jobs])


@router.post(
    "/jobs/claim",
    response_model=AgentJob,
    responses={204: {"description": "No queued job for this agent"}},
)
async def claim_next(agent_id: str = Depends(require_agent)):
    services = _get_services()
    job = await services.leases.claim_next(agent_id)
    if job is None:
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    return AgentJob.from_job(job)


@router.post(
    "/jobs/{job_id}/start",
    response_model=AgentJob,
    responses={
        404: {"description": "Job not found for this agent"},
        409: {"description": "Job is not queued"},
    },
)
async def start_job(job_id: UUID, agent_id: str = Depends(require_agent)) -> AgentJob:
    services = _get_services()
    try:
        job = await services.leases.claim(job_id, agent_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except JobConflictError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return AgentJob.from_job(job)


@router.post(
    "/jobs/{job_id}/finish",
    response_model=JobDetail,
    responses={
        400: {"description": "Invalid result status"},
        404: {"description": "Job not found for this agent"},
    },
)
async def finish_job(
    job_id: UUID,
    body: JobFinishRequest,
    agent_id: str = Depends(require_agent),
) -> JobDetail:
    """
    Report a terminal result.

    Reporting the same status twice is safe; the stored result is re-applied.
    """
    services = _get_services()
    try:
        result_status = parse_result_status(body.status)
        job = await services.leases.report(
            job_id,
            agent_id,
            result_status,
            output=body.output,
            log_text=body.log_text,
            error_text=body.error_text,
        )
    except InvalidResultStatusError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except JobNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return JobDetail.from_job(job)
