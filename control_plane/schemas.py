"""Pydantic schemas for API request/response models."""

from datetime import datetime
from typing import Any, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from control_plane.jobs.models import Job


class AgentJob(BaseModel):
    """Job as handed to a polling agent."""

    id: UUID
    type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime

    @classmethod
    def from_job(cls, job: Job) -> "AgentJob":
        return cls(id=job.id, type=job.type, payload=job.payload, created_at=job.created_at)


class AgentJobList(BaseModel):
    jobs: list[AgentJob]


class JobFinishRequest(BaseModel):
    """Terminal report from an agent. `status` is validated by the lease layer."""

    status: str = Field(..., description='"success" or "failed"')
    output: dict[str, Any] = Field(default_factory=dict)
    log_text: Optional[str] = None
    error_text: Optional[str] = None


class JobResult(BaseModel):
    status: str
    output: dict[str, Any] = Field(default_factory=dict)
    completed_at: datetime


class JobDetail(BaseModel):
    """Full job record for operators."""

    id: UUID
    type: str
    family: str
    agent_id: Optional[str] = None
    payload: dict[str, Any] = Field(default_factory=dict)
    idempotency_key: str
    status: str
    locked_by: Optional[str] = None
    lock_expires_at: Optional[datetime] = None
    lease_recoveries: int = 0
    created_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    result: Optional[JobResult] = None
    error_text: Optional[str] = None

    @classmethod
    def from_job(cls, job: Job) -> "JobDetail":
        result = None
        if job.result is not None:
            result = JobResult(
                status=job.result.status.value,
                output=job.result.output,
                completed_at=job.result.completed_at,
            )
        return cls(
            id=job.id,
            type=job.type,
            family=job.family.value,
            agent_id=job.agent_id,
            payload=job.payload,
            idempotency_key=job.idempotency_key,
            status=job.status.value,
            locked_by=job.locked_by,
            lock_expires_at=job.lock_expires_at,
            lease_recoveries=job.lease_recoveries,
            created_at=job.created_at,
            started_at=job.started_at,
            finished_at=job.finished_at,
            result=result,
            error_text=job.error_text,
        )


class QuerySnapshot(BaseModel):
    available: bool
    status: str
    players: Optional[int] = None
    max_players: Optional[int] = None
    checked_at: Optional[str] = None
    queued_at: Optional[str] = None


class HealthResponse(BaseModel):
    status: Literal["ok", "degraded"]
    version: str
    database: Literal["ok", "error", "not_configured"]
