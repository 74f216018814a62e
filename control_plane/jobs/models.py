"""Job system data models."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID, uuid4

from control_plane.jobs.types import JobFamily, JobStatus, family_for_type


@dataclass
class JobOutcome:
    """Terminal outcome reported by an agent."""

    status: JobStatus
    output: dict[str, Any] = field(default_factory=dict)
    completed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class Job:
    """A unit of work addressed to one agent."""

    type: str
    agent_id: Optional[str]
    payload: dict[str, Any]
    idempotency_key: str

    id: UUID = field(default_factory=uuid4)
    family: Optional[JobFamily] = None
    status: JobStatus = JobStatus.QUEUED

    # Lease
    locked_by: Optional[str] = None
    lock_expires_at: Optional[datetime] = None
    lease_recoveries: int = 0

    # Lifecycle timestamps
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    # Outcome
    result: Optional[JobOutcome] = None
    error_text: Optional[str] = None
    log_text: Optional[str] = None

    def __post_init__(self) -> None:
        if self.family is None:
            self.family = family_for_type(self.type)

    def lease_expired(self, now: datetime) -> bool:
        return (
            self.status == JobStatus.RUNNING
            and self.lock_expires_at is not None
            and self.lock_expires_at < now
        )
