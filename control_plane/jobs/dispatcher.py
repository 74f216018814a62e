"""Idempotent job dispatch.

State machine per idempotency key:

    no job / Failed / Cancelled  --dispatch-->  new Queued job
    Queued / Running / Succeeded --dispatch-->  existing job returned
"""

from datetime import datetime
from typing import Any, Optional

import structlog
from prometheus_client import Counter

from control_plane.jobs.fingerprint import compute_idempotency_key
from control_plane.jobs.models import Job, JobOutcome
from control_plane.jobs.types import JobStatus
from control_plane.jobs.validator import JobValidationError, validate
from control_plane.repositories.jobs import JobStore
from control_plane.utils.time import utc_now

logger = structlog.get_logger(__name__)

JOBS_DISPATCHED = Counter(
    "control_plane_jobs_dispatched_total",
    "Dispatch calls by outcome",
    ["job_type", "outcome"],  # created, existing, rejected, prefailed
)


class JobDispatcher:
    """Creates jobs through the store, collapsing duplicates by fingerprint."""

    def __init__(self, store: JobStore):
        self._store = store

    async def dispatch(
        self,
        agent_id: Optional[str],
        job_type: str,
        payload: dict[str, Any],
        now: Optional[datetime] = None,
    ) -> Job:
        """Validate and enqueue a job, or return the job that already covers it.

        Raises:
            JobValidationError: If the payload is missing required fields.
        """
        errors = validate(job_type, payload)
        if errors:
            JOBS_DISPATCHED.labels(job_type=job_type, outcome="rejected").inc()
            raise JobValidationError(job_type, errors)

        key = compute_idempotency_key(agent_id, job_type, payload)
        candidate = Job(
            type=job_type,
            agent_id=agent_id,
            payload=dict(payload),
            idempotency_key=key,
            created_at=now or utc_now(),
        )
        job, created = await self._store.find_or_create(candidate)

        if created:
            JOBS_DISPATCHED.labels(job_type=job_type, outcome="created").inc()
            logger.info(
                "job_dispatched",
                job_id=str(job.id),
                job_type=job_type,
                agent_id=agent_id,
                family=job.family.value,
            )
        else:
            JOBS_DISPATCHED.labels(job_type=job_type, outcome="existing").inc()
            logger.debug(
                "job_dispatch_deduplicated",
                job_id=str(job.id),
                job_type=job_type,
                agent_id=agent_id,
                status=job.status.value,
            )
        return job

    async def dispatch_with_failure_logging(
        self,
        agent_id: Optional[str],
        job_type: str,
        payload: dict[str, Any],
        now: Optional[datetime] = None,
    ) -> Job:
        """Like dispatch, but never raises on validation errors.

        An invalid request is recorded as a pre-failed job carrying the
        validation message. Repeating the same invalid request returns the
        existing record instead of adding another.
        """
        try:
            return await self.dispatch(agent_id, job_type, payload, now=now)
        except JobValidationError as exc:
            message = str(exc)

        key = compute_idempotency_key(agent_id, job_type, payload)
        created_at = now or utc_now()
        job = Job(
            type=job_type,
            agent_id=agent_id,
            payload=dict(payload),
            idempotency_key=key,
            status=JobStatus.FAILED,
            created_at=created_at,
            finished_at=created_at,
            error_text=message,
            result=JobOutcome(status=JobStatus.FAILED, output={}, completed_at=created_at),
        )
        job, created = await self._store.find_or_create(job, reuse_any=True)
        if not created:
            return job
        JOBS_DISPATCHED.labels(job_type=job_type, outcome="prefailed").inc()
        logger.warning(
            "job_dispatch_prefailed",
            job_id=str(job.id),
            job_type=job_type,
            agent_id=agent_id,
            error=message,
        )
        return job
