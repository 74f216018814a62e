"""Lease-based execution: agents poll, claim, and report.

Claiming sets Running + lock owner + lock expiry in one store call. A reaper
returns jobs with an expired lease to Queued; after too many recoveries the
job is failed and the failure propagates like an agent-reported one.
"""

from datetime import datetime, timedelta
from typing import Any, Optional
from uuid import UUID

import structlog
from prometheus_client import Counter

from control_plane.jobs.models import Job, JobOutcome
from control_plane.jobs.types import JobStatus, ResultStatus
from control_plane.repositories.jobs import JobStore
from control_plane.services.results.applier import ResultApplier
from control_plane.utils.time import utc_now

logger = structlog.get_logger(__name__)

LEASE_EXPIRED_MESSAGE = "Lease expired"

JOBS_CLAIMED = Counter(
    "control_plane_jobs_claimed_total",
    "Jobs leased by agents",
    ["job_type"],
)
JOBS_REPORTED = Counter(
    "control_plane_jobs_reported_total",
    "Agent result reports by outcome",
    ["job_type", "outcome"],  # applied, reapplied, ignored
)
LEASES_RECOVERED = Counter(
    "control_plane_job_leases_recovered_total",
    "Expired leases by resolution",
    ["resolution"],  # requeued, failed
)


class JobNotFoundError(LookupError):
    """Job does not exist or is not addressed to the calling agent."""

    def __init__(self, job_id: UUID):
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class JobConflictError(RuntimeError):
    """Job is not in a state that allows the requested transition."""

    def __init__(self, job_id: UUID, status: JobStatus, action: str):
        self.job_id = job_id
        self.status = status
        super().__init__(f"Cannot {action} job {job_id} in status {status.value}")


class InvalidResultStatusError(ValueError):
    def __init__(self, status: Any):
        self.status = status
        super().__init__(f"Invalid result status: {status!r}")


def parse_result_status(raw: Any) -> ResultStatus:
    """Map an agent-reported status string to a ResultStatus.

    Raises:
        InvalidResultStatusError: For anything but "success" / "failed".
    """
    if isinstance(raw, str):
        try:
            return ResultStatus(raw.strip().lower())
        except ValueError:
            pass
    raise InvalidResultStatusError(raw)


class LeaseManager:
    """Agent-facing job lifecycle on top of a JobStore."""

    def __init__(
        self,
        store: JobStore,
        applier: ResultApplier,
        lease_seconds: int = 300,
        max_recoveries: int = 3,
    ):
        self._store = store
        self._applier = applier
        self._lease = timedelta(seconds=lease_seconds)
        self._max_recoveries = max_recoveries

    async def list_queued(self, agent_id: str, limit: int = 1) -> list[Job]:
        return await self._store.list_queued(agent_id, max(1, limit))

    async def claim(
        self, job_id: UUID, agent_id: str, now: Optional[datetime] = None
    ) -> Job:
        """Lease a specific job.

        Raises:
            JobNotFoundError: Unknown job or addressed to another agent.
            JobConflictError: Job is not Queued.
        """
        now = now or utc_now()
        job = await self._store.claim(job_id, agent_id, now, now + self._lease)
        if job is not None:
            self._log_claim(job)
            return job

        existing = await self._store.get(job_id)
        if existing is None or existing.agent_id != agent_id:
            raise JobNotFoundError(job_id)
        raise JobConflictError(job_id, existing.status, "claim")

    async def claim_next(
        self, agent_id: str, now: Optional[datetime] = None
    ) -> Optional[Job]:
        now = now or utc_now()
        job = await self._store.claim_next(agent_id, now, now + self._lease)
        if job is not None:
            self._log_claim(job)
        return job

    def _log_claim(self, job: Job) -> None:
        JOBS_CLAIMED.labels(job_type=job.type).inc()
        logger.info(
            "job_claimed",
            job_id=str(job.id),
            job_type=job.type,
            agent_id=job.locked_by,
            lock_expires_at=job.lock_expires_at.isoformat() if job.lock_expires_at else None,
        )

    async def report(
        self,
        job_id: UUID,
        agent_id: str,
        status: ResultStatus,
        output: Optional[dict[str, Any]] = None,
        log_text: Optional[str] = None,
        error_text: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Job:
        """Record an agent's terminal result and apply it to the domain.

        Repeating a report with the same terminal status re-applies the stored
        result. A report that disagrees with an already-recorded terminal
        status, or arrives for a cancelled job, is ignored.

        Raises:
            JobNotFoundError: Unknown job or addressed to another agent.
        """
        job = await self._store.get(job_id)
        if job is None or job.agent_id != agent_id:
            raise JobNotFoundError(job_id)

        log = logger.bind(job_id=str(job_id), job_type=job.type, agent_id=agent_id)
        target = status.job_status

        if job.status.is_active:
            outcome = JobOutcome(
                status=target,
                output=dict(output or {}),
                completed_at=now or utc_now(),
            )
            completed = await self._store.complete(job_id, outcome, error_text, log_text)
            if completed is not None:
                log.info("job_completed", status=target.value)
                JOBS_REPORTED.labels(job_type=job.type, outcome="applied").inc()
                await self._applier.apply(completed, outcome)
                return completed
            # Lost a race with another terminal transition; re-read and fall through.
            job = await self._store.get(job_id)
            if job is None:
                raise JobNotFoundError(job_id)

        if job.status == target and job.result is not None:
            log.info("job_result_reapplied", status=target.value)
            JOBS_REPORTED.labels(job_type=job.type, outcome="reapplied").inc()
            await self._applier.apply(job, job.result)
            return job

        log.warning(
            "job_report_ignored",
            current_status=job.status.value,
            reported_status=target.value,
        )
        JOBS_REPORTED.labels(job_type=job.type, outcome="ignored").inc()
        return job

    async def cancel(self, job_id: UUID, now: Optional[datetime] = None) -> Job:
        """Cancel a Queued job.

        Raises:
            JobNotFoundError: Unknown job.
            JobConflictError: Job is not Queued.
        """
        job = await self._store.cancel(job_id, now or utc_now())
        if job is not None:
            logger.info("job_cancelled", job_id=str(job_id), job_type=job.type)
            return job

        existing = await self._store.get(job_id)
        if existing is None:
            raise JobNotFoundError(job_id)
        raise JobConflictError(job_id, existing.status, "cancel")

    async def reap_expired(
        self, now: Optional[datetime] = None, limit: int = 100
    ) -> dict[str, int]:
        """Recover Running jobs whose lease has passed.

        Returns:
            Dict with requeued, failed and errors counts
        """
        now = now or utc_now()
        metrics = {"requeued": 0, "failed": 0, "errors": 0}

        for job in await self._store.find_expired_leases(now, limit):
            try:
                if job.lease_recoveries >= self._max_recoveries:
                    failed = await self._store.fail_expired(job.id, now, LEASE_EXPIRED_MESSAGE)
                    if failed is None:
                        continue
                    metrics["failed"] += 1
                    LEASES_RECOVERED.labels(resolution="failed").inc()
                    logger.warning(
                        "job_lease_exhausted",
                        job_id=str(job.id),
                        job_type=job.type,
                        lease_recoveries=job.lease_recoveries,
                    )
                    await self._applier.apply(failed, failed.result)
                else:
                    requeued = await self._store.requeue_expired(job.id, now)
                    if requeued is None:
                        continue
                    metrics["requeued"] += 1
                    LEASES_RECOVERED.labels(resolution="requeued").inc()
                    logger.info(
                        "job_lease_recovered",
                        job_id=str(job.id),
                        job_type=job.type,
                        locked_by=job.locked_by,
                        lease_recoveries=requeued.lease_recoveries,
                    )
            except Exception:
                metrics["errors"] += 1
                logger.exception("job_lease_reap_failed", job_id=str(job.id))

        return metrics
