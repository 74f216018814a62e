"""Job record store.

`JobStore` is the single mutation point for job status. Two implementations:

- `JobRepository`: PostgreSQL via asyncpg. Dispatch dedup is serialised per
  idempotency key with a transaction-scoped advisory lock and backed by a
  partial unique index on active jobs.
- `InMemoryJobStore`: single-process store serialised by an asyncio.Lock.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime
from typing import Optional
from uuid import UUID

import structlog

from control_plane.jobs.fingerprint import advisory_lock_key
from control_plane.jobs.models import Job, JobOutcome
from control_plane.jobs.types import JobFamily, JobStatus
from control_plane.repositories.utils import json_dict, to_jsonb

logger = structlog.get_logger(__name__)


class JobStore(ABC):
    """Storage contract for jobs."""

    @abstractmethod
    async def get(self, job_id: UUID) -> Optional[Job]:
        ...

    @abstractmethod
    async def find_or_create(self, job: Job, reuse_any: bool = False) -> tuple[Job, bool]:
        """Atomically return the blocking job for job's key, or insert job.

        The latest job with the same idempotency key blocks creation unless
        its status allows re-dispatch (Failed, Cancelled). With reuse_any,
        any existing job blocks (used for pre-failed records).

        Returns:
            Tuple of (stored job, created flag)
        """

    @abstractmethod
    async def list_queued(self, agent_id: str, limit: int) -> list[Job]:
        """Queued jobs for one agent, oldest first."""

    @abstractmethod
    async def claim(
        self, job_id: UUID, agent_id: str, now: datetime, lease_until: datetime
    ) -> Optional[Job]:
        """Queued -> Running for this agent. None when not claimable."""

    @abstractmethod
    async def claim_next(
        self, agent_id: str, now: datetime, lease_until: datetime
    ) -> Optional[Job]:
        """Claim the oldest queued job for the agent, if any."""

    @abstractmethod
    async def complete(
        self,
        job_id: UUID,
        outcome: JobOutcome,
        error_text: Optional[str] = None,
        log_text: Optional[str] = None,
    ) -> Optional[Job]:
        """Queued/Running -> terminal. None when the job is already terminal."""

    @abstractmethod
    async def cancel(self, job_id: UUID, now: datetime) -> Optional[Job]:
        """Queued -> Cancelled. None when the job is not queued."""

    @abstractmethod
    async def find_expired_leases(self, now: datetime, limit: int = 100) -> list[Job]:
        ...

    @abstractmethod
    async def requeue_expired(self, job_id: UUID, now: datetime) -> Optional[Job]:
        """Expired Running -> Queued with lease cleared and recoveries + 1."""

    @abstractmethod
    async def fail_expired(
        self, job_id: UUID, now: datetime, error_text: str
    ) -> Optional[Job]:
        """Expired Running -> Failed."""


class JobRepository(JobStore):
    """PostgreSQL job store."""

    def __init__(self, pool):
        self._pool = pool

    async def get(self, job_id: UUID) -> Optional[Job]:
        query = "SELECT * FROM jobs WHERE id = $1"
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, job_id)
        return self._row_to_job(row) if row else None

    async def find_or_create(self, job: Job, reuse_any: bool = False) -> tuple[Job, bool]:
        latest_query = """
            SELECT * FROM jobs
            WHERE idempotency_key = $1
            ORDER BY created_at DESC
            LIMIT 1
        """
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    "SELECT pg_advisory_xact_lock($1)",
                    advisory_lock_key(job.idempotency_key),
                )
                row = await conn.fetchrow(latest_query, job.idempotency_key)
                if row is not None:
                    existing = self._row_to_job(row)
                    if reuse_any or not existing.status.allows_redispatch:
                        return existing, False
                row = await conn.fetchrow(self._INSERT, *self._insert_params(job))
        return self._row_to_job(row), True

    async def list_queued(self, agent_id: str, limit: int) -> list[Job]:
        query = """
            SELECT * FROM jobs
            WHERE agent_id = $1 AND status = 'queued'
            ORDER BY created_at
            LIMIT $2
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, agent_id, limit)
        return [self._row_to_job(row) for row in rows]

    async def claim(
        self, job_id: UUID, agent_id: str, now: datetime, lease_until: datetime
    ) -> Optional[Job]:
        query = """
            UPDATE jobs SET
                status = 'running',
                locked_by = $2,
                lock_expires_at = $4,
                started_at = COALESCE(started_at, $3)
            WHERE id = $1 AND agent_id = $2 AND status = 'queued'
            RETURNING *
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, job_id, agent_id, now, lease_until)
        return self._row_to_job(row) if row else None

    async def claim_next(
        self, agent_id: str, now: datetime, lease_until: datetime
    ) -> Optional[Job]:
        query = """
            WITH cte AS (
                SELECT id FROM jobs
                WHERE agent_id = $1 AND status = 'queued'
                ORDER BY created_at
                FOR UPDATE SKIP LOCKED
                LIMIT 1
            )
            UPDATE jobs j SET
                status = 'running',
                locked_by = $1,
                lock_expires_at = $3,
                started_at = COALESCE(j.started_at, $2)
            FROM cte
            WHERE j.id = cte.id
            RETURNING j.*
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, agent_id, now, lease_until)
        return self._row_to_job(row) if row else None

    async def complete(
        self,
        job_id: UUID,
        outcome: JobOutcome,
        error_text: Optional[str] = None,
        log_text: Optional[str] = None,
    ) -> Optional[Job]:
        query = """
            UPDATE jobs SET
                status = $2,
                result_status = $2,
                result_output = $3::jsonb,
                result_completed_at = $4,
                finished_at = $4,
                error_text = COALESCE($5, error_text),
                log_text = COALESCE($6, log_text),
                locked_by = NULL,
                lock_expires_at = NULL
            WHERE id = $1 AND status IN ('queued', 'running')
            RETURNING *
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                query,
                job_id,
                outcome.status.value,
                to_jsonb(outcome.output),
                outcome.completed_at,
                error_text,
                log_text,
            )
        return self._row_to_job(row) if row else None

    async def cancel(self, job_id: UUID, now: datetime) -> Optional[Job]:
        query = """
            UPDATE jobs SET
                status = 'cancelled',
                finished_at = $2
            WHERE id = $1 AND status = 'queued'
            RETURNING *
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, job_id, now)
        return self._row_to_job(row) if row else None

    async def find_expired_leases(self, now: datetime, limit: int = 100) -> list[Job]:
        query = """
            SELECT * FROM jobs
            WHERE status = 'running' AND lock_expires_at < $1
            ORDER BY lock_expires_at
            LIMIT $2
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, now, limit)
        return [self._row_to_job(row) for row in rows]

    async def requeue_expired(self, job_id: UUID, now: datetime) -> Optional[Job]:
        query = """
            UPDATE jobs SET
                status = 'queued',
                locked_by = NULL,
                lock_expires_at = NULL,
                lease_recoveries = lease_recoveries + 1
            WHERE id = $1 AND status = 'running' AND lock_expires_at < $2
            RETURNING *
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, job_id, now)
        return self._row_to_job(row) if row else None

    async def fail_expired(
        self, job_id: UUID, now: datetime, error_text: str
    ) -> Optional[Job]:
        query = """
            UPDATE jobs SET
                status = 'failed',
                result_status = 'failed',
                result_output = '{}'::jsonb,
                result_completed_at = $2,
                finished_at = $2,
                error_text = $3,
                locked_by = NULL,
                lock_expires_at = NULL
            WHERE id = $1 AND status = 'running' AND lock_expires_at < $2
            RETURNING *
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, job_id, now, error_text)
        return self._row_to_job(row) if row else None

    _INSERT = """
        INSERT INTO jobs (id, type, family, agent_id, payload, idempotency_key,
                          status, error_text, created_at, finished_at,
                          result_status, result_output, result_completed_at)
        VALUES ($1, $2, $3, $4, $5::jsonb, $6, $7, $8, $9, $10, $11, $12::jsonb, $13)
        RETURNING *
    """

    def _insert_params(self, job: Job) -> tuple:
        outcome = job.result
        return (
            job.id,
            job.type,
            job.family.value,
            job.agent_id,
            to_jsonb(job.payload),
            job.idempotency_key,
            job.status.value,
            job.error_text,
            job.created_at,
            job.finished_at,
            outcome.status.value if outcome else None,
            to_jsonb(outcome.output) if outcome else None,
            outcome.completed_at if outcome else None,
        )

    def _row_to_job(self, row) -> Job:
        """Convert a database row to a Job model."""
        result = None
        if row["result_status"] is not None:
            result = JobOutcome(
                status=JobStatus(row["result_status"]),
                output=json_dict(row["result_output"]),
                completed_at=row["result_completed_at"],
            )
        return Job(
            id=row["id"],
            type=row["type"],
            family=JobFamily(row["family"]),
            agent_id=row["agent_id"],
            payload=json_dict(row["payload"]),
            idempotency_key=row["idempotency_key"],
            status=JobStatus(row["status"]),
            locked_by=row["locked_by"],
            lock_expires_at=row["lock_expires_at"],
            lease_recoveries=row["lease_recoveries"],
            created_at=row["created_at"],
            started_at=row["started_at"],
            finished_at=row["finished_at"],
            result=result,
            error_text=row["error_text"],
            log_text=row["log_text"],
        )


class InMemoryJobStore(JobStore):
    """Single-writer job store. Every mutation runs under one lock."""

    def __init__(self) -> None:
        self._jobs: dict[UUID, Job] = {}
        self._lock = asyncio.Lock()

    @property
    def jobs(self) -> list[Job]:
        return sorted(self._jobs.values(), key=lambda j: j.created_at)

    async def get(self, job_id: UUID) -> Optional[Job]:
        job = self._jobs.get(job_id)
        return replace(job) if job else None

    def _latest_by_key(self, idempotency_key: str) -> Optional[Job]:
        matches = [j for j in self.jobs if j.idempotency_key == idempotency_key]
        return replace(matches[-1]) if matches else None

    async def find_or_create(self, job: Job, reuse_any: bool = False) -> tuple[Job, bool]:
        async with self._lock:
            existing = self._latest_by_key(job.idempotency_key)
            if existing is not None and (reuse_any or not existing.status.allows_redispatch):
                return existing, False
            self._jobs[job.id] = replace(job)
            return replace(job), True

    async def list_queued(self, agent_id: str, limit: int) -> list[Job]:
        queued = [
            j for j in self.jobs if j.agent_id == agent_id and j.status == JobStatus.QUEUED
        ]
        return [replace(j) for j in queued[:limit]]

    async def claim(
        self, job_id: UUID, agent_id: str, now: datetime, lease_until: datetime
    ) -> Optional[Job]:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.agent_id != agent_id or job.status != JobStatus.QUEUED:
                return None
            return self._lease(job, agent_id, now, lease_until)

    async def claim_next(
        self, agent_id: str, now: datetime, lease_until: datetime
    ) -> Optional[Job]:
        async with self._lock:
            for job in self.jobs:
                if job.agent_id == agent_id and job.status == JobStatus.QUEUED:
                    return self._lease(job, agent_id, now, lease_until)
        return None

    def _lease(
        self, job: Job, agent_id: str, now: datetime, lease_until: datetime
    ) -> Job:
        job.status = JobStatus.RUNNING
        job.locked_by = agent_id
        job.lock_expires_at = lease_until
        job.started_at = job.started_at or now
        return replace(job)

    async def complete(
        self,
        job_id: UUID,
        outcome: JobOutcome,
        error_text: Optional[str] = None,
        log_text: Optional[str] = None,
    ) -> Optional[Job]:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or not job.status.is_active:
                return None
            job.status = outcome.status
            job.result = outcome
            job.finished_at = outcome.completed_at
            job.error_text = error_text if error_text is not None else job.error_text
            job.log_text = log_text if log_text is not None else job.log_text
            job.locked_by = None
            job.lock_expires_at = None
            return replace(job)

    async def cancel(self, job_id: UUID, now: datetime) -> Optional[Job]:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != JobStatus.QUEUED:
                return None
            job.status = JobStatus.CANCELLED
            job.finished_at = now
            return replace(job)

    async def find_expired_leases(self, now: datetime, limit: int = 100) -> list[Job]:
        expired = [j for j in self.jobs if j.lease_expired(now)]
        expired.sort(key=lambda j: j.lock_expires_at)
        return [replace(j) for j in expired[:limit]]

    async def requeue_expired(self, job_id: UUID, now: datetime) -> Optional[Job]:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or not job.lease_expired(now):
                return None
            job.status = JobStatus.QUEUED
            job.locked_by = None
            job.lock_expires_at = None
            job.lease_recoveries += 1
            return replace(job)

    async def fail_expired(
        self, job_id: UUID, now: datetime, error_text: str
    ) -> Optional[Job]:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or not job.lease_expired(now):
                return None
            job.status = JobStatus.FAILED
            job.result = JobOutcome(status=JobStatus.FAILED, output={}, completed_at=now)
            job.finished_at = now
            job.error_text = error_text
            job.locked_by = None
            job.lock_expires_at = None
            return replace(job)
