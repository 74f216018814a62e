"""Tests for the PostgreSQL job repository."""

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest

from control_plane.jobs.models import Job, JobOutcome
from control_plane.jobs.types import JobFamily, JobStatus
from control_plane.repositories.jobs import JobRepository


def make_row(**overrides):
    now = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
    row = {
        "id": uuid4(),
        "type": "instance.stop",
        "family": JobFamily.GAME_INSTANCE.value,
        "agent_id": "agent-1",
        "payload": json.dumps({"instance_id": "7", "agent_id": "agent-1"}),
        "idempotency_key": "k" * 64,
        "status": JobStatus.QUEUED.value,
        "locked_by": None,
        "lock_expires_at": None,
        "lease_recoveries": 0,
        "created_at": now,
        "started_at": None,
        "finished_at": None,
        "result_status": None,
        "result_output": None,
        "result_completed_at": None,
        "error_text": None,
        "log_text": None,
    }
    row.update(overrides)
    return row


def make_pool(conn):
    pool = MagicMock()
    pool.acquire.return_value.__aenter__.return_value = conn
    return pool


def make_conn():
    conn = AsyncMock()
    transaction = MagicMock()
    transaction.__aenter__ = AsyncMock(return_value=None)
    transaction.__aexit__ = AsyncMock(return_value=False)
    conn.transaction = MagicMock(return_value=transaction)
    return conn


class TestRowMapping:
    def test_row_to_job_parses_json_text(self):
        repo = JobRepository(MagicMock())
        job = repo._row_to_job(make_row())

        assert job.payload == {"instance_id": "7", "agent_id": "agent-1"}
        assert job.family == JobFamily.GAME_INSTANCE
        assert job.status == JobStatus.QUEUED
        assert job.result is None

    def test_row_to_job_with_result(self):
        completed = datetime(2026, 3, 2, 12, 5, tzinfo=timezone.utc)
        repo = JobRepository(MagicMock())
        job = repo._row_to_job(
            make_row(
                status="succeeded",
                result_status="succeeded",
                result_output={"used_bytes": 10},
                result_completed_at=completed,
            )
        )

        assert job.result.status == JobStatus.SUCCEEDED
        assert job.result.output == {"used_bytes": 10}
        assert job.result.completed_at == completed


class TestGet:
    @pytest.mark.asyncio
    async def test_get_missing_returns_none(self):
        conn = make_conn()
        conn.fetchrow = AsyncMock(return_value=None)
        repo = JobRepository(make_pool(conn))

        assert await repo.get(uuid4()) is None


class TestFindOrCreate:
    @pytest.mark.asyncio
    async def test_returns_active_existing(self):
        existing = make_row(status="running")
        conn = make_conn()
        conn.fetchrow = AsyncMock(return_value=existing)
        repo = JobRepository(make_pool(conn))
        candidate = Job(
            type="instance.stop", agent_id="agent-1", payload={}, idempotency_key="k" * 64
        )

        job, created = await repo.find_or_create(candidate)

        assert created is False
        assert job.id == existing["id"]
        # Advisory lock taken inside the transaction
        lock_sql = conn.execute.await_args.args[0]
        assert "pg_advisory_xact_lock" in lock_sql
        assert conn.fetchrow.await_count == 1

    @pytest.mark.asyncio
    async def test_inserts_when_latest_failed(self):
        failed = make_row(status="failed")
        inserted = make_row()
        conn = make_conn()
        conn.fetchrow = AsyncMock(side_effect=[failed, inserted])
        repo = JobRepository(make_pool(conn))
        candidate = Job(
            type="instance.stop",
            agent_id="agent-1",
            payload={"instance_id": "7"},
            idempotency_key="k" * 64,
        )

        job, created = await repo.find_or_create(candidate)

        assert created is True
        assert job.id == inserted["id"]
        insert_args = conn.fetchrow.await_args_list[1].args
        assert "INSERT INTO jobs" in insert_args[0]
        # payload sent as JSON text for the ::jsonb cast
        assert insert_args[5] == json.dumps({"instance_id": "7"})

    @pytest.mark.asyncio
    async def test_inserts_when_no_prior_job(self):
        conn = make_conn()
        conn.fetchrow = AsyncMock(side_effect=[None, make_row()])
        repo = JobRepository(make_pool(conn))
        candidate = Job(type="instance.stop", agent_id="a", payload={}, idempotency_key="k")

        _, created = await repo.find_or_create(candidate)

        assert created is True

    @pytest.mark.asyncio
    async def test_reuse_any_returns_failed_existing(self):
        failed = make_row(status="failed", error_text="Missing required field: ports")
        conn = make_conn()
        conn.fetchrow = AsyncMock(return_value=failed)
        repo = JobRepository(make_pool(conn))
        candidate = Job(
            type="firewall.open_ports",
            agent_id="agent-1",
            payload={"agent_id": "agent-1"},
            idempotency_key="k" * 64,
            status=JobStatus.FAILED,
        )

        job, created = await repo.find_or_create(candidate, reuse_any=True)

        assert created is False
        assert job.id == failed["id"]
        assert conn.fetchrow.await_count == 1
        assert "pg_advisory_xact_lock" in conn.execute.await_args.args[0]


class TestTransitions:
    @pytest.mark.asyncio
    async def test_claim_returns_none_when_not_queued(self):
        conn = make_conn()
        conn.fetchrow = AsyncMock(return_value=None)
        repo = JobRepository(make_pool(conn))
        now = datetime.now(timezone.utc)

        assert await repo.claim(uuid4(), "agent-1", now, now + timedelta(minutes=5)) is None
        query = conn.fetchrow.await_args.args[0]
        assert "status = 'queued'" in query

    @pytest.mark.asyncio
    async def test_complete_guards_terminal_rows(self):
        conn = make_conn()
        conn.fetchrow = AsyncMock(
            return_value=make_row(
                status="failed",
                result_status="failed",
                result_output="{}",
                result_completed_at=datetime.now(timezone.utc),
            )
        )
        repo = JobRepository(make_pool(conn))
        outcome = JobOutcome(status=JobStatus.FAILED, output={"message": "x"})

        job = await repo.complete(uuid4(), outcome, error_text="x")

        assert job.status == JobStatus.FAILED
        query, *params = conn.fetchrow.await_args.args
        assert "status IN ('queued', 'running')" in query
        assert params[1] == "failed"
        assert params[2] == json.dumps({"message": "x"})

    @pytest.mark.asyncio
    async def test_claim_next_skips_locked_rows(self):
        conn = make_conn()
        conn.fetchrow = AsyncMock(return_value=None)
        repo = JobRepository(make_pool(conn))
        now = datetime.now(timezone.utc)

        await repo.claim_next("agent-1", now, now + timedelta(minutes=5))

        assert "FOR UPDATE SKIP LOCKED" in conn.fetchrow.await_args.args[0]

    @pytest.mark.asyncio
    async def test_requeue_increments_recoveries(self):
        conn = make_conn()
        conn.fetchrow = AsyncMock(return_value=make_row(lease_recoveries=1))
        repo = JobRepository(make_pool(conn))

        job = await repo.requeue_expired(uuid4(), datetime.now(timezone.utc))

        assert job.lease_recoveries == 1
        assert "lease_recoveries = lease_recoveries + 1" in conn.fetchrow.await_args.args[0]
