"""Tests for agent poll/claim/report endpoints."""

import asyncio
from datetime import datetime, timezone
from uuid import uuid4

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from control_plane.config import get_settings
from control_plane.domain.models import Instance
from control_plane.domain.types import InstanceStatus
from control_plane.jobs.types import JobStatus
from control_plane.routers import agent

AGENT_HEADERS = {"X-Agent-ID": "agent-1"}


@pytest.fixture
def client(services, settings):
    app = FastAPI()
    app.include_router(agent.router)
    app.dependency_overrides[get_settings] = lambda: settings
    agent.set_services(services)

    yield TestClient(app)

    agent.set_services(None)
    app.dependency_overrides.clear()


@pytest.fixture
def queued_job(services, stores):
    stores.instances.add(
        Instance(id=7, customer_id=1, node_id="agent-1", status=InstanceStatus.STOPPED)
    )
    return asyncio.run(
        services.dispatcher.dispatch(
            "agent-1",
            "instance.start",
            {"instance_id": "7", "agent_id": "agent-1"},
            now=datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc),
        )
    )


class TestPolling:
    def test_requires_agent_id(self, client):
        response = client.get("/agent/jobs")
        assert response.status_code == 401

    def test_lists_queued_jobs(self, client, queued_job):
        response = client.get("/agent/jobs", headers=AGENT_HEADERS)

        assert response.status_code == 200
        jobs = response.json()["jobs"]
        assert [j["id"] for j in jobs] == [str(queued_job.id)]
        assert jobs[0]["type"] == "instance.start"
        assert jobs[0]["payload"]["instance_id"] == "7"

    def test_other_agent_sees_nothing(self, client, queued_job):
        response = client.get("/agent/jobs", headers={"X-Agent-ID": "agent-2"})
        assert response.json()["jobs"] == []

    def test_unavailable_without_services(self, client):
        agent.set_services(None)
        response = client.get("/agent/jobs", headers=AGENT_HEADERS)
        assert response.status_code == 503


class TestAgentToken:
    def test_token_enforced_when_configured(self, client, settings):
        settings.agent_api_token = "s3cret"

        assert client.get("/agent/jobs", headers=AGENT_HEADERS).status_code == 401
        bad = {**AGENT_HEADERS, "X-Agent-Token": "nope"}
        assert client.get("/agent/jobs", headers=bad).status_code == 403
        good = {**AGENT_HEADERS, "X-Agent-Token": "s3cret"}
        assert client.get("/agent/jobs", headers=good).status_code == 200


class TestClaimAndFinish:
    def test_claim_next(self, client, queued_job):
        response = client.post("/agent/jobs/claim", headers=AGENT_HEADERS)

        assert response.status_code == 200
        assert response.json()["id"] == str(queued_job.id)

        empty = client.post("/agent/jobs/claim", headers=AGENT_HEADERS)
        assert empty.status_code == 204

    def test_start_then_conflict(self, client, queued_job):
        url = f"/agent/jobs/{queued_job.id}/start"

        assert client.post(url, headers=AGENT_HEADERS).status_code == 200
        assert client.post(url, headers=AGENT_HEADERS).status_code == 409

    def test_start_unknown_job(self, client):
        response = client.post(f"/agent/jobs/{uuid4()}/start", headers=AGENT_HEADERS)
        assert response.status_code == 404

    def test_finish_applies_result(self, client, queued_job, stores):
        client.post(f"/agent/jobs/{queued_job.id}/start", headers=AGENT_HEADERS)

        response = client.post(
            f"/agent/jobs/{queued_job.id}/finish",
            headers=AGENT_HEADERS,
            json={"status": "success", "output": {}, "log_text": "started"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == JobStatus.SUCCEEDED.value
        assert body["result"]["status"] == "succeeded"
        assert stores.instances.instances[7].status == InstanceStatus.RUNNING

    def test_finish_twice_is_safe(self, client, queued_job):
        url = f"/agent/jobs/{queued_job.id}/finish"
        body = {"status": "failed", "error_text": "exit 1"}

        first = client.post(url, headers=AGENT_HEADERS, json=body)
        second = client.post(url, headers=AGENT_HEADERS, json=body)

        assert first.status_code == second.status_code == 200
        assert second.json()["status"] == "failed"
        assert second.json()["error_text"] == "exit 1"

    def test_finish_invalid_status(self, client, queued_job):
        response = client.post(
            f"/agent/jobs/{queued_job.id}/finish",
            headers=AGENT_HEADERS,
            json={"status": "done"},
        )
        assert response.status_code == 400

    def test_finish_from_other_agent(self, client, queued_job):
        response = client.post(
            f"/agent/jobs/{queued_job.id}/finish",
            headers={"X-Agent-ID": "agent-2"},
            json={"status": "success"},
        )
        assert response.status_code == 404
