"""Tests for public server status check queueing."""

from datetime import timedelta

import pytest

from control_plane.domain.models import PublicServer
from control_plane.reconcile.server_status import build_check_payload


def make_server(**overrides):
    fields = dict(
        id=5,
        name="Public CS2",
        game_key="cs2",
        ip="203.0.113.5",
        port=27015,
        query_type="a2s",
        agent_id="agent-1",
        check_interval_seconds=60,
    )
    fields.update(overrides)
    return PublicServer(**fields)


def test_build_check_payload(now):
    payload = build_check_payload(make_server(query_port=27016), now)

    assert payload == {
        "server_id": "5",
        "ip": "203.0.113.5",
        "port": "27015",
        "query_type": "a2s",
        "game_key": "cs2",
        "due_at": now.isoformat(),
        "query_port": "27016",
    }


class TestServerStatusReconciler:
    @pytest.mark.asyncio
    async def test_due_server_queued_and_advanced(self, services, stores, now):
        server = stores.servers.add(make_server())

        result = await services.server_status.run(now)

        assert result.dispatched == 1
        assert server.next_check_at == now + timedelta(seconds=60)
        job = stores.jobs.jobs[0]
        assert job.type == "server.status.check"
        assert job.agent_id == "agent-1"
        assert stores.audit.actions() == ["public_server.status_check_queued"]

    @pytest.mark.asyncio
    async def test_not_due_until_interval_passes(self, services, stores, now):
        stores.servers.add(make_server())

        await services.server_status.run(now)
        await services.server_status.run(now + timedelta(seconds=30))
        assert len(stores.jobs.jobs) == 1

        await services.server_status.run(now + timedelta(seconds=60))
        assert len(stores.jobs.jobs) == 2

    @pytest.mark.asyncio
    async def test_future_next_check_skipped(self, services, stores, now):
        stores.servers.add(make_server(next_check_at=now + timedelta(minutes=5)))

        result = await services.server_status.run(now)

        assert result.examined == 0
        assert stores.jobs.jobs == []

    @pytest.mark.asyncio
    async def test_one_failing_server_does_not_abort_the_pass(
        self, services, stores, now, fail_dispatch, monkeypatch
    ):
        failing = stores.servers.add(make_server())
        healthy = stores.servers.add(make_server(id=6, port=27016))
        fail_dispatch("server_id", "5")

        result = await services.server_status.run(now)

        assert result.examined == 2
        assert result.dispatched == 1
        assert result.errors == ["5: db down"]
        assert failing.next_check_at is None
        assert healthy.next_check_at == now + timedelta(seconds=60)
        assert [j.payload["server_id"] for j in stores.jobs.jobs] == ["6"]

        monkeypatch.undo()
        retry = await services.server_status.run(now + timedelta(seconds=1))

        assert retry.dispatched == 1
        assert failing.next_check_at == now + timedelta(seconds=61)
        assert sorted(j.payload["server_id"] for j in stores.jobs.jobs) == ["5", "6"]
