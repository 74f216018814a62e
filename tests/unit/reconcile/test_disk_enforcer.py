"""Tests for disk tier enforcement."""

from datetime import timedelta

import pytest

from control_plane.domain.models import Agent, Instance, Schedule
from control_plane.domain.types import DiskState, InstanceStatus, ScheduleAction
from control_plane.jobs.types import ResultStatus

GB = 1024**3


@pytest.fixture
def node(stores):
    return stores.agents.add(
        Agent(id="agent-1", disk_warning_percent=85, disk_hard_block_percent=120)
    )


def add_instance(stores, used_gb, limit_gb=100, **overrides):
    fields = dict(
        id=7,
        customer_id=11,
        node_id="agent-1",
        status=InstanceStatus.RUNNING,
        disk_used_bytes=used_gb * GB,
        disk_limit_bytes=limit_gb * GB,
    )
    fields.update(overrides)
    return stores.instances.add(Instance(**fields))


class TestDiskEnforcer:
    @pytest.mark.asyncio
    async def test_hard_block_stops_and_suspends_once(self, services, stores, node, now):
        instance = add_instance(stores, used_gb=130)

        first = await services.disk_enforce.run(now)
        second = await services.disk_enforce.run(now)

        assert instance.disk_state == DiskState.HARD_BLOCK
        assert instance.status == InstanceStatus.SUSPENDED
        jobs = stores.jobs.jobs
        assert len(jobs) == 1
        assert jobs[0].type == "instance.stop"
        assert jobs[0].payload["instance_id"] == "7"
        assert first.dispatched == 1
        assert second.dispatched == 0
        assert second.skipped == 1
        assert stores.audit.actions() == [
            "instance.disk.state_changed",
            "instance.disk.hard_block_enforced",
        ]

    @pytest.mark.asyncio
    async def test_warning_transition_only_audited(self, services, stores, node, now):
        instance = add_instance(stores, used_gb=90)

        await services.disk_enforce.run(now)

        assert instance.disk_state == DiskState.WARNING
        assert instance.status == InstanceStatus.RUNNING
        assert stores.jobs.jobs == []
        event = stores.audit.find("instance.disk.state_changed")[0]
        assert event.payload["previous_state"] == "ok"
        assert event.payload["state"] == "warning"

    @pytest.mark.asyncio
    async def test_recovery_lowers_state(self, services, stores, node, now):
        instance = add_instance(stores, used_gb=50, disk_state=DiskState.OVER_LIMIT)

        await services.disk_enforce.run(now)

        assert instance.disk_state == DiskState.OK

    @pytest.mark.asyncio
    async def test_suspended_instance_unaffected_by_stop_result(self, services, stores, node, now):
        instance = add_instance(stores, used_gb=130)
        await services.disk_enforce.run(now)
        stop = stores.jobs.jobs[0]

        await services.leases.claim(stop.id, "agent-1", now=now)
        await services.leases.report(stop.id, "agent-1", ResultStatus.SUCCESS, now=now)

        assert instance.status == InstanceStatus.SUSPENDED

    @pytest.mark.asyncio
    async def test_blocked_instance_vetoes_schedule(self, services, stores, node, now):
        add_instance(stores, used_gb=105)
        stores.schedules.add(
            Schedule(id=1, instance_id=7, action=ScheduleAction.START, cron_expression="* * * * *")
        )

        await services.disk_enforce.run(now)
        await services.schedules.run(now)

        assert stores.jobs.jobs == []


class TestDiskEnforcerErrors:
    @pytest.mark.asyncio
    async def test_failed_stop_dispatch_is_retried_next_pass(
        self, services, stores, node, now, fail_dispatch, monkeypatch
    ):
        instance = add_instance(stores, used_gb=130)
        fail_dispatch("instance_id", "7")

        first = await services.disk_enforce.run(now)

        assert len(first.errors) == 1
        assert instance.disk_state == DiskState.OK
        assert instance.status == InstanceStatus.RUNNING
        assert stores.audit.events == []

        monkeypatch.undo()
        second = await services.disk_enforce.run(now + timedelta(minutes=1))

        assert second.dispatched == 1
        assert instance.disk_state == DiskState.HARD_BLOCK
        assert instance.status == InstanceStatus.SUSPENDED
        assert [j.type for j in stores.jobs.jobs] == ["instance.stop"]

    @pytest.mark.asyncio
    async def test_one_failing_instance_does_not_abort_the_pass(
        self, services, stores, node, now, fail_dispatch
    ):
        failing = add_instance(stores, used_gb=130)
        other = add_instance(stores, used_gb=130, id=8)
        fail_dispatch("instance_id", "7")

        result = await services.disk_enforce.run(now)

        assert result.examined == 2
        assert result.dispatched == 1
        assert result.errors == ["7: db down"]
        assert other.status == InstanceStatus.SUSPENDED
        assert failing.status == InstanceStatus.RUNNING
        assert [j.payload["instance_id"] for j in stores.jobs.jobs] == ["8"]
