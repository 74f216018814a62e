"""Disk enforcement: recompute disk tiers and hard-block offenders.

A transition into hard_block queues one `instance.stop` and suspends the
instance in the same pass. Later passes with an unchanged tier do nothing.
"""

from datetime import datetime
from typing import Optional

import structlog

from control_plane.domain.models import Agent, Instance
from control_plane.domain.types import DiskState, InstanceStatus
from control_plane.jobs.dispatcher import JobDispatcher
from control_plane.reconcile.base import ReconcileResult, reconcile_pass
from control_plane.repositories.instances import InstanceStore
from control_plane.repositories.nodes import AgentStore
from control_plane.services.audit import AuditLogger
from control_plane.services.disk import resolve_disk_state
from control_plane.utils.time import format_iso, utc_now

logger = structlog.get_logger(__name__)

LOOP = "disk_enforce"
STOP_JOB_TYPE = "instance.stop"


class DiskEnforcer:
    def __init__(
        self,
        instances: InstanceStore,
        agents: AgentStore,
        dispatcher: JobDispatcher,
        audit: AuditLogger,
    ):
        self._instances = instances
        self._agents = agents
        self._dispatcher = dispatcher
        self._audit = audit

    async def run(self, now: Optional[datetime] = None) -> ReconcileResult:
        now = now or utc_now()
        with reconcile_pass(LOOP) as result:
            nodes = {agent.id: agent for agent in await self._agents.list_all()}
            for instance in await self._instances.list_all():
                result.examined += 1
                node = nodes.get(instance.node_id) or Agent(id=instance.node_id)
                try:
                    changed = await self._enforce(result, instance, node, now)
                    if not changed:
                        result.skipped += 1
                except Exception as e:
                    logger.exception("disk_enforce_instance_failed", instance_id=instance.id)
                    result.record_error(str(instance.id), e)
        return result

    async def _enforce(
        self, result: ReconcileResult, instance: Instance, node: Agent, now: datetime
    ) -> bool:
        previous = instance.disk_state
        state = resolve_disk_state(instance, node)
        if state == previous:
            return False

        # Queue the stop before touching the instance; a failed dispatch
        # leaves the old tier in place so the next pass retries.
        stop_job = None
        if state == DiskState.HARD_BLOCK:
            stop_job = await self._dispatcher.dispatch_with_failure_logging(
                instance.node_id,
                STOP_JOB_TYPE,
                {
                    "agent_id": instance.node_id,
                    "instance_id": str(instance.id),
                    "disk_state_changed_at": format_iso(now),
                },
                now=now,
            )
            result.record_dispatch(STOP_JOB_TYPE)

        previous_status = instance.status
        instance.disk_state = state
        if stop_job is not None:
            instance.status = InstanceStatus.SUSPENDED
        await self._instances.save(instance)

        await self._audit.log(
            None,
            "instance.disk.state_changed",
            {
                "instance_id": instance.id,
                "node_id": instance.node_id,
                "previous_state": previous.value,
                "state": state.value,
                "disk_used_bytes": instance.disk_used_bytes,
                "disk_limit_bytes": instance.disk_limit_bytes,
            },
            created_at=now,
        )
        logger.info(
            "instance_disk_state_changed",
            instance_id=instance.id,
            previous_state=previous.value,
            state=state.value,
        )

        if stop_job is not None:
            await self._audit.log(
                None,
                "instance.disk.hard_block_enforced",
                {
                    "instance_id": instance.id,
                    "node_id": instance.node_id,
                    "job_id": str(stop_job.id),
                    "previous_status": previous_status.value,
                    "status": InstanceStatus.SUSPENDED.value,
                },
                created_at=now,
            )
            logger.warning(
                "instance_disk_hard_block_enforced",
                instance_id=instance.id,
                job_id=str(stop_job.id),
            )
        return True
