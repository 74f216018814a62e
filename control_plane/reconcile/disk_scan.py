"""Disk scan reconciliation.

Queues `instance.disk.scan` for instances whose last scan is older than the
node's scan interval (capped per pass), and one `node.disk.stat` per node
whose recorded disk stat is stale.
"""

from datetime import datetime, timedelta
from typing import Optional

import structlog

from control_plane.domain.models import Agent, Instance
from control_plane.jobs.dispatcher import JobDispatcher
from control_plane.reconcile.base import ReconcileResult, reconcile_pass
from control_plane.repositories.instances import InstanceStore
from control_plane.repositories.nodes import AgentStore
from control_plane.services.disk import get_disk_stat
from control_plane.utils.time import format_iso, utc_now

logger = structlog.get_logger(__name__)

LOOP = "disk_scan"
SCAN_JOB_TYPE = "instance.disk.scan"
STAT_JOB_TYPE = "node.disk.stat"

DEFAULT_INSTANCE_ROOT = "/var/lib/agent/instances"


def resolve_instance_dir(instance: Instance) -> str:
    return instance.instance_dir or f"{DEFAULT_INSTANCE_ROOT}/{instance.id}"


def node_stat_due(node: Agent, now: datetime) -> bool:
    stat = get_disk_stat(node)
    if stat is None:
        return True
    return stat["checked_at"] + timedelta(seconds=node.disk_scan_interval_seconds) <= now


class DiskScanReconciler:
    def __init__(
        self,
        agents: AgentStore,
        instances: InstanceStore,
        dispatcher: JobDispatcher,
        batch_limit: int = 50,
    ):
        self._agents = agents
        self._instances = instances
        self._dispatcher = dispatcher
        self._batch_limit = batch_limit

    async def run(self, now: Optional[datetime] = None) -> ReconcileResult:
        now = now or utc_now()
        with reconcile_pass(LOOP) as result:
            nodes = await self._agents.list_all()
            await self._queue_scans(result, nodes, now)
            await self._queue_stats(result, nodes, now)
        return result

    async def _queue_scans(
        self, result: ReconcileResult, nodes: list[Agent], now: datetime
    ) -> None:
        queued = 0
        for node in nodes:
            remaining = self._batch_limit - queued
            if remaining <= 0:
                break
            threshold = now - timedelta(seconds=node.disk_scan_interval_seconds)
            try:
                candidates = await self._instances.find_scan_candidates(
                    node.id, threshold, remaining
                )
            except Exception as e:
                logger.exception("disk_scan_candidates_failed", node_id=node.id)
                result.record_error(node.id, e)
                continue

            for instance in candidates[:remaining]:
                result.examined += 1
                payload = {
                    "instance_id": str(instance.id),
                    "customer_id": str(instance.customer_id),
                    "agent_id": node.id,
                    "instance_dir": resolve_instance_dir(instance),
                    "last_scanned_at": format_iso(instance.disk_last_scanned_at) or "never",
                }
                try:
                    await self._dispatcher.dispatch_with_failure_logging(
                        node.id, SCAN_JOB_TYPE, payload, now=now
                    )
                except Exception as e:
                    logger.exception("disk_scan_queue_failed", instance_id=instance.id)
                    result.record_error(str(instance.id), e)
                    continue
                result.record_dispatch(SCAN_JOB_TYPE)
                queued += 1

    async def _queue_stats(
        self, result: ReconcileResult, nodes: list[Agent], now: datetime
    ) -> None:
        for node in nodes:
            result.examined += 1
            if not node_stat_due(node, now):
                result.skipped += 1
                continue

            stat = get_disk_stat(node)
            payload = {
                "agent_id": node.id,
                "node_id": node.id,
                "last_checked_at": format_iso(stat["checked_at"]) if stat else "never",
            }
            try:
                await self._dispatcher.dispatch_with_failure_logging(
                    node.id, STAT_JOB_TYPE, payload, now=now
                )
            except Exception as e:
                logger.exception("node_disk_stat_queue_failed", node_id=node.id)
                result.record_error(node.id, e)
                continue
            result.record_dispatch(STAT_JOB_TYPE)
