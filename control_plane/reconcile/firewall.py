"""Firewall reconciliation: desired vs observed open ports per agent."""

from datetime import datetime
from typing import Optional

import structlog

from control_plane.jobs.dispatcher import JobDispatcher
from control_plane.reconcile.base import ReconcileResult, reconcile_pass
from control_plane.repositories.instances import PortBlockStore
from control_plane.repositories.nodes import FirewallStateStore
from control_plane.services.audit import AuditLogger
from control_plane.services.firewall import format_port_list, sanitize_ports
from control_plane.utils.time import utc_now

logger = structlog.get_logger(__name__)

LOOP = "firewall"


def compute_delta(desired: set[int], current: set[int]) -> tuple[list[int], list[int]]:
    """Return (to_open, to_close), each sorted."""
    return sorted(desired - current), sorted(current - desired)


class FirewallReconciler:
    def __init__(
        self,
        port_blocks: PortBlockStore,
        firewall_states: FirewallStateStore,
        dispatcher: JobDispatcher,
        audit: AuditLogger,
    ):
        self._port_blocks = port_blocks
        self._firewall_states = firewall_states
        self._dispatcher = dispatcher
        self._audit = audit

    async def desired_ports(self) -> dict[str, set[int]]:
        desired: dict[str, set[int]] = {}
        for block in await self._port_blocks.list_assigned():
            desired.setdefault(block.agent_id, set()).update(sanitize_ports(block.ports))
        return desired

    async def run(self, now: Optional[datetime] = None) -> ReconcileResult:
        now = now or utc_now()
        with reconcile_pass(LOOP) as result:
            desired = await self.desired_ports()
            states = {state.agent_id: state for state in await self._firewall_states.list_all()}

            for agent_id in sorted(set(desired) | set(states)):
                result.examined += 1
                state = states.get(agent_id)
                current = set(state.ports) if state else set()
                revision = state.revision if state else 0
                to_open, to_close = compute_delta(desired.get(agent_id, set()), current)
                if not to_open and not to_close:
                    result.skipped += 1
                    continue

                try:
                    if to_open:
                        await self._queue(result, agent_id, "open_ports", to_open, revision, now)
                    if to_close:
                        await self._queue(result, agent_id, "close_ports", to_close, revision, now)
                except Exception as e:
                    logger.exception("firewall_reconcile_agent_failed", agent_id=agent_id)
                    result.record_error(agent_id, e)

        return result

    async def _queue(
        self,
        result: ReconcileResult,
        agent_id: str,
        action: str,
        ports: list[int],
        revision: int,
        now: datetime,
    ) -> None:
        job_type = f"firewall.{action}"
        payload = {
            "agent_id": agent_id,
            "ports": format_port_list(ports),
            "state_revision": revision,
        }
        job = await self._dispatcher.dispatch_with_failure_logging(
            agent_id, job_type, payload, now=now
        )
        result.record_dispatch(job_type)
        await self._audit.log(
            None,
            f"firewall.reconcile.{action}",
            {"agent_id": agent_id, "ports": ports, "job_id": str(job.id)},
            created_at=now,
        )
