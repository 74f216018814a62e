"""Public server status reconciliation.

Due rows get a `server.status.check` job and their `next_check_at` advanced
immediately, so the interval itself prevents overlapping checks.
"""

from datetime import datetime, timedelta
from typing import Optional

import structlog

from control_plane.domain.models import PublicServer
from control_plane.jobs.dispatcher import JobDispatcher
from control_plane.reconcile.base import ReconcileResult, reconcile_pass
from control_plane.repositories.schedules import PublicServerStore
from control_plane.services.audit import AuditLogger
from control_plane.utils.time import format_iso, utc_now

logger = structlog.get_logger(__name__)

LOOP = "server_status"
CHECK_JOB_TYPE = "server.status.check"


def build_check_payload(server: PublicServer, now: datetime) -> dict:
    payload = {
        "server_id": str(server.id),
        "ip": server.ip,
        "port": str(server.port),
        "query_type": server.query_type,
        "game_key": server.game_key,
        "due_at": format_iso(server.next_check_at or now),
    }
    if server.query_port is not None:
        payload["query_port"] = str(server.query_port)
    return payload


class ServerStatusReconciler:
    def __init__(
        self,
        servers: PublicServerStore,
        dispatcher: JobDispatcher,
        audit: AuditLogger,
        batch_limit: int = 50,
    ):
        self._servers = servers
        self._dispatcher = dispatcher
        self._audit = audit
        self._batch_limit = batch_limit

    async def run(self, now: Optional[datetime] = None) -> ReconcileResult:
        now = now or utc_now()
        with reconcile_pass(LOOP) as result:
            for server in await self._servers.find_due_for_check(now, self._batch_limit):
                result.examined += 1
                try:
                    await self._queue_check(result, server, now)
                except Exception as e:
                    logger.exception("server_status_queue_failed", server_id=server.id)
                    result.record_error(str(server.id), e)
        return result

    async def _queue_check(
        self, result: ReconcileResult, server: PublicServer, now: datetime
    ) -> None:
        job = await self._dispatcher.dispatch_with_failure_logging(
            server.agent_id, CHECK_JOB_TYPE, build_check_payload(server, now), now=now
        )
        result.record_dispatch(CHECK_JOB_TYPE)

        next_check_at = now + timedelta(seconds=server.check_interval_seconds)
        server.next_check_at = next_check_at
        await self._servers.save(server)
        await self._audit.log(
            None,
            "public_server.status_check_queued",
            {
                "server_id": server.id,
                "job_id": str(job.id),
                "next_check_at": format_iso(next_check_at),
            },
            created_at=now,
        )
