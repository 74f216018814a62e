"""Expired lease sweep as a reconciliation pass."""

from datetime import datetime
from typing import Optional

import structlog

from control_plane.jobs.leases import LeaseManager
from control_plane.reconcile.base import ReconcileResult, reconcile_pass
from control_plane.utils.time import utc_now

logger = structlog.get_logger(__name__)

LOOP = "leases"


class LeaseReaper:
    """Requeued jobs count as dispatched; exhausted ones are failed."""

    def __init__(self, leases: LeaseManager, batch_limit: int = 100):
        self._leases = leases
        self._batch_limit = batch_limit

    async def run(self, now: Optional[datetime] = None) -> ReconcileResult:
        now = now or utc_now()
        with reconcile_pass(LOOP) as result:
            counts = await self._leases.reap_expired(now, limit=self._batch_limit)
            result.examined = sum(counts.values())
            result.dispatched = counts["requeued"]
            if counts["failed"]:
                logger.warning("job_leases_exhausted", failed=counts["failed"])
            if counts["errors"]:
                result.errors.append(f"{counts['errors']} lease(s) could not be recovered")
        return result
