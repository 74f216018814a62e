"""Cron schedule runner.

A schedule fires when the most recent cron fire time at or before now, in
the schedule's own time zone, is later than its `last_queued_at`. A disk
guard veto leaves `last_queued_at` untouched so the next pass retries.
"""

from datetime import datetime, timedelta
from typing import Any, Optional

import structlog
from croniter import croniter

from control_plane.domain.models import Instance, Schedule
from control_plane.domain.types import ScheduleAction, UpdatePolicy
from control_plane.jobs.dispatcher import JobDispatcher
from control_plane.reconcile.base import ReconcileResult, reconcile_pass
from control_plane.repositories.instances import InstanceStore
from control_plane.repositories.nodes import AgentStore
from control_plane.repositories.schedules import ScheduleStore
from control_plane.services.audit import AuditLogger
from control_plane.services.disk import guard_instance_action
from control_plane.utils.time import format_iso, resolve_zone, utc_now

logger = structlog.get_logger(__name__)

LOOP = "schedules"


def previous_fire_time(
    cron_expression: str, time_zone: Optional[str], now: datetime
) -> Optional[datetime]:
    """Latest fire time at or before now, in the schedule's zone.

    Returns None for an invalid expression or unknown zone.
    """
    if not croniter.is_valid(cron_expression):
        return None
    zone = resolve_zone(time_zone)
    if zone is None:
        return None
    # Whole seconds, then +1s, so a fire time equal to now counts as
    # "at or before" and one later than now never does.
    start = now.astimezone(zone).replace(microsecond=0) + timedelta(seconds=1)
    return croniter(cron_expression, start).get_prev(datetime)


def is_due(schedule: Schedule, now: datetime) -> tuple[bool, Optional[datetime]]:
    """Return (due, previous fire time)."""
    previous = previous_fire_time(schedule.cron_expression, schedule.time_zone, now)
    if previous is None:
        return False, None
    last = schedule.last_queued_at
    if last is not None and last.astimezone(previous.tzinfo) >= previous:
        return False, previous
    return True, previous


class ScheduleRunner:
    def __init__(
        self,
        schedules: ScheduleStore,
        instances: InstanceStore,
        agents: AgentStore,
        dispatcher: JobDispatcher,
        audit: AuditLogger,
        batch_limit: int = 250,
    ):
        self._schedules = schedules
        self._instances = instances
        self._agents = agents
        self._dispatcher = dispatcher
        self._audit = audit
        self._batch_limit = batch_limit

    async def run(self, now: Optional[datetime] = None) -> ReconcileResult:
        now = now or utc_now()
        with reconcile_pass(LOOP) as result:
            for schedule in await self._schedules.list_enabled(self._batch_limit):
                result.examined += 1
                try:
                    fired = await self._process(result, schedule, now)
                except Exception as e:
                    logger.exception("schedule_run_failed", schedule_id=schedule.id)
                    result.record_error(str(schedule.id), e)
                    continue
                if not fired:
                    result.skipped += 1
        return result

    async def _process(
        self, result: ReconcileResult, schedule: Schedule, now: datetime
    ) -> bool:
        log = logger.bind(schedule_id=schedule.id, instance_id=schedule.instance_id)

        instance = await self._instances.get(schedule.instance_id)
        if instance is None:
            return False
        if (
            schedule.action == ScheduleAction.UPDATE
            and instance.update_policy != UpdatePolicy.AUTO
        ):
            return False

        due, previous = is_due(schedule, now)
        if previous is None:
            log.warning(
                "schedule_invalid",
                cron_expression=schedule.cron_expression,
                time_zone=schedule.time_zone,
            )
            return False
        if not due:
            return False

        node = await self._agents.get(instance.node_id)
        reason = guard_instance_action(instance, node, now)
        if reason is not None:
            log.info("schedule_blocked", reason=reason)
            return False

        job_type = schedule.action.job_type
        payload = self._build_payload(schedule, instance, previous)
        job = await self._dispatcher.dispatch_with_failure_logging(
            instance.node_id, job_type, payload, now=now
        )
        result.record_dispatch(job_type)
        await self._schedules.mark_queued(schedule.id, now)
        schedule.last_queued_at = now

        if schedule.action == ScheduleAction.BACKUP:
            await self._audit.log(
                None,
                "instance.backup.schedule_queued",
                {
                    "instance_id": instance.id,
                    "customer_id": instance.customer_id,
                    "definition_id": schedule.backup_definition_id,
                    "cron_expression": schedule.cron_expression,
                    "job_id": str(job.id),
                },
                created_at=now,
            )
        else:
            await self._audit.log(
                None,
                "instance.schedule.queued",
                {
                    "instance_id": instance.id,
                    "customer_id": instance.customer_id,
                    "action": schedule.action.value,
                    "cron_expression": schedule.cron_expression,
                    "time_zone": schedule.time_zone,
                    "job_id": str(job.id),
                },
                created_at=now,
            )
        log.info("schedule_queued", job_id=str(job.id), job_type=job_type)
        return True

    @staticmethod
    def _build_payload(
        schedule: Schedule, instance: Instance, scheduled_for: datetime
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "instance_id": str(instance.id),
            "customer_id": str(instance.customer_id),
            "node_id": instance.node_id,
            "agent_id": instance.node_id,
            "scheduled_for": format_iso(scheduled_for),
        }
        if schedule.action == ScheduleAction.UPDATE:
            payload["locked_build_id"] = instance.locked_build_id
            payload["locked_version"] = instance.locked_version
        elif schedule.action == ScheduleAction.BACKUP:
            payload["definition_id"] = schedule.backup_definition_id
            payload["retention_days"] = (
                str(schedule.retention_days) if schedule.retention_days is not None else None
            )
            payload["retention_count"] = (
                str(schedule.retention_count) if schedule.retention_count is not None else None
            )
        return payload
