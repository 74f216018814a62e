"""Instance schedule and public server storage."""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from control_plane.domain.models import PublicServer, Schedule
from control_plane.domain.types import ScheduleAction
from control_plane.repositories.utils import json_dict, to_jsonb


class ScheduleStore(ABC):
    @abstractmethod
    async def list_enabled(self, limit: int) -> list[Schedule]:
        ...

    @abstractmethod
    async def mark_queued(self, schedule_id: int, queued_at: datetime) -> None:
        ...


class PublicServerStore(ABC):
    @abstractmethod
    async def get(self, server_id: int) -> Optional[PublicServer]:
        ...

    @abstractmethod
    async def find_due_for_check(self, now: datetime, limit: int) -> list[PublicServer]:
        """Servers with next_check_at unset or at/before now."""

    @abstractmethod
    async def save(self, server: PublicServer) -> None:
        ...


class ScheduleRepository(ScheduleStore):
    def __init__(self, pool):
        self._pool = pool

    async def list_enabled(self, limit: int) -> list[Schedule]:
        query = """
            SELECT * FROM instance_schedules
            WHERE enabled
            ORDER BY id
            LIMIT $1
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, limit)
        return [self._row_to_schedule(row) for row in rows]

    async def mark_queued(self, schedule_id: int, queued_at: datetime) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(
                "UPDATE instance_schedules SET last_queued_at = $2 WHERE id = $1",
                schedule_id,
                queued_at,
            )

    def _row_to_schedule(self, row) -> Schedule:
        return Schedule(
            id=row["id"],
            instance_id=row["instance_id"],
            action=ScheduleAction(row["action"]),
            cron_expression=row["cron_expression"],
            time_zone=row["time_zone"],
            enabled=row["enabled"],
            last_queued_at=row["last_queued_at"],
            backup_definition_id=row["backup_definition_id"],
            retention_days=row["retention_days"],
            retention_count=row["retention_count"],
        )


class PublicServerRepository(PublicServerStore):
    def __init__(self, pool):
        self._pool = pool

    async def get(self, server_id: int) -> Optional[PublicServer]:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM public_servers WHERE id = $1", server_id)
        return self._row_to_server(row) if row else None

    async def find_due_for_check(self, now: datetime, limit: int) -> list[PublicServer]:
        query = """
            SELECT * FROM public_servers
            WHERE next_check_at IS NULL OR next_check_at <= $1
            ORDER BY next_check_at NULLS FIRST, id
            LIMIT $2
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, now, limit)
        return [self._row_to_server(row) for row in rows]

    async def save(self, server: PublicServer) -> None:
        query = """
            UPDATE public_servers SET
                status_cache = $2::jsonb,
                last_checked_at = $3,
                next_check_at = $4
            WHERE id = $1
        """
        async with self._pool.acquire() as conn:
            await conn.execute(
                query,
                server.id,
                to_jsonb(server.status_cache),
                server.last_checked_at,
                server.next_check_at,
            )

    def _row_to_server(self, row) -> PublicServer:
        return PublicServer(
            id=row["id"],
            name=row["name"],
            game_key=row["game_key"],
            ip=row["ip"],
            port=row["port"],
            query_type=row["query_type"],
            query_port=row["query_port"],
            agent_id=row["agent_id"],
            check_interval_seconds=row["check_interval_seconds"],
            status_cache=json_dict(row["status_cache"]),
            last_checked_at=row["last_checked_at"],
            next_check_at=row["next_check_at"],
        )
