"""Game instance and port block storage."""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from control_plane.domain.models import Instance, PortBlock
from control_plane.domain.types import DiskState, InstanceStatus, UpdatePolicy
from control_plane.repositories.utils import json_dict, json_list, to_jsonb


class InstanceStore(ABC):
    @abstractmethod
    async def get(self, instance_id: int) -> Optional[Instance]:
        ...

    @abstractmethod
    async def list_all(self) -> list[Instance]:
        ...

    @abstractmethod
    async def find_scan_candidates(
        self, node_id: str, scanned_before: datetime, limit: int
    ) -> list[Instance]:
        """Instances on node never scanned or last scanned before the cutoff."""

    @abstractmethod
    async def save(self, instance: Instance) -> None:
        """Persist lifecycle, disk and query-cache fields."""


class PortBlockStore(ABC):
    @abstractmethod
    async def list_assigned(self) -> list[PortBlock]:
        """Blocks currently bound to an instance."""

    @abstractmethod
    async def get_for_instance(self, instance_id: int) -> Optional[PortBlock]:
        ...


class InstanceRepository(InstanceStore):
    def __init__(self, pool):
        self._pool = pool

    async def get(self, instance_id: int) -> Optional[Instance]:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM instances WHERE id = $1", instance_id)
        return self._row_to_instance(row) if row else None

    async def list_all(self) -> list[Instance]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch("SELECT * FROM instances ORDER BY id")
        return [self._row_to_instance(row) for row in rows]

    async def find_scan_candidates(
        self, node_id: str, scanned_before: datetime, limit: int
    ) -> list[Instance]:
        query = """
            SELECT * FROM instances
            WHERE node_id = $1
              AND (disk_last_scanned_at IS NULL OR disk_last_scanned_at < $2)
            ORDER BY disk_last_scanned_at NULLS FIRST, id
            LIMIT $3
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, node_id, scanned_before, limit)
        return [self._row_to_instance(row) for row in rows]

    async def save(self, instance: Instance) -> None:
        query = """
            UPDATE instances SET
                status = $2,
                disk_state = $3,
                disk_used_bytes = $4,
                disk_last_scanned_at = $5,
                disk_scan_error = $6,
                query_status_cache = $7::jsonb,
                query_checked_at = $8
            WHERE id = $1
        """
        async with self._pool.acquire() as conn:
            await conn.execute(
                query,
                instance.id,
                instance.status.value,
                instance.disk_state.value,
                instance.disk_used_bytes,
                instance.disk_last_scanned_at,
                instance.disk_scan_error,
                to_jsonb(instance.query_status_cache),
                instance.query_checked_at,
            )

    def _row_to_instance(self, row) -> Instance:
        return Instance(
            id=row["id"],
            customer_id=row["customer_id"],
            node_id=row["node_id"],
            status=InstanceStatus(row["status"]),
            update_policy=UpdatePolicy(row["update_policy"]),
            locked_build_id=row["locked_build_id"],
            locked_version=row["locked_version"],
            instance_dir=row["instance_dir"],
            disk_state=DiskState(row["disk_state"]),
            disk_used_bytes=row["disk_used_bytes"],
            disk_limit_bytes=row["disk_limit_bytes"],
            disk_last_scanned_at=row["disk_last_scanned_at"],
            disk_scan_error=row["disk_scan_error"],
            template_requirements=json_dict(row["template_requirements"]),
            required_ports=json_list(row["required_ports"]),
            query_status_cache=json_dict(row["query_status_cache"]),
            query_checked_at=row["query_checked_at"],
        )


class PortBlockRepository(PortBlockStore):
    def __init__(self, pool):
        self._pool = pool

    async def list_assigned(self) -> list[PortBlock]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM port_blocks WHERE instance_id IS NOT NULL ORDER BY id"
            )
        return [self._row_to_block(row) for row in rows]

    async def get_for_instance(self, instance_id: int) -> Optional[PortBlock]:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM port_blocks WHERE instance_id = $1 ORDER BY id LIMIT 1",
                instance_id,
            )
        return self._row_to_block(row) if row else None

    def _row_to_block(self, row) -> PortBlock:
        return PortBlock(
            id=row["id"],
            agent_id=row["agent_id"],
            instance_id=row["instance_id"],
            ports=list(row["ports"] or []),
        )
