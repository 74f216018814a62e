"""Append-only audit log storage."""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, Optional

import structlog

from control_plane.domain.models import AuditEvent
from control_plane.repositories.utils import json_dict, to_jsonb

logger = structlog.get_logger(__name__)

# Serialises chain appends across processes
AUDIT_CHAIN_LOCK_KEY = 0x61756469745F6C67

# prev_hash -> hash_current
HashFn = Callable[[Optional[str]], str]


class AuditStore(ABC):
    @abstractmethod
    async def append(
        self,
        action: str,
        actor_id: Optional[int],
        payload: dict[str, Any],
        created_at: datetime,
        compute_hash: HashFn,
    ) -> AuditEvent:
        """Read the latest hash and append the next event as one serialised step."""

    @abstractmethod
    async def list_events(self, limit: int = 10_000) -> list[AuditEvent]:
        """Events in append order."""


class AuditRepository(AuditStore):
    """PostgreSQL audit log."""

    def __init__(self, pool):
        self._pool = pool

    async def append(
        self,
        action: str,
        actor_id: Optional[int],
        payload: dict[str, Any],
        created_at: datetime,
        compute_hash: HashFn,
    ) -> AuditEvent:
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute("SELECT pg_advisory_xact_lock($1)", AUDIT_CHAIN_LOCK_KEY)
                prev_hash = await conn.fetchval(
                    "SELECT hash_current FROM audit_log ORDER BY id DESC LIMIT 1"
                )
                row = await conn.fetchrow(
                    """
                    INSERT INTO audit_log (actor_id, action, payload, created_at,
                                           hash_prev, hash_current)
                    VALUES ($1, $2, $3::jsonb, $4, $5, $6)
                    RETURNING *
                    """,
                    actor_id,
                    action,
                    to_jsonb(payload),
                    created_at,
                    prev_hash,
                    compute_hash(prev_hash),
                )
        return self._row_to_event(row)

    async def list_events(self, limit: int = 10_000) -> list[AuditEvent]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch("SELECT * FROM audit_log ORDER BY id LIMIT $1", limit)
        return [self._row_to_event(row) for row in rows]

    def _row_to_event(self, row) -> AuditEvent:
        return AuditEvent(
            id=row["id"],
            actor_id=row["actor_id"],
            action=row["action"],
            payload=json_dict(row["payload"]),
            created_at=row["created_at"],
            hash_prev=row["hash_prev"],
            hash_current=row["hash_current"],
        )
