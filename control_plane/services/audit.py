"""Hash-chained audit logging.

Each event's hash covers the previous event's hash plus its own canonical
content, so editing or removing any row breaks every later link.
"""

import hashlib
import json
from datetime import datetime
from typing import Any, Iterable, Optional

import structlog

from control_plane.domain.models import AuditEvent
from control_plane.repositories.audit import AuditStore
from control_plane.utils.time import ensure_utc, utc_now

logger = structlog.get_logger(__name__)


def chain_hash(
    prev_hash: Optional[str],
    action: str,
    actor_id: Optional[int],
    payload: dict[str, Any],
    created_at: datetime,
) -> str:
    """Next hash in the chain. Pure: same inputs, same output."""
    material = json.dumps(
        {
            "prev": prev_hash,
            "action": action,
            "actor": actor_id,
            "payload": payload,
            "created_at": ensure_utc(created_at).isoformat(),
        },
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


def verify_chain(events: Iterable[AuditEvent]) -> Optional[AuditEvent]:
    """Return the first event whose link or hash does not verify, else None."""
    prev_hash: Optional[str] = None
    for event in events:
        expected = chain_hash(
            prev_hash, event.action, event.actor_id, event.payload, event.created_at
        )
        if event.hash_prev != prev_hash or event.hash_current != expected:
            return event
        prev_hash = event.hash_current
    return None


class AuditLogger:
    """Writes system and user audit events."""

    def __init__(self, store: AuditStore):
        self._store = store

    async def log(
        self,
        actor_id: Optional[int],
        action: str,
        payload: dict[str, Any],
        created_at: Optional[datetime] = None,
    ) -> AuditEvent:
        created_at = created_at or utc_now()
        # Hash the payload exactly as it will be stored
        payload = json.loads(json.dumps(payload, default=str))

        event = await self._store.append(
            action,
            actor_id,
            payload,
            created_at,
            lambda prev: chain_hash(prev, action, actor_id, payload, created_at),
        )
        logger.debug("audit_logged", action=action, audit_id=event.id)
        return event
