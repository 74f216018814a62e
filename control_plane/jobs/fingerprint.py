"""Deterministic idempotency keys for job dispatch.

Key contract:
    - Canonical payload: JSON with sort_keys=True, separators=(",", ":")
    - Key: SHA256 hex of "<agent_id>:<type>:<canonical payload>"
    - Missing agent id hashes as the empty string
"""

import hashlib
import json
from typing import Any, Optional


def canonical_json(payload: dict[str, Any]) -> str:
    """Serialize payload so logically equal maps produce identical text."""
    return json.dumps(
        payload,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )


def compute_idempotency_key(
    agent_id: Optional[str], job_type: str, payload: dict[str, Any]
) -> str:
    """SHA256 fingerprint of (agent, type, canonical payload)."""
    raw = f"{agent_id or ''}:{job_type}:{canonical_json(payload)}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def advisory_lock_key(idempotency_key: str) -> int:
    """Signed 64-bit key for pg_advisory_xact_lock derived from a fingerprint."""
    digest = hashlib.sha256(idempotency_key.encode()).digest()[:8]
    return int.from_bytes(digest, byteorder="big", signed=True)
