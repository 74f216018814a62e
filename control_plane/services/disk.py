"""Disk pressure tiers, node disk protection and action guards."""

from datetime import datetime
from typing import Any, Optional, TypedDict

from control_plane.domain.models import Agent, Instance
from control_plane.domain.types import DiskState
from control_plane.utils.time import format_iso, parse_iso

BLOCK_MESSAGE = "Disk limit reached. Delete files or raise the instance disk limit."
NODE_BLOCK_MESSAGE = "Node is in disk protection mode. Actions are temporarily blocked."

DISK_STAT_KEY = "disk_stat"
PROTECTION_KEY = "disk_protection"


class DiskStat(TypedDict):
    free_bytes: int
    free_percent: float
    checked_at: datetime


def usage_percent(instance: Instance) -> float:
    if instance.disk_limit_bytes <= 0:
        return 0.0
    return instance.disk_used_bytes / instance.disk_limit_bytes * 100.0


def resolve_disk_state(instance: Instance, node: Agent) -> DiskState:
    """Tier for the instance's used/limit ratio under the node's thresholds.

    An instance without a limit is always OK.
    """
    if instance.disk_limit_bytes <= 0:
        return DiskState.OK

    percent = usage_percent(instance)
    if percent >= node.disk_hard_block_percent:
        return DiskState.HARD_BLOCK
    if percent >= 100.0:
        return DiskState.OVER_LIMIT
    if percent >= node.disk_warning_percent:
        return DiskState.WARNING
    return DiskState.OK


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def get_disk_stat(node: Agent) -> Optional[DiskStat]:
    """Last node-level disk stat from metadata, or None if absent/malformed."""
    stat = node.metadata.get(DISK_STAT_KEY)
    if not isinstance(stat, dict):
        return None

    free_bytes = stat.get("free_bytes")
    free_percent = stat.get("free_percent")
    checked_at = parse_iso(stat.get("checked_at"))
    if not _is_number(free_bytes) or not _is_number(free_percent) or checked_at is None:
        return None

    return DiskStat(
        free_bytes=int(free_bytes),
        free_percent=float(free_percent),
        checked_at=checked_at,
    )


def is_override_active(node: Agent, now: datetime) -> bool:
    until = node.disk_protection_override_until
    return until is not None and until > now


def is_protection_active(node: Agent, now: datetime) -> bool:
    if is_override_active(node, now):
        return False
    stat = get_disk_stat(node)
    if stat is None:
        return False
    return stat["free_percent"] < node.disk_protection_threshold_percent


def update_disk_stat(
    node: Agent, free_bytes: int, free_percent: float, checked_at: datetime
) -> tuple[bool, bool]:
    """Record a node disk stat in metadata.

    Returns:
        Tuple of (previous protection flag, current protection flag)
    """
    previous = node.metadata.get(PROTECTION_KEY)
    was_active = bool(previous.get("active")) if isinstance(previous, dict) else False
    is_active = free_percent < node.disk_protection_threshold_percent

    metadata = dict(node.metadata)
    metadata[DISK_STAT_KEY] = {
        "free_bytes": free_bytes,
        "free_percent": free_percent,
        "checked_at": format_iso(checked_at),
    }
    metadata[PROTECTION_KEY] = {
        "active": is_active,
        "updated_at": format_iso(checked_at),
    }
    node.metadata = metadata
    return was_active, is_active


def guard_instance_action(
    instance: Instance, node: Optional[Agent], now: datetime
) -> Optional[str]:
    """Reason the instance may not be acted on right now, or None if allowed."""
    if node is not None and is_protection_active(node, now):
        return NODE_BLOCK_MESSAGE
    if instance.disk_state.blocks_actions:
        return BLOCK_MESSAGE
    return None
