"""Observed firewall state: port parsing and rule merging."""

import json
from datetime import datetime
from typing import Any, Iterable, Optional

from control_plane.domain.models import FirewallRule, FirewallState

PROTOCOLS = ("tcp", "udp")
RULE_STATUSES = ("open", "closed")


def sanitize_ports(ports: Iterable[int]) -> list[int]:
    """Deduplicated, sorted ports within 1..65535."""
    return sorted({p for p in ports if 0 < p <= 65535})


def parse_port_list(raw: Any) -> list[int]:
    """Parse "80, 443,27015" into sanitized ports. Non-strings yield []."""
    if not isinstance(raw, str) or not raw:
        return []
    ports = []
    for entry in raw.split(","):
        entry = entry.strip()
        if entry.isdigit():
            ports.append(int(entry))
    return sanitize_ports(ports)


def format_port_list(ports: Iterable[int]) -> str:
    return ",".join(str(p) for p in ports)


def normalize_rules(raw: Any) -> list[FirewallRule]:
    """Accept a list of rule maps or its JSON text; drop malformed entries."""
    if isinstance(raw, str) and raw:
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            return []
    if not isinstance(raw, list):
        return []

    rules = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        port = item.get("port")
        if isinstance(port, str) and port.isdigit():
            port = int(port)
        if not isinstance(port, int) or isinstance(port, bool) or not 0 < port <= 65535:
            continue
        protocol = item.get("protocol")
        status = item.get("status")
        if not isinstance(protocol, str) or protocol.lower() not in PROTOCOLS:
            continue
        if not isinstance(status, str) or status.lower() not in RULE_STATUSES:
            continue
        rules.append(FirewallRule(port=port, protocol=protocol.lower(), status=status.lower()))
    return rules


def rules_from_ports(ports: Iterable[int], status: str) -> list[FirewallRule]:
    """One tcp and one udp rule per port."""
    return [
        FirewallRule(port=port, protocol=protocol, status=status)
        for port in sanitize_ports(ports)
        for protocol in PROTOCOLS
    ]


def merge_rules(
    state: Optional[FirewallState],
    agent_id: str,
    rules: list[FirewallRule],
    now: datetime,
) -> tuple[FirewallState, bool]:
    """Overlay rules onto state keyed by port/protocol.

    The revision is bumped only when the merged rule set differs.

    Returns:
        Tuple of (state, changed flag)
    """
    if state is None:
        state = FirewallState(agent_id=agent_id)

    merged = {rule.key: rule for rule in state.rules}
    for rule in rules:
        merged[rule.key] = rule
    updated = sorted(merged.values(), key=lambda r: (r.port, r.protocol))

    if updated == state.rules:
        return state, False

    state.rules = updated
    state.revision += 1
    state.updated_at = now
    return state, True
