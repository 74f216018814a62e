"""Tests for firewall port parsing and rule merging."""

from control_plane.domain.models import FirewallRule, FirewallState
from control_plane.services.firewall import (
    format_port_list,
    merge_rules,
    normalize_rules,
    parse_port_list,
    rules_from_ports,
)


class TestPortLists:
    def test_parse_port_list(self):
        assert parse_port_list("443, 80,80,abc,70000,0") == [80, 443]

    def test_parse_non_string(self):
        assert parse_port_list(None) == []
        assert parse_port_list([80]) == []

    def test_format_port_list(self):
        assert format_port_list([80, 443, 27015]) == "80,443,27015"


class TestNormalizeRules:
    def test_accepts_json_text_and_drops_malformed(self):
        raw = (
            '[{"port": 80, "protocol": "TCP", "status": "open"},'
            ' {"port": "443", "protocol": "udp", "status": "closed"},'
            ' {"port": 22, "protocol": "icmp", "status": "open"},'
            ' {"port": 99999, "protocol": "tcp", "status": "open"},'
            ' "junk"]'
        )
        rules = normalize_rules(raw)

        assert [r.to_dict() for r in rules] == [
            {"port": 80, "protocol": "tcp", "status": "open"},
            {"port": 443, "protocol": "udp", "status": "closed"},
        ]

    def test_invalid_json(self):
        assert normalize_rules("[not json") == []


class TestMergeRules:
    def test_new_state_created(self, now):
        state, changed = merge_rules(None, "agent-1", rules_from_ports([80], "open"), now)

        assert changed
        assert state.revision == 1
        assert state.ports == [80]
        assert state.updated_at == now

    def test_overlay_by_port_and_protocol(self, now):
        state = FirewallState(agent_id="agent-1", rules=rules_from_ports([80, 443], "open"))

        state, changed = merge_rules(state, "agent-1", rules_from_ports([80], "closed"), now)

        assert changed
        assert state.ports == [443]
        assert len(state.rules) == 4

    def test_unchanged_merge_keeps_revision(self, now):
        state, _ = merge_rules(None, "agent-1", rules_from_ports([80], "open"), now)

        state, changed = merge_rules(state, "agent-1", rules_from_ports([80], "open"), now)

        assert not changed
        assert state.revision == 1

    def test_rules_from_ports_covers_both_protocols(self):
        rules = rules_from_ports([27015], "open")
        assert rules == [
            FirewallRule(port=27015, protocol="tcp", status="open"),
            FirewallRule(port=27015, protocol="udp", status="open"),
        ]
