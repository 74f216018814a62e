"""Tests for typed result views."""

from control_plane.services.results.payloads import (
    FirewallResult,
    NodeDiskStatResult,
    NodeResult,
    ProbeResult,
    VirtualServerResult,
    opt_bool,
    opt_float,
    opt_int,
    opt_str,
)


class TestOptionalAccessors:
    def test_opt_int(self):
        assert opt_int({"v": 5}, "v") == 5
        assert opt_int({"v": "42"}, "v") == 42
        assert opt_int({"v": 3.0}, "v") == 3
        assert opt_int({"v": 3.5}, "v") is None
        assert opt_int({"v": True}, "v") is None
        assert opt_int({}, "v") is None

    def test_opt_bool(self):
        assert opt_bool({"v": "yes"}, "v") is True
        assert opt_bool({"v": 0}, "v") is False
        assert opt_bool({"v": "maybe"}, "v") is None

    def test_opt_str_rejects_empty(self):
        assert opt_str({"v": ""}, "v") is None
        assert opt_str({"v": 1}, "v") is None
        assert opt_str({"v": "x"}, "v") == "x"

    def test_opt_float(self):
        assert opt_float({"v": "12.5"}, "v") == 12.5
        assert opt_float({"v": "n/a"}, "v") is None


class TestResultViews:
    def test_node_result_with_dependencies(self):
        result = NodeResult.from_output(
            {
                "installed_version": "3.13.7",
                "running": "true",
                "dependencies": {"ts3_client_installed": True, "ts3_client_path": "/opt/ts3"},
            }
        )
        assert result.installed_version == "3.13.7"
        assert result.running is True
        assert result.dependencies.installed is True
        assert result.dependencies.path == "/opt/ts3"
        assert result.dependencies.version is None

    def test_node_result_without_dependencies(self):
        assert NodeResult.from_output({}).dependencies is None

    def test_virtual_server_result(self):
        result = VirtualServerResult.from_output({"sid": "3", "voice_port": 9987, "token": "abc"})
        assert result.sid == 3
        assert result.voice_port == 9987
        assert result.filetransfer_port is None
        assert result.token == "abc"

    def test_probe_result_lowercases_status(self):
        assert ProbeResult.from_output({"status": "ONLINE"}).status == "online"

    def test_disk_stat_result(self):
        result = NodeDiskStatResult.from_output({"free_bytes": 100, "free_percent": 4})
        assert result.free_bytes == 100
        assert result.free_percent == 4.0

    def test_firewall_result(self):
        result = FirewallResult.from_output({"ports": "80,443"})
        assert result.ports == [80, 443]
        assert result.rules == []
