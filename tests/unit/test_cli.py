"""Tests for the reconciliation CLI commands."""

import argparse
import re
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from unittest.mock import patch

import pytest

from control_plane import cli
from control_plane.services.audit import AuditLogger


def fake_open_services(services):
    @asynccontextmanager
    async def opener():
        yield services

    return opener


class TestVerifyAudit:
    @pytest.mark.asyncio
    async def test_intact_chain(self, services, stores, capsys):
        audit = AuditLogger(stores.audit)
        created = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
        await audit.log(None, "instance.disk.hard_block", {"instance_id": 1}, created_at=created)
        await audit.log(None, "firewall.state_updated", {"agent_id": "a"}, created_at=created)

        with patch.object(cli, "open_services", fake_open_services(services)):
            code = await cli.cmd_verify_audit(argparse.Namespace(limit=100))

        assert code == 0
        assert "2 event(s)" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_tampered_chain(self, services, stores, capsys):
        audit = AuditLogger(stores.audit)
        await audit.log(None, "instance.query.queued", {"instance_id": 1})
        await audit.log(None, "instance.query.queued", {"instance_id": 2})
        stores.audit.events[0].payload = {"instance_id": 99}

        with patch.object(cli, "open_services", fake_open_services(services)):
            code = await cli.cmd_verify_audit(argparse.Namespace(limit=100))

        assert code == 1
        assert "broken at event 1" in capsys.readouterr().out


class TestPassCommands:
    @pytest.mark.asyncio
    async def test_runs_named_loop(self, services, capsys):
        with patch.object(cli, "open_services", fake_open_services(services)):
            code = await cli.cmd_pass(argparse.Namespace(command="reap-leases"))

        assert code == 0
        assert "leases: examined=0 dispatched=0" in capsys.readouterr().out

    def test_every_pass_command_has_a_loop(self, services):
        assert set(cli.PASS_COMMANDS) == set(services.loops)

    @pytest.mark.asyncio
    async def test_loop_once(self, services, capsys):
        with patch.object(cli, "open_services", fake_open_services(services)):
            code = await cli.cmd_loop(argparse.Namespace(interval=1, once=True))

        assert code == 0
        summaries = [
            line for line in capsys.readouterr().out.splitlines() if re.match(r"^\w+: examined=", line)
        ]
        assert len(summaries) == len(services.loops)
