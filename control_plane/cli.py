#!/usr/bin/env python
"""
CLI for reconciliation passes and audit checks.

Usage:
    python -m control_plane.cli reconcile-firewall
    python -m control_plane.cli enforce-disk
    python -m control_plane.cli reconcile-disk-scan
    python -m control_plane.cli run-schedules
    python -m control_plane.cli reconcile-server-status
    python -m control_plane.cli reap-leases
    python -m control_plane.cli verify-audit [--limit N]
    python -m control_plane.cli loop [--interval SECONDS] [--once]

Examples:
    # One firewall pass, then exit
    python -m control_plane.cli reconcile-firewall

    # Run every loop each minute until interrupted
    python -m control_plane.cli loop --interval 60
"""

import argparse
import asyncio
import sys
from contextlib import asynccontextmanager
from typing import AsyncIterator

import structlog

from control_plane.config import get_settings
from control_plane.core.db import create_pool
from control_plane.services.audit import verify_chain
from control_plane.services.wiring import Services, build_services, postgres_stores

# Configure logging for CLI
structlog.configure(
    processors=[
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(colors=True),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
)

logger = structlog.get_logger(__name__)


class DatabaseNotConfigured(RuntimeError):
    pass


@asynccontextmanager
async def open_services() -> AsyncIterator[Services]:
    settings = get_settings()
    pool = await create_pool(settings)
    if pool is None:
        raise DatabaseNotConfigured("DATABASE_URL is not set")
    try:
        yield build_services(postgres_stores(pool), settings)
    finally:
        await pool.close()


async def cmd_pass(args: argparse.Namespace) -> int:
    """Run one reconciliation pass named by the subcommand."""
    async with open_services() as services:
        result = await services.loops[args.command].run()
    print(result.summary())
    return 0 if not result.errors else 1


async def cmd_verify_audit(args: argparse.Namespace) -> int:
    """Walk the audit chain and report the first broken link."""
    async with open_services() as services:
        events = await services.stores.audit.list_events(limit=args.limit)

    broken = verify_chain(events)
    if broken is not None:
        logger.error("audit_chain_broken", audit_id=broken.id, action=broken.action)
        print(f"Audit chain broken at event {broken.id} ({len(events)} checked).")
        return 1

    print(f"Audit chain intact ({len(events)} event(s) checked).")
    return 0


async def cmd_loop(args: argparse.Namespace) -> int:
    """Run every loop in order, repeatedly, until interrupted."""
    interval = args.interval or get_settings().reconcile_interval_seconds
    async with open_services() as services:
        while True:
            for name, loop in services.loops.items():
                try:
                    result = await loop.run()
                except Exception as e:
                    logger.exception("reconcile_loop_failed", loop=name, error=str(e))
                    continue
                print(result.summary())
            if args.once:
                return 0
            await asyncio.sleep(interval)


PASS_COMMANDS = {
    "reconcile-firewall": "Queue open/close jobs for firewall port deltas",
    "enforce-disk": "Recompute disk states and enforce hard blocks",
    "reconcile-disk-scan": "Queue instance disk scans and node disk stats",
    "run-schedules": "Queue due instance and backup schedules",
    "reconcile-server-status": "Queue due public server status checks",
    "reap-leases": "Recover jobs whose lease has expired",
}


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Control plane reconciliation CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    for name, help_text in PASS_COMMANDS.items():
        subparsers.add_parser(name, help=help_text)

    audit_parser = subparsers.add_parser("verify-audit", help="Verify the audit hash chain")
    audit_parser.add_argument(
        "--limit",
        "-l",
        type=int,
        default=10_000,
        help="Maximum number of events to check (default: 10000)",
    )

    loop_parser = subparsers.add_parser("loop", help="Run all loops on an interval")
    loop_parser.add_argument(
        "--interval",
        "-i",
        type=int,
        help="Seconds between rounds (default: RECONCILE_INTERVAL_SECONDS)",
    )
    loop_parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single round and exit",
    )

    args = parser.parse_args()

    try:
        if args.command in PASS_COMMANDS:
            exit_code = asyncio.run(cmd_pass(args))
        elif args.command == "verify-audit":
            exit_code = asyncio.run(cmd_verify_audit(args))
        elif args.command == "loop":
            exit_code = asyncio.run(cmd_loop(args))
        else:
            parser.print_help()
            exit_code = 1
    except DatabaseNotConfigured as e:
        logger.error("database_not_configured", error=str(e))
        exit_code = 2
    except KeyboardInterrupt:
        exit_code = 130

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
