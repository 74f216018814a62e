"""Apply completed job outcomes onto domain aggregates.

One handler per JobFamily. The family is stored on the job at creation, so
the handler is a table lookup. Handlers:

- resolve their aggregate from the job's own payload, never the result;
  a missing aggregate makes the handler a no-op
- on Failed, mark the aggregate's error state and stop
- on Succeeded, set absolute target state from typed, optional result fields

Applying the same outcome twice leaves the aggregate as applying it once.
"""

from typing import Any, Awaitable, Callable, Optional

import structlog

from control_plane.domain.models import VirtualServer, VoiceToken
from control_plane.domain.types import (
    InstallStatus,
    InstanceStatus,
    VoiceProduct,
    VoiceStatus,
)
from control_plane.jobs.models import Job, JobOutcome
from control_plane.jobs.types import JobFamily, JobStatus
from control_plane.repositories.instances import InstanceStore
from control_plane.repositories.nodes import AgentStore, FirewallStateStore
from control_plane.repositories.schedules import PublicServerStore
from control_plane.repositories.voice import UserStore, VoiceStore
from control_plane.services import disk
from control_plane.services.audit import AuditLogger
from control_plane.services.firewall import merge_rules, parse_port_list, rules_from_ports
from control_plane.services.results.payloads import (
    DiskScanResult,
    FirewallResult,
    NodeDiskStatResult,
    NodeResult,
    ProbeResult,
    VirtualServerResult,
)
from control_plane.utils.time import format_iso

logger = structlog.get_logger(__name__)

Handler = Callable[[Job, JobOutcome], Awaitable[None]]


def payload_id(payload: dict[str, Any], *keys: str) -> Optional[int]:
    """First integer id found under keys (ints or digit strings)."""
    for key in keys:
        value = payload.get(key)
        if isinstance(value, bool):
            continue
        if isinstance(value, int):
            return value
        if isinstance(value, str) and value.strip().isdigit():
            return int(value.strip())
    return None


def failure_message(job: Job, outcome: JobOutcome) -> str:
    for key in ("last_error", "message", "error"):
        value = outcome.output.get(key)
        if isinstance(value, str) and value:
            return value
    return job.error_text or "Job failed."


def _product(job: Job) -> VoiceProduct:
    return VoiceProduct(job.type.split(".", 1)[0])


def _action(job: Job) -> str:
    """Type suffix after the product/area prefix: "ts3.virtual.create" -> "virtual.create"."""
    return job.type.split(".", 1)[1] if "." in job.type else ""


def _requested_action(job: Job) -> str:
    value = job.payload.get("action")
    return value.strip().lower() if isinstance(value, str) else ""


class ResultApplier:
    """Dispatch table from job family to aggregate mutation."""

    def __init__(
        self,
        voice: VoiceStore,
        users: UserStore,
        instances: InstanceStore,
        agents: AgentStore,
        firewall_states: FirewallStateStore,
        servers: PublicServerStore,
        audit: AuditLogger,
    ):
        self._voice = voice
        self._users = users
        self._instances = instances
        self._agents = agents
        self._firewall_states = firewall_states
        self._servers = servers
        self._audit = audit

        self._handlers: dict[JobFamily, Handler] = {
            JobFamily.SSH_KEY: self._apply_ssh_key,
            JobFamily.FIREWALL: self._apply_firewall,
            JobFamily.INSTANCE_QUERY: self._apply_instance_query,
            JobFamily.DISK_SCAN: self._apply_disk_scan,
            JobFamily.NODE_DISK: self._apply_node_disk,
            JobFamily.SERVER_STATUS: self._apply_server_status,
            JobFamily.GAME_INSTANCE: self._apply_game_instance,
            JobFamily.VIRTUAL_SERVER: self._apply_virtual_server,
            JobFamily.VOICE_INSTANCE: self._apply_voice_instance,
            JobFamily.VOICE_NODE: self._apply_node,
            JobFamily.BOT_NODE: self._apply_node,
            JobFamily.GENERIC: self._apply_generic,
        }
        missing = set(JobFamily) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No result handler for families: {sorted(m.value for m in missing)}")

    @property
    def families(self) -> frozenset[JobFamily]:
        return frozenset(self._handlers)

    async def apply(self, job: Job, outcome: JobOutcome) -> None:
        """Apply a terminal outcome for job. Side effects only."""
        handler = self._handlers[job.family]
        log = logger.bind(job_id=str(job.id), job_type=job.type, family=job.family.value)
        await handler(job, outcome)
        log.info("job_result_applied", status=outcome.status.value)

    # =========================================================================
    # Voice and bot nodes
    # =========================================================================

    async def _apply_node(self, job: Job, outcome: JobOutcome) -> None:
        node_id = payload_id(job.payload, "node_id")
        if node_id is None:
            return
        product = _product(job)
        node = await self._voice.get_node(product, node_id)
        if node is None:
            return

        action = _action(job)
        if outcome.status != JobStatus.SUCCEEDED:
            if action == "install":
                node.install_status = InstallStatus.ERROR
            node.last_error = failure_message(job, outcome)
            await self._voice.save_node(node)
            return

        result = NodeResult.from_output(outcome.output)
        if action == "install":
            node.install_status = InstallStatus.INSTALLED
        if action in ("install", "status", "service.action"):
            if result.installed_version is not None:
                node.installed_version = result.installed_version
            if result.running is not None:
                node.running = result.running
        if (
            action in ("status", "service.action")
            and product != VoiceProduct.TS3
            and result.running
            and node.install_status != InstallStatus.INSTALLED
        ):
            node.install_status = InstallStatus.INSTALLED
        if result.last_error is not None:
            node.last_error = result.last_error

        deps = result.dependencies
        if deps is not None and product == VoiceProduct.TS3:
            if deps.installed is not None:
                node.client_installed = deps.installed
            if deps.version is not None:
                node.client_version = deps.version
            if deps.path is not None:
                node.client_path = deps.path

        await self._voice.save_node(node)

    # =========================================================================
    # Voice instances and virtual servers
    # =========================================================================

    async def _apply_voice_instance(self, job: Job, outcome: JobOutcome) -> None:
        product = _product(job)
        instance_id = payload_id(job.payload, "instance_id", f"{product.value}_instance_id")
        if instance_id is None:
            return
        instance = await self._voice.get_instance(product, instance_id)
        if instance is None:
            return

        if outcome.status != JobStatus.SUCCEEDED:
            instance.status = VoiceStatus.ERROR
            await self._voice.save_instance(instance)
            return

        action = _action(job)
        if action == "instance.create":
            instance.status = VoiceStatus.RUNNING
        elif action == "instance.action":
            stopped = _requested_action(job) == "stop"
            instance.status = VoiceStatus.STOPPED if stopped else VoiceStatus.RUNNING
        else:
            return
        await self._voice.save_instance(instance)

    async def _apply_virtual_server(self, job: Job, outcome: JobOutcome) -> None:
        server_id = payload_id(job.payload, "virtual_server_id")
        if server_id is None:
            return
        product = _product(job)
        server = await self._voice.get_virtual_server(product, server_id)
        if server is None:
            return

        if outcome.status != JobStatus.SUCCEEDED:
            server.status = VoiceStatus.ERROR
            await self._voice.save_virtual_server(server)
            return

        result = VirtualServerResult.from_output(outcome.output)
        action = _action(job)
        if action == "virtual.create":
            if result.sid is not None:
                server.sid = result.sid
            if result.voice_port is not None:
                server.voice_port = result.voice_port
            if result.filetransfer_port is not None:
                server.filetransfer_port = result.filetransfer_port
            server.status = VoiceStatus.RUNNING
            await self._voice.save_virtual_server(server)
            await self._activate_token(server, result.token)
        elif action == "virtual.action":
            stopped = _requested_action(job) == "stop"
            server.status = VoiceStatus.STOPPED if stopped else VoiceStatus.RUNNING
            await self._voice.save_virtual_server(server)
        elif action == "virtual.token.rotate":
            await self._activate_token(server, result.token)

    async def _activate_token(self, server: VirtualServer, token: Optional[str]) -> None:
        if token is None:
            return
        active = await self._voice.get_active_token(server.id)
        if active is not None and active.token == token:
            return
        await self._voice.rotate_token(
            VoiceToken(virtual_server_id=server.id, product=server.product, token=token)
        )
        logger.info("voice_token_rotated", virtual_server_id=server.id)

    # =========================================================================
    # Admin SSH keys
    # =========================================================================

    async def _apply_ssh_key(self, job: Job, outcome: JobOutcome) -> None:
        user_id = payload_id(job.payload, "user_id")
        public_key = job.payload.get("public_key")
        if user_id is None or not isinstance(public_key, str) or not public_key.strip():
            return
        user = await self._users.get(user_id)
        if user is None:
            return

        pending = user.ssh_public_key_pending
        if pending is not None and pending.strip() != public_key.strip():
            return

        if outcome.status == JobStatus.SUCCEEDED:
            user.ssh_public_key = public_key
            user.ssh_public_key_pending = None
            await self._users.save(user)

    # =========================================================================
    # Game instances
    # =========================================================================

    async def _apply_game_instance(self, job: Job, outcome: JobOutcome) -> None:
        instance_id = payload_id(job.payload, "instance_id")
        if instance_id is None:
            return
        instance = await self._instances.get(instance_id)
        if instance is None or instance.status == InstanceStatus.SUSPENDED:
            return

        if outcome.status != JobStatus.SUCCEEDED:
            instance.status = InstanceStatus.ERROR
        elif job.type == "instance.stop":
            instance.status = InstanceStatus.STOPPED
        else:
            instance.status = InstanceStatus.RUNNING
        await self._instances.save(instance)

    # =========================================================================
    # Firewall
    # =========================================================================

    async def _apply_firewall(self, job: Job, outcome: JobOutcome) -> None:
        if outcome.status != JobStatus.SUCCEEDED:
            return
        agent_id = job.agent_id or job.payload.get("agent_id")
        if not isinstance(agent_id, str) or not agent_id:
            return
        if await self._agents.get(agent_id) is None:
            return

        opening = job.type == "firewall.open_ports"
        result = FirewallResult.from_output(outcome.output)
        rules = result.rules
        if not rules:
            ports = result.ports or parse_port_list(job.payload.get("ports"))
            rules = rules_from_ports(ports, "open" if opening else "closed")
        if not rules:
            return

        state = await self._firewall_states.get(agent_id)
        state, changed = merge_rules(state, agent_id, rules, outcome.completed_at)
        if not changed:
            return
        await self._firewall_states.save(state)
        await self._audit.log(
            None,
            "firewall.state_updated",
            {
                "agent_id": agent_id,
                "action": "open_ports" if opening else "close_ports",
                "ports": sorted({rule.port for rule in rules}),
                "job_id": str(job.id),
            },
        )

    # =========================================================================
    # Disk
    # =========================================================================

    async def _apply_disk_scan(self, job: Job, outcome: JobOutcome) -> None:
        instance_id = payload_id(job.payload, "instance_id")
        if instance_id is None:
            return
        instance = await self._instances.get(instance_id)
        if instance is None or instance.node_id != job.agent_id:
            return

        if outcome.status != JobStatus.SUCCEEDED:
            message = DiskScanResult.from_output(outcome.output).message or "Disk scan failed."
            instance.disk_last_scanned_at = outcome.completed_at
            instance.disk_scan_error = message
            await self._instances.save(instance)
            await self._audit.log(
                None,
                "instance.disk.scan_failed",
                {
                    "instance_id": instance.id,
                    "node_id": instance.node_id,
                    "job_id": str(job.id),
                    "message": message,
                },
            )
            return

        result = DiskScanResult.from_output(outcome.output)
        if result.used_bytes is None:
            return
        instance.disk_used_bytes = result.used_bytes
        instance.disk_last_scanned_at = outcome.completed_at
        instance.disk_scan_error = None
        await self._instances.save(instance)
        await self._audit.log(
            None,
            "instance.disk.scanned",
            {
                "instance_id": instance.id,
                "node_id": instance.node_id,
                "job_id": str(job.id),
                "disk_used_bytes": result.used_bytes,
                "inode_count": result.inode_count,
                "completed_at": format_iso(outcome.completed_at),
            },
        )

    async def _apply_node_disk(self, job: Job, outcome: JobOutcome) -> None:
        node_id = job.payload.get("node_id") or job.payload.get("agent_id")
        if not isinstance(node_id, str) or not node_id:
            return
        node = await self._agents.get(node_id)
        if node is None:
            return

        result = NodeDiskStatResult.from_output(outcome.output)
        if outcome.status != JobStatus.SUCCEEDED:
            await self._audit.log(
                None,
                "node.disk.stat_failed",
                {
                    "node_id": node.id,
                    "job_id": str(job.id),
                    "message": result.message or "Disk stat failed.",
                },
            )
            return

        if result.free_bytes is None or result.free_percent is None:
            return

        was_active, is_active = disk.update_disk_stat(
            node, result.free_bytes, result.free_percent, outcome.completed_at
        )
        override_cleared = (
            node.disk_protection_override_until is not None
            and result.free_percent >= node.disk_protection_threshold_percent
        )
        if override_cleared:
            node.disk_protection_override_until = None
        await self._agents.save(node)

        await self._audit.log(
            None,
            "node.disk.stat_updated",
            {
                "node_id": node.id,
                "job_id": str(job.id),
                "free_bytes": result.free_bytes,
                "free_percent": result.free_percent,
                "checked_at": format_iso(outcome.completed_at),
            },
        )
        if override_cleared:
            await self._audit.log(
                None,
                "node.disk.protection_override_cleared",
                {"node_id": node.id, "free_percent": result.free_percent},
            )
        if was_active != is_active:
            await self._audit.log(
                None,
                "node.disk.protection_state_changed",
                {
                    "node_id": node.id,
                    "previous": was_active,
                    "current": is_active,
                    "free_percent": result.free_percent,
                    "free_bytes": result.free_bytes,
                },
            )

    # =========================================================================
    # Live status probes
    # =========================================================================

    @staticmethod
    def _probe_status(outcome: JobOutcome, result: ProbeResult) -> str:
        if outcome.status == JobStatus.SUCCEEDED:
            return result.status or "online"
        if outcome.status == JobStatus.FAILED:
            return "error"
        return "unknown"

    async def _apply_server_status(self, job: Job, outcome: JobOutcome) -> None:
        server_id = payload_id(job.payload, "server_id")
        if server_id is None:
            return
        server = await self._servers.get(server_id)
        if server is None:
            return

        result = ProbeResult.from_output(outcome.output)
        status = self._probe_status(outcome, result)
        server.status_cache = {
            **server.status_cache,
            "status": status,
            "players": result.players,
            "max_players": result.max_players,
            "map": result.map,
            "checked_at": format_iso(outcome.completed_at),
        }
        server.last_checked_at = outcome.completed_at
        await self._servers.save(server)
        await self._audit.log(
            None,
            "public_server.status_checked",
            {
                "server_id": server.id,
                "job_id": str(job.id),
                "agent_id": job.agent_id,
                "status": status,
            },
        )

    async def _apply_instance_query(self, job: Job, outcome: JobOutcome) -> None:
        instance_id = payload_id(job.payload, "instance_id")
        if instance_id is None:
            return
        instance = await self._instances.get(instance_id)
        if instance is None:
            return

        result = ProbeResult.from_output(outcome.output)
        status = self._probe_status(outcome, result)
        cache = {
            **instance.query_status_cache,
            "status": status,
            "players": result.players,
            "max_players": result.max_players,
            "message": result.message,
            "checked_at": format_iso(outcome.completed_at),
            "source": "agent",
        }
        cache.pop("queued_at", None)
        instance.query_status_cache = cache
        instance.query_checked_at = outcome.completed_at
        await self._instances.save(instance)
        await self._audit.log(
            None,
            "instance.query.checked",
            {
                "instance_id": instance.id,
                "job_id": str(job.id),
                "agent_id": job.agent_id,
                "status": status,
            },
        )

    async def _apply_generic(self, job: Job, outcome: JobOutcome) -> None:
        logger.debug("job_result_no_aggregate", job_id=str(job.id), job_type=job.type)
