"""Live status query cache for game instances.

Two windows govern a snapshot request:

- freshness (cache TTL): a result checked within it is returned as-is
- queue cooldown: a probe queued within it is not queued again

Backend-mode queries run the protocol adapter inline; agent-mode queries
dispatch an `instance.query.check` job and return the stale snapshot.
"""

from datetime import datetime, timedelta
from typing import Any, Optional

import structlog

from control_plane.domain.models import Instance, PortBlock
from control_plane.domain.types import InstanceStatus
from control_plane.jobs.dispatcher import JobDispatcher
from control_plane.repositories.instances import InstanceStore, PortBlockStore
from control_plane.repositories.nodes import AgentStore
from control_plane.services.audit import AuditLogger
from control_plane.services.query.a2s import A2SQueryAdapter
from control_plane.services.query.base import QueryAdapter, QueryContext, as_int
from control_plane.services.query.http import HttpQueryAdapter
from control_plane.services.query.none import NoneQueryAdapter
from control_plane.services.query.rcon import RconQueryAdapter
from control_plane.utils.time import format_iso, parse_iso, utc_now

logger = structlog.get_logger(__name__)

QUERY_JOB_TYPE = "instance.query.check"


def default_adapters(timeout: float = 5.0) -> list[QueryAdapter]:
    """Adapters in selection priority order."""
    return [
        HttpQueryAdapter(timeout=timeout),
        A2SQueryAdapter(timeout=timeout),
        RconQueryAdapter(timeout=timeout),
        NoneQueryAdapter(),
    ]


def resolve_query_config(instance: Instance) -> tuple[str, str, dict[str, Any]]:
    """Return (type, via, config) from the instance's template requirements."""
    requirements = instance.template_requirements
    config = requirements.get("query")
    config = dict(config) if isinstance(config, dict) else {}

    query_type = str(config.get("type") or requirements.get("query_type") or "none")
    query_type = query_type.strip().lower() or "none"
    via = str(config.get("via") or config.get("mode") or "agent").strip().lower() or "agent"
    return query_type, via, config


def resolve_port(
    block: Optional[PortBlock], required_ports: list[dict[str, Any]], role: str
) -> Optional[int]:
    """Port at the index of the first required-port definition named role."""
    if block is None:
        return None
    for index, definition in enumerate(required_ports):
        if index >= len(block.ports):
            break
        name = str(definition.get("name") or "").lower() if isinstance(definition, dict) else ""
        if name == role:
            return int(block.ports[index])
    return None


def build_snapshot(
    cache: dict[str, Any], checked_at: Optional[datetime], query_type: str
) -> dict[str, Any]:
    return {
        "available": query_type != "none",
        "status": cache.get("status") or "unknown",
        "players": as_int(cache.get("players")),
        "max_players": as_int(cache.get("max_players")),
        "checked_at": format_iso(checked_at),
        "queued_at": cache.get("queued_at"),
    }


class InstanceQueryService:
    """Cached live status with queue-on-stale."""

    def __init__(
        self,
        instances: InstanceStore,
        port_blocks: PortBlockStore,
        agents: AgentStore,
        dispatcher: JobDispatcher,
        audit: AuditLogger,
        adapters: Optional[list[QueryAdapter]] = None,
        cache_ttl_seconds: int = 15,
        queue_ttl_seconds: int = 12,
    ):
        self._instances = instances
        self._port_blocks = port_blocks
        self._agents = agents
        self._dispatcher = dispatcher
        self._audit = audit
        self._adapters = adapters if adapters is not None else default_adapters()
        self._cache_ttl = timedelta(seconds=cache_ttl_seconds)
        self._queue_ttl = timedelta(seconds=queue_ttl_seconds)

    def resolve_adapter(self, query_type: str) -> QueryAdapter:
        for adapter in self._adapters:
            if adapter.supports(query_type):
                return adapter
        return NoneQueryAdapter()

    def is_fresh(self, checked_at: Optional[datetime], now: datetime) -> bool:
        return checked_at is not None and checked_at >= now - self._cache_ttl

    def in_queue_cooldown(self, cache: dict[str, Any], now: datetime) -> bool:
        queued_at = parse_iso(cache.get("queued_at"))
        return queued_at is not None and queued_at >= now - self._queue_ttl

    async def get_snapshot(
        self,
        instance: Instance,
        queue_if_stale: bool = False,
        now: Optional[datetime] = None,
    ) -> dict[str, Any]:
        """Return the instance's status snapshot, refreshing it when stale.

        Args:
            instance: Instance to report on
            queue_if_stale: Refresh (inline or via a probe job) when stale
            now: Evaluation time (defaults to current UTC time)

        Returns:
            {available, status, players, max_players, checked_at, queued_at}
        """
        now = now or utc_now()
        query_type, via, config = resolve_query_config(instance)
        cached = build_snapshot(instance.query_status_cache, instance.query_checked_at, query_type)

        if self.is_fresh(instance.query_checked_at, now):
            return cached
        if not queue_if_stale or query_type == "none":
            return cached

        if via == "backend":
            return await self._run_inline(instance, query_type, config, now)

        if instance.status != InstanceStatus.RUNNING:
            return cached
        if self.in_queue_cooldown(instance.query_status_cache, now):
            return cached

        await self._queue_probe(instance, query_type, config, now)
        return build_snapshot(instance.query_status_cache, instance.query_checked_at, query_type)

    async def build_context(self, instance: Instance, config: dict[str, Any]) -> QueryContext:
        block = await self._port_blocks.get_for_instance(instance.id)
        agent = await self._agents.get(instance.node_id)
        required = instance.required_ports
        return QueryContext(
            host=agent.last_heartbeat_ip if agent else None,
            game_port=resolve_port(block, required, "game"),
            query_port=resolve_port(block, required, "query"),
            rcon_port=resolve_port(block, required, "rcon"),
            config=config,
        )

    async def _run_inline(
        self, instance: Instance, query_type: str, config: dict[str, Any], now: datetime
    ) -> dict[str, Any]:
        context = await self.build_context(instance, config)
        adapter = self.resolve_adapter(query_type)
        result = await adapter.query(instance, context)

        instance.query_checked_at = now
        instance.query_status_cache = result.to_cache(now, "backend")
        await self._instances.save(instance)
        logger.info(
            "instance_query_checked_inline",
            instance_id=instance.id,
            adapter=adapter.name,
            status=result.status,
        )
        return build_snapshot(instance.query_status_cache, instance.query_checked_at, query_type)

    async def _queue_probe(
        self, instance: Instance, query_type: str, config: dict[str, Any], now: datetime
    ) -> None:
        context = await self.build_context(instance, config)
        payload = {
            "instance_id": str(instance.id),
            "customer_id": str(instance.customer_id),
            "agent_id": instance.node_id,
            "query_type": query_type,
            "host": context.host,
            "game_port": str(context.game_port) if context.game_port is not None else None,
            "query_port": str(context.query_port) if context.query_port is not None else None,
            "rcon_port": str(context.rcon_port) if context.rcon_port is not None else None,
            "config": config,
            "last_checked_at": format_iso(instance.query_checked_at) or "never",
        }
        job = await self._dispatcher.dispatch_with_failure_logging(
            instance.node_id, QUERY_JOB_TYPE, payload, now=now
        )

        cache = dict(instance.query_status_cache)
        cache["status"] = "queued"
        cache["queued_at"] = format_iso(now)
        instance.query_status_cache = cache
        await self._instances.save(instance)

        await self._audit.log(
            None,
            "instance.query.queued",
            {"instance_id": instance.id, "job_id": str(job.id), "query_type": query_type},
            created_at=now,
        )
        logger.info(
            "instance_query_queued",
            instance_id=instance.id,
            job_id=str(job.id),
            query_type=query_type,
        )
