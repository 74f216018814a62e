"""Agent (node) and observed firewall state storage."""

from abc import ABC, abstractmethod
from typing import Optional

from control_plane.domain.models import Agent, FirewallRule, FirewallState
from control_plane.repositories.utils import json_dict, json_list, to_jsonb


class AgentStore(ABC):
    @abstractmethod
    async def get(self, agent_id: str) -> Optional[Agent]:
        ...

    @abstractmethod
    async def list_all(self) -> list[Agent]:
        ...

    @abstractmethod
    async def save(self, agent: Agent) -> None:
        """Persist metadata and disk-protection override."""


class FirewallStateStore(ABC):
    @abstractmethod
    async def get(self, agent_id: str) -> Optional[FirewallState]:
        ...

    @abstractmethod
    async def list_all(self) -> list[FirewallState]:
        ...

    @abstractmethod
    async def save(self, state: FirewallState) -> None:
        ...


class AgentRepository(AgentStore):
    def __init__(self, pool):
        self._pool = pool

    async def get(self, agent_id: str) -> Optional[Agent]:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM agents WHERE id = $1", agent_id)
        return self._row_to_agent(row) if row else None

    async def list_all(self) -> list[Agent]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch("SELECT * FROM agents ORDER BY id")
        return [self._row_to_agent(row) for row in rows]

    async def save(self, agent: Agent) -> None:
        query = """
            UPDATE agents SET
                metadata = $2::jsonb,
                disk_protection_override_until = $3
            WHERE id = $1
        """
        async with self._pool.acquire() as conn:
            await conn.execute(
                query,
                agent.id,
                to_jsonb(agent.metadata),
                agent.disk_protection_override_until,
            )

    def _row_to_agent(self, row) -> Agent:
        return Agent(
            id=row["id"],
            last_heartbeat_ip=row["last_heartbeat_ip"],
            metadata=json_dict(row["metadata"]),
            disk_scan_interval_seconds=row["disk_scan_interval_seconds"],
            disk_warning_percent=row["disk_warning_percent"],
            disk_hard_block_percent=row["disk_hard_block_percent"],
            disk_protection_threshold_percent=row["disk_protection_threshold_percent"],
            disk_protection_override_until=row["disk_protection_override_until"],
        )


class FirewallStateRepository(FirewallStateStore):
    def __init__(self, pool):
        self._pool = pool

    async def get(self, agent_id: str) -> Optional[FirewallState]:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM firewall_states WHERE agent_id = $1", agent_id
            )
        return self._row_to_state(row) if row else None

    async def list_all(self) -> list[FirewallState]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch("SELECT * FROM firewall_states ORDER BY agent_id")
        return [self._row_to_state(row) for row in rows]

    async def save(self, state: FirewallState) -> None:
        query = """
            INSERT INTO firewall_states (agent_id, rules, revision, updated_at)
            VALUES ($1, $2::jsonb, $3, $4)
            ON CONFLICT (agent_id) DO UPDATE SET
                rules = EXCLUDED.rules,
                revision = EXCLUDED.revision,
                updated_at = EXCLUDED.updated_at
        """
        async with self._pool.acquire() as conn:
            await conn.execute(
                query,
                state.agent_id,
                to_jsonb([rule.to_dict() for rule in state.rules]),
                state.revision,
                state.updated_at,
            )

    def _row_to_state(self, row) -> FirewallState:
        rules = [
            FirewallRule(port=int(r["port"]), protocol=r["protocol"], status=r["status"])
            for r in json_list(row["rules"])
            if isinstance(r, dict)
        ]
        return FirewallState(
            agent_id=row["agent_id"],
            rules=rules,
            revision=row["revision"],
            updated_at=row["updated_at"],
        )
