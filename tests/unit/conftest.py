"""In-memory stores and shared fixtures for unit tests."""

from datetime import datetime, timezone
from typing import Any, Optional

import pytest

from control_plane.config import Settings
from control_plane.domain.models import (
    AdminUser,
    Agent,
    AuditEvent,
    FirewallState,
    Instance,
    PortBlock,
    PublicServer,
    Schedule,
    VirtualServer,
    VoiceInstance,
    VoiceNode,
    VoiceToken,
)
from control_plane.domain.types import VoiceProduct
from control_plane.repositories.audit import AuditStore, HashFn
from control_plane.repositories.instances import InstanceStore, PortBlockStore
from control_plane.repositories.jobs import InMemoryJobStore
from control_plane.repositories.nodes import AgentStore, FirewallStateStore
from control_plane.repositories.schedules import PublicServerStore, ScheduleStore
from control_plane.repositories.voice import UserStore, VoiceStore
from control_plane.services.wiring import Services, Stores, build_services


# =============================================================================
# Fake stores
# =============================================================================


class FakeAgentStore(AgentStore):
    def __init__(self) -> None:
        self.agents: dict[str, Agent] = {}

    def add(self, agent: Agent) -> Agent:
        self.agents[agent.id] = agent
        return agent

    async def get(self, agent_id: str) -> Optional[Agent]:
        return self.agents.get(agent_id)

    async def list_all(self) -> list[Agent]:
        return sorted(self.agents.values(), key=lambda a: a.id)

    async def save(self, agent: Agent) -> None:
        self.agents[agent.id] = agent


class FakeFirewallStateStore(FirewallStateStore):
    def __init__(self) -> None:
        self.states: dict[str, FirewallState] = {}
        self.saves = 0

    def add(self, state: FirewallState) -> FirewallState:
        self.states[state.agent_id] = state
        return state

    async def get(self, agent_id: str) -> Optional[FirewallState]:
        return self.states.get(agent_id)

    async def list_all(self) -> list[FirewallState]:
        return list(self.states.values())

    async def save(self, state: FirewallState) -> None:
        self.saves += 1
        self.states[state.agent_id] = state


class FakeInstanceStore(InstanceStore):
    def __init__(self) -> None:
        self.instances: dict[int, Instance] = {}

    def add(self, instance: Instance) -> Instance:
        self.instances[instance.id] = instance
        return instance

    async def get(self, instance_id: int) -> Optional[Instance]:
        return self.instances.get(instance_id)

    async def list_all(self) -> list[Instance]:
        return sorted(self.instances.values(), key=lambda i: i.id)

    async def find_scan_candidates(
        self, node_id: str, scanned_before: datetime, limit: int
    ) -> list[Instance]:
        candidates = [
            i
            for i in await self.list_all()
            if i.node_id == node_id
            and (i.disk_last_scanned_at is None or i.disk_last_scanned_at < scanned_before)
        ]
        return candidates[:limit]

    async def save(self, instance: Instance) -> None:
        self.instances[instance.id] = instance


class FakePortBlockStore(PortBlockStore):
    def __init__(self) -> None:
        self.blocks: list[PortBlock] = []

    def add(self, block: PortBlock) -> PortBlock:
        self.blocks.append(block)
        return block

    async def list_assigned(self) -> list[PortBlock]:
        return [b for b in self.blocks if b.instance_id is not None]

    async def get_for_instance(self, instance_id: int) -> Optional[PortBlock]:
        for block in self.blocks:
            if block.instance_id == instance_id:
                return block
        return None


class FakeScheduleStore(ScheduleStore):
    def __init__(self) -> None:
        self.schedules: dict[int, Schedule] = {}

    def add(self, schedule: Schedule) -> Schedule:
        self.schedules[schedule.id] = schedule
        return schedule

    async def list_enabled(self, limit: int) -> list[Schedule]:
        enabled = [s for s in self.schedules.values() if s.enabled]
        return sorted(enabled, key=lambda s: s.id)[:limit]

    async def mark_queued(self, schedule_id: int, queued_at: datetime) -> None:
        self.schedules[schedule_id].last_queued_at = queued_at


class FakePublicServerStore(PublicServerStore):
    def __init__(self) -> None:
        self.servers: dict[int, PublicServer] = {}

    def add(self, server: PublicServer) -> PublicServer:
        self.servers[server.id] = server
        return server

    async def get(self, server_id: int) -> Optional[PublicServer]:
        return self.servers.get(server_id)

    async def find_due_for_check(self, now: datetime, limit: int) -> list[PublicServer]:
        due = [
            s
            for s in self.servers.values()
            if s.next_check_at is None or s.next_check_at <= now
        ]
        return sorted(due, key=lambda s: s.id)[:limit]

    async def save(self, server: PublicServer) -> None:
        self.servers[server.id] = server


class FakeVoiceStore(VoiceStore):
    def __init__(self) -> None:
        self.nodes: dict[tuple[VoiceProduct, int], VoiceNode] = {}
        self.instances: dict[tuple[VoiceProduct, int], VoiceInstance] = {}
        self.virtual_servers: dict[tuple[VoiceProduct, int], VirtualServer] = {}
        self.tokens: list[VoiceToken] = []

    def add_node(self, node: VoiceNode) -> VoiceNode:
        self.nodes[(node.product, node.id)] = node
        return node

    def add_instance(self, instance: VoiceInstance) -> VoiceInstance:
        self.instances[(instance.product, instance.id)] = instance
        return instance

    def add_virtual_server(self, server: VirtualServer) -> VirtualServer:
        self.virtual_servers[(server.product, server.id)] = server
        return server

    def active_tokens(self, virtual_server_id: int) -> list[VoiceToken]:
        return [
            t for t in self.tokens if t.virtual_server_id == virtual_server_id and t.active
        ]

    async def get_node(self, product: VoiceProduct, node_id: int) -> Optional[VoiceNode]:
        return self.nodes.get((product, node_id))

    async def save_node(self, node: VoiceNode) -> None:
        self.nodes[(node.product, node.id)] = node

    async def get_instance(
        self, product: VoiceProduct, instance_id: int
    ) -> Optional[VoiceInstance]:
        return self.instances.get((product, instance_id))

    async def save_instance(self, instance: VoiceInstance) -> None:
        self.instances[(instance.product, instance.id)] = instance

    async def get_virtual_server(
        self, product: VoiceProduct, server_id: int
    ) -> Optional[VirtualServer]:
        return self.virtual_servers.get((product, server_id))

    async def save_virtual_server(self, server: VirtualServer) -> None:
        self.virtual_servers[(server.product, server.id)] = server

    async def get_active_token(self, virtual_server_id: int) -> Optional[VoiceToken]:
        active = self.active_tokens(virtual_server_id)
        return active[-1] if active else None

    async def rotate_token(self, new_token: VoiceToken) -> VoiceToken:
        for token in self.active_tokens(new_token.virtual_server_id):
            token.active = False
            token.deactivated_at = new_token.created_at
        new_token.id = len(self.tokens) + 1
        new_token.active = True
        self.tokens.append(new_token)
        return new_token


class FakeUserStore(UserStore):
    def __init__(self) -> None:
        self.users: dict[int, AdminUser] = {}

    def add(self, user: AdminUser) -> AdminUser:
        self.users[user.id] = user
        return user

    async def get(self, user_id: int) -> Optional[AdminUser]:
        return self.users.get(user_id)

    async def save(self, user: AdminUser) -> None:
        self.users[user.id] = user


class FakeAuditStore(AuditStore):
    def __init__(self) -> None:
        self.events: list[AuditEvent] = []

    def actions(self) -> list[str]:
        return [e.action for e in self.events]

    def find(self, action: str) -> list[AuditEvent]:
        return [e for e in self.events if e.action == action]

    async def append(
        self,
        action: str,
        actor_id: Optional[int],
        payload: dict[str, Any],
        created_at: datetime,
        compute_hash: HashFn,
    ) -> AuditEvent:
        prev = self.events[-1].hash_current if self.events else None
        event = AuditEvent(
            id=len(self.events) + 1,
            action=action,
            actor_id=actor_id,
            payload=payload,
            created_at=created_at,
            hash_prev=prev,
            hash_current=compute_hash(prev),
        )
        self.events.append(event)
        return event

    async def list_events(self, limit: int = 10_000) -> list[AuditEvent]:
        return self.events[:limit]


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def now() -> datetime:
    return datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        database_url=None,
        admin_token="test-admin-token",
        agent_api_token=None,
        sentry_dsn=None,
    )


@pytest.fixture
def stores() -> Stores:
    return Stores(
        jobs=InMemoryJobStore(),
        audit=FakeAuditStore(),
        agents=FakeAgentStore(),
        firewall_states=FakeFirewallStateStore(),
        instances=FakeInstanceStore(),
        port_blocks=FakePortBlockStore(),
        schedules=FakeScheduleStore(),
        servers=FakePublicServerStore(),
        voice=FakeVoiceStore(),
        users=FakeUserStore(),
    )


@pytest.fixture
def services(stores: Stores, settings: Settings) -> Services:
    return build_services(stores, settings)


@pytest.fixture
def fail_dispatch(services: Services, monkeypatch):
    """Make dispatch raise for payloads whose `field` equals `value`.

    Other payloads dispatch normally. `monkeypatch.undo()` restores the
    real dispatcher.
    """

    def install(field: str, value: str) -> None:
        dispatch = services.dispatcher.dispatch_with_failure_logging

        async def wrapper(agent_id, job_type, payload, now=None):
            if payload.get(field) == value:
                raise RuntimeError("db down")
            return await dispatch(agent_id, job_type, payload, now=now)

        monkeypatch.setattr(services.dispatcher, "dispatch_with_failure_logging", wrapper)

    return install
