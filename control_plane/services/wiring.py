"""Service container built from a connection pool and settings."""

from dataclasses import dataclass

from control_plane.config import Settings
from control_plane.jobs.dispatcher import JobDispatcher
from control_plane.jobs.leases import LeaseManager
from control_plane.reconcile.disk_enforce import DiskEnforcer
from control_plane.reconcile.disk_scan import DiskScanReconciler
from control_plane.reconcile.firewall import FirewallReconciler
from control_plane.reconcile.leases import LeaseReaper
from control_plane.reconcile.schedules import ScheduleRunner
from control_plane.reconcile.server_status import ServerStatusReconciler
from control_plane.repositories.audit import AuditRepository, AuditStore
from control_plane.repositories.instances import (
    InstanceRepository,
    InstanceStore,
    PortBlockRepository,
    PortBlockStore,
)
from control_plane.repositories.jobs import JobRepository, JobStore
from control_plane.repositories.nodes import (
    AgentRepository,
    AgentStore,
    FirewallStateRepository,
    FirewallStateStore,
)
from control_plane.repositories.schedules import (
    PublicServerRepository,
    PublicServerStore,
    ScheduleRepository,
    ScheduleStore,
)
from control_plane.repositories.voice import (
    UserRepository,
    UserStore,
    VoiceRepository,
    VoiceStore,
)
from control_plane.services.audit import AuditLogger
from control_plane.services.query import InstanceQueryService, default_adapters
from control_plane.services.results import ResultApplier


@dataclass
class Stores:
    jobs: JobStore
    audit: AuditStore
    agents: AgentStore
    firewall_states: FirewallStateStore
    instances: InstanceStore
    port_blocks: PortBlockStore
    schedules: ScheduleStore
    servers: PublicServerStore
    voice: VoiceStore
    users: UserStore


@dataclass
class Services:
    stores: Stores
    audit: AuditLogger
    dispatcher: JobDispatcher
    applier: ResultApplier
    leases: LeaseManager
    queries: InstanceQueryService
    firewall: FirewallReconciler
    disk_enforce: DiskEnforcer
    disk_scan: DiskScanReconciler
    schedules: ScheduleRunner
    server_status: ServerStatusReconciler
    lease_reaper: LeaseReaper

    @property
    def loops(self) -> dict:
        """Reconciliation loops by CLI name, in run order."""
        return {
            "reap-leases": self.lease_reaper,
            "reconcile-firewall": self.firewall,
            "reconcile-disk-scan": self.disk_scan,
            "enforce-disk": self.disk_enforce,
            "run-schedules": self.schedules,
            "reconcile-server-status": self.server_status,
        }


def postgres_stores(pool) -> Stores:
    return Stores(
        jobs=JobRepository(pool),
        audit=AuditRepository(pool),
        agents=AgentRepository(pool),
        firewall_states=FirewallStateRepository(pool),
        instances=InstanceRepository(pool),
        port_blocks=PortBlockRepository(pool),
        schedules=ScheduleRepository(pool),
        servers=PublicServerRepository(pool),
        voice=VoiceRepository(pool),
        users=UserRepository(pool),
    )


def build_services(stores: Stores, settings: Settings) -> Services:
    audit = AuditLogger(stores.audit)
    dispatcher = JobDispatcher(stores.jobs)
    applier = ResultApplier(
        voice=stores.voice,
        users=stores.users,
        instances=stores.instances,
        agents=stores.agents,
        firewall_states=stores.firewall_states,
        servers=stores.servers,
        audit=audit,
    )
    leases = LeaseManager(
        stores.jobs,
        applier,
        lease_seconds=settings.job_lease_seconds,
        max_recoveries=settings.job_max_lease_recoveries,
    )
    queries = InstanceQueryService(
        instances=stores.instances,
        port_blocks=stores.port_blocks,
        agents=stores.agents,
        dispatcher=dispatcher,
        audit=audit,
        adapters=default_adapters(timeout=settings.query_timeout_seconds),
        cache_ttl_seconds=settings.query_cache_ttl_seconds,
        queue_ttl_seconds=settings.query_queue_ttl_seconds,
    )
    return Services(
        stores=stores,
        audit=audit,
        dispatcher=dispatcher,
        applier=applier,
        leases=leases,
        queries=queries,
        firewall=FirewallReconciler(stores.port_blocks, stores.firewall_states, dispatcher, audit),
        disk_enforce=DiskEnforcer(stores.instances, stores.agents, dispatcher, audit),
        disk_scan=DiskScanReconciler(
            stores.agents,
            stores.instances,
            dispatcher,
            batch_limit=settings.disk_scan_batch_limit,
        ),
        schedules=ScheduleRunner(
            stores.schedules,
            stores.instances,
            stores.agents,
            dispatcher,
            audit,
            batch_limit=settings.schedule_batch_limit,
        ),
        server_status=ServerStatusReconciler(
            stores.servers,
            dispatcher,
            audit,
            batch_limit=settings.server_status_batch_limit,
        ),
        lease_reaper=LeaseReaper(leases),
    )
