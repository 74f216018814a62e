"""Domain aggregates read and mutated by the orchestration core."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from control_plane.domain.types import (
    DiskState,
    InstallStatus,
    InstanceStatus,
    ScheduleAction,
    UpdatePolicy,
    VoiceProduct,
    VoiceStatus,
)

MIN_DISK_SCAN_INTERVAL_SECONDS = 30
MIN_HARD_BLOCK_PERCENT = 100


@dataclass
class Agent:
    """A remote execution node."""

    id: str
    last_heartbeat_ip: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    # Disk policy
    disk_scan_interval_seconds: int = 180
    disk_warning_percent: int = 85
    disk_hard_block_percent: int = 120
    disk_protection_threshold_percent: float = 5.0
    disk_protection_override_until: Optional[datetime] = None

    def __post_init__(self) -> None:
        self.disk_scan_interval_seconds = max(
            MIN_DISK_SCAN_INTERVAL_SECONDS, self.disk_scan_interval_seconds
        )
        self.disk_hard_block_percent = max(
            MIN_HARD_BLOCK_PERCENT, self.disk_hard_block_percent
        )


@dataclass
class PortBlock:
    """Ports allocated from an agent's pool, optionally bound to an instance."""

    id: int
    agent_id: str
    ports: list[int]
    instance_id: Optional[int] = None


@dataclass
class FirewallRule:
    port: int
    protocol: str  # "tcp" | "udp"
    status: str  # "open" | "closed"

    @property
    def key(self) -> str:
        return f"{self.port}/{self.protocol}"

    def to_dict(self) -> dict[str, Any]:
        return {"port": self.port, "protocol": self.protocol, "status": self.status}


@dataclass
class FirewallState:
    """Ports an agent last reported as open."""

    agent_id: str
    rules: list[FirewallRule] = field(default_factory=list)
    revision: int = 0
    updated_at: Optional[datetime] = None

    @property
    def ports(self) -> list[int]:
        return sorted({rule.port for rule in self.rules if rule.status == "open"})


@dataclass
class Instance:
    """A customer game-server instance hosted on an agent."""

    id: int
    customer_id: int
    node_id: str
    status: InstanceStatus = InstanceStatus.PROVISIONING
    update_policy: UpdatePolicy = UpdatePolicy.MANUAL
    locked_build_id: Optional[str] = None
    locked_version: Optional[str] = None
    instance_dir: Optional[str] = None

    # Disk
    disk_state: DiskState = DiskState.OK
    disk_used_bytes: int = 0
    disk_limit_bytes: int = 0
    disk_last_scanned_at: Optional[datetime] = None
    disk_scan_error: Optional[str] = None

    # Template requirements (query config, port roles)
    template_requirements: dict[str, Any] = field(default_factory=dict)
    required_ports: list[dict[str, Any]] = field(default_factory=list)

    # Live query cache
    query_status_cache: dict[str, Any] = field(default_factory=dict)
    query_checked_at: Optional[datetime] = None


@dataclass
class Schedule:
    """Cron-driven action for an instance."""

    id: int
    instance_id: int
    action: ScheduleAction
    cron_expression: str
    time_zone: str = "UTC"
    enabled: bool = True
    last_queued_at: Optional[datetime] = None

    # Backup schedules only
    backup_definition_id: Optional[int] = None
    retention_days: Optional[int] = None
    retention_count: Optional[int] = None


@dataclass
class PublicServer:
    """An externally hosted server whose status is probed periodically."""

    id: int
    name: str
    game_key: str
    ip: str
    port: int
    query_type: str
    agent_id: str
    query_port: Optional[int] = None
    check_interval_seconds: int = 60
    status_cache: dict[str, Any] = field(default_factory=dict)
    last_checked_at: Optional[datetime] = None
    next_check_at: Optional[datetime] = None


@dataclass
class VoiceNode:
    """A voice-server or bot host installed on an agent."""

    id: int
    product: VoiceProduct
    agent_id: str
    install_status: InstallStatus = InstallStatus.PENDING
    installed_version: Optional[str] = None
    running: bool = False
    last_error: Optional[str] = None

    # ts3 client dependency
    client_installed: bool = False
    client_version: Optional[str] = None
    client_path: Optional[str] = None


@dataclass
class VoiceInstance:
    id: int
    product: VoiceProduct
    status: VoiceStatus = VoiceStatus.PROVISIONING


@dataclass
class VirtualServer:
    id: int
    product: VoiceProduct
    status: VoiceStatus = VoiceStatus.PROVISIONING
    sid: Optional[int] = None
    voice_port: Optional[int] = None
    filetransfer_port: Optional[int] = None


@dataclass
class VoiceToken:
    """Join/privilege token for a virtual server. At most one active per server."""

    virtual_server_id: int
    product: VoiceProduct
    token: str
    role: str = "owner"
    active: bool = True
    id: Optional[int] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    deactivated_at: Optional[datetime] = None


@dataclass
class AdminUser:
    id: int
    ssh_public_key: Optional[str] = None
    ssh_public_key_pending: Optional[str] = None


@dataclass
class AuditEvent:
    """Append-only, hash-chained audit record."""

    action: str
    payload: dict[str, Any]
    created_at: datetime
    hash_prev: Optional[str]
    hash_current: str
    actor_id: Optional[int] = None
    id: Optional[int] = None
