"""Job system type definitions."""

from enum import Enum


class JobStatus(str, Enum):
    """Job lifecycle statuses."""

    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        """Check if this status is terminal (job won't change)."""
        return self in (JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELLED)

    @property
    def is_active(self) -> bool:
        """Queued or Running: blocks a second dispatch of the same key."""
        return self in (JobStatus.QUEUED, JobStatus.RUNNING)

    @property
    def allows_redispatch(self) -> bool:
        """A new job may be created for a key whose latest job has this status."""
        return self in (JobStatus.FAILED, JobStatus.CANCELLED)


class JobFamily(str, Enum):
    """Domain family a job type belongs to. Selects the result handler."""

    SSH_KEY = "ssh_key"
    FIREWALL = "firewall"
    INSTANCE_QUERY = "instance_query"
    DISK_SCAN = "disk_scan"
    NODE_DISK = "node_disk"
    SERVER_STATUS = "server_status"
    GAME_INSTANCE = "game_instance"
    VIRTUAL_SERVER = "virtual_server"
    VOICE_INSTANCE = "voice_instance"
    VOICE_NODE = "voice_node"
    BOT_NODE = "bot_node"
    GENERIC = "generic"


_EXACT_FAMILIES: dict[str, JobFamily] = {
    "admin.ssh_key.store": JobFamily.SSH_KEY,
    "firewall.open_ports": JobFamily.FIREWALL,
    "firewall.close_ports": JobFamily.FIREWALL,
    "instance.query.check": JobFamily.INSTANCE_QUERY,
    "instance.disk.scan": JobFamily.DISK_SCAN,
    "node.disk.stat": JobFamily.NODE_DISK,
    "server.status.check": JobFamily.SERVER_STATUS,
    "instance.start": JobFamily.GAME_INSTANCE,
    "instance.stop": JobFamily.GAME_INSTANCE,
    "instance.restart": JobFamily.GAME_INSTANCE,
}

VOICE_PRODUCTS = ("ts3", "ts6")


def family_for_type(job_type: str) -> JobFamily:
    """Resolve the family for a job type string.

    Called once when a job is created; the result is stored on the job so
    result handling never re-parses the type.
    """
    family = _EXACT_FAMILIES.get(job_type)
    if family is not None:
        return family

    product, _, rest = job_type.partition(".")
    if product in VOICE_PRODUCTS:
        if rest.startswith("virtual"):
            return JobFamily.VIRTUAL_SERVER
        if rest.startswith("instance"):
            return JobFamily.VOICE_INSTANCE
        if rest == "install" or rest == "status" or rest.startswith("service"):
            return JobFamily.VOICE_NODE
    if product == "sinusbot":
        return JobFamily.BOT_NODE

    return JobFamily.GENERIC


class ResultStatus(str, Enum):
    """Terminal status an agent reports for a job."""

    SUCCESS = "success"
    FAILED = "failed"

    @property
    def job_status(self) -> JobStatus:
        return JobStatus.SUCCEEDED if self is ResultStatus.SUCCESS else JobStatus.FAILED
