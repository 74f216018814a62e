"""Enumerations for domain aggregates."""

from enum import Enum


class InstanceStatus(str, Enum):
    PROVISIONING = "provisioning"
    RUNNING = "running"
    STOPPED = "stopped"
    SUSPENDED = "suspended"
    ERROR = "error"


class UpdatePolicy(str, Enum):
    MANUAL = "manual"
    AUTO = "auto"


class DiskState(str, Enum):
    """Disk pressure tier, ordered from least to most severe."""

    OK = "ok"
    WARNING = "warning"
    OVER_LIMIT = "over_limit"
    HARD_BLOCK = "hard_block"

    @property
    def blocks_actions(self) -> bool:
        return self in (DiskState.OVER_LIMIT, DiskState.HARD_BLOCK)


class ScheduleAction(str, Enum):
    START = "start"
    STOP = "stop"
    RESTART = "restart"
    UPDATE = "update"
    BACKUP = "backup"

    @property
    def job_type(self) -> str:
        return _SCHEDULE_JOB_TYPES[self]


_SCHEDULE_JOB_TYPES = {
    ScheduleAction.START: "instance.start",
    ScheduleAction.STOP: "instance.stop",
    ScheduleAction.RESTART: "instance.restart",
    ScheduleAction.UPDATE: "instance.update",
    ScheduleAction.BACKUP: "instance.backup.create",
}


class VoiceProduct(str, Enum):
    TS3 = "ts3"
    TS6 = "ts6"
    SINUSBOT = "sinusbot"


class InstallStatus(str, Enum):
    PENDING = "pending"
    INSTALLED = "installed"
    ERROR = "error"


class VoiceStatus(str, Enum):
    """Lifecycle of voice instances and virtual servers."""

    PROVISIONING = "provisioning"
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"
