"""Typed views over agent result output.

Every field is Optional: None means "absent or not the expected type" and
handlers leave the aggregate untouched for it.
"""

from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from control_plane.domain.models import FirewallRule
from control_plane.services.firewall import normalize_rules, parse_port_list


def opt_str(output: Mapping[str, Any], key: str) -> Optional[str]:
    value = output.get(key)
    return value if isinstance(value, str) and value != "" else None


def opt_int(output: Mapping[str, Any], key: str) -> Optional[int]:
    value = output.get(key)
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    return None


def opt_float(output: Mapping[str, Any], key: str) -> Optional[float]:
    value = output.get(key)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


_TRUE = ("true", "1", "yes")
_FALSE = ("false", "0", "no")


def opt_bool(output: Mapping[str, Any], key: str) -> Optional[bool]:
    value = output.get(key)
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE:
            return True
        if lowered in _FALSE:
            return False
    return None


def opt_map(output: Mapping[str, Any], key: str) -> Optional[Mapping[str, Any]]:
    value = output.get(key)
    return value if isinstance(value, Mapping) else None


@dataclass(frozen=True)
class ClientDependencies:
    installed: Optional[bool] = None
    version: Optional[str] = None
    path: Optional[str] = None

    @classmethod
    def from_output(cls, output: Mapping[str, Any]) -> "ClientDependencies":
        return cls(
            installed=opt_bool(output, "ts3_client_installed"),
            version=opt_str(output, "ts3_client_version"),
            path=opt_str(output, "ts3_client_path"),
        )


@dataclass(frozen=True)
class NodeResult:
    """install / service.action / status result for voice and bot nodes."""

    installed_version: Optional[str] = None
    running: Optional[bool] = None
    last_error: Optional[str] = None
    dependencies: Optional[ClientDependencies] = None

    @classmethod
    def from_output(cls, output: Mapping[str, Any]) -> "NodeResult":
        deps = opt_map(output, "dependencies")
        return cls(
            installed_version=opt_str(output, "installed_version"),
            running=opt_bool(output, "running"),
            last_error=opt_str(output, "last_error"),
            dependencies=ClientDependencies.from_output(deps) if deps is not None else None,
        )


@dataclass(frozen=True)
class VirtualServerResult:
    sid: Optional[int] = None
    voice_port: Optional[int] = None
    filetransfer_port: Optional[int] = None
    token: Optional[str] = None

    @classmethod
    def from_output(cls, output: Mapping[str, Any]) -> "VirtualServerResult":
        return cls(
            sid=opt_int(output, "sid"),
            voice_port=opt_int(output, "voice_port"),
            filetransfer_port=opt_int(output, "filetransfer_port"),
            token=opt_str(output, "token"),
        )


@dataclass(frozen=True)
class DiskScanResult:
    used_bytes: Optional[int] = None
    inode_count: Optional[int] = None
    message: Optional[str] = None

    @classmethod
    def from_output(cls, output: Mapping[str, Any]) -> "DiskScanResult":
        return cls(
            used_bytes=opt_int(output, "used_bytes"),
            inode_count=opt_int(output, "inode_count"),
            message=opt_str(output, "message"),
        )


@dataclass(frozen=True)
class NodeDiskStatResult:
    free_bytes: Optional[int] = None
    free_percent: Optional[float] = None
    message: Optional[str] = None

    @classmethod
    def from_output(cls, output: Mapping[str, Any]) -> "NodeDiskStatResult":
        return cls(
            free_bytes=opt_int(output, "free_bytes"),
            free_percent=opt_float(output, "free_percent"),
            message=opt_str(output, "message"),
        )


@dataclass(frozen=True)
class ProbeResult:
    """Live status probe (public server check or instance query)."""

    status: Optional[str] = None
    players: Optional[int] = None
    max_players: Optional[int] = None
    map: Optional[str] = None
    message: Optional[str] = None

    @classmethod
    def from_output(cls, output: Mapping[str, Any]) -> "ProbeResult":
        status = opt_str(output, "status")
        return cls(
            status=status.lower() if status else None,
            players=opt_int(output, "players"),
            max_players=opt_int(output, "max_players"),
            map=opt_str(output, "map"),
            message=opt_str(output, "message"),
        )


@dataclass(frozen=True)
class FirewallResult:
    rules: list[FirewallRule] = field(default_factory=list)
    ports: list[int] = field(default_factory=list)

    @classmethod
    def from_output(cls, output: Mapping[str, Any]) -> "FirewallResult":
        return cls(
            rules=normalize_rules(output.get("rules")),
            ports=parse_port_list(output.get("ports")),
        )
