"""Query adapter contract and shared result types."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from control_plane.domain.models import Instance
from control_plane.utils.time import format_iso


@dataclass(frozen=True)
class QueryContext:
    """Resolved network endpoints plus adapter-specific config."""

    host: Optional[str] = None
    game_port: Optional[int] = None
    query_port: Optional[int] = None
    rcon_port: Optional[int] = None
    config: dict[str, Any] = field(default_factory=dict)

    @property
    def probe_port(self) -> Optional[int]:
        """Query port, falling back to the game port."""
        return self.query_port if self.query_port is not None else self.game_port


@dataclass(frozen=True)
class QueryResult:
    status: str
    players: Optional[int] = None
    max_players: Optional[int] = None
    message: Optional[str] = None

    @classmethod
    def unavailable(cls, message: str) -> "QueryResult":
        return cls(status="unavailable", message=message)

    def to_cache(self, checked_at: datetime, source: str) -> dict[str, Any]:
        return {
            "status": self.status,
            "players": self.players,
            "max_players": self.max_players,
            "message": self.message,
            "checked_at": format_iso(checked_at),
            "source": source,
        }


class QueryAdapter(ABC):
    """Protocol-specific live status probe."""

    name: str = "base"

    @abstractmethod
    def supports(self, query_type: str) -> bool:
        ...

    @abstractmethod
    async def query(self, instance: Instance, context: QueryContext) -> QueryResult:
        """Probe the server. Network failures become unavailable results."""


def config_float(config: dict[str, Any], key: str, default: float) -> float:
    value = config.get(key)
    if isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0:
        return float(value)
    return default


def as_int(value: Any) -> Optional[int]:
    """Integer from a number or digit string; None for anything else."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None
