"""Live instance status queries."""

from control_plane.services.query.base import QueryAdapter, QueryContext, QueryResult
from control_plane.services.query.service import InstanceQueryService, default_adapters

__all__ = [
    "QueryAdapter",
    "QueryContext",
    "QueryResult",
    "InstanceQueryService",
    "default_adapters",
]
