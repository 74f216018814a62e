from control_plane.domain.models import Instance
from control_plane.services.query.base import QueryAdapter, QueryContext, QueryResult


class NoneQueryAdapter(QueryAdapter):
    """Fallback for disabled or unknown query types."""

    name = "none"

    def supports(self, query_type: str) -> bool:
        return query_type == "none"

    async def query(self, instance: Instance, context: QueryContext) -> QueryResult:
        return QueryResult.unavailable("Query not supported.")
