"""HTTP status-endpoint query adapter."""

import httpx
import structlog

from control_plane.domain.models import Instance
from control_plane.services.query.base import QueryAdapter, QueryContext, QueryResult, as_int

logger = structlog.get_logger(__name__)


class HttpQueryAdapter(QueryAdapter):
    """GET a JSON status document from `config.url`."""

    name = "http"

    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout

    def supports(self, query_type: str) -> bool:
        return query_type == "http"

    async def query(self, instance: Instance, context: QueryContext) -> QueryResult:
        url = context.config.get("url")
        url = url.strip() if isinstance(url, str) else ""
        if not url:
            return QueryResult.unavailable("Query URL missing.")

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(url)
        except httpx.HTTPError as e:
            logger.warning(
                "query_http_unavailable", instance_id=instance.id, url=url, error=str(e)
            )
            return QueryResult.unavailable("Query endpoint unavailable.")

        try:
            payload = response.json()
        except ValueError:
            return QueryResult.unavailable("Invalid query response.")
        if not isinstance(payload, dict):
            return QueryResult.unavailable("Invalid query response.")

        max_players = as_int(payload.get("max_players"))
        if max_players is None:
            max_players = as_int(payload.get("maxPlayers"))

        status = payload.get("status")
        status = str(status).strip().lower() if status is not None else ""

        return QueryResult(
            status=status or "online",
            players=as_int(payload.get("players")),
            max_players=max_players,
        )
