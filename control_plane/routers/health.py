"""Health check and Prometheus metrics endpoints."""

import structlog
from fastapi import APIRouter, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

from control_plane import __version__
from control_plane.schemas import HealthResponse

router = APIRouter(tags=["health"])
logger = structlog.get_logger(__name__)

REQUEST_COUNT = Counter(
    "control_plane_requests_total",
    "Total number of HTTP requests",
    ["method", "endpoint", "status_code"],
)
REQUEST_LATENCY = Histogram(
    "control_plane_request_latency_seconds",
    "Request latency in seconds",
    ["method", "endpoint"],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

_db_pool = None


def record_request(method: str, endpoint: str, status_code: int, duration: float) -> None:
    REQUEST_COUNT.labels(method=method, endpoint=endpoint, status_code=str(status_code)).inc()
    REQUEST_LATENCY.labels(method=method, endpoint=endpoint).observe(duration)


def set_db_pool(pool) -> None:
    """Set the database pool for this router."""
    global _db_pool
    _db_pool = pool


async def check_database(pool) -> str:
    if pool is None:
        return "not_configured"
    try:
        async with pool.acquire() as conn:
            await conn.fetchval("SELECT 1")
        return "ok"
    except Exception as e:
        logger.warning("health_database_failed", error=str(e))
        return "error"


@router.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    database = await check_database(_db_pool)
    return HealthResponse(
        status="ok" if database == "ok" else "degraded",
        version=__version__,
        database=database,
    )


@router.get("/metrics")
async def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
