"""Agent Control Plane - FastAPI Application."""

import time
import uuid
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from control_plane import __version__
from control_plane.config import get_settings
from control_plane.core.db import create_pool
from control_plane.core.sentry import init_sentry
from control_plane.routers import agent, health, operator
from control_plane.services.wiring import build_services, postgres_stores

# Configure structured logging
structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger(__name__)

settings = get_settings()
init_sentry(settings)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Create the pool, wire services into routers, close on shutdown."""
    settings = get_settings()
    logger.info(
        "control_plane_starting",
        version=__version__,
        host=settings.service_host,
        port=settings.service_port,
    )

    pool = None
    try:
        pool = await create_pool(settings)
    except Exception as e:
        logger.error(
            "Failed to initialize database pool - endpoints requiring DB will be unavailable",
            error=str(e),
        )

    health.set_db_pool(pool)
    if pool is not None:
        services = build_services(postgres_stores(pool), settings)
        agent.set_services(services)
        operator.set_services(services)

    yield

    logger.info("control_plane_stopping")
    agent.set_services(None)
    operator.set_services(None)
    health.set_db_pool(None)
    if pool is not None:
        await pool.close()
        logger.info("database_pool_closed")


app = FastAPI(
    title="Agent Control Plane",
    description="Job orchestration and reconciliation for remote agents",
    version=__version__,
    lifespan=lifespan,
)


@app.middleware("http")
async def request_middleware(request: Request, call_next):
    """Add request ID and timing to all requests."""
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(
        request_id=request_id,
        method=request.method,
        path=request.url.path,
    )

    start_time = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception as e:
        logger.exception("request_failed", error=str(e))
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
            headers={"X-Request-ID": request_id, "X-API-Version": __version__},
        )
    duration = time.perf_counter() - start_time

    response.headers["X-Request-ID"] = request_id
    response.headers["X-Response-Time-Ms"] = f"{duration * 1000:.2f}"
    response.headers["X-API-Version"] = __version__

    if request.url.path != "/metrics":
        route = request.scope.get("route")
        health.record_request(
            method=request.method,
            endpoint=getattr(route, "path", request.url.path),
            status_code=response.status_code,
            duration=duration,
        )

    logger.info(
        "request_completed",
        status_code=response.status_code,
        duration_ms=round(duration * 1000, 2),
    )
    return response


app.include_router(health.router)
app.include_router(agent.router)
app.include_router(operator.router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "control_plane.main:app",
        host=settings.service_host,
        port=settings.service_port,
        reload=False,
    )
