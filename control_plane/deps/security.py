"""Security dependencies for FastAPI routes.

Provides:
- Agent identity (X-Agent-ID) with optional shared token check
- Admin token authentication for operator routes

Both token checks use hmac.compare_digest() for constant-time comparison.
"""

import hmac

import structlog
from fastapi import Depends, HTTPException, Request, status

from control_plane.config import Settings, get_settings

logger = structlog.get_logger(__name__)


def _tokens_match(provided: str, expected: str) -> bool:
    return hmac.compare_digest(provided.encode(), expected.encode())


def require_agent(
    request: Request, settings: Settings = Depends(get_settings)
) -> str:
    """
    Resolve the calling agent's id.

    Returns 401 when X-Agent-ID is missing, or when AGENT_API_TOKEN is set
    and X-Agent-Token is missing; 403 when the token does not match.

    Usage:
        @router.get("/agent/jobs")
        async def poll(agent_id: str = Depends(require_agent)):
            ...
    """
    agent_id = (request.headers.get("X-Agent-ID") or "").strip()
    if not agent_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Agent identity required. Provide X-Agent-ID header.",
        )

    expected = settings.agent_api_token
    if expected:
        provided = request.headers.get("X-Agent-Token")
        if not provided:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Agent token required. Provide X-Agent-Token header.",
            )
        if not _tokens_match(provided, expected):
            logger.warning(
                "agent_token_invalid",
                agent_id=agent_id,
                client=request.client.host if request.client else "unknown",
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Invalid agent token",
            )

    return agent_id


def require_admin_token(
    request: Request, settings: Settings = Depends(get_settings)
) -> bool:
    """
    Require a valid admin token for operator routes.

    Returns 403 when ADMIN_TOKEN is not configured or does not match,
    401 when the X-Admin-Token header is missing.
    """
    admin_token = settings.admin_token
    if not admin_token:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="ADMIN_TOKEN not configured. Contact system administrator.",
        )

    provided = request.headers.get("X-Admin-Token")
    if not provided:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Admin token required. Provide X-Admin-Token header.",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not _tokens_match(provided, admin_token):
        logger.warning(
            "admin_token_invalid",
            path=request.url.path,
            client=request.client.host if request.client else "unknown",
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid admin token",
        )

    return True
