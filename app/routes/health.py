"""
Health check endpoints.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict

import sentry_sdk
from fastapi import APIRouter

from src.config import get_settings
from src.storage.redis_client import redis_client

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


def get_sentry_status() -> Dict[str, Any]:
    """
    Get the current Sentry configuration status.

    Returns information about whether Sentry is configured and active.
    """
    sentry_settings = get_settings().sentry
    configured = bool(sentry_settings.sentry_dsn)
    return {
        "configured": configured,
        "active": sentry_sdk.get_client().is_active() if configured else False,
        "environment": sentry_settings.sentry_environment if configured else None,
    }


def _service_status(connected: bool, configured: bool) -> str:
    if connected:
        return "up"
    return "down" if configured else "unconfigured"


@router.get(
    "/health",
    summary="System health check",
    description="""
Health check endpoint for monitoring and load balancers.

Returns overall system health including:
- Redis status (TTL store for sessions, SSO state and logout replay)
- Sentry error tracking status

**Authentication**: Not required. This endpoint is public for load balancer health checks.
    """,
    responses={
        200: {
            "description": "Health status retrieved",
            "content": {
                "application/json": {
                    "example": {
                        "status": "healthy",
                        "timestamp": "2026-01-24T12:00:00+00:00",
                        "version": "identity-core@1.0.0",
                        "environment": "production",
                        "services": {
                            "redis": {"status": "up"},
                            "sentry": {"status": "up"},
                        },
                    }
                }
            },
        }
    },
)
async def health_check() -> Dict[str, Any]:
    """
    Health check endpoint for monitoring and load balancers.

    Redis is optional: without ``REDIS_URL`` the in-memory store is used
    and the service reports healthy. A configured but unreachable Redis
    makes the service degraded.
    """
    settings = get_settings()
    redis_status = await redis_client.health_check()
    sentry_status = get_sentry_status()

    redis_configured = redis_status.get("url_configured", False)
    redis_connected = redis_status.get("connected", False)
    is_healthy = redis_connected or not redis_configured
    if not is_healthy:
        logger.warning(f"Health check degraded: redis {redis_status.get('status')}")

    return {
        "status": "healthy" if is_healthy else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": settings.sentry.sentry_release,
        "environment": settings.app.environment,
        "services": {
            "redis": {
                "status": _service_status(redis_connected, redis_configured),
                "version": redis_status.get("redis_version"),
            },
            "sentry": {
                "status": _service_status(
                    sentry_status["active"], sentry_status["configured"]
                ),
            },
        },
    }
