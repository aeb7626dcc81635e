"""
Liveness and readiness endpoints.
"""

from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from learnacademy.security import get_available_services, get_service
from learnacademy.security.redis_client import redis_manager
from learnacademy.security.settings import get_settings

router = APIRouter(prefix="/health", tags=["Health"])

REQUIRED_SERVICES = ("audit_logger", "authenticator", "rate_limiter", "security_monitor")


@router.get("/live")
async def liveness_check() -> dict[str, Any]:
    settings = get_settings()
    return {
        "status": "alive",
        "version": settings.app_version,
        "environment": settings.environment.value,
        "timestamp": datetime.now(UTC).isoformat(),
    }


@router.get("/ready")
async def readiness_check() -> JSONResponse:
    """
    Ready when every required service is registered and Redis, if configured,
    answers. Redis being disabled is not a failure.
    """
    settings = get_settings()
    missing = [name for name in REQUIRED_SERVICES if get_service(name) is None]
    redis_status = await redis_manager.health_check()

    checks: dict[str, Any] = {
        "services": {"available": get_available_services(), "missing": missing},
        "redis": redis_status,
        "insecure_defaults": settings.insecure_defaults(),
    }

    monitor = get_service("security_monitor")
    if monitor is not None:
        checks["security_monitor"] = {"running": monitor.is_running}

    ready = not missing and redis_status["status"] != "unhealthy"
    return JSONResponse(
        status_code=200 if ready else 503,
        content={
            "status": "ready" if ready else "not_ready",
            "checks": checks,
            "timestamp": datetime.now(UTC).isoformat(),
        },
    )
