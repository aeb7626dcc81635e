"""
FastAPI application wiring the Learn Academy security core.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path

import structlog
from fastapi import FastAPI
from starlette.responses import Response

from learnacademy.security import clear_services, register_service
from learnacademy.security.audit import AuditEventType, AuditLogger, set_audit_logger
from learnacademy.security.audit.retention import AuditRetentionService
from learnacademy.security.audit.router import router as audit_router
from learnacademy.security.auth import (
    AuthenticationMiddleware,
    Authenticator,
    CSRFMiddleware,
    CSRFTokenService,
    JWTService,
    PolicyTable,
    SessionService,
    get_authenticator,
    set_authenticator,
    set_csrf_service,
)
from learnacademy.security.auth.csrf import router as csrf_router
from learnacademy.security.encryption import EncryptionService, set_encryption_service
from learnacademy.security.exceptions import ConfigurationError, register_exception_handlers
from learnacademy.security.health import router as health_router
from learnacademy.security.logging import setup_logging, shutdown_logging
from learnacademy.security.monitoring import (
    ApiSecurityAuditor,
    SecurityMonitor,
    get_security_monitor,
    set_security_monitor,
)
from learnacademy.security.monitoring.router import router as security_router
from learnacademy.security.rate_limit import (
    DEFAULT_PATH_RULES,
    RateLimiter,
    RateLimitMiddleware,
    get_rate_limiter,
    set_rate_limiter,
)
from learnacademy.security.redis_client import init_redis, shutdown_redis
from learnacademy.security.request_context import RequestContextMiddleware
from learnacademy.security.resilience import get_circuit_breaker_registry
from learnacademy.security.settings import get_settings

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    """Build, register and start the security services; stop them on shutdown."""
    settings = get_settings()

    insecure = settings.insecure_defaults()
    if insecure:
        if settings.is_production:
            raise ConfigurationError(
                "Production secrets are not configured", metadata={"missing": insecure}
            )
        logger.warning("security.insecure_defaults", secrets=insecure)

    redis_client = await init_redis()

    audit_logger = AuditLogger()
    set_audit_logger(audit_logger)

    policies = PolicyTable()
    authenticator = Authenticator(
        jwt_service=JWTService(redis_client=redis_client),
        session_service=SessionService(redis_client=redis_client),
        policies=policies,
        audit_logger=audit_logger,
    )
    set_authenticator(authenticator)
    set_csrf_service(CSRFTokenService(audit_logger=audit_logger))

    source_dirs = settings.monitoring.api_source_dirs or [Path(__file__).parent]
    monitor = SecurityMonitor(
        audit_logger=audit_logger,
        auditor=ApiSecurityAuditor(
            [*source_dirs],
            policies=policies,
            rate_limited_prefixes=tuple(DEFAULT_PATH_RULES),
            csrf_protected_prefixes=tuple(settings.csrf.protected_paths),
        ),
        breakers=get_circuit_breaker_registry(),
        auth_stats=authenticator.get_auth_stats,
    )
    set_security_monitor(monitor)
    audit_logger.add_alert_handler(monitor.handle_critical_event)

    limiter = RateLimiter(redis_client, audit_logger=audit_logger, blocklist=monitor)
    monitor.rate_limiter = limiter
    set_rate_limiter(limiter)

    encryption = EncryptionService(audit_logger=audit_logger)
    set_encryption_service(encryption)

    retention = AuditRetentionService(audit_logger)

    for name, service in (
        ("audit_logger", audit_logger),
        ("authenticator", authenticator),
        ("rate_limiter", limiter),
        ("encryption", encryption),
        ("audit_retention", retention),
        ("security_monitor", monitor),
    ):
        register_service(name, service)

    background = (limiter, encryption, retention, monitor)
    for service in background:
        await service.start()

    await audit_logger.log_event(
        AuditEventType.SYSTEM_START,
        description="Security core started",
        metadata={
            "version": settings.app_version,
            "environment": settings.environment.value,
            "rate_limit_mode": limiter.get_metrics()["mode"],
        },
    )
    logger.info("service.startup.complete", redis=redis_client is not None)

    yield

    logger.info("service.shutdown.begin")
    for service in reversed(background):
        try:
            await service.stop()
        except Exception as e:
            logger.error("service.shutdown.stop_failed", service=type(service).__name__, error=str(e))

    await audit_logger.log_event(AuditEventType.SYSTEM_STOP, description="Security core stopped")
    audit_logger.remove_alert_handler(monitor.handle_critical_event)
    await audit_logger.drain_alerts()
    await shutdown_redis()
    clear_services()
    logger.info("service.shutdown.complete")
    shutdown_logging()


def create_application() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()
    setup_logging()

    app = FastAPI(
        title="Learn Academy Security Core",
        description="Audit logging, authentication, rate limiting and security monitoring",
        version=settings.app_version,
        lifespan=lifespan,
        docs_url=None if settings.is_production else "/docs",
        redoc_url=None if settings.is_production else "/redoc",
    )

    # Added innermost first: requests get a correlation id, then pass rate
    # limiting, authentication and CSRF in that order.
    app.add_middleware(CSRFMiddleware)
    app.add_middleware(
        AuthenticationMiddleware,
        authenticator=get_authenticator,
        blocklist=get_security_monitor,
    )
    if settings.rate_limit.enabled:
        app.add_middleware(RateLimitMiddleware, limiter=get_rate_limiter)
    if settings.observability.enable_correlation_ids:
        app.add_middleware(RequestContextMiddleware)

    register_exception_handlers(app)

    app.include_router(health_router)
    app.include_router(csrf_router)
    app.include_router(audit_router)
    app.include_router(security_router)

    if settings.observability.enable_metrics:
        from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

        @app.get("/metrics", include_in_schema=False)
        async def metrics_root() -> Response:
            """Serve Prometheus metrics."""
            return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    logger.info("application.created", environment=settings.environment.value)
    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "learnacademy.security.main:create_application",
        factory=True,
        host="0.0.0.0",
        port=8000,
        reload=get_settings().is_development,
    )
