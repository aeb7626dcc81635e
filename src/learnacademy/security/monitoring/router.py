"""
Security dashboard API.

Admin-only under the ``/api/security`` endpoint policy.
"""

from typing import Any

import structlog
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field

from learnacademy.security.auth import AuthContext, get_current_context
from learnacademy.security.exceptions import NotFoundError, ValidationError

from . import get_security_monitor
from .models import MetricType, SecurityAlert, SecurityDashboard, SecurityMetric
from .service import SecurityMonitor

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/security", tags=["Security"])


class DashboardAction(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    action: str
    alert_id: str | None = Field(None, alias="alertId")


@router.get("/dashboard", response_model=SecurityDashboard)
async def get_dashboard(
    hours: int = Query(24, ge=1, le=168, description="Metric history window"),
    monitor: SecurityMonitor = Depends(get_security_monitor),
) -> SecurityDashboard:
    return await monitor.get_dashboard(hours)


@router.post("/dashboard")
async def dashboard_action(
    body: DashboardAction,
    context: AuthContext = Depends(get_current_context),
    monitor: SecurityMonitor = Depends(get_security_monitor),
) -> dict[str, Any]:
    """Dashboard mutations. Only ``acknowledge_alert`` is supported."""
    if body.action != "acknowledge_alert":
        raise ValidationError(f"Unknown action: {body.action}", fields={"action": "unsupported"})
    if not body.alert_id:
        raise ValidationError("alertId is required", fields={"alertId": "required"})

    if not await monitor.acknowledge_alert(body.alert_id, context.user_id):
        raise NotFoundError("Alert", body.alert_id)

    logger.info("security_monitor.alert_acknowledged", alert_id=body.alert_id, user_id=context.user_id)
    return {"success": True, "alert_id": body.alert_id}


@router.get("/metrics/{metric_type}", response_model=list[SecurityMetric])
async def get_metric_history(
    metric_type: MetricType,
    hours: int = Query(24, ge=1, le=168),
    monitor: SecurityMonitor = Depends(get_security_monitor),
) -> list[SecurityMetric]:
    return monitor.get_metric_history(metric_type, hours)


@router.get("/alerts", response_model=list[SecurityAlert])
async def list_alerts(
    include_acknowledged: bool = Query(True),
    monitor: SecurityMonitor = Depends(get_security_monitor),
) -> list[SecurityAlert]:
    return monitor.get_alerts(include_acknowledged)


@router.get("/blocked-ips")
async def list_blocked_ips(
    monitor: SecurityMonitor = Depends(get_security_monitor),
) -> dict[str, list[str]]:
    return {"blocked_ips": monitor.get_blocked_ips()}


@router.delete("/blocked-ips/{ip_address}")
async def unblock_ip(
    ip_address: str,
    context: AuthContext = Depends(get_current_context),
    monitor: SecurityMonitor = Depends(get_security_monitor),
) -> dict[str, Any]:
    if not await monitor.unblock_ip(ip_address, context.user_id):
        raise NotFoundError("Blocked IP", ip_address)
    return {"success": True, "ip_address": ip_address}
