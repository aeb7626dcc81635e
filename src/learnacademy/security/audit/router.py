"""
FastAPI router for audit queries and compliance reports.

Access is enforced by the authentication middleware's endpoint policy
(admin role, ``audit:read`` permission, MFA).
"""

from datetime import UTC, datetime, timedelta

import structlog
from fastapi import APIRouter, Depends, Query

from learnacademy.security.exceptions import ValidationError

from . import get_audit_logger
from .models import AuditEvent, AuditEventType, AuditQuery, AuditSeverity, ComplianceReport
from .service import AuditLogger

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/audit", tags=["Audit"])


def _as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=UTC) if value.tzinfo is None else value


@router.get("/events", response_model=list[AuditEvent])
async def list_events(
    event_type: AuditEventType | None = Query(None, description="Filter by event type"),
    user_id: str | None = Query(None, description="Filter by user ID"),
    severity: AuditSeverity | None = Query(None, description="Filter by severity"),
    ip_address: str | None = Query(None, description="Filter by client IP"),
    days: int = Query(1, ge=1, le=365, description="Number of days to look back"),
    limit: int = Query(100, ge=1, le=1000, description="Maximum events returned"),
    audit_logger: AuditLogger = Depends(get_audit_logger),
) -> list[AuditEvent]:
    """Newest-first audit events matching the filters."""
    query = AuditQuery(
        start_date=datetime.now(UTC) - timedelta(days=days),
        event_types=[event_type] if event_type else None,
        user_id=user_id,
        severity=severity,
        ip_address=ip_address,
        limit=limit,
    )
    return await audit_logger.query_logs(query)


@router.get("/compliance-report", response_model=ComplianceReport)
async def compliance_report(
    start: datetime | None = Query(None, description="Period start (defaults to 30 days ago)"),
    end: datetime | None = Query(None, description="Period end (defaults to now)"),
    audit_logger: AuditLogger = Depends(get_audit_logger),
) -> ComplianceReport:
    """Aggregate audit activity over a reporting period."""
    end = _as_utc(end) if end else datetime.now(UTC)
    start = _as_utc(start) if start else end - timedelta(days=30)
    if start > end:
        raise ValidationError("start must be before end", fields={"start": "after end"})

    report = await audit_logger.generate_compliance_report(start, end)
    logger.info("audit.compliance_report_generated", total_events=report.total_events)
    return report
