"""
Audit logging for Learn Academy.

Usage Examples:

    from learnacademy.security.audit import AuditEventType, get_audit_logger

    await get_audit_logger().log_event(
        AuditEventType.LOGIN_FAILURE,
        user_id="user123",
        ip_address="203.0.113.5",
        description="Invalid password",
    )
"""

from .models import (
    CRITICAL_EVENT_TYPES,
    AuditEvent,
    AuditEventType,
    AuditQuery,
    AuditResource,
    AuditResult,
    AuditSeverity,
    ComplianceReport,
)
from .service import AuditLogger, compute_event_hash, determine_severity

_audit_logger: AuditLogger | None = None


def get_audit_logger() -> AuditLogger:
    """Get the process-wide audit logger."""
    global _audit_logger
    if _audit_logger is None:
        _audit_logger = AuditLogger()
    return _audit_logger


def set_audit_logger(audit_logger: AuditLogger | None) -> None:
    """Replace the process-wide audit logger (application wiring and tests)."""
    global _audit_logger
    _audit_logger = audit_logger


__all__ = [
    "CRITICAL_EVENT_TYPES",
    "AuditEvent",
    "AuditEventType",
    "AuditLogger",
    "AuditQuery",
    "AuditResource",
    "AuditResult",
    "AuditSeverity",
    "ComplianceReport",
    "compute_event_hash",
    "determine_severity",
    "get_audit_logger",
    "set_audit_logger",
]
