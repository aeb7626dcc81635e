"""
Security monitoring: API security auditing, metrics, threat detection and
automated response.
"""

from .api_auditor import ApiAuditReport, ApiSecurityAuditor, EndpointAssessment, SecurityIssue
from .models import (
    AlertSeverity,
    MetricType,
    ResponseAction,
    SecurityAlert,
    SecurityDashboard,
    SecurityMetric,
    ThreatRule,
)
from .rules import DEFAULT_THREAT_RULES
from .service import SecurityMonitor

_security_monitor: SecurityMonitor | None = None


def get_security_monitor() -> SecurityMonitor:
    """Get the process-wide security monitor."""
    global _security_monitor
    if _security_monitor is None:
        _security_monitor = SecurityMonitor()
    return _security_monitor


def set_security_monitor(monitor: SecurityMonitor | None) -> None:
    global _security_monitor
    _security_monitor = monitor


__all__ = [
    "DEFAULT_THREAT_RULES",
    "AlertSeverity",
    "ApiAuditReport",
    "ApiSecurityAuditor",
    "EndpointAssessment",
    "MetricType",
    "ResponseAction",
    "SecurityAlert",
    "SecurityDashboard",
    "SecurityIssue",
    "SecurityMetric",
    "SecurityMonitor",
    "ThreatRule",
    "get_security_monitor",
    "set_security_monitor",
]
