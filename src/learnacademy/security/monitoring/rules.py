"""
Built-in threat detection rules.
"""

import re

from learnacademy.security.audit import AuditEvent

from .models import AlertSeverity, ResponseAction, ThreatRule

SLOW_RESPONSE_MS = 5000
LARGE_REQUEST_BYTES = 1_000_000


def _number(value: object) -> float:
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return 0.0


def unusual_api_activity(event: AuditEvent) -> bool:
    """Very slow responses or oversized requests."""
    return (
        _number(event.metadata.get("response_time_ms")) > SLOW_RESPONSE_MS
        or _number(event.metadata.get("request_size")) > LARGE_REQUEST_BYTES
    )


DEFAULT_THREAT_RULES: tuple[ThreatRule, ...] = (
    ThreatRule(
        id="brute_force_detection",
        name="Brute Force Attack Detection",
        description="Multiple failed login attempts from the same IP",
        severity=AlertSeverity.HIGH,
        pattern=re.compile(r"failed_login|authentication_failed|login_failure"),
        threshold=5,
        window_minutes=15,
        actions=(ResponseAction.BLOCK_IP, ResponseAction.NOTIFY_ADMIN, ResponseAction.LOG_INCIDENT),
    ),
    ThreatRule(
        id="rate_limit_abuse",
        name="Rate Limit Abuse Detection",
        description="Excessive rate limit violations",
        severity=AlertSeverity.MEDIUM,
        pattern=re.compile(r"rate_limit_exceeded"),
        threshold=10,
        window_minutes=5,
        actions=(ResponseAction.TEMPORARY_BLOCK, ResponseAction.LOG_INCIDENT),
    ),
    ThreatRule(
        id="sql_injection_attempt",
        name="SQL Injection Detection",
        description="Potential SQL injection in request",
        severity=AlertSeverity.CRITICAL,
        pattern=re.compile(r"sql_injection|union\s+(all\s+)?select|drop\s+table|or\s+1\s*=\s*1", re.IGNORECASE),
        threshold=1,
        window_minutes=1,
        actions=(ResponseAction.BLOCK_IP, ResponseAction.IMMEDIATE_ALERT, ResponseAction.LOG_INCIDENT),
    ),
    ThreatRule(
        id="xss_attempt",
        name="XSS Attack Detection",
        description="Cross-site scripting attempt detected",
        severity=AlertSeverity.HIGH,
        pattern=re.compile(r"xss_attempt|<script|javascript:|onerror\s*=|onload\s*=", re.IGNORECASE),
        threshold=1,
        window_minutes=1,
        actions=(ResponseAction.BLOCK_IP, ResponseAction.NOTIFY_ADMIN, ResponseAction.LOG_INCIDENT),
    ),
    ThreatRule(
        id="unusual_api_activity",
        name="Unusual API Activity",
        description="Abnormal API timing or request sizes",
        severity=AlertSeverity.MEDIUM,
        pattern=unusual_api_activity,
        threshold=3,
        window_minutes=10,
        actions=(ResponseAction.NOTIFY_ADMIN, ResponseAction.LOG_INCIDENT),
    ),
)
