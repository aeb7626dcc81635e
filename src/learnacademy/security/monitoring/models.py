"""
Security monitoring models.
"""

import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, Field

from learnacademy.security.audit import AuditEvent


class AlertSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class MetricType(str, Enum):
    AUTHENTICATION_ATTEMPTS = "auth_attempts"
    FAILED_LOGINS = "failed_logins"
    RATE_LIMIT_VIOLATIONS = "rate_limit_violations"
    API_ERRORS = "api_errors"
    SUSPICIOUS_ACTIVITIES = "suspicious_activities"
    COMPLIANCE_SCORE = "compliance_score"


class ResponseAction(str, Enum):
    BLOCK_IP = "block_ip"
    TEMPORARY_BLOCK = "temporary_block"
    NOTIFY_ADMIN = "notify_admin"
    IMMEDIATE_ALERT = "immediate_alert"
    LOG_INCIDENT = "log_incident"


type Trend = Literal["up", "down", "stable"]
type RiskLevel = Literal["low", "medium", "high", "critical"]


class MetricThreshold(BaseModel):
    warning: float
    critical: float
    # Compliance score degrades downwards.
    lower_is_worse: bool = False

    def status(self, value: float) -> str:
        if self.lower_is_worse:
            if value <= self.critical:
                return "critical"
            if value <= self.warning:
                return "warning"
            return "ok"
        if value >= self.critical:
            return "critical"
        if value >= self.warning:
            return "warning"
        return "ok"


class SecurityMetric(BaseModel):
    id: str
    type: MetricType
    name: str
    value: float
    unit: str
    threshold: MetricThreshold
    trend: Trend = "stable"
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def status(self) -> str:
        return self.threshold.status(self.value)


class SecurityAlert(BaseModel):
    """Alert raised by a threat rule. Only acknowledgement mutates it."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    title: str
    description: str
    severity: AlertSeverity
    type: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    source: str = "threat_detection"
    ip_address: str | None = None
    user_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    acknowledged: bool = False
    acknowledged_by: str | None = None
    resolved_at: datetime | None = None
    response_actions: list[ResponseAction] = Field(default_factory=list)


type EventPredicate = Callable[[AuditEvent], bool]


@dataclass(frozen=True)
class ThreatRule:
    """Fires when ``threshold`` matching events fall within ``window_minutes``."""

    id: str
    name: str
    description: str
    severity: AlertSeverity
    pattern: re.Pattern[str] | EventPredicate
    threshold: int
    window_minutes: int
    actions: tuple[ResponseAction, ...]
    group_by_ip: bool = True

    def matches(self, event: AuditEvent) -> bool:
        if isinstance(self.pattern, re.Pattern):
            return bool(self.pattern.search(event_text(event)))
        return self.pattern(event)


def event_text(event: AuditEvent) -> str:
    """Text a pattern rule is matched against."""
    message = event.metadata.get("message") or ""
    return " ".join(
        part for part in (event.event_type.value, str(message), event.description, event.user_agent or "") if part
    )


class RecentEvents(BaseModel):
    total: int
    by_type: dict[str, int]
    last_24_hours: int


class ComplianceScores(BaseModel):
    soc2: int
    iso27001: int
    gdpr: int
    overall: int


class SystemHealth(BaseModel):
    api_endpoints: int
    secure_endpoints: int
    auth_coverage: int
    rate_limit_coverage: int
    last_audit: datetime | None = None
    circuit_breakers: dict[str, str] = Field(default_factory=dict)
    rate_limit_mode: str | None = None
    auth: dict[str, Any] = Field(default_factory=dict)


class ThreatIntelligence(BaseModel):
    blocked_ips: int
    detected_threats: int
    mitigated_attacks: int
    top_event_types: list[tuple[str, int]] = Field(default_factory=list)


class SecurityDashboard(BaseModel):
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    overall_score: int
    risk_level: RiskLevel
    metrics: list[SecurityMetric]
    alerts: list[SecurityAlert]
    recent_events: RecentEvents
    compliance: ComplianceScores
    system_health: SystemHealth
    threat_intelligence: ThreatIntelligence
