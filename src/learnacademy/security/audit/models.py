"""
Audit event models.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator


class AuditEventType(str, Enum):
    """Types of events that can be audited."""

    # Authentication
    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILURE = "login_failure"
    LOGOUT = "logout"
    PASSWORD_CHANGE = "password_change"
    PASSWORD_RESET_REQUEST = "password_reset_request"
    PASSWORD_RESET_COMPLETE = "password_reset_complete"
    ACCOUNT_LOCKED = "account_locked"
    ACCOUNT_UNLOCKED = "account_unlocked"
    SESSION_EXPIRED = "session_expired"
    MFA_ENABLED = "mfa_enabled"
    MFA_DISABLED = "mfa_disabled"
    MFA_SUCCESS = "mfa_success"
    MFA_FAILURE = "mfa_failure"
    AUTHENTICATION_SUCCESS = "authentication_success"
    AUTHENTICATION_FAILED = "authentication_failed"
    TOKEN_REVOKED = "token_revoked"

    # Authorization
    ACCESS_GRANTED = "access_granted"
    ACCESS_DENIED = "access_denied"
    AUTHORIZATION_FAILED = "authorization_failed"
    PERMISSION_CHANGED = "permission_changed"
    ROLE_ASSIGNED = "role_assigned"
    ROLE_REMOVED = "role_removed"
    PRIVILEGE_ESCALATION = "privilege_escalation"

    # Data
    DATA_CREATE = "data_create"
    DATA_READ = "data_read"
    DATA_UPDATE = "data_update"
    DATA_DELETE = "data_delete"
    DATA_EXPORT = "data_export"
    DATA_IMPORT = "data_import"
    BULK_OPERATION = "bulk_operation"
    PII_ACCESS = "pii_access"
    DATA_ENCRYPTED = "data_encrypted"
    DATA_DECRYPTED = "data_decrypted"
    KEY_GENERATED = "key_generated"
    KEY_ROTATED = "key_rotated"
    KEY_REVOKED = "key_revoked"

    # System
    SYSTEM_START = "system_start"
    SYSTEM_STOP = "system_stop"
    CONFIG_CHANGE = "config_change"
    BACKUP_CREATED = "backup_created"
    BACKUP_RESTORED = "backup_restored"
    MAINTENANCE_MODE = "maintenance_mode"
    CIRCUIT_BREAKER_OPENED = "circuit_breaker_opened"
    CIRCUIT_BREAKER_CLOSED = "circuit_breaker_closed"

    # Security
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    SQL_INJECTION_ATTEMPT = "sql_injection_attempt"
    XSS_ATTEMPT = "xss_attempt"
    CSRF_VIOLATION = "csrf_violation"
    BRUTE_FORCE_DETECTED = "brute_force_detected"
    IP_BLOCKED = "ip_blocked"
    IP_UNBLOCKED = "ip_unblocked"
    SECURITY_ALERT_ACKNOWLEDGED = "security_alert_acknowledged"

    # Application
    FORM_SUBMITTED = "form_submitted"
    FORM_VALIDATION_FAILED = "form_validation_failed"
    FILE_UPLOADED = "file_uploaded"
    FILE_DOWNLOADED = "file_downloaded"
    EMAIL_SENT = "email_sent"
    API_CALL = "api_call"
    API_ERROR = "api_error"


class AuditSeverity(str, Enum):
    """Severity levels for audit events."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"


class AuditResult(str, Enum):
    """Outcome of the audited action."""

    SUCCESS = "success"
    FAILURE = "failure"
    BLOCKED = "blocked"
    PENDING = "pending"


CRITICAL_EVENT_TYPES: frozenset[AuditEventType] = frozenset(
    {
        AuditEventType.PRIVILEGE_ESCALATION,
        AuditEventType.SUSPICIOUS_ACTIVITY,
        AuditEventType.DATA_EXPORT,
        AuditEventType.BULK_OPERATION,
        AuditEventType.SQL_INJECTION_ATTEMPT,
        AuditEventType.XSS_ATTEMPT,
    }
)

SCHEMA_VERSION = "1.0"


class AuditResource(BaseModel):
    """Resource touched by an audited action."""

    model_config = ConfigDict(frozen=True)

    type: str
    id: str | None = None
    name: str | None = None


class AuditEvent(BaseModel):
    """Immutable audit record as persisted to the log partitions."""

    model_config = ConfigDict(frozen=True, use_enum_values=False)

    id: str = Field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    event_type: AuditEventType
    severity: AuditSeverity
    result: AuditResult = AuditResult.SUCCESS
    description: str = ""

    # Actor
    user_id: str | None = None
    session_id: str | None = None
    user_role: str | None = None
    user_email: str | None = None

    # Request
    ip_address: str | None = None
    user_agent: str | None = None
    method: str | None = None
    path: str | None = None
    request_id: str | None = None

    resource: AuditResource | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    hash: str = ""
    version: str = SCHEMA_VERSION


class AuditQuery(BaseModel):
    """Filters for scanning the audit partitions."""

    model_config = ConfigDict(extra="forbid")

    start_date: datetime | None = None
    end_date: datetime | None = None
    event_types: list[AuditEventType] | None = None
    user_id: str | None = None
    severity: AuditSeverity | None = None
    ip_address: str | None = None
    limit: int | None = Field(default=None, ge=1)

    @field_validator("start_date", "end_date")
    @classmethod
    def assume_utc(cls, v: datetime | None) -> datetime | None:
        """Naive datetimes are treated as UTC."""
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=UTC)
        return v


class ComplianceReport(BaseModel):
    """Aggregated audit activity for a reporting period."""

    period_start: datetime
    period_end: datetime
    generated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    total_events: int = 0
    events_by_type: dict[str, int] = Field(default_factory=dict)
    events_by_severity: dict[str, int] = Field(default_factory=dict)
    events_by_result: dict[str, int] = Field(default_factory=dict)
    failed_logins: int = 0
    security_incidents: list[AuditEvent] = Field(default_factory=list)
    user_activity: dict[str, int] = Field(default_factory=dict)
    top_ip_addresses: list[tuple[str, int]] = Field(default_factory=list)
