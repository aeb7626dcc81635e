"""
Security monitor: metrics, threat detection and automated response.

Polls the audit log on fixed intervals, keeps a bounded in-memory history of
security metrics and alerts, and reacts to threat rules by blocking source
IPs, notifying administrators and recording incidents. Blocked IPs are fed
back to the rate limiter and the authentication middleware.
"""

import asyncio
import time
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

import httpx
import structlog
from prometheus_client import Counter as PromCounter
from prometheus_client import Gauge

from learnacademy.security.audit import (
    AuditEvent,
    AuditEventType,
    AuditLogger,
    AuditQuery,
    AuditResult,
    AuditSeverity,
    get_audit_logger,
)
from learnacademy.security.exceptions import ExternalServiceError
from learnacademy.security.resilience import (
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    get_circuit_breaker_registry,
    retry_async,
)
from learnacademy.security.settings import get_settings

from .api_auditor import ApiAuditReport, ApiSecurityAuditor
from .models import (
    AlertSeverity,
    ComplianceScores,
    MetricThreshold,
    MetricType,
    RecentEvents,
    ResponseAction,
    RiskLevel,
    SecurityAlert,
    SecurityDashboard,
    SecurityMetric,
    SystemHealth,
    ThreatIntelligence,
    ThreatRule,
    Trend,
)
from .rules import DEFAULT_THREAT_RULES

logger = structlog.get_logger(__name__)

MONITOR_SOURCE = "security_monitor"
MAX_METRIC_SAMPLES = 100
MAX_ALERTS = 100
DASHBOARD_ALERTS = 20
TREND_THRESHOLD = 0.1

SECURITY_METRIC_VALUE = Gauge(
    "learnacademy_security_metric",
    "Latest value of each security metric",
    ["metric"],
)
SECURITY_ALERTS_TOTAL = PromCounter(
    "learnacademy_security_alerts_total",
    "Security alerts raised by threat rules",
    ["rule", "severity"],
)


@dataclass(frozen=True)
class MetricDefinition:
    name: str
    unit: str
    threshold: MetricThreshold


METRIC_DEFINITIONS: dict[MetricType, MetricDefinition] = {
    MetricType.AUTHENTICATION_ATTEMPTS: MetricDefinition(
        "Authentication Attempts (24h)", "attempts", MetricThreshold(warning=100, critical=500)
    ),
    MetricType.FAILED_LOGINS: MetricDefinition(
        "Failed Login Attempts (24h)", "failures", MetricThreshold(warning=20, critical=100)
    ),
    MetricType.RATE_LIMIT_VIOLATIONS: MetricDefinition(
        "Rate Limit Violations (24h)", "violations", MetricThreshold(warning=50, critical=200)
    ),
    MetricType.API_ERRORS: MetricDefinition(
        "API Errors (24h)", "errors", MetricThreshold(warning=50, critical=200)
    ),
    MetricType.SUSPICIOUS_ACTIVITIES: MetricDefinition(
        "Suspicious Activities (24h)", "events", MetricThreshold(warning=5, critical=20)
    ),
    MetricType.COMPLIANCE_SCORE: MetricDefinition(
        "Overall Compliance Score",
        "percentage",
        MetricThreshold(warning=80, critical=60, lower_is_worse=True),
    ),
}

COMPLIANCE_WEIGHTS = {
    "authentication": 0.25,
    "rate_limit": 0.20,
    "input_validation": 0.25,
    "audit_logging": 0.15,
    "secure_ratio": 0.15,
}


class StatsProvider(Protocol):
    def get_metrics(self) -> dict[str, Any]: ...


@dataclass
class IPReputation:
    score: int
    last_seen: datetime
    blocked: bool
    reason: str | None = None
    expires_at: datetime | None = None


def _is_auth_attempt(event: AuditEvent) -> bool:
    value = event.event_type.value
    return "authentication" in value or "login" in value


def _is_api_error(event: AuditEvent) -> bool:
    status = event.metadata.get("status_code")
    return "error" in event.event_type.value and isinstance(status, int) and status >= 400


METRIC_FILTERS: dict[MetricType, Callable[[AuditEvent], bool]] = {
    MetricType.AUTHENTICATION_ATTEMPTS: _is_auth_attempt,
    MetricType.FAILED_LOGINS: lambda e: e.event_type
    in (AuditEventType.AUTHENTICATION_FAILED, AuditEventType.LOGIN_FAILURE),
    MetricType.RATE_LIMIT_VIOLATIONS: lambda e: e.event_type == AuditEventType.RATE_LIMIT_EXCEEDED,
    MetricType.API_ERRORS: _is_api_error,
    MetricType.SUSPICIOUS_ACTIVITIES: lambda e: e.event_type == AuditEventType.SUSPICIOUS_ACTIVITY,
}


def _from_monitor(event: AuditEvent) -> bool:
    return event.metadata.get("source") == MONITOR_SOURCE


class SecurityMonitor:
    """Turns the audit stream into metrics, alerts and automated responses."""

    def __init__(
        self,
        audit_logger: AuditLogger | None = None,
        auditor: ApiSecurityAuditor | None = None,
        rules: tuple[ThreatRule, ...] = DEFAULT_THREAT_RULES,
        breakers: CircuitBreakerRegistry | None = None,
        rate_limiter: StatsProvider | None = None,
        auth_stats: Callable[[], dict[str, Any]] | None = None,
        webhook_url: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        webhook_retry_delay: float | None = None,
    ):
        monitoring = get_settings().monitoring
        self._audit_logger = audit_logger
        self.auditor = auditor or ApiSecurityAuditor([*monitoring.api_source_dirs])
        self.rules = rules
        self.breakers = breakers or get_circuit_breaker_registry()
        self.rate_limiter = rate_limiter
        self.auth_stats = auth_stats
        self.webhook_url = webhook_url or monitoring.webhook_url
        self._http_client = http_client
        self.webhook_retry_attempts = monitoring.webhook_retry_attempts
        self.webhook_retry_delay = (
            monitoring.webhook_retry_delay_seconds if webhook_retry_delay is None else webhook_retry_delay
        )

        self.retention = timedelta(days=monitoring.retention_days)
        self.dedup_window = timedelta(minutes=monitoring.alert_dedup_minutes)
        self.temporary_block = timedelta(minutes=monitoring.temporary_block_minutes)
        self.intervals = {
            "metrics": monitoring.metrics_interval_seconds,
            "threats": monitoring.threat_interval_seconds,
            "cleanup": monitoring.cleanup_interval_seconds,
        }

        self.alerts: list[SecurityAlert] = []
        self.metrics: dict[MetricType, list[SecurityMetric]] = {}
        self.ip_reputation: dict[str, IPReputation] = {}
        self._running = False
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def audit_logger(self) -> AuditLogger:
        return self._audit_logger or get_audit_logger()

    @property
    def is_running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    def calculate_trend(self, metric_type: MetricType, value: float) -> Trend:
        """Compare against the previous sample with a 10% relative band."""
        history = self.metrics.get(metric_type)
        if not history:
            return "stable"
        previous = history[-1].value
        band = abs(previous) * TREND_THRESHOLD
        if value > previous + band:
            return "up"
        if value < previous - band:
            return "down"
        return "stable"

    def add_metric(
        self,
        metric_type: MetricType,
        value: float,
        timestamp: datetime | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> SecurityMetric:
        timestamp = timestamp or datetime.now(UTC)
        definition = METRIC_DEFINITIONS[metric_type]
        metric = SecurityMetric(
            id=f"{metric_type.value}_{int(timestamp.timestamp() * 1000)}",
            type=metric_type,
            name=definition.name,
            value=value,
            unit=definition.unit,
            threshold=definition.threshold,
            trend=self.calculate_trend(metric_type, value),
            timestamp=timestamp,
            metadata=metadata or {},
        )
        history = self.metrics.setdefault(metric_type, [])
        history.append(metric)
        del history[:-MAX_METRIC_SAMPLES]
        SECURITY_METRIC_VALUE.labels(metric=metric_type.value).set(value)

        if metric.status != "ok":
            logger.warning(
                "security_monitor.metric_threshold",
                metric=metric_type.value,
                value=value,
                status=metric.status,
            )
        return metric

    @staticmethod
    def calculate_compliance_score(report: ApiAuditReport) -> int:
        """Weighted endpoint coverage, 0-100."""
        summary = report.summary
        secure_ratio = (
            report.secure_endpoints / report.total_endpoints * 100 if report.total_endpoints else 0
        )
        return round(
            summary.authentication_coverage * COMPLIANCE_WEIGHTS["authentication"]
            + summary.rate_limit_coverage * COMPLIANCE_WEIGHTS["rate_limit"]
            + summary.input_validation_coverage * COMPLIANCE_WEIGHTS["input_validation"]
            + summary.audit_logging_coverage * COMPLIANCE_WEIGHTS["audit_logging"]
            + secure_ratio * COMPLIANCE_WEIGHTS["secure_ratio"]
        )

    @classmethod
    def compliance_breakdown(cls, report: ApiAuditReport) -> ComplianceScores:
        summary = report.summary
        return ComplianceScores(
            soc2=round((summary.authentication_coverage + summary.audit_logging_coverage) / 2),
            iso27001=round((summary.rate_limit_coverage + summary.input_validation_coverage) / 2),
            gdpr=round(
                summary.audit_logging_coverage * 0.8 + summary.input_validation_coverage * 0.2
            ),
            overall=cls.calculate_compliance_score(report),
        )

    async def update_security_metrics(self) -> list[SecurityMetric]:
        """Recompute rolling 24h counts from the audit log."""
        now = datetime.now(UTC)
        events = await self.audit_logger.query_logs(
            AuditQuery(start_date=now - timedelta(hours=24))
        )
        # The monitor's own alerts and blocks are not user activity.
        events = [e for e in events if not _from_monitor(e)]

        samples = [
            self.add_metric(metric_type, sum(1 for e in events if matches(e)), now)
            for metric_type, matches in METRIC_FILTERS.items()
        ]

        report = await self.auditor.generate_report()
        breakdown = self.compliance_breakdown(report)
        samples.append(
            self.add_metric(
                MetricType.COMPLIANCE_SCORE,
                breakdown.overall,
                now,
                {"soc2": breakdown.soc2, "iso27001": breakdown.iso27001, "gdpr": breakdown.gdpr},
            )
        )
        logger.debug("security_monitor.metrics_updated", samples=len(samples), events=len(events))
        return samples

    def get_metric_history(self, metric_type: MetricType, hours: int = 24) -> list[SecurityMetric]:
        cutoff = datetime.now(UTC) - timedelta(hours=hours)
        return [m for m in self.metrics.get(metric_type, []) if m.timestamp > cutoff]

    # ------------------------------------------------------------------
    # Threat detection
    # ------------------------------------------------------------------

    @staticmethod
    def _group(rule: ThreatRule, events: list[AuditEvent]) -> dict[str | None, list[AuditEvent]]:
        if not rule.group_by_ip:
            return {None: events}
        groups: dict[str | None, list[AuditEvent]] = {}
        for event in events:
            groups.setdefault(event.ip_address, []).append(event)
        return groups

    def _recent_alert(self, rule: ThreatRule, ip_address: str | None) -> SecurityAlert | None:
        cutoff = datetime.now(UTC) - self.dedup_window
        for alert in self.alerts:
            if (
                alert.type == rule.id
                and not alert.acknowledged
                and alert.timestamp > cutoff
                and (not rule.group_by_ip or alert.ip_address == ip_address)
            ):
                return alert
        return None

    def evaluate_rule(
        self, rule: ThreatRule, events: list[AuditEvent], now: datetime | None = None
    ) -> dict[str | None, list[AuditEvent]]:
        """Event groups that meet the rule's threshold inside its window."""
        cutoff = (now or datetime.now(UTC)) - timedelta(minutes=rule.window_minutes)
        matching = [
            e for e in events if e.timestamp >= cutoff and not _from_monitor(e) and rule.matches(e)
        ]
        return {
            key: group
            for key, group in self._group(rule, matching).items()
            if len(group) >= rule.threshold
        }

    async def analyze_threats(self) -> list[SecurityAlert]:
        """Run every rule over the last hour of audit events."""
        now = datetime.now(UTC)
        horizon = max([60, *(r.window_minutes for r in self.rules)])
        events = await self.audit_logger.query_logs(
            AuditQuery(start_date=now - timedelta(minutes=horizon))
        )

        created = []
        for rule in self.rules:
            for ip_address, group in self.evaluate_rule(rule, events, now).items():
                alert = await self.create_threat_alert(rule, group, ip_address)
                if alert is not None:
                    created.append(alert)
        return created

    async def create_threat_alert(
        self, rule: ThreatRule, events: list[AuditEvent], ip_address: str | None = None
    ) -> SecurityAlert | None:
        """Raise an alert for ``rule`` unless an open one fired recently."""
        if rule.group_by_ip and ip_address is None and events:
            ip_address = events[0].ip_address
        if self._recent_alert(rule, ip_address) is not None:
            logger.debug("security_monitor.alert_deduplicated", rule=rule.id, ip_address=ip_address)
            return None

        alert = SecurityAlert(
            title=rule.name,
            description=(
                f"{rule.description}. Detected {len(events)} events in the last "
                f"{rule.window_minutes} minutes."
            ),
            severity=rule.severity,
            type=rule.id,
            ip_address=ip_address,
            user_id=next((e.user_id for e in events if e.user_id), None),
            metadata={
                "rule": rule.id,
                "event_count": len(events),
                "window_minutes": rule.window_minutes,
                "events": [e.model_dump(mode="json") for e in events[:5]],
            },
            response_actions=list(rule.actions),
        )
        self.alerts.insert(0, alert)
        del self.alerts[MAX_ALERTS:]
        SECURITY_ALERTS_TOTAL.labels(rule=rule.id, severity=rule.severity.value).inc()

        logger.warning(
            "security_monitor.alert_created",
            alert_id=alert.id,
            rule=rule.id,
            severity=alert.severity.value,
            ip_address=ip_address,
            event_count=len(events),
        )

        await self.execute_response_actions(alert, events)
        await self.audit_logger.log_security_event(
            AuditEventType.BRUTE_FORCE_DETECTED
            if rule.id == "brute_force_detection"
            else AuditEventType.SUSPICIOUS_ACTIVITY,
            f"Security alert raised: {alert.title}",
            severity=alert.severity.value,
            result=AuditResult.PENDING,
            ip_address=ip_address,
            user_id=alert.user_id,
            user_agent=MONITOR_SOURCE,
            metadata={
                "source": MONITOR_SOURCE,
                "alert_id": alert.id,
                "rule": rule.id,
                "event_count": len(events),
            },
        )
        return alert

    async def handle_critical_event(self, event: AuditEvent) -> None:
        """Alert handler for the audit logger; zero-tolerance rules fire immediately."""
        if _from_monitor(event):
            return
        logger.info(
            "security_monitor.critical_event_received",
            event_id=event.id,
            event_type=event.event_type.value,
        )
        for rule in self.rules:
            if rule.threshold <= 1 and rule.matches(event):
                await self.create_threat_alert(rule, [event], event.ip_address)

    # ------------------------------------------------------------------
    # Response actions
    # ------------------------------------------------------------------

    async def execute_response_actions(self, alert: SecurityAlert, events: list[AuditEvent]) -> dict[str, str]:
        """Run each action independently; one failure does not stop the rest."""
        outcomes: dict[str, str] = {}
        for action in alert.response_actions:
            try:
                match action:
                    case ResponseAction.BLOCK_IP:
                        if alert.ip_address:
                            await self.block_ip(alert.ip_address, f"alert:{alert.type}")
                    case ResponseAction.TEMPORARY_BLOCK:
                        if alert.ip_address:
                            await self.block_ip(
                                alert.ip_address, f"alert:{alert.type}", self.temporary_block
                            )
                    case ResponseAction.NOTIFY_ADMIN:
                        await self.notify_administrators(alert)
                    case ResponseAction.IMMEDIATE_ALERT:
                        await self.send_immediate_alert(alert)
                    case ResponseAction.LOG_INCIDENT:
                        await self.log_incident(alert, events)
                outcomes[action.value] = "ok"
                logger.info("security_monitor.action_executed", alert_id=alert.id, action=action.value)
            except Exception as e:
                outcomes[action.value] = "failed"
                logger.error(
                    "security_monitor.action_failed",
                    alert_id=alert.id,
                    action=action.value,
                    error=str(e),
                )
        return outcomes

    async def block_ip(
        self, ip_address: str, reason: str, duration: timedelta | None = None
    ) -> bool:
        """Block ``ip_address``; a permanent block is never shortened. Returns False if unchanged."""
        now = datetime.now(UTC)
        expires_at = now + duration if duration else None
        current = self.ip_reputation.get(ip_address)
        if current is not None and current.blocked:
            current.last_seen = now
            if current.expires_at is None or (expires_at and expires_at <= current.expires_at):
                return False
            # A permanent block replaces a temporary one; longer blocks extend it.
            current.expires_at = expires_at
            current.reason = reason
        else:
            self.ip_reputation[ip_address] = IPReputation(
                score=0, last_seen=now, blocked=True, reason=reason, expires_at=expires_at
            )

        logger.warning("security_monitor.ip_blocked", ip_address=ip_address, reason=reason)
        await self.audit_logger.log_security_event(
            AuditEventType.IP_BLOCKED,
            f"IP address blocked: {ip_address}",
            ip_address=ip_address,
            user_agent=MONITOR_SOURCE,
            metadata={
                "source": MONITOR_SOURCE,
                "reason": reason,
                "expires_at": expires_at.isoformat() if expires_at else None,
                "automated": True,
            },
        )
        return True

    async def unblock_ip(self, ip_address: str, user_id: str | None = None) -> bool:
        entry = self.ip_reputation.get(ip_address)
        if entry is None or not entry.blocked:
            return False
        entry.blocked = False
        entry.expires_at = None
        await self.audit_logger.log_event(
            AuditEventType.IP_UNBLOCKED,
            description=f"IP address unblocked: {ip_address}",
            ip_address=ip_address,
            user_id=user_id,
            metadata={"source": MONITOR_SOURCE},
        )
        return True

    def is_ip_blocked(self, ip_address: str) -> bool:
        entry = self.ip_reputation.get(ip_address)
        if entry is None or not entry.blocked:
            return False
        if entry.expires_at is not None and entry.expires_at <= datetime.now(UTC):
            entry.blocked = False
            entry.expires_at = None
            logger.info("security_monitor.ip_block_expired", ip_address=ip_address)
            return False
        return True

    def get_blocked_ips(self) -> list[str]:
        return [ip for ip in list(self.ip_reputation) if self.is_ip_blocked(ip)]

    async def _post_webhook(self, payload: dict[str, Any]) -> None:
        breaker = self.breakers.get_breaker(
            "security_webhook",
            CircuitBreakerConfig(failure_threshold=3, reset_timeout=60, request_timeout=30.0),
        )

        async def send() -> None:
            try:
                if self._http_client is not None:
                    response = await self._http_client.post(self.webhook_url, json=payload)
                else:
                    async with httpx.AsyncClient(timeout=10.0) as client:
                        response = await client.post(self.webhook_url, json=payload)
                response.raise_for_status()
            except httpx.HTTPStatusError as e:
                if e.response.status_code < 500:
                    raise
                raise ExternalServiceError("security_webhook", cause=e) from e
            except httpx.TransportError as e:
                raise ExternalServiceError("security_webhook", cause=e) from e

        # The breaker counts one failure per delivery, after its retries are spent.
        try:
            await breaker.execute(
                retry_async,
                send,
                attempts=self.webhook_retry_attempts,
                base_delay=self.webhook_retry_delay,
            )
        except httpx.HTTPError as e:
            raise ExternalServiceError("security_webhook", cause=e) from e

    def _alert_payload(self, alert: SecurityAlert, urgent: bool) -> dict[str, Any]:
        return {
            "alert_id": alert.id,
            "title": alert.title,
            "description": alert.description,
            "severity": alert.severity.value,
            "rule": alert.type,
            "ip_address": alert.ip_address,
            "timestamp": alert.timestamp.isoformat(),
            "urgent": urgent,
        }

    async def notify_administrators(self, alert: SecurityAlert) -> None:
        if self.webhook_url:
            await self._post_webhook(self._alert_payload(alert, urgent=False))
        logger.warning(
            "security_monitor.admin_notified",
            alert_id=alert.id,
            severity=alert.severity.value,
            channel="webhook" if self.webhook_url else "log",
        )

    async def send_immediate_alert(self, alert: SecurityAlert) -> None:
        logger.critical(
            "security_monitor.immediate_alert",
            alert_id=alert.id,
            title=alert.title,
            severity=alert.severity.value,
            description=alert.description,
        )
        if self.webhook_url:
            await self._post_webhook(self._alert_payload(alert, urgent=True))

    async def log_incident(self, alert: SecurityAlert, events: list[AuditEvent]) -> str:
        incident_id = f"INC-{int(time.time() * 1000)}"
        await self.audit_logger.log_security_event(
            AuditEventType.SUSPICIOUS_ACTIVITY,
            f"Security incident opened: {alert.title}",
            severity=alert.severity.value,
            result=AuditResult.PENDING,
            ip_address=alert.ip_address,
            user_id=alert.user_id,
            user_agent=MONITOR_SOURCE,
            metadata={
                "source": MONITOR_SOURCE,
                "incident_id": incident_id,
                "alert_id": alert.id,
                "event_count": len(events),
                "status": "open",
                "automated": True,
            },
        )
        return incident_id

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    def get_alert(self, alert_id: str) -> SecurityAlert | None:
        return next((a for a in self.alerts if a.id == alert_id), None)

    def get_alerts(self, include_acknowledged: bool = True) -> list[SecurityAlert]:
        if include_acknowledged:
            return list(self.alerts)
        return [a for a in self.alerts if not a.acknowledged]

    async def acknowledge_alert(self, alert_id: str, user_id: str) -> bool:
        alert = self.get_alert(alert_id)
        if alert is None:
            return False

        alert.acknowledged = True
        alert.acknowledged_by = user_id
        alert.resolved_at = datetime.now(UTC)

        await self.audit_logger.log_event(
            AuditEventType.SECURITY_ALERT_ACKNOWLEDGED,
            user_id=user_id,
            description=f"Security alert acknowledged: {alert.title}",
            metadata={
                "source": MONITOR_SOURCE,
                "alert_id": alert_id,
                "alert_type": alert.type,
                "alert_severity": alert.severity.value,
            },
        )
        return True

    def _open_alert_count(self, severity: AlertSeverity) -> int:
        return sum(1 for a in self.alerts if a.severity == severity and not a.acknowledged)

    # ------------------------------------------------------------------
    # Dashboard
    # ------------------------------------------------------------------

    @staticmethod
    def risk_level(critical_alerts: int, high_alerts: int, risk_score: int) -> RiskLevel:
        if critical_alerts > 0:
            return "critical"
        if high_alerts > 0:
            return "high"
        if risk_score > 60:
            return "medium"
        return "low"

    async def get_dashboard(self, hours: int = 24) -> SecurityDashboard:
        now = datetime.now(UTC)
        report = await self.auditor.generate_report()
        events = await self.audit_logger.query_logs(
            AuditQuery(start_date=now - timedelta(hours=24))
        )
        by_type = Counter(e.event_type.value for e in events)

        critical = self._open_alert_count(AlertSeverity.CRITICAL)
        high = self._open_alert_count(AlertSeverity.HIGH)

        latest = []
        for metric_type in MetricType:
            history = self.get_metric_history(metric_type, hours)
            if history:
                latest.append(history[-1])

        day_ago = now - timedelta(hours=24)
        return SecurityDashboard(
            timestamp=now,
            overall_score=max(0, 100 - report.overall_risk_score - critical * 10 - high * 5),
            risk_level=self.risk_level(critical, high, report.overall_risk_score),
            metrics=latest,
            alerts=self.alerts[:DASHBOARD_ALERTS],
            recent_events=RecentEvents(
                total=len(events), by_type=dict(by_type), last_24_hours=len(events)
            ),
            compliance=self.compliance_breakdown(report),
            system_health=SystemHealth(
                api_endpoints=report.total_endpoints,
                secure_endpoints=report.secure_endpoints,
                auth_coverage=report.summary.authentication_coverage,
                rate_limit_coverage=report.summary.rate_limit_coverage,
                last_audit=report.timestamp,
                circuit_breakers={
                    name: status["state"]
                    for name, status in self.breakers.get_all_health_status().items()
                },
                rate_limit_mode=self.rate_limiter.get_metrics()["mode"] if self.rate_limiter else None,
                auth=self.auth_stats() if self.auth_stats else {},
            ),
            threat_intelligence=ThreatIntelligence(
                blocked_ips=len(self.get_blocked_ips()),
                detected_threats=sum(1 for a in self.alerts if a.timestamp > day_ago),
                mitigated_attacks=sum(
                    1 for a in self.alerts if a.acknowledged and a.resolved_at and a.timestamp > day_ago
                ),
                top_event_types=by_type.most_common(5),
            ),
        )

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def cleanup_old_data(self) -> dict[str, int]:
        """Drop alerts, metric samples and IP entries past the retention window."""
        cutoff = datetime.now(UTC) - self.retention

        alerts_before = len(self.alerts)
        self.alerts = [a for a in self.alerts if a.timestamp > cutoff]

        metrics_removed = 0
        for metric_type, history in self.metrics.items():
            kept = [m for m in history if m.timestamp > cutoff]
            metrics_removed += len(history) - len(kept)
            self.metrics[metric_type] = kept

        stale_ips = [
            ip
            for ip, entry in self.ip_reputation.items()
            if entry.last_seen < cutoff and not self.is_ip_blocked(ip)
        ]
        for ip in stale_ips:
            del self.ip_reputation[ip]

        removed = {
            "alerts": alerts_before - len(self.alerts),
            "metrics": metrics_removed,
            "ip_reputation": len(stale_ips),
        }
        logger.debug("security_monitor.cleanup", **removed)
        return removed

    async def _loop(self, name: str, job: Callable[[], Any]) -> None:
        interval = self.intervals[name]
        while self._running:
            try:
                result = job()
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error("security_monitor.job_failed", job=name, error=str(e))
            await asyncio.sleep(interval)

    async def start(self) -> None:
        """Start the metrics, threat analysis and cleanup loops."""
        if self._running:
            return
        self._running = True
        for name, job in (
            ("metrics", self.update_security_metrics),
            ("threats", self.analyze_threats),
            ("cleanup", self.cleanup_old_data),
        ):
            self._tasks.add(asyncio.create_task(self._loop(name, job)))
        logger.info("security_monitor.started", rules=len(self.rules), **self.intervals)

    async def stop(self) -> None:
        self._running = False
        for task in self._tasks:
            task.cancel()

        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("security_monitor.stopped")
