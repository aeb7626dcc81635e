"""
Audit logging service.

Events are appended as newline-delimited JSON to per-day partitions and
carry a SHA-256 integrity hash over their core fields plus a server secret.
"""

import asyncio
import hashlib
import json
import re
from collections import Counter
from collections.abc import Awaitable, Callable
from datetime import UTC, date, datetime
from pathlib import Path
from typing import Any

import structlog
from pydantic import ValidationError
from pydantic_core import PydanticSerializationError, to_jsonable_python
from starlette.requests import Request

from learnacademy.security.request_utils import request_context
from learnacademy.security.settings import get_settings

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

logger = structlog.get_logger(__name__)

type AlertHandler = Callable[[AuditEvent], Awaitable[None]]

_CRITICAL_MARKERS = ("injection", "xss", "suspicious", "export", "pii")
_HIGH_MARKERS = ("failure", "denied", "exceeded", "deletion", "revoked", "failed")
_INFO_MARKERS = ("start", "stop", "submitted", "attempt")

SECURITY_EVENT_TYPES: frozenset[AuditEventType] = frozenset(
    {
        AuditEventType.RATE_LIMIT_EXCEEDED,
        AuditEventType.SUSPICIOUS_ACTIVITY,
        AuditEventType.SQL_INJECTION_ATTEMPT,
        AuditEventType.XSS_ATTEMPT,
        AuditEventType.CSRF_VIOLATION,
        AuditEventType.BRUTE_FORCE_DETECTED,
        AuditEventType.IP_BLOCKED,
        AuditEventType.IP_UNBLOCKED,
        AuditEventType.SECURITY_ALERT_ACKNOWLEDGED,
    }
)

_PARTITION_RE = re.compile(r"^(?P<category>[a-z]+)-(?P<date>\d{4}-\d{2}-\d{2})(?:\.\d+)?\.log$")


def determine_severity(event_type: str) -> AuditSeverity:
    """Derive severity from substrings of the event type."""
    lowered = event_type.lower()
    if any(marker in lowered for marker in _CRITICAL_MARKERS):
        return AuditSeverity.CRITICAL
    if any(marker in lowered for marker in _HIGH_MARKERS):
        return AuditSeverity.HIGH
    if any(marker in lowered for marker in _INFO_MARKERS):
        return AuditSeverity.INFO
    return AuditSeverity.MEDIUM


def compute_event_hash(event: AuditEvent, secret: str) -> str:
    """SHA-256 over the JSON of the core fields followed by the secret."""
    core = {
        "timestamp": event.timestamp.astimezone(UTC).isoformat(),
        "event_type": event.event_type.value,
        "user_id": event.user_id,
        "ip_address": event.ip_address,
        "resource": event.resource.model_dump() if event.resource else None,
        "result": event.result.value,
        "description": event.description,
        "metadata": event.metadata,
    }
    payload = json.dumps(core, sort_keys=True, separators=(",", ":")) + secret
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def json_safe(value: dict[str, Any]) -> dict[str, Any]:
    """Coerce metadata to plain JSON so it hashes and persists the same way."""
    try:
        return json.loads(json.dumps(value, default=str))
    except (TypeError, ValueError):
        return {str(k): repr(v) for k, v in value.items()}


def partition_category(event_type: AuditEventType) -> str:
    return "security" if event_type in SECURITY_EVENT_TYPES else "audit"


def partition_name(category: str, day: date) -> str:
    return f"{category}-{day.isoformat()}.log"


def parse_partition_name(name: str) -> tuple[str, date] | None:
    """Return (category, day) for a partition file name, None for anything else."""
    match = _PARTITION_RE.match(name)
    if not match:
        return None
    return match.group("category"), date.fromisoformat(match.group("date"))


class AuditLogger:
    """Append-only audit log with integrity hashes and critical-event alerting."""

    def __init__(
        self,
        log_dir: str | Path | None = None,
        hash_secret: str | None = None,
    ):
        settings = get_settings()
        self.log_dir = Path(log_dir or settings.audit.log_dir)
        self._hash_secret = hash_secret or settings.secret_for("audit")
        self._lock = asyncio.Lock()
        self._alert_handlers: list[AlertHandler] = []
        self._pending_alerts: set[asyncio.Task[None]] = set()

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def add_alert_handler(self, handler: AlertHandler) -> None:
        """Register a coroutine called for alert-worthy events."""
        self._alert_handlers.append(handler)

    def remove_alert_handler(self, handler: AlertHandler) -> None:
        if handler in self._alert_handlers:
            self._alert_handlers.remove(handler)

    def build_event(
        self,
        event_type: AuditEventType | str,
        *,
        severity: AuditSeverity | str | None = None,
        result: AuditResult | str = AuditResult.SUCCESS,
        description: str = "",
        resource: AuditResource | dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
        **context: Any,
    ) -> AuditEvent:
        """Fill defaults and seal an event with its integrity hash."""
        event_type = AuditEventType(event_type)
        if severity is None:
            severity = determine_severity(event_type.value)
        if isinstance(resource, dict):
            resource = AuditResource(**resource)

        event = AuditEvent(
            event_type=event_type,
            severity=AuditSeverity(severity),
            result=AuditResult(result),
            description=description,
            resource=resource,
            metadata=json_safe(metadata or {}),
            **context,
        )
        return event.model_copy(update={"hash": compute_event_hash(event, self._hash_secret)})

    async def log_event(
        self,
        event_type: AuditEventType | str,
        **fields: Any,
    ) -> str:
        """
        Record an audit event.

        Accepts the same keyword fields as :class:`AuditEvent`. Never raises
        on storage failure: the event is emitted to the console logger instead.

        Returns:
            The event id
        """
        event = self.build_event(event_type, **fields)
        await self._persist(event)

        if event.severity == AuditSeverity.CRITICAL or event.event_type in CRITICAL_EVENT_TYPES:
            self._dispatch_alert(event)

        return event.id

    async def _persist(self, event: AuditEvent) -> None:
        day = event.timestamp.astimezone(UTC).date()
        path = self.log_dir / partition_name(partition_category(event.event_type), day)
        try:
            line = event.model_dump_json() + "\n"
            async with self._lock:
                await asyncio.to_thread(self._append, path, line)
        except (OSError, ValueError, PydanticSerializationError) as e:
            logger.error(
                "audit.write_failed",
                error=str(e),
                path=str(path),
                audit_event=to_jsonable_python(event, fallback=str),
            )

    @staticmethod
    def _append(path: Path, line: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as fh:
            fh.write(line)
            fh.flush()

    def _dispatch_alert(self, event: AuditEvent) -> None:
        logger.warning(
            "audit.critical_event",
            event_id=event.id,
            event_type=event.event_type.value,
            severity=event.severity.value,
            ip_address=event.ip_address,
        )
        for handler in self._alert_handlers:
            task = asyncio.create_task(self._run_alert_handler(handler, event))
            self._pending_alerts.add(task)
            task.add_done_callback(self._pending_alerts.discard)

    async def _run_alert_handler(self, handler: AlertHandler, event: AuditEvent) -> None:
        try:
            await handler(event)
        except Exception as e:
            logger.error("audit.alert_handler_failed", event_id=event.id, error=str(e))

    async def drain_alerts(self) -> None:
        """Wait for in-flight alert handlers (shutdown and tests)."""
        # Handlers may log events that schedule further handlers.
        while self._pending_alerts:
            await asyncio.gather(*list(self._pending_alerts), return_exceptions=True)

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def partitions(self, start: date | None = None, end: date | None = None) -> list[Path]:
        """Partition files whose day falls within [start, end]."""
        if not self.log_dir.exists():
            return []
        selected = []
        for path in self.log_dir.iterdir():
            parsed = parse_partition_name(path.name)
            if parsed is None:
                continue
            _, day = parsed
            if start and day < start:
                continue
            if end and day > end:
                continue
            selected.append(path)
        return sorted(selected)

    def _read_partition(self, path: Path) -> list[AuditEvent]:
        events = []
        with path.open("r", encoding="utf-8") as fh:
            for lineno, line in enumerate(fh, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    events.append(AuditEvent.model_validate_json(line))
                except (ValidationError, ValueError) as e:
                    logger.warning(
                        "audit.malformed_line",
                        path=str(path),
                        line=lineno,
                        error=str(e),
                    )
        return events

    async def _load(self, start: date | None, end: date | None) -> list[AuditEvent]:
        events: list[AuditEvent] = []
        for path in self.partitions(start, end):
            try:
                events.extend(await asyncio.to_thread(self._read_partition, path))
            except OSError as e:
                logger.error("audit.read_failed", path=str(path), error=str(e))
        return events

    async def query_logs(self, query: AuditQuery | None = None, **filters: Any) -> list[AuditEvent]:
        """
        Scan partitions and return matching events, newest first.

        Malformed lines are skipped and logged.
        """
        query = query or AuditQuery(**filters)
        start = query.start_date.astimezone(UTC).date() if query.start_date else None
        end = query.end_date.astimezone(UTC).date() if query.end_date else None

        events = [e for e in await self._load(start, end) if self._matches(e, query)]
        events.sort(key=lambda e: e.timestamp, reverse=True)
        if query.limit is not None:
            events = events[: query.limit]
        return events

    @staticmethod
    def _matches(event: AuditEvent, query: AuditQuery) -> bool:
        if query.start_date and event.timestamp < query.start_date:
            return False
        if query.end_date and event.timestamp > query.end_date:
            return False
        if query.event_types and event.event_type not in query.event_types:
            return False
        if query.user_id and event.user_id != query.user_id:
            return False
        if query.severity and event.severity != query.severity:
            return False
        if query.ip_address and event.ip_address != query.ip_address:
            return False
        return True

    def verify_event(self, event: AuditEvent) -> bool:
        return event.hash == compute_event_hash(event, self._hash_secret)

    async def verify_log_integrity(self, event_id: str) -> bool:
        """Recompute the stored event's hash; False when missing or tampered."""
        for event in await self._load(None, None):
            if event.id != event_id:
                continue
            if self.verify_event(event):
                return True
            logger.error("audit.integrity_mismatch", event_id=event_id)
            return False

        logger.warning("audit.integrity_event_not_found", event_id=event_id)
        return False

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------

    async def generate_compliance_report(
        self, start_date: datetime, end_date: datetime
    ) -> ComplianceReport:
        """Summarize audit activity over a period."""
        events = await self.query_logs(AuditQuery(start_date=start_date, end_date=end_date))

        ip_counts = Counter(e.ip_address for e in events if e.ip_address)
        incidents = [
            e for e in events if e.severity in (AuditSeverity.CRITICAL, AuditSeverity.HIGH)
        ]

        return ComplianceReport(
            period_start=start_date,
            period_end=end_date,
            total_events=len(events),
            events_by_type=dict(Counter(e.event_type.value for e in events)),
            events_by_severity=dict(Counter(e.severity.value for e in events)),
            events_by_result=dict(Counter(e.result.value for e in events)),
            failed_logins=sum(
                1
                for e in events
                if e.event_type
                in (AuditEventType.LOGIN_FAILURE, AuditEventType.AUTHENTICATION_FAILED)
            ),
            security_incidents=incidents,
            user_activity=dict(Counter(e.user_id for e in events if e.user_id)),
            top_ip_addresses=ip_counts.most_common(10),
        )

    # ------------------------------------------------------------------
    # Convenience helpers
    # ------------------------------------------------------------------

    async def log_from_request(
        self, request: Request, event_type: AuditEventType | str, **fields: Any
    ) -> str:
        """Log an event with ip, user agent, method, path and request id taken from ``request``."""
        context = request_context(request)
        context.update(fields)
        return await self.log_event(event_type, **context)

    async def log_auth_event(
        self,
        event_type: AuditEventType | str,
        user_id: str | None = None,
        result: AuditResult | str = AuditResult.SUCCESS,
        **fields: Any,
    ) -> str:
        return await self.log_event(
            event_type,
            user_id=user_id,
            result=result,
            description=fields.pop("description", f"Authentication event: {AuditEventType(event_type).value}"),
            **fields,
        )

    async def log_data_event(
        self,
        event_type: AuditEventType | str,
        resource_type: str,
        resource_id: str | None = None,
        user_id: str | None = None,
        **fields: Any,
    ) -> str:
        return await self.log_event(
            event_type,
            user_id=user_id,
            resource=AuditResource(type=resource_type, id=resource_id),
            description=fields.pop("description", f"Data event on {resource_type}"),
            **fields,
        )

    async def log_security_event(
        self,
        event_type: AuditEventType | str,
        description: str,
        **fields: Any,
    ) -> str:
        """Security events default to high severity and a blocked result."""
        fields.setdefault("severity", AuditSeverity.HIGH)
        fields.setdefault("result", AuditResult.BLOCKED)
        return await self.log_event(event_type, description=description, **fields)

    async def log_form_event(
        self,
        form_name: str,
        result: AuditResult | str = AuditResult.SUCCESS,
        **fields: Any,
    ) -> str:
        event_type = (
            AuditEventType.FORM_SUBMITTED
            if AuditResult(result) == AuditResult.SUCCESS
            else AuditEventType.FORM_VALIDATION_FAILED
        )
        return await self.log_event(
            event_type,
            result=result,
            resource=AuditResource(type="form", name=form_name),
            description=fields.pop("description", f"Form {form_name}"),
            **fields,
        )

    async def log_api_event(
        self,
        method: str,
        path: str,
        status_code: int,
        response_time_ms: float | None = None,
        **fields: Any,
    ) -> str:
        failed = status_code >= 400
        metadata = {
            "status_code": status_code,
            "response_time_ms": response_time_ms,
            **fields.pop("metadata", {}),
        }
        return await self.log_event(
            AuditEventType.API_ERROR if failed else AuditEventType.API_CALL,
            method=method,
            path=path,
            result=AuditResult.FAILURE if failed else AuditResult.SUCCESS,
            description=f"{method} {path} -> {status_code}",
            metadata=metadata,
            **fields,
        )
