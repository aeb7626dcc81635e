"""
Tests for the append-only audit logger.
"""

import asyncio
import json
from datetime import UTC, datetime, timedelta

import pytest

from learnacademy.security.audit import (
    AuditEventType,
    AuditLogger,
    AuditQuery,
    AuditResult,
    AuditSeverity,
    compute_event_hash,
    determine_severity,
)
from learnacademy.security.audit.service import parse_partition_name, partition_name

pytestmark = pytest.mark.unit


class TestDetermineSeverity:
    @pytest.mark.parametrize(
        "event_type,expected",
        [
            ("sql_injection_attempt", AuditSeverity.CRITICAL),
            ("xss_attempt", AuditSeverity.CRITICAL),
            ("pii_access", AuditSeverity.CRITICAL),
            ("login_failure", AuditSeverity.HIGH),
            ("access_denied", AuditSeverity.HIGH),
            ("rate_limit_exceeded", AuditSeverity.HIGH),
            ("system_start", AuditSeverity.INFO),
            ("form_submitted", AuditSeverity.INFO),
            ("login_success", AuditSeverity.MEDIUM),
        ],
    )
    def test_severity_from_event_type(self, event_type, expected):
        assert determine_severity(event_type) == expected


class TestPartitions:
    @pytest.mark.asyncio
    async def test_security_events_go_to_security_partition(self, audit_logger):
        await audit_logger.log_event(AuditEventType.CSRF_VIOLATION, description="bad token")
        await audit_logger.log_event(AuditEventType.LOGIN_SUCCESS, user_id="u1")

        names = sorted(p.name for p in audit_logger.log_dir.iterdir())
        today = datetime.now(UTC).date()
        assert names == sorted([partition_name("audit", today), partition_name("security", today)])

    def test_parse_partition_name(self):
        assert parse_partition_name("security-2026-01-31.log")[0] == "security"
        assert parse_partition_name("audit-2026-01-31.2.log")[1].isoformat() == "2026-01-31"
        assert parse_partition_name("notes.txt") is None


class TestLogEvent:
    @pytest.mark.asyncio
    async def test_event_is_persisted_as_one_json_line(self, audit_logger):
        event_id = await audit_logger.log_event(
            AuditEventType.LOGIN_FAILURE,
            user_id="user123",
            ip_address="203.0.113.5",
            description="Invalid password",
        )

        lines = next(audit_logger.log_dir.iterdir()).read_text().splitlines()
        assert len(lines) == 1
        record = json.loads(lines[0])
        assert record["id"] == event_id
        assert record["event_type"] == "login_failure"
        assert record["severity"] == "high"
        assert record["hash"]

    @pytest.mark.asyncio
    async def test_explicit_severity_overrides_derived(self, audit_logger):
        await audit_logger.log_event(AuditEventType.LOGIN_FAILURE, severity=AuditSeverity.LOW)
        events = await audit_logger.query_logs()
        assert events[0].severity == AuditSeverity.LOW

    @pytest.mark.asyncio
    async def test_write_failure_does_not_raise(self, tmp_path):
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("occupied")
        logger = AuditLogger(log_dir=blocker, hash_secret="s")

        event_id = await logger.log_event(AuditEventType.LOGIN_SUCCESS, user_id="u1")

        assert event_id

    @pytest.mark.asyncio
    async def test_unserializable_metadata_is_stringified(self, audit_logger):
        marker = object()

        event_id = await audit_logger.log_event(
            AuditEventType.API_CALL, metadata={"obj": marker, "at": datetime(2026, 1, 2, tzinfo=UTC)}
        )

        [event] = await audit_logger.query_logs()
        assert event.id == event_id
        assert event.metadata == {"obj": str(marker), "at": "2026-01-02 00:00:00+00:00"}
        assert await audit_logger.verify_log_integrity(event_id) is True

    @pytest.mark.asyncio
    async def test_concurrent_writes_keep_lines_intact(self, audit_logger):
        await asyncio.gather(
            *(
                audit_logger.log_event(AuditEventType.API_CALL, description=f"call {i}")
                for i in range(50)
            )
        )

        lines = next(audit_logger.log_dir.iterdir()).read_text().splitlines()
        assert len(lines) == 50
        assert all(json.loads(line)["event_type"] == "api_call" for line in lines)


class TestAlertHandlers:
    @pytest.mark.asyncio
    async def test_critical_event_dispatches_handler(self, audit_logger):
        received = []

        async def handler(event):
            received.append(event)

        audit_logger.add_alert_handler(handler)
        await audit_logger.log_event(AuditEventType.SQL_INJECTION_ATTEMPT, ip_address="198.51.100.7")
        await audit_logger.drain_alerts()

        assert [e.event_type for e in received] == [AuditEventType.SQL_INJECTION_ATTEMPT]

    @pytest.mark.asyncio
    async def test_routine_event_does_not_dispatch(self, audit_logger):
        received = []

        async def handler(event):
            received.append(event)

        audit_logger.add_alert_handler(handler)
        await audit_logger.log_event(AuditEventType.LOGIN_SUCCESS)
        await audit_logger.drain_alerts()

        assert received == []

    @pytest.mark.asyncio
    async def test_failing_handler_is_isolated(self, audit_logger):
        calls = []

        async def broken(event):
            raise RuntimeError("boom")

        async def working(event):
            calls.append(event.id)

        audit_logger.add_alert_handler(broken)
        audit_logger.add_alert_handler(working)
        event_id = await audit_logger.log_event(AuditEventType.PRIVILEGE_ESCALATION)
        await audit_logger.drain_alerts()

        assert calls == [event_id]


class TestQueryLogs:
    @pytest.mark.asyncio
    async def test_filters_newest_first(self, audit_logger):
        await audit_logger.log_event(AuditEventType.LOGIN_FAILURE, user_id="a", ip_address="10.0.0.1")
        await audit_logger.log_event(AuditEventType.LOGIN_FAILURE, user_id="b", ip_address="10.0.0.2")
        await audit_logger.log_event(AuditEventType.LOGIN_SUCCESS, user_id="a", ip_address="10.0.0.1")

        by_user = await audit_logger.query_logs(user_id="a")
        assert {e.event_type for e in by_user} == {AuditEventType.LOGIN_SUCCESS, AuditEventType.LOGIN_FAILURE}
        assert by_user[0].timestamp >= by_user[1].timestamp

        by_type = await audit_logger.query_logs(
            AuditQuery(event_types=[AuditEventType.LOGIN_FAILURE], ip_address="10.0.0.2")
        )
        assert len(by_type) == 1 and by_type[0].user_id == "b"

        limited = await audit_logger.query_logs(limit=2)
        assert len(limited) == 2

    @pytest.mark.asyncio
    async def test_date_range_excludes_other_days(self, audit_logger):
        await audit_logger.log_event(AuditEventType.LOGIN_SUCCESS)
        tomorrow = datetime.now(UTC) + timedelta(days=1)

        assert await audit_logger.query_logs(start_date=tomorrow) == []

    @pytest.mark.asyncio
    async def test_malformed_lines_are_skipped(self, audit_logger):
        await audit_logger.log_event(AuditEventType.LOGIN_SUCCESS)
        partition = next(audit_logger.log_dir.iterdir())
        with partition.open("a") as fh:
            fh.write("{not json\n")

        events = await audit_logger.query_logs()
        assert len(events) == 1

    @pytest.mark.asyncio
    async def test_missing_directory_returns_empty(self, tmp_path):
        logger = AuditLogger(log_dir=tmp_path / "nothing-here", hash_secret="s")
        assert await logger.query_logs() == []


class TestIntegrity:
    @pytest.mark.asyncio
    async def test_untouched_event_verifies(self, audit_logger):
        event_id = await audit_logger.log_event(AuditEventType.DATA_EXPORT, user_id="u1")
        assert await audit_logger.verify_log_integrity(event_id) is True

    @pytest.mark.asyncio
    async def test_edited_description_fails_verification(self, audit_logger):
        event_id = await audit_logger.log_event(
            AuditEventType.DATA_EXPORT, user_id="u1", description="Exported 10 rows"
        )
        partition = next(audit_logger.log_dir.iterdir())
        partition.write_text(partition.read_text().replace("Exported 10 rows", "Exported 0 rows"))

        assert await audit_logger.verify_log_integrity(event_id) is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "field,value",
        [
            ("event_type", "login_success"),
            ("user_id", "someone-else"),
            ("timestamp", "2020-01-01T00:00:00Z"),
            ("metadata", {"rows": 0}),
        ],
    )
    async def test_edited_core_field_fails_verification(self, audit_logger, field, value):
        event_id = await audit_logger.log_event(
            AuditEventType.DATA_EXPORT, user_id="u1", metadata={"rows": 10}
        )
        partition = next(audit_logger.log_dir.iterdir())
        record = json.loads(partition.read_text())
        record[field] = value
        partition.write_text(json.dumps(record) + "\n")

        assert await audit_logger.verify_log_integrity(event_id) is False

    @pytest.mark.asyncio
    async def test_unknown_event_is_not_verified(self, audit_logger):
        assert await audit_logger.verify_log_integrity("does-not-exist") is False

    def test_hash_depends_on_secret(self, audit_logger):
        event = audit_logger.build_event(AuditEventType.LOGIN_SUCCESS, user_id="u1")
        assert compute_event_hash(event, "audit-test-secret") == event.hash
        assert compute_event_hash(event, "other-secret") != event.hash


class TestComplianceReport:
    @pytest.mark.asyncio
    async def test_aggregates_period(self, audit_logger):
        await audit_logger.log_event(AuditEventType.LOGIN_FAILURE, user_id="u1", ip_address="10.0.0.1")
        await audit_logger.log_event(
            AuditEventType.AUTHENTICATION_FAILED, user_id="u1", ip_address="10.0.0.1"
        )
        await audit_logger.log_event(
            AuditEventType.LOGIN_SUCCESS, user_id="u2", ip_address="10.0.0.2"
        )

        now = datetime.now(UTC)
        report = await audit_logger.generate_compliance_report(now - timedelta(hours=1), now)

        assert report.total_events == 3
        assert report.failed_logins == 2
        assert report.user_activity == {"u1": 2, "u2": 1}
        assert report.top_ip_addresses[0] == ("10.0.0.1", 2)
        assert len(report.security_incidents) == 2
        assert report.events_by_result == {"success": 3}


class TestConvenienceHelpers:
    @pytest.mark.asyncio
    async def test_security_event_defaults(self, audit_logger):
        await audit_logger.log_security_event(AuditEventType.CSRF_VIOLATION, "token missing")
        event = (await audit_logger.query_logs())[0]
        assert event.severity == AuditSeverity.HIGH
        assert event.result == AuditResult.BLOCKED

    @pytest.mark.asyncio
    async def test_api_event_marks_failures(self, audit_logger):
        await audit_logger.log_api_event("GET", "/api/classes", 200, 12.5)
        await audit_logger.log_api_event("POST", "/api/classes", 500, 40.0)

        events = {e.event_type: e for e in await audit_logger.query_logs()}
        assert events[AuditEventType.API_CALL].result == AuditResult.SUCCESS
        error = events[AuditEventType.API_ERROR]
        assert error.result == AuditResult.FAILURE
        assert error.metadata["status_code"] == 500

    @pytest.mark.asyncio
    async def test_form_event_type_follows_result(self, audit_logger):
        await audit_logger.log_form_event("contact")
        await audit_logger.log_form_event("contact", result=AuditResult.FAILURE)

        types = {e.event_type for e in await audit_logger.query_logs()}
        assert types == {AuditEventType.FORM_SUBMITTED, AuditEventType.FORM_VALIDATION_FAILED}
