"""
Tests for the audit query and compliance report endpoints.
"""

import asyncio

import pytest
from fastapi import FastAPI
from starlette.testclient import TestClient

from learnacademy.security.audit import AuditEventType
from learnacademy.security.audit.router import router
from learnacademy.security.exceptions import register_exception_handlers

pytestmark = pytest.mark.unit


@pytest.fixture
def client(audit_logger):
    asyncio.run(_seed(audit_logger))
    app = FastAPI()
    register_exception_handlers(app)
    app.include_router(router)
    return TestClient(app)


async def _seed(audit_logger):
    await audit_logger.log_event(AuditEventType.LOGIN_FAILURE, user_id="u1", ip_address="10.0.0.1")
    await audit_logger.log_event(AuditEventType.LOGIN_SUCCESS, user_id="u1", ip_address="10.0.0.1")
    await audit_logger.log_event(AuditEventType.CSRF_VIOLATION, ip_address="10.0.0.9")


def test_list_events_filters_by_type(client):
    response = client.get("/api/audit/events", params={"event_type": "login_failure"})

    assert response.status_code == 200
    body = response.json()
    assert len(body) == 1
    assert body[0]["user_id"] == "u1"


def test_list_events_limit(client):
    response = client.get("/api/audit/events", params={"limit": 2})
    assert len(response.json()) == 2


def test_compliance_report(client):
    response = client.get("/api/audit/compliance-report")

    assert response.status_code == 200
    body = response.json()
    assert body["total_events"] == 3
    assert body["failed_logins"] == 1


def test_compliance_report_rejects_inverted_range(client):
    response = client.get(
        "/api/audit/compliance-report",
        params={"start": "2026-02-01T00:00:00Z", "end": "2026-01-01T00:00:00Z"},
    )

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"
