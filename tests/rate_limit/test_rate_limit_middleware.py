"""
Tests for the HTTP rate limiting middleware.
"""

import pytest
from fastapi import FastAPI
from starlette.testclient import TestClient

from learnacademy.security.exceptions import register_exception_handlers
from learnacademy.security.rate_limit import RateLimiter, RateLimitMiddleware, load_rules
from learnacademy.security.settings import reset_settings

pytestmark = pytest.mark.unit


@pytest.fixture
def limiter(audit_logger):
    return RateLimiter(audit_logger=audit_logger, rules=load_rules({}))


@pytest.fixture
def client(limiter):
    app = FastAPI()
    app.add_middleware(RateLimitMiddleware, limiter=limiter)
    register_exception_handlers(app)

    @app.post("/api/contact")
    async def contact():
        return {"sent": True}

    @app.get("/api/contact")
    async def contact_page():
        return {"form": True}

    @app.post("/api/auth/reset-password")
    async def reset_password():
        return {"queued": True}

    @app.get("/status")
    async def status():
        return {"ok": True}

    return TestClient(app)


def test_contact_submissions_are_limited(client):
    headers = {"X-Forwarded-For": "203.0.113.20"}

    responses = [client.post("/api/contact", headers=headers) for _ in range(4)]

    assert [r.status_code for r in responses] == [200, 200, 200, 429]
    assert responses[0].headers["X-RateLimit-Limit"] == "3"
    assert responses[2].headers["X-RateLimit-Remaining"] == "0"

    denied = responses[-1]
    assert denied.json()["error"]["code"] == "RATE_LIMIT_EXCEEDED"
    assert int(denied.headers["Retry-After"]) > 0
    assert denied.headers["X-RateLimit-Store"] == "memory"


def test_form_page_loads_use_api_rule(client):
    for _ in range(5):
        response = client.get("/api/contact")
        assert response.status_code == 200

    assert response.headers["X-RateLimit-Limit"] == "100"


def test_paths_outside_rules_are_not_limited(client):
    response = client.get("/status")

    assert response.status_code == 200
    assert "X-RateLimit-Limit" not in response.headers


def test_rule_matching(limiter):
    middleware = RateLimitMiddleware(FastAPI(), limiter=limiter)

    assert middleware.rule_for("/api/auth/login", "POST") == "auth"
    assert middleware.rule_for("/api/auth/reset-password", "POST") == "password_reset"
    assert middleware.rule_for("/api/auth/reset-password/confirm", "POST") == "password_reset"
    assert middleware.rule_for("/api/enrollment", "POST") == "enrollment"
    assert middleware.rule_for("/api/enrollment", "GET") == "api"
    assert middleware.rule_for("/api/classes", "GET") == "api"
    assert middleware.rule_for("/apiary", "GET") is None


def test_limiter_factory(limiter):
    middleware = RateLimitMiddleware(FastAPI(), limiter=lambda: limiter)
    assert middleware.limiter is limiter


def test_password_reset_uses_its_own_rule(client):
    responses = [client.post("/api/auth/reset-password") for _ in range(4)]

    assert [r.status_code for r in responses] == [200, 200, 200, 429]
    assert responses[0].headers["X-RateLimit-Limit"] == "3"


def test_rotating_forwarded_for_behind_proxy_shares_one_bucket(client):
    # The proxy appends the real client; anything left of it is client supplied.
    responses = [
        client.post("/api/contact", headers={"X-Forwarded-For": f"10.0.0.{n}, 203.0.113.9"})
        for n in range(4)
    ]

    assert [r.status_code for r in responses] == [200, 200, 200, 429]


@pytest.fixture
def no_trusted_proxies(monkeypatch):
    monkeypatch.setenv("TRUSTED_PROXIES", "[]")
    reset_settings()
    yield
    reset_settings()


def test_forwarded_for_from_untrusted_peer_is_ignored(no_trusted_proxies, client):
    responses = [
        client.post("/api/contact", headers={"X-Forwarded-For": f"10.0.0.{n}"}) for n in range(4)
    ]

    assert [r.status_code for r in responses] == [200, 200, 200, 429]
