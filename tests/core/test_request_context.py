"""
Tests for correlation ids and request logging.
"""

import uuid

import pytest
import structlog
from fastapi import FastAPI, Request
from starlette.testclient import TestClient

from learnacademy.security.request_context import RequestContextMiddleware, resolve_correlation_id
from learnacademy.security.request_utils import request_context

pytestmark = pytest.mark.unit


@pytest.fixture
def client():
    app = FastAPI()
    app.add_middleware(RequestContextMiddleware)

    @app.get("/echo")
    async def echo(request: Request):
        return {
            "bound": structlog.contextvars.get_contextvars().get("correlation_id"),
            "request_id": request_context(request)["request_id"],
        }

    return TestClient(app)


def test_supplied_correlation_id_is_bound_and_echoed(client):
    response = client.get("/echo", headers={"X-Correlation-ID": "req-42.a"})

    assert response.headers["X-Correlation-ID"] == "req-42.a"
    assert response.json() == {"bound": "req-42.a", "request_id": "req-42.a"}


def test_missing_correlation_id_is_generated(client):
    response = client.get("/echo")

    generated = response.headers["X-Correlation-ID"]
    assert uuid.UUID(generated)
    assert response.json()["bound"] == generated


@pytest.mark.parametrize("value", [None, "", "has space", "x" * 129, "semi;colon"])
def test_malformed_ids_are_replaced(value):
    resolved = resolve_correlation_id(value)

    assert resolved != value
    assert uuid.UUID(resolved)
