"""
Global pytest configuration and fixtures for the Learn Academy security core tests.
"""

import os

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("REDIS__ENABLED", "false")
os.environ.setdefault("OBSERVABILITY__LOG_FORMAT", "console")
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-unit-tests")
# The TestClient peer stands in for the reverse proxy.
os.environ.setdefault("TRUSTED_PROXIES", '["testclient"]')

import fakeredis.aioredis
import pytest
import pytest_asyncio

import learnacademy.security.resilience.circuit_breaker as circuit_breaker_module
from learnacademy.security import clear_services
from learnacademy.security.audit import AuditLogger, set_audit_logger
from learnacademy.security.auth import set_authenticator, set_csrf_service
from learnacademy.security.encryption import set_encryption_service
from learnacademy.security.monitoring import set_security_monitor
from learnacademy.security.rate_limit import set_rate_limiter


@pytest.fixture
def audit_logger(tmp_path):
    """Audit logger writing to a per-test directory."""
    return AuditLogger(log_dir=tmp_path / "audit", hash_secret="audit-test-secret")


@pytest.fixture(autouse=True)
def isolated_services(audit_logger):
    """Point the process-wide accessors at fresh instances for every test."""
    set_audit_logger(audit_logger)
    circuit_breaker_module._registry = None
    yield
    set_audit_logger(None)
    set_authenticator(None)
    set_csrf_service(None)
    set_rate_limiter(None)
    set_encryption_service(None)
    set_security_monitor(None)
    circuit_breaker_module._registry = None
    clear_services()


@pytest_asyncio.fixture
async def fake_redis():
    client = fakeredis.aioredis.FakeRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()
