"""
Tests for the circuit breaker state machine.
"""

import asyncio

import pytest

from learnacademy.security.audit import AuditEventType, AuditQuery
from learnacademy.security.exceptions import ExternalServiceError
from learnacademy.security.resilience import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
    get_circuit_breaker_registry,
)

pytestmark = pytest.mark.unit


class UpstreamDown(ConnectionError):
    pass


async def failing():
    raise UpstreamDown("connection refused")


async def succeeding():
    return "ok"


@pytest.fixture
def breaker(audit_logger):
    config = CircuitBreakerConfig(failure_threshold=3, success_threshold=2, reset_timeout=0.05)
    return CircuitBreaker("crm", config, audit_logger)


async def _fail(breaker, times):
    for _ in range(times):
        with pytest.raises(UpstreamDown):
            await breaker.execute(failing)


class TestStateMachine:
    @pytest.mark.asyncio
    async def test_opens_after_threshold(self, breaker, audit_logger):
        await _fail(breaker, 2)
        assert breaker.is_closed()

        await _fail(breaker, 1)
        assert breaker.state == CircuitState.OPEN

        events = await audit_logger.query_logs(AuditQuery(event_types=[AuditEventType.CIRCUIT_BREAKER_OPENED]))
        assert len(events) == 1
        assert events[0].resource.id == "crm"

    @pytest.mark.asyncio
    async def test_open_circuit_fails_fast(self, breaker):
        await _fail(breaker, 3)
        calls = []

        async def tracked():
            calls.append(1)

        with pytest.raises(ExternalServiceError) as exc_info:
            await breaker.execute(tracked)

        assert calls == []
        assert exc_info.value.metadata["state"] == "OPEN"
        assert breaker.stats.rejected_requests == 1

    @pytest.mark.asyncio
    async def test_recovers_through_half_open(self, breaker, audit_logger):
        await _fail(breaker, 3)
        await asyncio.sleep(0.06)

        assert breaker.is_half_open()
        assert await breaker.execute(succeeding) == "ok"
        assert breaker.state == CircuitState.HALF_OPEN
        assert await breaker.execute(succeeding) == "ok"
        assert breaker.state == CircuitState.CLOSED

        closed = await audit_logger.query_logs(AuditQuery(event_types=[AuditEventType.CIRCUIT_BREAKER_CLOSED]))
        assert len(closed) == 1

    @pytest.mark.asyncio
    async def test_failed_trial_call_reopens(self, breaker):
        await _fail(breaker, 3)
        await asyncio.sleep(0.06)

        await _fail(breaker, 1)

        assert breaker.state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_failures_outside_window_do_not_count(self, audit_logger):
        breaker = CircuitBreaker(
            "search",
            CircuitBreakerConfig(failure_threshold=2, monitoring_window=0.05),
            audit_logger,
        )

        await _fail(breaker, 1)
        await asyncio.sleep(0.06)
        await _fail(breaker, 1)

        assert breaker.is_closed()

    @pytest.mark.asyncio
    async def test_success_resets_consecutive_failures(self, breaker):
        await _fail(breaker, 2)
        await breaker.execute(succeeding)

        assert breaker.stats.consecutive_failures == 0


class TestOptions:
    @pytest.mark.asyncio
    async def test_fallback_used_when_open(self, audit_logger):
        async def cached():
            return "cached"

        breaker = CircuitBreaker("catalog", CircuitBreakerConfig(fallback=cached), audit_logger)
        await breaker.trip()

        assert await breaker.execute(succeeding) == "cached"

    @pytest.mark.asyncio
    async def test_ignored_errors_do_not_trip(self, audit_logger):
        breaker = CircuitBreaker(
            "geo",
            CircuitBreakerConfig(failure_threshold=1, is_failure=lambda e: not isinstance(e, KeyError)),
            audit_logger,
        )

        async def lookup_missing():
            raise KeyError("unknown")

        with pytest.raises(KeyError):
            await breaker.execute(lookup_missing)

        assert breaker.is_closed()

    @pytest.mark.asyncio
    async def test_timeout_counts_as_failure(self, audit_logger):
        breaker = CircuitBreaker(
            "slow", CircuitBreakerConfig(failure_threshold=1, request_timeout=0.01), audit_logger
        )

        async def slow():
            await asyncio.sleep(1)

        with pytest.raises(ExternalServiceError):
            await breaker.execute(slow)

        assert breaker.state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_sync_callables(self, breaker):
        assert await breaker.execute(lambda x: x * 2, 21) == 42


class TestManualControl:
    @pytest.mark.asyncio
    async def test_trip_and_close(self, breaker):
        await breaker.trip()
        assert breaker.get_health_status()["healthy"] is False

        await breaker.close()
        assert breaker.is_closed()

    @pytest.mark.asyncio
    async def test_reset_clears_stats(self, breaker):
        await _fail(breaker, 3)

        await breaker.reset()

        status = breaker.get_health_status()
        assert status["state"] == "CLOSED"
        assert status["total_requests"] == 0
        assert status["failures_in_window"] == 0

    @pytest.mark.asyncio
    async def test_health_status(self, breaker):
        await breaker.execute(succeeding)
        await _fail(breaker, 1)

        status = breaker.get_health_status()

        assert status["total_requests"] == 2
        assert status["failure_rate"] == 0.5
        assert status["next_attempt_at"] is None


class TestRegistry:
    def test_one_breaker_per_name(self):
        registry = get_circuit_breaker_registry()

        first = registry.get_breaker("payments")
        second = registry.get_breaker("payments", CircuitBreakerConfig(failure_threshold=99))

        assert first is second
        assert first.config.failure_threshold == 5
        assert "payments" in registry
        assert registry.remove_breaker("payments") is True
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_reset_all(self):
        registry = get_circuit_breaker_registry()
        breaker = registry.get_breaker("email")
        await breaker.trip()

        await registry.reset_all()

        assert registry.get_all_health_status()["email"]["state"] == "CLOSED"
