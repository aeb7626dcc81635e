"""Circuit breaker for outbound dependency calls.

Callers obtain one breaker per dependency from a :class:`CircuitBreakerRegistry`
and pass each outbound call through :meth:`CircuitBreaker.execute`.
"""

import asyncio
import inspect
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import structlog

from learnacademy.security.audit import AuditEventType, AuditLogger, AuditResult, get_audit_logger
from learnacademy.security.exceptions import ExternalServiceError

logger = structlog.get_logger(__name__)

MAX_RESPONSE_TIME_SAMPLES = 100


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5
    success_threshold: int = 2
    monitoring_window: float = 60.0
    reset_timeout: float = 30.0
    request_timeout: float | None = 10.0
    is_failure: Callable[[BaseException], bool] | None = None
    fallback: Callable[[], Awaitable[Any]] | None = None


@dataclass
class CircuitBreakerStats:
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    rejected_requests: int = 0
    consecutive_successes: int = 0
    consecutive_failures: int = 0
    response_times: deque[float] = field(
        default_factory=lambda: deque(maxlen=MAX_RESPONSE_TIME_SAMPLES)
    )

    @property
    def average_response_time(self) -> float:
        if not self.response_times:
            return 0.0
        return sum(self.response_times) / len(self.response_times)


class CircuitBreaker:
    """Failure-isolation state machine for a single dependency."""

    def __init__(
        self,
        name: str,
        config: CircuitBreakerConfig | None = None,
        audit_logger: AuditLogger | None = None,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self.state = CircuitState.CLOSED
        self.stats = CircuitBreakerStats()
        self.failure_times: deque[float] = deque()
        self.last_state_change = time.time()
        self._audit_logger = audit_logger

    @property
    def audit_logger(self) -> AuditLogger:
        return self._audit_logger or get_audit_logger()

    @property
    def next_attempt_at(self) -> float | None:
        if self.state != CircuitState.OPEN:
            return None
        return self.last_state_change + self.config.reset_timeout

    def _refresh_state(self) -> None:
        """OPEN becomes HALF_OPEN once the reset timeout has elapsed."""
        if self.state == CircuitState.OPEN and time.time() - self.last_state_change >= self.config.reset_timeout:
            self.state = CircuitState.HALF_OPEN
            self.stats.consecutive_successes = 0
            self.last_state_change = time.time()
            logger.info("circuit_breaker.half_open", breaker=self.name)

    def _prune_failures(self, now: float) -> None:
        cutoff = now - self.config.monitoring_window
        while self.failure_times and self.failure_times[0] < cutoff:
            self.failure_times.popleft()

    async def execute(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run ``func`` with breaker protection."""
        self._refresh_state()

        if self.state == CircuitState.OPEN:
            self.stats.rejected_requests += 1
            retry_after = max(0, int((self.next_attempt_at or 0) - time.time()))
            logger.warning("circuit_breaker.rejected", breaker=self.name, retry_after=retry_after)
            if self.config.fallback is not None:
                return await self.config.fallback()
            raise ExternalServiceError(
                self.name,
                f"Circuit breaker for '{self.name}' is open",
                retry_after=retry_after,
                metadata={"state": self.state.value, "reset_at": self.next_attempt_at},
            )

        self.stats.total_requests += 1
        started = time.perf_counter()
        try:
            result = func(*args, **kwargs)
            if inspect.isawaitable(result):
                if self.config.request_timeout is not None:
                    result = await asyncio.wait_for(result, timeout=self.config.request_timeout)
                else:
                    result = await result
        except Exception as e:
            if self.config.is_failure is not None and not self.config.is_failure(e):
                await self._on_success(time.perf_counter() - started)
                raise
            await self._on_failure(e)
            if isinstance(e, TimeoutError):
                raise ExternalServiceError(
                    self.name,
                    f"Call to '{self.name}' timed out after {self.config.request_timeout}s",
                    cause=e,
                ) from e
            raise

        await self._on_success(time.perf_counter() - started)
        return result

    async def _on_success(self, elapsed: float) -> None:
        self.stats.successful_requests += 1
        self.stats.consecutive_successes += 1
        self.stats.consecutive_failures = 0
        self.stats.response_times.append(elapsed * 1000)

        if (
            self.state == CircuitState.HALF_OPEN
            and self.stats.consecutive_successes >= self.config.success_threshold
        ):
            await self._transition(CircuitState.CLOSED, "recovered")

    async def _on_failure(self, error: BaseException) -> None:
        now = time.time()
        self.stats.failed_requests += 1
        self.stats.consecutive_failures += 1
        self.stats.consecutive_successes = 0
        self.failure_times.append(now)
        self._prune_failures(now)

        logger.warning(
            "circuit_breaker.call_failed",
            breaker=self.name,
            state=self.state.value,
            error=str(error) or type(error).__name__,
        )

        if self.state == CircuitState.HALF_OPEN:
            await self._transition(CircuitState.OPEN, "trial_call_failed")
        elif (
            self.state == CircuitState.CLOSED
            and len(self.failure_times) >= self.config.failure_threshold
        ):
            await self._transition(CircuitState.OPEN, "failure_threshold_reached")

    async def _transition(self, new_state: CircuitState, reason: str) -> None:
        old_state = self.state
        if old_state == new_state:
            return
        self.state = new_state
        self.last_state_change = time.time()
        if new_state == CircuitState.CLOSED:
            self.failure_times.clear()
            self.stats.consecutive_failures = 0
        if new_state == CircuitState.OPEN:
            self.stats.consecutive_successes = 0

        logger.warning(
            "circuit_breaker.state_changed",
            breaker=self.name,
            old_state=old_state.value,
            new_state=new_state.value,
            reason=reason,
        )

        if new_state in (CircuitState.OPEN, CircuitState.CLOSED):
            await self.audit_logger.log_event(
                AuditEventType.CIRCUIT_BREAKER_OPENED
                if new_state == CircuitState.OPEN
                else AuditEventType.CIRCUIT_BREAKER_CLOSED,
                result=AuditResult.FAILURE if new_state == CircuitState.OPEN else AuditResult.SUCCESS,
                description=f"Circuit breaker '{self.name}' {old_state.value} -> {new_state.value}",
                resource={"type": "dependency", "id": self.name},
                metadata={"reason": reason, "failures_in_window": len(self.failure_times)},
            )

    async def trip(self) -> None:
        """Force the breaker open."""
        await self._transition(CircuitState.OPEN, "manual_trip")

    async def close(self) -> None:
        """Force the breaker closed."""
        await self._transition(CircuitState.CLOSED, "manual_close")

    async def reset(self) -> None:
        """Close the breaker and clear all statistics."""
        await self._transition(CircuitState.CLOSED, "reset")
        self.stats = CircuitBreakerStats()
        self.failure_times.clear()

    def get_health_status(self) -> dict[str, Any]:
        """Get circuit breaker status."""
        self._refresh_state()
        now = time.time()
        self._prune_failures(now)
        total = self.stats.total_requests
        return {
            "name": self.name,
            "state": self.state.value,
            "healthy": self.state != CircuitState.OPEN,
            "total_requests": total,
            "successful_requests": self.stats.successful_requests,
            "failed_requests": self.stats.failed_requests,
            "rejected_requests": self.stats.rejected_requests,
            "failure_rate": self.stats.failed_requests / total if total else 0.0,
            "failures_in_window": len(self.failure_times),
            "consecutive_failures": self.stats.consecutive_failures,
            "consecutive_successes": self.stats.consecutive_successes,
            "average_response_time_ms": round(self.stats.average_response_time, 2),
            "time_in_current_state": now - self.last_state_change,
            "next_attempt_at": self.next_attempt_at,
        }

    def is_open(self) -> bool:
        """Check if circuit is open."""
        self._refresh_state()
        return self.state == CircuitState.OPEN

    def is_closed(self) -> bool:
        """Check if circuit is closed."""
        return self.state == CircuitState.CLOSED

    def is_half_open(self) -> bool:
        """Check if circuit is half-open."""
        self._refresh_state()
        return self.state == CircuitState.HALF_OPEN


class CircuitBreakerRegistry:
    """One breaker per dependency name for the lifetime of the process."""

    def __init__(self, audit_logger: AuditLogger | None = None):
        self._breakers: dict[str, CircuitBreaker] = {}
        self._audit_logger = audit_logger

    def get_breaker(self, name: str, config: CircuitBreakerConfig | None = None) -> CircuitBreaker:
        """Return the breaker for ``name``, creating it on first use."""
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(name, config, self._audit_logger)
            self._breakers[name] = breaker
            logger.info("circuit_breaker.created", breaker=name)
        return breaker

    def get_all_health_status(self) -> dict[str, dict[str, Any]]:
        return {name: b.get_health_status() for name, b in self._breakers.items()}

    async def reset_all(self) -> None:
        for breaker in list(self._breakers.values()):
            await breaker.reset()

    def remove_breaker(self, name: str) -> bool:
        return self._breakers.pop(name, None) is not None

    def __contains__(self, name: str) -> bool:
        return name in self._breakers

    def __len__(self) -> int:
        return len(self._breakers)


_registry: CircuitBreakerRegistry | None = None


def get_circuit_breaker_registry() -> CircuitBreakerRegistry:
    global _registry
    if _registry is None:
        _registry = CircuitBreakerRegistry()
    return _registry
