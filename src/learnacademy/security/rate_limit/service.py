"""
Rate limiter with a Redis sliding window and an in-memory fallback.

The Redis path is authoritative across instances. The in-memory path keeps a
fixed window per ``{rule}_{client}`` bucket and is only a per-instance
approximation: with Redis down, a client spread over N instances can reach
N times the configured limit.
"""

import asyncio
import time
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Protocol

import structlog
from redis.asyncio import Redis
from redis.exceptions import RedisError

from learnacademy.security.audit import AuditEventType, AuditLogger, AuditSeverity, get_audit_logger
from learnacademy.security.settings import get_settings

from .config import RateLimitRule, RateLimitRuleType, load_rules

logger = structlog.get_logger(__name__)


class IPBlocklist(Protocol):
    def is_ip_blocked(self, ip_address: str) -> bool: ...


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_time: datetime
    using_backing_store: bool
    limit: int
    rule: str
    blocked: bool = False

    @property
    def retry_after(self) -> int:
        """Seconds until the window resets (at least 1)."""
        return max(1, int((self.reset_time - datetime.now(UTC)).total_seconds() + 0.999))

    def headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(int(self.reset_time.timestamp())),
            "X-RateLimit-Store": "redis" if self.using_backing_store else "memory",
        }


@dataclass
class MemoryBucket:
    count: int
    reset_at: float


def _ts(epoch: float) -> datetime:
    return datetime.fromtimestamp(epoch, UTC)


class RateLimiter:
    """Rate limiter keyed by rule type and client identifier."""

    def __init__(
        self,
        redis_client: Redis | None = None,
        rules: dict[str, RateLimitRule] | None = None,
        audit_logger: AuditLogger | None = None,
        blocklist: IPBlocklist | None = None,
        key_prefix: str | None = None,
    ):
        self.redis_client = redis_client
        self.rules = rules or load_rules()
        self.blocklist = blocklist
        self.key_prefix = key_prefix or get_settings().rate_limit.key_prefix
        self._audit_logger = audit_logger
        self._memory: dict[str, MemoryBucket] = {}
        self._fallback_count = 0
        self._redis_failures = 0
        self._running = False
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def audit_logger(self) -> AuditLogger:
        return self._audit_logger or get_audit_logger()

    def get_rule(self, rule_type: RateLimitRuleType | str) -> RateLimitRule:
        name = rule_type.value if isinstance(rule_type, RateLimitRuleType) else rule_type
        try:
            return self.rules[name]
        except KeyError:
            raise ValueError(f"Unknown rate limit rule: {name}") from None

    @staticmethod
    def memory_key(rule: RateLimitRule, client_identifier: str) -> str:
        return f"{rule.identifier}_{client_identifier}"

    def redis_key(self, rule: RateLimitRule, client_identifier: str) -> str:
        return f"{self.key_prefix}:{rule.identifier}:{client_identifier}"

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    async def check_rate_limit(
        self,
        rule_type: RateLimitRuleType | str,
        client_identifier: str,
        metadata: dict[str, Any] | None = None,
    ) -> RateLimitResult:
        """Count one request against the rule and decide whether it may proceed."""
        rule = self.get_rule(rule_type)
        metadata = metadata or {}

        if self.blocklist is not None and self.blocklist.is_ip_blocked(client_identifier):
            logger.warning("rate_limit.blocked_client", rule=rule.identifier, client=client_identifier)
            return RateLimitResult(
                allowed=False,
                remaining=0,
                reset_time=_ts(time.time() + rule.window_seconds),
                using_backing_store=self.redis_client is not None,
                limit=rule.max_requests,
                rule=rule.identifier,
                blocked=True,
            )

        result: RateLimitResult | None = None
        if self.redis_client is not None:
            try:
                result = await self._check_redis(rule, client_identifier)
            except (RedisError, OSError) as e:
                await self._record_store_failure(rule, client_identifier, e)

        if result is None:
            result = self._check_memory(rule, client_identifier)

        if not result.allowed:
            await self._record_denial(rule, client_identifier, result, metadata)

        return result

    def _check_memory(self, rule: RateLimitRule, client_identifier: str) -> RateLimitResult:
        now = time.time()
        key = self.memory_key(rule, client_identifier)
        self._fallback_count += 1

        # No await between read and write: the bucket update is atomic per event loop.
        bucket = self._memory.get(key)
        if bucket is None or now >= bucket.reset_at:
            bucket = MemoryBucket(count=0, reset_at=now + rule.window_seconds)
            self._memory[key] = bucket

        allowed = bucket.count < rule.max_requests
        if allowed:
            bucket.count += 1

        return RateLimitResult(
            allowed=allowed,
            remaining=max(0, rule.max_requests - bucket.count),
            reset_time=_ts(bucket.reset_at),
            using_backing_store=False,
            limit=rule.max_requests,
            rule=rule.identifier,
        )

    async def _check_redis(self, rule: RateLimitRule, client_identifier: str) -> RateLimitResult:
        assert self.redis_client is not None
        now = time.time()
        key = self.redis_key(rule, client_identifier)
        member = f"{now}:{uuid.uuid4().hex[:8]}"
        live = f"({now - rule.window_seconds}"

        async def admit(pipe: Any) -> tuple[int, list[Any]]:
            # Reads run under WATCH; writes go out in one MULTI, retried if the key moved.
            count = await pipe.zcount(key, live, "+inf")
            oldest = await pipe.zrangebyscore(key, live, "+inf", start=0, num=1, withscores=True)
            pipe.multi()
            pipe.zremrangebyscore(key, 0, now - rule.window_seconds)
            if count < rule.max_requests:
                pipe.zadd(key, {member: now})
            pipe.expire(key, rule.window_seconds)
            return count, oldest

        count, oldest = await self.redis_client.transaction(admit, key, value_from_callable=True)

        allowed = count < rule.max_requests
        if allowed:
            count += 1

        oldest_score = float(oldest[0][1]) if oldest else now
        return RateLimitResult(
            allowed=allowed,
            remaining=max(0, rule.max_requests - count),
            reset_time=_ts(oldest_score + rule.window_seconds),
            using_backing_store=True,
            limit=rule.max_requests,
            rule=rule.identifier,
        )

    async def get_status(
        self, rule_type: RateLimitRuleType | str, client_identifier: str
    ) -> RateLimitResult:
        """Current usage without counting a request."""
        rule = self.get_rule(rule_type)
        now = time.time()

        if self.redis_client is not None:
            key = self.redis_key(rule, client_identifier)
            try:
                pipe = self.redis_client.pipeline(transaction=True)
                pipe.zremrangebyscore(key, 0, now - rule.window_seconds)
                pipe.zcard(key)
                pipe.zrange(key, 0, 0, withscores=True)
                _, count, oldest = await pipe.execute()
                oldest_score = float(oldest[0][1]) if oldest else now
                return RateLimitResult(
                    allowed=count < rule.max_requests,
                    remaining=max(0, rule.max_requests - count),
                    reset_time=_ts(oldest_score + rule.window_seconds),
                    using_backing_store=True,
                    limit=rule.max_requests,
                    rule=rule.identifier,
                )
            except (RedisError, OSError) as e:
                logger.warning("rate_limit.status_store_unavailable", error=str(e))

        bucket = self._memory.get(self.memory_key(rule, client_identifier))
        if bucket is None or now >= bucket.reset_at:
            count, reset_at = 0, now + rule.window_seconds
        else:
            count, reset_at = bucket.count, bucket.reset_at
        return RateLimitResult(
            allowed=count < rule.max_requests,
            remaining=max(0, rule.max_requests - count),
            reset_time=_ts(reset_at),
            using_backing_store=False,
            limit=rule.max_requests,
            rule=rule.identifier,
        )

    async def reset(self, rule_type: RateLimitRuleType | str, client_identifier: str) -> None:
        """Forget all usage for a client under a rule."""
        rule = self.get_rule(rule_type)
        self._memory.pop(self.memory_key(rule, client_identifier), None)
        if self.redis_client is not None:
            try:
                await self.redis_client.delete(self.redis_key(rule, client_identifier))
            except (RedisError, OSError) as e:
                logger.warning("rate_limit.reset_store_unavailable", error=str(e))
        logger.info("rate_limit.reset", rule=rule.identifier, client=client_identifier)

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    async def _record_store_failure(
        self, rule: RateLimitRule, client_identifier: str, error: BaseException
    ) -> None:
        self._redis_failures += 1
        logger.warning(
            "rate_limit.store_unavailable_using_memory",
            rule=rule.identifier,
            error=str(error),
        )
        await self.audit_logger.log_event(
            AuditEventType.SUSPICIOUS_ACTIVITY,
            severity=AuditSeverity.MEDIUM,
            description="Rate limit store unavailable, falling back to in-memory limits",
            ip_address=client_identifier,
            metadata={
                "reason": "rate_limit_store_unavailable",
                "rule": rule.identifier,
                "error": str(error),
            },
        )

    async def _record_denial(
        self,
        rule: RateLimitRule,
        client_identifier: str,
        result: RateLimitResult,
        metadata: dict[str, Any],
    ) -> None:
        logger.warning(
            "rate_limit.exceeded",
            rule=rule.identifier,
            client=client_identifier,
            store="redis" if result.using_backing_store else "memory",
        )
        await self.audit_logger.log_security_event(
            AuditEventType.RATE_LIMIT_EXCEEDED,
            f"Rate limit exceeded for {rule.label}",
            ip_address=metadata.get("ip_address", client_identifier),
            user_agent=metadata.get("user_agent"),
            path=metadata.get("path"),
            method=metadata.get("method"),
            user_id=metadata.get("user_id"),
            metadata={
                "rule": rule.identifier,
                "limit": rule.max_requests,
                "window_seconds": rule.window_seconds,
                "remaining": result.remaining,
                "reset_time": result.reset_time.isoformat(),
                "store": "redis" if result.using_backing_store else "memory",
            },
        )

    def cleanup_memory_store(self) -> int:
        """Drop expired in-memory buckets; returns how many were removed."""
        now = time.time()
        expired = [key for key, bucket in self._memory.items() if now >= bucket.reset_at]
        for key in expired:
            del self._memory[key]
        if expired:
            logger.debug("rate_limit.memory_cleanup", removed=len(expired))
        return len(expired)

    def get_metrics(self) -> dict[str, Any]:
        if self.redis_client is None:
            mode = "memory"
        elif self._redis_failures:
            mode = "hybrid"
        else:
            mode = "redis"
        return {
            "mode": mode,
            "memory_buckets": len(self._memory),
            "memory_checks": self._fallback_count,
            "store_failures": self._redis_failures,
            "rules": {
                name: {"window_seconds": r.window_seconds, "max_requests": r.max_requests}
                for name, r in self.rules.items()
            },
        }

    async def _cleanup_loop(self, interval: int) -> None:
        while self._running:
            try:
                self.cleanup_memory_store()
            except Exception as e:
                logger.error("rate_limit.cleanup_loop_error", error=str(e))
            await asyncio.sleep(interval)

    async def start(self) -> None:
        """Start the background sweep of expired memory buckets."""
        if self._running:
            return
        self._running = True
        interval = get_settings().rate_limit.cleanup_interval_seconds
        self._tasks.add(asyncio.create_task(self._cleanup_loop(interval)))
        logger.info("rate_limit.started", mode=self.get_metrics()["mode"])

    async def stop(self) -> None:
        self._running = False
        for task in self._tasks:
            task.cancel()

        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("rate_limit.stopped")
