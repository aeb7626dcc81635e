"""
Retries with exponential backoff and jitter, built on tenacity.

Only errors that may succeed on a second attempt are retried: network and
timeout failures, and operational external-service errors other than an
open circuit.
"""

from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
)

from learnacademy.security.exceptions import ApplicationError, ExternalServiceError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def is_retryable(error: BaseException) -> bool:
    """Network faults and transient upstream failures are retryable."""
    if isinstance(error, ExternalServiceError):
        return error.metadata.get("state") != "OPEN"
    if isinstance(error, ApplicationError):
        return False
    return isinstance(error, ConnectionError | TimeoutError | OSError)


def _log_retry(retry_state: RetryCallState) -> None:
    outcome = retry_state.outcome
    logger.warning(
        "retry.attempt_failed",
        attempt=retry_state.attempt_number,
        error=str(outcome.exception()) if outcome else None,
        next_delay=retry_state.next_action.sleep if retry_state.next_action else None,
    )


async def retry_async(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    should_retry: Callable[[BaseException], bool] = is_retryable,
    **kwargs: Any,
) -> T:
    """
    Await ``func`` until it succeeds or ``attempts`` are exhausted.

    The last error is re-raised unchanged when all attempts fail.
    """
    async for attempt in AsyncRetrying(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential_jitter(initial=base_delay, max=max_delay, jitter=base_delay / 4),
        retry=retry_if_exception(should_retry),
        before_sleep=_log_retry,
        reraise=True,
    ):
        with attempt:
            return await func(*args, **kwargs)
    raise AssertionError("unreachable")  # pragma: no cover
