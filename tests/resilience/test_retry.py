"""
Tests for retry classification and backoff.
"""

import pytest

from learnacademy.security.exceptions import ExternalServiceError, ValidationError
from learnacademy.security.resilience import is_retryable, retry_async

pytestmark = pytest.mark.unit


@pytest.mark.parametrize(
    "error,expected",
    [
        (ConnectionResetError(), True),
        (TimeoutError(), True),
        (OSError("network unreachable"), True),
        (ExternalServiceError("crm"), True),
        (ExternalServiceError("crm", metadata={"state": "OPEN"}), False),
        (ValidationError("bad"), False),
        (ValueError("bad"), False),
    ],
)
def test_is_retryable(error, expected):
    assert is_retryable(error) is expected


class Flaky:
    def __init__(self, failures, error=ConnectionError):
        self.failures = failures
        self.error = error
        self.calls = 0

    async def __call__(self, value):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error("transient")
        return value


@pytest.mark.asyncio
async def test_succeeds_after_transient_failures():
    flaky = Flaky(failures=2)

    assert await retry_async(flaky, "done", attempts=3, base_delay=0) == "done"
    assert flaky.calls == 3


@pytest.mark.asyncio
async def test_last_error_reraised_when_exhausted():
    flaky = Flaky(failures=5)

    with pytest.raises(ConnectionError):
        await retry_async(flaky, "x", attempts=3, base_delay=0)
    assert flaky.calls == 3


@pytest.mark.asyncio
async def test_non_retryable_error_is_not_retried():
    flaky = Flaky(failures=1, error=ValueError)

    with pytest.raises(ValueError):
        await retry_async(flaky, "x", attempts=3, base_delay=0)
    assert flaky.calls == 1


@pytest.mark.asyncio
async def test_custom_predicate():
    flaky = Flaky(failures=1, error=ValueError)

    result = await retry_async(flaky, "x", attempts=2, base_delay=0, should_retry=lambda e: True)

    assert result == "x"
