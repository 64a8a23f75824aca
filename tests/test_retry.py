"""
Tests for retry helpers.
"""
import pytest

from chatdesk.utils.retry import (
    RetryConfig,
    RetryStrategy,
    calculate_retry_delay,
    retry_call,
)


class Flaky:
    def __init__(self, failures, error=ConnectionError):
        self.failures = failures
        self.error = error
        self.calls = 0

    async def __call__(self, value="ok"):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error("temporary")
        return value


NO_DELAY = RetryConfig(max_attempts=3, initial_delay=0.0, strategy=RetryStrategy.FIXED)


# ===========================
# Retry
# ===========================

@pytest.mark.unit
def test_delay_strategies():
    assert calculate_retry_delay(2, RetryConfig(initial_delay=0.5, strategy=RetryStrategy.FIXED)) == 0.5
    assert calculate_retry_delay(2, RetryConfig(initial_delay=0.5, strategy=RetryStrategy.LINEAR)) == 1.5
    assert calculate_retry_delay(3, RetryConfig(initial_delay=1.0)) == 8.0
    assert calculate_retry_delay(10, RetryConfig(initial_delay=1.0, max_delay=5.0)) == 5.0


@pytest.mark.unit
@pytest.mark.asyncio
async def test_retry_until_success():
    func = Flaky(failures=2)

    assert await retry_call(func, "done", config=NO_DELAY) == "done"
    assert func.calls == 3


@pytest.mark.unit
@pytest.mark.asyncio
async def test_retry_reraises_last_error():
    func = Flaky(failures=5)

    with pytest.raises(ConnectionError):
        await retry_call(func, config=NO_DELAY)
    assert func.calls == 3


@pytest.mark.unit
@pytest.mark.asyncio
async def test_retry_only_listed_exceptions():
    """Test that unlisted exceptions are not retried."""
    func = Flaky(failures=1, error=KeyError)
    config = RetryConfig(max_attempts=3, initial_delay=0.0, retry_on_exceptions=(ConnectionError,))

    with pytest.raises(KeyError):
        await retry_call(func, config=config)
    assert func.calls == 1

