"""
Retry helpers for store writes.

Version: 1.0.0
"""
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

logger = logging.getLogger(__name__)


class RetryStrategy(str, Enum):
    """Backoff strategy."""
    EXPONENTIAL = "exponential"
    LINEAR = "linear"
    FIXED = "fixed"


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0
    strategy: RetryStrategy = RetryStrategy.EXPONENTIAL
    retry_on_exceptions: Tuple[Type[BaseException], ...] = (Exception,)


def calculate_retry_delay(attempt: int, config: RetryConfig) -> float:
    """
    Delay before the next attempt.

    Args:
        attempt: Attempt that just failed (0-indexed)
        config: Retry configuration
    """
    if config.strategy == RetryStrategy.FIXED:
        delay = config.initial_delay
    elif config.strategy == RetryStrategy.LINEAR:
        delay = config.initial_delay * (attempt + 1)
    else:
        delay = config.initial_delay * (config.exponential_base ** attempt)

    return min(delay, config.max_delay)


async def retry_call(
    func: Callable[..., Awaitable[Any]],
    *args,
    config: Optional[RetryConfig] = None,
    **kwargs
) -> Any:
    """
    Await ``func(*args, **kwargs)`` until it succeeds or attempts run out.

    The last exception is re-raised once every attempt has failed.
    """
    config = config or RetryConfig()
    name = getattr(func, "__name__", repr(func))

    for attempt in range(config.max_attempts):
        try:
            return await func(*args, **kwargs)
        except config.retry_on_exceptions as e:
            if attempt >= config.max_attempts - 1:
                logger.error(f"{name} failed after {config.max_attempts} attempts: {e}")
                raise

            delay = calculate_retry_delay(attempt, config)
            logger.warning(
                f"{name} failed with {type(e).__name__}, "
                f"retrying in {delay:.2f}s (attempt {attempt + 1}/{config.max_attempts}): {e}"
            )
            await asyncio.sleep(delay)

    raise RuntimeError(f"{name} called with max_attempts={config.max_attempts}")


__all__ = [
    'RetryConfig',
    'RetryStrategy',
    'retry_call',
    'calculate_retry_delay'
]
