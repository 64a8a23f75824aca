"""
Utility modules for the application.
Provides retry logic, telemetry, and middleware.

Version: 1.0.0
"""
from .retry import (
    RetryConfig,
    RetryStrategy,
    retry_call,
    calculate_retry_delay
)

__all__ = [
    'RetryConfig',
    'RetryStrategy',
    'retry_call',
    'calculate_retry_delay',
]
