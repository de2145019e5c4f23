"""Shared utilities for configuration, logging, retries and time handling"""

from jirasync.utils.retry import RetryExhaustedError, RetryPolicy, retry_async

__all__ = ["RetryExhaustedError", "RetryPolicy", "retry_async"]
