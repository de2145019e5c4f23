"""Retry utilities with exponential backoff."""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

import structlog

from jirasync.errors import is_retryable
from jirasync.models.config import RetryConfig

log = structlog.stdlib.get_logger()

T = TypeVar("T")

SleepFunc = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    """
    How often and how patiently a failing call is retried.

    Attempt numbers are 1-based. The delay slept after failed attempt ``n`` is
    ``min(base_delay * multiplier ** (n - 1), max_delay)``, so the defaults give
    1s, 2s, 4s between four attempts.
    """

    max_attempts: int = 4
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 60.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    @classmethod
    def from_config(cls, config: RetryConfig) -> "RetryPolicy":
        return cls(
            max_attempts=config.max_attempts,
            base_delay=config.base_delay,
            multiplier=config.multiplier,
            max_delay=config.max_delay,
        )

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after the given failed attempt."""
        return min(self.base_delay * (self.multiplier ** (attempt - 1)), self.max_delay)


class RetryExhaustedError(Exception):
    """Raised when every attempt failed; carries the last error and the attempt count."""

    def __init__(self, last_error: BaseException, attempts: int):
        super().__init__(f"Gave up after {attempts} attempt(s): {last_error}")
        self.last_error = last_error
        self.attempts = attempts


async def retry_async(
    func: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    sleep: SleepFunc = asyncio.sleep,
    should_retry: Callable[[BaseException], bool] = is_retryable,
    operation: str = "operation",
) -> T:
    """
    Await ``func()`` until it succeeds or the policy gives up.

    Args:
        func: Zero-argument coroutine factory, called once per attempt
        policy: Attempt limit and backoff curve
        sleep: Awaitable sleep, injectable for tests
        should_retry: Decides whether an exception is transient
        operation: Name used in log events

    Returns:
        The first successful result

    Raises:
        RetryExhaustedError: If the last allowed attempt failed, or a
            non-retryable error occurred
    """
    for attempt in range(1, policy.max_attempts + 1):
        try:
            return await func()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if not should_retry(e):
                log.warning(
                    "non_retryable_error",
                    operation=operation,
                    attempt=attempt,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise RetryExhaustedError(e, attempt) from e

            if attempt == policy.max_attempts:
                log.error(
                    "max_retries_reached",
                    operation=operation,
                    max_attempts=policy.max_attempts,
                    error=str(e),
                )
                raise RetryExhaustedError(e, attempt) from e

            delay = policy.delay_for(attempt)

            log.warning(
                "retrying_after_error",
                operation=operation,
                attempt=attempt,
                max_attempts=policy.max_attempts,
                delay_seconds=delay,
                error=str(e),
            )

            await sleep(delay)

    # max_attempts >= 1 guarantees the loop returns or raises
    raise AssertionError("unreachable")
