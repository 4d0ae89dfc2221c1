"""Retry utilities for directory API, vault and category data-source calls.

One executor serves every external call site. Policies differ only in
their parameters, never in the retry loop itself.
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from functools import wraps
from typing import TypeVar

import httpx
from azure.core.exceptions import ClientAuthenticationError

from m365_assessment.core.config import Settings
from m365_assessment.core.exceptions import (
    AssessmentPlatformError,
    DirectoryApiRejected,
    DirectoryApiTransient,
    VaultUnavailable,
)

logger = logging.getLogger(__name__)

T = TypeVar('T')

# 4xx statuses that still follow the transient backoff
RETRYABLE_CLIENT_STATUS_CODES = {408, 429}

# Non-retryable exceptions
NON_RETRYABLE_EXCEPTIONS = (
    ClientAuthenticationError,
    ValueError,
    TypeError,
    KeyError,
    AssessmentPlatformError,
)

TRANSIENT_EXCEPTIONS = (
    TimeoutError,
    ConnectionError,
    httpx.TransportError,
    DirectoryApiTransient,
)


@dataclass(frozen=True)
class RetryPolicy:
    """Configuration for retry behavior.

    Attributes:
        max_attempts: Total attempts including the first call
        base_delay: Delay before the second attempt, in seconds
        max_delay: Upper bound for any single delay
        timeout: Per-attempt timeout in seconds (None disables it)
        jitter: Upper bound of random seconds added to each delay
    """

    max_attempts: int = 4
    base_delay: float = 1.0
    max_delay: float = 30.0
    timeout: float | None = 30.0
    jitter: float = 0.0

    def delay_for(self, attempt: int) -> float:
        """Delay after the given failed attempt (1-based)."""
        delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        if self.jitter:
            delay += random.uniform(0, self.jitter)
        return delay

    @classmethod
    def from_settings(cls, settings: Settings, **overrides) -> "RetryPolicy":
        values = {
            "max_attempts": settings.retry_max_attempts,
            "base_delay": settings.retry_base_delay_seconds,
            "max_delay": settings.retry_max_delay_seconds,
            "timeout": settings.external_call_timeout_seconds,
        }
        values.update(overrides)
        return cls(**values)


def status_code_of(error: Exception) -> int | None:
    """Extract an HTTP status code from SDK, httpx or platform errors."""
    status = getattr(error, "status_code", None)
    if status is None:
        response = getattr(error, "response", None)
        status = getattr(response, "status_code", None)
    return status if isinstance(status, int) else None


def is_retryable_status(status_code: int) -> bool:
    """5xx, 408 and 429 are transient. Every other 4xx is final."""
    if status_code in RETRYABLE_CLIENT_STATUS_CODES:
        return True
    if 400 <= status_code < 500:
        return False
    return status_code >= 500


def is_retryable_error(error: Exception) -> bool:
    """Determine if an error is retryable."""
    if isinstance(error, DirectoryApiRejected):
        return False

    # Classified by the SDK error it wraps
    if isinstance(error, VaultUnavailable):
        return error.__cause__ is None or is_retryable_error(error.__cause__)

    if isinstance(error, TRANSIENT_EXCEPTIONS):
        return True

    status_code = status_code_of(error)
    if status_code is not None:
        return is_retryable_status(status_code)

    if isinstance(error, NON_RETRYABLE_EXCEPTIONS):
        return False

    # Default: retry unknown errors
    return True


async def execute_with_retry(
    func: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    retryable: Callable[[Exception], bool] = is_retryable_error,
    description: str | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run ``func`` with per-attempt timeout and exponential backoff.

    Args:
        func: Zero-argument coroutine factory, called once per attempt
        policy: Attempt cap, delays and per-attempt timeout
        retryable: Predicate deciding whether an error is worth retrying
        description: Name used in log messages
        sleep: Awaitable delay; must stay cancellable

    Returns:
        The first successful result

    Raises:
        The last error once attempts are exhausted, or the first
        non-retryable error.
    """
    name = description or getattr(func, "__name__", "call")

    for attempt in range(1, policy.max_attempts + 1):
        try:
            if policy.timeout is not None:
                return await asyncio.wait_for(func(), timeout=policy.timeout)
            return await func()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if isinstance(e, TimeoutError) and not str(e):
                e = TimeoutError(f"{name} timed out after {policy.timeout}s")

            if not retryable(e):
                logger.warning(f"Non-retryable error in {name}: {e}")
                raise e

            if attempt >= policy.max_attempts:
                logger.error(f"{name} failed after {policy.max_attempts} attempts: {e}")
                raise e

            wait_time = policy.delay_for(attempt)
            logger.warning(
                f"{name} attempt {attempt}/{policy.max_attempts} "
                f"failed: {e}. Retrying in {wait_time:.1f}s..."
            )
            await sleep(wait_time)

    raise RuntimeError("Unexpected retry failure")


def retry_with_backoff(policy: RetryPolicy | None = None):
    """Decorator that retries async functions with exponential backoff."""
    if policy is None:
        policy = RetryPolicy()

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            return await execute_with_retry(
                lambda: func(*args, **kwargs),
                policy=policy,
                description=func.__name__,
            )

        return wrapper

    return decorator


# Predefined policies
DIRECTORY_API_POLICY = RetryPolicy(max_attempts=4, base_delay=1.0, max_delay=30.0)
VAULT_POLICY = RetryPolicy(max_attempts=3, base_delay=0.5, max_delay=5.0, timeout=15.0)
CATEGORY_FETCH_POLICY = RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=10.0)
DISCOVERY_POLICY = RetryPolicy(max_attempts=3, base_delay=0.2, max_delay=1.0, timeout=10.0)
