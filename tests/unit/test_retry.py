"""Tests for the shared retry/backoff executor."""

import asyncio
from unittest.mock import AsyncMock

import httpx
import pytest
from azure.core.exceptions import ClientAuthenticationError, ServiceRequestError

from m365_assessment.core.exceptions import (
    DirectoryApiRejected,
    DirectoryApiTransient,
    MissingTenantIdentifier,
    VaultUnavailable,
)
from m365_assessment.core.retry import (
    RetryPolicy,
    execute_with_retry,
    is_retryable_error,
    is_retryable_status,
    retry_with_backoff,
)


class RecordingSleep:
    """Records requested delays without waiting."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class StatusError(Exception):
    def __init__(self, status_code: int):
        super().__init__(f"HTTP {status_code}")
        self.status_code = status_code


class TestRetryPolicy:
    """Tests for delay computation."""

    def test_delay_doubles_and_caps(self):
        policy = RetryPolicy(max_attempts=6, base_delay=1.0, max_delay=5.0)
        assert [policy.delay_for(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_jitter_bounded(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=10.0, jitter=0.5)
        for _ in range(20):
            assert 1.0 <= policy.delay_for(1) <= 1.5

    def test_from_settings(self, settings):
        policy = RetryPolicy.from_settings(settings, max_attempts=2)
        assert policy.max_attempts == 2
        assert policy.base_delay == settings.retry_base_delay_seconds
        assert policy.timeout == settings.external_call_timeout_seconds


class TestRetryablePredicates:
    """Tests for status and error classification."""

    @pytest.mark.parametrize("status_code", [408, 429, 500, 502, 503, 504])
    def test_transient_statuses(self, status_code):
        assert is_retryable_status(status_code)

    @pytest.mark.parametrize("status_code", [400, 401, 403, 404, 409, 422])
    def test_client_errors_never_retried(self, status_code):
        assert not is_retryable_status(status_code)

    def test_error_classification(self):
        assert is_retryable_error(TimeoutError())
        assert is_retryable_error(ConnectionError())
        assert is_retryable_error(httpx.ConnectError("refused"))
        assert is_retryable_error(DirectoryApiTransient("throttled", status_code=429))
        assert not is_retryable_error(DirectoryApiRejected("denied", status_code=403))
        assert not is_retryable_error(ValueError("bad payload"))
        assert not is_retryable_error(KeyError("missing"))
        assert not is_retryable_error(MissingTenantIdentifier("none"))
        assert is_retryable_error(StatusError(503))
        assert not is_retryable_error(StatusError(400))

    def test_vault_errors_follow_their_cause(self):
        def wrapped(cause):
            try:
                raise VaultUnavailable("vault write failed") from cause
            except VaultUnavailable as e:
                return e

        assert is_retryable_error(wrapped(ServiceRequestError("connection reset")))
        assert not is_retryable_error(wrapped(ClientAuthenticationError("denied")))
        assert is_retryable_error(VaultUnavailable("vault write failed"))


class TestExecuteWithRetry:
    """Tests for execute_with_retry()."""

    @pytest.mark.asyncio
    async def test_success_first_attempt(self):
        func = AsyncMock(return_value="ok")
        sleep = RecordingSleep()

        result = await execute_with_retry(func, policy=RetryPolicy(), sleep=sleep)

        assert result == "ok"
        assert func.await_count == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_429_retried_with_increasing_delays(self):
        """Rate limiting is retried up to the cap with strictly increasing delays."""
        func = AsyncMock(side_effect=StatusError(429))
        sleep = RecordingSleep()
        policy = RetryPolicy(max_attempts=4, base_delay=0.5, max_delay=30.0)

        with pytest.raises(StatusError):
            await execute_with_retry(func, policy=policy, sleep=sleep)

        assert func.await_count == 4
        assert sleep.delays == [0.5, 1.0, 2.0]
        assert all(a < b for a, b in zip(sleep.delays, sleep.delays[1:]))

    @pytest.mark.asyncio
    async def test_400_attempted_exactly_once(self):
        """A bad request is final."""
        func = AsyncMock(side_effect=StatusError(400))
        sleep = RecordingSleep()

        with pytest.raises(StatusError):
            await execute_with_retry(func, policy=RetryPolicy(max_attempts=4), sleep=sleep)

        assert func.await_count == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failures(self):
        func = AsyncMock(side_effect=[StatusError(503), ConnectionError(), "done"])
        sleep = RecordingSleep()

        result = await execute_with_retry(func, policy=RetryPolicy(max_attempts=3), sleep=sleep)

        assert result == "done"
        assert func.await_count == 3
        assert len(sleep.delays) == 2

    @pytest.mark.asyncio
    async def test_per_attempt_timeout_is_retried(self):
        """A call exceeding the per-attempt timeout counts as transient."""
        calls = 0

        async def slow_then_fast():
            nonlocal calls
            calls += 1
            if calls == 1:
                await asyncio.sleep(1)
            return "fast"

        sleep = RecordingSleep()
        policy = RetryPolicy(max_attempts=2, base_delay=0.1, timeout=0.01)

        result = await execute_with_retry(slow_then_fast, policy=policy, sleep=sleep)

        assert result == "fast"
        assert calls == 2
        assert sleep.delays == [0.1]

    @pytest.mark.asyncio
    async def test_timeout_exhaustion_raises_timeout(self):
        async def never():
            await asyncio.sleep(1)

        with pytest.raises(TimeoutError):
            await execute_with_retry(
                never,
                policy=RetryPolicy(max_attempts=2, base_delay=0.0, timeout=0.01),
                sleep=RecordingSleep(),
            )

    @pytest.mark.asyncio
    async def test_custom_retryable_predicate(self):
        func = AsyncMock(side_effect=ValueError("flaky parse"))

        with pytest.raises(ValueError):
            await execute_with_retry(
                func,
                policy=RetryPolicy(max_attempts=3),
                retryable=lambda e: isinstance(e, ValueError),
                sleep=RecordingSleep(),
            )

        assert func.await_count == 3

    @pytest.mark.asyncio
    async def test_backoff_sleep_is_cancellable(self):
        """Cancelling during the inter-attempt delay stops retrying."""
        func = AsyncMock(side_effect=StatusError(503))
        policy = RetryPolicy(max_attempts=5, base_delay=60.0, max_delay=60.0)

        task = asyncio.create_task(execute_with_retry(func, policy=policy))
        await asyncio.sleep(0.01)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert func.await_count == 1


class TestRetryDecorator:
    """Tests for retry_with_backoff()."""

    @pytest.mark.asyncio
    async def test_decorator_retries(self):
        attempts = []

        @retry_with_backoff(RetryPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0))
        async def flaky(value):
            attempts.append(value)
            if len(attempts) < 2:
                raise ConnectionError("reset")
            return value * 2

        assert await flaky(21) == 42
        assert attempts == [21, 21]
        assert flaky.__name__ == "flaky"
