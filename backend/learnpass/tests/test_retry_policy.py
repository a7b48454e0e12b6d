"""
Tests for bounded provider polling.
"""

from unittest.mock import AsyncMock, patch

import pytest

from learnpass.billing.retry import RetryExhaustedError, RetryPolicy
from learnpass.config.settings import Settings


class TestPoll:

    @pytest.mark.asyncio
    async def test_returns_first_satisfying_value(self):
        fetch = AsyncMock(side_effect=[None, None, "ready"])
        policy = RetryPolicy(interval_seconds=0, max_attempts=5)

        value = await policy.poll(fetch, lambda v: v is not None)

        assert value == "ready"
        assert fetch.await_count == 3

    @pytest.mark.asyncio
    async def test_exhaustion_is_explicit(self):
        fetch = AsyncMock(return_value={"payment_intent": None})
        policy = RetryPolicy(interval_seconds=0, max_attempts=4)

        with pytest.raises(RetryExhaustedError) as exc_info:
            await policy.poll(fetch, lambda v: bool(v["payment_intent"]), description="invoice payment")

        assert exc_info.value.attempts == 4
        assert exc_info.value.last_value == {"payment_intent": None}
        assert fetch.await_count == 4

    @pytest.mark.asyncio
    async def test_sleeps_between_attempts_only(self):
        fetch = AsyncMock(side_effect=[1, 2, 3])
        policy = RetryPolicy(interval_seconds=2.5, max_attempts=3)

        with patch("learnpass.billing.retry.asyncio.sleep", new=AsyncMock()) as sleep:
            with pytest.raises(RetryExhaustedError):
                await policy.poll(fetch, lambda v: False)

        assert sleep.await_count == 2
        sleep.assert_awaited_with(2.5)

    @pytest.mark.asyncio
    async def test_fetch_errors_propagate(self):
        fetch = AsyncMock(side_effect=RuntimeError("boom"))
        policy = RetryPolicy(interval_seconds=0, max_attempts=3)

        with pytest.raises(RuntimeError):
            await policy.poll(fetch, lambda v: True)

        assert fetch.await_count == 1


class TestConfiguration:

    def test_invalid_attempts(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)

    def test_negative_interval(self):
        with pytest.raises(ValueError):
            RetryPolicy(interval_seconds=-1)

    def test_from_settings(self):
        policy = RetryPolicy.from_settings(Settings(poll_interval_seconds=0.5, poll_max_attempts=8))

        assert policy.interval_seconds == 0.5
        assert policy.max_attempts == 8
