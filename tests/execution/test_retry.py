"""
Tests for retry and timeout helpers.

Tests cover:
- ExponentialBackoff delay calculation and cap
- should_retry budget and non-retryable errors
- RetryContext attempt counting and on_retry callback
- call_with_timeout → ProviderUnreachable
"""

from __future__ import annotations

import asyncio

import pytest

from conduit.core.errors import ProviderRejected, ProviderTimeout, ProviderUnreachable
from conduit.execution.retry import ExponentialBackoff, RetryContext, call_with_timeout


# ---------------------------------------------------------------------------
# ExponentialBackoff
# ---------------------------------------------------------------------------

class TestExponentialBackoff:
    def test_delays_double(self):
        strategy = ExponentialBackoff(base_delay=1.0, jitter=False)
        assert [strategy.next_delay(a) for a in range(4)] == [1.0, 2.0, 4.0, 8.0]

    def test_delay_capped(self):
        strategy = ExponentialBackoff(base_delay=10.0, max_delay=15.0, jitter=False)
        assert strategy.next_delay(5) == 15.0

    def test_jitter_stays_in_range(self):
        strategy = ExponentialBackoff(base_delay=4.0, jitter=True, jitter_range=0.25)
        for _ in range(50):
            assert 3.0 <= strategy.next_delay(0) <= 5.0

    def test_budget_counts_retries_after_first_attempt(self):
        strategy = ExponentialBackoff(max_retries=3)
        assert [strategy.should_retry(a) for a in (1, 2, 3, 4)] == [True, True, True, False]

    def test_non_retryable_error_stops(self):
        strategy = ExponentialBackoff(max_retries=3)
        assert strategy.should_retry(1, ProviderTimeout("gone")) is False
        assert strategy.should_retry(1, ProviderRejected("busy")) is True


# ---------------------------------------------------------------------------
# RetryContext
# ---------------------------------------------------------------------------

def _failing(times: int, error: Exception):
    calls = {"n": 0}

    async def func() -> str:
        calls["n"] += 1
        if calls["n"] <= times:
            raise error
        return "ok"

    return func, calls


class TestRetryContext:
    @pytest.mark.asyncio
    async def test_succeeds_after_failures(self):
        func, calls = _failing(2, ProviderUnreachable("down"))
        seen = []
        ctx = RetryContext(
            ExponentialBackoff(max_retries=3, base_delay=0.0, jitter=False),
            on_retry=lambda attempt, err, delay: seen.append(attempt),
        )
        assert await ctx.run_async(func) == "ok"
        assert ctx.attempts == 3
        assert seen == [1, 2]
        assert len(ctx.errors) == 2

    @pytest.mark.asyncio
    async def test_exhaustion_raises_last_error(self):
        func, calls = _failing(10, ProviderRejected("queue full"))
        ctx = RetryContext(ExponentialBackoff(max_retries=3, base_delay=0.0, jitter=False))
        with pytest.raises(ProviderRejected):
            await ctx.run_async(func)
        assert ctx.attempts == 4
        assert calls["n"] == 4

    @pytest.mark.asyncio
    async def test_non_retryable_raises_immediately(self):
        func, calls = _failing(10, ProviderTimeout("gone"))
        ctx = RetryContext(ExponentialBackoff(max_retries=3, base_delay=0.0))
        with pytest.raises(ProviderTimeout):
            await ctx.run_async(func)
        assert ctx.attempts == 1


# ---------------------------------------------------------------------------
# call_with_timeout
# ---------------------------------------------------------------------------

class TestCallWithTimeout:
    @pytest.mark.asyncio
    async def test_returns_result(self):
        async def quick() -> int:
            return 7

        assert await call_with_timeout(quick(), 1.0, operation="submit") == 7

    @pytest.mark.asyncio
    async def test_timeout_becomes_unreachable(self):
        async def slow() -> None:
            await asyncio.sleep(5)

        with pytest.raises(ProviderUnreachable) as exc_info:
            await call_with_timeout(slow(), 0.05, operation="fetch_status", provider="jenkins")
        err = exc_info.value
        assert err.retryable is True
        assert err.provider == "jenkins"
        assert err.context["operation"] == "fetch_status"

    @pytest.mark.asyncio
    async def test_rejects_non_positive_timeout(self):
        async def quick() -> None:
            return None

        coro = quick()
        with pytest.raises(ValueError):
            await call_with_timeout(coro, 0, operation="submit")
        coro.close()
