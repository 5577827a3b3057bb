"""Tests for mock providers: FailingProvider, FlakyProvider, SlowProvider, HealthSequenceProvider."""

from __future__ import annotations

import time

import pytest

from conduit.core.errors import ProviderRejected, ProviderUnreachable
from conduit.providers._types import ProviderRunState
from conduit.providers.mock_adapters import (
    FailingProvider,
    FlakyProvider,
    HealthSequenceProvider,
    SlowProvider,
)
from tests._support import make_config


# ---------------------------------------------------------------------------
# FailingProvider
# ---------------------------------------------------------------------------

class TestFailingProvider:
    @pytest.mark.asyncio
    async def test_rejects_by_default(self):
        adapter = FailingProvider()
        with pytest.raises(ProviderRejected) as exc_info:
            await adapter.submit(make_config("exec_abc"))
        assert "exec_abc" in exc_info.value.message
        assert adapter.attempts == 1

    @pytest.mark.asyncio
    async def test_unreachable_variant(self):
        with pytest.raises(ProviderUnreachable):
            await FailingProvider(error="unreachable").submit(make_config())

    @pytest.mark.asyncio
    async def test_health_independent_of_submit(self):
        assert (await FailingProvider().health_check()).healthy is True
        assert (await FailingProvider(healthy=False).health_check()).healthy is False

    def test_unknown_error_kind(self):
        with pytest.raises(ValueError):
            FailingProvider(error="oom")

    def test_provider_type(self):
        assert FailingProvider().provider_type == "failing"


# ---------------------------------------------------------------------------
# FlakyProvider
# ---------------------------------------------------------------------------

class TestFlakyProvider:
    @pytest.mark.asyncio
    async def test_fail_times_then_succeed(self):
        adapter = FlakyProvider(fail_times=2)
        for _ in range(2):
            with pytest.raises(ProviderUnreachable):
                await adapter.submit(make_config())
        ref = await adapter.submit(make_config())
        assert ref.startswith("flaky-")
        assert adapter.attempts == 3
        assert adapter.failure_count == 2

    @pytest.mark.asyncio
    async def test_seeded_rate_is_reproducible(self):
        async def outcomes(seed: int) -> list[bool]:
            adapter = FlakyProvider(success_rate=0.5, seed=seed)
            results = []
            for _ in range(20):
                try:
                    await adapter.submit(make_config())
                    results.append(True)
                except ProviderUnreachable:
                    results.append(False)
            return results

        assert await outcomes(42) == await outcomes(42)

    @pytest.mark.asyncio
    async def test_rate_extremes(self):
        always = FlakyProvider(success_rate=1.0)
        await always.submit(make_config())
        never = FlakyProvider(success_rate=0.0, error="rejected")
        with pytest.raises(ProviderRejected):
            await never.submit(make_config())

    def test_invalid_rate(self):
        with pytest.raises(ValueError):
            FlakyProvider(success_rate=1.5)

    @pytest.mark.asyncio
    async def test_accepted_runs_are_drivable(self):
        adapter = FlakyProvider(fail_times=0)
        ref = await adapter.submit(make_config())
        adapter.complete(ref)
        assert (await adapter.fetch_status(ref)).overall_state is ProviderRunState.COMPLETED


# ---------------------------------------------------------------------------
# SlowProvider
# ---------------------------------------------------------------------------

class TestSlowProvider:
    @pytest.mark.asyncio
    async def test_submit_delay(self):
        adapter = SlowProvider(submit_delay=0.1)
        t0 = time.monotonic()
        await adapter.submit(make_config())
        assert time.monotonic() - t0 >= 0.09

    @pytest.mark.asyncio
    async def test_status_delay(self):
        adapter = SlowProvider(submit_delay=0.0, status_delay=0.1)
        ref = await adapter.submit(make_config())
        t0 = time.monotonic()
        await adapter.fetch_status(ref)
        assert time.monotonic() - t0 >= 0.09


# ---------------------------------------------------------------------------
# HealthSequenceProvider
# ---------------------------------------------------------------------------

class TestHealthSequenceProvider:
    @pytest.mark.asyncio
    async def test_follows_script_then_repeats_last(self):
        adapter = HealthSequenceProvider(outcomes=[True, False, None])
        results = [await adapter.health_check() for _ in range(4)]
        assert [r.healthy for r in results] == [True, False, False, False]
        assert results[1].details["reachable"] is True
        assert results[2].details["reachable"] is False
        assert results[3].details["reachable"] is False

    @pytest.mark.asyncio
    async def test_push_extends_script(self):
        adapter = HealthSequenceProvider(outcomes=[False])
        await adapter.health_check()
        adapter.push(True)
        assert (await adapter.health_check()).healthy is True
