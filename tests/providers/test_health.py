"""
Tests for HealthMonitor.

Tests cover:
- probe() applies hysteresis through the registry
- Exceptions and timeouts count as unreachable failures
- check_all() probes every provider
- Snapshots written to the store
- Background probing loop start/stop
- Loop survives unexpected errors and provider removal
"""

from __future__ import annotations

import asyncio
import random

import pytest

from conduit.execution.store import InMemoryExecutionStore
from conduit.providers._base import StubProviderAdapter
from conduit.providers.health import HealthMonitor
from conduit.providers.mock_adapters import HealthSequenceProvider, SlowProvider
from conduit.providers.registry import ConnectionState, HealthState, ProviderRegistry


def _monitor(registry: ProviderRegistry, **kwargs) -> HealthMonitor:
    kwargs.setdefault("interval", 0.02)
    kwargs.setdefault("jitter", 0.0)
    kwargs.setdefault("timeout", 0.5)
    return HealthMonitor(registry, rng=random.Random(7), **kwargs)


class TestProbe:
    @pytest.mark.asyncio
    async def test_three_failures_then_recovery(self):
        registry = ProviderRegistry(failure_threshold=3)
        adapter = HealthSequenceProvider(provider_type="gitlab", outcomes=[False, False, False, True])
        registry.register(adapter)
        monitor = _monitor(registry)

        states = [(await monitor.probe("gitlab")).health for _ in range(4)]
        assert states == [
            HealthState.HEALTHY,
            HealthState.HEALTHY,
            HealthState.UNHEALTHY,
            HealthState.HEALTHY,
        ]
        assert adapter.health_count == 4

    @pytest.mark.asyncio
    async def test_unreachable_disconnects(self):
        registry = ProviderRegistry(failure_threshold=2)
        registry.register(HealthSequenceProvider(provider_type="gitlab", outcomes=[None]))
        monitor = _monitor(registry)

        await monitor.probe("gitlab")
        result = await monitor.probe("gitlab")
        assert result.connection is ConnectionState.DISCONNECTED
        assert result.health is HealthState.UNHEALTHY
        assert "unreachable" in (result.message or "")

    @pytest.mark.asyncio
    async def test_unhealthy_but_reachable_stays_connected(self):
        registry = ProviderRegistry(failure_threshold=1)
        adapter = StubProviderAdapter(provider_type="jenkins")
        adapter.fail_health = True
        registry.register(adapter)

        result = await _monitor(registry).probe("jenkins")
        assert result.health is HealthState.UNHEALTHY
        assert result.connection is ConnectionState.CONNECTED

    @pytest.mark.asyncio
    async def test_timeout_counts_as_unreachable(self):
        registry = ProviderRegistry(failure_threshold=1)
        registry.register(SlowProvider(provider_type="jenkins", health_delay=1.0))
        result = await _monitor(registry, timeout=0.05).probe("jenkins")
        assert result.healthy is False
        assert result.connection is ConnectionState.DISCONNECTED
        assert "timed out" in result.message

    @pytest.mark.asyncio
    async def test_snapshot_written(self):
        registry = ProviderRegistry()
        registry.register(StubProviderAdapter(provider_type="jenkins"))
        store = InMemoryExecutionStore()
        await _monitor(registry, store=store).probe("jenkins")
        assert store.health_snapshots[0][0] == "jenkins"
        assert store.health_snapshots[0][1]["healthy"] is True

    @pytest.mark.asyncio
    async def test_snapshot_failure_does_not_break_probe(self):
        registry = ProviderRegistry()
        registry.register(StubProviderAdapter(provider_type="jenkins"))
        store = InMemoryExecutionStore()
        store.available = False
        result = await _monitor(registry, store=store).probe("jenkins")
        assert result.healthy is True

    @pytest.mark.asyncio
    async def test_check_all(self):
        registry = ProviderRegistry()
        for name in ("argo", "jenkins"):
            registry.register(StubProviderAdapter(provider_type=name))
        results = await _monitor(registry).check_all()
        assert sorted(r.provider for r in results) == ["argo", "jenkins"]
        assert await _monitor(ProviderRegistry()).check_all() == []


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_background_probing(self):
        registry = ProviderRegistry()
        adapter = StubProviderAdapter(provider_type="jenkins")
        registry.register(adapter)
        monitor = _monitor(registry)

        monitor.start()
        assert monitor.running
        await asyncio.sleep(0.1)
        await monitor.stop()

        assert not monitor.running
        assert adapter.health_count >= 2
        assert registry.require("jenkins").last_checked is not None

    @pytest.mark.asyncio
    async def test_track_late_registration(self):
        registry = ProviderRegistry()
        monitor = _monitor(registry)
        monitor.start()
        try:
            adapter = StubProviderAdapter(provider_type="late")
            registry.register(adapter)
            monitor.track("late")
            await asyncio.sleep(0.05)
            assert adapter.health_count >= 1
        finally:
            await monitor.stop()

    def test_track_before_start_is_noop(self):
        registry = ProviderRegistry()
        registry.register(StubProviderAdapter(provider_type="jenkins"))
        monitor = _monitor(registry)
        monitor.track("jenkins")
        assert not monitor.running


class _SelfRemovingProvider(StubProviderAdapter):
    """Unregisters itself while its health check is in flight."""

    def __init__(self, registry: ProviderRegistry, **kwargs) -> None:
        super().__init__(**kwargs)
        self.registry = registry

    async def _do_health_check(self):
        self.registry.unregister(self.provider_type)
        return await super()._do_health_check()


class TestLoopResilience:
    @pytest.mark.asyncio
    async def test_loop_survives_unexpected_error(self, monkeypatch):
        registry = ProviderRegistry()
        adapter = StubProviderAdapter(provider_type="jenkins")
        registry.register(adapter)
        monitor = _monitor(registry)
        record_health = registry.record_health
        calls = []

        def broken_once(name, health, **kwargs):
            calls.append(name)
            if len(calls) == 1:
                raise RuntimeError("snapshot encoder bug")
            return record_health(name, health, **kwargs)

        monkeypatch.setattr(registry, "record_health", broken_once)
        monitor.start()
        task = monitor._tasks["jenkins"]
        try:
            await asyncio.sleep(0.1)
            assert not task.done()
            assert len(calls) >= 2
            assert registry.require("jenkins").last_checked is not None
        finally:
            await monitor.stop()

    @pytest.mark.asyncio
    async def test_provider_removed_mid_check_ends_loop_cleanly(self):
        registry = ProviderRegistry()
        adapter = _SelfRemovingProvider(registry, provider_type="jenkins")
        registry.register(adapter)
        monitor = _monitor(registry)

        monitor.start()
        task = monitor._tasks["jenkins"]
        try:
            await asyncio.sleep(0.05)
            assert task.done()
            assert task.exception() is None
            assert "jenkins" not in monitor._tasks
            assert adapter.health_count == 1
        finally:
            await monitor.stop()
