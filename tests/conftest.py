"""
Shared pytest fixtures for conduit tests.

This module provides:
- Fast orchestrator settings (tiny intervals, no backoff, no jitter)
- A controllable clock for stall detection
- Stub providers and a ready orchestrator

Usage:
    Fixtures are auto-discovered by pytest; request them as arguments.

    @pytest.mark.asyncio
    async def test_dispatch(orchestrator, jenkins):
        receipt = orchestrator.execute_pipeline(make_request())
        await orchestrator.tick()
"""

from __future__ import annotations

import pytest

from conduit.core.logging import configure_logging
from conduit.core.settings import OrchestratorSettings
from conduit.execution.store import InMemoryExecutionStore
from conduit.orchestrator import Orchestrator
from conduit.providers._base import StubProviderAdapter
from conduit.providers.registry import ProviderRegistry
from tests._support import FakeClock


@pytest.fixture(autouse=True, scope="session")
def _configure_logging() -> None:
    configure_logging(level="WARNING", json_format=False)


# =============================================================================
# Components
# =============================================================================


@pytest.fixture
def settings() -> OrchestratorSettings:
    return OrchestratorSettings(
        _env_file=None,
        poll_interval=0.01,
        stall_threshold=60.0,
        health_interval=0.05,
        health_jitter=0.0,
        health_timeout=0.5,
        health_failure_threshold=3,
        provider_call_timeout=1.0,
        dispatch_max_retries=3,
        dispatch_backoff_base=0.0,
        dispatch_backoff_jitter=False,
        idle_wait=0.01,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryExecutionStore:
    return InMemoryExecutionStore()


@pytest.fixture
def registry() -> ProviderRegistry:
    return ProviderRegistry(failure_threshold=3)


@pytest.fixture
def orchestrator(
    settings: OrchestratorSettings, store: InMemoryExecutionStore, clock: FakeClock
) -> Orchestrator:
    return Orchestrator(settings, store=store, clock=clock)


@pytest.fixture
def jenkins(orchestrator: Orchestrator) -> StubProviderAdapter:
    adapter = StubProviderAdapter(provider_type="jenkins", pipeline_types=("full_cicd", "build_only"))
    orchestrator.register_provider(adapter)
    return adapter
