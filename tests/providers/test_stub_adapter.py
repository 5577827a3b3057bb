"""
Tests for StubProviderAdapter and the BaseProviderAdapter wrapping.

Tests cover:
- submit / fetch_status / cancel / health_check
- fetch_status idempotence with no provider-side change
- Driver API: advance, complete, fail, forget
- Error wrapping into ProviderUnreachable
"""

from __future__ import annotations

import pytest

from conduit.core.errors import ProviderJobNotFound, ProviderRejected, ProviderUnreachable
from conduit.execution.models import StageState
from conduit.providers._base import DEFAULT_STAGES, BaseProviderAdapter, StubProviderAdapter
from conduit.providers._types import (
    CancelAck,
    ExecutionConfig,
    ProviderAdapter,
    ProviderHealth,
    ProviderRunState,
    ProviderStatus,
    redact_connection,
)
from tests._support import make_config


class TestStubSubmit:
    @pytest.mark.asyncio
    async def test_submit_uses_config_stages(self):
        adapter = StubProviderAdapter(provider_type="jenkins")
        ref = await adapter.submit(make_config(stages=("Build", "Test")))
        assert ref.startswith("jenkins-")
        status = await adapter.fetch_status(ref)
        assert status.overall_state is ProviderRunState.QUEUED
        assert [s.name for s in status.stages] == ["Build", "Test"]

    @pytest.mark.asyncio
    async def test_default_stages(self):
        adapter = StubProviderAdapter()
        status = await adapter.fetch_status(await adapter.submit(make_config()))
        assert tuple(s.name for s in status.stages) == DEFAULT_STAGES

    @pytest.mark.asyncio
    async def test_injected_rejection(self):
        adapter = StubProviderAdapter()
        adapter.fail_submit = True
        with pytest.raises(ProviderRejected) as exc_info:
            await adapter.submit(make_config())
        assert exc_info.value.retryable is True
        assert adapter.submit_count == 0

    @pytest.mark.asyncio
    async def test_injected_unreachable(self):
        adapter = StubProviderAdapter()
        adapter.unreachable = True
        with pytest.raises(ProviderUnreachable):
            await adapter.submit(make_config())

    def test_satisfies_protocol(self):
        assert isinstance(StubProviderAdapter(), ProviderAdapter)


class TestStubStatus:
    @pytest.mark.asyncio
    async def test_fetch_status_is_idempotent(self):
        adapter = StubProviderAdapter(stages=("Build", "Test", "Deploy"))
        ref = await adapter.submit(make_config(stages=("Build", "Test", "Deploy")))
        adapter.advance(ref)
        adapter.advance(ref)
        first = await adapter.fetch_status(ref)
        second = await adapter.fetch_status(ref)
        assert first == second
        assert adapter.status_count == 2

    @pytest.mark.asyncio
    async def test_advance_walks_stages(self):
        adapter = StubProviderAdapter()
        ref = await adapter.submit(make_config(stages=("Build", "Test")))
        assert adapter.advance(ref) is ProviderRunState.RUNNING
        assert adapter.advance(ref) is ProviderRunState.RUNNING
        status = await adapter.fetch_status(ref)
        assert [s.state for s in status.stages] == [StageState.COMPLETED, StageState.PENDING]
        adapter.advance(ref)
        assert adapter.advance(ref) is ProviderRunState.COMPLETED

    @pytest.mark.asyncio
    async def test_fail_sets_verbatim_message(self):
        adapter = StubProviderAdapter()
        ref = await adapter.submit(make_config(stages=("Build", "Test")))
        adapter.start(ref)
        adapter.fail(ref, "mvn: BUILD FAILURE")
        status = await adapter.fetch_status(ref)
        assert status.overall_state is ProviderRunState.FAILED
        assert status.message == "mvn: BUILD FAILURE"
        assert status.stages[0].state is StageState.FAILED
        assert status.is_terminal

    @pytest.mark.asyncio
    async def test_forgotten_job(self):
        adapter = StubProviderAdapter()
        ref = await adapter.submit(make_config())
        adapter.forget(ref)
        with pytest.raises(ProviderJobNotFound) as exc_info:
            await adapter.fetch_status(ref)
        assert exc_info.value.provider_ref == ref

    @pytest.mark.asyncio
    async def test_clock_driven_progress(self):
        adapter = StubProviderAdapter(stage_seconds=10.0)
        ref = await adapter.submit(make_config(stages=("Build", "Test")))
        job = adapter.jobs[ref]
        job.submitted_at -= 15.0
        status = await adapter.fetch_status(ref)
        assert [s.state for s in status.stages] == [StageState.COMPLETED, StageState.RUNNING]
        job.submitted_at -= 100.0
        assert (await adapter.fetch_status(ref)).overall_state is ProviderRunState.COMPLETED


class TestStubCancel:
    @pytest.mark.asyncio
    async def test_cancel_in_flight(self):
        adapter = StubProviderAdapter()
        ref = await adapter.submit(make_config())
        adapter.start(ref)
        ack = await adapter.cancel(ref)
        assert ack == CancelAck(accepted=True)
        assert (await adapter.fetch_status(ref)).overall_state is ProviderRunState.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_finished_job_reports_reason(self):
        adapter = StubProviderAdapter()
        ref = await adapter.submit(make_config())
        adapter.complete(ref)
        ack = await adapter.cancel(ref)
        assert ack.accepted is False
        assert ack.message == "No in-flight job to cancel"

    @pytest.mark.asyncio
    async def test_cancel_unsupported(self):
        adapter = StubProviderAdapter(supports_cancel=False)
        ref = await adapter.submit(make_config())
        ack = await adapter.cancel(ref)
        assert ack.accepted is False
        assert not adapter.capabilities().supports_cancel


class TestStubHealth:
    @pytest.mark.asyncio
    async def test_healthy_with_latency(self):
        health = await StubProviderAdapter().health_check()
        assert health.healthy is True
        assert health.latency_ms is not None

    @pytest.mark.asyncio
    async def test_unreachable_reports_not_reachable(self):
        adapter = StubProviderAdapter()
        adapter.unreachable = True
        health = await adapter.health_check()
        assert health.healthy is False
        assert health.details["reachable"] is False


# ---------------------------------------------------------------------------
# BaseProviderAdapter wrapping
# ---------------------------------------------------------------------------

class _Exploding(BaseProviderAdapter):
    @property
    def provider_type(self) -> str:
        return "exploding"

    async def _do_submit(self, config: ExecutionConfig) -> str:
        raise ConnectionResetError("peer reset")

    async def _do_fetch_status(self, provider_ref: str) -> ProviderStatus:
        raise OSError("socket closed")

    async def _do_cancel(self, provider_ref: str) -> CancelAck:
        raise RuntimeError("no route")

    async def _do_health_check(self) -> ProviderHealth:
        raise TimeoutError("slow")


class TestBaseWrapping:
    @pytest.mark.asyncio
    async def test_unexpected_submit_error_becomes_unreachable(self):
        with pytest.raises(ProviderUnreachable) as exc_info:
            await _Exploding().submit(make_config())
        assert isinstance(exc_info.value.__cause__, ConnectionResetError)

    @pytest.mark.asyncio
    async def test_unexpected_status_error_becomes_unreachable(self):
        with pytest.raises(ProviderUnreachable):
            await _Exploding().fetch_status("ref")

    @pytest.mark.asyncio
    async def test_cancel_error_becomes_negative_ack(self):
        ack = await _Exploding().cancel("ref")
        assert ack.accepted is False
        assert "no route" in ack.message

    @pytest.mark.asyncio
    async def test_health_error_becomes_unhealthy(self):
        health = await _Exploding().health_check()
        assert health.healthy is False
        assert health.details["error_type"] == "TimeoutError"

    def test_default_capabilities(self):
        assert _Exploding().capabilities().supports("full_cicd")


def test_redact_connection_nested():
    assert redact_connection({"url": "u", "nested": {"secret_key": "x"}}) == {
        "url": "u",
        "nested": {"secret_key": "***REDACTED***"},
    }
