"""Base provider adapter with shared call wrapping, plus an in-memory stub.

Architecture:

    .. code-block:: text

        ProviderAdapter (Protocol)
              │
              ▼
        BaseProviderAdapter
        ├── submit()        → logging + error wrapping → _do_submit()
        ├── fetch_status()  → error wrapping           → _do_fetch_status()
        ├── cancel()        → logging + safe fallback  → _do_cancel()
        └── health_check()  → latency timing           → _do_health_check()
              │
        ┌─────┴───────────────────────┐
        ▼                             ▼
    JenkinsAdapter, ...         StubProviderAdapter
    (real backends)             (scripted, in-memory)

    Unexpected exceptions from ``_do_submit`` / ``_do_fetch_status`` become
    ``ProviderUnreachable`` so the dispatcher's retry policy sees a typed,
    retryable error. ``ProviderError`` subclasses pass through unchanged.

Usage:
    adapter = StubProviderAdapter(provider_type="jenkins", stages=("build", "test"))
    ref = await adapter.submit(config)
    adapter.advance(ref)          # build → running
    status = await adapter.fetch_status(ref)

Tags:
    conduit, providers, adapter-base, test-double
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime

from conduit.core.errors import (
    ProviderError,
    ProviderJobNotFound,
    ProviderRejected,
    ProviderUnreachable,
)
from conduit.core.logging import get_logger
from conduit.execution.models import StageState
from conduit.providers._types import (
    CancelAck,
    ExecutionConfig,
    ProviderCapabilities,
    ProviderHealth,
    ProviderRunState,
    ProviderStatus,
    StageReport,
    _utcnow,
)

logger = get_logger(__name__)

DEFAULT_STAGES = (
    "Source Checkout",
    "Build",
    "Test",
    "Security Scan",
    "Package",
    "Deploy to Dev",
    "Verify Deployment",
)


# ---------------------------------------------------------------------------
# Base adapter
# ---------------------------------------------------------------------------

class BaseProviderAdapter:
    """Base class for provider adapters.

    Subclasses MUST implement:
        provider_type, _do_submit, _do_fetch_status, _do_cancel, _do_health_check

    Subclasses MAY override:
        capabilities (default: ``full_cicd`` only)
    """

    @property
    def provider_type(self) -> str:
        raise NotImplementedError

    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(pipeline_types=frozenset({"full_cicd"}))

    async def submit(self, config: ExecutionConfig) -> str:
        """Submit with logging and error wrapping."""
        logger.info(
            "provider_submit",
            provider_type=self.provider_type,
            execution_id=config.execution_id,
            pipeline_type=config.pipeline_type,
        )
        try:
            ref = await self._do_submit(config)
        except ProviderError:
            raise
        except Exception as exc:
            logger.error(
                "provider_submit_error",
                provider_type=self.provider_type,
                execution_id=config.execution_id,
                error=str(exc),
            )
            raise ProviderUnreachable(
                f"Submit failed: {exc}", provider=self.provider_type, cause=exc
            ) from exc
        logger.info(
            "provider_submitted",
            provider_type=self.provider_type,
            execution_id=config.execution_id,
            provider_ref=ref,
        )
        return ref

    async def fetch_status(self, provider_ref: str) -> ProviderStatus:
        try:
            return await self._do_fetch_status(provider_ref)
        except ProviderError:
            raise
        except Exception as exc:
            raise ProviderUnreachable(
                f"Status fetch failed: {exc}", provider=self.provider_type, cause=exc
            ) from exc

    async def cancel(self, provider_ref: str) -> CancelAck:
        """Cancel with logging. Errors become a negative ack."""
        logger.info("provider_cancel", provider_type=self.provider_type, provider_ref=provider_ref)
        try:
            ack = await self._do_cancel(provider_ref)
        except Exception as exc:
            logger.warning(
                "provider_cancel_error",
                provider_type=self.provider_type,
                provider_ref=provider_ref,
                error=str(exc),
            )
            return CancelAck(accepted=False, message=f"Cancel failed: {exc}")
        logger.info(
            "provider_cancel_result",
            provider_type=self.provider_type,
            provider_ref=provider_ref,
            accepted=ack.accepted,
        )
        return ack

    async def health_check(self) -> ProviderHealth:
        """Health probe with latency timing. Errors report unhealthy."""
        start = time.monotonic()
        try:
            result = await self._do_health_check()
        except Exception as exc:
            return ProviderHealth(
                healthy=False,
                details={"reachable": False, "error_type": type(exc).__name__},
                message=f"Health check failed: {exc}",
                latency_ms=(time.monotonic() - start) * 1000,
            )
        return ProviderHealth(
            healthy=result.healthy,
            details=dict(result.details),
            message=result.message,
            latency_ms=(time.monotonic() - start) * 1000,
        )

    # --- Abstract methods for subclasses ---

    async def _do_submit(self, config: ExecutionConfig) -> str:
        raise NotImplementedError

    async def _do_fetch_status(self, provider_ref: str) -> ProviderStatus:
        raise NotImplementedError

    async def _do_cancel(self, provider_ref: str) -> CancelAck:
        raise NotImplementedError

    async def _do_health_check(self) -> ProviderHealth:
        raise NotImplementedError


# ---------------------------------------------------------------------------
# Stub adapter
# ---------------------------------------------------------------------------

@dataclass
class _StubStage:
    name: str
    order: int
    state: StageState = StageState.PENDING
    started_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass
class _StubJob:
    """Provider-side state of one stubbed run."""

    config: ExecutionConfig
    provider_ref: str
    stages: list[_StubStage]
    state: ProviderRunState = ProviderRunState.QUEUED
    message: str | None = None
    submitted_at: float = field(default_factory=time.monotonic)


class StubProviderAdapter(BaseProviderAdapter):
    """In-memory provider for tests and local runs.

    Runs do not progress on their own unless ``stage_seconds`` is set; tests
    drive them explicitly with :meth:`advance`, :meth:`complete`,
    :meth:`fail` and :meth:`forget`. ``fetch_status`` never mutates state,
    so repeated calls with no driver action return identical results.

    .. code-block:: text

        Inject failures:
          adapter.fail_submit = True        → submit() raises ProviderRejected
          adapter.unreachable = True        → submit()/health raise ProviderUnreachable
          adapter.fail_health = True        → health reports unhealthy (reachable)
          adapter.fail_cancel = True        → cancel() returns a negative ack

        Track usage:
          adapter.submit_count / status_count / cancel_count / health_count

    Example:
        >>> adapter = StubProviderAdapter(provider_type="jenkins")
        >>> ref = await adapter.submit(config)
        >>> adapter.advance(ref)
        >>> (await adapter.fetch_status(ref)).overall_state
        <ProviderRunState.RUNNING: 'running'>
    """

    def __init__(
        self,
        *,
        provider_type: str = "stub",
        pipeline_types: tuple[str, ...] | list[str] = ("full_cicd",),
        stages: tuple[str, ...] | list[str] | None = None,
        stage_seconds: float | None = None,
        supports_cancel: bool = True,
    ) -> None:
        self._provider_type = provider_type
        self._pipeline_types = frozenset(pipeline_types)
        self.default_stages = tuple(stages) if stages else DEFAULT_STAGES
        self.stage_seconds = stage_seconds
        self.supports_cancel = supports_cancel

        self.jobs: dict[str, _StubJob] = {}
        self.submit_count = 0
        self.status_count = 0
        self.cancel_count = 0
        self.health_count = 0

        self.fail_submit = False
        self.unreachable = False
        self.fail_health = False
        self.fail_cancel = False

    @property
    def provider_type(self) -> str:
        return self._provider_type

    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(
            pipeline_types=self._pipeline_types,
            supports_cancel=self.supports_cancel,
        )

    # --- Driver API (provider-side changes) ---

    def _job(self, provider_ref: str) -> _StubJob:
        job = self.jobs.get(provider_ref)
        if job is None:
            raise ProviderJobNotFound(provider_ref, provider=self.provider_type)
        return job

    def advance(self, provider_ref: str) -> ProviderRunState:
        """Move the run forward by one stage step.

        A pending stage starts; a running stage completes. Completing the
        last stage completes the run.
        """
        job = self._job(provider_ref)
        if job.state.is_terminal:
            return job.state
        now = _utcnow()
        for stage in job.stages:
            if stage.state is StageState.PENDING:
                stage.state = StageState.RUNNING
                stage.started_at = now
                job.state = ProviderRunState.RUNNING
                return job.state
            if stage.state is StageState.RUNNING:
                stage.state = StageState.COMPLETED
                stage.completed_at = now
                if stage is job.stages[-1]:
                    job.state = ProviderRunState.COMPLETED
                return job.state
        job.state = ProviderRunState.COMPLETED
        return job.state

    def start(self, provider_ref: str) -> None:
        """Start the first stage."""
        job = self._job(provider_ref)
        if job.state is ProviderRunState.QUEUED:
            self.advance(provider_ref)

    def complete(self, provider_ref: str) -> None:
        """Finish every remaining stage successfully."""
        job = self._job(provider_ref)
        while not job.state.is_terminal:
            self.advance(provider_ref)

    def fail(self, provider_ref: str, message: str = "stage failed") -> None:
        """Fail the current stage and the run with *message*."""
        job = self._job(provider_ref)
        if job.state.is_terminal:
            return
        now = _utcnow()
        for stage in job.stages:
            if not stage.state.is_final:
                stage.started_at = stage.started_at or now
                stage.state = StageState.FAILED
                stage.completed_at = now
                break
        job.state = ProviderRunState.FAILED
        job.message = message

    def forget(self, provider_ref: str) -> None:
        """Drop the run, as if the provider lost it."""
        self.jobs.pop(provider_ref, None)

    def _advance_by_clock(self, job: _StubJob) -> None:
        if self.stage_seconds is None or job.state.is_terminal:
            return
        elapsed = time.monotonic() - job.submitted_at
        # each stage takes two steps: start then complete
        target_steps = int(elapsed / self.stage_seconds * 2)
        done_steps = sum(
            2 if s.state.is_final else 1 if s.state is StageState.RUNNING else 0
            for s in job.stages
        )
        for _ in range(max(0, target_steps - done_steps)):
            if job.state.is_terminal:
                break
            self.advance(job.provider_ref)

    # --- Adapter implementation ---

    async def _do_submit(self, config: ExecutionConfig) -> str:
        if self.unreachable:
            raise ProviderUnreachable("Stub: provider unreachable", provider=self.provider_type)
        if self.fail_submit:
            raise ProviderRejected("Stub: submit rejected", provider=self.provider_type)
        self.submit_count += 1
        ref = f"{self.provider_type}-{uuid.uuid4().hex[:12]}"
        names = config.stages or self.default_stages
        self.jobs[ref] = _StubJob(
            config=config,
            provider_ref=ref,
            stages=[_StubStage(name=n, order=i) for i, n in enumerate(names)],
        )
        return ref

    async def _do_fetch_status(self, provider_ref: str) -> ProviderStatus:
        self.status_count += 1
        job = self._job(provider_ref)
        self._advance_by_clock(job)
        return ProviderStatus(
            overall_state=job.state,
            stages=tuple(
                StageReport(
                    name=s.name,
                    state=s.state,
                    order=s.order,
                    started_at=s.started_at,
                    completed_at=s.completed_at,
                )
                for s in job.stages
            ),
            message=job.message,
        )

    async def _do_cancel(self, provider_ref: str) -> CancelAck:
        self.cancel_count += 1
        if self.fail_cancel or not self.supports_cancel:
            return CancelAck(accepted=False, message="Stub: cancel not supported")
        job = self.jobs.get(provider_ref)
        if job is None or job.state.is_terminal:
            return CancelAck(accepted=False, message="No in-flight job to cancel")
        job.state = ProviderRunState.CANCELLED
        return CancelAck(accepted=True)

    async def _do_health_check(self) -> ProviderHealth:
        self.health_count += 1
        if self.unreachable:
            raise ProviderUnreachable("Stub: provider unreachable", provider=self.provider_type)
        if self.fail_health:
            return ProviderHealth(healthy=False, message="Stub: health failure injected")
        return ProviderHealth(
            healthy=True,
            details={"reachable": True, "jobs": len(self.jobs)},
        )
