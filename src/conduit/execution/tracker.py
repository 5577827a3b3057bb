"""Execution tracker: the authoritative state machine for in-flight work.

The tracker owns the orchestrator's working set: every execution from the
moment it is created until it is terminal *and* its final state has been
flushed to the store. Status reaches it two ways, both through the same
code path:

    .. code-block:: text

        poll loop ── fetch_status(ref) ──┐
                                         ├──> apply_status(id, ProviderStatus)
        report_stage_update(id, status) ─┘          │
                                                    ├── merge stages (never regress)
                                                    ├── derive event
                                                    └── transition(execution, event)
                                                             │
                                                             ├── counters / slot release
                                                             └── outbox → store

Persistence outbox:
    Every change marks the execution dirty. ``flush()`` writes pending stage
    records, then the state snapshot. A failed write (``StoreUnavailable``)
    leaves the entry in the outbox; it is retried on the next poll cycle.
    Terminal executions leave the working set only after a clean flush.

Stall detection:
    An ``assigned``/``running`` execution with no stage progress for longer
    than ``stall_threshold`` is re-checked; if the provider no longer knows
    the job (``ProviderJobNotFound`` or overall state ``unknown``) it fails
    with category ``provider-timeout``.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from conduit.core.errors import (
    ConduitError,
    ExecutionNotFound,
    InvalidTransitionError,
    ProviderError,
    ProviderJobNotFound,
    ProviderReportedFailure,
    ProviderTimeout,
    ProviderUnreachable,
    StoreUnavailable,
)
from conduit.core.logging import get_logger
from conduit.execution.models import (
    ACTIVE_STATES,
    Execution,
    ExecutionEvent,
    ExecutionState,
    FailureCategory,
    FailureReason,
    Stage,
    StageState,
    utcnow,
)
from conduit.execution.retry import call_with_timeout
from conduit.execution.store import ExecutionStore
from conduit.providers._types import ProviderRunState, ProviderStatus, StageReport
from conduit.providers.registry import ProviderRegistry

logger = get_logger(__name__)


@dataclass
class _PendingWrite:
    stages: list[Stage] = field(default_factory=list)
    state: bool = False


class ExecutionTracker:
    """Applies provider status to executions and keeps the store in sync."""

    def __init__(
        self,
        registry: ProviderRegistry,
        store: ExecutionStore,
        *,
        poll_interval: float = 5.0,
        stall_threshold: float = 600.0,
        call_timeout: float = 30.0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.registry = registry
        self.store = store
        self.poll_interval = poll_interval
        self.stall_threshold = stall_threshold
        self.call_timeout = call_timeout
        self._clock = clock or utcnow
        self._working: dict[str, Execution] = {}
        self._outbox: dict[str, _PendingWrite] = {}
        self._task: asyncio.Task[None] | None = None
        self._running = False

    # ------------------------------------------------------------------
    # Working set
    # ------------------------------------------------------------------

    def track(self, execution: Execution) -> None:
        self._working[execution.id] = execution

    def get(self, execution_id: str) -> Execution | None:
        return self._working.get(execution_id)

    def working_set(self) -> list[Execution]:
        return list(self._working.values())

    def active(self) -> list[Execution]:
        return [e for e in self._working.values() if e.state in ACTIVE_STATES]

    @property
    def pending_writes(self) -> int:
        return len(self._outbox)

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def transition(
        self,
        execution: Execution,
        event: ExecutionEvent,
        *,
        failure: FailureReason | None = None,
    ) -> ExecutionState:
        """Apply *event* to *execution* and run the side effects of the new state.

        Raises:
            InvalidTransitionError: If the event is not legal in the current
                state (including any terminal state).
        """
        previous = execution.state
        try:
            target = execution.apply(event, at=self._clock())
        except InvalidTransitionError:
            logger.warning(
                "invalid_transition",
                execution_id=execution.id,
                state=previous.value,
                trigger=event.value,
            )
            raise
        if target is ExecutionState.FAILED:
            execution.failure = failure or FailureReason(
                FailureCategory.INTERNAL_ERROR, "Execution failed without a recorded reason"
            )

        provider = execution.provider
        if event is ExecutionEvent.ACCEPTED and provider:
            self.registry.record_accepted(provider)
        if target.is_terminal and provider:
            if target is ExecutionState.COMPLETED:
                self.registry.record_outcome(provider, success=True)
            elif target is ExecutionState.FAILED:
                self.registry.record_outcome(provider, success=False)
            self.registry.release(provider)

        log = logger.warning if target is ExecutionState.FAILED else logger.info
        log(
            "execution_transition",
            execution_id=execution.id,
            from_state=previous.value,
            to_state=target.value,
            trigger=event.value,
            provider=provider,
            failure=execution.failure.message if target is ExecutionState.FAILED else None,
        )
        self.mark_dirty(execution)
        return target

    def fail(
        self,
        execution: Execution,
        event: ExecutionEvent,
        category: FailureCategory,
        error: ConduitError,
    ) -> None:
        """Transition to ``failed``; *error* supplies the message and detail."""
        self.transition(
            execution,
            event,
            failure=FailureReason(category, error.message, error.to_dict()),
        )

    # ------------------------------------------------------------------
    # Status application (poll + push)
    # ------------------------------------------------------------------

    def apply_status(self, execution_id: str, status: ProviderStatus) -> Execution:
        """Merge a provider status report into the execution.

        Late reports for terminal executions are discarded. Returns a
        detached snapshot of the execution afterwards.

        Raises:
            ExecutionNotFound: If the id is unknown to both the working set
                and the store.
        """
        execution = self._working.get(execution_id)
        if execution is None:
            stored = self.store.get_execution(execution_id)
            if stored is None:
                raise ExecutionNotFound(execution_id)
            logger.debug(
                "status_report_discarded",
                execution_id=execution_id,
                state=stored.state.value,
                reported=status.overall_state.value,
            )
            return stored
        if execution.is_terminal or execution.state is ExecutionState.QUEUED:
            logger.debug(
                "status_report_discarded",
                execution_id=execution_id,
                state=execution.state.value,
                reported=status.overall_state.value,
            )
            return execution.snapshot()

        self._merge_stages(execution, status.stages)
        self._apply_overall(execution, status)
        self.flush_one(execution_id)
        return execution.snapshot()

    def _merge_stages(self, execution: Execution, reports: tuple[StageReport, ...]) -> None:
        now = self._clock()
        changed: list[Stage] = []
        for report in reports:
            stage = execution.stage(report.name)
            if stage is None:
                stage = Stage(name=report.name, order=report.order)
                execution.stages.append(stage)
                execution.stages.sort(key=lambda s: s.order)
                if report.state is StageState.PENDING:
                    changed.append(stage)
                    continue
            if stage.advance(
                report.state,
                started_at=report.started_at,
                completed_at=report.completed_at,
            ):
                changed.append(stage)
            elif report.state.rank < stage.state.rank:
                logger.debug(
                    "stage_regression_ignored",
                    execution_id=execution.id,
                    stage=stage.name,
                    state=stage.state.value,
                    reported=report.state.value,
                )
        if any(s.state is not StageState.PENDING for s in changed):
            execution.last_progress_at = now
        if changed:
            pending = self._outbox.setdefault(execution.id, _PendingWrite())
            pending.stages.extend(s.copy() for s in changed)
            pending.state = True

    def _apply_overall(self, execution: Execution, status: ProviderStatus) -> None:
        overall = status.overall_state
        started = overall in (ProviderRunState.RUNNING, ProviderRunState.COMPLETED) or any(
            s.state is not StageState.PENDING for s in execution.stages
        )
        if execution.state is ExecutionState.ASSIGNED and started and overall is not ProviderRunState.FAILED:
            self.transition(execution, ExecutionEvent.STAGE_STARTED)

        if overall is ProviderRunState.COMPLETED:
            self.transition(execution, ExecutionEvent.ALL_STAGES_COMPLETED)
        elif overall is ProviderRunState.FAILED:
            self.fail(
                execution,
                ExecutionEvent.PROVIDER_FAILED,
                FailureCategory.PROVIDER_REPORTED_FAILURE,
                ProviderReportedFailure(
                    status.message or "Provider reported failure", provider=execution.provider
                ),
            )
        elif overall is ProviderRunState.CANCELLED:
            self.fail(
                execution,
                ExecutionEvent.PROVIDER_FAILED,
                FailureCategory.PROVIDER_REPORTED_FAILURE,
                ProviderReportedFailure(
                    status.message or "Run was cancelled on the provider",
                    provider=execution.provider,
                ),
            )
        elif overall is ProviderRunState.UNKNOWN and self.is_stalled(execution):
            self.fail(
                execution,
                ExecutionEvent.STALLED,
                FailureCategory.PROVIDER_TIMEOUT,
                self._stall_error(execution, "provider reports the job as unknown"),
            )

    def _stall_error(self, execution: Execution, reason: str) -> ProviderTimeout:
        return ProviderTimeout(
            f"No progress for {self.stall_threshold:.0f}s and {reason}",
            provider=execution.provider,
            context={"provider_ref": execution.provider_ref},
        )

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    def is_stalled(self, execution: Execution) -> bool:
        if execution.state not in ACTIVE_STATES:
            return False
        since = execution.last_progress_at or execution.started_at or execution.created_at
        return (self._clock() - since).total_seconds() > self.stall_threshold

    async def poll_once(self) -> int:
        """Flush the outbox, poll every active execution, flush again.

        Returns the number of executions polled.
        """
        self.flush()
        active = [e for e in self.active() if e.provider and e.provider_ref]
        if active:
            await asyncio.gather(*(self._poll_one(e) for e in active))
        self.flush()
        return len(active)

    async def _poll_one(self, execution: Execution) -> None:
        record = self.registry.get(execution.provider or "")
        if record is None:
            logger.warning(
                "poll_provider_missing", execution_id=execution.id, provider=execution.provider
            )
            return
        try:
            status = await call_with_timeout(
                record.adapter.fetch_status(execution.provider_ref),
                self.call_timeout,
                operation="fetch_status",
                provider=record.name,
            )
        except ProviderJobNotFound as exc:
            if execution.is_terminal:
                return
            if self.is_stalled(execution):
                self.fail(
                    execution,
                    ExecutionEvent.STALLED,
                    FailureCategory.PROVIDER_TIMEOUT,
                    self._stall_error(execution, "provider no longer knows the job"),
                )
            else:
                logger.warning("poll_job_not_found", execution_id=execution.id, error=str(exc))
            return
        except Exception as exc:
            # Adapters outside BaseProviderAdapter may raise anything.
            if not isinstance(exc, ProviderError):
                exc = ProviderUnreachable(
                    f"fetch_status failed: {exc}", provider=record.name, cause=exc
                )
            logger.warning(
                "poll_failed",
                execution_id=execution.id,
                provider=record.name,
                error=str(exc),
                stalled=self.is_stalled(execution),
            )
            return
        try:
            self.apply_status(execution.id, status)
        except ConduitError as exc:
            logger.error(
                "status_apply_failed", execution_id=execution.id, error=str(exc), **exc.context
            )

    # ------------------------------------------------------------------
    # Persistence outbox
    # ------------------------------------------------------------------

    def mark_dirty(self, execution: Execution) -> None:
        self._outbox.setdefault(execution.id, _PendingWrite()).state = True

    def flush_one(self, execution_id: str) -> bool:
        """Write pending changes for one execution. False if the store failed."""
        pending = self._outbox.get(execution_id)
        execution = self._working.get(execution_id)
        if pending is None:
            return True
        if execution is None:
            del self._outbox[execution_id]
            return True
        try:
            while pending.stages:
                self.store.append_stage(execution_id, pending.stages[0])
                pending.stages.pop(0)
            if pending.state:
                self.store.update_state(execution_id, execution.state, execution.state_fields())
                pending.state = False
        except StoreUnavailable as exc:
            logger.warning(
                "persist_deferred",
                execution_id=execution_id,
                state=execution.state.value,
                pending_stages=len(pending.stages),
                error=str(exc),
            )
            return False
        del self._outbox[execution_id]
        if execution.is_terminal:
            self._working.pop(execution_id, None)
            logger.debug("execution_evicted", execution_id=execution_id, state=execution.state.value)
        return True

    def flush(self) -> int:
        """Flush every pending write. Returns how many are still pending."""
        for execution_id in list(self._outbox):
            self.flush_one(execution_id)
        return len(self._outbox)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run(), name="tracker")
        logger.info("tracker_started", poll_interval=self.poll_interval)

    async def stop(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        remaining = self.flush()
        if remaining:
            logger.error("tracker_stopped_with_unflushed_writes", pending=remaining)
        logger.info("tracker_stopped")

    async def _run(self) -> None:
        while self._running:
            try:
                await self.poll_once()
            except Exception:
                logger.exception("poll_cycle_failed")
            await asyncio.sleep(self.poll_interval)
