"""Scheduler/dispatcher loop.

One loop per orchestrator moves queued executions onto providers.

Architecture:

    .. code-block:: text

        Dispatcher.run_cycle()
        ┌────────────────────────────────────────────────────────────────┐
        │ loop:                                                          │
        │   candidates = registry.candidates()                           │
        │       enabled ∧ healthy ∧ connected ∧ circuit ∧ in_flight < cap│
        │   entry      = queue.dequeue_entry(supported by ≥1 candidate)  │
        │   provider   = preference if candidate and capable             │
        │                else min(in_flight, name)                       │
        │   registry.reserve(provider)     (else requeue(entry))         │
        │   spawn _dispatch(entry, provider)                             │
        └────────────────────────────────────────────────────────────────┘

        _dispatch (own task, no locks held)
            RetryContext(ExponentialBackoff).run_async(
                call_with_timeout(adapter.submit(config)))
            ├── ok        → assign_provider, ACCEPTED       (queued → assigned)
            ├── exhausted → DISPATCH_EXHAUSTED              (queued → failed)
            ├── cancel_requested before an attempt → abort, no submit()
            └── cancel_requested after submit() → CANCEL + adapter.cancel()

        Outcomes feed the provider's circuit breaker: accepted → success,
        exhausted with a provider error → failure, aborted → no verdict.
        Interrupted or lost dispatches are requeued under their original
        sequence, so FIFO order within a priority survives.

        _run: wake event (enqueue, health change, slot release, enable)
              or idle_wait timeout; never busy-spins.

Backoff in one dispatch task never delays dispatch to other providers.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable

from conduit.core.errors import (
    ConduitError,
    InternalError,
    InvalidTransitionError,
    ProviderError,
    ProviderRejected,
    ProviderUnreachable,
)
from conduit.core.logging import get_logger
from conduit.execution.models import (
    Execution,
    ExecutionEvent,
    ExecutionState,
    FailureCategory,
)
from conduit.execution.queue import DispatchQueue, QueueEntry
from conduit.execution.retry import (
    ExponentialBackoff,
    RetryAborted,
    RetryContext,
    call_with_timeout,
)
from conduit.execution.tracker import ExecutionTracker
from conduit.providers._types import ExecutionConfig
from conduit.providers.registry import ProviderRecord, ProviderRegistry

logger = get_logger(__name__)


def select_provider(
    execution: Execution, candidates: list[ProviderRecord]
) -> ProviderRecord | None:
    """Choose a provider for *execution* among *candidates*.

    The caller's preference wins when it is a capable candidate; otherwise
    the capable candidate with the fewest in-flight executions, ties broken
    by name.
    """
    capable = [r for r in candidates if r.supports(execution.pipeline_type)]
    if not capable:
        return None
    if execution.provider_preference:
        for record in capable:
            if record.name == execution.provider_preference:
                return record
    return min(capable, key=lambda r: (r.in_flight, r.name))


def build_config(execution: Execution) -> ExecutionConfig:
    return ExecutionConfig(
        execution_id=execution.id,
        repository=execution.repository,
        branch=execution.branch,
        environment=execution.environment,
        pipeline_type=execution.pipeline_type,
        parameters=dict(execution.parameters),
        stages=tuple(s.name for s in execution.stages),
        config=dict(execution.pipeline_config),
        priority=execution.priority,
    )


class Dispatcher:
    """Pulls from the dispatch queue and hands executions to providers."""

    def __init__(
        self,
        queue: DispatchQueue,
        registry: ProviderRegistry,
        tracker: ExecutionTracker,
        *,
        retry: ExponentialBackoff | None = None,
        call_timeout: float = 30.0,
        idle_wait: float = 1.0,
    ) -> None:
        self.queue = queue
        self.registry = registry
        self.tracker = tracker
        self.retry = retry or ExponentialBackoff()
        self.call_timeout = call_timeout
        self.idle_wait = idle_wait
        self._wake = asyncio.Event()
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._loop_task: asyncio.Task[None] | None = None
        self._running = False

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    def wake(self) -> None:
        self._wake.set()

    def run_cycle(self) -> list[asyncio.Task[None]]:
        """Dispatch everything currently dispatchable. Returns the spawned tasks."""
        spawned: list[asyncio.Task[None]] = []
        while True:
            candidates = self.registry.candidates()
            if not candidates:
                break
            entry = self.queue.dequeue_entry(
                lambda e: any(r.supports(e.pipeline_type) for r in candidates)
            )
            if entry is None:
                break
            execution = entry.execution
            record = select_provider(execution, candidates)
            if record is None or not self.registry.reserve(record.name):
                logger.warning(
                    "dispatch_slot_lost",
                    execution_id=execution.id,
                    provider=record.name if record else None,
                )
                self.queue.requeue(entry)
                break
            logger.info(
                "execution_dispatching",
                execution_id=execution.id,
                provider=record.name,
                priority=execution.priority,
                preferred=execution.provider_preference == record.name,
            )
            task = asyncio.create_task(
                self._dispatch(entry, record), name=f"dispatch:{execution.id}"
            )
            self._tasks[execution.id] = task
            task.add_done_callback(lambda _t, eid=execution.id: self._tasks.pop(eid, None))
            spawned.append(task)
        return spawned

    async def drain(self) -> None:
        """Wait for every in-flight dispatch task to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    # ------------------------------------------------------------------
    # Single dispatch
    # ------------------------------------------------------------------

    async def _submit(self, record: ProviderRecord, config: ExecutionConfig) -> str:
        return await call_with_timeout(
            record.adapter.submit(config),
            self.call_timeout,
            operation="submit",
            provider=record.name,
        )

    def _on_retry(self, execution: Execution, provider: str) -> Callable[[int, Exception, float], None]:
        def log_retry(attempt: int, error: Exception, delay: float) -> None:
            execution.dispatch_attempts = attempt
            logger.warning(
                "dispatch_retry",
                execution_id=execution.id,
                provider=provider,
                attempt=attempt,
                delay=round(delay, 3),
                error=str(error),
            )

        return log_retry

    async def _dispatch(self, entry: QueueEntry, record: ProviderRecord) -> None:
        execution = entry.execution
        ctx = RetryContext(
            self.retry,
            on_retry=self._on_retry(execution, record.name),
            abort_if=lambda: execution.cancel_requested,
        )
        try:
            provider_ref = await ctx.run_async(self._submit, record, build_config(execution))
        except asyncio.CancelledError:
            self.registry.release(record.name)
            self.registry.record_dispatch(record.name, success=None)
            if execution.state is ExecutionState.QUEUED and not execution.cancel_requested:
                self.queue.requeue(entry)
                logger.warning("dispatch_interrupted_requeued", execution_id=execution.id)
            raise
        except RetryAborted as exc:
            # stop_execution already moved the execution to cancelled
            execution.dispatch_attempts = exc.attempts
            self.registry.release(record.name)
            self.registry.record_dispatch(record.name, success=None)
            logger.info(
                "dispatch_aborted_on_cancel",
                execution_id=execution.id,
                provider=record.name,
                attempts=exc.attempts,
            )
            self.tracker.track(execution)
            self.tracker.mark_dirty(execution)
            self.tracker.flush_one(execution.id)
            return
        except Exception as exc:
            execution.dispatch_attempts = ctx.attempts
            self.registry.release(record.name)
            self.registry.record_dispatch(
                record.name,
                success=False if isinstance(exc, ProviderError) else None,
                error=exc,
            )
            self._dispatch_failed(execution, record, exc, ctx.attempts)
            return

        self.registry.record_dispatch(record.name, success=True)
        execution.dispatch_attempts = ctx.attempts
        execution.assign_provider(record.name, provider_ref)

        if execution.is_terminal:
            # cancelled while submit() was in flight
            self.registry.release(record.name)
            self.tracker.track(execution)
            self.tracker.mark_dirty(execution)
            await self._cancel_on_provider(execution, record)
            self.tracker.flush_one(execution.id)
            return

        self.tracker.transition(execution, ExecutionEvent.ACCEPTED)
        if execution.cancel_requested:
            self.tracker.transition(execution, ExecutionEvent.CANCEL)
            await self._cancel_on_provider(execution, record)
        self.tracker.flush_one(execution.id)

    def _dispatch_failed(
        self, execution: Execution, record: ProviderRecord, error: Exception, attempts: int
    ) -> None:
        if execution.is_terminal:
            logger.info(
                "dispatch_failed_after_cancel", execution_id=execution.id, error=str(error)
            )
            self.tracker.track(execution)
            self.tracker.mark_dirty(execution)
            self.tracker.flush_one(execution.id)
            return
        message = f"Dispatch to '{record.name}' failed after {attempts} attempt(s): {error}"
        context = {"attempts": attempts}
        reason: ConduitError
        if isinstance(error, ProviderRejected):
            category = FailureCategory.PROVIDER_REJECTED
            reason = ProviderRejected(message, provider=record.name, context=context, cause=error)
        elif isinstance(error, ProviderError):
            category = FailureCategory.PROVIDER_TIMEOUT
            reason = ProviderUnreachable(message, provider=record.name, context=context, cause=error)
        else:
            category = FailureCategory.INTERNAL_ERROR
            reason = InternalError(message, context=context, cause=error)
            logger.error(
                "dispatch_unexpected_error",
                execution_id=execution.id,
                provider=record.name,
                error_type=type(error).__name__,
                error=str(error),
            )
        try:
            self.tracker.fail(execution, ExecutionEvent.DISPATCH_EXHAUSTED, category, reason)
        except InvalidTransitionError:
            return
        self.tracker.flush_one(execution.id)

    async def _cancel_on_provider(self, execution: Execution, record: ProviderRecord) -> None:
        try:
            ack = await call_with_timeout(
                record.adapter.cancel(execution.provider_ref or ""),
                self.call_timeout,
                operation="cancel",
                provider=record.name,
            )
        except ProviderError as exc:
            logger.warning("provider_cancel_failed", execution_id=execution.id, error=str(exc))
            return
        logger.info(
            "provider_cancel_acknowledged",
            execution_id=execution.id,
            provider=record.name,
            accepted=ack.accepted,
            message=ack.message,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self.registry.add_listener(self.wake)
        self._loop_task = asyncio.create_task(self._run(), name="dispatcher")
        logger.info("dispatcher_started", idle_wait=self.idle_wait)

    async def stop(self) -> None:
        """Stop the loop and cancel in-flight dispatch tasks."""
        self._running = False
        self.registry.remove_listener(self.wake)
        if self._loop_task is not None:
            self._loop_task.cancel()
            await asyncio.gather(self._loop_task, return_exceptions=True)
            self._loop_task = None
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("dispatcher_stopped", cancelled_dispatches=len(tasks), queued=len(self.queue))

    async def _run(self) -> None:
        while self._running:
            self._wake.clear()
            if not self.run_cycle():
                try:
                    await asyncio.wait_for(self._wake.wait(), timeout=self.idle_wait)
                except TimeoutError:
                    pass
            else:
                await asyncio.sleep(0)
