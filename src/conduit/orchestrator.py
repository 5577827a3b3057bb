"""Orchestrator facade: the caller-facing operation surface.

The orchestrator is an explicitly constructed object that owns one of each
component. There is no module-level instance; the CLI entry point or a
test builds it, starts it and shuts it down.

Architecture:

    .. code-block:: text

        Orchestrator
        ├── TemplateCatalog / TemplateResolver   request path (pure)
        ├── ExecutionStore                       durable records
        ├── DispatchQueue                        queued executions
        ├── ProviderRegistry                     adapters + live state
        ├── HealthMonitor         (task group)   probes → registry
        ├── Dispatcher            (loop task)    queue → provider.submit
        ├── ExecutionTracker      (poll task)    status → state machine → store
        └── StatisticsAggregator                 store aggregates

        execute_pipeline(request)
            validate → resolve template → create in store (queued)
            → working set → enqueue → wake dispatcher

    .. mermaid::

        sequenceDiagram
            participant C as Caller
            participant O as Orchestrator
            participant S as Store
            participant D as Dispatcher
            participant P as Provider
            C->>O: execute_pipeline(request)
            O->>S: create_execution (queued)
            O->>D: enqueue + wake
            D->>P: submit(config)
            P-->>D: provider_ref
            D->>S: update_state (assigned)
            loop poll_interval
                O->>P: fetch_status(ref)
                O->>S: append_stage / update_state
            end

Example:
    >>> orchestrator = Orchestrator(OrchestratorSettings())
    >>> orchestrator.register_provider(StubProviderAdapter(provider_type="jenkins"))
    >>> await orchestrator.start()
    >>> receipt = orchestrator.execute_pipeline(
    ...     ExecutionRequest(repository="git@example.com:app.git", template_id="nodejs-basic",
    ...                      parameters={"language": "typescript"}))
    >>> await orchestrator.shutdown()
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from typing import Any

from conduit.core.config import OrchestratorConfig
from conduit.core.errors import ExecutionNotFound, NoCapableProvider, ProviderError, ValidationError
from conduit.core.logging import LogContext, get_logger
from conduit.core.settings import OrchestratorSettings
from conduit.execution.circuit_breaker import CircuitState
from conduit.execution.dispatcher import Dispatcher
from conduit.execution.models import (
    DEFAULT_PIPELINE_TYPE,
    Execution,
    ExecutionEvent,
    ExecutionFilter,
    ExecutionReceipt,
    ExecutionRequest,
    ExecutionState,
    Page,
    Pagination,
    Stage,
    StopAck,
)
from conduit.execution.queue import DispatchQueue
from conduit.execution.retry import ExponentialBackoff, call_with_timeout
from conduit.execution.statistics import DEFAULT_TIME_RANGE, Statistics, StatisticsAggregator
from conduit.execution.store import ExecutionStore, open_store
from conduit.execution.tracker import ExecutionTracker
from conduit.providers._base import DEFAULT_STAGES
from conduit.providers._types import ProviderAdapter, ProviderStatus
from conduit.providers.factory import register_from_config
from conduit.providers.health import HealthMonitor
from conduit.providers.registry import HealthResult, ProviderRecord, ProviderRegistry, ProviderSummary
from conduit.templates.builtin import builtin_catalog
from conduit.templates.catalog import TemplateCatalog
from conduit.templates.resolver import TemplateResolver

logger = get_logger(__name__)


class Orchestrator:
    """Accepts pipeline requests and drives them to a terminal state."""

    def __init__(
        self,
        settings: OrchestratorSettings | None = None,
        *,
        store: ExecutionStore | None = None,
        catalog: TemplateCatalog | None = None,
        registry: ProviderRegistry | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.settings = settings or OrchestratorSettings()
        s = self.settings
        self.store = store if store is not None else open_store(s.store_path)
        self.catalog = catalog if catalog is not None else builtin_catalog()
        self.resolver = TemplateResolver(self.catalog)
        self.registry = registry or ProviderRegistry(
            failure_threshold=s.health_failure_threshold,
            circuit_failure_threshold=s.circuit_failure_threshold,
            circuit_recovery_timeout=s.circuit_recovery_timeout,
            clock=clock,
        )
        self.queue = DispatchQueue()
        self.tracker = ExecutionTracker(
            self.registry,
            self.store,
            poll_interval=s.poll_interval,
            stall_threshold=s.stall_threshold,
            call_timeout=s.provider_call_timeout,
            clock=clock,
        )
        self.dispatcher = Dispatcher(
            self.queue,
            self.registry,
            self.tracker,
            retry=ExponentialBackoff(
                max_retries=s.dispatch_max_retries,
                base_delay=s.dispatch_backoff_base,
                max_delay=s.dispatch_backoff_max,
                multiplier=s.dispatch_backoff_multiplier,
                jitter=s.dispatch_backoff_jitter,
            ),
            call_timeout=s.provider_call_timeout,
            idle_wait=s.idle_wait,
        )
        self.health = HealthMonitor(
            self.registry,
            interval=s.health_interval,
            jitter=s.health_jitter,
            timeout=s.health_timeout,
            store=self.store,
        )
        self.statistics = StatisticsAggregator(self.store, template_usage=self.catalog.usage_counts)
        self._started = False

    @classmethod
    def from_config(
        cls,
        config: OrchestratorConfig,
        settings: OrchestratorSettings | None = None,
        **kwargs: Any,
    ) -> Orchestrator:
        """Build an orchestrator with the providers and templates in *config*."""
        catalog = builtin_catalog() if config.include_builtin_templates else TemplateCatalog()
        for template in config.templates:
            catalog.publish(template.to_template())
        orchestrator = cls(settings, catalog=catalog, **kwargs)
        register_from_config(orchestrator.registry, config)
        return orchestrator

    # ------------------------------------------------------------------
    # Executions
    # ------------------------------------------------------------------

    def execute_pipeline(self, request: ExecutionRequest) -> ExecutionReceipt:
        """Validate, resolve and enqueue a pipeline run.

        Validation and template errors are raised before anything is
        stored. A request whose pipeline type no provider declares is still
        queued, with a warning on the receipt.

        Raises:
            ValidationError: Malformed request.
            TemplateNotFound: Unknown or disabled template.
            ParameterValidationError: Parameters violate the template schema.
            StoreUnavailable: The execution could not be recorded.
        """
        request.validate()
        preference = request.provider_preference
        if request.template_id is not None:
            resolved = self.resolver.resolve(
                request.template_id, request.parameters, environment=request.environment
            )
            pipeline_type = request.pipeline_type or resolved.pipeline_type
            pipeline_config = dict(resolved.config)
            stage_names = resolved.stages
            parameters = resolved.parameters
            preference = preference or resolved.provider_hint
        else:
            pipeline_config = dict(request.pipeline_config or {})
            pipeline_type = (
                request.pipeline_type
                or pipeline_config.get("pipeline_type")
                or DEFAULT_PIPELINE_TYPE
            )
            stage_names = _stage_names(pipeline_config.get("stages"))
            parameters = dict(request.parameters)

        execution = Execution.create(
            request.repository,
            branch=request.branch,
            environment=request.environment,
            parameters=parameters,
            priority=request.priority,
            pipeline_type=str(pipeline_type),
            pipeline_config=pipeline_config,
            template_id=request.template_id,
            provider_preference=preference,
            owner=self.settings.instance_id,
        )
        execution.stages = [Stage(name=n, order=i) for i, n in enumerate(stage_names)]

        with LogContext(execution_id=execution.id):
            if not self.registry.declares(execution.pipeline_type):
                warning = NoCapableProvider(execution.pipeline_type)
                execution.warning = warning.message
                logger.warning("no_capable_provider", **warning.context)

            self.store.create_execution(execution)
            if request.template_id is not None:
                self.catalog.record_usage(request.template_id)
            self.tracker.track(execution)
            self.queue.enqueue(execution)
            self.dispatcher.wake()
            logger.info(
                "execution_queued",
                repository=execution.repository,
                priority=execution.priority,
                pipeline_type=execution.pipeline_type,
                template_id=execution.template_id,
                queue_depth=len(self.queue),
            )
        return ExecutionReceipt(execution.id, execution.state, execution.warning)

    def get_execution_status(self, execution_id: str) -> Execution:
        """Current record for *execution_id* (working set first, then store).

        Raises:
            ExecutionNotFound: Unknown id.
        """
        live = self.tracker.get(execution_id)
        if live is not None:
            return live.snapshot()
        stored = self.store.get_execution(execution_id)
        if stored is None:
            raise ExecutionNotFound(execution_id)
        return stored

    def list_executions(
        self,
        filter: ExecutionFilter | None = None,
        pagination: Pagination | None = None,
    ) -> Page:
        """Store page, with in-flight items replaced by their live state."""
        self.tracker.flush()
        page = self.store.list_executions(filter, pagination)
        items = []
        for item in page.items:
            live = self.tracker.get(item.id)
            items.append(live.snapshot() if live is not None else item)
        return Page(items=items, total=page.total, limit=page.limit, offset=page.offset)

    async def stop_execution(self, execution_id: str) -> StopAck:
        """Cancel an execution.

        Queued work is removed from the queue. Assigned or running work is
        marked ``cancelled`` and the provider is asked to cancel; the
        provider may still report a late result, which is discarded.

        Raises:
            ExecutionNotFound: Unknown id.
        """
        execution = self.tracker.get(execution_id)
        if execution is None:
            stored = self.get_execution_status(execution_id)
            message = (
                f"Execution already {stored.state.value}"
                if stored.is_terminal
                else f"Execution is owned by {stored.owner or 'another instance'}"
            )
            return StopAck(execution_id, stored.state, stopped=False, message=message)
        if execution.is_terminal:
            return StopAck(
                execution_id,
                execution.state,
                stopped=False,
                message=f"Execution already {execution.state.value}",
            )

        execution.cancel_requested = True
        with LogContext(execution_id=execution_id):
            if execution.state is ExecutionState.QUEUED:
                removed = self.queue.remove(execution_id)
                self.tracker.transition(execution, ExecutionEvent.CANCEL)
                self.tracker.flush_one(execution_id)
                message = "Removed from queue" if removed else "Cancelled while dispatch was in progress"
                return StopAck(execution_id, execution.state, stopped=True, message=message)

            self.tracker.transition(execution, ExecutionEvent.CANCEL)
            self.tracker.flush_one(execution_id)
            record = self.registry.get(execution.provider or "")
            if record is None:
                return StopAck(
                    execution_id,
                    execution.state,
                    stopped=True,
                    provider_ack=False,
                    message=f"Provider '{execution.provider}' is no longer registered",
                )
            try:
                ack = await call_with_timeout(
                    record.adapter.cancel(execution.provider_ref or ""),
                    self.settings.provider_call_timeout,
                    operation="cancel",
                    provider=record.name,
                )
            except ProviderError as exc:
                logger.warning("provider_cancel_failed", provider=record.name, error=str(exc))
                return StopAck(
                    execution_id, execution.state, stopped=True, provider_ack=False, message=exc.message
                )
            logger.info("execution_stopped", provider=record.name, provider_ack=ack.accepted)
            return StopAck(
                execution_id,
                execution.state,
                stopped=True,
                provider_ack=ack.accepted,
                message=ack.message,
            )

    def report_stage_update(self, execution_id: str, status: ProviderStatus) -> Execution:
        """Push input from a provider callback; same path as polling."""
        return self.tracker.apply_status(execution_id, status)

    # ------------------------------------------------------------------
    # Providers
    # ------------------------------------------------------------------

    def register_provider(
        self, adapter: ProviderAdapter, *, name: str | None = None, **kwargs: Any
    ) -> ProviderRecord:
        record = self.registry.register(adapter, name=name, **kwargs)
        self.health.track(record.name)
        return record

    def get_providers(self) -> list[ProviderSummary]:
        return [r.summary() for r in self.registry.list_providers()]

    async def check_providers_health(self) -> list[HealthResult]:
        return await self.health.check_all()

    def enable_provider(self, name: str) -> ProviderSummary:
        return self.registry.enable(name).summary()

    def disable_provider(self, name: str) -> ProviderSummary:
        return self.registry.disable(name).summary()

    def reset_provider_circuit(self, name: str) -> ProviderSummary:
        """Close *name*'s circuit breaker so dispatch resumes immediately."""
        return self.registry.reset_circuit(name).summary()

    # ------------------------------------------------------------------
    # Statistics / status
    # ------------------------------------------------------------------

    def get_statistics(self, time_range: str = DEFAULT_TIME_RANGE) -> Statistics:
        self.tracker.flush()
        return self.statistics.collect(time_range)

    def status(self) -> dict[str, Any]:
        """Point-in-time snapshot of queue, working set and providers."""
        providers = self.registry.list_providers()
        return {
            "instance_id": self.settings.instance_id,
            "running": self._started,
            "queued": len(self.queue),
            "active": len(self.tracker.active()),
            "dispatching": self.dispatcher.in_flight,
            "pending_writes": self.tracker.pending_writes,
            "providers": {
                "total": len(providers),
                "enabled": sum(1 for r in providers if r.enabled),
                "connected": sum(1 for r in providers if r.connection.value == "connected"),
                "healthy": sum(1 for r in providers if r.health.value == "healthy"),
            },
            "in_flight": {r.name: r.in_flight for r in providers},
            "open_circuits": sorted(
                r.name for r in providers if r.breaker.state is not CircuitState.CLOSED
            ),
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def tick(self) -> None:
        """Run one dispatch cycle to completion, then one poll cycle."""
        self.dispatcher.run_cycle()
        await self.dispatcher.drain()
        await self.tracker.poll_once()

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        self.health.start()
        self.dispatcher.start()
        self.tracker.start()
        logger.info(
            "orchestrator_started",
            instance_id=self.settings.instance_id,
            providers=self.registry.names(),
            templates=len(self.catalog),
        )

    async def shutdown(self) -> None:
        """Stop loops, cancel in-flight dispatches and flush pending writes."""
        if not self._started:
            self.tracker.flush()
            return
        self._started = False
        await self.dispatcher.stop()
        await self.health.stop()
        await self.tracker.stop()
        logger.info("orchestrator_stopped", queued=len(self.queue))

    async def __aenter__(self) -> Orchestrator:
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.shutdown()


def _stage_names(value: Any) -> tuple[str, ...]:
    if value is None:
        return DEFAULT_STAGES
    if not isinstance(value, list | tuple) or not all(isinstance(v, str) and v for v in value):
        raise ValidationError("pipeline_config.stages must be a list of stage names", field="pipeline_config")
    if not value:
        return DEFAULT_STAGES
    return tuple(value)
