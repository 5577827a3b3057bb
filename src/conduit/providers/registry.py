"""Provider registry: configured adapters plus their live state.

The ``ProviderRegistry`` keys adapters by a unique registration name and
keeps, per provider, the cached capabilities, health (with hysteresis),
connection state, counters and in-flight slots. The dispatcher reads
``candidates()``; the health monitor writes ``record_health()``.

Architecture:

    .. code-block:: text

        ProviderRegistry
        ┌──────────────────────────────────────────────────────────────┐
        │  Registry                                                    │
        │  register(adapter, name=…)  → caches adapter.capabilities()  │
        │  unregister(name) / get(name) / require(name)                │
        │  list_providers() / names()                                  │
        │  enable(name) / disable(name)                                │
        │                                                              │
        │  Selection inputs                                            │
        │  candidates()            → enabled ∧ healthy ∧ connected     │
        │                            ∧ circuit not open                │
        │                            ∧ in_flight < max_concurrent      │
        │  declares(pipeline_type) → any provider, healthy or not      │
        │                                                              │
        │  Live state                                                  │
        │  record_health(name, health, reachable)  (hysteresis)        │
        │  reserve(name) / release(name)           (in-flight slots)   │
        │  record_dispatch(name, success)          (circuit breaker)   │
        │  record_accepted / record_outcome        (counters)          │
        │                                                              │
        │  Listeners                                                   │
        │  add_listener(fn) → fn() after any availability change       │
        └──────────────────────────────────────────────────────────────┘

    Health hysteresis::

        healthy ──(N consecutive failures)──> unhealthy
        unhealthy ──(1 success)──> healthy

        connection: disconnected when the provider is unreachable at the
        failure threshold; connected again after any completed probe.

Example:
    >>> registry = ProviderRegistry()
    >>> registry.register(StubProviderAdapter(provider_type="jenkins"), name="jenkins-main")
    >>> [r.name for r in registry.candidates()]
    ['jenkins-main']
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from conduit.core.errors import ProviderNotFound, ValidationError
from conduit.core.logging import get_logger
from conduit.execution.circuit_breaker import CircuitBreaker, CircuitState
from conduit.providers._types import (
    ProviderAdapter,
    ProviderCapabilities,
    ProviderHealth,
    _utcnow,
    redact_connection,
)

logger = get_logger(__name__)


class HealthState(str, Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


class ConnectionState(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


@dataclass
class ProviderRecord:
    """Registration plus live state for one provider."""

    name: str
    provider_type: str
    adapter: ProviderAdapter
    capabilities: ProviderCapabilities
    connection_params: dict[str, Any] = field(default_factory=dict)
    max_concurrent: int | None = None
    enabled: bool = True
    metadata: dict[str, Any] = field(default_factory=dict)
    health: HealthState = HealthState.HEALTHY
    connection: ConnectionState = ConnectionState.CONNECTED
    last_checked: datetime | None = None
    last_error: str | None = None
    consecutive_failures: int = 0
    total: int = 0
    successful: int = 0
    failed: int = 0
    in_flight: int = 0
    registered_at: datetime = field(default_factory=_utcnow)
    breaker: CircuitBreaker = field(default_factory=CircuitBreaker)

    @property
    def has_capacity(self) -> bool:
        return self.max_concurrent is None or self.in_flight < self.max_concurrent

    @property
    def is_available(self) -> bool:
        return (
            self.enabled
            and self.health is HealthState.HEALTHY
            and self.connection is ConnectionState.CONNECTED
            and self.has_capacity
            and self.breaker.available
        )

    def supports(self, pipeline_type: str) -> bool:
        return self.capabilities.supports(pipeline_type)

    def summary(self) -> ProviderSummary:
        return ProviderSummary(
            name=self.name,
            provider_type=self.provider_type,
            capabilities=sorted(self.capabilities.pipeline_types),
            health=self.health,
            connection=self.connection,
            enabled=self.enabled,
            last_checked=self.last_checked,
            last_error=self.last_error,
            consecutive_failures=self.consecutive_failures,
            total=self.total,
            successful=self.successful,
            failed=self.failed,
            in_flight=self.in_flight,
            max_concurrent=self.max_concurrent,
            connection_params=redact_connection(self.connection_params),
            metadata=dict(self.metadata),
            circuit=self.breaker.state,
        )


@dataclass(frozen=True)
class ProviderSummary:
    """Caller-facing view of a provider; connection secrets are redacted."""

    name: str
    provider_type: str
    capabilities: list[str]
    health: HealthState
    connection: ConnectionState
    enabled: bool
    last_checked: datetime | None
    last_error: str | None
    consecutive_failures: int
    total: int
    successful: int
    failed: int
    in_flight: int
    max_concurrent: int | None
    connection_params: dict[str, Any]
    metadata: dict[str, Any]
    circuit: CircuitState = CircuitState.CLOSED

    @property
    def success_rate(self) -> float | None:
        finished = self.successful + self.failed
        return self.successful / finished if finished else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "provider_type": self.provider_type,
            "capabilities": list(self.capabilities),
            "health": self.health.value,
            "connection": self.connection.value,
            "enabled": self.enabled,
            "last_checked": self.last_checked.isoformat() if self.last_checked else None,
            "last_error": self.last_error,
            "consecutive_failures": self.consecutive_failures,
            "total": self.total,
            "successful": self.successful,
            "failed": self.failed,
            "in_flight": self.in_flight,
            "max_concurrent": self.max_concurrent,
            "success_rate": self.success_rate,
            "connection_params": self.connection_params,
            "metadata": self.metadata,
            "circuit": self.circuit.value,
        }


@dataclass(frozen=True)
class HealthResult:
    """Outcome of one health probe after hysteresis was applied."""

    provider: str
    healthy: bool
    health: HealthState
    connection: ConnectionState
    checked_at: datetime
    consecutive_failures: int
    changed: bool = False
    message: str | None = None
    latency_ms: float | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "healthy": self.healthy,
            "health": self.health.value,
            "connection": self.connection.value,
            "checked_at": self.checked_at.isoformat(),
            "consecutive_failures": self.consecutive_failures,
            "changed": self.changed,
            "message": self.message,
            "latency_ms": self.latency_ms,
            "details": dict(self.details),
        }


class ProviderRegistry:
    """Registry of provider adapters and their live state.

    All mutation happens under one lock, so request handlers, the dispatcher
    and the health monitor can share an instance.
    """

    def __init__(
        self,
        *,
        failure_threshold: int = 3,
        circuit_failure_threshold: int = 5,
        circuit_recovery_timeout: float = 60.0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        self.failure_threshold = failure_threshold
        self.circuit_failure_threshold = circuit_failure_threshold
        self.circuit_recovery_timeout = circuit_recovery_timeout
        self._clock = clock or _utcnow
        self._records: dict[str, ProviderRecord] = {}
        self._lock = threading.Lock()
        self._listeners: list[Callable[[], None]] = []

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def register(
        self,
        adapter: ProviderAdapter,
        *,
        name: str | None = None,
        connection: dict[str, Any] | None = None,
        max_concurrent: int | None = None,
        enabled: bool = True,
        metadata: dict[str, Any] | None = None,
        capabilities: ProviderCapabilities | None = None,
    ) -> ProviderRecord:
        """Register *adapter* under *name* (default: its ``provider_type``).

        Capabilities are queried once here and cached; pass ``capabilities``
        to override what the adapter declares.

        Raises:
            ValidationError: If the name is already registered or
                ``max_concurrent`` is not positive.
        """
        name = name or adapter.provider_type
        if max_concurrent is not None and max_concurrent < 1:
            raise ValidationError("max_concurrent must be >= 1", field="max_concurrent")
        caps = capabilities or adapter.capabilities()
        record = ProviderRecord(
            name=name,
            provider_type=adapter.provider_type,
            adapter=adapter,
            capabilities=caps,
            connection_params=dict(connection or {}),
            max_concurrent=max_concurrent,
            enabled=enabled,
            metadata=dict(metadata or {}),
            breaker=CircuitBreaker(
                name=name,
                failure_threshold=self.circuit_failure_threshold,
                recovery_timeout=self.circuit_recovery_timeout,
                clock=self._clock,
            ),
        )
        with self._lock:
            if name in self._records:
                raise ValidationError(f"Provider '{name}' is already registered", field="name")
            self._records[name] = record
        logger.info(
            "provider_registered",
            provider=name,
            provider_type=record.provider_type,
            pipeline_types=sorted(caps.pipeline_types),
            max_concurrent=max_concurrent,
            enabled=enabled,
        )
        self._notify()
        return record

    def unregister(self, name: str) -> bool:
        with self._lock:
            record = self._records.pop(name, None)
        if record is None:
            return False
        if record.in_flight:
            logger.warning("provider_unregistered_with_work", provider=name, in_flight=record.in_flight)
        logger.info("provider_unregistered", provider=name)
        return True

    def get(self, name: str) -> ProviderRecord | None:
        return self._records.get(name)

    def require(self, name: str) -> ProviderRecord:
        record = self._records.get(name)
        if record is None:
            raise ProviderNotFound(name, self.names())
        return record

    def names(self) -> list[str]:
        return sorted(self._records)

    def list_providers(self) -> list[ProviderRecord]:
        return [self._records[n] for n in self.names()]

    def enable(self, name: str) -> ProviderRecord:
        record = self.require(name)
        with self._lock:
            record.enabled = True
        logger.info("provider_enabled", provider=name)
        self._notify()
        return record

    def disable(self, name: str) -> ProviderRecord:
        """Stop dispatching to *name*. In-flight work is unaffected."""
        record = self.require(name)
        with self._lock:
            record.enabled = False
        logger.info("provider_disabled", provider=name, in_flight=record.in_flight)
        return record

    # ------------------------------------------------------------------
    # Selection inputs
    # ------------------------------------------------------------------

    def candidates(self) -> list[ProviderRecord]:
        """Providers currently eligible for new dispatches, sorted by name."""
        with self._lock:
            return [r for n, r in sorted(self._records.items()) if r.is_available]

    def declares(self, pipeline_type: str) -> bool:
        """Whether any registered provider (healthy or not) supports *pipeline_type*."""
        return any(r.supports(pipeline_type) for r in list(self._records.values()))

    # ------------------------------------------------------------------
    # Live state
    # ------------------------------------------------------------------

    def reserve(self, name: str) -> bool:
        """Take an in-flight slot on *name*.

        False if at capacity or the provider's circuit refuses the dispatch.
        A successful reserve must be followed by ``record_dispatch``.
        """
        record = self.require(name)
        with self._lock:
            if not record.has_capacity:
                return False
            if not record.breaker.allow_request():
                return False
            record.in_flight += 1
            return True

    def record_dispatch(
        self, name: str, *, success: bool | None, error: Exception | None = None
    ) -> None:
        """Feed a dispatch outcome into *name*'s circuit breaker.

        ``success=None`` means the dispatch ended without a verdict
        (cancelled or interrupted).
        """
        record = self._records.get(name)
        if record is None:
            return
        before = record.breaker.state
        if success is None:
            record.breaker.abandon()
        elif success:
            record.breaker.record_success()
        else:
            record.breaker.record_failure(error)
        if record.breaker.state is not before:
            self._notify()

    def reset_circuit(self, name: str) -> ProviderRecord:
        record = self.require(name)
        record.breaker.reset()
        self._notify()
        return record

    def release(self, name: str) -> None:
        """Give back an in-flight slot."""
        record = self._records.get(name)
        if record is None:
            return
        with self._lock:
            record.in_flight = max(0, record.in_flight - 1)
        self._notify()

    def record_accepted(self, name: str) -> None:
        record = self._records.get(name)
        if record is not None:
            with self._lock:
                record.total += 1

    def record_outcome(self, name: str, *, success: bool) -> None:
        record = self._records.get(name)
        if record is None:
            return
        with self._lock:
            if success:
                record.successful += 1
            else:
                record.failed += 1

    def record_health(
        self,
        name: str,
        health: ProviderHealth,
        *,
        reachable: bool = True,
    ) -> HealthResult:
        """Apply one probe result with hysteresis and return the outcome."""
        record = self.require(name)
        now = _utcnow()
        with self._lock:
            before = (record.health, record.connection)
            record.last_checked = now
            if health.healthy:
                record.consecutive_failures = 0
                record.last_error = None
                record.health = HealthState.HEALTHY
                record.connection = ConnectionState.CONNECTED
            else:
                record.consecutive_failures += 1
                record.last_error = health.message or "unhealthy"
                at_threshold = record.consecutive_failures >= self.failure_threshold
                if at_threshold:
                    record.health = HealthState.UNHEALTHY
                if reachable:
                    record.connection = ConnectionState.CONNECTED
                elif at_threshold:
                    record.connection = ConnectionState.DISCONNECTED
            after = (record.health, record.connection)
            result = HealthResult(
                provider=name,
                healthy=health.healthy,
                health=record.health,
                connection=record.connection,
                checked_at=now,
                consecutive_failures=record.consecutive_failures,
                changed=before != after,
                message=health.message,
                latency_ms=health.latency_ms,
                details=dict(health.details),
            )
        if result.changed:
            logger.warning(
                "provider_health_changed",
                provider=name,
                health=result.health.value,
                connection=result.connection.value,
                consecutive_failures=result.consecutive_failures,
                error=record.last_error,
            )
            self._notify()
        return result

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def add_listener(self, listener: Callable[[], None]) -> None:
        """Call *listener* whenever provider availability may have grown."""
        self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[], None]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener()

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, name: str) -> bool:
        return name in self._records

    def __repr__(self) -> str:
        return f"ProviderRegistry([{', '.join(self.names())}])"
