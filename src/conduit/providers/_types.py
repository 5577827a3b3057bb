"""Provider adapter types and protocol.

This module defines the contract every CI/CD backend adapter implements and
the value types exchanged across it:

- ProviderAdapter: Protocol for submitting and tracking pipeline runs
- ExecutionConfig: What the orchestrator hands to ``submit()``
- ProviderCapabilities: Pipeline types a provider can run (cached at registration)
- ProviderStatus / StageReport: Provider's view of a run
- CancelAck: Explicit cancel outcome
- ProviderHealth: Health probe result

Architecture:

    .. code-block:: text

        ProviderAdapter Protocol: 5 Methods
        ┌──────────────────────────────────────────────────────────────┐
        │  submit(config) → provider_ref       Start a pipeline run    │
        │  fetch_status(ref) → ProviderStatus  Poll (idempotent)       │
        │  cancel(ref) → CancelAck             Best-effort stop        │
        │  health_check() → ProviderHealth     Reachability probe      │
        │  capabilities() → Capabilities       Static, cached once     │
        └──────────────────────────────────────────────────────────────┘

    .. mermaid::

        sequenceDiagram
            participant D as Dispatcher
            participant T as Tracker
            participant A as ProviderAdapter
            D->>A: submit(config)
            A-->>D: provider_ref
            loop until terminal
                T->>A: fetch_status(ref)
                A-->>T: ProviderStatus
            end
            alt Stop requested
                T->>A: cancel(ref)
                A-->>T: CancelAck
            end

Errors:
    ``submit`` raises ``ProviderRejected`` (capacity, invalid config) or
    ``ProviderUnreachable`` (network, timeout). ``fetch_status`` raises
    ``ProviderJobNotFound`` when the provider no longer knows the run.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from conduit.execution.models import StageState


def _utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Submission
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ExecutionConfig:
    """Concrete pipeline configuration handed to ``submit()``.

    ``stages`` lists the stage names the pipeline declares, in order; the
    provider remains the authority on the stages it actually reports.
    """

    execution_id: str
    repository: str
    branch: str
    environment: str
    pipeline_type: str
    parameters: dict[str, Any] = field(default_factory=dict)
    stages: tuple[str, ...] = ()
    config: dict[str, Any] = field(default_factory=dict)
    priority: int = 5

    def to_dict(self) -> dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "repository": self.repository,
            "branch": self.branch,
            "environment": self.environment,
            "pipeline_type": self.pipeline_type,
            "parameters": dict(self.parameters),
            "stages": list(self.stages),
            "config": dict(self.config),
            "priority": self.priority,
        }


# ---------------------------------------------------------------------------
# Capabilities / health
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ProviderCapabilities:
    """Static capability declaration, queried once at registration.

    Example:
        >>> caps = ProviderCapabilities(pipeline_types=frozenset({"full_cicd", "build_only"}))
        >>> caps.supports("build_only")
        True
    """

    pipeline_types: frozenset[str] = frozenset()
    supports_cancel: bool = True
    supports_parallel_stages: bool = False

    def supports(self, pipeline_type: str) -> bool:
        return pipeline_type in self.pipeline_types

    def to_dict(self) -> dict[str, Any]:
        return {
            "pipeline_types": sorted(self.pipeline_types),
            "supports_cancel": self.supports_cancel,
            "supports_parallel_stages": self.supports_parallel_stages,
        }


@dataclass(frozen=True)
class ProviderHealth:
    """Result of a provider health probe."""

    healthy: bool
    details: dict[str, Any] = field(default_factory=dict)
    message: str | None = None
    latency_ms: float | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"healthy": self.healthy}
        if self.details:
            d["details"] = dict(self.details)
        if self.message:
            d["message"] = self.message
        if self.latency_ms is not None:
            d["latency_ms"] = self.latency_ms
        return d


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------

class ProviderRunState(str, Enum):
    """Overall run state as reported by a provider."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"

    @property
    def is_terminal(self) -> bool:
        return self in (
            ProviderRunState.COMPLETED,
            ProviderRunState.FAILED,
            ProviderRunState.CANCELLED,
        )


@dataclass(frozen=True)
class StageReport:
    """One stage as seen by the provider."""

    name: str
    state: StageState
    order: int
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "order": self.order,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


@dataclass(frozen=True)
class ProviderStatus:
    """Provider's view of a run: ordered stages plus an overall state.

    ``message`` carries the provider's diagnostic verbatim (used as the
    failure reason when ``overall_state`` is ``failed``).
    """

    overall_state: ProviderRunState
    stages: tuple[StageReport, ...] = ()
    message: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.overall_state.is_terminal

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "overall_state": self.overall_state.value,
            "stages": [s.to_dict() for s in self.stages],
        }
        if self.message:
            d["message"] = self.message
        return d


@dataclass(frozen=True)
class CancelAck:
    """Outcome of ``cancel()``. ``accepted=False`` must carry a reason."""

    accepted: bool
    message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"accepted": self.accepted, "message": self.message}


# ---------------------------------------------------------------------------
# Redaction
# ---------------------------------------------------------------------------

_SENSITIVE_KEY_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"(?i)(password|secret|token|key|credential|auth)"),
]

_REDACTED = "***REDACTED***"


def redact_connection(params: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of connection parameters with secrets masked.

    Example:
        >>> redact_connection({"url": "https://ci", "api_token": "abc"})
        {'url': 'https://ci', 'api_token': '***REDACTED***'}
    """
    redacted: dict[str, Any] = {}
    for key, value in params.items():
        if isinstance(value, dict):
            redacted[key] = redact_connection(value)
        elif any(p.search(str(key)) for p in _SENSITIVE_KEY_PATTERNS):
            redacted[key] = _REDACTED
        else:
            redacted[key] = value
    return redacted


# ---------------------------------------------------------------------------
# ProviderAdapter: the core protocol
# ---------------------------------------------------------------------------

@runtime_checkable
class ProviderAdapter(Protocol):
    """Protocol for CI/CD provider adapters.

    Every backend (Jenkins, GitLab CI, GitHub Actions, ...) implements these
    methods. The orchestrator never branches on provider names; it talks to
    adapters exclusively through this protocol.

    All I/O methods are async. The orchestrator bounds every call with a
    timeout, so an adapter need not enforce its own.
    """

    @property
    def provider_type(self) -> str:
        """Backend type (e.g. 'jenkins', 'gitlab')."""
        ...

    def capabilities(self) -> ProviderCapabilities:
        """Static capability declaration."""
        ...

    async def submit(self, config: ExecutionConfig) -> str:
        """Start a run. Returns the provider's execution reference."""
        ...

    async def fetch_status(self, provider_ref: str) -> ProviderStatus:
        """Current view of the run. Idempotent and monotonic."""
        ...

    async def cancel(self, provider_ref: str) -> CancelAck:
        """Best-effort cancel; must report when it cannot cancel."""
        ...

    async def health_check(self) -> ProviderHealth:
        """Reachability probe."""
        ...
