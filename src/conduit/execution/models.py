"""Execution data model and state machine.

An :class:`Execution` is one pipeline run tracked end-to-end. Its lifecycle
is driven by :class:`ExecutionEvent` values through a fixed transition table;
anything not in the table raises :class:`InvalidTransitionError`.

Architecture:

    .. code-block:: text

        Execution state machine
        ┌──────────┐  ACCEPTED   ┌──────────┐ STAGE_STARTED ┌─────────┐
        │  queued  │────────────>│ assigned │──────────────>│ running │
        └────┬─────┘             └────┬─────┘               └────┬────┘
             │ DISPATCH_EXHAUSTED     │ PROVIDER_FAILED          │ ALL_STAGES_COMPLETED
             │                        │ STALLED                  ▼
             ▼                        ▼                     ┌───────────┐
        ┌──────────┐<─────────────────┴──── PROVIDER_FAILED ─│ completed │
        │  failed  │                         STALLED        └───────────┘
        └──────────┘
        queued | assigned | running ──CANCEL──> cancelled

        completed, failed and cancelled are terminal: no event is accepted.

    .. mermaid::

        stateDiagram-v2
            [*] --> queued
            queued --> assigned: ACCEPTED
            queued --> failed: DISPATCH_EXHAUSTED
            assigned --> running: STAGE_STARTED
            running --> completed: ALL_STAGES_COMPLETED
            assigned --> failed: PROVIDER_FAILED / STALLED
            running --> failed: PROVIDER_FAILED / STALLED
            queued --> cancelled: CANCEL
            assigned --> cancelled: CANCEL
            running --> cancelled: CANCEL

Stage states only move forward: ``pending < running < completed|failed``.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from conduit.core.errors import InvalidTransitionError, InvariantViolation, ValidationError

DEFAULT_PRIORITY = 5
MIN_PRIORITY = 1
MAX_PRIORITY = 10
DEFAULT_BRANCH = "main"
DEFAULT_ENVIRONMENT = "development"
DEFAULT_PIPELINE_TYPE = "full_cicd"


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(UTC)


def new_execution_id() -> str:
    return f"exec_{uuid.uuid4().hex}"


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


# =============================================================================
# ENUMS
# =============================================================================


class ExecutionState(str, Enum):
    """Lifecycle state of an execution."""

    QUEUED = "queued"
    ASSIGNED = "assigned"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({
    ExecutionState.COMPLETED,
    ExecutionState.FAILED,
    ExecutionState.CANCELLED,
})

ACTIVE_STATES = frozenset({ExecutionState.ASSIGNED, ExecutionState.RUNNING})


class ExecutionEvent(str, Enum):
    """Events that drive the execution state machine."""

    ACCEPTED = "accepted"                          # submit() succeeded
    STAGE_STARTED = "stage_started"                # first stage reported running
    ALL_STAGES_COMPLETED = "all_stages_completed"  # provider reported success
    DISPATCH_EXHAUSTED = "dispatch_exhausted"      # submit() retry budget spent
    PROVIDER_FAILED = "provider_failed"            # provider reported failure
    STALLED = "stalled"                            # stall re-check found no job
    CANCEL = "cancel"                              # explicit stop request


EXECUTION_TRANSITIONS: dict[tuple[ExecutionState, ExecutionEvent], ExecutionState] = {
    (ExecutionState.QUEUED, ExecutionEvent.ACCEPTED): ExecutionState.ASSIGNED,
    (ExecutionState.QUEUED, ExecutionEvent.DISPATCH_EXHAUSTED): ExecutionState.FAILED,
    (ExecutionState.QUEUED, ExecutionEvent.CANCEL): ExecutionState.CANCELLED,
    (ExecutionState.ASSIGNED, ExecutionEvent.STAGE_STARTED): ExecutionState.RUNNING,
    (ExecutionState.ASSIGNED, ExecutionEvent.PROVIDER_FAILED): ExecutionState.FAILED,
    (ExecutionState.ASSIGNED, ExecutionEvent.STALLED): ExecutionState.FAILED,
    (ExecutionState.ASSIGNED, ExecutionEvent.CANCEL): ExecutionState.CANCELLED,
    (ExecutionState.RUNNING, ExecutionEvent.ALL_STAGES_COMPLETED): ExecutionState.COMPLETED,
    (ExecutionState.RUNNING, ExecutionEvent.PROVIDER_FAILED): ExecutionState.FAILED,
    (ExecutionState.RUNNING, ExecutionEvent.STALLED): ExecutionState.FAILED,
    (ExecutionState.RUNNING, ExecutionEvent.CANCEL): ExecutionState.CANCELLED,
}


def next_state(current: ExecutionState, event: ExecutionEvent) -> ExecutionState:
    """Return the state reached by applying *event* in *current*.

    Raises:
        InvalidTransitionError: If the (state, event) pair is not in
            ``EXECUTION_TRANSITIONS``.

    Example:
        >>> next_state(ExecutionState.QUEUED, ExecutionEvent.ACCEPTED)
        <ExecutionState.ASSIGNED: 'assigned'>
        >>> next_state(ExecutionState.COMPLETED, ExecutionEvent.STAGE_STARTED)
        InvalidTransitionError: Invalid ExecutionState transition: completed → stage_started
    """
    target = EXECUTION_TRANSITIONS.get((current, event))
    if target is None:
        raise InvalidTransitionError(current.value, event.value, "ExecutionState")
    return target


class StageState(str, Enum):
    """State of a single stage within a run."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def rank(self) -> int:
        return _STAGE_RANK[self]

    @property
    def is_final(self) -> bool:
        return self in (StageState.COMPLETED, StageState.FAILED)


_STAGE_RANK = {
    StageState.PENDING: 0,
    StageState.RUNNING: 1,
    StageState.COMPLETED: 2,
    StageState.FAILED: 2,
}


class FailureCategory(str, Enum):
    """Coarse reason an execution failed.

    Only ``provider-reported-failure`` means the pipeline itself failed; the
    rest mean the infrastructure could not run it.
    """

    PROVIDER_REJECTED = "provider-rejected"
    PROVIDER_TIMEOUT = "provider-timeout"
    PROVIDER_REPORTED_FAILURE = "provider-reported-failure"
    INTERNAL_ERROR = "internal-error"

    @property
    def pipeline_fault(self) -> bool:
        return self is FailureCategory.PROVIDER_REPORTED_FAILURE


# =============================================================================
# RECORDS
# =============================================================================


@dataclass(frozen=True)
class FailureReason:
    """Why an execution ended in ``failed``."""

    category: FailureCategory
    message: str
    detail: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "category": self.category.value,
            "message": self.message,
            "pipeline_fault": self.category.pipeline_fault,
        }
        if self.detail:
            d["detail"] = self.detail
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FailureReason:
        return cls(
            category=FailureCategory(data["category"]),
            message=data["message"],
            detail=data.get("detail"),
        )


@dataclass
class Stage:
    """One named, ordered phase of a run."""

    name: str
    order: int
    state: StageState = StageState.PENDING
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def advance(
        self,
        state: StageState,
        *,
        started_at: datetime | None = None,
        completed_at: datetime | None = None,
    ) -> bool:
        """Move forward to *state*. Returns False (no change) on regression.

        Once ``completed`` or ``failed`` the stage never changes again.
        """
        if self.state.is_final or state.rank <= self.state.rank:
            return False
        now = utcnow()
        if state is StageState.RUNNING or state.is_final:
            self.started_at = self.started_at or started_at or now
        if state.is_final:
            self.completed_at = completed_at or now
        self.state = state
        return True

    def copy(self) -> Stage:
        return Stage(self.name, self.order, self.state, self.started_at, self.completed_at)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "order": self.order,
            "state": self.state.value,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "duration_seconds": self.duration_seconds,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Stage:
        return cls(
            name=data["name"],
            order=int(data["order"]),
            state=StageState(data["state"]),
            started_at=_parse_dt(data.get("started_at")),
            completed_at=_parse_dt(data.get("completed_at")),
        )


@dataclass
class ExecutionRequest:
    """Caller input to ``Orchestrator.execute_pipeline``.

    Exactly one of ``pipeline_config`` or ``template_id`` must be given.
    ``pipeline_type`` falls back to the template's affinity, then
    ``full_cicd``.
    """

    repository: str
    branch: str = DEFAULT_BRANCH
    environment: str = DEFAULT_ENVIRONMENT
    pipeline_config: dict[str, Any] | None = None
    template_id: str | None = None
    parameters: dict[str, Any] = field(default_factory=dict)
    priority: int = DEFAULT_PRIORITY
    provider_preference: str | None = None
    pipeline_type: str | None = None

    def validate(self) -> None:
        """Raise :class:`ValidationError` on the first malformed field."""
        if not isinstance(self.repository, str) or not self.repository.strip():
            raise ValidationError("repository is required", field="repository")
        for name in ("branch", "environment"):
            value = getattr(self, name)
            if not isinstance(value, str) or not value.strip():
                raise ValidationError(f"{name} must be a non-empty string", field=name)
        if (self.pipeline_config is None) == (self.template_id is None):
            raise ValidationError(
                "exactly one of pipeline_config or template_id is required",
                field="pipeline_config",
            )
        if self.pipeline_config is not None and not isinstance(self.pipeline_config, dict):
            raise ValidationError("pipeline_config must be a mapping", field="pipeline_config")
        if not isinstance(self.parameters, dict):
            raise ValidationError("parameters must be a mapping", field="parameters")
        if (
            isinstance(self.priority, bool)
            or not isinstance(self.priority, int)
            or not MIN_PRIORITY <= self.priority <= MAX_PRIORITY
        ):
            raise ValidationError(
                f"priority must be an integer between {MIN_PRIORITY} and {MAX_PRIORITY}",
                field="priority",
            )
        if self.pipeline_type is not None and not str(self.pipeline_type).strip():
            raise ValidationError("pipeline_type must not be empty", field="pipeline_type")


@dataclass
class Execution:
    """One pipeline run, tracked end-to-end.

    Example:
        >>> execution = Execution.create(repository="git@example.com:app.git", priority=1)
        >>> execution.state
        <ExecutionState.QUEUED: 'queued'>
    """

    id: str
    repository: str
    branch: str = DEFAULT_BRANCH
    environment: str = DEFAULT_ENVIRONMENT
    parameters: dict[str, Any] = field(default_factory=dict)
    priority: int = DEFAULT_PRIORITY
    pipeline_type: str = DEFAULT_PIPELINE_TYPE
    pipeline_config: dict[str, Any] = field(default_factory=dict)
    template_id: str | None = None
    provider_preference: str | None = None
    provider: str | None = None
    provider_ref: str | None = None
    state: ExecutionState = ExecutionState.QUEUED
    created_at: datetime = field(default_factory=utcnow)
    queued_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    last_progress_at: datetime | None = None
    stages: list[Stage] = field(default_factory=list)
    failure: FailureReason | None = None
    dispatch_attempts: int = 0
    cancel_requested: bool = False
    warning: str | None = None
    owner: str | None = None

    @classmethod
    def create(
        cls,
        repository: str,
        *,
        branch: str = DEFAULT_BRANCH,
        environment: str = DEFAULT_ENVIRONMENT,
        parameters: dict[str, Any] | None = None,
        priority: int = DEFAULT_PRIORITY,
        pipeline_type: str = DEFAULT_PIPELINE_TYPE,
        pipeline_config: dict[str, Any] | None = None,
        template_id: str | None = None,
        provider_preference: str | None = None,
        owner: str | None = None,
    ) -> Execution:
        """Create a new execution in ``queued``."""
        now = utcnow()
        return cls(
            id=new_execution_id(),
            repository=repository,
            branch=branch,
            environment=environment,
            parameters=dict(parameters or {}),
            priority=priority,
            pipeline_type=pipeline_type,
            pipeline_config=dict(pipeline_config or {}),
            template_id=template_id,
            provider_preference=provider_preference,
            created_at=now,
            queued_at=now,
            owner=owner,
        )

    # ── State machine ────────────────────────────────────────────

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def apply(self, event: ExecutionEvent, at: datetime | None = None) -> ExecutionState:
        """Apply *event*, stamping timestamps for the state reached."""
        target = next_state(self.state, event)
        now = at or utcnow()
        self.state = target
        if target is ExecutionState.ASSIGNED:
            self.last_progress_at = now
        elif target is ExecutionState.RUNNING:
            self.started_at = self.started_at or now
            self.last_progress_at = now
        elif target.is_terminal:
            self.completed_at = now
        return target

    def assign_provider(self, provider: str, provider_ref: str) -> None:
        """Record the provider chosen at dispatch. Set once per lifetime."""
        if self.provider is not None:
            raise InvariantViolation(
                f"Execution {self.id} already assigned to '{self.provider}'",
                context={"execution_id": self.id, "provider": provider},
            )
        self.provider = provider
        self.provider_ref = provider_ref

    # ── Stages ───────────────────────────────────────────────────

    def stage(self, name: str) -> Stage | None:
        for stage in self.stages:
            if stage.name == name:
                return stage
        return None

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    # ── Serialization ────────────────────────────────────────────

    def state_fields(self) -> dict[str, Any]:
        """Mutable fields written by ``ExecutionStore.update_state``."""
        return {
            "provider": self.provider,
            "provider_ref": self.provider_ref,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "last_progress_at": _iso(self.last_progress_at),
            "failure": self.failure.to_dict() if self.failure else None,
            "dispatch_attempts": self.dispatch_attempts,
            "cancel_requested": self.cancel_requested,
            "warning": self.warning,
        }

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        d = {
            "id": self.id,
            "repository": self.repository,
            "branch": self.branch,
            "environment": self.environment,
            "parameters": self.parameters,
            "priority": self.priority,
            "pipeline_type": self.pipeline_type,
            "pipeline_config": self.pipeline_config,
            "template_id": self.template_id,
            "provider_preference": self.provider_preference,
            "state": self.state.value,
            "created_at": _iso(self.created_at),
            "queued_at": _iso(self.queued_at),
            "stages": [s.to_dict() for s in self.stages],
            "owner": self.owner,
            "duration_seconds": self.duration_seconds,
        }
        d.update(self.state_fields())
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Execution:
        failure = data.get("failure")
        return cls(
            id=data["id"],
            repository=data["repository"],
            branch=data.get("branch", DEFAULT_BRANCH),
            environment=data.get("environment", DEFAULT_ENVIRONMENT),
            parameters=dict(data.get("parameters") or {}),
            priority=int(data.get("priority", DEFAULT_PRIORITY)),
            pipeline_type=data.get("pipeline_type", DEFAULT_PIPELINE_TYPE),
            pipeline_config=dict(data.get("pipeline_config") or {}),
            template_id=data.get("template_id"),
            provider_preference=data.get("provider_preference"),
            provider=data.get("provider"),
            provider_ref=data.get("provider_ref"),
            state=ExecutionState(data["state"]),
            created_at=_parse_dt(data.get("created_at")) or utcnow(),
            queued_at=_parse_dt(data.get("queued_at")),
            started_at=_parse_dt(data.get("started_at")),
            completed_at=_parse_dt(data.get("completed_at")),
            last_progress_at=_parse_dt(data.get("last_progress_at")),
            stages=[Stage.from_dict(s) for s in data.get("stages") or []],
            failure=FailureReason.from_dict(failure) if failure else None,
            dispatch_attempts=int(data.get("dispatch_attempts") or 0),
            cancel_requested=bool(data.get("cancel_requested")),
            warning=data.get("warning"),
            owner=data.get("owner"),
        )

    def snapshot(self) -> Execution:
        """Deep copy, detached from the live working-set object."""
        return Execution.from_dict(self.to_dict())


# =============================================================================
# CALLER-FACING RESULTS
# =============================================================================


@dataclass(frozen=True)
class ExecutionReceipt:
    """Returned by ``execute_pipeline``."""

    execution_id: str
    state: ExecutionState
    warning: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"execution_id": self.execution_id, "state": self.state.value}
        if self.warning:
            d["warning"] = self.warning
        return d


@dataclass(frozen=True)
class StopAck:
    """Returned by ``stop_execution``.

    ``provider_ack`` is ``None`` when no provider call was needed (queued
    work) and ``False`` when the provider could not cancel.
    """

    execution_id: str
    state: ExecutionState
    stopped: bool
    provider_ack: bool | None = None
    message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "state": self.state.value,
            "stopped": self.stopped,
            "provider_ack": self.provider_ack,
            "message": self.message,
        }


@dataclass(frozen=True)
class ExecutionFilter:
    """Filters for ``list_executions``; ``None`` means "any"."""

    state: ExecutionState | None = None
    provider: str | None = None
    template_id: str | None = None
    repository: str | None = None
    environment: str | None = None
    since: datetime | None = None
    until: datetime | None = None

    def matches(self, execution: Execution) -> bool:
        if self.state is not None and execution.state is not self.state:
            return False
        for name in ("provider", "template_id", "repository", "environment"):
            wanted = getattr(self, name)
            if wanted is not None and getattr(execution, name) != wanted:
                return False
        if self.since is not None and execution.created_at < self.since:
            return False
        if self.until is not None and execution.created_at >= self.until:
            return False
        return True


@dataclass(frozen=True)
class Pagination:
    limit: int = 50
    offset: int = 0

    def __post_init__(self) -> None:
        if self.limit < 1:
            raise ValidationError("limit must be >= 1", field="limit")
        if self.offset < 0:
            raise ValidationError("offset must be >= 0", field="offset")


@dataclass(frozen=True)
class Page:
    """One page of results plus the unpaginated total."""

    items: list[Execution]
    total: int
    limit: int = 50
    offset: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "items": [e.to_dict() for e in self.items],
            "total": self.total,
            "limit": self.limit,
            "offset": self.offset,
        }
