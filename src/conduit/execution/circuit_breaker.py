"""Circuit breaker for provider dispatch.

Stops the dispatcher from feeding work to a provider whose submits keep
failing. Each registered provider owns one breaker; an exhausted dispatch
(every submit attempt failed) counts as one failure, an accepted submit as
one success.

States:
    CLOSED: Normal operation, dispatch allowed
    OPEN: Provider excluded from selection until ``recovery_timeout`` passes
    HALF_OPEN: A limited number of trial dispatches decide recovery

.. code-block:: text

    CLOSED ──(failure_threshold exhausted dispatches)──> OPEN
    OPEN ──(recovery_timeout elapsed)──> HALF_OPEN
    HALF_OPEN ──(success_threshold successes)──> CLOSED
    HALF_OPEN ──(any failure)──> OPEN

Example:
    >>> breaker = CircuitBreaker(name="jenkins", failure_threshold=5, recovery_timeout=60.0)
    >>> if breaker.allow_request():
    ...     try:
    ...         ref = await adapter.submit(config)
    ...         breaker.record_success()
    ...     except ProviderError as e:
    ...         breaker.record_failure(e)
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from conduit.core.logging import get_logger
from conduit.execution.models import utcnow

logger = get_logger(__name__)


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitStats:
    """Counters for monitoring one breaker."""

    successes: int = 0
    failures: int = 0
    rejected: int = 0
    state_changes: int = 0
    last_failure_time: datetime | None = None
    last_state_change: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "successes": self.successes,
            "failures": self.failures,
            "rejected": self.rejected,
            "state_changes": self.state_changes,
            "last_failure_time": self.last_failure_time.isoformat() if self.last_failure_time else None,
            "last_state_change": self.last_state_change.isoformat() if self.last_state_change else None,
        }


@dataclass
class CircuitBreaker:
    """Failure-counting gate in front of one provider.

    Attributes:
        name: Provider registration name
        failure_threshold: Consecutive failures before opening
        recovery_timeout: Seconds to stay open before allowing trials
        success_threshold: Trial successes needed to close again
        half_open_max_calls: Concurrent trials allowed while half-open
        clock: Time source (injectable for tests)
    """

    name: str = "default"
    failure_threshold: int = 5
    recovery_timeout: float = 60.0
    success_threshold: int = 1
    half_open_max_calls: int = 1
    clock: Callable[[], datetime] = utcnow

    _state: CircuitState = field(default=CircuitState.CLOSED, init=False)
    _failure_count: int = field(default=0, init=False)
    _success_count: int = field(default=0, init=False)
    _opened_at: datetime | None = field(default=None, init=False)
    _half_open_calls: int = field(default=0, init=False)
    _lock: threading.RLock = field(default_factory=threading.RLock, init=False, repr=False)
    _stats: CircuitStats = field(default_factory=CircuitStats, init=False)

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if self.recovery_timeout < 0:
            raise ValueError("recovery_timeout must be >= 0")

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._check_recovery()
            return self._state

    @property
    def stats(self) -> CircuitStats:
        return self._stats

    @property
    def available(self) -> bool:
        """Whether a dispatch would be let through right now (claims nothing)."""
        with self._lock:
            self._check_recovery()
            if self._state is CircuitState.CLOSED:
                return True
            if self._state is CircuitState.OPEN:
                return False
            return self._half_open_calls < self.half_open_max_calls

    def allow_request(self) -> bool:
        """Claim permission for one dispatch.

        In ``half_open`` this takes one of the trial slots; every claim must
        end in ``record_success``, ``record_failure`` or ``abandon``.
        """
        with self._lock:
            self._check_recovery()
            if self._state is CircuitState.CLOSED:
                return True
            if self._state is CircuitState.HALF_OPEN and self._half_open_calls < self.half_open_max_calls:
                self._half_open_calls += 1
                return True
            self._stats.rejected += 1
            return False

    def record_success(self) -> None:
        with self._lock:
            self._stats.successes += 1
            self._failure_count = 0
            if self._state is CircuitState.HALF_OPEN:
                self._half_open_calls = max(0, self._half_open_calls - 1)
                self._success_count += 1
                if self._success_count >= self.success_threshold:
                    self._transition_to(CircuitState.CLOSED)

    def record_failure(self, error: Exception | None = None) -> None:
        with self._lock:
            now = self.clock()
            self._failure_count += 1
            self._stats.failures += 1
            self._stats.last_failure_time = now
            if self._state is CircuitState.HALF_OPEN:
                self._transition_to(CircuitState.OPEN, error=error)
            elif self._state is CircuitState.CLOSED and self._failure_count >= self.failure_threshold:
                self._transition_to(CircuitState.OPEN, error=error)

    def abandon(self) -> None:
        """Give back a claimed trial that ended without a verdict."""
        with self._lock:
            if self._state is CircuitState.HALF_OPEN:
                self._half_open_calls = max(0, self._half_open_calls - 1)

    def reset(self) -> None:
        with self._lock:
            if self._state is not CircuitState.CLOSED:
                self._transition_to(CircuitState.CLOSED)
            self._failure_count = 0

    def force_open(self) -> None:
        with self._lock:
            self._transition_to(CircuitState.OPEN)

    def _check_recovery(self) -> None:
        if self._state is CircuitState.OPEN and self._opened_at is not None:
            elapsed = (self.clock() - self._opened_at).total_seconds()
            if elapsed >= self.recovery_timeout:
                self._transition_to(CircuitState.HALF_OPEN)

    def _transition_to(self, new_state: CircuitState, *, error: Exception | None = None) -> None:
        old_state = self._state
        now = self.clock()
        self._state = new_state
        self._stats.state_changes += 1
        self._stats.last_state_change = now
        if new_state is CircuitState.OPEN:
            self._opened_at = now
            self._half_open_calls = 0
        elif new_state is CircuitState.HALF_OPEN:
            self._success_count = 0
            self._half_open_calls = 0
        else:
            self._failure_count = 0
            self._success_count = 0
            self._opened_at = None
        log = logger.warning if new_state is CircuitState.OPEN else logger.info
        log(
            "circuit_state_changed",
            provider=self.name,
            from_state=old_state.value,
            to_state=new_state.value,
            failures=self._stats.failures,
            error=str(error) if error else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_threshold": self.failure_threshold,
            "recovery_timeout": self.recovery_timeout,
            "stats": self._stats.to_dict(),
        }
