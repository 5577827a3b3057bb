"""Retry and timeout helpers for provider calls.

Dispatch retries only the ``submit()`` call, against the same provider, with
exponential backoff. Every provider call is bounded by a timeout; a timed
out call surfaces as ``ProviderUnreachable`` so it is retried like any other
network failure.

Example:
    >>> strategy = ExponentialBackoff(max_retries=3, base_delay=1.0, jitter=False)
    >>> [strategy.next_delay(a) for a in range(3)]
    [1.0, 2.0, 4.0]
"""

from __future__ import annotations

import asyncio
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from conduit.core.errors import ConduitError, ProviderUnreachable

T = TypeVar("T")


class RetryAborted(Exception):
    """Raised when a retried operation is abandoned before its next attempt."""

    def __init__(self, attempts: int):
        super().__init__(f"Aborted after {attempts} attempt(s)")
        self.attempts = attempts


@dataclass
class ExponentialBackoff:
    """Exponential backoff with optional jitter.

    Delay = min(base_delay * (multiplier ** attempt), max_delay) ± jitter

    ``max_retries`` counts retries after the first attempt, so the total
    number of attempts is ``max_retries + 1``.
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0
    jitter: bool = True
    jitter_range: float = 0.25

    def next_delay(self, attempt: int) -> float:
        """Delay before retry number *attempt* (0 = first retry)."""
        delay = min(self.base_delay * (self.multiplier ** attempt), self.max_delay)
        if self.jitter:
            jitter_amount = delay * self.jitter_range
            delay = max(0.0, delay + random.uniform(-jitter_amount, jitter_amount))
        return delay

    def should_retry(self, attempt: int, error: Exception | None = None) -> bool:
        """Whether another attempt is allowed after *attempt* attempts.

        Errors that declare themselves non-retryable stop immediately.
        """
        if attempt > self.max_retries:
            return False
        if isinstance(error, ConduitError) and not error.retryable:
            return False
        return True


@dataclass
class RetryContext:
    """Tracks attempts for one retried operation.

    Example:
        >>> ctx = RetryContext(ExponentialBackoff(max_retries=3))
        >>> ref = await ctx.run_async(adapter.submit, config)
        >>> ctx.attempts
        1
    """

    strategy: ExponentialBackoff
    on_retry: Callable[[int, Exception, float], None] | None = None
    abort_if: Callable[[], bool] | None = None
    attempt: int = field(default=0, init=False)
    last_error: Exception | None = field(default=None, init=False)
    errors: list[Exception] = field(default_factory=list, init=False)

    @property
    def attempts(self) -> int:
        return self.attempt

    async def run_async(
        self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any
    ) -> T:
        """Await ``func(*args, **kwargs)`` until it succeeds or retries run out.

        Raises:
            RetryAborted: If ``abort_if`` returns True before an attempt.
            The last exception once the strategy refuses another attempt.
        """
        while True:
            if self.abort_if is not None and self.abort_if():
                raise RetryAborted(self.attempt)
            self.attempt += 1
            try:
                return await func(*args, **kwargs)
            except Exception as e:
                self.last_error = e
                self.errors.append(e)
                if not self.strategy.should_retry(self.attempt, e):
                    raise
                delay = self.strategy.next_delay(self.attempt - 1)
                if self.on_retry:
                    self.on_retry(self.attempt, e, delay)
                await asyncio.sleep(delay)


async def call_with_timeout(
    coro: Awaitable[T],
    timeout_seconds: float,
    *,
    operation: str,
    provider: str | None = None,
) -> T:
    """Await *coro* for at most *timeout_seconds*.

    Raises:
        ProviderUnreachable: If the call does not finish in time.
    """
    if timeout_seconds <= 0:
        raise ValueError(f"Timeout must be positive, got {timeout_seconds}")
    start = time.monotonic()
    try:
        return await asyncio.wait_for(coro, timeout=timeout_seconds)
    except TimeoutError:
        elapsed = time.monotonic() - start
        raise ProviderUnreachable(
            f"Provider call '{operation}' timed out after {timeout_seconds}s",
            provider=provider,
            context={"operation": operation, "elapsed": round(elapsed, 3)},
        ) from None
