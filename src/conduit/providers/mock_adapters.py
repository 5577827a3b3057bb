"""Mock providers: test doubles for failure simulation.

All of these extend :class:`StubProviderAdapter`, so accepted runs can be
driven with ``advance`` / ``complete`` / ``fail`` like any stub run.

Architecture::

    StubProviderAdapter
    ├── FailingProvider          (submit always raises)
    ├── FlakyProvider            (fails N submits, or a seeded rate, then succeeds)
    ├── SlowProvider             (latency injection on every call)
    └── HealthSequenceProvider   (scripted health-check outcomes)

Example::

    from conduit.providers.mock_adapters import FlakyProvider

    # fails twice with ProviderUnreachable, third submit succeeds
    adapter = FlakyProvider(provider_type="jenkins", fail_times=2)
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Iterable
from typing import Any

from conduit.core.errors import ProviderRejected, ProviderUnreachable
from conduit.providers._base import StubProviderAdapter
from conduit.providers._types import (
    CancelAck,
    ExecutionConfig,
    ProviderHealth,
    ProviderStatus,
)

_ERRORS = {
    "rejected": ProviderRejected,
    "unreachable": ProviderUnreachable,
}


def _error_class(kind: str) -> type[ProviderRejected] | type[ProviderUnreachable]:
    try:
        return _ERRORS[kind]
    except KeyError:
        raise ValueError(f"error must be one of {sorted(_ERRORS)}, got {kind!r}") from None


# ---------------------------------------------------------------------------
# FailingProvider
# ---------------------------------------------------------------------------

class FailingProvider(StubProviderAdapter):
    """Provider whose ``submit()`` always fails.

    Parameters
    ----------
    error
        ``"rejected"`` (capacity/config) or ``"unreachable"`` (network).
    healthy
        Whether health checks still pass. A provider can be reachable and
        healthy while refusing every job.
    """

    def __init__(
        self,
        *,
        error: str = "rejected",
        message: str = "Simulated failure",
        healthy: bool = True,
        **kwargs: Any,
    ) -> None:
        kwargs.setdefault("provider_type", "failing")
        super().__init__(**kwargs)
        self._error = _error_class(error)
        self._message = message
        self.fail_health = not healthy
        self.attempts = 0

    async def _do_submit(self, config: ExecutionConfig) -> str:
        self.attempts += 1
        raise self._error(
            f"{self._message}: {config.execution_id}", provider=self.provider_type
        )


# ---------------------------------------------------------------------------
# FlakyProvider
# ---------------------------------------------------------------------------

class FlakyProvider(StubProviderAdapter):
    """Provider whose ``submit()`` fails intermittently.

    With ``fail_times`` set, the first N submits fail and the rest succeed
    (deterministic). Otherwise each submit succeeds with ``success_rate``
    using a seeded RNG for reproducible runs.
    """

    def __init__(
        self,
        *,
        fail_times: int | None = None,
        success_rate: float = 0.5,
        seed: int | None = None,
        error: str = "unreachable",
        **kwargs: Any,
    ) -> None:
        if not 0.0 <= success_rate <= 1.0:
            raise ValueError(f"success_rate must be 0.0-1.0, got {success_rate}")
        kwargs.setdefault("provider_type", "flaky")
        super().__init__(**kwargs)
        self._fail_times = fail_times
        self._success_rate = success_rate
        self._rng = random.Random(seed)
        self._error = _error_class(error)
        self.attempts = 0
        self.failure_count = 0

    def _should_fail(self) -> bool:
        if self._fail_times is not None:
            return self.attempts <= self._fail_times
        return self._rng.random() >= self._success_rate

    async def _do_submit(self, config: ExecutionConfig) -> str:
        self.attempts += 1
        if self._should_fail():
            self.failure_count += 1
            raise self._error(
                f"Flaky failure on attempt {self.attempts}", provider=self.provider_type
            )
        return await super()._do_submit(config)


# ---------------------------------------------------------------------------
# SlowProvider
# ---------------------------------------------------------------------------

class SlowProvider(StubProviderAdapter):
    """Provider that sleeps before answering.

    Useful for exercising the per-call timeouts the orchestrator applies to
    ``submit``, ``fetch_status``, ``cancel`` and ``health_check``.
    """

    def __init__(
        self,
        *,
        submit_delay: float = 1.0,
        status_delay: float = 0.0,
        cancel_delay: float = 0.0,
        health_delay: float = 0.0,
        **kwargs: Any,
    ) -> None:
        kwargs.setdefault("provider_type", "slow")
        super().__init__(**kwargs)
        self.submit_delay = submit_delay
        self.status_delay = status_delay
        self.cancel_delay = cancel_delay
        self.health_delay = health_delay

    async def _do_submit(self, config: ExecutionConfig) -> str:
        await asyncio.sleep(self.submit_delay)
        return await super()._do_submit(config)

    async def _do_fetch_status(self, provider_ref: str) -> ProviderStatus:
        await asyncio.sleep(self.status_delay)
        return await super()._do_fetch_status(provider_ref)

    async def _do_cancel(self, provider_ref: str) -> CancelAck:
        await asyncio.sleep(self.cancel_delay)
        return await super()._do_cancel(provider_ref)

    async def _do_health_check(self) -> ProviderHealth:
        await asyncio.sleep(self.health_delay)
        return await super()._do_health_check()


# ---------------------------------------------------------------------------
# HealthSequenceProvider
# ---------------------------------------------------------------------------

class HealthSequenceProvider(StubProviderAdapter):
    """Provider whose health checks follow a script.

    Each entry is ``True`` (healthy), ``False`` (unhealthy but reachable) or
    ``None`` (unreachable). After the script runs out the last entry repeats.
    """

    def __init__(self, *, outcomes: Iterable[bool | None], **kwargs: Any) -> None:
        kwargs.setdefault("provider_type", "sequence")
        super().__init__(**kwargs)
        self._outcomes = list(outcomes) or [True]
        self._index = 0

    def push(self, *outcomes: bool | None) -> None:
        """Append further outcomes to the script."""
        self._outcomes.extend(outcomes)

    async def _do_health_check(self) -> ProviderHealth:
        self.health_count += 1
        outcome = self._outcomes[min(self._index, len(self._outcomes) - 1)]
        self._index += 1
        if outcome is None:
            raise ProviderUnreachable("Scripted: unreachable", provider=self.provider_type)
        return ProviderHealth(
            healthy=outcome,
            details={"reachable": True, "step": self._index},
            message=None if outcome else "Scripted: unhealthy",
        )
