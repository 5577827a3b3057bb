"""Health monitor: periodic, jittered provider probing.

Each registered provider gets its own probe task. A probe calls
``adapter.health_check()`` bounded by ``timeout``; a timeout or exception
counts as an unreachable failure. Results go through
``ProviderRegistry.record_health`` (which applies hysteresis) and are
optionally appended to the execution store as audit snapshots.

.. code-block:: text

    HealthMonitor
    ├── start()        one task per provider, first probe after U(0, jitter)
    ├── track(name)    add a task for a provider registered later
    ├── probe(name)    single bounded health_check → HealthResult
    ├── check_all()    probe every provider concurrently (on demand)
    └── stop()         cancel all probe tasks

    per-provider loop:
        sleep(U(0, jitter))
        loop:
            probe(name)
            sleep(interval ± U(0, jitter))
"""

from __future__ import annotations

import asyncio
import random
from typing import TYPE_CHECKING

from conduit.core.errors import ProviderNotFound, StoreUnavailable
from conduit.core.logging import get_logger
from conduit.providers._types import ProviderHealth
from conduit.providers.registry import HealthResult, ProviderRegistry

if TYPE_CHECKING:
    from conduit.execution.store import ExecutionStore

logger = get_logger(__name__)


class HealthMonitor:
    """Runs provider health checks independently of the dispatch loop."""

    def __init__(
        self,
        registry: ProviderRegistry,
        *,
        interval: float = 30.0,
        jitter: float = 3.0,
        timeout: float = 5.0,
        store: ExecutionStore | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.registry = registry
        self.interval = interval
        self.jitter = jitter
        self.timeout = timeout
        self.store = store
        self._rng = rng or random.Random()
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Probing
    # ------------------------------------------------------------------

    async def probe(self, name: str) -> HealthResult:
        """Run one bounded health check for *name* and record it."""
        record = self.registry.require(name)
        try:
            health = await asyncio.wait_for(record.adapter.health_check(), timeout=self.timeout)
        except TimeoutError:
            health = ProviderHealth(
                healthy=False,
                details={"reachable": False},
                message=f"Health check timed out after {self.timeout}s",
            )
        except Exception as exc:
            health = ProviderHealth(
                healthy=False,
                details={"reachable": False, "error_type": type(exc).__name__},
                message=f"Health check failed: {exc}",
            )
        reachable = bool(health.details.get("reachable", True)) or health.healthy
        result = self.registry.record_health(name, health, reachable=reachable)
        logger.debug(
            "provider_probed",
            provider=name,
            healthy=health.healthy,
            health=result.health.value,
            consecutive_failures=result.consecutive_failures,
        )
        self._snapshot(result)
        return result

    async def check_all(self) -> list[HealthResult]:
        """Probe every registered provider concurrently."""
        names = self.registry.names()
        if not names:
            return []
        return list(await asyncio.gather(*(self.probe(n) for n in names)))

    def _snapshot(self, result: HealthResult) -> None:
        if self.store is None:
            return
        try:
            self.store.append_health_snapshot(result.provider, result.to_dict())
        except StoreUnavailable as exc:
            logger.warning("health_snapshot_failed", provider=result.provider, error=str(exc))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start one probe task per registered provider."""
        if self._running:
            return
        self._running = True
        for name in self.registry.names():
            self.track(name)
        logger.info("health_monitor_started", providers=len(self._tasks), interval=self.interval)

    def track(self, name: str) -> None:
        """Start probing *name* (no-op if already tracked or not running)."""
        if not self._running or name in self._tasks:
            return
        self._tasks[name] = asyncio.create_task(self._run(name), name=f"health:{name}")

    async def stop(self) -> None:
        self._running = False
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("health_monitor_stopped")

    async def _run(self, name: str) -> None:
        await asyncio.sleep(self._rng.uniform(0, self.jitter))
        while self._running and name in self.registry:
            try:
                await self.probe(name)
            except ProviderNotFound:
                logger.info("health_check_provider_gone", provider=name)
                break
            except Exception:
                logger.exception("health_check_loop_error", provider=name)
            delay = self.interval + self._rng.uniform(-self.jitter, self.jitter)
            await asyncio.sleep(max(0.0, delay))
        self._tasks.pop(name, None)
