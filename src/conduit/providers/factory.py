"""Provider factory table: build adapters from configuration.

ARCHITECTURE
────────────
::

    Factory table (type → callable(**options) → ProviderAdapter):
      stub      → StubProviderAdapter
      flaky     → FlakyProvider
      slow      → SlowProvider
      failing   → FailingProvider

    register_provider_type(type, factory)   → add a real backend adapter
    build_provider(ProviderConfig)          → adapter instance
    register_from_config(registry, config)  → build + register every entry

New backends are added by registering a factory; the dispatcher never
branches on provider type.

Example::

    from conduit.providers.factory import register_provider_type

    register_provider_type("jenkins", lambda **opts: JenkinsAdapter(**opts))

Tags:
    conduit, providers, factory, configuration
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from conduit.core.config import OrchestratorConfig, ProviderConfig
from conduit.core.errors import ValidationError
from conduit.core.logging import get_logger
from conduit.providers._base import StubProviderAdapter
from conduit.providers._types import ProviderAdapter, ProviderCapabilities
from conduit.providers.mock_adapters import FailingProvider, FlakyProvider, SlowProvider
from conduit.providers.registry import ProviderRecord, ProviderRegistry

logger = get_logger(__name__)

ProviderFactory = Callable[..., ProviderAdapter]

# ---------------------------------------------------------------------------
# Factory table
# ---------------------------------------------------------------------------

_FACTORIES: dict[str, ProviderFactory] = {
    "stub": StubProviderAdapter,
    "flaky": FlakyProvider,
    "slow": SlowProvider,
    "failing": FailingProvider,
}


def register_provider_type(provider_type: str, factory: ProviderFactory) -> None:
    """Register an adapter factory for *provider_type*.

    Parameters
    ----------
    provider_type
        Value used in ``ProviderConfig.type``.
    factory
        Callable accepting the config's ``options`` as keyword arguments
        and returning a ``ProviderAdapter``.
    """
    _FACTORIES[provider_type] = factory


def list_provider_types() -> list[str]:
    return sorted(_FACTORIES)


def build_provider(config: ProviderConfig) -> ProviderAdapter:
    """Instantiate the adapter described by *config*.

    Built-in stub types receive ``provider_type`` (the registration name)
    and ``pipeline_types`` (the declared capabilities) unless the options
    already set them.

    Raises
    ------
    ValidationError
        If the type is unknown or the options are rejected by the factory.
    """
    factory = _FACTORIES.get(config.type)
    if factory is None:
        raise ValidationError(
            f"Unknown provider type {config.type!r}. Available: {list_provider_types()}",
            field="type",
        )
    options: dict[str, Any] = dict(config.options)
    if isinstance(factory, type) and issubclass(factory, StubProviderAdapter):
        options.setdefault("provider_type", config.name)
        if config.capabilities:
            options.setdefault("pipeline_types", tuple(config.capabilities))
    try:
        return factory(**options)
    except (TypeError, ValueError) as exc:
        raise ValidationError(
            f"Cannot build provider '{config.name}' of type {config.type!r}: {exc}",
            field="options",
            cause=exc,
        ) from exc


def register_from_config(registry: ProviderRegistry, config: OrchestratorConfig) -> list[ProviderRecord]:
    """Build and register every provider declared in *config*."""
    records = []
    for provider in config.providers:
        adapter = build_provider(provider)
        capabilities = None
        if provider.capabilities:
            declared = adapter.capabilities()
            capabilities = ProviderCapabilities(
                pipeline_types=frozenset(provider.capabilities),
                supports_cancel=declared.supports_cancel,
                supports_parallel_stages=declared.supports_parallel_stages,
            )
        records.append(
            registry.register(
                adapter,
                name=provider.name,
                connection=provider.connection,
                max_concurrent=provider.max_concurrent,
                enabled=provider.enabled,
                metadata=provider.metadata,
                capabilities=capabilities,
            )
        )
    logger.info("providers_loaded", count=len(records), names=[r.name for r in records])
    return records
