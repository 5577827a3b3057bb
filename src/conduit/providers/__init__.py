"""Provider adapters, registry, health monitoring and the factory table."""

from conduit.providers._base import DEFAULT_STAGES, BaseProviderAdapter, StubProviderAdapter
from conduit.providers._types import (
    CancelAck,
    ExecutionConfig,
    ProviderAdapter,
    ProviderCapabilities,
    ProviderHealth,
    ProviderRunState,
    ProviderStatus,
    StageReport,
)
from conduit.providers.factory import build_provider, register_provider_type
from conduit.providers.health import HealthMonitor
from conduit.providers.registry import (
    ConnectionState,
    HealthResult,
    HealthState,
    ProviderRecord,
    ProviderRegistry,
    ProviderSummary,
)

__all__ = [
    "DEFAULT_STAGES",
    "BaseProviderAdapter",
    "StubProviderAdapter",
    "CancelAck",
    "ExecutionConfig",
    "ProviderAdapter",
    "ProviderCapabilities",
    "ProviderHealth",
    "ProviderRunState",
    "ProviderStatus",
    "StageReport",
    "build_provider",
    "register_provider_type",
    "HealthMonitor",
    "ConnectionState",
    "HealthResult",
    "HealthState",
    "ProviderRecord",
    "ProviderRegistry",
    "ProviderSummary",
]
