"""
Conduit - pipeline orchestrator across heterogeneous CI/CD providers.

Accepts pipeline execution requests, selects a healthy capable provider,
queues and dispatches work under priority and concurrency limits, tracks
multi-stage execution state and reports health and statistics.

Example:
    >>> from conduit import ExecutionRequest, Orchestrator, StubProviderAdapter
    >>> orchestrator = Orchestrator()
    >>> orchestrator.register_provider(StubProviderAdapter(provider_type="jenkins"))
    >>> receipt = orchestrator.execute_pipeline(
    ...     ExecutionRequest(repository="git@example.com:app.git", pipeline_config={}))
"""

__version__ = "0.1.0"

from conduit.core.errors import ConduitError
from conduit.core.settings import OrchestratorSettings
from conduit.execution.models import (
    Execution,
    ExecutionFilter,
    ExecutionReceipt,
    ExecutionRequest,
    ExecutionState,
    Pagination,
    StopAck,
)
from conduit.orchestrator import Orchestrator
from conduit.providers._base import BaseProviderAdapter, StubProviderAdapter

__all__ = [
    "__version__",
    "ConduitError",
    "OrchestratorSettings",
    "Execution",
    "ExecutionFilter",
    "ExecutionReceipt",
    "ExecutionRequest",
    "ExecutionState",
    "Pagination",
    "StopAck",
    "Orchestrator",
    "BaseProviderAdapter",
    "StubProviderAdapter",
]
