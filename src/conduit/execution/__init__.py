"""Conduit Execution - queueing, dispatch, tracking and persistence.

ARCHITECTURE
────────────
::

    ExecutionRequest
      │
      ▼
    DispatchQueue ──> Dispatcher ──> provider.submit()
                                       │
                                       ▼
                      ExecutionTracker (state machine, polling, outbox)
                                       │
                                       ▼
                      ExecutionStore ──> StatisticsAggregator
"""

from conduit.execution.dispatcher import Dispatcher, select_provider
from conduit.execution.models import (
    Execution,
    ExecutionEvent,
    ExecutionFilter,
    ExecutionReceipt,
    ExecutionRequest,
    ExecutionState,
    FailureCategory,
    FailureReason,
    Page,
    Pagination,
    Stage,
    StageState,
    StopAck,
)
from conduit.execution.queue import DispatchQueue
from conduit.execution.retry import ExponentialBackoff, RetryContext, call_with_timeout
from conduit.execution.statistics import Statistics, StatisticsAggregator
from conduit.execution.store import (
    ExecutionStore,
    InMemoryExecutionStore,
    SqliteExecutionStore,
    TimeWindow,
)
from conduit.execution.tracker import ExecutionTracker

__all__ = [
    "Dispatcher",
    "select_provider",
    "Execution",
    "ExecutionEvent",
    "ExecutionFilter",
    "ExecutionReceipt",
    "ExecutionRequest",
    "ExecutionState",
    "FailureCategory",
    "FailureReason",
    "Page",
    "Pagination",
    "Stage",
    "StageState",
    "StopAck",
    "DispatchQueue",
    "ExponentialBackoff",
    "RetryContext",
    "call_with_timeout",
    "Statistics",
    "StatisticsAggregator",
    "ExecutionStore",
    "InMemoryExecutionStore",
    "SqliteExecutionStore",
    "TimeWindow",
    "ExecutionTracker",
]
