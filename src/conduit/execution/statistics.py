"""Statistics derived from the execution store on demand.

``StatisticsAggregator.collect(time_range)`` reads ``aggregate_counts`` three
times (ungrouped, by provider, by template) and shapes the result into a
:class:`Statistics` value. Time ranges are the named windows ``1h``, ``24h``,
``7d`` and ``30d``, measured back from now on ``created_at``.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from conduit.core.errors import ValidationError
from conduit.execution.models import ExecutionState, utcnow
from conduit.execution.store import AggregateRow, ExecutionStore, TimeWindow

TIME_RANGES: dict[str, timedelta] = {
    "1h": timedelta(hours=1),
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
}
DEFAULT_TIME_RANGE = "24h"


def time_window(time_range: str, now: datetime | None = None) -> TimeWindow:
    """Resolve a named range into a concrete window ending at *now*.

    Raises:
        ValidationError: For a name outside ``TIME_RANGES``.
    """
    span = TIME_RANGES.get(time_range)
    if span is None:
        raise ValidationError(
            f"time_range must be one of {', '.join(TIME_RANGES)}, got {time_range!r}",
            field="time_range",
        )
    now = now or utcnow()
    return TimeWindow(since=now - span, until=None)


@dataclass(frozen=True)
class Overview:
    total: int = 0
    completed: int = 0
    failed: int = 0
    running: int = 0
    queued: int = 0
    cancelled: int = 0
    success_rate: float | None = None
    average_duration_seconds: float | None = None

    @classmethod
    def from_row(cls, row: AggregateRow | None) -> Overview:
        if row is None:
            return cls()
        completed = row.count(ExecutionState.COMPLETED)
        failed = row.count(ExecutionState.FAILED)
        finished = completed + failed
        return cls(
            total=row.total,
            completed=completed,
            failed=failed,
            running=row.count(ExecutionState.RUNNING) + row.count(ExecutionState.ASSIGNED),
            queued=row.count(ExecutionState.QUEUED),
            cancelled=row.count(ExecutionState.CANCELLED),
            success_rate=round(completed / finished * 100, 2) if finished else None,
            average_duration_seconds=(
                round(row.duration_total / row.duration_count, 3) if row.duration_count else None
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "completed": self.completed,
            "failed": self.failed,
            "running": self.running,
            "queued": self.queued,
            "cancelled": self.cancelled,
            "success_rate": self.success_rate,
            "average_duration_seconds": self.average_duration_seconds,
        }


@dataclass(frozen=True)
class ProviderStats:
    provider: str
    executions: int
    successful: int
    failed: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "executions": self.executions,
            "successful": self.successful,
            "failed": self.failed,
        }


@dataclass(frozen=True)
class TemplateStats:
    template_id: str
    executions: int
    usage_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "template_id": self.template_id,
            "executions": self.executions,
            "usage_count": self.usage_count,
        }


@dataclass(frozen=True)
class Statistics:
    time_range: str
    overview: Overview
    by_provider: list[ProviderStats] = field(default_factory=list)
    by_template: list[TemplateStats] = field(default_factory=list)
    generated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "time_range": self.time_range,
            "generated_at": self.generated_at.isoformat(),
            "overview": self.overview.to_dict(),
            "by_provider": [p.to_dict() for p in self.by_provider],
            "by_template": [t.to_dict() for t in self.by_template],
        }


class StatisticsAggregator:
    """Builds :class:`Statistics` from store aggregates."""

    def __init__(
        self,
        store: ExecutionStore,
        *,
        template_usage: Callable[[], dict[str, int]] | None = None,
    ) -> None:
        self.store = store
        self.template_usage = template_usage

    def collect(self, time_range: str = DEFAULT_TIME_RANGE, *, now: datetime | None = None) -> Statistics:
        window = time_window(time_range, now)
        overall = self.store.aggregate_counts(window)
        overview = Overview.from_row(overall[0] if overall else None)

        by_provider = [
            ProviderStats(
                provider=row.key,
                executions=row.total,
                successful=row.count(ExecutionState.COMPLETED),
                failed=row.count(ExecutionState.FAILED),
            )
            for row in self.store.aggregate_counts(window, group_by="provider")
            if row.key is not None
        ]

        usage = self.template_usage() if self.template_usage else {}
        executions = {
            row.key: row.total
            for row in self.store.aggregate_counts(window, group_by="template_id")
            if row.key is not None
        }
        by_template = [
            TemplateStats(
                template_id=tid,
                executions=executions.get(tid, 0),
                usage_count=usage.get(tid, 0),
            )
            for tid in sorted(set(executions) | {t for t, n in usage.items() if n})
        ]
        return Statistics(
            time_range=time_range,
            overview=overview,
            by_provider=by_provider,
            by_template=by_template,
        )
