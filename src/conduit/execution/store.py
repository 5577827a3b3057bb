"""Execution store contract and implementations.

The store is the authority for every execution outside the orchestrator's
in-memory working set. The contract is deliberately small: a keyed record
per execution, an append-only stage log, aggregate counts for statistics,
and a write-only health audit log.

Architecture:

    .. code-block:: text

        ExecutionStore (Protocol)
        ┌──────────────────────────────────────────────────────────────┐
        │  create_execution(execution)                                 │
        │  update_state(id, state, fields)   atomic per execution      │
        │  append_stage(id, stage)           append-only, latest wins  │
        │  get_execution(id)                 record + folded stages    │
        │  list_executions(filter, page)     → Page(items, total)      │
        │  aggregate_counts(window, group_by)→ [AggregateRow]          │
        │  append_health_snapshot(provider, data)                      │
        └──────────────────────────────────────────────────────────────┘
                 │                                   │
                 ▼                                   ▼
        InMemoryExecutionStore               SqliteExecutionStore
        (tests, single process)              (sqlite3, one file)

    Every failure surfaces as ``StoreUnavailable``.

    .. mermaid::

        erDiagram
            conduit_executions {
                text id PK
                text state
                int priority
                text provider
                text template_id
                text created_at
                real duration_seconds
                text data
            }
            conduit_execution_stages {
                int seq PK
                text execution_id FK
                text name
                text recorded_at
                text data
            }
            conduit_health_snapshots {
                int seq PK
                text provider
                text recorded_at
                text data
            }
            conduit_executions ||--o{ conduit_execution_stages : "logs"
"""

from __future__ import annotations

import json
import sqlite3
import threading
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from conduit.core.errors import StoreUnavailable
from conduit.core.logging import get_logger
from conduit.execution.models import (
    Execution,
    ExecutionFilter,
    ExecutionState,
    Page,
    Pagination,
    Stage,
    utcnow,
)

logger = get_logger(__name__)

GROUP_BY_FIELDS = ("provider", "template_id", "environment", "pipeline_type")


@dataclass(frozen=True)
class TimeWindow:
    """Half-open interval ``[since, until)`` on ``created_at``."""

    since: datetime | None = None
    until: datetime | None = None

    def contains(self, moment: datetime) -> bool:
        if self.since is not None and moment < self.since:
            return False
        if self.until is not None and moment >= self.until:
            return False
        return True


@dataclass
class AggregateRow:
    """Counts for one group (``key`` is None when not grouped)."""

    key: str | None
    total: int = 0
    by_state: dict[str, int] = field(default_factory=dict)
    duration_total: float = 0.0
    duration_count: int = 0

    def count(self, state: ExecutionState) -> int:
        return self.by_state.get(state.value, 0)

    def add(self, state: str, duration: float | None, n: int = 1) -> None:
        self.total += n
        self.by_state[state] = self.by_state.get(state, 0) + n
        if duration is not None:
            self.duration_total += duration
            self.duration_count += 1 if n == 1 else n


@runtime_checkable
class ExecutionStore(Protocol):
    """Persistence contract used by the orchestrator."""

    def create_execution(self, execution: Execution) -> str: ...

    def update_state(
        self, execution_id: str, state: ExecutionState, fields: dict[str, Any]
    ) -> None: ...

    def append_stage(self, execution_id: str, stage: Stage) -> None: ...

    def get_execution(self, execution_id: str) -> Execution | None: ...

    def list_executions(
        self, filter: ExecutionFilter | None = None, pagination: Pagination | None = None
    ) -> Page: ...

    def aggregate_counts(
        self, window: TimeWindow, group_by: str | None = None
    ) -> list[AggregateRow]: ...

    def append_health_snapshot(self, provider: str, data: dict[str, Any]) -> None: ...


def _check_group_by(group_by: str | None) -> None:
    if group_by is not None and group_by not in GROUP_BY_FIELDS:
        raise ValueError(f"group_by must be one of {GROUP_BY_FIELDS}, got {group_by!r}")


def _fold_stages(records: Iterable[Stage]) -> list[Stage]:
    """Latest record per stage name wins; result ordered by stage order."""
    latest: dict[str, Stage] = {}
    for stage in records:
        latest[stage.name] = stage
    return sorted(latest.values(), key=lambda s: (s.order, s.name))


def _duration(fields: dict[str, Any]) -> float | None:
    started, completed = fields.get("started_at"), fields.get("completed_at")
    if not started or not completed:
        return None
    return (datetime.fromisoformat(completed) - datetime.fromisoformat(started)).total_seconds()


# =============================================================================
# IN-MEMORY
# =============================================================================


class InMemoryExecutionStore:
    """Dict-backed store. Keeps detached copies, never live objects.

    Set ``available = False`` to make every call raise ``StoreUnavailable``.
    """

    def __init__(self) -> None:
        self._records: dict[str, dict[str, Any]] = {}
        self._stages: dict[str, list[Stage]] = {}
        self.health_snapshots: list[tuple[str, dict[str, Any]]] = []
        self._lock = threading.Lock()
        self.available = True

    def _check(self) -> None:
        if not self.available:
            raise StoreUnavailable("In-memory store marked unavailable")

    def create_execution(self, execution: Execution) -> str:
        self._check()
        data = execution.to_dict()
        data.pop("stages", None)
        with self._lock:
            if execution.id in self._records:
                raise StoreUnavailable(f"Execution {execution.id} already exists")
            self._records[execution.id] = data
            self._stages[execution.id] = [s.copy() for s in execution.stages]
        return execution.id

    def update_state(
        self, execution_id: str, state: ExecutionState, fields: dict[str, Any]
    ) -> None:
        self._check()
        with self._lock:
            record = self._records.get(execution_id)
            if record is None:
                raise StoreUnavailable(f"Execution {execution_id} not found in store")
            merged = dict(record)
            merged.update(json.loads(json.dumps(fields, default=str)))
            merged["state"] = state.value
            self._records[execution_id] = merged

    def append_stage(self, execution_id: str, stage: Stage) -> None:
        self._check()
        with self._lock:
            if execution_id not in self._records:
                raise StoreUnavailable(f"Execution {execution_id} not found in store")
            self._stages[execution_id].append(stage.copy())

    def get_execution(self, execution_id: str) -> Execution | None:
        self._check()
        with self._lock:
            record = self._records.get(execution_id)
            if record is None:
                return None
            execution = Execution.from_dict(record)
            execution.stages = [s.copy() for s in _fold_stages(self._stages[execution_id])]
        return execution

    def list_executions(
        self, filter: ExecutionFilter | None = None, pagination: Pagination | None = None
    ) -> Page:
        self._check()
        filter = filter or ExecutionFilter()
        pagination = pagination or Pagination()
        with self._lock:
            ids = list(self._records)
        matched = [
            e for e in (self.get_execution(i) for i in ids)
            if e is not None and filter.matches(e)
        ]
        matched.sort(key=lambda e: e.created_at, reverse=True)
        items = matched[pagination.offset:pagination.offset + pagination.limit]
        return Page(items=items, total=len(matched), limit=pagination.limit, offset=pagination.offset)

    def aggregate_counts(
        self, window: TimeWindow, group_by: str | None = None
    ) -> list[AggregateRow]:
        self._check()
        _check_group_by(group_by)
        rows: dict[str | None, AggregateRow] = {}
        with self._lock:
            records = list(self._records.values())
        for record in records:
            created = datetime.fromisoformat(record["created_at"])
            if not window.contains(created):
                continue
            key = record.get(group_by) if group_by else None
            row = rows.setdefault(key, AggregateRow(key=key))
            row.add(record["state"], _duration(record))
        return sorted(rows.values(), key=lambda r: (r.key is None, r.key or ""))

    def append_health_snapshot(self, provider: str, data: dict[str, Any]) -> None:
        self._check()
        with self._lock:
            self.health_snapshots.append((provider, dict(data)))


# =============================================================================
# SQLITE
# =============================================================================


SCHEMA = """
CREATE TABLE IF NOT EXISTS conduit_executions (
    id TEXT PRIMARY KEY,
    state TEXT NOT NULL,
    priority INTEGER NOT NULL,
    provider TEXT,
    template_id TEXT,
    environment TEXT,
    pipeline_type TEXT,
    repository TEXT,
    created_at TEXT NOT NULL,
    completed_at TEXT,
    duration_seconds REAL,
    data TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_conduit_executions_created ON conduit_executions (created_at);
CREATE INDEX IF NOT EXISTS idx_conduit_executions_state ON conduit_executions (state);

CREATE TABLE IF NOT EXISTS conduit_execution_stages (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    execution_id TEXT NOT NULL REFERENCES conduit_executions (id),
    name TEXT NOT NULL,
    recorded_at TEXT NOT NULL,
    data TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_conduit_stages_execution ON conduit_execution_stages (execution_id);

CREATE TABLE IF NOT EXISTS conduit_health_snapshots (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    provider TEXT NOT NULL,
    recorded_at TEXT NOT NULL,
    data TEXT NOT NULL
);
"""


class SqliteExecutionStore:
    """SQLite-backed store.

    Column values duplicate the fields used for filtering and aggregation;
    the full record lives in the ``data`` JSON column.

    Example:
        >>> store = SqliteExecutionStore(":memory:")
        >>> store.create_execution(Execution.create("git@example.com:app.git"))
    """

    def __init__(self, path: str | Path = ":memory:") -> None:
        self.path = str(path)
        self._lock = threading.Lock()
        try:
            if self.path != ":memory:":
                Path(self.path).parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(self.path, check_same_thread=False)
            self._conn.executescript(SCHEMA)
            self._conn.commit()
        except (sqlite3.Error, OSError) as exc:
            raise StoreUnavailable(f"Cannot open execution store at {self.path}: {exc}", cause=exc) from exc

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _execute(self, sql: str, params: Iterable[Any] = ()) -> list[tuple]:
        with self._lock:
            try:
                cursor = self._conn.execute(sql, tuple(params))
                rows = cursor.fetchall()
                self._conn.commit()
            except sqlite3.Error as exc:
                self._conn.rollback()
                raise StoreUnavailable(f"Execution store error: {exc}", cause=exc) from exc
        return rows

    # =========================================================================
    # EXECUTION CRUD
    # =========================================================================

    def create_execution(self, execution: Execution) -> str:
        data = execution.to_dict()
        data.pop("stages", None)
        self._execute(
            """
            INSERT INTO conduit_executions (
                id, state, priority, provider, template_id, environment,
                pipeline_type, repository, created_at, completed_at,
                duration_seconds, data
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                execution.id,
                execution.state.value,
                execution.priority,
                execution.provider,
                execution.template_id,
                execution.environment,
                execution.pipeline_type,
                execution.repository,
                data["created_at"],
                data["completed_at"],
                _duration(data),
                json.dumps(data, default=str),
            ),
        )
        for stage in execution.stages:
            self.append_stage(execution.id, stage)
        return execution.id

    def update_state(
        self, execution_id: str, state: ExecutionState, fields: dict[str, Any]
    ) -> None:
        with self._lock:
            try:
                row = self._conn.execute(
                    "SELECT data FROM conduit_executions WHERE id = ?", (execution_id,)
                ).fetchone()
                if row is None:
                    raise StoreUnavailable(f"Execution {execution_id} not found in store")
                data = json.loads(row[0])
                data.update(json.loads(json.dumps(fields, default=str)))
                data["state"] = state.value
                self._conn.execute(
                    """
                    UPDATE conduit_executions
                    SET state = ?, provider = ?, completed_at = ?,
                        duration_seconds = ?, data = ?
                    WHERE id = ?
                    """,
                    (
                        state.value,
                        data.get("provider"),
                        data.get("completed_at"),
                        _duration(data),
                        json.dumps(data, default=str),
                        execution_id,
                    ),
                )
                self._conn.commit()
            except sqlite3.Error as exc:
                self._conn.rollback()
                raise StoreUnavailable(f"Execution store error: {exc}", cause=exc) from exc

    def append_stage(self, execution_id: str, stage: Stage) -> None:
        self._execute(
            """
            INSERT INTO conduit_execution_stages (execution_id, name, recorded_at, data)
            VALUES (?, ?, ?, ?)
            """,
            (execution_id, stage.name, utcnow().isoformat(), json.dumps(stage.to_dict())),
        )

    def get_execution(self, execution_id: str) -> Execution | None:
        rows = self._execute(
            "SELECT data FROM conduit_executions WHERE id = ?", (execution_id,)
        )
        if not rows:
            return None
        return self._hydrate(json.loads(rows[0][0]))

    def list_executions(
        self, filter: ExecutionFilter | None = None, pagination: Pagination | None = None
    ) -> Page:
        filter = filter or ExecutionFilter()
        pagination = pagination or Pagination()
        where = " WHERE 1=1"
        params: list[Any] = []
        if filter.state is not None:
            where += " AND state = ?"
            params.append(filter.state.value)
        for column in ("provider", "template_id", "repository", "environment"):
            value = getattr(filter, column)
            if value is not None:
                where += f" AND {column} = ?"
                params.append(value)
        if filter.since is not None:
            where += " AND created_at >= ?"
            params.append(filter.since.isoformat())
        if filter.until is not None:
            where += " AND created_at < ?"
            params.append(filter.until.isoformat())

        total = self._execute("SELECT COUNT(*) FROM conduit_executions" + where, params)[0][0]
        rows = self._execute(
            "SELECT data FROM conduit_executions" + where
            + " ORDER BY created_at DESC LIMIT ? OFFSET ?",
            [*params, pagination.limit, pagination.offset],
        )
        items = [self._hydrate(json.loads(r[0])) for r in rows]
        return Page(items=items, total=total, limit=pagination.limit, offset=pagination.offset)

    def aggregate_counts(
        self, window: TimeWindow, group_by: str | None = None
    ) -> list[AggregateRow]:
        _check_group_by(group_by)
        key_expr = group_by or "NULL"
        where = " WHERE 1=1"
        params: list[Any] = []
        if window.since is not None:
            where += " AND created_at >= ?"
            params.append(window.since.isoformat())
        if window.until is not None:
            where += " AND created_at < ?"
            params.append(window.until.isoformat())
        rows = self._execute(
            f"""
            SELECT {key_expr} AS grp, state, COUNT(*),
                   SUM(duration_seconds), COUNT(duration_seconds)
            FROM conduit_executions{where}
            GROUP BY grp, state
            """,
            params,
        )
        grouped: dict[str | None, AggregateRow] = {}
        for key, state, count, duration_sum, duration_count in rows:
            row = grouped.setdefault(key, AggregateRow(key=key))
            row.total += count
            row.by_state[state] = row.by_state.get(state, 0) + count
            row.duration_total += duration_sum or 0.0
            row.duration_count += duration_count
        return sorted(grouped.values(), key=lambda r: (r.key is None, r.key or ""))

    def append_health_snapshot(self, provider: str, data: dict[str, Any]) -> None:
        self._execute(
            "INSERT INTO conduit_health_snapshots (provider, recorded_at, data) VALUES (?, ?, ?)",
            (provider, utcnow().isoformat(), json.dumps(data, default=str)),
        )

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _hydrate(self, data: dict[str, Any]) -> Execution:
        rows = self._execute(
            "SELECT data FROM conduit_execution_stages WHERE execution_id = ? ORDER BY seq ASC",
            (data["id"],),
        )
        execution = Execution.from_dict(data)
        execution.stages = _fold_stages(Stage.from_dict(json.loads(r[0])) for r in rows)
        return execution


def open_store(path: str | Path | None) -> ExecutionStore:
    """SQLite store at *path*, or an in-memory store when *path* is None."""
    if path is None:
        return InMemoryExecutionStore()
    logger.info("execution_store_opened", path=str(path))
    return SqliteExecutionStore(path)
