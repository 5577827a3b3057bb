"""
Tests for the execution stores.

Both implementations run the same contract tests:
- create / get / update_state
- append-only stage log folded latest-wins
- list with filter, ordering and pagination
- aggregate_counts overall and grouped
- StoreUnavailable on failure
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from conduit.core.errors import InternalError, StoreUnavailable
from conduit.execution.models import (
    ExecutionEvent,
    ExecutionFilter,
    ExecutionState,
    Pagination,
    Stage,
    StageState,
    utcnow,
)
from conduit.execution.store import (
    ExecutionStore,
    InMemoryExecutionStore,
    SqliteExecutionStore,
    TimeWindow,
    open_store,
)
from tests._support import make_execution


@pytest.fixture(params=["memory", "sqlite"])
def any_store(request, tmp_path):
    if request.param == "memory":
        yield InMemoryExecutionStore()
    else:
        store = SqliteExecutionStore(tmp_path / "executions.db")
        yield store
        store.close()


def _finish(store, execution, event, *, provider="jenkins", seconds=10.0):
    """Drive *execution* to a terminal state and persist it."""
    start = utcnow()
    execution.assign_provider(provider, f"{provider}-1")
    execution.apply(ExecutionEvent.ACCEPTED, at=start)
    if event is ExecutionEvent.ALL_STAGES_COMPLETED:
        execution.apply(ExecutionEvent.STAGE_STARTED, at=start)
    execution.apply(event, at=start + timedelta(seconds=seconds))
    store.update_state(execution.id, execution.state, execution.state_fields())


class TestContract:
    def test_satisfies_protocol(self, any_store):
        assert isinstance(any_store, ExecutionStore)

    def test_create_and_get(self, any_store):
        execution = make_execution(priority=2, parameters={"language": "typescript"})
        execution.stages = [Stage("Build", 0), Stage("Test", 1)]
        assert any_store.create_execution(execution) == execution.id

        stored = any_store.get_execution(execution.id)
        assert stored is not None
        assert stored.state is ExecutionState.QUEUED
        assert stored.priority == 2
        assert stored.parameters == {"language": "typescript"}
        assert [s.name for s in stored.stages] == ["Build", "Test"]

    def test_get_unknown(self, any_store):
        assert any_store.get_execution("exec_missing") is None

    def test_update_state(self, any_store):
        execution = make_execution()
        any_store.create_execution(execution)
        execution.assign_provider("jenkins", "jenkins-9")
        execution.apply(ExecutionEvent.ACCEPTED)
        execution.dispatch_attempts = 3
        any_store.update_state(execution.id, execution.state, execution.state_fields())

        stored = any_store.get_execution(execution.id)
        assert stored.state is ExecutionState.ASSIGNED
        assert stored.provider == "jenkins"
        assert stored.provider_ref == "jenkins-9"
        assert stored.dispatch_attempts == 3

    def test_update_unknown_raises(self, any_store):
        with pytest.raises(StoreUnavailable):
            any_store.update_state("exec_missing", ExecutionState.FAILED, {})

    def test_stage_log_latest_wins(self, any_store):
        execution = make_execution()
        any_store.create_execution(execution)
        any_store.append_stage(execution.id, Stage("Test", 1))
        any_store.append_stage(execution.id, Stage("Build", 0, StageState.RUNNING))
        any_store.append_stage(execution.id, Stage("Build", 0, StageState.COMPLETED))

        stages = any_store.get_execution(execution.id).stages
        assert [(s.name, s.state) for s in stages] == [
            ("Build", StageState.COMPLETED),
            ("Test", StageState.PENDING),
        ]

    def test_list_newest_first_with_total(self, any_store):
        base = utcnow()
        ids = []
        for i in range(5):
            execution = make_execution()
            execution.created_at = base + timedelta(seconds=i)
            any_store.create_execution(execution)
            ids.append(execution.id)

        page = any_store.list_executions(pagination=Pagination(limit=2, offset=1))
        assert page.total == 5
        assert [e.id for e in page.items] == [ids[3], ids[2]]

    def test_list_filter(self, any_store):
        staging = make_execution(environment="staging")
        prod = make_execution(environment="production")
        any_store.create_execution(staging)
        any_store.create_execution(prod)
        _finish(any_store, prod, ExecutionEvent.ALL_STAGES_COMPLETED)

        page = any_store.list_executions(ExecutionFilter(environment="staging"))
        assert [e.id for e in page.items] == [staging.id]

        page = any_store.list_executions(
            ExecutionFilter(state=ExecutionState.COMPLETED, provider="jenkins")
        )
        assert [e.id for e in page.items] == [prod.id]

    def test_aggregate_counts(self, any_store):
        for event, provider in [
            (ExecutionEvent.ALL_STAGES_COMPLETED, "jenkins"),
            (ExecutionEvent.ALL_STAGES_COMPLETED, "jenkins"),
            (ExecutionEvent.PROVIDER_FAILED, "gitlab"),
        ]:
            execution = make_execution()
            any_store.create_execution(execution)
            _finish(any_store, execution, event, provider=provider, seconds=20.0)
        any_store.create_execution(make_execution())

        window = TimeWindow(since=utcnow() - timedelta(hours=1))
        (overall,) = any_store.aggregate_counts(window)
        assert overall.key is None
        assert overall.total == 4
        assert overall.count(ExecutionState.COMPLETED) == 2
        assert overall.count(ExecutionState.FAILED) == 1
        assert overall.count(ExecutionState.QUEUED) == 1
        assert overall.duration_count == 2
        assert overall.duration_total == pytest.approx(40.0)

        by_provider = {r.key: r for r in any_store.aggregate_counts(window, group_by="provider")}
        assert by_provider["jenkins"].total == 2
        assert by_provider["gitlab"].count(ExecutionState.FAILED) == 1
        assert by_provider[None].total == 1

    def test_aggregate_respects_window(self, any_store):
        old = make_execution()
        old.created_at = utcnow() - timedelta(days=3)
        any_store.create_execution(old)
        any_store.create_execution(make_execution())

        rows = any_store.aggregate_counts(TimeWindow(since=utcnow() - timedelta(hours=24)))
        assert rows[0].total == 1

    def test_aggregate_rejects_unknown_group(self, any_store):
        with pytest.raises(ValueError):
            any_store.aggregate_counts(TimeWindow(), group_by="repository; DROP TABLE x")

    def test_health_snapshot_accepted(self, any_store):
        any_store.append_health_snapshot("jenkins", {"healthy": True})


class TestInMemoryStore:
    def test_unavailable_raises_internal_error(self):
        store = InMemoryExecutionStore()
        store.available = False
        with pytest.raises(InternalError):
            store.create_execution(make_execution())
        with pytest.raises(StoreUnavailable):
            store.get_execution("exec_x")

    def test_keeps_detached_copies(self):
        store = InMemoryExecutionStore()
        execution = make_execution()
        execution.stages = [Stage("Build", 0)]
        store.create_execution(execution)
        execution.stages[0].advance(StageState.RUNNING)
        assert store.get_execution(execution.id).stages[0].state is StageState.PENDING

    def test_duplicate_create_rejected(self):
        store = InMemoryExecutionStore()
        execution = make_execution()
        store.create_execution(execution)
        with pytest.raises(StoreUnavailable):
            store.create_execution(execution)


class TestSqliteStore:
    def test_survives_reopen(self, tmp_path):
        path = tmp_path / "nested" / "conduit.db"
        store = SqliteExecutionStore(path)
        execution = make_execution()
        store.create_execution(execution)
        store.close()

        reopened = SqliteExecutionStore(path)
        assert reopened.get_execution(execution.id) is not None
        reopened.close()

    def test_duplicate_create_raises_store_unavailable(self):
        store = SqliteExecutionStore()
        execution = make_execution()
        store.create_execution(execution)
        with pytest.raises(StoreUnavailable):
            store.create_execution(execution)

    def test_open_store(self, tmp_path):
        assert isinstance(open_store(None), InMemoryExecutionStore)
        sqlite_store = open_store(tmp_path / "x.db")
        assert isinstance(sqlite_store, SqliteExecutionStore)
        sqlite_store.close()
