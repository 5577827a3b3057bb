"""
Tests for the execution state machine.

Tests cover:
- Every (state, event) pair: only table entries succeed
- Terminal states accept no event
- Timestamps stamped by Execution.apply
- Stage states only move forward
"""

from __future__ import annotations

import itertools
from datetime import timedelta

import pytest

from conduit.core.errors import InvalidTransitionError, InvariantViolation
from conduit.execution.models import (
    EXECUTION_TRANSITIONS,
    TERMINAL_STATES,
    ExecutionEvent,
    ExecutionState,
    FailureCategory,
    Stage,
    StageState,
    next_state,
    utcnow,
)
from tests._support import make_execution


# =============================================================================
# Transition table
# =============================================================================


ALL_PAIRS = list(itertools.product(ExecutionState, ExecutionEvent))


class TestTransitionTable:
    @pytest.mark.parametrize(("state", "event"), ALL_PAIRS, ids=lambda v: v.value)
    def test_only_listed_pairs_succeed(self, state: ExecutionState, event: ExecutionEvent):
        expected = EXECUTION_TRANSITIONS.get((state, event))
        if expected is None:
            with pytest.raises(InvalidTransitionError) as exc_info:
                next_state(state, event)
            assert exc_info.value.current == state.value
            assert exc_info.value.target == event.value
        else:
            assert next_state(state, event) is expected

    def test_table_shape(self):
        """The documented transitions, and nothing else."""
        assert EXECUTION_TRANSITIONS == {
            (ExecutionState.QUEUED, ExecutionEvent.ACCEPTED): ExecutionState.ASSIGNED,
            (ExecutionState.QUEUED, ExecutionEvent.DISPATCH_EXHAUSTED): ExecutionState.FAILED,
            (ExecutionState.QUEUED, ExecutionEvent.CANCEL): ExecutionState.CANCELLED,
            (ExecutionState.ASSIGNED, ExecutionEvent.STAGE_STARTED): ExecutionState.RUNNING,
            (ExecutionState.ASSIGNED, ExecutionEvent.PROVIDER_FAILED): ExecutionState.FAILED,
            (ExecutionState.ASSIGNED, ExecutionEvent.STALLED): ExecutionState.FAILED,
            (ExecutionState.ASSIGNED, ExecutionEvent.CANCEL): ExecutionState.CANCELLED,
            (ExecutionState.RUNNING, ExecutionEvent.ALL_STAGES_COMPLETED): ExecutionState.COMPLETED,
            (ExecutionState.RUNNING, ExecutionEvent.PROVIDER_FAILED): ExecutionState.FAILED,
            (ExecutionState.RUNNING, ExecutionEvent.STALLED): ExecutionState.FAILED,
            (ExecutionState.RUNNING, ExecutionEvent.CANCEL): ExecutionState.CANCELLED,
        }

    @pytest.mark.parametrize("state", sorted(TERMINAL_STATES, key=lambda s: s.value))
    def test_terminal_states_accept_nothing(self, state: ExecutionState):
        for event in ExecutionEvent:
            with pytest.raises(InvalidTransitionError):
                next_state(state, event)

    def test_completed_to_running_rejected(self):
        with pytest.raises(InvalidTransitionError, match="completed → stage_started"):
            next_state(ExecutionState.COMPLETED, ExecutionEvent.STAGE_STARTED)


# =============================================================================
# Execution.apply
# =============================================================================


class TestExecutionApply:
    def test_new_execution_is_queued(self):
        execution = make_execution(priority=1)
        assert execution.state is ExecutionState.QUEUED
        assert execution.queued_at is not None
        assert execution.id.startswith("exec_")

    def test_happy_path_stamps_timestamps(self):
        execution = make_execution()
        t0 = utcnow()
        execution.apply(ExecutionEvent.ACCEPTED, at=t0)
        assert execution.last_progress_at == t0
        assert execution.started_at is None

        t1 = t0 + timedelta(seconds=5)
        execution.apply(ExecutionEvent.STAGE_STARTED, at=t1)
        assert execution.state is ExecutionState.RUNNING
        assert execution.started_at == t1

        t2 = t1 + timedelta(seconds=30)
        execution.apply(ExecutionEvent.ALL_STAGES_COMPLETED, at=t2)
        assert execution.state is ExecutionState.COMPLETED
        assert execution.completed_at == t2
        assert execution.duration_seconds == 30.0

    def test_failed_apply_leaves_state_untouched(self):
        execution = make_execution()
        with pytest.raises(InvalidTransitionError):
            execution.apply(ExecutionEvent.ALL_STAGES_COMPLETED)
        assert execution.state is ExecutionState.QUEUED

    def test_provider_assigned_once(self):
        execution = make_execution()
        execution.assign_provider("jenkins", "jenkins-1")
        with pytest.raises(InvariantViolation):
            execution.assign_provider("gitlab", "gitlab-1")
        assert execution.provider == "jenkins"


# =============================================================================
# Stages
# =============================================================================


class TestStageAdvance:
    def test_forward_only(self):
        stage = Stage(name="Build", order=1)
        assert stage.advance(StageState.RUNNING) is True
        assert stage.started_at is not None
        assert stage.advance(StageState.PENDING) is False
        assert stage.state is StageState.RUNNING

    def test_final_states_are_sticky(self):
        stage = Stage(name="Build", order=1)
        assert stage.advance(StageState.COMPLETED) is True
        assert stage.started_at is not None and stage.completed_at is not None
        assert stage.advance(StageState.FAILED) is False
        assert stage.state is StageState.COMPLETED

    def test_same_state_is_no_change(self):
        stage = Stage(name="Test", order=2, state=StageState.RUNNING)
        assert stage.advance(StageState.RUNNING) is False


def test_only_reported_failure_is_a_pipeline_fault():
    faults = {c for c in FailureCategory if c.pipeline_fault}
    assert faults == {FailureCategory.PROVIDER_REPORTED_FAILURE}
