"""Tests for request validation, serialization and list filters."""

from __future__ import annotations

from datetime import timedelta

import pytest

from conduit.core.errors import ValidationError
from conduit.execution.models import (
    Execution,
    ExecutionEvent,
    ExecutionFilter,
    ExecutionState,
    FailureCategory,
    FailureReason,
    Pagination,
    Stage,
    StageState,
)
from tests._support import make_execution, make_request


class TestRequestValidation:
    def test_valid_inline_request(self):
        make_request().validate()

    def test_valid_template_request(self):
        make_request(template_id="nodejs-basic", parameters={"language": "javascript"}).validate()

    @pytest.mark.parametrize("repository", ["", "   "])
    def test_repository_required(self, repository):
        with pytest.raises(ValidationError) as exc_info:
            make_request(repository=repository).validate()
        assert exc_info.value.field == "repository"

    @pytest.mark.parametrize("priority", [0, 11, -1, True, "1"])
    def test_priority_bounds(self, priority):
        with pytest.raises(ValidationError) as exc_info:
            make_request(priority=priority).validate()
        assert exc_info.value.context["field"] == "priority"

    @pytest.mark.parametrize("priority", [1, 5, 10])
    def test_priority_accepted(self, priority):
        make_request(priority=priority).validate()

    def test_both_config_and_template_rejected(self):
        with pytest.raises(ValidationError, match="exactly one"):
            make_request(template_id="nodejs-basic", pipeline_config={}).validate()

    def test_neither_config_nor_template_rejected(self):
        with pytest.raises(ValidationError, match="exactly one"):
            make_request(pipeline_config=None).validate()

    def test_empty_branch_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            make_request(branch="").validate()
        assert exc_info.value.field == "branch"

    def test_parameters_must_be_mapping(self):
        with pytest.raises(ValidationError):
            make_request(parameters=["a"]).validate()


class TestSerialization:
    def test_round_trip_preserves_state_fields(self):
        execution = make_execution(template_id="nodejs-basic", parameters={"language": "typescript"})
        execution.stages = [Stage("Build", 0, StageState.COMPLETED), Stage("Test", 1)]
        execution.assign_provider("jenkins", "jenkins-42")
        execution.apply(ExecutionEvent.ACCEPTED)
        execution.apply(ExecutionEvent.PROVIDER_FAILED)
        execution.failure = FailureReason(
            FailureCategory.PROVIDER_REPORTED_FAILURE, "npm test exited 1", {"exit_code": 1}
        )

        restored = Execution.from_dict(execution.to_dict())

        assert restored.state is ExecutionState.FAILED
        assert restored.provider_ref == "jenkins-42"
        assert restored.failure == execution.failure
        assert [s.name for s in restored.stages] == ["Build", "Test"]
        assert restored.stages[0].state is StageState.COMPLETED

    def test_failure_dict_flags_pipeline_fault(self):
        reason = FailureReason(FailureCategory.PROVIDER_TIMEOUT, "stalled")
        assert reason.to_dict() == {
            "category": "provider-timeout",
            "message": "stalled",
            "pipeline_fault": False,
        }

    def test_snapshot_is_detached(self):
        execution = make_execution()
        copy = execution.snapshot()
        copy.parameters["x"] = 1
        assert "x" not in execution.parameters


class TestFilter:
    def test_matches_fields(self):
        execution = make_execution(environment="staging", template_id="java-maven")
        assert ExecutionFilter(environment="staging").matches(execution)
        assert not ExecutionFilter(environment="production").matches(execution)
        assert ExecutionFilter(template_id="java-maven", state=ExecutionState.QUEUED).matches(execution)
        assert not ExecutionFilter(provider="jenkins").matches(execution)

    def test_time_bounds_are_half_open(self):
        execution = make_execution()
        at = execution.created_at
        assert ExecutionFilter(since=at).matches(execution)
        assert not ExecutionFilter(until=at).matches(execution)
        assert ExecutionFilter(until=at + timedelta(seconds=1)).matches(execution)


class TestPagination:
    def test_defaults(self):
        assert Pagination() == Pagination(limit=50, offset=0)

    @pytest.mark.parametrize(("limit", "offset"), [(0, 0), (10, -1)])
    def test_bounds(self, limit, offset):
        with pytest.raises(ValidationError):
            Pagination(limit=limit, offset=offset)
