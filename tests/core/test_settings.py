"""Tests for OrchestratorSettings."""

from __future__ import annotations

from pathlib import Path

import pydantic
import pytest

from conduit.core.settings import OrchestratorSettings


def test_defaults():
    settings = OrchestratorSettings(_env_file=None)
    assert settings.poll_interval == 5.0
    assert settings.health_interval == 30.0
    assert settings.health_failure_threshold == 3
    assert settings.dispatch_max_retries == 3
    assert settings.store_path is None
    assert settings.circuit_failure_threshold == 5
    assert settings.circuit_recovery_timeout == 60.0


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("CONDUIT_POLL_INTERVAL", "0.5")
    monkeypatch.setenv("CONDUIT_DISPATCH_MAX_RETRIES", "5")
    monkeypatch.setenv("CONDUIT_STORE_PATH", "/tmp/conduit.db")
    settings = OrchestratorSettings(_env_file=None)
    assert settings.poll_interval == 0.5
    assert settings.dispatch_max_retries == 5
    assert settings.store_path == Path("/tmp/conduit.db")


def test_env_file(tmp_path):
    env_file = tmp_path / ".env"
    env_file.write_text("CONDUIT_HEALTH_FAILURE_THRESHOLD=5\n", encoding="utf-8")
    assert OrchestratorSettings(_env_file=env_file).health_failure_threshold == 5


@pytest.mark.parametrize(
    "field, value",
    [
        ("poll_interval", 0),
        ("health_failure_threshold", 0),
        ("dispatch_max_retries", -1),
        ("provider_call_timeout", -1.0),
        ("circuit_failure_threshold", 0),
        ("circuit_recovery_timeout", -1.0),
    ],
)
def test_invalid_values(field, value):
    with pytest.raises(pydantic.ValidationError):
        OrchestratorSettings(_env_file=None, **{field: value})
