"""Runtime settings for the orchestrator.

``OrchestratorSettings`` holds every tunable the dispatcher, tracker and
health monitor read: intervals, timeouts, retry budget and storage. Values
come from ``CONDUIT_*`` environment variables or a ``.env`` file, validated
by pydantic at startup.

Provider and template *definitions* are not settings; they live in the YAML
file loaded by :mod:`conduit.core.config`.

Examples:
    >>> from conduit.core.settings import OrchestratorSettings
    >>> settings = OrchestratorSettings(poll_interval=0.1)
    >>> settings.dispatch_max_retries
    3

Tags:
    settings, configuration, pydantic, environment, conduit
"""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class OrchestratorSettings(BaseSettings):
    """Tunables for one orchestrator instance.

    Fields
    ──────
    log_level / log_json     : structlog configuration
    instance_id              : owning-instance marker recorded on executions
    poll_interval            : tracker status-poll period (seconds)
    health_interval          : health probe period per provider (seconds)
    health_jitter            : max random offset added to each probe (seconds)
    health_timeout           : bound on a single health_check() call
    health_failure_threshold : consecutive failures before ``unhealthy``
    provider_call_timeout    : bound on submit/fetch_status/cancel calls
    dispatch_max_retries     : retries after the first submit() attempt
    dispatch_backoff_*       : exponential backoff between submit() retries
    stall_threshold          : seconds without stage progress before re-check
    idle_wait                : dispatcher sleep when nothing is dispatchable
    circuit_*                : exhausted dispatches before a provider's circuit
                               opens, and seconds before it is retried
    store_path               : SQLite file; ``None`` keeps executions in memory
    """

    model_config = SettingsConfigDict(
        env_prefix="CONDUIT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Observability ────────────────────────────────────────────
    log_level: str = "INFO"
    log_json: bool | None = None
    instance_id: str = "conduit-local"

    # ── Tracking ─────────────────────────────────────────────────
    poll_interval: float = Field(default=5.0, gt=0)
    stall_threshold: float = Field(default=600.0, gt=0)

    # ── Health ───────────────────────────────────────────────────
    health_interval: float = Field(default=30.0, gt=0)
    health_jitter: float = Field(default=3.0, ge=0)
    health_timeout: float = Field(default=5.0, gt=0)
    health_failure_threshold: int = Field(default=3, ge=1)

    # ── Dispatch ─────────────────────────────────────────────────
    provider_call_timeout: float = Field(default=30.0, gt=0)
    dispatch_max_retries: int = Field(default=3, ge=0)
    dispatch_backoff_base: float = Field(default=1.0, ge=0)
    dispatch_backoff_max: float = Field(default=30.0, ge=0)
    dispatch_backoff_multiplier: float = Field(default=2.0, ge=1)
    dispatch_backoff_jitter: bool = True
    idle_wait: float = Field(default=1.0, gt=0)
    circuit_failure_threshold: int = Field(default=5, ge=1)
    circuit_recovery_timeout: float = Field(default=60.0, ge=0)

    # ── Storage ──────────────────────────────────────────────────
    store_path: Path | None = Field(
        default=None,
        description="SQLite execution store; in-memory when unset",
    )
