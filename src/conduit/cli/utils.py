"""
CLI utility helpers: output formatting and orchestrator construction.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from pathlib import Path
from typing import Any, NoReturn

import typer
import yaml
from rich.console import Console
from rich.table import Table

from conduit.core.config import load_config
from conduit.core.errors import ConduitError
from conduit.core.logging import configure_logging
from conduit.core.settings import OrchestratorSettings
from conduit.orchestrator import Orchestrator
from conduit.templates.models import ParameterSpec, ParameterType

console = Console()
err_console = Console(stderr=True)


# ── Orchestrator helper ──────────────────────────────────────────────────


def build_orchestrator(config_path: Path | None, *, log_level: str | None = None) -> Orchestrator:
    """Settings from the environment + providers/templates from *config_path*."""
    settings = OrchestratorSettings()
    configure_logging(level=log_level or settings.log_level, json_format=settings.log_json)
    try:
        config = load_config(config_path)
        return Orchestrator.from_config(config, settings)
    except (ConduitError, ValueError, OSError) as e:
        fail(f"Cannot load configuration: {e}")


def parse_params(
    pairs: list[str] | None, schema: Mapping[str, ParameterSpec] | None = None
) -> dict[str, Any]:
    """``key=value`` pairs; values are parsed as YAML scalars (``3``, ``true``).

    Parameters that *schema* declares as strings keep the raw text, so
    ``node_version=22`` stays ``"22"``.
    """
    schema = schema or {}
    params: dict[str, Any] = {}
    for pair in pairs or []:
        key, sep, raw = pair.partition("=")
        if not sep or not key:
            fail(f"Invalid parameter {pair!r}, expected key=value")
        spec = schema.get(key)
        if not raw or (spec is not None and spec.type is ParameterType.STRING):
            params[key] = raw
        else:
            params[key] = yaml.safe_load(raw)
    return params


# ── Output helpers ───────────────────────────────────────────────────────


def fail(message: str) -> NoReturn:
    err_console.print(f"[bold red]Error:[/bold red] {message}")
    raise typer.Exit(code=1)


def print_json(payload: Any) -> None:
    console.print_json(json.dumps(payload, default=str))


def render_table(title: str, columns: list[str], rows: list[list[Any]]) -> None:
    table = Table(title=title, show_lines=False)
    for col in columns:
        table.add_column(col)
    for row in rows:
        table.add_row(*("" if v is None else str(v) for v in row))
    console.print(table)
