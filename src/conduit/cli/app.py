"""
Root Typer application for the conduit CLI.

Commands:
    run        start the orchestrator and serve until SIGINT/SIGTERM
    providers  list configured providers, optionally probing health
    templates  list the template catalog
    resolve    resolve a template offline and print the pipeline config
"""

from __future__ import annotations

import asyncio
import signal
from pathlib import Path

import typer

from conduit.cli.utils import (
    build_orchestrator,
    console,
    fail,
    parse_params,
    print_json,
    render_table,
)
from conduit.core.errors import TemplateError
from conduit.orchestrator import Orchestrator

app = typer.Typer(
    name="conduit",
    help="conduit: pipeline orchestrator across CI/CD providers.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

ConfigOption = typer.Option(None, "--config", "-c", exists=True, dir_okay=False, help="Orchestrator YAML file.")


def _version_callback(value: bool) -> None:
    if value:
        from importlib.metadata import PackageNotFoundError, version

        try:
            v = version("conduit-orchestrator")
        except PackageNotFoundError:
            v = "unknown"
        typer.echo(f"conduit {v}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(
        None, "--version", "-V", help="Show version and exit.", callback=_version_callback, is_eager=True
    ),
) -> None:
    """conduit CLI: run the orchestrator and inspect providers and templates."""


# ── run ──────────────────────────────────────────────────────────────────


async def _serve(orchestrator: Orchestrator) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)
    async with orchestrator:
        console.print(
            f"[green]✓[/green] conduit running as [bold]{orchestrator.settings.instance_id}[/bold] "
            f"with {len(orchestrator.registry)} provider(s); Ctrl+C to stop"
        )
        await stop.wait()
    console.print("[dim]Stopped.[/dim]")


@app.command("run")
def run(
    config: Path | None = ConfigOption,
    log_level: str | None = typer.Option(None, "--log-level", "-l"),
) -> None:
    """Start the orchestrator loops and serve until interrupted."""
    orchestrator = build_orchestrator(config, log_level=log_level)
    asyncio.run(_serve(orchestrator))


# ── providers ────────────────────────────────────────────────────────────


@app.command("providers")
def providers(
    config: Path | None = ConfigOption,
    check: bool = typer.Option(False, "--check", help="Probe every provider once."),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """List configured providers."""
    orchestrator = build_orchestrator(config, log_level="WARNING")
    if check:
        asyncio.run(orchestrator.check_providers_health())
    summaries = orchestrator.get_providers()
    if json_out:
        print_json([s.to_dict() for s in summaries])
        return
    render_table(
        "Providers",
        ["Name", "Type", "Capabilities", "Enabled", "Health", "Connection", "Max", "Connection params"],
        [
            [
                s.name,
                s.provider_type,
                ", ".join(s.capabilities),
                "yes" if s.enabled else "no",
                s.health.value,
                s.connection.value,
                s.max_concurrent or "∞",
                ", ".join(f"{k}={v}" for k, v in s.connection_params.items()),
            ]
            for s in summaries
        ],
    )


# ── templates ────────────────────────────────────────────────────────────


@app.command("templates")
def templates(
    config: Path | None = ConfigOption,
    show_all: bool = typer.Option(False, "--all", help="Include disabled templates."),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """List the template catalog."""
    orchestrator = build_orchestrator(config, log_level="WARNING")
    items = orchestrator.catalog.list_templates(include_disabled=show_all)
    if json_out:
        print_json([t.to_dict() for t in items])
        return
    render_table(
        "Templates",
        ["ID", "Name", "Version", "Pipeline type", "Required", "Stages"],
        [
            [
                t.id,
                t.name,
                t.version,
                t.pipeline_type,
                ", ".join(n for n, p in t.parameters.items() if p.required) or "-",
                len(t.stages),
            ]
            for t in items
        ],
    )


# ── resolve ──────────────────────────────────────────────────────────────


@app.command("resolve")
def resolve(
    template_id: str = typer.Argument(..., help="Template id, e.g. nodejs-basic"),
    param: list[str] | None = typer.Option(None, "--param", "-p", help="key=value (repeatable)"),
    environment: str | None = typer.Option(None, "--environment", "-e"),
    config: Path | None = ConfigOption,
) -> None:
    """Resolve a template with parameters and print the pipeline config."""
    orchestrator = build_orchestrator(config, log_level="WARNING")
    try:
        schema = orchestrator.catalog.get(template_id).parameters
        resolved = orchestrator.resolver.resolve(
            template_id, parse_params(param, schema), environment=environment
        )
    except TemplateError as e:
        fail(e.message)
    print_json(resolved.to_dict())


if __name__ == "__main__":
    app()
