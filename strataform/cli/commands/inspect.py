"""``strataform output`` and ``strataform providers``."""

from __future__ import annotations

import json
from pathlib import Path

import typer

from strataform.cli.common import build_engine, config_option, console, handle_errors, state_option
from strataform.config import settings
from strataform.core.expressions import describe
from strataform.providers.registry import build_registry, discover_factories
from strataform.render.renderer import SENSITIVE, Renderer


def _sensitive_names(config: Path) -> list[str]:
    """Sensitive output names, when a configuration is available."""
    if not config.exists():
        return []
    with handle_errors():
        document = build_engine(config).document
    return [name for name, output in document.outputs.items() if output.sensitive]


def output_cmd(
    name: str = typer.Argument(None, help="Print only this output."),
    config: Path = config_option(),
    state: Path = state_option(),
    as_json: bool = typer.Option(False, "--json", help="Print raw JSON, including sensitive values."),
) -> None:
    """Show the outputs recorded by the last apply or refresh."""
    engine = build_engine(None, state=state)
    outputs = engine.outputs()

    if name is not None:
        if name not in outputs:
            console.print(f"[bold red]Error:[/bold red] no output named {name!r}")
            raise typer.Exit(code=1)
        if as_json:
            typer.echo(json.dumps(outputs[name], indent=2, sort_keys=True))
        elif name in _sensitive_names(config):
            typer.echo(SENSITIVE)
        else:
            typer.echo(describe(outputs[name]))
        return

    if as_json:
        typer.echo(json.dumps(outputs, indent=2, sort_keys=True))
        return
    if not outputs:
        console.print("[dim]No outputs recorded.[/dim]")
        return
    console.print(Renderer(console=console).render_outputs(outputs, _sensitive_names(config)))


def providers_cmd() -> None:
    """List every available provider and the resource types it serves."""
    with handle_errors():
        factories = discover_factories()
        registry = build_registry(factories, {}, settings, factories=factories)
    console.print(Renderer(console=console).render_providers(registry.kinds()))
