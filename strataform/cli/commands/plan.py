"""``strataform validate`` and ``strataform plan``.

``plan`` never mutates state or infrastructure. With ``--out`` the plan is
saved as JSON for a later ``apply --plan-file``; ``--detailed-exitcode``
exits 2 when changes are pending.
"""

from __future__ import annotations

from pathlib import Path

import typer

from strataform.cli.common import (
    build_engine,
    config_option,
    console,
    handle_errors,
    refresh_option,
    state_option,
    var_file_option,
    var_option,
)
from strataform.render.renderer import Renderer


def validate_cmd(
    config: Path = config_option(),
    variables: list[str] = var_option(),
    var_files: list[Path] = var_file_option(),
) -> None:
    """Check the configuration: syntax, references, cycles, variables, types."""
    with handle_errors():
        engine = build_engine(config, variables, var_files, None)
        graph = engine.validate()
    console.print(
        f"[bold green]Configuration is valid.[/bold green] "
        f"{len(graph)} node(s), {len(graph.edges())} reference(s)."
    )


def plan_cmd(
    config: Path = config_option(),
    variables: list[str] = var_option(),
    var_files: list[Path] = var_file_option(),
    state: Path = state_option(),
    refresh: bool = refresh_option(),
    destroy: bool = typer.Option(
        False,
        "--destroy",
        help="Plan the destruction of every object in state.",
    ),
    out: Path = typer.Option(
        None,
        "--out",
        "-o",
        help="Save the plan to this JSON file.",
    ),
    detailed_exitcode: bool = typer.Option(
        False,
        "--detailed-exitcode",
        help="Exit 2 when the plan contains changes.",
    ),
    show_noop: bool = typer.Option(
        False,
        "--show-unchanged",
        help="Also list resources with no changes.",
    ),
) -> None:
    """Show the actions needed to reconcile state with the configuration."""
    with handle_errors():
        engine = build_engine(config, variables, var_files, state)
        plan = engine.plan(destroy=destroy, refresh=refresh)

    console.print(Renderer(console=console).render_plan(plan, show_noop=show_noop))
    if out is not None:
        plan.save(out)
        console.print(f"Saved plan to [bold]{out}[/bold]. Apply it with: strataform apply --plan-file {out}")

    if detailed_exitcode and plan.has_changes:
        raise typer.Exit(code=2)
