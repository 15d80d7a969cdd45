"""``strataform apply``, ``strataform destroy`` and ``strataform refresh``.

Each holds the state lock for the duration of the run. A first Ctrl-C
stops scheduling new operations and lets running ones finish.
"""

from __future__ import annotations

from pathlib import Path

import typer
from rich.markup import escape
from rich.table import Table

from strataform.cli.common import (
    build_engine,
    cancel_on_interrupt,
    config_option,
    console,
    handle_errors,
    parallelism_option,
    refresh_option,
    run_options,
    state_option,
    timeout_option,
    var_file_option,
    var_option,
)
from strataform.errors import StrataformError
from strataform.models.apply import ApplySummary, StepOutcome, StepStatus
from strataform.models.plan import Plan
from strataform.render.renderer import Renderer

_PROGRESS = {
    StepStatus.SUCCEEDED: "[green]done[/green]",
    StepStatus.SKIPPED: "[yellow]skipped[/yellow]",
    StepStatus.FAILED: "[bold red]failed[/bold red]",
    StepStatus.BLOCKED: "[bold red]blocked[/bold red]",
    StepStatus.CANCELLED: "[dim]cancelled[/dim]",
}


def _progress(outcome: StepOutcome) -> None:
    console.print(f"  {outcome.key}: {_PROGRESS[outcome.status]}")


def _finish(summary: ApplySummary, renderer: Renderer, sensitive: list[str]) -> None:
    renderer.print_summary(summary)
    if summary.outputs:
        console.print(renderer.render_outputs(summary.outputs, sensitive))
    if not summary.ok:
        raise typer.Exit(code=1)


def _confirm(question: str) -> None:
    if not typer.confirm(question, default=False):
        console.print("[yellow]Cancelled; nothing was changed.[/yellow]")
        raise typer.Exit(code=1)


def apply_cmd(
    config: Path = config_option(),
    variables: list[str] = var_option(),
    var_files: list[Path] = var_file_option(),
    state: Path = state_option(),
    plan_file: Path = typer.Option(
        None,
        "--plan-file",
        help="Apply a plan saved with `plan --out` instead of planning now.",
    ),
    auto_approve: bool = typer.Option(
        False,
        "--auto-approve",
        "-y",
        help="Skip the interactive confirmation.",
    ),
    parallelism: int = parallelism_option(),
    timeout: float = timeout_option(),
    refresh: bool = refresh_option(),
) -> None:
    """Plan (or load a saved plan) and apply it."""
    renderer = Renderer(console=console)
    options = run_options(parallelism, timeout, refresh)

    with handle_errors():
        if plan_file is not None:
            try:
                plan = Plan.load(plan_file)
            except (OSError, ValueError) as exc:
                raise StrataformError(f"cannot load plan {plan_file}: {exc}") from exc
            engine = build_engine(None, None, None, state)
        else:
            engine = build_engine(config, variables, var_files, state)
            plan = engine.plan(refresh=options.refresh)
            renderer.print_plan(plan)
            if plan.has_changes and not auto_approve:
                _confirm("Apply these changes?")

        with cancel_on_interrupt() as cancel_event:
            summary = engine.apply(
                plan, options=options, cancel_event=cancel_event, on_outcome=_progress
            )

    _finish(summary, renderer, plan.sensitive_outputs)


def destroy_cmd(
    config: Path = config_option(),
    variables: list[str] = var_option(),
    var_files: list[Path] = var_file_option(),
    state: Path = state_option(),
    auto_approve: bool = typer.Option(
        False,
        "--auto-approve",
        "-y",
        help="Skip the interactive confirmation.",
    ),
    parallelism: int = parallelism_option(),
    timeout: float = timeout_option(),
    refresh: bool = refresh_option(),
) -> None:
    """Destroy every object recorded in state."""
    renderer = Renderer(console=console)
    options = run_options(parallelism, timeout, refresh)

    with handle_errors():
        engine = build_engine(config, variables, var_files, state)
        plan = engine.plan(destroy=True, refresh=options.refresh)
        renderer.print_plan(plan)
        if not plan.has_changes:
            return
        if not auto_approve:
            _confirm("Destroy all of these objects?")
        with cancel_on_interrupt() as cancel_event:
            summary = engine.apply(
                plan, options=options, cancel_event=cancel_event, on_outcome=_progress
            )

    _finish(summary, renderer, [])


def refresh_cmd(
    config: Path = config_option(),
    variables: list[str] = var_option(),
    var_files: list[Path] = var_file_option(),
    state: Path = state_option(),
) -> None:
    """Update state from what the providers report, recording drift."""
    with handle_errors():
        engine = build_engine(config, variables, var_files, state)
        report = engine.refresh()

    if not report:
        console.print("[dim]State is empty; nothing to refresh.[/dim]")
        return
    styles = {"drifted": "yellow", "missing": "bold red", "unchanged": "green"}
    table = Table(title="Refresh", show_header=True, header_style="bold cyan")
    table.add_column("Address")
    table.add_column("Result")
    for address, result in sorted(report.items()):
        table.add_row(escape(address), f"[{styles[result]}]{result}[/{styles[result]}]")
    console.print(table)
