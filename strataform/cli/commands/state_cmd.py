"""``strataform state`` — inspect and repair the State Store directly."""

from __future__ import annotations

from pathlib import Path

import typer
from pydantic import ValidationError as PydanticValidationError
from rich.markup import escape

from strataform.cli.common import build_engine, console, handle_errors, state_option
from strataform.models.state import StateDocument
from strataform.render.renderer import Renderer

state_app = typer.Typer(
    name="state",
    help="Inspect or edit recorded state.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


@state_app.command(name="list", help="List every record in state.")
def state_list_cmd(state: Path = state_option()) -> None:
    engine = build_engine(None, state=state)
    records = engine.state_records()
    if not records:
        console.print("[dim]State is empty.[/dim]")
        return
    console.print(Renderer(console=console).render_state(records))
    console.print(f"[dim]serial {engine.store.serial}, lineage {engine.store.lineage}[/dim]")


@state_app.command(name="show", help="Show one record in detail.")
def state_show_cmd(
    address: str = typer.Argument(..., help="Resource address, e.g. aws_instance.web."),
    state: Path = state_option(),
) -> None:
    engine = build_engine(None, state=state)
    record = engine.store.get(address)
    if record is None:
        console.print(f"[bold red]Error:[/bold red] no record for {address}")
        raise typer.Exit(code=1)
    console.print(Renderer(console=console).render_record(record))


@state_app.command(name="rm", help="Forget a record without destroying the object.")
def state_rm_cmd(
    address: str = typer.Argument(..., help="Resource address to forget."),
    state: Path = state_option(),
) -> None:
    with handle_errors():
        engine = build_engine(None, state=state)
        removed = engine.state_rm(address)
    if not removed:
        console.print(f"[bold red]Error:[/bold red] no record for {address}")
        raise typer.Exit(code=1)
    console.print(f"Removed [bold]{address}[/bold] from state.")


@state_app.command(name="pull", help="Print the whole state as JSON.")
def state_pull_cmd(state: Path = state_option()) -> None:
    engine = build_engine(None, state=state)
    typer.echo(engine.state_document().model_dump_json(indent=2))


@state_app.command(name="push", help="Replace the state with a document written by 'state pull'.")
def state_push_cmd(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="State document (JSON)."),
    state: Path = state_option(),
) -> None:
    try:
        document = StateDocument.model_validate_json(path.read_text(encoding="utf-8"))
    except PydanticValidationError as exc:
        console.print(f"[bold red]Error:[/bold red] {path} is not a state document")
        console.print(escape(str(exc)))
        raise typer.Exit(code=1) from exc
    with handle_errors():
        serial = build_engine(None, state=state).state_push(document)
    console.print(
        f"Pushed [bold]{len(document.resources)}[/bold] record(s); state is now at serial {serial}."
    )


@state_app.command(name="force-unlock", help="Remove a stale state lock.")
def state_force_unlock_cmd(
    state: Path = state_option(),
    force: bool = typer.Option(False, "--force", "-f", help="Do not ask for confirmation."),
) -> None:
    engine = build_engine(None, state=state)
    info = engine.store.lock_info()
    if info is None:
        console.print("[dim]State is not locked.[/dim]")
        return
    console.print(
        f"Lock [bold]{info.lock_id}[/bold] held by [bold]{info.owner}[/bold] "
        f"since {info.acquired_at:%Y-%m-%d %H:%M:%S}."
    )
    if not force and not typer.confirm("Remove it? Only do this if no apply is running.", default=False):
        raise typer.Exit(code=1)
    engine.store.force_unlock()
    console.print("[green]State unlocked.[/green]")
