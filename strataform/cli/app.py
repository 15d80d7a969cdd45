"""Main Typer application — imports and registers all CLI commands.

Entry point: ``strataform`` (configured via pyproject.toml console_scripts).
"""

from __future__ import annotations

import logging

import typer

from strataform import __version__
from strataform.cli.commands.apply import apply_cmd, destroy_cmd, refresh_cmd
from strataform.cli.commands.inspect import output_cmd, providers_cmd
from strataform.cli.commands.plan import plan_cmd, validate_cmd
from strataform.cli.commands.state_cmd import state_app
from strataform.cli.common import configure_logging, console

app = typer.Typer(
    name="strataform",
    help="Strataform: declarative infrastructure, planned and applied in dependency order.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=False,
)


def _show_version(value: bool) -> None:
    if value:
        console.print(f"strataform {__version__}")
        raise typer.Exit()


@app.callback()
def main_callback(
    log_level: str = typer.Option(
        None,
        "--log-level",
        help="Logging level (DEBUG, INFO, WARNING, ERROR). Overrides STRATAFORM_LOG_LEVEL.",
    ),
    version: bool = typer.Option(
        False,
        "--version",
        callback=_show_version,
        is_eager=True,
        help="Show the version and exit.",
    ),
) -> None:
    if log_level:
        logging.getLogger().setLevel(log_level.upper())


# Register subcommands
app.command(name="validate", help="Check the configuration without touching state.")(validate_cmd)
app.command(name="plan", help="Show what apply would change.")(plan_cmd)
app.command(name="apply", help="Reconcile infrastructure with the configuration.")(apply_cmd)
app.command(name="destroy", help="Destroy everything recorded in state.")(destroy_cmd)
app.command(name="refresh", help="Read back every managed object and record drift.")(refresh_cmd)
app.command(name="output", help="Show recorded outputs.")(output_cmd)
app.command(name="providers", help="List providers and resource types.")(providers_cmd)
app.add_typer(state_app, name="state")


def main() -> None:
    """CLI entry point."""
    configure_logging()
    app()


if __name__ == "__main__":
    main()
