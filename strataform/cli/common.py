"""Shared CLI plumbing — common options, engine construction, error exits."""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import typer
from rich.console import Console
from rich.markup import escape

from strataform.config import settings
from strataform.core.engine import Engine
from strataform.core.variables import parse_var_assignment
from strataform.errors import StrataformError
from strataform.models.config import RunOptions

logger = logging.getLogger(__name__)

console = Console()

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


# ---------------------------------------------------------------------------
# Option factories
# ---------------------------------------------------------------------------


def config_option() -> Path:
    return typer.Option(
        Path("."),
        "--config",
        "-c",
        help="Configuration file or directory of *.tf / *.tf.json files.",
    )


def var_option() -> list[str]:
    return typer.Option(
        None,
        "--var",
        help="Set a variable: NAME=VALUE. May be repeated.",
    )


def var_file_option() -> list[Path]:
    return typer.Option(
        None,
        "--var-file",
        help="Load variables from a .json or .tfvars file. May be repeated.",
    )


def state_option() -> Path:
    return typer.Option(
        None,
        "--state",
        "-s",
        help="Path to the state database (default: STRATAFORM_STATE_PATH).",
    )


def parallelism_option() -> int:
    return typer.Option(
        None,
        "--parallelism",
        "-p",
        min=1,
        help="Maximum number of concurrent provider operations.",
    )


def timeout_option() -> float:
    return typer.Option(
        None,
        "--timeout",
        help="Seconds allowed for each provider call.",
    )


def refresh_option() -> bool:
    return typer.Option(
        None,
        "--refresh/--no-refresh",
        help="Read every managed object back before planning.",
        show_default=False,
    )


# ---------------------------------------------------------------------------
# Construction helpers
# ---------------------------------------------------------------------------


def build_engine(
    config: Path | None,
    variables: list[str] | None = None,
    var_files: list[Path] | None = None,
    state: Path | None = None,
) -> Engine:
    """Create an ``Engine`` from the common command-line options."""
    assignments = dict(parse_var_assignment(text) for text in variables or [])
    return Engine(
        config,
        variables=assignments,
        var_files=list(var_files or []),
        state_path=state,
    )


def run_options(
    parallelism: int | None = None,
    timeout: float | None = None,
    refresh: bool | None = None,
) -> RunOptions:
    return RunOptions.from_settings(
        settings,
        parallelism=parallelism,
        timeout_seconds=timeout,
        refresh=refresh,
    )


def configure_logging(level: str | None = None) -> None:
    """Configure the root logger once, from settings unless overridden."""
    logging.basicConfig(level=(level or settings.log_level).upper(), format=LOG_FORMAT)


@contextmanager
def handle_errors() -> Iterator[None]:
    """Print engine errors and exit with status 1."""
    try:
        yield
    except StrataformError as exc:
        if settings.debug:
            console.print_exception()
        console.print(f"[bold red]Error:[/bold red] {escape(str(exc))}")
        raise typer.Exit(code=1) from exc


@contextmanager
def cancel_on_interrupt() -> Iterator[threading.Event]:
    """Turn the first Ctrl-C into a graceful cancellation of the apply."""
    event = threading.Event()

    def _handler(signum: int, frame: object) -> None:
        if event.is_set():
            raise KeyboardInterrupt
        console.print(
            "[bold yellow]Interrupt received: finishing running operations, "
            "no new ones will start. Press Ctrl-C again to abort.[/bold yellow]"
        )
        event.set()

    try:
        previous = signal.signal(signal.SIGINT, _handler)
    except ValueError:
        # Not on the main thread; cancellation stays available via the event.
        logger.debug("SIGINT handler not installed outside the main thread")
        yield event
        return
    try:
        yield event
    finally:
        signal.signal(signal.SIGINT, previous)
