"""Rich terminal renderer for plans, apply summaries, state and outputs.

Color scheme
------------
- green     : create / succeeded
- yellow    : update / skipped
- magenta   : replace
- red       : destroy / failed
- cyan      : read
- dim       : no-op / cancelled
- bold red  : blocked
"""

from __future__ import annotations

import json
from typing import Any

from rich.console import Console, Group
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from strataform.core.expressions import describe
from strataform.models.apply import ApplySummary, StepStatus
from strataform.models.plan import ActionKind, Plan, ResourceChange
from strataform.models.state import StateRecord
from strataform.providers.registry import ResourceKind


# ---------------------------------------------------------------------------
# Action / status -> Rich style mapping
# ---------------------------------------------------------------------------

_ACTION_STYLES: dict[ActionKind, str] = {
    ActionKind.CREATE: "green",
    ActionKind.UPDATE: "yellow",
    ActionKind.REPLACE: "magenta",
    ActionKind.DESTROY: "red",
    ActionKind.READ: "cyan",
    ActionKind.NOOP: "dim",
}

_ACTION_SYMBOLS: dict[ActionKind, str] = {
    ActionKind.CREATE: "+",
    ActionKind.UPDATE: "~",
    ActionKind.REPLACE: "-/+",
    ActionKind.DESTROY: "-",
    ActionKind.READ: "<=",
    ActionKind.NOOP: " ",
}

_STATUS_STYLES: dict[StepStatus, str] = {
    StepStatus.SUCCEEDED: "[green]SUCCEEDED[/green]",
    StepStatus.FAILED: "[bold red]FAILED[/bold red]",
    StepStatus.BLOCKED: "[bold red]BLOCKED[/bold red]",
    StepStatus.CANCELLED: "[dim]CANCELLED[/dim]",
    StepStatus.SKIPPED: "[yellow]SKIPPED[/yellow]",
}

SENSITIVE = "(sensitive value)"


class Renderer:
    """Renders engine results as Rich renderables.

    Parameters
    ----------
    console:
        Rich Console instance. A new one is created if not provided.
    """

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    # ------------------------------------------------------------------
    # Plans
    # ------------------------------------------------------------------

    def render_plan(self, plan: Plan, *, show_noop: bool = False) -> Panel:
        """The plan as a Panel: one block per change, then the step order."""
        parts: list[Any] = []
        for change in plan.changes:
            if change.action == ActionKind.NOOP and not show_noop:
                continue
            parts.append(self._change_text(change))

        if not parts:
            parts.append(Text("No changes. Infrastructure matches the configuration.", style="green"))
        else:
            parts.append(Text(""))
            parts.append(self._steps_table(plan))

        summary = plan.summary()
        footer = (
            f"[bold]Plan:[/bold] [green]{summary['create']} to create[/green], "
            f"[yellow]{summary['update']} to update[/yellow], "
            f"[magenta]{summary['replace']} to replace[/magenta], "
            f"[red]{summary['destroy']} to destroy[/red], "
            f"[cyan]{summary['read']} to read[/cyan]"
        )
        parts.append(Text(""))
        parts.append(Text.from_markup(footer))

        title = "[bold]Destroy plan[/bold]" if plan.metadata.destroy else "[bold]Execution plan[/bold]"
        return Panel(
            Group(*parts),
            title=title,
            subtitle=f"state serial {plan.metadata.state_serial}",
            border_style="blue",
            padding=(1, 2),
        )

    def _change_text(self, change: ResourceChange) -> Text:
        style = _ACTION_STYLES[change.action]
        text = Text()
        text.append(f"{_ACTION_SYMBOLS[change.action]:>3} ", style=f"bold {style}")
        text.append(change.address, style="bold")
        label = change.action.value
        if change.action == ActionKind.REPLACE:
            label += " (create before destroy)" if change.create_before_destroy else " (destroy then create)"
        text.append(f"  {label}", style=style)
        if change.reason:
            text.append(f"  # {change.reason}", style="dim")
        if change.drift:
            text.append(f"\n      drift: {', '.join(change.drift)}", style="yellow")

        before = change.before or {}
        after = change.after or {}
        if change.action in (ActionKind.CREATE, ActionKind.READ):
            names = sorted(after)
        elif change.action == ActionKind.DESTROY:
            names = []
        else:
            names = change.changed
        for name in names:
            marker = " # forces replacement" if name in change.replace_paths else ""
            if name in before and change.action not in (ActionKind.CREATE, ActionKind.READ):
                line = f"\n      {name}: {describe(before.get(name))} -> {describe(after.get(name))}"
            else:
                line = f"\n      {name}: {describe(after.get(name))}"
            text.append(line)
            if marker:
                text.append(marker, style="magenta")
        return text

    def _steps_table(self, plan: Plan) -> Table:
        table = Table(show_header=True, header_style="bold cyan", expand=True)
        table.add_column("#", style="dim", width=4, justify="right")
        table.add_column("Step", min_width=30)
        table.add_column("After", min_width=20)
        for i, step in enumerate(plan.steps, start=1):
            key = step.key + ("  [dim](deferred destroy)[/dim]" if step.deferred_destroy else "")
            table.add_row(str(i), key, ", ".join(step.depends_on) or "-")
        return table

    # ------------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------------

    def render_summary(self, summary: ApplySummary) -> Panel:
        table = Table(show_header=True, header_style="bold cyan", expand=True)
        table.add_column("Step", min_width=30)
        table.add_column("Status", justify="center", min_width=12)
        table.add_column("Details", min_width=20)
        table.add_column("Time", justify="right", width=8)

        for outcome in summary.outcomes:
            details: list[str] = []
            if outcome.resource_id:
                details.append(f"id={outcome.resource_id}")
            if outcome.error:
                details.append(f"[red]{outcome.error_type}: {escape(outcome.error)}[/red]")
            if outcome.blocked_by:
                details.append(f"blocked by {outcome.blocked_by}")
            if outcome.note:
                details.append(f"[dim]{escape(outcome.note)}[/dim]")
            table.add_row(
                outcome.key,
                _STATUS_STYLES.get(outcome.status, outcome.status.value),
                "; ".join(details),
                f"{outcome.duration_seconds:.2f}s",
            )

        counts = summary.counts()
        footer = "  |  ".join(f"[bold]{status}:[/bold] {n}" for status, n in counts.items() if n)
        border = "green" if summary.ok else "red"
        title = "[bold]Apply complete[/bold]" if summary.ok else "[bold red]Apply finished with errors[/bold red]"
        if summary.cancelled:
            title = "[bold yellow]Apply cancelled[/bold yellow]"
        return Panel(
            Group(table, Text(""), Text.from_markup(footer or "nothing to do")),
            title=title,
            border_style=border,
            padding=(1, 2),
        )

    # ------------------------------------------------------------------
    # State, outputs, providers
    # ------------------------------------------------------------------

    def render_state(self, records: list[StateRecord]) -> Table:
        table = Table(title="State", show_header=True, header_style="bold cyan", expand=True)
        table.add_column("Address", min_width=30)
        table.add_column("ID", min_width=16)
        table.add_column("Provider")
        table.add_column("Version", justify="right")
        table.add_column("Updated", min_width=19)
        for record in records:
            style = "yellow" if record.deposed else ""
            table.add_row(
                f"[{style}]{record.address}[/{style}]" if style else record.address,
                record.resource_id,
                record.provider,
                str(record.version),
                record.updated_at.strftime("%Y-%m-%d %H:%M:%S"),
            )
        return table

    def render_record(self, record: StateRecord) -> Panel:
        body = {
            "id": record.resource_id,
            "type": record.resource_type,
            "mode": record.mode.value,
            "provider": record.provider,
            "arguments": record.arguments,
            "attributes": record.attributes,
            "dependencies": record.dependencies,
            "create_before_destroy": record.create_before_destroy,
            "version": record.version,
        }
        return Panel(
            Text(json.dumps(body, indent=2, sort_keys=True)),
            title=f"[bold]{record.address}[/bold]",
            border_style="blue",
        )

    def render_outputs(self, outputs: dict[str, Any], sensitive: list[str] | None = None) -> Table:
        hidden = set(sensitive or [])
        table = Table(title="Outputs", show_header=True, header_style="bold cyan")
        table.add_column("Name", style="bold")
        table.add_column("Value")
        for name in sorted(outputs):
            value = SENSITIVE if name in hidden else describe(outputs[name])
            table.add_row(name, value)
        return table

    def render_providers(self, kinds: list[ResourceKind]) -> Table:
        table = Table(title="Providers", show_header=True, header_style="bold cyan")
        table.add_column("Provider", style="bold")
        table.add_column("Kind")
        table.add_column("Type")
        table.add_column("Force-new arguments", style="magenta")
        for kind in kinds:
            table.add_row(
                kind.provider.name,
                kind.mode.value,
                kind.type_name,
                ", ".join(kind.schema_.force_new) or "-",
            )
        return table

    # ------------------------------------------------------------------
    # Printing helpers
    # ------------------------------------------------------------------

    def print_plan(self, plan: Plan) -> None:
        self.console.print(self.render_plan(plan))

    def print_summary(self, summary: ApplySummary) -> None:
        self.console.print(self.render_summary(summary))
