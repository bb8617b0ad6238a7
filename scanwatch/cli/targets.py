"""Scanwatch targets command - Inspect the scan work list."""

import json

import typer
from rich.console import Console
from rich.table import Table

from scanwatch.cli.context import open_scan_context
from scanwatch.cli.error_handler import handle_errors
from scanwatch.errors import NotFoundError

app = typer.Typer(help="Inspect and reset monitored targets.")
console = Console()


def _fmt(value) -> str:
    if value is None:
        return "-"
    if hasattr(value, "strftime"):
        return value.strftime("%Y-%m-%d %H:%M")
    return str(value)


@app.command("list")
@handle_errors
def list_targets(
    ctx: typer.Context,
    active_only: bool = typer.Option(
        False,
        "--active-only",
        "-a",
        help="Hide inactive targets.",
    ),
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Output as JSON.",
    ),
) -> None:
    """List every monitored target, due or not.

    Example:
        scanwatch targets list
        scanwatch targets list --active-only --json
    """
    with open_scan_context(ctx) as context:
        targets = context.scheduler.list_targets(active_only=active_only)

    if json_output:
        console.print_json(json.dumps([target.to_dict() for target in targets]))
        return

    if not targets:
        console.print("[dim]No targets found.[/dim]")
        return

    table = Table(title=f"Targets ({len(targets)})")
    table.add_column("ID", style="cyan", justify="right")
    table.add_column("Name")
    table.add_column("Category", style="magenta")
    table.add_column("Active")
    table.add_column("Failures", justify="right")
    table.add_column("Review")
    table.add_column("Next Scan", style="dim")

    for target in targets:
        table.add_row(
            str(target.id),
            target.name or target.url,
            target.category,
            "yes" if target.active else "no",
            str(target.consecutive_failures),
            "[yellow]yes[/yellow]" if target.needs_manual_review else "no",
            _fmt(target.next_scan_at),
        )

    console.print(table)


@app.command("due")
@handle_errors
def due_targets(
    ctx: typer.Context,
    limit: int = typer.Option(
        20,
        "--limit",
        "-n",
        help="Maximum number of targets to show.",
        min=1,
    ),
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Output as JSON.",
    ),
) -> None:
    """Show due targets in the order they will be dispatched.

    Example:
        scanwatch targets due
        scanwatch targets due --limit 50 --json
    """
    with open_scan_context(ctx) as context:
        scheduler = context.scheduler
        targets = scheduler.prioritized_targets(limit=limit)

        if json_output:
            rows = []
            for target in targets:
                row = target.to_dict()
                row["priority_weight"] = scheduler.priority_weight(target)
                row["frequency_minutes"] = scheduler.scan_frequency_minutes(target)
                row["timeout_seconds"] = scheduler.scan_timeout_seconds(target)
                rows.append(row)
            console.print_json(json.dumps(rows))
            return

        if not targets:
            console.print("[dim]No targets are due.[/dim]")
            return

        table = Table(title=f"Due Targets ({len(targets)})")
        table.add_column("ID", style="cyan", justify="right")
        table.add_column("Name")
        table.add_column("Category", style="magenta")
        table.add_column("Priority", justify="right")
        table.add_column("Frequency (min)", justify="right")
        table.add_column("Timeout (s)", justify="right")
        table.add_column("Next Scan", style="dim")

        for target in targets:
            table.add_row(
                str(target.id),
                target.name or target.url,
                target.category,
                str(scheduler.priority_weight(target)),
                str(scheduler.scan_frequency_minutes(target)),
                str(scheduler.scan_timeout_seconds(target)),
                _fmt(target.next_scan_at),
            )

        console.print(table)


@app.command("show")
@handle_errors
def show_target(
    ctx: typer.Context,
    target_id: int = typer.Argument(..., help="Target ID."),
) -> None:
    """Show a target and its effective scheduling policy.

    Example:
        scanwatch targets show 42
    """
    with open_scan_context(ctx) as context:
        scheduler = context.scheduler
        target = scheduler.get_target(target_id)
        if target is None:
            raise NotFoundError(f"Target not found: {target_id}")

        table = Table(title=f"Target {target_id}", show_header=False)
        table.add_column("Key", style="cyan")
        table.add_column("Value")

        for key, value in target.to_dict().items():
            table.add_row(key, _fmt(value))
        table.add_row("effective_priority_weight", str(scheduler.priority_weight(target)))
        table.add_row("effective_frequency_minutes", str(scheduler.scan_frequency_minutes(target)))
        table.add_row("effective_timeout_seconds", str(scheduler.scan_timeout_seconds(target)))
        table.add_row("effective_retry_budget", str(scheduler.retry_budget(target)))

        console.print(table)


@app.command("reset")
@handle_errors
def reset_target(
    ctx: typer.Context,
    target_id: int = typer.Argument(..., help="Target ID."),
) -> None:
    """Make a target due immediately.

    Example:
        scanwatch targets reset 42
    """
    with open_scan_context(ctx) as context:
        context.scheduler.reset_next_scan(target_id)

    console.print(f"[green]✓[/green] Target {target_id} is due now")
