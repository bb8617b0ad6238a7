"""Scanwatch monitor command - Execution statistics, alerts, history and retention."""

import json

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from scanwatch.cli.context import open_scan_context
from scanwatch.cli.error_handler import handle_errors

app = typer.Typer(help="Inspect execution monitoring data.")
console = Console()

SEVERITY_STYLES = {
    "critical": "bold red",
    "warning": "yellow",
}

STATUS_STYLES = {
    "completed": "green",
    "failed": "red",
    "started": "yellow",
}


def _num(value, digits: int = 2) -> str:
    if value is None:
        return "-"
    if isinstance(value, float):
        return str(round(value, digits))
    return str(value)


@app.command("stats")
@handle_errors
def show_stats(
    ctx: typer.Context,
    days: int = typer.Option(
        7,
        "--days",
        "-d",
        help="Size of the trailing window in days.",
        min=1,
    ),
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Output as JSON.",
    ),
) -> None:
    """Show execution statistics for the trailing window.

    Example:
        scanwatch monitor stats
        scanwatch monitor stats --days 30 --json
    """
    with open_scan_context(ctx) as context:
        stats = context.tracker.execution_statistics(days)

    if json_output:
        console.print_json(json.dumps(stats.to_dict(), default=str))
        return

    overall = stats.overall_statistics
    console.print(f"[bold]Execution Statistics[/bold] (last {stats.period_days} days)")
    console.print(f"  Total executions: {overall['total_executions']}")
    console.print(f"  Success rate: [green]{stats.success_rate}%[/green]")
    console.print(f"  Failure rate: [red]{stats.failure_rate}%[/red]")
    console.print(f"  Average time: {_num(overall['overall_avg_time'])}s")
    console.print(f"  Max time: {_num(overall['max_execution_time'])}s")
    console.print(f"  Average peak memory: {_num(overall['avg_memory'])}MB")
    console.print(f"  Max peak memory: {_num(overall['max_memory'])}MB")
    console.print()

    if not stats.daily_statistics:
        console.print("[dim]No executions recorded in this window.[/dim]")
        return

    table = Table(title="Daily Breakdown")
    table.add_column("Date", style="cyan")
    table.add_column("Total", justify="right")
    table.add_column("OK", justify="right", style="green")
    table.add_column("Failed", justify="right", style="red")
    table.add_column("Avg Time (s)", justify="right")
    table.add_column("Avg Memory (MB)", justify="right")
    table.add_column("Warnings", justify="right")
    table.add_column("Errors", justify="right")

    for day in stats.daily_statistics:
        table.add_row(
            str(day["date"]),
            str(day["total_executions"]),
            str(day["successful_executions"]),
            str(day["failed_executions"]),
            _num(day["avg_execution_time"]),
            _num(day["avg_memory_usage"]),
            str(day["total_warnings"]),
            str(day["total_errors"]),
        )

    console.print(table)


@app.command("alerts")
@handle_errors
def show_alerts(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Output as JSON.",
    ),
) -> None:
    """Evaluate the last 24 hours against the alert thresholds.

    Example:
        scanwatch monitor alerts
    """
    with open_scan_context(ctx) as context:
        alerts = context.tracker.check_alerts()

    if json_output:
        console.print_json(json.dumps([alert.to_dict() for alert in alerts]))
        return

    if not alerts:
        console.print("[green]✓[/green] No alerts")
        return

    for alert in alerts:
        style = SEVERITY_STYLES.get(alert.severity, "white")
        console.print(f"[{style}]{alert.severity.upper()}[/{style}] {alert.type}: {alert.message}")


@app.command("show")
@handle_errors
def show_execution(
    ctx: typer.Context,
    execution_id: str = typer.Argument(..., help="Execution ID, e.g. a dispatch or scan id."),
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Output as JSON.",
    ),
) -> None:
    """Show the stored records and checkpoints of one execution.

    Example:
        scanwatch monitor show dispatch-3f2a...
    """
    with open_scan_context(ctx) as context:
        history = context.tracker.execution_history(execution_id)

    if json_output:
        console.print_json(json.dumps(history, default=str))
        return

    for record in history["records"]:
        style = STATUS_STYLES.get(record["status"], "white")
        console.print(
            f"[bold]{record['type']}[/bold] {escape(execution_id)} "
            f"[{style}]{record['status']}[/{style}]"
        )
        console.print(f"  Started: {record['start_time']}")
        console.print(f"  Ended: {record['end_time'] or '-'}")
        console.print(f"  Time: {_num(record['execution_time'])}s")
        console.print(f"  Peak memory: {_num(record['peak_memory'])}MB")
        console.print(
            f"  Checkpoints: {record['checkpoints_count']}, "
            f"warnings: {record['warnings_count']}, errors: {record['errors_count']}"
        )
    console.print()

    if not history["checkpoints"]:
        console.print("[dim]No checkpoints persisted.[/dim]")
        return

    table = Table(title="Checkpoints")
    table.add_column("Time", style="cyan")
    table.add_column("Name")
    table.add_column("Memory (MB)", justify="right")
    table.add_column("Data", style="dim")

    for checkpoint in history["checkpoints"]:
        table.add_row(
            str(checkpoint["timestamp"]),
            checkpoint["checkpoint_name"],
            _num(checkpoint["memory_usage"] / (1024 * 1024)),
            escape(json.dumps(checkpoint["data"] or {}, default=str)),
        )

    console.print(table)


@app.command("cleanup")
@handle_errors
def cleanup_records(ctx: typer.Context) -> None:
    """Delete execution records older than the retention window.

    Example:
        scanwatch monitor cleanup
    """
    with open_scan_context(ctx) as context:
        deleted = context.tracker.cleanup()
        retention_days = context.config.monitor.retention_days

    console.print(
        f"[green]✓[/green] Deleted {deleted} record(s) older than {retention_days} days"
    )
