"""Scanwatch run command - Start the dispatch daemon."""

import asyncio
import json
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from scanwatch.cli.context import get_config
from scanwatch.cli.error_handler import handle_errors
from scanwatch.config import ensure_directories
from scanwatch.database.connection import create_tables
from scanwatch.dispatch.context import build_context
from scanwatch.dispatch.dispatcher import ScanDispatcher, load_runner
from scanwatch.errors import ConfigurationError

app = typer.Typer(help="Start the Scanwatch dispatch daemon.")
console = Console()

RUNNER_HELP = "Scan runner import path (module:callable)."


def _require_runner(runner: Optional[str]):
    if not runner:
        raise ConfigurationError(
            "No scan runner configured",
            details={"hint": "pass --runner module:callable or set SCANWATCH_RUNNER"},
        )
    return load_runner(runner)


@app.callback(invoke_without_command=True)
@handle_errors
def run(
    ctx: typer.Context,
    runner: Optional[str] = typer.Option(
        None,
        "--runner",
        "-r",
        help=RUNNER_HELP,
        envvar="SCANWATCH_RUNNER",
    ),
    worker_id: Optional[str] = typer.Option(
        None,
        "--worker-id",
        "-w",
        help="Claim token for this worker (default: host-pid-random).",
    ),
) -> None:
    """Start the Scanwatch daemon.

    The daemon dispatches due targets to the scan runner on an interval and
    runs pool cleanup, alert checks and retention cleanup in the background.
    Stop it with Ctrl+C or SIGTERM.

    Example:
        scanwatch run --runner mypkg.scans:run_scan
        scanwatch run --runner mypkg.scans:run_scan --worker-id node-1
    """
    if ctx.invoked_subcommand is not None:
        return

    from scanwatch.daemon.service import run_daemon

    scan_runner = _require_runner(runner)
    config = get_config(ctx)
    ensure_directories(config)

    console.print("[bold green]Starting Scanwatch daemon...[/bold green]")
    console.print(f"[dim]Database: {config.database_url}[/dim]")
    console.print(f"[dim]Backend: {config.daemon.backend}[/dim]")

    asyncio.run(run_daemon(config, scan_runner, worker_id=worker_id))
    console.print("[yellow]Daemon stopped[/yellow]")


@app.command("once")
@handle_errors
def run_once(
    ctx: typer.Context,
    runner: Optional[str] = typer.Option(
        None,
        "--runner",
        "-r",
        help=RUNNER_HELP,
        envvar="SCANWATCH_RUNNER",
    ),
    worker_id: Optional[str] = typer.Option(
        None,
        "--worker-id",
        "-w",
        help="Claim token for this worker.",
    ),
    batch_size: Optional[int] = typer.Option(
        None,
        "--batch-size",
        "-b",
        help="Maximum number of targets to dispatch.",
        min=1,
    ),
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Output the dispatch report as JSON.",
    ),
) -> None:
    """Run a single dispatch cycle and exit.

    Example:
        scanwatch run once --runner mypkg.scans:run_scan
        scanwatch run once --runner mypkg.scans:run_scan --batch-size 5 --json
    """
    scan_runner = _require_runner(runner)
    config = get_config(ctx)
    ensure_directories(config)

    context = build_context(config)
    try:
        create_tables(context.engine)
        dispatcher = ScanDispatcher(
            context,
            scan_runner,
            worker_id=worker_id,
            backend=config.daemon.backend,
        )
        report = dispatcher.run_once(batch_size)
    finally:
        context.close()

    if json_output:
        console.print_json(json.dumps(report.to_dict(), default=str))
        return

    table = Table(title=f"Dispatch {report.execution_id}")
    table.add_column("Claimed", justify="right")
    table.add_column("Succeeded", justify="right", style="green")
    table.add_column("Failed", justify="right", style="red")
    table.add_column("Skipped", justify="right")
    table.add_column("Pool Exhausted")
    table.add_column("Connection Error")
    table.add_row(
        str(report.claimed),
        str(report.succeeded),
        str(report.failed),
        str(report.skipped),
        "yes" if report.pool_exhausted else "no",
        "yes" if report.connection_error else "no",
    )
    console.print(table)
