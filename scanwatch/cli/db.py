"""Scanwatch db command - Database schema management."""

import typer
from rich.console import Console

from scanwatch.cli.context import get_config
from scanwatch.cli.error_handler import handle_errors
from scanwatch.config import ensure_directories
from scanwatch.database.connection import create_tables, drop_tables, init_engine

app = typer.Typer(help="Manage the Scanwatch database.")
console = Console()


@app.command("init")
@handle_errors
def init_db(
    ctx: typer.Context,
    reset: bool = typer.Option(
        False,
        "--reset",
        help="Drop all tables before creating them (destroys data).",
    ),
) -> None:
    """Create the database tables.

    Example:
        scanwatch db init
        scanwatch db init --reset
    """
    config = get_config(ctx)
    ensure_directories(config)

    if reset and not typer.confirm("Drop all Scanwatch tables?", default=False):
        console.print("[yellow]Aborted[/yellow]")
        raise typer.Exit()

    engine = init_engine(config)
    try:
        if reset:
            drop_tables(engine)
        create_tables(engine)
    finally:
        engine.dispose()

    console.print(f"[green]✓[/green] Database initialized at {config.database_url}")
