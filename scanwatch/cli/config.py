"""Scanwatch config command - Configuration management."""

from typing import Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.syntax import Syntax
from rich.table import Table

from scanwatch.cli.context import get_config
from scanwatch.cli.error_handler import handle_errors
from scanwatch.cli.exit_codes import ExitCode
from scanwatch.config import (
    config_to_dict,
    export_config_json,
    export_config_yaml,
    validate_config as do_validate,
)

app = typer.Typer(help="Manage Scanwatch configuration.")
console = Console()


def _flatten(prefix: str, value, rows: list) -> None:
    if isinstance(value, dict) and value:
        for key, item in value.items():
            _flatten(f"{prefix}.{key}" if prefix else key, item, rows)
    elif isinstance(value, list):
        rows.append((prefix, ", ".join(str(v) for v in value) or "None"))
    else:
        rows.append((prefix, "" if value is None else str(value)))


@app.command("show")
@handle_errors
def show_config(
    ctx: typer.Context,
    section: Optional[str] = typer.Argument(
        None,
        help="Configuration section to show (e.g., scheduler, monitor, pools).",
    ),
    format: str = typer.Option(
        "table",
        "--format",
        "-f",
        help="Output format (table, yaml, json).",
    ),
    unmask: bool = typer.Option(
        False,
        "--unmask",
        help="Show database passwords unmasked (use with caution).",
    ),
) -> None:
    """Show current configuration.

    Example:
        scanwatch config show
        scanwatch config show scheduler
        scanwatch config show --format yaml
    """
    config = get_config(ctx)

    if format == "yaml":
        console.print(Syntax(export_config_yaml(config, mask_secrets=not unmask), "yaml", theme="monokai"))
        return
    elif format == "json":
        console.print(Syntax(export_config_json(config, mask_secrets=not unmask), "json", theme="monokai"))
        return
    elif format != "table":
        console.print(f"[red]Unknown format: {format}[/red]")
        raise typer.Exit(code=ExitCode.INVALID_ARGUMENT)

    data = config_to_dict(config, mask_secrets=not unmask)
    paths = {key: data.pop(key) for key in ("config_dir", "data_dir", "database_url")}
    sections = {"paths": paths, **data}

    if section and section not in sections:
        console.print(f"[red]Unknown section: {section}[/red]")
        raise typer.Exit(code=ExitCode.INVALID_ARGUMENT)

    console.print("[bold]Scanwatch Configuration[/bold]")
    console.print()

    for name in [section] if section else sections:
        rows: list = []
        _flatten("", sections[name], rows)

        table = Table(title=name.capitalize())
        table.add_column("Key", style="cyan")
        table.add_column("Value", style="green")
        for key, value in rows:
            table.add_row(key, value)

        console.print(table)
        console.print()


@app.command("validate")
@handle_errors
def validate_config(ctx: typer.Context) -> None:
    """Validate current configuration.

    Example:
        scanwatch config validate
    """
    config = get_config(ctx)

    console.print("[bold]Validating configuration...[/bold]")
    console.print()

    errors = do_validate(config)
    all_passed = True

    if errors:
        console.print("[bold yellow]Validation Results:[/bold yellow]")
        for error in errors:
            if error.severity == "error":
                status = "[red]✗[/red]"
                all_passed = False
            else:
                status = "[yellow]![/yellow]"
            console.print(f"  {status} {escape(str(error))}")
        console.print()

    if all_passed:
        console.print("[green]Configuration is valid[/green]")
    else:
        console.print("[red]Configuration has errors[/red]")
        raise typer.Exit(code=ExitCode.CONFIGURATION_ERROR)
