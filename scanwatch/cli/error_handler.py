"""Exit-code mapping for Scanwatch commands.

Every command is wrapped in ``handle_errors``: a ScanwatchError prints its
message, details and a recovery hint, then exits with the error's code.
"""

import logging
from functools import wraps
from typing import Any, Callable, Dict, Type, TypeVar

import typer
from rich.console import Console
from rich.markup import escape

from scanwatch.cli.exit_codes import ExitCode
from scanwatch.errors import (
    ConfigurationError,
    NotFoundError,
    PersistenceError,
    PoolExhaustedError,
    ScanwatchError,
)

# Errors go to stderr so --json output stays parseable
console = Console(stderr=True)

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

HINTS: Dict[Type[ScanwatchError], str] = {
    ConfigurationError: "Check your settings with: scanwatch config validate",
    PersistenceError: "Check database_url, or create the tables with: scanwatch db init",
    PoolExhaustedError: "Raise max_connections for the backend or retry later",
    NotFoundError: "Check the ID, or list targets with: scanwatch targets list",
}


def _hint_for(error: ScanwatchError) -> str:
    for error_type in type(error).__mro__:
        if error_type in HINTS:
            return HINTS[error_type]
    return ""


def report_error(error: ScanwatchError) -> None:
    """Print a ScanwatchError with its details and hint."""
    console.print(f"[red]Error:[/red] {escape(error.message)}")
    for key, value in error.details.items():
        console.print(f"  [dim]{key}:[/dim] {escape(str(value))}")
    hint = _hint_for(error)
    if hint:
        console.print(f"[dim]{hint}[/dim]")


def handle_errors(func: F) -> F:
    """Map exceptions raised by a command to exit codes.

    ScanwatchError exits with its own code, Ctrl+C with 130 and anything
    else with 1 after logging the traceback.

    Example:
        @app.command()
        @handle_errors
        def reset(ctx: typer.Context, target_id: int):
            ...
    """
    @wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except typer.Exit:
            raise
        except ScanwatchError as e:
            logger.error(
                f"{type(e).__name__}: {e.message}",
                extra={"exit_code": e.exit_code, "details": e.details},
            )
            report_error(e)
            raise typer.Exit(code=e.exit_code)
        except KeyboardInterrupt:
            logger.info("Interrupted by user")
            console.print("\n[yellow]Cancelled.[/yellow]")
            raise typer.Exit(code=ExitCode.CANCELLED)
        except Exception as e:
            logger.exception("Unexpected error")
            console.print(f"[red]Unexpected error:[/red] {escape(str(e))}")
            console.print("[dim]Run with --debug for the full traceback[/dim]")
            raise typer.Exit(code=ExitCode.GENERAL_ERROR)

    return wrapper  # type: ignore[return-value]
