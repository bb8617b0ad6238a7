"""Scanwatch command line.

``scanwatch`` groups the daemon (``run``), work-list inspection
(``targets``), execution monitoring (``monitor``), configuration
(``config``) and schema management (``db``) under one Typer app.
"""

import logging
import sys
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

from scanwatch import __app_name__, __version__
from scanwatch.cli import config, db, monitor, run, targets
from scanwatch.cli.exit_codes import ExitCode
from scanwatch.config import LoggingConfig, load_config
from scanwatch.errors import ConfigurationError

DEBUG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s"

app = typer.Typer(
    name=__app_name__,
    help="Scanwatch - priority scan scheduling with pooled connections and execution monitoring.",
    add_completion=True,
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()

for group in (run, targets, monitor, config, db):
    app.add_typer(group.app, name=group.__name__.rsplit(".", 1)[-1])


def version_callback(value: bool) -> None:
    if not value:
        return
    console.print(f"{__app_name__} v{__version__}")
    raise typer.Exit(code=ExitCode.SUCCESS)


def _logging_defaults(config_file: Optional[Path]) -> LoggingConfig:
    """Read the [logging] section, falling back to defaults.

    A broken config file is reported by the command itself, which loads
    the configuration again under ``handle_errors``.
    """
    try:
        return load_config(config_file).logging
    except ConfigurationError:
        return LoggingConfig()


def _console_level(defaults: LoggingConfig, verbose: bool, debug: bool, quiet: bool) -> int:
    if debug:
        return logging.DEBUG
    if verbose:
        return logging.INFO
    if quiet:
        return logging.ERROR
    level = logging.getLevelName(defaults.level.upper())
    return level if isinstance(level, int) else logging.WARNING


def configure_logging(
    defaults: LoggingConfig,
    verbose: bool = False,
    debug: bool = False,
    quiet: bool = False,
    log_file: Optional[Path] = None,
) -> int:
    """Install root handlers for one CLI invocation.

    The console handler follows the flags (or the configured level); a
    log file, from ``--log-file`` or the config, always receives DEBUG.

    Returns:
        The console log level
    """
    level = _console_level(defaults, verbose, debug, quiet)
    log_format = DEBUG_FORMAT if debug else defaults.format
    log_file = log_file or defaults.file

    handlers: list[logging.Handler] = []
    if not quiet:
        stream = logging.StreamHandler(sys.stderr)
        stream.setLevel(level)
        handlers.append(stream)
    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        to_file = logging.FileHandler(log_file)
        to_file.setLevel(logging.DEBUG)
        handlers.append(to_file)
    if not handlers:
        handlers.append(logging.NullHandler())

    logging.basicConfig(
        level=logging.DEBUG if log_file else level,
        format=log_format,
        handlers=handlers,
        force=True,
    )
    return level


@app.callback()
def main(
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-v",
        help="Show version and exit.",
        callback=version_callback,
        is_eager=True,
    ),
    config_file: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to configuration file.",
        envvar="SCANWATCH_CONFIG",
        dir_okay=False,
        resolve_path=True,
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-V",
        help="Log at INFO level.",
    ),
    debug: bool = typer.Option(
        False,
        "--debug",
        help="Log at DEBUG level with source locations.",
    ),
    quiet: bool = typer.Option(
        False,
        "--quiet",
        "-q",
        help="Only log errors.",
    ),
    log_file: Optional[Path] = typer.Option(
        None,
        "--log-file",
        help="Also log to this file at DEBUG level (overrides [logging] file).",
    ),
) -> None:
    """Scanwatch - priority scan scheduling with pooled connections and execution monitoring.

    [bold]Commands:[/bold]

    • [cyan]run[/cyan] - Start the dispatch daemon, or run one cycle
    • [cyan]targets[/cyan] - List and reset targets, inspect the due work list
    • [cyan]monitor[/cyan] - Execution history and statistics, alerts, retention cleanup
    • [cyan]config[/cyan] - Show and validate configuration
    • [cyan]db[/cyan] - Create the database tables

    [bold]Examples:[/bold]

        scanwatch db init
        scanwatch targets due --limit 20
        scanwatch run --runner mypkg.scans:run_scan
        scanwatch monitor stats --days 7
    """
    if quiet and (verbose or debug):
        flag = "--debug" if debug else "--verbose"
        console.print(f"[red]Error:[/red] --quiet cannot be combined with {flag}")
        raise typer.Exit(code=ExitCode.INVALID_ARGUMENT)

    ctx.obj = {
        "config_path": config_file,
        "verbose": verbose,
        "debug": debug,
        "quiet": quiet,
    }

    level = configure_logging(
        _logging_defaults(config_file),
        verbose=verbose,
        debug=debug,
        quiet=quiet,
        log_file=log_file,
    )
    logging.getLogger(__name__).debug(
        f"{__app_name__} v{__version__}, console level {logging.getLevelName(level)}"
    )


if __name__ == "__main__":
    app()
