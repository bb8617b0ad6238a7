"""Helpers giving CLI commands their configuration and scan context."""

from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Optional

import typer

from scanwatch.config import ScanwatchConfig, load_config
from scanwatch.dispatch.context import ScanContext, build_context


def get_config(ctx: typer.Context) -> ScanwatchConfig:
    """Load configuration honoring the global ``--config`` option."""
    obj = ctx.obj or {}
    config_path: Optional[Path] = obj.get("config_path")
    return load_config(config_path)


@contextmanager
def open_scan_context(ctx: typer.Context) -> Generator[ScanContext, None, None]:
    """Build a ScanContext for one command and close it afterwards."""
    context = build_context(get_config(ctx))
    try:
        yield context
    finally:
        context.close()
