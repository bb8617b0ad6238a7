"""Dispatch: the scan context and the loop that feeds scan workers."""

from scanwatch.dispatch.context import ScanContext, build_context
from scanwatch.dispatch.dispatcher import (
    DispatchReport,
    ScanDispatcher,
    ScanOutcome,
    ScanRunner,
    default_worker_id,
    load_runner,
)

__all__ = [
    "DispatchReport",
    "ScanContext",
    "ScanDispatcher",
    "ScanOutcome",
    "ScanRunner",
    "build_context",
    "default_worker_id",
    "load_runner",
]
