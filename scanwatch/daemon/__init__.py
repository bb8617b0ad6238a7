"""Daemon running the dispatch loop and maintenance timers."""

from scanwatch.daemon.service import ScanwatchDaemon, run_daemon

__all__ = ["ScanwatchDaemon", "run_daemon"]
