"""Dispatch loop connecting the scheduler, pool, tracker and scan runner.

One ``run_once`` call is one dispatch cycle:

1. Ask the scheduler for the most urgent due targets
2. Claim each one atomically (skipping those another worker won)
3. Borrow a pool connection (the rest of the batch is skipped on exhaustion
   or when the backend cannot open a connection)
4. Record the running scan, call the runner, report the outcome

The runner does the actual network I/O against the target and lives
outside this package; it is any callable matching ``ScanRunner``.
"""

import importlib
import logging
import os
import socket
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from scanwatch.database.models import Target
from scanwatch.dispatch.context import ScanContext
from scanwatch.errors import ConfigurationError
from scanwatch.pool.connection_pool import BorrowStatus

logger = logging.getLogger(__name__)


@dataclass
class ScanOutcome:
    """What a scan runner reports back.

    Attributes:
        success: Whether the scan succeeded
        error_message: Failure description (classified for retries)
        data: Runner-specific result payload
    """

    success: bool
    error_message: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)


# (target, connection, timeout_seconds) -> ScanOutcome
ScanRunner = Callable[[Target, Any, int], ScanOutcome]


@dataclass
class DispatchReport:
    """Result of one dispatch cycle."""

    execution_id: str
    claimed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    pool_exhausted: bool = False
    connection_error: bool = False
    scans: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "claimed": self.claimed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "pool_exhausted": self.pool_exhausted,
            "connection_error": self.connection_error,
            "scans": list(self.scans),
        }


def default_worker_id() -> str:
    """Token identifying this worker process in claim leases."""
    return f"{socket.gethostname()}-{os.getpid()}-{uuid4().hex[:6]}"


def load_runner(path: str) -> ScanRunner:
    """Import a scan runner from a ``module:callable`` path.

    Raises:
        ConfigurationError: If the path is malformed or cannot be imported
    """
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ConfigurationError(
            f"Invalid runner path '{path}'",
            details={"expected": "module:callable"},
        )

    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigurationError(f"Cannot import runner module '{module_name}'", details={"error": str(e)}) from e

    runner = module
    for part in attr.split("."):
        runner = getattr(runner, part, None)
        if runner is None:
            raise ConfigurationError(f"Runner '{attr}' not found in module '{module_name}'")

    if not callable(runner):
        raise ConfigurationError(f"Runner '{path}' is not callable")
    return runner


class ScanDispatcher:
    """Runs dispatch cycles against one ScanContext.

    Example:
        dispatcher = ScanDispatcher(context, runner)
        report = dispatcher.run_once()
    """

    def __init__(
        self,
        context: ScanContext,
        runner: ScanRunner,
        worker_id: Optional[str] = None,
        backend: Optional[str] = None,
    ):
        """Initialize the dispatcher.

        Args:
            context: Shared scan context
            runner: Executes one scan
            worker_id: Claim token (generated if not provided)
            backend: Pool backend to borrow from (daemon setting by default)
        """
        self.context = context
        self.runner = runner
        self.worker_id = worker_id or default_worker_id()
        self.backend = backend or context.config.daemon.backend

    @property
    def scheduler(self):
        return self.context.scheduler

    @property
    def pool(self):
        return self.context.pool

    @property
    def tracker(self):
        return self.context.tracker

    def _batch_limit(self, batch_size: Optional[int]) -> int:
        settings = self.context.config.scheduler
        size = batch_size or settings.batch_size
        return max(0, min(size, settings.max_concurrent_scans))

    def run_once(self, batch_size: Optional[int] = None) -> DispatchReport:
        """Run one dispatch cycle.

        Args:
            batch_size: Maximum number of targets to scan (capped by
                ``max_concurrent_scans``)

        Returns:
            DispatchReport describing the cycle

        Raises:
            ConfigurationError: If the pool backend is not configured
            PersistenceError: If the durable store fails
        """
        limit = self._batch_limit(batch_size)
        execution_id = f"dispatch-{uuid4().hex[:12]}"
        report = DispatchReport(execution_id=execution_id)

        self.tracker.start_execution(execution_id, {
            "type": "dispatch",
            "worker_id": self.worker_id,
            "batch_size": limit,
        })
        self.tracker.checkpoint(execution_id, "batch_started", {"batch_size": limit})

        try:
            self._dispatch_batch(execution_id, limit, report)
        except Exception as e:
            self.tracker.error(execution_id, f"Dispatch cycle aborted: {e}")
            self.tracker.complete_execution(execution_id, success=False, final_data=report.to_dict())
            raise

        self.tracker.checkpoint(execution_id, "batch_completed", {
            "claimed": report.claimed,
            "succeeded": report.succeeded,
            "failed": report.failed,
        })
        self.tracker.complete_execution(execution_id, success=True, final_data=report.to_dict())

        if report.claimed:
            logger.info(
                f"Dispatch cycle {execution_id}: {report.claimed} claimed, "
                f"{report.succeeded} succeeded, {report.failed} failed"
            )
        return report

    def _dispatch_batch(self, execution_id: str, limit: int, report: DispatchReport) -> None:
        if limit <= 0:
            return

        for target in self.scheduler.prioritized_targets(limit=limit):
            if not self.scheduler.claim_target(target.id, self.worker_id):
                report.skipped += 1
                continue

            borrowed = self.pool.borrow(self.backend)
            if borrowed.status == BorrowStatus.CONFIGURATION_ERROR:
                self.scheduler.release_claim(target.id)
                borrowed.unwrap()
            if borrowed.status == BorrowStatus.CONNECTION_ERROR:
                self.scheduler.release_claim(target.id)
                report.connection_error = True
                self.tracker.error(
                    execution_id,
                    f"Backend connection failed, skipping rest of batch: {borrowed.cause}",
                    {"backend": self.backend, "target_id": target.id},
                )
                break
            if not borrowed.ok:
                self.scheduler.release_claim(target.id)
                report.pool_exhausted = True
                self.tracker.warning(
                    execution_id,
                    "Connection pool exhausted, skipping rest of batch",
                    {"backend": self.backend, "target_id": target.id},
                )
                break

            report.claimed += 1
            try:
                report.scans.append(self._scan(execution_id, target, borrowed.connection, report))
            finally:
                self.pool.release(borrowed.connection, self.backend)

    def _scan(
        self,
        execution_id: str,
        target: Target,
        connection: Any,
        report: DispatchReport,
    ) -> Dict[str, Any]:
        scan_execution_id = f"scan-{target.id}-{uuid4().hex[:8]}"
        self.tracker.start_execution(scan_execution_id, {
            "type": "scan",
            "target_id": target.id,
            "batch": execution_id,
        })

        try:
            return self._run_scan(scan_execution_id, target, connection, report)
        except Exception:
            if self.tracker.is_active(scan_execution_id):
                self.tracker.complete_execution(scan_execution_id, success=False)
            raise

    def _run_scan(
        self,
        scan_execution_id: str,
        target: Target,
        connection: Any,
        report: DispatchReport,
    ) -> Dict[str, Any]:
        scan_result = self.scheduler.record_scan_start(target.id)
        timeout = self.scheduler.scan_timeout_seconds(target)

        started = time.monotonic()
        try:
            outcome = self.runner(target, connection, timeout)
        except Exception as e:
            outcome = ScanOutcome(success=False, error_message=str(e) or type(e).__name__)
            self.tracker.error(scan_execution_id, f"Scan runner raised: {outcome.error_message}")
        elapsed = round(time.monotonic() - started, 3)

        if elapsed > timeout:
            self.tracker.warning(scan_execution_id, "Scan exceeded its timeout", {
                "timeout": timeout,
                "elapsed": elapsed,
            })

        entry: Dict[str, Any] = {
            "target_id": target.id,
            "success": outcome.success,
            "execution_time": elapsed,
        }

        if outcome.success:
            next_at = self.scheduler.complete_scan(
                target.id,
                True,
                scan_result_id=scan_result.id,
                execution_time=elapsed,
            )
            report.succeeded += 1
        else:
            decision = self.scheduler.handle_scan_failure(
                target.id,
                outcome.error_message or "Unknown error",
                scan_result_id=scan_result.id,
                execution_time=elapsed,
            )
            next_at = decision.next_scan_at
            report.failed += 1
            entry["error_type"] = decision.error_type.value
            entry["retry"] = decision.retry

        entry["next_scan_at"] = next_at.isoformat()
        self.tracker.checkpoint(scan_execution_id, "scan_completed", entry)
        self.tracker.complete_execution(scan_execution_id, success=outcome.success, final_data=outcome.data)
        return entry
