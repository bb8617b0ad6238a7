"""Execution tracking for scan batches and individual scans.

The ExecutionTracker keeps a live working set of in-flight executions
(checkpoints, warnings, errors and memory samples) and mirrors each
execution into the ``execution_monitoring`` table so statistics and
alerts survive process restarts.

Lifecycle of one execution id:

    start_execution -> checkpoint / warning / error ... -> complete_execution

Calls for an id that is not live are logged no-ops; registration may race
with a process restart, so they are never errors.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import psutil
from sqlalchemy.orm import sessionmaker

from scanwatch.config import MonitorSettings
from scanwatch.database.connection import session_scope
from scanwatch.database.models import utcnow
from scanwatch.database.repositories import RepositoryFactory
from scanwatch.errors import NotFoundError

logger = logging.getLogger(__name__)

MB = 1024 * 1024


class ProcessResources:
    """Resource samples for the current process, backed by psutil."""

    def __init__(self) -> None:
        self._process = psutil.Process()

    def rss(self) -> int:
        """Resident set size in bytes."""
        return self._process.memory_info().rss

    def memory_percent(self) -> float:
        """This process's share of physical memory, in percent."""
        return self._process.memory_percent()

    def cpu_percent(self) -> float:
        """Process CPU usage since the previous call, in percent."""
        return self._process.cpu_percent(interval=None)


@dataclass
class CheckpointSample:
    """A progress marker recorded in memory."""

    name: str
    timestamp: float
    memory_usage: int
    peak_memory: int
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class LogEntry:
    """A warning or error recorded against an execution."""

    message: str
    timestamp: float
    context: Dict[str, Any] = field(default_factory=dict)


@dataclass
class LiveExecution:
    """In-memory state of a running execution."""

    execution_id: str
    metadata: Dict[str, Any]
    started: float
    started_at: datetime
    checkpoints: List[CheckpointSample] = field(default_factory=list)
    warnings: List[LogEntry] = field(default_factory=list)
    errors: List[LogEntry] = field(default_factory=list)
    peak_memory: int = 0


@dataclass
class ExecutionSummary:
    """Summary returned when an execution completes.

    An empty summary (no execution_id) is falsy and is what completing an
    unknown execution returns.
    """

    execution_id: Optional[str] = None
    success: bool = False
    total_time: float = 0.0
    checkpoints_count: int = 0
    warnings_count: int = 0
    errors_count: int = 0
    peak_memory_mb: float = 0.0
    final_data: Dict[str, Any] = field(default_factory=dict)

    def __bool__(self) -> bool:
        return self.execution_id is not None

    def to_dict(self) -> Dict[str, Any]:
        if not self:
            return {}
        return {
            "execution_id": self.execution_id,
            "success": self.success,
            "total_time": self.total_time,
            "checkpoints_count": self.checkpoints_count,
            "warnings_count": self.warnings_count,
            "errors_count": self.errors_count,
            "peak_memory_mb": self.peak_memory_mb,
            "final_data": self.final_data,
        }


@dataclass
class ResourceSample:
    """Point-in-time resource usage of an execution."""

    memory_usage_mb: float
    peak_memory_mb: float
    memory_usage_percent: float
    cpu_usage_percent: float
    execution_time: float
    timestamp: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "memory_usage_mb": self.memory_usage_mb,
            "peak_memory_mb": self.peak_memory_mb,
            "memory_usage_percent": self.memory_usage_percent,
            "cpu_usage_percent": self.cpu_usage_percent,
            "execution_time": self.execution_time,
            "timestamp": self.timestamp,
        }


@dataclass
class ExecutionStatistics:
    """Aggregates over the durable execution records of a window."""

    period_days: int
    daily_statistics: List[Dict[str, Any]]
    overall_statistics: Dict[str, Any]
    success_rate: float
    failure_rate: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "period_days": self.period_days,
            "daily_statistics": self.daily_statistics,
            "overall_statistics": self.overall_statistics,
            "success_rate": self.success_rate,
            "failure_rate": self.failure_rate,
        }


@dataclass
class Alert:
    """A threshold breach found by ``check_alerts``."""

    type: str
    message: str
    severity: str
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "message": self.message,
            "severity": self.severity,
            "data": self.data,
        }


class ExecutionTracker:
    """Tracks in-flight executions and aggregates their durable history.

    Example:
        tracker = ExecutionTracker(session_maker, config.monitor)
        tracker.start_execution("batch-42", {"type": "dispatch"})
        tracker.checkpoint("batch-42", "batch_started", {"size": 10})
        summary = tracker.complete_execution("batch-42", success=True)
    """

    def __init__(
        self,
        session_maker: sessionmaker,
        settings: Optional[MonitorSettings] = None,
        resources: Optional[ProcessResources] = None,
        clock: Optional[Callable[[], datetime]] = None,
        timer: Optional[Callable[[], float]] = None,
    ):
        """Initialize the tracker.

        Args:
            session_maker: Session factory for the durable store
            settings: Monitor settings (defaults if not provided)
            resources: Resource sampler (psutil-backed if not provided)
            clock: Returns the current naive UTC time
            timer: Monotonic clock in seconds
        """
        self.session_maker = session_maker
        self.settings = settings or MonitorSettings()
        self.resources = resources or ProcessResources()
        self._clock = clock or utcnow
        self._timer = timer or time.monotonic
        self._started = self._timer()
        self._active: Dict[str, LiveExecution] = {}
        self._lock = threading.RLock()

    def _get_live(self, execution_id: str) -> Optional[LiveExecution]:
        return self._active.get(execution_id)

    def is_active(self, execution_id: str) -> bool:
        with self._lock:
            return execution_id in self._active

    def start_execution(self, execution_id: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        """Register an execution and insert its ``started`` row.

        Registering an id that is already live replaces the live entry.

        Raises:
            PersistenceError: If the durable row cannot be written
        """
        metadata = dict(metadata or {})
        started_at = self._clock()

        with self._lock:
            with session_scope(self.session_maker) as session:
                RepositoryFactory(session).executions.create(
                    execution_id,
                    str(metadata.get("type", "general")),
                    started_at,
                    metadata,
                )

            if execution_id in self._active:
                logger.warning(f"Execution {execution_id} restarted, replacing live entry")

            self._active[execution_id] = LiveExecution(
                execution_id=execution_id,
                metadata=metadata,
                started=self._timer(),
                started_at=started_at,
                peak_memory=self.resources.rss(),
            )

        logger.info(f"Execution monitoring started: {execution_id}")

    def checkpoint(
        self,
        execution_id: str,
        name: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Record a progress marker.

        Only the configured significant checkpoint names are persisted.

        Raises:
            PersistenceError: If a significant checkpoint cannot be written
        """
        data = dict(data or {})

        with self._lock:
            execution = self._get_live(execution_id)
            if execution is None:
                logger.warning(f"Checkpoint '{name}' for unknown execution {execution_id}")
                return

            memory = self.resources.rss()
            execution.peak_memory = max(execution.peak_memory, memory)
            execution.checkpoints.append(CheckpointSample(
                name=name,
                timestamp=time.time(),
                memory_usage=memory,
                peak_memory=execution.peak_memory,
                data=data,
            ))

            if name in self.settings.significant_checkpoints:
                with session_scope(self.session_maker) as session:
                    RepositoryFactory(session).checkpoints.create(
                        execution_id, name, self._clock(), memory, data
                    )

        logger.debug(
            f"Execution {execution_id} checkpoint '{name}' "
            f"(memory {round(memory / MB, 2)} MB)"
        )

    def _append_log(
        self,
        execution_id: str,
        message: str,
        context: Optional[Dict[str, Any]],
        kind: str,
    ) -> bool:
        with self._lock:
            execution = self._get_live(execution_id)
            if execution is None:
                return False
            entry = LogEntry(message=message, timestamp=time.time(), context=dict(context or {}))
            if kind == "error":
                execution.errors.append(entry)
            else:
                execution.warnings.append(entry)
            return True

    def warning(self, execution_id: str, message: str, context: Optional[Dict[str, Any]] = None) -> None:
        """Record a warning against a live execution."""
        if self._append_log(execution_id, message, context, "warning"):
            logger.warning(f"[{execution_id}] {message}" + (f" {context}" if context else ""))

    def error(self, execution_id: str, message: str, context: Optional[Dict[str, Any]] = None) -> None:
        """Record an error against a live execution."""
        if self._append_log(execution_id, message, context, "error"):
            logger.error(f"[{execution_id}] {message}" + (f" {context}" if context else ""))

    def complete_execution(
        self,
        execution_id: str,
        success: bool = True,
        final_data: Optional[Dict[str, Any]] = None,
    ) -> ExecutionSummary:
        """Finalize an execution and remove it from the live set.

        Args:
            execution_id: Execution to complete
            success: Whether the execution succeeded
            final_data: Final payload stored with the record

        Returns:
            The summary, or an empty summary if the id is not live

        Raises:
            PersistenceError: If the durable row cannot be updated; the
                execution then stays live
        """
        final_data = dict(final_data or {})

        with self._lock:
            execution = self._get_live(execution_id)
            if execution is None:
                logger.warning(f"Completing unknown execution {execution_id}")
                return ExecutionSummary()

            total_time = self._timer() - execution.started
            execution.peak_memory = max(execution.peak_memory, self.resources.rss())
            summary = ExecutionSummary(
                execution_id=execution_id,
                success=success,
                total_time=round(total_time, 3),
                checkpoints_count=len(execution.checkpoints),
                warnings_count=len(execution.warnings),
                errors_count=len(execution.errors),
                peak_memory_mb=round(execution.peak_memory / MB, 2),
                final_data=final_data,
            )

            with session_scope(self.session_maker) as session:
                RepositoryFactory(session).executions.finalize(
                    execution_id,
                    end_time=self._clock(),
                    success=success,
                    execution_time=total_time,
                    checkpoints_count=summary.checkpoints_count,
                    warnings_count=summary.warnings_count,
                    errors_count=summary.errors_count,
                    peak_memory=summary.peak_memory_mb,
                    final_data=final_data,
                )

            del self._active[execution_id]

        logger.info(
            f"Execution monitoring completed: {execution_id} "
            f"({'success' if success else 'failed'}, {summary.total_time}s, "
            f"{summary.warnings_count} warnings, {summary.errors_count} errors)"
        )
        return summary

    def monitor_resources(self, execution_id: str) -> ResourceSample:
        """Sample resource usage and warn on threshold breaches.

        Emits a warning against the execution when this process's memory
        share exceeds ``memory_limit_warning`` or elapsed time exceeds 80% of
        ``max_execution_time``. The sample is returned either way.
        """
        with self._lock:
            execution = self._get_live(execution_id)
            memory = self.resources.rss()
            if execution is not None:
                execution.peak_memory = max(execution.peak_memory, memory)
                peak = execution.peak_memory
                elapsed = self._timer() - execution.started
            else:
                peak = memory
                elapsed = self._timer() - self._started

        sample = ResourceSample(
            memory_usage_mb=round(memory / MB, 2),
            peak_memory_mb=round(peak / MB, 2),
            memory_usage_percent=round(self.resources.memory_percent(), 1),
            cpu_usage_percent=round(self.resources.cpu_percent(), 1),
            execution_time=round(elapsed, 2),
            timestamp=time.time(),
        )

        if sample.memory_usage_percent > self.settings.memory_limit_warning:
            self.warning(execution_id, "High memory usage detected", sample.to_dict())

        if elapsed > self.settings.max_execution_time * 0.8:
            self.warning(execution_id, "Execution time approaching limit", sample.to_dict())

        return sample

    def execution_statistics(self, window_days: int = 7) -> ExecutionStatistics:
        """Aggregate durable execution records of the trailing window.

        Raises:
            PersistenceError: If the records cannot be read
        """
        since = self._clock() - timedelta(days=window_days)

        with session_scope(self.session_maker) as session:
            repos = RepositoryFactory(session)
            daily = repos.executions.get_daily_statistics(since)
            overall = repos.executions.get_overall_statistics(since)

        total = overall["total_executions"]
        success_rate = round(overall["total_successful"] / total * 100, 1) if total else 0.0
        failure_rate = round(overall["total_failed"] / total * 100, 1) if total else 0.0

        return ExecutionStatistics(
            period_days=window_days,
            daily_statistics=daily,
            overall_statistics=overall,
            success_rate=success_rate,
            failure_rate=failure_rate,
        )

    def active_executions(self) -> List[Dict[str, Any]]:
        """Snapshot of the live working set."""
        now = self._timer()
        with self._lock:
            return [
                {
                    "execution_id": execution_id,
                    "runtime": round(now - execution.started, 2),
                    "checkpoints": len(execution.checkpoints),
                    "warnings": len(execution.warnings),
                    "errors": len(execution.errors),
                    "metadata": dict(execution.metadata),
                }
                for execution_id, execution in self._active.items()
            ]

    def execution_history(self, execution_id: str) -> Dict[str, Any]:
        """Load the durable records and persisted checkpoints of an execution.

        Raises:
            NotFoundError: If no record exists for the id
        """
        with session_scope(self.session_maker) as session:
            repos = RepositoryFactory(session)
            records = [r.to_dict() for r in repos.executions.get_by_execution_id(execution_id)]
            checkpoints = [c.to_dict() for c in repos.checkpoints.get_for_execution(execution_id)]

        if not records:
            raise NotFoundError(
                f"Execution not found: {execution_id}",
                details={"execution_id": execution_id},
            )
        return {
            "execution_id": execution_id,
            "active": self.is_active(execution_id),
            "records": records,
            "checkpoints": checkpoints,
        }

    def check_alerts(self) -> List[Alert]:
        """Evaluate the last 24 hours against the alert thresholds."""
        thresholds = self.settings.alert_thresholds
        stats = self.execution_statistics(1)
        overall = stats.overall_statistics
        alerts: List[Alert] = []

        if not overall["total_executions"]:
            return alerts

        if stats.failure_rate > thresholds.failure_rate:
            alerts.append(Alert(
                type="high_failure_rate",
                message=f"High failure rate detected: {stats.failure_rate}%",
                severity=thresholds.failure_rate_severity,
                data={"failure_rate": stats.failure_rate},
            ))

        avg_time = overall["overall_avg_time"]
        if avg_time is not None and avg_time > thresholds.avg_execution_time:
            alerts.append(Alert(
                type="slow_execution",
                message=f"Slow execution time detected: {round(avg_time, 2)}s",
                severity=thresholds.avg_execution_time_severity,
                data={"avg_time": avg_time},
            ))

        avg_memory = overall["avg_memory"]
        if avg_memory is not None and avg_memory > thresholds.memory_usage:
            alerts.append(Alert(
                type="high_memory_usage",
                message=f"High memory usage detected: {round(avg_memory, 2)}MB",
                severity=thresholds.memory_usage_severity,
                data={"avg_memory": avg_memory},
            ))

        return alerts

    def cleanup(self) -> int:
        """Delete durable records older than the retention window.

        Returns:
            Number of execution and checkpoint rows deleted
        """
        cutoff = self._clock() - timedelta(days=self.settings.retention_days)

        with session_scope(self.session_maker) as session:
            repos = RepositoryFactory(session)
            deleted_monitoring = repos.executions.delete_older_than(cutoff)
            deleted_checkpoints = repos.checkpoints.delete_older_than(cutoff)

        logger.info(
            f"Execution monitoring cleanup completed: {deleted_monitoring} execution "
            f"and {deleted_checkpoints} checkpoint record(s) older than "
            f"{self.settings.retention_days} days deleted"
        )
        return deleted_monitoring + deleted_checkpoints
