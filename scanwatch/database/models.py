"""
SQLAlchemy models for the Scanwatch database.

Tables:
- targets: monitored websites and their scheduling overrides
- scan_results: one row per scan attempt
- execution_monitoring: durable execution records
- execution_checkpoints: significant checkpoints of tracked executions

All timestamps are stored as naive UTC datetimes.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, declarative_base, mapped_column

# Create base class for all models
Base = declarative_base()


def utcnow() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class Target(Base):
    """
    Monitored target (website) model.

    Stores the category and the optional per-target overrides the
    scheduler consults, plus claim and failure bookkeeping:
    - claimed_by / claimed_until: lease held by the worker scanning it
    - consecutive_failures / total_failures: failure counters
    - needs_manual_review: set once the retry budget is exhausted
    """

    __tablename__ = "targets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String, nullable=False, default="")
    url: Mapped[str] = mapped_column(String, nullable=False, default="")
    category: Mapped[str] = mapped_column(String, nullable=False, default="other", index=True)

    # Explicit overrides (null means "use the category policy")
    priority: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    # Tier name or a raw minute count stored as text
    scan_frequency: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    scan_timeout: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    max_retries: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Scheduling state
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    next_scan_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True, index=True)
    last_scan_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Claim lease
    claimed_by: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    claimed_until: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Failure bookkeeping
    consecutive_failures: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_failures: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_failure_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_error_type: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    last_error_message: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    needs_manual_review: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert target to dictionary representation."""
        return {
            "id": self.id,
            "name": self.name,
            "url": self.url,
            "category": self.category,
            "priority": self.priority,
            "scan_frequency": self.scan_frequency,
            "scan_timeout": self.scan_timeout,
            "max_retries": self.max_retries,
            "active": self.active,
            "next_scan_at": _iso(self.next_scan_at),
            "last_scan_at": _iso(self.last_scan_at),
            "claimed_by": self.claimed_by,
            "claimed_until": _iso(self.claimed_until),
            "consecutive_failures": self.consecutive_failures,
            "total_failures": self.total_failures,
            "last_error_type": self.last_error_type,
            "needs_manual_review": self.needs_manual_review,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class ScanResult(Base):
    """
    Scan attempt model.

    A row with status ``running`` marks a scan in flight; it is finalized
    to ``completed`` or ``failed`` when the worker reports back.
    """

    __tablename__ = "scan_results"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    target_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("targets.id"),
        nullable=False,
        index=True,
    )
    status: Mapped[str] = mapped_column(String, nullable=False, default="running", index=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    execution_time: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    def to_dict(self) -> Dict[str, Any]:
        """Convert scan result to dictionary representation."""
        return {
            "id": self.id,
            "target_id": self.target_id,
            "status": self.status,
            "success": self.success,
            "execution_time": self.execution_time,
            "error_message": self.error_message,
            "created_at": _iso(self.created_at),
        }


class ExecutionRecord(Base):
    """
    Durable execution monitoring record.

    Inserted with status ``started`` when an execution is registered and
    updated once to ``completed`` or ``failed``. Rows outlive the process
    and feed the execution statistics and alerts.
    """

    __tablename__ = "execution_monitoring"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    execution_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(100), nullable=False, default="general")
    start_time: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    end_time: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default="started")
    execution_time: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    checkpoints_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    warnings_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    errors_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    peak_memory: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    # Named to avoid SQLAlchemy's reserved 'metadata' attribute
    execution_metadata: Mapped[Optional[Dict[str, Any]]] = mapped_column(
        "metadata", JSON, nullable=True
    )
    final_data: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert execution record to dictionary representation."""
        return {
            "id": self.id,
            "execution_id": self.execution_id,
            "type": self.type,
            "start_time": _iso(self.start_time),
            "end_time": _iso(self.end_time),
            "status": self.status,
            "execution_time": self.execution_time,
            "checkpoints_count": self.checkpoints_count,
            "warnings_count": self.warnings_count,
            "errors_count": self.errors_count,
            "peak_memory": self.peak_memory,
            "metadata": self.execution_metadata,
            "final_data": self.final_data,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class ExecutionCheckpoint(Base):
    """Significant checkpoint of a tracked execution."""

    __tablename__ = "execution_checkpoints"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    execution_id: Mapped[str] = mapped_column(String(255), nullable=False)
    checkpoint_name: Mapped[str] = mapped_column(String(255), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    memory_usage: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    data: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    def to_dict(self) -> Dict[str, Any]:
        """Convert checkpoint to dictionary representation."""
        return {
            "id": self.id,
            "execution_id": self.execution_id,
            "checkpoint_name": self.checkpoint_name,
            "timestamp": _iso(self.timestamp),
            "memory_usage": self.memory_usage,
            "data": self.data,
            "created_at": _iso(self.created_at),
        }


# Additional indexes for common queries
Index("ix_targets_due", Target.active, Target.next_scan_at)
Index("ix_scan_results_target_status", ScanResult.target_id, ScanResult.status, ScanResult.created_at)
Index("ix_execution_monitoring_status_time", ExecutionRecord.status, ExecutionRecord.start_time)
Index(
    "ix_execution_checkpoints_execution",
    ExecutionCheckpoint.execution_id,
    ExecutionCheckpoint.checkpoint_name,
)
