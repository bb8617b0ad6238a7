"""Database repositories for Scanwatch.

Provides the data access patterns the scheduler and execution tracker
rely on: due-target selection, the atomic claim, scan history lookups,
and execution monitoring aggregates.

Repositories flush but never commit; the surrounding ``session_scope``
owns the transaction.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import and_, case, delete, desc, func, not_, or_, select, update
from sqlalchemy.orm import Session

from scanwatch.database.models import (
    ExecutionCheckpoint,
    ExecutionRecord,
    ScanResult,
    Target,
)


class TargetRepository:
    """
    Repository for monitored targets.

    Selection predicates shared by the work list and the claim live here
    so that both paths agree on what "due" and "free" mean.
    """

    def __init__(self, session: Session):
        """
        Initialize repository with database session.

        Args:
            session: SQLAlchemy session
        """
        self.session = session

    @staticmethod
    def _due_and_free(now: datetime, running_since: datetime):
        """Predicate for active, due, not running and unclaimed targets."""
        running_ids = (
            select(ScanResult.target_id)
            .where(
                ScanResult.status == "running",
                ScanResult.created_at >= running_since,
            )
            .distinct()
        )
        return and_(
            Target.active.is_(True),
            or_(Target.next_scan_at.is_(None), Target.next_scan_at <= now),
            or_(Target.claimed_until.is_(None), Target.claimed_until <= now),
            not_(Target.id.in_(running_ids)),
        )

    def get_by_id(self, target_id: int) -> Optional[Target]:
        """
        Get target by ID.

        Args:
            target_id: Target ID

        Returns:
            Target if found, None otherwise
        """
        return self.session.get(Target, target_id)

    def create(self, **kwargs) -> Target:
        """
        Create a new target record.

        Args:
            **kwargs: Target attributes

        Returns:
            Created target instance
        """
        target = Target(**kwargs)
        self.session.add(target)
        self.session.flush()
        return target

    def get_all(self, active_only: bool = False) -> List[Target]:
        """
        Get all targets ordered by ID.

        Args:
            active_only: Only return active targets

        Returns:
            List of targets
        """
        query = select(Target).order_by(Target.id)
        if active_only:
            query = query.where(Target.active.is_(True))
        return list(self.session.scalars(query))

    def get_due(
        self,
        now: datetime,
        running_since: datetime,
        weight: Optional[Any] = None,
        limit: Optional[int] = None,
    ) -> List[Target]:
        """
        Get targets eligible for scanning in dispatch order.

        Rows are ordered by ``weight`` (when given), then ``next_scan_at``
        with never-scanned targets first, then creation order.

        Args:
            now: Current time
            running_since: Running markers older than this are ignored
            weight: SQL expression ranking targets, lower first
            limit: Maximum number of rows

        Returns:
            List of due targets
        """
        query = select(Target).where(self._due_and_free(now, running_since))
        if weight is not None:
            query = query.order_by(weight)
        query = query.order_by(
            Target.next_scan_at.is_not(None),
            Target.next_scan_at,
            Target.created_at,
            Target.id,
        )
        if limit is not None:
            query = query.limit(limit)
        return list(self.session.scalars(query))

    def claim(
        self,
        target_id: int,
        worker_id: str,
        now: datetime,
        running_since: datetime,
        lease_until: datetime,
    ) -> bool:
        """
        Atomically claim a target for one worker.

        A single conditional UPDATE: the row only changes if the target is
        still due and free, so exactly one concurrent caller sees a row
        count of 1.

        Args:
            target_id: Target ID
            worker_id: Token identifying the claiming worker
            now: Current time
            running_since: Running markers older than this are ignored
            lease_until: Claim expiry

        Returns:
            True if this call won the claim
        """
        stmt = (
            update(Target)
            .where(Target.id == target_id, self._due_and_free(now, running_since))
            .values(claimed_by=worker_id, claimed_until=lease_until)
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(stmt)
        return result.rowcount == 1

    def release_claim(self, target_id: int) -> None:
        """
        Clear the claim lease on a target.

        Args:
            target_id: Target ID
        """
        stmt = (
            update(Target)
            .where(Target.id == target_id)
            .values(claimed_by=None, claimed_until=None)
            .execution_options(synchronize_session=False)
        )
        self.session.execute(stmt)

    def record_failure(
        self,
        target: Target,
        error_type: str,
        error_message: str,
        now: datetime,
    ) -> Target:
        """
        Update failure statistics on a target.

        Args:
            target: Target instance
            error_type: Categorized error type
            error_message: Raw error message (truncated to 500 chars)
            now: Failure time

        Returns:
            Updated target instance
        """
        target.consecutive_failures = (target.consecutive_failures or 0) + 1
        target.total_failures = (target.total_failures or 0) + 1
        target.last_failure_at = now
        target.last_error_type = error_type
        target.last_error_message = error_message[:500]
        self.session.flush()
        return target


class ScanResultRepository:
    """
    Repository for scan attempt history.
    """

    def __init__(self, session: Session):
        """
        Initialize repository with database session.

        Args:
            session: SQLAlchemy session
        """
        self.session = session

    def create_running(self, target_id: int, now: datetime) -> ScanResult:
        """
        Insert the ``running`` marker for a scan in flight.

        Args:
            target_id: Target ID
            now: Scan start time

        Returns:
            Created scan result
        """
        result = ScanResult(target_id=target_id, status="running", created_at=now)
        self.session.add(result)
        self.session.flush()
        return result

    def get_by_id(self, scan_result_id: int) -> Optional[ScanResult]:
        """
        Get scan result by ID.

        Args:
            scan_result_id: Scan result ID

        Returns:
            ScanResult if found, None otherwise
        """
        return self.session.get(ScanResult, scan_result_id)

    def get_latest_running(self, target_id: int) -> Optional[ScanResult]:
        """
        Get the most recent running scan for a target.

        Args:
            target_id: Target ID

        Returns:
            ScanResult if found, None otherwise
        """
        query = (
            select(ScanResult)
            .where(ScanResult.target_id == target_id, ScanResult.status == "running")
            .order_by(desc(ScanResult.created_at), desc(ScanResult.id))
            .limit(1)
        )
        return self.session.scalars(query).first()

    def finalize(
        self,
        scan_result: ScanResult,
        success: bool,
        execution_time: Optional[float] = None,
        error_message: Optional[str] = None,
    ) -> ScanResult:
        """
        Finalize a scan result as completed or failed.

        Args:
            scan_result: Scan result to update
            success: Whether the scan succeeded
            execution_time: Scan duration in seconds
            error_message: Error message if failed

        Returns:
            Updated scan result
        """
        scan_result.status = "completed" if success else "failed"
        scan_result.success = success
        if execution_time is not None:
            scan_result.execution_time = execution_time
        if error_message is not None:
            scan_result.error_message = error_message
        self.session.flush()
        return scan_result

    def get_history_counts(self, target_id: int, since: datetime) -> Tuple[int, int]:
        """
        Count finished scans and successes for a target since a time.

        Args:
            target_id: Target ID
            since: Window start

        Returns:
            Tuple of (total scans, successful scans)
        """
        query = select(
            func.count(ScanResult.id),
            func.coalesce(func.sum(case((ScanResult.success.is_(True), 1), else_=0)), 0),
        ).where(
            ScanResult.target_id == target_id,
            ScanResult.created_at >= since,
            ScanResult.status.in_(("completed", "failed")),
        )
        total, successful = self.session.execute(query).one()
        return int(total or 0), int(successful or 0)

    def count_failures_since(self, target_id: int, since: datetime) -> int:
        """
        Count failed scans for a target since a time.

        Args:
            target_id: Target ID
            since: Window start

        Returns:
            Number of failed scans
        """
        query = select(func.count(ScanResult.id)).where(
            ScanResult.target_id == target_id,
            ScanResult.status == "failed",
            ScanResult.created_at >= since,
        )
        return int(self.session.scalar(query) or 0)


class ExecutionRepository:
    """
    Repository for durable execution monitoring records.
    """

    def __init__(self, session: Session):
        """
        Initialize repository with database session.

        Args:
            session: SQLAlchemy session
        """
        self.session = session

    def create(
        self,
        execution_id: str,
        execution_type: str,
        start_time: datetime,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ExecutionRecord:
        """
        Record the start of an execution.

        Args:
            execution_id: Caller-supplied execution identifier
            execution_type: Type tag (from metadata["type"])
            start_time: When execution started
            metadata: Execution metadata

        Returns:
            Created ExecutionRecord instance
        """
        record = ExecutionRecord(
            execution_id=execution_id,
            type=execution_type,
            start_time=start_time,
            status="started",
            execution_metadata=metadata,
            created_at=start_time,
            updated_at=start_time,
        )
        self.session.add(record)
        self.session.flush()
        return record

    def finalize(
        self,
        execution_id: str,
        end_time: datetime,
        success: bool,
        execution_time: float,
        checkpoints_count: int,
        warnings_count: int,
        errors_count: int,
        peak_memory: float,
        final_data: Optional[Dict[str, Any]] = None,
    ) -> int:
        """
        Finalize the started rows of an execution.

        Args:
            execution_id: Execution identifier
            end_time: When execution completed
            success: Whether execution succeeded
            execution_time: Elapsed seconds
            checkpoints_count: Number of checkpoints recorded
            warnings_count: Number of warnings recorded
            errors_count: Number of errors recorded
            peak_memory: Peak memory in MB
            final_data: Final payload

        Returns:
            Number of rows updated
        """
        stmt = (
            update(ExecutionRecord)
            .where(
                ExecutionRecord.execution_id == execution_id,
                ExecutionRecord.status == "started",
            )
            .values(
                end_time=end_time,
                status="completed" if success else "failed",
                execution_time=execution_time,
                checkpoints_count=checkpoints_count,
                warnings_count=warnings_count,
                errors_count=errors_count,
                peak_memory=peak_memory,
                final_data=final_data,
                updated_at=end_time,
            )
            .execution_options(synchronize_session=False)
        )
        return self.session.execute(stmt).rowcount

    def get_by_execution_id(self, execution_id: str) -> List[ExecutionRecord]:
        """
        Get all records for an execution identifier.

        Args:
            execution_id: Execution identifier

        Returns:
            List of records ordered by ID
        """
        query = (
            select(ExecutionRecord)
            .where(ExecutionRecord.execution_id == execution_id)
            .order_by(ExecutionRecord.id)
        )
        return list(self.session.scalars(query))

    def get_daily_statistics(self, since: datetime) -> List[Dict[str, Any]]:
        """
        Aggregate execution records per day since a time.

        Args:
            since: Window start

        Returns:
            List of per-day aggregates, most recent day first
        """
        day = func.date(ExecutionRecord.start_time).label("date")
        query = (
            select(
                day,
                func.count(ExecutionRecord.id),
                func.sum(case((ExecutionRecord.status == "completed", 1), else_=0)),
                func.sum(case((ExecutionRecord.status == "failed", 1), else_=0)),
                func.avg(ExecutionRecord.execution_time),
                func.avg(ExecutionRecord.peak_memory),
                func.sum(ExecutionRecord.warnings_count),
                func.sum(ExecutionRecord.errors_count),
            )
            .where(ExecutionRecord.start_time >= since)
            .group_by(day)
            .order_by(desc(day))
        )
        rows = []
        for row in self.session.execute(query):
            rows.append({
                "date": str(row[0]),
                "total_executions": int(row[1] or 0),
                "successful_executions": int(row[2] or 0),
                "failed_executions": int(row[3] or 0),
                "avg_execution_time": float(row[4]) if row[4] is not None else None,
                "avg_memory_usage": float(row[5]) if row[5] is not None else None,
                "total_warnings": int(row[6] or 0),
                "total_errors": int(row[7] or 0),
            })
        return rows

    def get_overall_statistics(self, since: datetime) -> Dict[str, Any]:
        """
        Aggregate all execution records since a time.

        Args:
            since: Window start

        Returns:
            Dictionary of overall aggregates
        """
        query = select(
            func.count(ExecutionRecord.id),
            func.sum(case((ExecutionRecord.status == "completed", 1), else_=0)),
            func.sum(case((ExecutionRecord.status == "failed", 1), else_=0)),
            func.avg(ExecutionRecord.execution_time),
            func.max(ExecutionRecord.execution_time),
            func.avg(ExecutionRecord.peak_memory),
            func.max(ExecutionRecord.peak_memory),
        ).where(ExecutionRecord.start_time >= since)
        row = self.session.execute(query).one()

        def _float(value: Any) -> Optional[float]:
            return float(value) if value is not None else None

        return {
            "total_executions": int(row[0] or 0),
            "total_successful": int(row[1] or 0),
            "total_failed": int(row[2] or 0),
            "overall_avg_time": _float(row[3]),
            "max_execution_time": _float(row[4]),
            "avg_memory": _float(row[5]),
            "max_memory": _float(row[6]),
        }

    def delete_older_than(self, before: datetime) -> int:
        """
        Delete execution records started before a given time.

        Args:
            before: Delete records started before this time

        Returns:
            Number of records deleted
        """
        stmt = delete(ExecutionRecord).where(ExecutionRecord.start_time < before)
        return self.session.execute(stmt).rowcount


class CheckpointRepository:
    """
    Repository for significant execution checkpoints.
    """

    def __init__(self, session: Session):
        """
        Initialize repository with database session.

        Args:
            session: SQLAlchemy session
        """
        self.session = session

    def create(
        self,
        execution_id: str,
        checkpoint_name: str,
        timestamp: datetime,
        memory_usage: int,
        data: Optional[Dict[str, Any]] = None,
    ) -> ExecutionCheckpoint:
        """
        Persist a checkpoint.

        Args:
            execution_id: Execution identifier
            checkpoint_name: Checkpoint name
            timestamp: When the checkpoint was reached
            memory_usage: Memory sample in bytes
            data: Checkpoint payload

        Returns:
            Created ExecutionCheckpoint instance
        """
        checkpoint = ExecutionCheckpoint(
            execution_id=execution_id,
            checkpoint_name=checkpoint_name,
            timestamp=timestamp,
            memory_usage=memory_usage,
            data=data,
            created_at=timestamp,
        )
        self.session.add(checkpoint)
        self.session.flush()
        return checkpoint

    def get_for_execution(self, execution_id: str) -> List[ExecutionCheckpoint]:
        """
        Get persisted checkpoints for an execution in order.

        Args:
            execution_id: Execution identifier

        Returns:
            List of checkpoints
        """
        query = (
            select(ExecutionCheckpoint)
            .where(ExecutionCheckpoint.execution_id == execution_id)
            .order_by(ExecutionCheckpoint.id)
        )
        return list(self.session.scalars(query))

    def delete_older_than(self, before: datetime) -> int:
        """
        Delete checkpoints created before a given time.

        Args:
            before: Delete checkpoints created before this time

        Returns:
            Number of checkpoints deleted
        """
        stmt = delete(ExecutionCheckpoint).where(ExecutionCheckpoint.created_at < before)
        return self.session.execute(stmt).rowcount


class RepositoryFactory:
    """
    Factory for creating repository instances.

    Usage:
        with session_scope(session_maker) as session:
            repos = RepositoryFactory(session)
            targets = repos.targets.get_all()
    """

    def __init__(self, session: Session):
        """
        Initialize factory with database session.

        Args:
            session: SQLAlchemy session
        """
        self.session = session
        self._targets: Optional[TargetRepository] = None
        self._scan_results: Optional[ScanResultRepository] = None
        self._executions: Optional[ExecutionRepository] = None
        self._checkpoints: Optional[CheckpointRepository] = None

    @property
    def targets(self) -> TargetRepository:
        """Get target repository."""
        if self._targets is None:
            self._targets = TargetRepository(self.session)
        return self._targets

    @property
    def scan_results(self) -> ScanResultRepository:
        """Get scan result repository."""
        if self._scan_results is None:
            self._scan_results = ScanResultRepository(self.session)
        return self._scan_results

    @property
    def executions(self) -> ExecutionRepository:
        """Get execution monitoring repository."""
        if self._executions is None:
            self._executions = ExecutionRepository(self.session)
        return self._executions

    @property
    def checkpoints(self) -> CheckpointRepository:
        """Get checkpoint repository."""
        if self._checkpoints is None:
            self._checkpoints = CheckpointRepository(self.session)
        return self._checkpoints
