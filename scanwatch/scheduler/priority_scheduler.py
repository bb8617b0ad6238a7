"""Priority scheduler for monitored targets.

The PriorityScheduler decides how often each target is scanned and in
what order due targets are handed to workers. Per-target overrides win
over the category defaults of the SchedulingPolicy; the computed interval
is then adjusted for retry backoff, time-of-day load and the target's
recent reliability.

Workers never act on the prioritized list directly. They claim a target
first: the claim is a conditional UPDATE on the targets table, so two
pollers reading the same due target cannot both scan it.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from sqlalchemy import case, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from scanwatch.config import SchedulerSettings
from scanwatch.database.connection import session_scope
from scanwatch.database.models import ScanResult, Target, utcnow
from scanwatch.database.repositories import RepositoryFactory
from scanwatch.errors import NotFoundError
from scanwatch.scheduler.policy import CategoryPolicy, SchedulingPolicy
from scanwatch.scheduler.retry import RetryDecision, categorize_error, should_retry

logger = logging.getLogger(__name__)

# Adaptive frequency window and thresholds
ADAPTIVE_WINDOW_DAYS = 7
ADAPTIVE_MIN_SCANS = 5
UNRELIABLE_SUCCESS_RATE = 0.80
RELIABLE_SUCCESS_RATE = 0.95

# Upper bound of the load-balancing inflation
LOAD_BALANCING_FACTOR = 0.2

# Exponent cap of the retry backoff
MAX_BACKOFF_EXPONENT = 4


class PriorityScheduler:
    """Computes scan cadence and the prioritized work list for targets.

    Example:
        scheduler = PriorityScheduler(session_maker, config.scheduler)
        for target in scheduler.prioritized_targets(limit=10):
            if scheduler.claim_target(target.id, worker_id):
                ...
    """

    def __init__(
        self,
        session_maker: sessionmaker,
        settings: Optional[SchedulerSettings] = None,
        policy: Optional[SchedulingPolicy] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """Initialize the scheduler.

        Args:
            session_maker: Session factory for the durable store
            settings: Scheduler settings (defaults if not provided)
            policy: Scheduling tables (built-in tables if not provided)
            clock: Returns the current naive UTC time
        """
        self.session_maker = session_maker
        self.settings = settings or SchedulerSettings()
        self.policy = policy or SchedulingPolicy()
        self._clock = clock or utcnow

    def now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # Per-target policy resolution
    # ------------------------------------------------------------------

    def _category_policy(self, target: Target) -> CategoryPolicy:
        return self.policy.category(target.category)

    def scan_frequency_minutes(self, target: Target) -> int:
        """Get the base scan interval of a target in minutes.

        A raw minute count override wins, then a named tier override, then
        the category's default tier.
        """
        override = target.scan_frequency
        if override is not None:
            if isinstance(override, int):
                return override
            text = str(override).strip()
            if text.isdigit():
                return int(text)
            if text in self.policy.frequencies:
                return self.policy.frequencies[text]

        tier = self._category_policy(target).frequency
        return self.policy.frequencies.get(tier, self.policy.frequencies.get("daily", 1440))

    def priority_weight(self, target: Target) -> int:
        """Get the priority weight of a target, lower is more urgent."""
        if target.priority:
            return self.policy.priority_weight(target.priority)
        return self.policy.priority_weight(self._category_policy(target).priority)

    def scan_timeout_seconds(self, target: Target) -> int:
        """Get the scan timeout the worker must enforce for a target."""
        if target.scan_timeout is not None:
            return target.scan_timeout
        timeout = self._category_policy(target).timeout
        if timeout is not None:
            return timeout
        return self.settings.scan_timeout_default

    def retry_budget(self, target: Target) -> int:
        """Get the number of consecutive failures retried for a target."""
        if target.max_retries is not None:
            return target.max_retries
        return self._category_policy(target).retry_attempts

    # ------------------------------------------------------------------
    # Next scan time
    # ------------------------------------------------------------------

    def next_scan_time(
        self,
        target: Target,
        was_successful: bool = True,
        retry_count: int = 0,
    ) -> datetime:
        """Compute when a target is next due.

        Args:
            target: Target that was just scanned
            was_successful: Whether the last attempt succeeded
            retry_count: Consecutive failures so far

        Returns:
            Naive UTC timestamp, never earlier than now
        """
        if self.settings.adaptive_frequency_enabled and target.id is not None:
            with session_scope(self.session_maker) as session:
                return self._next_scan_time(target, was_successful, retry_count, session)
        return self._next_scan_time(target, was_successful, retry_count, None)

    def _next_scan_time(
        self,
        target: Target,
        was_successful: bool,
        retry_count: int,
        session: Optional[Session],
    ) -> datetime:
        now = self.now()
        interval = self.scan_frequency_minutes(target)

        if not was_successful and retry_count > 0:
            delay = self.settings.retry_delay_minutes * 2 ** min(retry_count - 1, MAX_BACKOFF_EXPONENT)
            interval = min(delay, interval)

        if self.settings.load_balancing_enabled:
            weight = self.policy.slot_weight(now.hour)
            interval = int(interval * (1 + (1 - weight) * LOAD_BALANCING_FACTOR))

        if self.settings.adaptive_frequency_enabled and session is not None and target.id is not None:
            interval = self._apply_adaptive_frequency(interval, target, now, session)

        return now + timedelta(minutes=interval)

    def _apply_adaptive_frequency(
        self,
        interval: int,
        target: Target,
        now: datetime,
        session: Session,
    ) -> int:
        """Stretch or shrink an interval by the target's recent success rate.

        The lookup runs in a savepoint: a failed query is rolled back on its
        own and the caller's transaction stays usable.
        """
        since = now - timedelta(days=ADAPTIVE_WINDOW_DAYS)
        try:
            with session.begin_nested():
                total, successful = RepositoryFactory(session).scan_results.get_history_counts(
                    target.id, since
                )
        except SQLAlchemyError as e:
            logger.warning(f"Failed to apply adaptive frequency for target {target.id}: {e}")
            return interval

        if total < ADAPTIVE_MIN_SCANS:
            return interval

        success_rate = successful / total
        if success_rate < UNRELIABLE_SUCCESS_RATE:
            return int(interval * 0.75)
        if success_rate >= RELIABLE_SUCCESS_RATE:
            return int(interval * 1.25)
        return interval

    # ------------------------------------------------------------------
    # Work list and claims
    # ------------------------------------------------------------------

    def priority_weight_expression(self):
        """Build the SQL form of ``priority_weight`` for ordering in the database.

        An explicit priority tier wins (unknown tiers count as ``medium``),
        otherwise the category's tier applies, with unknown categories
        falling back to ``other``.
        """
        policy = self.policy
        category_weight = case(
            {
                name: policy.priority_weight(category.priority)
                for name, category in policy.categories.items()
            },
            value=Target.category,
            else_=policy.priority_weight(policy.category(None).priority),
        )
        override_weight = case(
            dict(policy.priorities),
            value=Target.priority,
            else_=policy.priority_weight(None),
        )
        return case(
            (or_(Target.priority.is_(None), Target.priority == ""), category_weight),
            else_=override_weight,
        )

    def prioritized_targets(self, limit: int = 100) -> List[Target]:
        """Get due targets in dispatch order.

        A target qualifies when it is active, due, not under an unexpired
        claim and has no ``running`` scan result newer than the running
        window. Ordering is by priority weight, then ``next_scan_at`` with
        never-scanned targets first, then creation order. Filtering,
        ordering and the limit all run in the database.

        Args:
            limit: Maximum number of targets to return

        Returns:
            Detached Target instances
        """
        now = self.now()
        running_since = now - timedelta(minutes=self.settings.running_window_minutes)

        with session_scope(self.session_maker) as session:
            return RepositoryFactory(session).targets.get_due(
                now,
                running_since,
                weight=self.priority_weight_expression(),
                limit=limit,
            )

    def claim_target(self, target_id: int, worker_id: str) -> bool:
        """Atomically claim a due target for a worker.

        Args:
            target_id: Target to claim
            worker_id: Token identifying the worker

        Returns:
            True for exactly one of any set of concurrent callers
        """
        now = self.now()
        running_since = now - timedelta(minutes=self.settings.running_window_minutes)
        lease_until = now + timedelta(minutes=self.settings.claim_lease_minutes)

        with session_scope(self.session_maker) as session:
            claimed = RepositoryFactory(session).targets.claim(
                target_id, worker_id, now, running_since, lease_until
            )

        if claimed:
            logger.debug(f"Target {target_id} claimed by {worker_id} until {lease_until.isoformat()}")
        else:
            logger.debug(f"Target {target_id} not claimable by {worker_id}")
        return claimed

    def claim_next(self, worker_id: str, limit: Optional[int] = None) -> Optional[Target]:
        """Claim the most urgent due target.

        Args:
            worker_id: Token identifying the worker
            limit: Number of candidates to try (defaults to the batch size)

        Returns:
            The claimed Target, or None if nothing could be claimed
        """
        for candidate in self.prioritized_targets(limit or self.settings.batch_size):
            if self.claim_target(candidate.id, worker_id):
                return self.get_target(candidate.id)
        return None

    def release_claim(self, target_id: int) -> None:
        """Give up a claim without scanning (target stays due)."""
        with session_scope(self.session_maker) as session:
            RepositoryFactory(session).targets.release_claim(target_id)
        logger.debug(f"Claim on target {target_id} released")

    def get_target(self, target_id: int) -> Optional[Target]:
        with session_scope(self.session_maker) as session:
            return RepositoryFactory(session).targets.get_by_id(target_id)

    def list_targets(self, active_only: bool = False) -> List[Target]:
        """Get every target ordered by ID, due or not."""
        with session_scope(self.session_maker) as session:
            return RepositoryFactory(session).targets.get_all(active_only=active_only)

    # ------------------------------------------------------------------
    # Scan lifecycle
    # ------------------------------------------------------------------

    def record_scan_start(self, target_id: int) -> ScanResult:
        """Insert the ``running`` marker for a claimed target.

        Raises:
            NotFoundError: If the target does not exist
        """
        with session_scope(self.session_maker) as session:
            repos = RepositoryFactory(session)
            if repos.targets.get_by_id(target_id) is None:
                raise NotFoundError(f"Target not found: {target_id}", details={"target_id": target_id})
            return repos.scan_results.create_running(target_id, self.now())

    def _finalize_scan_result(
        self,
        session: Session,
        target_id: int,
        success: bool,
        scan_result_id: Optional[int],
        execution_time: Optional[float],
        error_message: Optional[str],
    ) -> None:
        repos = RepositoryFactory(session)
        if scan_result_id is not None:
            scan_result = repos.scan_results.get_by_id(scan_result_id)
        else:
            scan_result = repos.scan_results.get_latest_running(target_id)

        if scan_result is None:
            logger.debug(f"No running scan result to finalize for target {target_id}")
            return
        repos.scan_results.finalize(scan_result, success, execution_time, error_message)

    def _reschedule(
        self,
        session: Session,
        target: Target,
        was_successful: bool,
        retry_count: int,
    ) -> datetime:
        next_at = self._next_scan_time(target, was_successful, retry_count, session)
        target.next_scan_at = next_at
        target.last_scan_at = self.now()
        target.claimed_by = None
        target.claimed_until = None
        session.flush()
        return next_at

    def _get_target_or_raise(self, session: Session, target_id: int) -> Target:
        target = RepositoryFactory(session).targets.get_by_id(target_id)
        if target is None:
            raise NotFoundError(f"Target not found: {target_id}", details={"target_id": target_id})
        return target

    def complete_scan(
        self,
        target_id: int,
        success: bool,
        retry_count: int = 0,
        scan_result_id: Optional[int] = None,
        execution_time: Optional[float] = None,
        error_message: Optional[str] = None,
    ) -> datetime:
        """Record the outcome of a scan and schedule the next one.

        Finalizes the scan result (the given one, or the latest running
        row), stores the new ``next_scan_at`` and releases the claim.

        Args:
            target_id: Target that was scanned
            success: Whether the scan succeeded
            retry_count: Consecutive failures so far (drives backoff)
            scan_result_id: Running row to finalize
            execution_time: Scan duration in seconds
            error_message: Error message if failed

        Returns:
            The stored next scan time

        Raises:
            NotFoundError: If the target does not exist
        """
        with session_scope(self.session_maker) as session:
            target = self._get_target_or_raise(session, target_id)
            if success:
                target.consecutive_failures = 0
            self._finalize_scan_result(
                session, target_id, success, scan_result_id, execution_time, error_message
            )
            next_at = self._reschedule(session, target, success, retry_count)

        logger.info(
            f"Scan of target {target_id} {'completed' if success else 'failed'}, "
            f"next scan at {next_at.isoformat()}"
        )
        return next_at

    def handle_scan_failure(
        self,
        target_id: int,
        error_message: str,
        scan_result_id: Optional[int] = None,
        execution_time: Optional[float] = None,
    ) -> RetryDecision:
        """Record a failed scan and decide between retry and manual review.

        Retryable failures are rescheduled with backoff. Once the retry
        budget or the daily cap is spent, or for errors a retry cannot fix,
        the target is flagged for manual review and kept on its normal
        cadence.

        Raises:
            NotFoundError: If the target does not exist
        """
        now = self.now()
        error_type = categorize_error(error_message)

        with session_scope(self.session_maker) as session:
            repos = RepositoryFactory(session)
            target = self._get_target_or_raise(session, target_id)

            self._finalize_scan_result(
                session, target_id, False, scan_result_id, execution_time, error_message
            )
            repos.targets.record_failure(target, error_type.value, error_message or "", now)
            failure_count = target.consecutive_failures
            max_retries = self.retry_budget(target)

            midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
            failures_today = repos.scan_results.count_failures_since(target_id, midnight)

            retry = should_retry(
                error_type,
                failure_count,
                max_retries,
                failures_today,
                self.settings.max_retries_per_day,
            )

            if retry:
                next_at = self._reschedule(session, target, False, failure_count)
            else:
                target.needs_manual_review = True
                next_at = self._reschedule(session, target, True, 0)

        decision = RetryDecision(
            target_id=target_id,
            error_type=error_type,
            retry=retry,
            failure_count=failure_count,
            max_retries=max_retries,
            failures_today=failures_today,
            next_scan_at=next_at,
            needs_manual_review=not retry,
        )

        if retry:
            logger.warning(
                f"Scan of target {target_id} failed ({error_type.value}), "
                f"retry {failure_count}/{max_retries} at {next_at.isoformat()}"
            )
        else:
            logger.error(
                f"Target {target_id} marked for manual review after {failure_count} "
                f"failures ({error_type.value})"
            )
        return decision

    def reset_next_scan(self, target_id: int) -> Target:
        """Make a target due immediately (manual reset).

        Raises:
            NotFoundError: If the target does not exist
        """
        with session_scope(self.session_maker) as session:
            target = self._get_target_or_raise(session, target_id)
            target.next_scan_at = None
            target.needs_manual_review = False

        logger.info(f"Next scan of target {target_id} reset")
        return target

    # ------------------------------------------------------------------
    # Policy tables
    # ------------------------------------------------------------------

    def frequency_options(self) -> Dict[str, int]:
        return self.policy.frequency_options()

    def priority_options(self) -> Dict[str, int]:
        return self.policy.priority_options()

    def category_options(self) -> Dict[str, CategoryPolicy]:
        return self.policy.category_options()
