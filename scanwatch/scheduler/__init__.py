"""Scan scheduling: policy tables, retry policy and the priority scheduler.

The PriorityScheduler decides when each target is due and in what order
due targets are claimed by scan workers.
"""

from scanwatch.scheduler.policy import (
    PRIORITY_WEIGHTS,
    SCAN_FREQUENCIES,
    CategoryPolicy,
    SchedulingPolicy,
    TimeSlot,
)
from scanwatch.scheduler.priority_scheduler import PriorityScheduler
from scanwatch.scheduler.retry import ErrorType, RetryDecision, categorize_error, should_retry

__all__ = [
    "CategoryPolicy",
    "ErrorType",
    "PRIORITY_WEIGHTS",
    "PriorityScheduler",
    "RetryDecision",
    "SCAN_FREQUENCIES",
    "SchedulingPolicy",
    "TimeSlot",
    "categorize_error",
    "should_retry",
]
