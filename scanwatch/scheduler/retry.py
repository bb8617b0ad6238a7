"""Failure classification and retry policy for scans.

Scan workers report failures as free-form messages. They are classified
into coarse error types which decide whether a retry is worth scheduling.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class ErrorType(str, Enum):
    """Coarse classification of a scan failure."""

    TIMEOUT = "timeout"
    CONNECTION_REFUSED = "connection_refused"
    DNS_ERROR = "dns_error"
    NOT_FOUND = "not_found"
    SERVER_ERROR = "server_error"
    FORBIDDEN = "forbidden"
    SSL_ERROR = "ssl_error"
    UNKNOWN = "unknown"


# Retrying these cannot change the outcome
NON_RETRYABLE_ERRORS = frozenset({ErrorType.NOT_FOUND, ErrorType.FORBIDDEN})

# First match wins
_ERROR_PATTERNS = (
    (ErrorType.TIMEOUT, ("timeout", "timed out")),
    (ErrorType.CONNECTION_REFUSED, ("connection refused", "connection failed")),
    (ErrorType.DNS_ERROR, ("dns", "host not found", "name resolution")),
    (ErrorType.NOT_FOUND, ("404", "not found")),
    (ErrorType.SERVER_ERROR, ("500", "502", "503")),
    (ErrorType.FORBIDDEN, ("403", "forbidden")),
    (ErrorType.SSL_ERROR, ("ssl", "certificate")),
)


def categorize_error(message: Optional[str]) -> ErrorType:
    """Classify a failure message by case-insensitive substring match.

    Args:
        message: Error message reported by the scan worker

    Returns:
        The matching ErrorType, UNKNOWN if nothing matches
    """
    text = (message or "").lower()
    for error_type, needles in _ERROR_PATTERNS:
        if any(needle in text for needle in needles):
            return error_type
    return ErrorType.UNKNOWN


def should_retry(
    error_type: ErrorType,
    failure_count: int,
    max_retries: int,
    failures_today: int,
    max_retries_per_day: int,
) -> bool:
    """Decide whether a failed scan gets a backoff retry.

    Args:
        error_type: Classified error
        failure_count: Consecutive failures including this one
        max_retries: Retry budget of the target
        failures_today: Failed scans of the target since midnight UTC
        max_retries_per_day: Global daily retry cap

    Returns:
        True if a retry should be scheduled
    """
    if failure_count >= max_retries:
        return False
    if error_type in NON_RETRYABLE_ERRORS:
        return False
    if failures_today >= max_retries_per_day:
        return False
    return True


@dataclass
class RetryDecision:
    """Outcome of handling a scan failure.

    Attributes:
        target_id: Target that failed
        error_type: Classified error
        retry: Whether a backoff retry was scheduled
        failure_count: Consecutive failures after this one
        max_retries: Retry budget of the target
        failures_today: Failed scans of the target today
        next_scan_at: When the target is next due
        needs_manual_review: Set when the budget is exhausted
    """

    target_id: int
    error_type: ErrorType
    retry: bool
    failure_count: int
    max_retries: int
    failures_today: int
    next_scan_at: datetime
    needs_manual_review: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target_id": self.target_id,
            "error_type": self.error_type.value,
            "retry": self.retry,
            "failure_count": self.failure_count,
            "max_retries": self.max_retries,
            "failures_today": self.failures_today,
            "next_scan_at": self.next_scan_at.isoformat(),
            "needs_manual_review": self.needs_manual_review,
        }
