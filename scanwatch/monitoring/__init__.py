"""Execution monitoring: live tracking, statistics and alerts."""

from scanwatch.monitoring.execution_tracker import (
    Alert,
    ExecutionStatistics,
    ExecutionSummary,
    ExecutionTracker,
    ProcessResources,
    ResourceSample,
)

__all__ = [
    "Alert",
    "ExecutionStatistics",
    "ExecutionSummary",
    "ExecutionTracker",
    "ProcessResources",
    "ResourceSample",
]
