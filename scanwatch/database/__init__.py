"""Durable store for targets, scan history and execution monitoring."""

from scanwatch.database.connection import (
    create_tables,
    drop_tables,
    get_session_maker,
    init_engine,
    session_scope,
)
from scanwatch.database.models import (
    Base,
    ExecutionCheckpoint,
    ExecutionRecord,
    ScanResult,
    Target,
    utcnow,
)
from scanwatch.database.repositories import RepositoryFactory

__all__ = [
    "Base",
    "ExecutionCheckpoint",
    "ExecutionRecord",
    "RepositoryFactory",
    "ScanResult",
    "Target",
    "create_tables",
    "drop_tables",
    "get_session_maker",
    "init_engine",
    "session_scope",
    "utcnow",
]
