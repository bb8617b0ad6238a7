"""Connection pooling for scan workers."""

from scanwatch.pool.connection_pool import (
    BorrowResult,
    BorrowStatus,
    ConnectionPool,
    PoolEntry,
    PoolStats,
    SQLAlchemyConnector,
    select_one_probe,
)

__all__ = [
    "BorrowResult",
    "BorrowStatus",
    "ConnectionPool",
    "PoolEntry",
    "PoolStats",
    "SQLAlchemyConnector",
    "select_one_probe",
]
