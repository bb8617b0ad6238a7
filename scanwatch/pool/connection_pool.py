"""Bounded pool of backing-store connections per named backend.

Scan workers borrow a connection for the duration of one scan and hand
it back afterwards. Each backend has its own pool, initialized lazily
on first use with ``min_connections`` opened eagerly. Connections on
loan are tracked only by a counter; the pool never lends more than
``max_connections`` at once.

Borrowing reports its outcome as a BorrowResult value instead of raising:
exhaustion is an expected, recoverable condition that the dispatch loop
branches on. A backend that cannot open a connection is reported as
CONNECTION_ERROR, never as exhaustion. Callers that prefer exceptions
use ``BorrowResult.unwrap()`` or the ``connection()`` context manager.
"""

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, Callable, Dict, Generator, List, Mapping, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import NullPool

from scanwatch.config import PoolSettings
from scanwatch.errors import ConfigurationError, PersistenceError, PoolExhaustedError

logger = logging.getLogger(__name__)

Connector = Callable[[PoolSettings], Any]
Probe = Callable[[Any], bool]


class BorrowStatus(Enum):
    """Outcome of a borrow request."""

    OK = auto()                    # Connection lent
    POOL_EXHAUSTED = auto()        # Backend at capacity, retry later
    CONFIGURATION_ERROR = auto()   # Backend has no pool configuration
    CONNECTION_ERROR = auto()      # Backend refused or failed to open a connection


@dataclass
class BorrowResult:
    """Typed result of ``ConnectionPool.borrow``.

    Attributes:
        status: Borrow outcome
        backend: Backend the request was for
        connection: The lent connection when status is OK
        message: Human-readable reason for a failed borrow
        cause: Exception that prevented opening a connection, if any
    """

    status: BorrowStatus
    backend: str
    connection: Any = None
    message: Optional[str] = None
    cause: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.status == BorrowStatus.OK

    def __bool__(self) -> bool:
        return self.ok

    def unwrap(self) -> Any:
        """Return the connection or raise the matching error.

        Raises:
            PoolExhaustedError: If the backend is at capacity
            ConfigurationError: If the backend is not configured
            PersistenceError: If a new connection could not be opened
        """
        if self.status == BorrowStatus.OK:
            return self.connection

        details = {"backend": self.backend}
        if self.cause is not None:
            details["cause"] = str(self.cause)

        if self.status == BorrowStatus.CONFIGURATION_ERROR:
            raise ConfigurationError(self.message or "Backend not configured", details=details)
        if self.status == BorrowStatus.CONNECTION_ERROR:
            raise PersistenceError(
                self.message or "Could not open a backend connection", details=details
            ) from self.cause
        raise PoolExhaustedError(self.message or "Connection pool exhausted", details=details) from self.cause


@dataclass
class PoolEntry:
    """An available connection and when it was last handed back."""

    connection: Any
    last_used: float

    def idle_seconds(self, now: float) -> float:
        return now - self.last_used


@dataclass
class PoolStats:
    """Read-only snapshot of one backend's pool."""

    backend: str
    available: int
    active: int
    min_connections: int
    max_connections: int
    utilization: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "backend": self.backend,
            "available": self.available,
            "active": self.active,
            "min": self.min_connections,
            "max": self.max_connections,
            "utilization": self.utilization,
        }


@dataclass
class _BackendPool:
    settings: PoolSettings
    available: List[PoolEntry]
    active_count: int = 0


class SQLAlchemyConnector:
    """Opens raw connections from one NullPool engine per backend URL.

    The engine itself does no pooling; ConnectionPool owns reuse.
    """

    def __init__(self) -> None:
        self._engines: Dict[str, Engine] = {}
        self._lock = threading.Lock()

    def _engine_for(self, settings: PoolSettings) -> Engine:
        with self._lock:
            engine = self._engines.get(settings.url)
            if engine is None:
                if settings.url.startswith("sqlite"):
                    connect_args = {"timeout": settings.connection_timeout, "check_same_thread": False}
                else:
                    connect_args = {"connect_timeout": settings.connection_timeout}
                engine = create_engine(settings.url, poolclass=NullPool, connect_args=connect_args)
                self._engines[settings.url] = engine
            return engine

    def __call__(self, settings: PoolSettings) -> Any:
        return self._engine_for(settings).connect()

    def dispose(self) -> None:
        with self._lock:
            for engine in self._engines.values():
                engine.dispose()
            self._engines.clear()


def select_one_probe(connection: Any) -> bool:
    """Liveness probe running ``SELECT 1`` on a SQLAlchemy connection."""
    if getattr(connection, "closed", False) or getattr(connection, "invalidated", False):
        return False
    try:
        connection.execute(text("SELECT 1"))
        connection.rollback()
        return True
    except SQLAlchemyError as e:
        logger.debug(f"Connection liveness probe failed: {e}")
        return False


class ConnectionPool:
    """Per-backend pools of reusable connections.

    Example:
        pool = ConnectionPool(config.resolved_pools())
        result = pool.borrow("default")
        if result.ok:
            try:
                ...
            finally:
                pool.release(result.connection, "default")
    """

    def __init__(
        self,
        settings: Mapping[str, PoolSettings],
        connector: Optional[Connector] = None,
        probe: Optional[Probe] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        """Initialize the pool.

        Args:
            settings: Pool settings per backend name
            connector: Opens a new connection for a backend
            probe: Returns True if a connection is still usable
            clock: Monotonic clock in seconds
        """
        self._settings = dict(settings)
        self._connector = connector or SQLAlchemyConnector()
        self._probe = probe or select_one_probe
        self._clock = clock or time.monotonic
        self._pools: Dict[str, _BackendPool] = {}
        self._lock = threading.Lock()

    @property
    def backends(self) -> List[str]:
        return list(self._settings)

    def _open(self, settings: PoolSettings) -> Any:
        return self._connector(settings)

    def _close(self, connection: Any) -> None:
        close = getattr(connection, "close", None)
        if close is None:
            return
        try:
            close()
        except Exception as e:
            logger.debug(f"Error closing pooled connection: {e}")

    def _is_usable(self, entry: PoolEntry, settings: PoolSettings, now: float) -> bool:
        if entry.idle_seconds(now) > settings.idle_timeout:
            return False
        return self._probe(entry.connection)

    def _get_pool(self, backend: str) -> Optional[_BackendPool]:
        """Get a backend's pool, initializing it on first use."""
        pool = self._pools.get(backend)
        if pool is not None:
            return pool

        settings = self._settings.get(backend)
        if settings is None:
            return None

        pool = _BackendPool(settings=settings, available=[])
        for _ in range(settings.min_connections):
            try:
                connection = self._open(settings)
            except Exception as e:
                logger.warning(f"Failed to open initial connection for backend '{backend}': {e}")
                break
            pool.available.append(PoolEntry(connection, self._clock()))

        self._pools[backend] = pool
        logger.info(
            f"Connection pool '{backend}' initialized with {len(pool.available)} connection(s) "
            f"(min={settings.min_connections}, max={settings.max_connections})"
        )
        return pool

    def borrow(self, backend: str) -> BorrowResult:
        """Lend a connection for a backend.

        Reuses the most recently returned connection if it is still alive
        and not idle for too long; otherwise opens a new one while below
        ``max_connections``. A stale connection is discarded, not retried.

        Args:
            backend: Backend name

        Returns:
            BorrowResult carrying the connection or the failure reason
        """
        with self._lock:
            pool = self._get_pool(backend)
            if pool is None:
                logger.error(f"No connection pool configured for backend '{backend}'")
                return BorrowResult(
                    BorrowStatus.CONFIGURATION_ERROR,
                    backend,
                    message=f"No connection pool configured for backend '{backend}'",
                )

            settings = pool.settings
            if pool.available:
                entry = pool.available.pop()
                if self._is_usable(entry, settings, self._clock()):
                    pool.active_count += 1
                    return BorrowResult(BorrowStatus.OK, backend, connection=entry.connection)
                logger.debug(f"Discarding stale connection from pool '{backend}'")
                self._close(entry.connection)

            if pool.active_count >= settings.max_connections:
                logger.warning(
                    f"Connection pool '{backend}' exhausted "
                    f"({pool.active_count}/{settings.max_connections} active)"
                )
                return BorrowResult(
                    BorrowStatus.POOL_EXHAUSTED,
                    backend,
                    message=f"Connection pool '{backend}' exhausted",
                )

            try:
                connection = self._open(settings)
            except Exception as e:
                logger.error(f"Failed to open connection for backend '{backend}': {e}")
                return BorrowResult(
                    BorrowStatus.CONNECTION_ERROR,
                    backend,
                    message=f"Could not open a connection for backend '{backend}'",
                    cause=e,
                )

            pool.active_count += 1
            return BorrowResult(BorrowStatus.OK, backend, connection=connection)

    def release(self, connection: Any, backend: str) -> None:
        """Hand a borrowed connection back.

        A live connection returns to the available stack; a dead one is
        closed. The loan counter is decremented either way. A connection
        released after ``close_all_connections`` is closed.

        Args:
            connection: Connection obtained from borrow
            backend: Backend it was borrowed from
        """
        with self._lock:
            pool = self._pools.get(backend)
            if pool is None:
                logger.warning(f"Closing connection released into uninitialized pool '{backend}'")
                self._close(connection)
                return

            if self._probe(connection):
                pool.available.append(PoolEntry(connection, self._clock()))
            else:
                logger.debug(f"Discarding invalid connection released to pool '{backend}'")
                self._close(connection)

            pool.active_count = max(0, pool.active_count - 1)

    @contextmanager
    def connection(self, backend: str) -> Generator[Any, None, None]:
        """Borrow a connection for the duration of a block.

        Raises:
            PoolExhaustedError: If the backend is at capacity
            ConfigurationError: If the backend is not configured
            PersistenceError: If a new connection could not be opened
        """
        conn = self.borrow(backend).unwrap()
        try:
            yield conn
        finally:
            self.release(conn, backend)

    def cleanup_idle_connections(self) -> int:
        """Drop available connections that are idle too long or dead.

        Returns:
            Number of connections removed
        """
        removed = 0
        with self._lock:
            now = self._clock()
            for backend, pool in self._pools.items():
                kept: List[PoolEntry] = []
                for entry in pool.available:
                    if self._is_usable(entry, pool.settings, now):
                        kept.append(entry)
                    else:
                        self._close(entry.connection)
                        removed += 1
                pool.available = kept

        if removed:
            logger.info(f"Removed {removed} idle connection(s)")
        return removed

    def close_all_connections(self) -> None:
        """Close every available connection and forget all pools."""
        with self._lock:
            for pool in self._pools.values():
                for entry in pool.available:
                    self._close(entry.connection)
                pool.available = []
                pool.active_count = 0
            self._pools.clear()

            dispose = getattr(self._connector, "dispose", None)
            if dispose is not None:
                dispose()

        logger.info("All pooled connections closed")

    def pool_stats(self) -> Dict[str, PoolStats]:
        """Snapshot of every initialized pool."""
        with self._lock:
            stats = {}
            for backend, pool in self._pools.items():
                max_connections = pool.settings.max_connections
                utilization = (
                    round(pool.active_count / max_connections * 100, 1) if max_connections else 0.0
                )
                stats[backend] = PoolStats(
                    backend=backend,
                    available=len(pool.available),
                    active=pool.active_count,
                    min_connections=pool.settings.min_connections,
                    max_connections=max_connections,
                    utilization=utilization,
                )
            return stats
