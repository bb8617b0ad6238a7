"""Explicitly constructed scan context.

One context owns one scheduler, one connection pool and one execution
tracker, all sharing the same durable store. It is built once at startup
and passed to whatever needs it.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from scanwatch.config import ScanwatchConfig
from scanwatch.database.connection import get_session_maker, init_engine
from scanwatch.monitoring.execution_tracker import ExecutionTracker
from scanwatch.pool.connection_pool import ConnectionPool
from scanwatch.scheduler.policy import SchedulingPolicy
from scanwatch.scheduler.priority_scheduler import PriorityScheduler

logger = logging.getLogger(__name__)


@dataclass
class ScanContext:
    """Components shared by the dispatch loop and maintenance jobs."""

    config: ScanwatchConfig
    engine: Engine
    session_maker: sessionmaker
    scheduler: PriorityScheduler
    pool: ConnectionPool
    tracker: ExecutionTracker

    def close(self) -> None:
        """Close pooled connections and dispose of the store engine."""
        self.pool.close_all_connections()
        self.engine.dispose()
        logger.debug("Scan context closed")


def build_context(
    config: ScanwatchConfig,
    policy: Optional[SchedulingPolicy] = None,
    engine: Optional[Engine] = None,
    pool: Optional[ConnectionPool] = None,
) -> ScanContext:
    """Build a ScanContext from configuration.

    Args:
        config: Scanwatch configuration
        policy: Scheduling tables (built-in tables if not provided)
        engine: Existing engine for the durable store
        pool: Existing connection pool

    Returns:
        A fully wired ScanContext
    """
    engine = engine or init_engine(config)
    session_maker = get_session_maker(engine)

    context = ScanContext(
        config=config,
        engine=engine,
        session_maker=session_maker,
        scheduler=PriorityScheduler(session_maker, config.scheduler, policy or SchedulingPolicy()),
        pool=pool or ConnectionPool(config.resolved_pools()),
        tracker=ExecutionTracker(session_maker, config.monitor),
    )
    logger.debug(f"Scan context built for {config.database_url}")
    return context
