"""Shared fixtures: an in-memory store, a controllable clock and fake resources."""

from datetime import datetime, timedelta
from unittest.mock import Mock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from scanwatch.config import MonitorSettings, SchedulerSettings
from scanwatch.database.connection import create_tables, get_session_maker, session_scope
from scanwatch.database.repositories import RepositoryFactory
from scanwatch.monitoring.execution_tracker import MB, ExecutionTracker, ProcessResources
from scanwatch.scheduler.priority_scheduler import PriorityScheduler

# 02:00 falls in the early_morning slot (weight 1.0), so load balancing
# leaves intervals untouched unless a test moves the clock.
FIXED_NOW = datetime(2024, 1, 15, 2, 0, 0)


class FakeClock:
    """Callable clock returning a settable naive UTC time."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeTimer:
    """Callable monotonic timer returning a settable float."""

    def __init__(self, value: float = 1000.0):
        self.value = value

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


@pytest.fixture
def engine():
    """In-memory SQLite engine shared across threads."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_maker(engine):
    return get_session_maker(engine)


@pytest.fixture
def clock():
    return FakeClock(FIXED_NOW)


@pytest.fixture
def timer():
    return FakeTimer()


@pytest.fixture
def resources():
    """Resource sampler reporting 10 MB RSS and a 40% memory share."""
    resources = Mock(spec=ProcessResources)
    resources.rss.return_value = 10 * MB
    resources.memory_percent.return_value = 40.0
    resources.cpu_percent.return_value = 5.0
    return resources


@pytest.fixture
def scheduler_settings():
    return SchedulerSettings()


@pytest.fixture
def scheduler(session_maker, scheduler_settings, clock):
    return PriorityScheduler(session_maker, scheduler_settings, clock=clock)


@pytest.fixture
def monitor_settings():
    return MonitorSettings()


@pytest.fixture
def tracker(session_maker, monitor_settings, resources, clock, timer):
    return ExecutionTracker(
        session_maker,
        monitor_settings,
        resources=resources,
        clock=clock,
        timer=timer,
    )


@pytest.fixture
def add_target(session_maker):
    """Insert a target and return it detached."""
    def _add(**kwargs):
        kwargs.setdefault("name", "example")
        kwargs.setdefault("url", "https://example.com")
        with session_scope(session_maker) as session:
            return RepositoryFactory(session).targets.create(**kwargs)
    return _add


@pytest.fixture
def add_scan_result(session_maker):
    """Insert a scan result row with an explicit status and creation time."""
    def _add(target_id: int, status: str, created_at: datetime, success: bool = False):
        with session_scope(session_maker) as session:
            result = RepositoryFactory(session).scan_results.create_running(target_id, created_at)
            result.status = status
            result.success = success
            session.flush()
            return result
    return _add
