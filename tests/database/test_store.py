"""Tests for the durable store: connection helpers, models and repositories."""

from datetime import datetime, timedelta
from pathlib import Path

import pytest
from sqlalchemy import text

from scanwatch.config import ScanwatchConfig
from scanwatch.database.connection import (
    create_tables,
    drop_tables,
    get_db_path,
    get_session_maker,
    init_engine,
    session_scope,
)
from scanwatch.database.models import ScanResult, Target
from scanwatch.database.repositories import RepositoryFactory
from scanwatch.errors import PersistenceError

NOW = datetime(2024, 1, 15, 2, 0, 0)


class TestConnection:
    """Tests for engine and session helpers."""

    def test_get_db_path(self):
        """Test SQLite file URLs map to a path, others to None."""
        assert get_db_path(ScanwatchConfig(database_url="sqlite:////tmp/x/scan.db")) == Path("/tmp/x/scan.db")
        assert get_db_path(ScanwatchConfig(database_url="sqlite:///:memory:")) is None
        assert get_db_path(ScanwatchConfig(database_url="postgresql://u:p@h/db")) is None

    def test_init_engine_creates_parent_directory(self, tmp_path):
        """Test the SQLite parent directory is created."""
        db_file = tmp_path / "nested" / "scan.db"
        engine = init_engine(ScanwatchConfig(database_url=f"sqlite:///{db_file}"))

        assert db_file.parent.is_dir()
        with engine.connect() as connection:
            assert connection.execute(text("PRAGMA foreign_keys")).scalar() == 1
        engine.dispose()

    def test_create_and_drop_tables(self, tmp_path):
        """Test schema creation is idempotent and reversible."""
        engine = init_engine(ScanwatchConfig(database_url=f"sqlite:///{tmp_path}/scan.db"))
        create_tables(engine)
        create_tables(engine)

        with engine.connect() as connection:
            tables = {row[0] for row in connection.execute(text("SELECT name FROM sqlite_master WHERE type='table'"))}
        assert {"targets", "scan_results", "execution_monitoring", "execution_checkpoints"} <= tables

        drop_tables(engine)
        with engine.connect() as connection:
            assert connection.execute(text("SELECT count(*) FROM sqlite_master WHERE type='table'")).scalar() == 0
        engine.dispose()

    def test_session_scope_commits(self, session_maker):
        """Test a clean block is committed."""
        with session_scope(session_maker) as session:
            session.add(Target(name="a", url="https://a.example"))

        with session_scope(session_maker) as session:
            assert session.query(Target).count() == 1

    def test_session_scope_wraps_database_errors(self, session_maker):
        """Test SQLAlchemy errors roll back and surface as PersistenceError."""
        with pytest.raises(PersistenceError) as exc_info:
            with session_scope(session_maker) as session:
                session.add(Target(name="a", url="https://a.example"))
                session.flush()
                session.execute(text("SELECT * FROM no_such_table"))

        assert "no_such_table" in exc_info.value.details["error"]
        with session_scope(session_maker) as session:
            assert session.query(Target).count() == 0

    def test_session_scope_reraises_other_errors(self, session_maker):
        """Test non-database errors roll back and propagate unchanged."""
        with pytest.raises(RuntimeError):
            with session_scope(session_maker) as session:
                session.add(Target(name="a", url="https://a.example"))
                session.flush()
                raise RuntimeError("boom")

        with session_scope(session_maker) as session:
            assert session.query(Target).count() == 0

    def test_foreign_keys_enforced(self, tmp_path):
        """Test a scan result for a missing target is rejected."""
        engine = init_engine(ScanwatchConfig(database_url=f"sqlite:///{tmp_path}/fk.db"))
        create_tables(engine)
        session_maker = get_session_maker(engine)

        with pytest.raises(PersistenceError):
            with session_scope(session_maker) as session:
                RepositoryFactory(session).scan_results.create_running(42, NOW)
        engine.dispose()


class TestModels:
    """Tests for model defaults and serialization."""

    def test_target_defaults(self, session_maker):
        """Test a new target is active, never scanned and in category other."""
        with session_scope(session_maker) as session:
            target = RepositoryFactory(session).targets.create(name="a", url="https://a.example")

        assert target.active is True
        assert target.category == "other"
        assert target.next_scan_at is None
        assert target.consecutive_failures == 0
        assert target.needs_manual_review is False

    def test_target_to_dict(self, session_maker):
        """Test timestamps serialize as ISO strings."""
        with session_scope(session_maker) as session:
            target = RepositoryFactory(session).targets.create(
                name="a", url="https://a.example", next_scan_at=NOW
            )

        data = target.to_dict()

        assert data["next_scan_at"] == "2024-01-15T02:00:00"
        assert data["claimed_until"] is None
        assert data["category"] == "other"


class TestRepositories:
    """Tests for repository queries not covered through the scheduler."""

    def test_get_all(self, session_maker):
        """Test listing all and active-only targets."""
        with session_scope(session_maker) as session:
            repos = RepositoryFactory(session)
            repos.targets.create(name="a", url="https://a.example")
            repos.targets.create(name="b", url="https://b.example", active=False)

        with session_scope(session_maker) as session:
            repos = RepositoryFactory(session)
            assert [t.name for t in repos.targets.get_all()] == ["a", "b"]
            assert [t.name for t in repos.targets.get_all(active_only=True)] == ["a"]

    def test_get_latest_running(self, session_maker):
        """Test the newest running row is returned."""
        with session_scope(session_maker) as session:
            repos = RepositoryFactory(session)
            target = repos.targets.create(name="a", url="https://a.example")
            repos.scan_results.create_running(target.id, NOW - timedelta(minutes=5))
            newest = repos.scan_results.create_running(target.id, NOW)
            newest_id = newest.id

        with session_scope(session_maker) as session:
            latest = RepositoryFactory(session).scan_results.get_latest_running(target.id)
            assert latest.id == newest_id

    def test_history_counts(self, session_maker):
        """Test only completed and failed rows in the window are counted."""
        with session_scope(session_maker) as session:
            repos = RepositoryFactory(session)
            target = repos.targets.create(name="a", url="https://a.example")
            for status, success, age in [
                ("completed", True, 1),
                ("failed", False, 2),
                ("running", False, 3),
                ("completed", True, 24 * 10),
            ]:
                session.add(ScanResult(
                    target_id=target.id,
                    status=status,
                    success=success,
                    created_at=NOW - timedelta(hours=age),
                ))
            session.flush()

            counts = repos.scan_results.get_history_counts(target.id, NOW - timedelta(days=7))
            failures = repos.scan_results.count_failures_since(target.id, NOW - timedelta(days=7))

        assert counts == (2, 1)
        assert failures == 1

    def test_execution_finalize_updates_started_rows_only(self, session_maker):
        """Test finalize touches started rows and reports the row count."""
        with session_scope(session_maker) as session:
            executions = RepositoryFactory(session).executions
            executions.create("exec-1", "scan", NOW)
            first = executions.finalize("exec-1", NOW, True, 1.0, 0, 0, 0, 5.0)
            second = executions.finalize("exec-1", NOW, False, 2.0, 0, 0, 0, 5.0)

        assert first == 1
        assert second == 0
