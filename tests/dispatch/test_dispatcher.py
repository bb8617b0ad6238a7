"""Tests for the dispatch loop."""

import time
from datetime import timedelta
from unittest.mock import Mock, patch

import pytest

from scanwatch.config import PoolSettings, ScanwatchConfig
from scanwatch.database.connection import session_scope
from scanwatch.database.models import ExecutionRecord, ScanResult, Target
from scanwatch.dispatch.context import ScanContext, build_context
from scanwatch.dispatch.dispatcher import (
    DispatchReport,
    ScanDispatcher,
    ScanOutcome,
    default_worker_id,
    load_runner,
)
from scanwatch.errors import ConfigurationError
from scanwatch.pool.connection_pool import ConnectionPool


def ok_runner(target, connection, timeout):
    return ScanOutcome(success=True, data={"pages": 1})


@pytest.fixture
def pool():
    return ConnectionPool(
        {"default": PoolSettings(min_connections=0, max_connections=2)},
        connector=lambda settings: Mock(name="connection"),
        probe=lambda connection: True,
        clock=lambda: 0.0,
    )


@pytest.fixture
def context(engine, session_maker, scheduler, tracker, pool):
    return ScanContext(
        config=ScanwatchConfig(database_url="sqlite://"),
        engine=engine,
        session_maker=session_maker,
        scheduler=scheduler,
        pool=pool,
        tracker=tracker,
    )


def _executions(session_maker, execution_type):
    with session_scope(session_maker) as session:
        return (
            session.query(ExecutionRecord)
            .filter(ExecutionRecord.type == execution_type)
            .order_by(ExecutionRecord.id)
            .all()
        )


class TestRunOnce:
    """Tests for ScanDispatcher.run_once."""

    def test_scans_due_targets_in_priority_order(self, context, add_target, clock):
        """Test each due target is scanned once, most urgent first."""
        low = add_target(name="low", priority="low")
        critical = add_target(name="critical", category="finance")
        runner = Mock(side_effect=ok_runner)
        dispatcher = ScanDispatcher(context, runner, worker_id="worker-a")

        report = dispatcher.run_once()

        assert report.claimed == 2
        assert report.succeeded == 2
        assert report.failed == 0
        assert [scan["target_id"] for scan in report.scans] == [critical.id, low.id]
        first_target, _, first_timeout = runner.call_args_list[0].args
        assert first_target.id == critical.id
        assert first_timeout == 300

    def test_success_reschedules_and_finalizes(self, context, add_target, session_maker, clock):
        """Test a successful scan completes its result row and releases the claim."""
        target = add_target(category="finance")
        dispatcher = ScanDispatcher(context, ok_runner, worker_id="worker-a")

        report = dispatcher.run_once()

        assert report.scans[0]["next_scan_at"] == (clock.now + timedelta(minutes=60)).isoformat()
        with session_scope(session_maker) as session:
            stored = session.get(Target, target.id)
            results = session.query(ScanResult).filter_by(target_id=target.id).all()
            assert stored.claimed_by is None
            assert stored.next_scan_at == clock.now + timedelta(minutes=60)
            assert [r.status for r in results] == ["completed"]

    def test_failed_outcome(self, context, add_target):
        """Test a failed outcome goes through failure handling."""
        add_target(category="finance")
        runner = Mock(return_value=ScanOutcome(success=False, error_message="Connection timed out"))
        dispatcher = ScanDispatcher(context, runner)

        report = dispatcher.run_once()

        assert report.failed == 1
        assert report.scans[0]["error_type"] == "timeout"
        assert report.scans[0]["retry"] is True

    def test_runner_exception_is_a_failed_scan(self, context, add_target, session_maker):
        """Test an exception from the runner is recorded as a failure."""
        target = add_target()
        runner = Mock(side_effect=ConnectionRefusedError("Connection refused"))
        dispatcher = ScanDispatcher(context, runner)

        report = dispatcher.run_once()

        assert report.failed == 1
        assert report.scans[0]["error_type"] == "connection_refused"
        scan_record = _executions(session_maker, "scan")[0]
        assert scan_record.status == "failed"
        assert scan_record.errors_count == 1
        with session_scope(session_maker) as session:
            assert session.get(Target, target.id).last_error_type == "connection_refused"

    def test_tracks_dispatch_and_scan_executions(self, context, add_target, session_maker):
        """Test the cycle and each scan are durable executions."""
        add_target()
        dispatcher = ScanDispatcher(context, ok_runner, worker_id="worker-a")

        report = dispatcher.run_once()

        dispatch_record = _executions(session_maker, "dispatch")[0]
        assert dispatch_record.execution_id == report.execution_id
        assert dispatch_record.status == "completed"
        assert dispatch_record.final_data["claimed"] == 1
        scan_record = _executions(session_maker, "scan")[0]
        assert scan_record.status == "completed"
        assert scan_record.final_data == {"pages": 1}
        assert context.tracker.active_executions() == []

    def test_timeout_breach_warns(self, context, add_target, session_maker):
        """Test a scan running past its timeout is flagged."""
        add_target(scan_timeout=0)

        def slow_runner(target, connection, timeout):
            time.sleep(0.01)
            return ScanOutcome(success=True)

        ScanDispatcher(context, slow_runner).run_once()

        assert _executions(session_maker, "scan")[0].warnings_count == 1

    def test_batch_size(self, context, add_target):
        """Test no more than batch_size targets are dispatched."""
        for i in range(3):
            add_target(name=f"t{i}")

        report = ScanDispatcher(context, ok_runner).run_once(batch_size=2)

        assert report.claimed == 2

    def test_batch_capped_by_max_concurrent_scans(self, context, add_target):
        """Test max_concurrent_scans bounds the batch."""
        context.config.scheduler.max_concurrent_scans = 1
        for i in range(3):
            add_target(name=f"t{i}")

        report = ScanDispatcher(context, ok_runner).run_once(batch_size=5)

        assert report.claimed == 1

    def test_lost_claims_are_skipped(self, context, add_target, scheduler):
        """Test targets claimed by another worker are skipped."""
        add_target()
        runner = Mock(side_effect=ok_runner)

        with patch.object(scheduler, "claim_target", return_value=False):
            report = ScanDispatcher(context, runner).run_once()

        assert report.skipped == 1
        assert report.claimed == 0
        runner.assert_not_called()

    def test_pool_exhaustion_skips_rest_of_batch(self, context, add_target, pool, scheduler, session_maker):
        """Test exhaustion releases the claim and ends the cycle."""
        first = add_target(name="a")
        add_target(name="b")
        pool.borrow("default")
        pool.borrow("default")
        runner = Mock(side_effect=ok_runner)

        report = ScanDispatcher(context, runner, worker_id="worker-a").run_once()

        assert report.pool_exhausted is True
        assert report.claimed == 0
        runner.assert_not_called()
        assert _executions(session_maker, "dispatch")[0].warnings_count == 1
        assert scheduler.claim_target(first.id, "worker-b")

    def test_backend_connection_failure_is_not_exhaustion(self, context, add_target, scheduler, session_maker):
        """Test a backend that cannot open connections ends the cycle as a connection error."""
        first = add_target(name="a")
        add_target(name="b")
        context.pool = ConnectionPool(
            {"default": PoolSettings(min_connections=0, max_connections=5)},
            connector=Mock(side_effect=OSError("connection refused by backend")),
            probe=lambda connection: True,
            clock=lambda: 0.0,
        )
        runner = Mock(side_effect=ok_runner)

        report = ScanDispatcher(context, runner, worker_id="worker-a").run_once()

        assert report.connection_error is True
        assert report.pool_exhausted is False
        assert report.claimed == 0
        runner.assert_not_called()
        assert _executions(session_maker, "dispatch")[0].errors_count == 1
        assert scheduler.claim_target(first.id, "worker-b")

    def test_unknown_backend_is_fatal(self, context, add_target, scheduler, session_maker):
        """Test a missing pool configuration raises and releases the claim."""
        target = add_target()

        with pytest.raises(ConfigurationError):
            ScanDispatcher(context, ok_runner, backend="missing").run_once()

        assert _executions(session_maker, "dispatch")[0].status == "failed"
        assert scheduler.claim_target(target.id, "worker-b")

    def test_connection_released_after_scan(self, context, add_target, pool):
        """Test the borrowed connection is returned to the pool."""
        add_target()

        ScanDispatcher(context, ok_runner).run_once()

        stats = pool.pool_stats()["default"]
        assert stats.active == 0
        assert stats.available == 1

    def test_nothing_due(self, context):
        """Test an empty work list is a successful no-op cycle."""
        report = ScanDispatcher(context, ok_runner).run_once()

        assert report.to_dict()["claimed"] == 0
        assert report.scans == []


class TestDispatchReport:
    """Tests for DispatchReport."""

    def test_to_dict(self):
        report = DispatchReport(execution_id="dispatch-1", claimed=2, succeeded=1, failed=1)

        assert report.to_dict() == {
            "execution_id": "dispatch-1",
            "claimed": 2,
            "succeeded": 1,
            "failed": 1,
            "skipped": 0,
            "pool_exhausted": False,
            "connection_error": False,
            "scans": [],
        }


class TestLoadRunner:
    """Tests for load_runner and default_worker_id."""

    def test_load_runner(self):
        """Test a dotted attribute path is resolved."""
        import os.path
        assert load_runner("os:path.join") is os.path.join

    @pytest.mark.parametrize("path", ["no-colon", ":attr", "module:"])
    def test_malformed_path(self, path):
        """Test paths without module and attribute are rejected."""
        with pytest.raises(ConfigurationError, match="Invalid runner path"):
            load_runner(path)

    def test_missing_module(self):
        """Test an unimportable module is a configuration error."""
        with pytest.raises(ConfigurationError, match="Cannot import"):
            load_runner("scanwatch_no_such_module:run")

    def test_missing_attribute(self):
        """Test a missing attribute is a configuration error."""
        with pytest.raises(ConfigurationError, match="not found"):
            load_runner("os:no_such_runner")

    def test_not_callable(self):
        """Test a non-callable attribute is rejected."""
        with pytest.raises(ConfigurationError, match="not callable"):
            load_runner("os:sep")

    def test_default_worker_id_is_unique(self):
        assert default_worker_id() != default_worker_id()


class TestBuildContext:
    """Tests for build_context."""

    def test_build_context(self, tmp_path):
        """Test the context wires one scheduler, pool and tracker to one store."""
        config = ScanwatchConfig(database_url=f"sqlite:///{tmp_path}/ctx.db")

        context = build_context(config)
        try:
            assert context.scheduler.session_maker is context.session_maker
            assert context.tracker.session_maker is context.session_maker
            assert context.pool.backends == ["default"]
            assert context.scheduler.settings is config.scheduler
        finally:
            context.close()
