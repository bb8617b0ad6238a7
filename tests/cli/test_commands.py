"""Tests for the CLI command groups."""

import json
import logging
import os
from datetime import datetime
from unittest.mock import AsyncMock, patch

import pytest
from typer.testing import CliRunner

from scanwatch import __version__
from scanwatch.cli.exit_codes import ExitCode
from scanwatch.config import LoggingConfig, load_config
from scanwatch.database.connection import get_session_maker, init_engine, session_scope
from scanwatch.database.models import Target
from scanwatch.database.repositories import RepositoryFactory
from scanwatch.dispatch.dispatcher import ScanOutcome
from scanwatch.main import app, configure_logging

runner = CliRunner()


def ok_runner(target, connection, timeout):
    return ScanOutcome(success=True)


@pytest.fixture(autouse=True)
def scanwatch_env(tmp_path, monkeypatch):
    """Point configuration and data at a temporary directory."""
    for key in list(os.environ):
        if key.startswith("SCANWATCH_"):
            monkeypatch.delenv(key)
    monkeypatch.setenv("SCANWATCH_CONFIG_DIR", str(tmp_path / "config"))
    monkeypatch.setenv("SCANWATCH_DATA_DIR", str(tmp_path / "data"))
    return tmp_path


@pytest.fixture
def initialized():
    """Run `db init` so the tables exist."""
    result = runner.invoke(app, ["db", "init"])
    assert result.exit_code == 0, result.output


@pytest.fixture
def store(initialized):
    """Session factory bound to the CLI's database."""
    engine = init_engine(load_config())
    yield get_session_maker(engine)
    engine.dispose()


def add_target(session_maker, **kwargs):
    kwargs.setdefault("name", "example")
    kwargs.setdefault("url", "https://example.com")
    with session_scope(session_maker) as session:
        return RepositoryFactory(session).targets.create(**kwargs)


class TestMainApp:
    """Tests for the root command."""

    def test_help(self):
        """Test help lists every command group."""
        result = runner.invoke(app, ["--help"])

        assert result.exit_code == 0
        for group in ("run", "targets", "monitor", "config", "db"):
            assert group in result.output

    def test_version(self):
        result = runner.invoke(app, ["--version"])

        assert result.exit_code == 0
        assert f"scanwatch v{__version__}" in result.output

    def test_quiet_and_verbose_conflict(self):
        """Test --quiet cannot be combined with --verbose."""
        result = runner.invoke(app, ["--quiet", "--verbose", "config", "validate"])

        assert result.exit_code == ExitCode.INVALID_ARGUMENT


class TestDbCommand:
    """Tests for `scanwatch db`."""

    def test_init(self, scanwatch_env):
        """Test init creates the database file."""
        result = runner.invoke(app, ["db", "init"])

        assert result.exit_code == 0
        assert "Database initialized" in result.output
        assert (scanwatch_env / "data" / "scanwatch.db").exists()

    def test_reset_aborted(self, store):
        """Test declining the confirmation keeps the data."""
        add_target(store)

        result = runner.invoke(app, ["db", "init", "--reset"], input="n\n")

        assert "Aborted" in result.output
        with session_scope(store) as session:
            assert session.query(Target).count() == 1

    def test_reset_confirmed(self, store):
        """Test confirming the reset drops existing rows."""
        add_target(store)

        result = runner.invoke(app, ["db", "init", "--reset"], input="y\n")

        assert result.exit_code == 0
        with session_scope(store) as session:
            assert session.query(Target).count() == 0


class TestTargetsCommand:
    """Tests for `scanwatch targets`."""

    def test_list_empty(self, initialized):
        result = runner.invoke(app, ["targets", "list"])

        assert result.exit_code == 0
        assert "No targets found" in result.output

    def test_list_includes_targets_not_due(self, store):
        """Test list shows every target, including ones scheduled later and inactive."""
        add_target(store, name="later", next_scan_at=datetime(2999, 1, 1))
        add_target(store, name="paused", active=False)

        result = runner.invoke(app, ["targets", "list", "--json"])

        assert result.exit_code == 0
        assert [row["name"] for row in json.loads(result.stdout)] == ["later", "paused"]

    def test_list_active_only(self, store):
        add_target(store, name="live")
        add_target(store, name="paused", active=False)

        result = runner.invoke(app, ["targets", "list", "--active-only"])

        assert result.exit_code == 0
        assert "live" in result.output
        assert "paused" not in result.output

    def test_due_empty(self, initialized):
        result = runner.invoke(app, ["targets", "due"])

        assert result.exit_code == 0
        assert "No targets are due" in result.output

    def test_due_json(self, store):
        """Test JSON output carries the effective policy."""
        add_target(store, name="bank", category="finance")

        result = runner.invoke(app, ["targets", "due", "--json"])

        assert result.exit_code == 0
        rows = json.loads(result.stdout)
        assert rows[0]["name"] == "bank"
        assert rows[0]["priority_weight"] == 1
        assert rows[0]["timeout_seconds"] == 300

    def test_show_missing_target(self, initialized):
        """Test an unknown target exits with NOT_FOUND."""
        result = runner.invoke(app, ["targets", "show", "999"])

        assert result.exit_code == ExitCode.NOT_FOUND

    def test_show(self, store):
        target = add_target(store, name="bank", category="finance")

        result = runner.invoke(app, ["targets", "show", str(target.id)])

        assert result.exit_code == 0
        assert "bank" in result.output

    def test_reset(self, store):
        """Test reset clears the next scan time and review flag."""
        target = add_target(store, needs_manual_review=True)

        result = runner.invoke(app, ["targets", "reset", str(target.id)])

        assert result.exit_code == 0
        assert f"Target {target.id} is due now" in result.output
        with session_scope(store) as session:
            stored = session.get(Target, target.id)
            assert stored.next_scan_at is None
            assert stored.needs_manual_review is False


class TestMonitorCommand:
    """Tests for `scanwatch monitor`."""

    def test_stats_empty(self, initialized):
        result = runner.invoke(app, ["monitor", "stats"])

        assert result.exit_code == 0
        assert "No executions recorded" in result.output

    def test_stats_json(self, initialized):
        result = runner.invoke(app, ["monitor", "stats", "--days", "3", "--json"])

        assert result.exit_code == 0
        assert json.loads(result.stdout)["period_days"] == 3

    def test_alerts_empty(self, initialized):
        result = runner.invoke(app, ["monitor", "alerts"])

        assert result.exit_code == 0
        assert "No alerts" in result.output

    def test_show_execution(self, store):
        """Test show prints the stored record and checkpoints of a dispatch cycle."""
        add_target(store)
        with patch("scanwatch.cli.run.load_runner", return_value=ok_runner):
            dispatched = runner.invoke(app, ["run", "once", "--runner", "pkg:scan", "--json"])
        execution_id = json.loads(dispatched.stdout)["execution_id"]

        result = runner.invoke(app, ["monitor", "show", execution_id, "--json"])

        assert result.exit_code == 0, result.output
        history = json.loads(result.stdout)
        assert history["records"][0]["type"] == "dispatch"
        assert history["records"][0]["status"] == "completed"
        assert [c["checkpoint_name"] for c in history["checkpoints"]] == [
            "batch_started",
            "batch_completed",
        ]

    def test_show_unknown_execution(self, initialized):
        """Test an unknown execution exits with NOT_FOUND."""
        result = runner.invoke(app, ["monitor", "show", "dispatch-missing"])

        assert result.exit_code == ExitCode.NOT_FOUND
        assert "Execution not found" in result.output

    def test_cleanup(self, initialized):
        result = runner.invoke(app, ["monitor", "cleanup"])

        assert result.exit_code == 0
        assert "Deleted 0 record(s) older than 30 days" in result.output


class TestConfigCommand:
    """Tests for `scanwatch config`."""

    def test_show_section(self):
        result = runner.invoke(app, ["config", "show", "scheduler"])

        assert result.exit_code == 0
        assert "batch_size" in result.output

    def test_show_unknown_section(self):
        result = runner.invoke(app, ["config", "show", "nope"])

        assert result.exit_code == ExitCode.INVALID_ARGUMENT

    def test_show_unknown_format(self):
        result = runner.invoke(app, ["config", "show", "--format", "xml"])

        assert result.exit_code == ExitCode.INVALID_ARGUMENT

    def test_validate_valid(self, initialized):
        """Test a default config with an existing data_dir is valid."""
        result = runner.invoke(app, ["config", "validate"])

        assert result.exit_code == 0
        assert "Configuration is valid" in result.output

    def test_validate_errors(self, tmp_path):
        """Test errors in the file exit with CONFIGURATION_ERROR."""
        config_file = tmp_path / "bad.toml"
        config_file.write_text("[monitor]\nretention_days = 0\n")

        result = runner.invoke(app, ["--config", str(config_file), "config", "validate"])

        assert result.exit_code == ExitCode.CONFIGURATION_ERROR
        assert "retention_days" in result.output


class TestRunCommand:
    """Tests for `scanwatch run`."""

    def test_run_without_runner(self):
        """Test the daemon refuses to start without a scan runner."""
        result = runner.invoke(app, ["run"])

        assert result.exit_code == ExitCode.CONFIGURATION_ERROR
        assert "No scan runner configured" in result.output

    def test_run_bad_runner_path(self):
        result = runner.invoke(app, ["run", "--runner", "not-a-path"])

        assert result.exit_code == ExitCode.CONFIGURATION_ERROR

    def test_run_starts_daemon(self):
        """Test the daemon is started with the loaded runner."""
        with patch("scanwatch.cli.run.load_runner", return_value=ok_runner):
            with patch("scanwatch.daemon.service.run_daemon", new_callable=AsyncMock) as run_daemon:
                result = runner.invoke(app, ["run", "--runner", "pkg:scan", "--worker-id", "node-1"])

        assert result.exit_code == 0, result.output
        run_daemon.assert_called_once()
        assert run_daemon.call_args.args[1] is ok_runner
        assert run_daemon.call_args.kwargs == {"worker_id": "node-1"}

    def test_run_once(self, store):
        """Test one dispatch cycle scans the due target."""
        add_target(store)

        with patch("scanwatch.cli.run.load_runner", return_value=ok_runner):
            result = runner.invoke(app, ["run", "once", "--runner", "pkg:scan", "--json"])

        assert result.exit_code == 0, result.output
        report = json.loads(result.stdout)
        assert report["claimed"] == 1
        assert report["succeeded"] == 1


class TestConfigureLogging:
    """Tests for configure_logging."""

    @pytest.fixture(autouse=True)
    def restore_root_logger(self):
        root = logging.getLogger()
        handlers, level = list(root.handlers), root.level
        yield
        for handler in root.handlers:
            if handler not in handlers:
                handler.close()
        root.handlers[:] = handlers
        root.setLevel(level)

    @pytest.mark.parametrize("flags,expected", [
        ({"debug": True}, logging.DEBUG),
        ({"verbose": True}, logging.INFO),
        ({"quiet": True}, logging.ERROR),
        ({}, logging.WARNING),
    ])
    def test_flags_override_config(self, flags, expected):
        assert configure_logging(LoggingConfig(level="WARNING"), **flags) == expected

    def test_configured_level(self):
        """Test the [logging] level applies without flags."""
        assert configure_logging(LoggingConfig(level="info")) == logging.INFO

    def test_unknown_level_falls_back(self):
        assert configure_logging(LoggingConfig(level="chatty")) == logging.WARNING

    def test_log_file_from_config(self, tmp_path):
        """Test the configured file receives debug records."""
        log_file = tmp_path / "logs" / "scanwatch.log"
        configure_logging(LoggingConfig(file=log_file), quiet=True)

        logging.getLogger("scanwatch.test").debug("written to file")
        for handler in logging.getLogger().handlers:
            handler.flush()

        assert "written to file" in log_file.read_text()
