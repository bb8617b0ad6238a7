"""Tests for error handler module."""

import pytest
import typer

from scanwatch.cli.error_handler import HINTS, _hint_for, handle_errors
from scanwatch.cli.exit_codes import ExitCode
from scanwatch.errors import (
    ConfigurationError,
    NotFoundError,
    PersistenceError,
    PoolExhaustedError,
    ScanwatchError,
)


class TestScanwatchError:
    """Test the error taxonomy."""

    def test_basic_error(self) -> None:
        """Test basic error creation."""
        error = ScanwatchError("Test error")
        assert error.message == "Test error"
        assert error.exit_code == ExitCode.GENERAL_ERROR
        assert error.details == {}

    def test_error_with_exit_code(self) -> None:
        """Test error with custom exit code."""
        error = ScanwatchError("Test error", exit_code=ExitCode.INVALID_ARGUMENT)
        assert error.exit_code == ExitCode.INVALID_ARGUMENT

    def test_error_str_with_details(self) -> None:
        """Test string representation with details."""
        error = ScanwatchError("Test error", details={"backend": "db", "count": 2})
        assert str(error) == "Test error (backend=db, count=2)"

    def test_error_str_without_details(self) -> None:
        assert str(ScanwatchError("Test error")) == "Test error"

    @pytest.mark.parametrize("error_cls,code", [
        (ConfigurationError, ExitCode.CONFIGURATION_ERROR),
        (PoolExhaustedError, ExitCode.POOL_EXHAUSTED),
        (PersistenceError, ExitCode.PERSISTENCE_ERROR),
        (NotFoundError, ExitCode.NOT_FOUND),
    ])
    def test_subclass_exit_codes(self, error_cls, code) -> None:
        """Test each subclass carries its own exit code."""
        error = error_cls("boom")
        assert isinstance(error, ScanwatchError)
        assert error.exit_code == code


class TestHandleErrors:
    """Test the handle_errors decorator."""

    def test_passes_through_return_value(self) -> None:
        @handle_errors
        def command():
            return 42

        assert command() == 42

    def test_scanwatch_error_exit_code(self, capsys) -> None:
        """Test a ScanwatchError exits with its code and prints details."""
        @handle_errors
        def command():
            raise PoolExhaustedError("No connection available", details={"backend": "db"})

        with pytest.raises(typer.Exit) as exc_info:
            command()

        assert exc_info.value.exit_code == ExitCode.POOL_EXHAUSTED
        err = capsys.readouterr().err
        assert "No connection available" in err
        assert "backend" in err

    def test_keyboard_interrupt(self) -> None:
        """Test Ctrl+C maps to the cancelled exit code."""
        @handle_errors
        def command():
            raise KeyboardInterrupt

        with pytest.raises(typer.Exit) as exc_info:
            command()

        assert exc_info.value.exit_code == ExitCode.CANCELLED

    def test_typer_exit_passes_through(self) -> None:
        """Test explicit exits are not rewritten."""
        @handle_errors
        def command():
            raise typer.Exit(code=ExitCode.INVALID_ARGUMENT)

        with pytest.raises(typer.Exit) as exc_info:
            command()

        assert exc_info.value.exit_code == ExitCode.INVALID_ARGUMENT

    def test_unexpected_error(self, capsys) -> None:
        """Test other exceptions exit with the general error code."""
        @handle_errors
        def command():
            raise RuntimeError("kaboom")

        with pytest.raises(typer.Exit) as exc_info:
            command()

        assert exc_info.value.exit_code == ExitCode.GENERAL_ERROR
        assert "kaboom" in capsys.readouterr().err

    def test_preserves_metadata(self) -> None:
        @handle_errors
        def my_command():
            """Do something."""

        assert my_command.__name__ == "my_command"
        assert my_command.__doc__ == "Do something."

    def test_persistence_error_hint(self, capsys) -> None:
        """Test store failures point at the database settings."""
        @handle_errors
        def command():
            raise PersistenceError("Database operation failed", details={"error": "no such table"})

        with pytest.raises(typer.Exit) as exc_info:
            command()

        assert exc_info.value.exit_code == ExitCode.PERSISTENCE_ERROR
        assert "scanwatch db init" in capsys.readouterr().err

    def test_details_with_markup_are_escaped(self, capsys) -> None:
        """Test bracketed text in details is printed literally."""
        @handle_errors
        def command():
            raise ConfigurationError("Bad value", details={"value": "[red]"})

        with pytest.raises(typer.Exit):
            command()

        assert "[red]" in capsys.readouterr().err


class TestHints:
    """Test hint lookup."""

    def test_subclass_uses_base_hint(self) -> None:
        class CustomConfigError(ConfigurationError):
            pass

        assert _hint_for(CustomConfigError("x")) == HINTS[ConfigurationError]

    def test_base_error_has_no_hint(self) -> None:
        assert _hint_for(ScanwatchError("x")) == ""
