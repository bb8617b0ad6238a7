"""Error taxonomy for Scanwatch.

Pool exhaustion and configuration problems are also reported as typed
values by the connection pool (see ``scanwatch.pool.BorrowResult``); the
exceptions here are what ``BorrowResult.unwrap()`` and the persistence
layer raise when a caller prefers exceptions.

Invalid pooled connections and operations on unknown executions are never
surfaced as errors: the former are discarded inside the pool, the latter
are logged no-ops inside the execution tracker.
"""

from typing import Any

from scanwatch.cli.exit_codes import ExitCode


class ScanwatchError(Exception):
    """Base exception for Scanwatch.
    
    Attributes:
        message: Error message
        exit_code: Exit code to use when the CLI exits on this error
        details: Optional dictionary of additional error details
    """
    
    exit_code: int = ExitCode.GENERAL_ERROR
    
    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if exit_code is not None:
            self.exit_code = exit_code
        self.details = details or {}
    
    def __str__(self) -> str:
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({details_str})"
        return self.message


class ConfigurationError(ScanwatchError):
    """A requested backend or setting is not configured.
    
    Fatal to the initialization of the affected pool; the dispatch loop
    treats it as a startup-time failure.
    """
    
    exit_code = ExitCode.CONFIGURATION_ERROR


class PoolExhaustedError(ScanwatchError):
    """No pooled connection can be lent because the backend is at capacity.
    
    Recoverable: the caller decides whether to back off, retry, or skip
    the current dispatch cycle.
    """
    
    exit_code = ExitCode.POOL_EXHAUSTED


class PersistenceError(ScanwatchError):
    """Reading or writing the durable store failed.
    
    Always logged and always propagated; scheduling correctness depends on
    durable state.
    """
    
    exit_code = ExitCode.PERSISTENCE_ERROR


class NotFoundError(ScanwatchError):
    """A requested target or record does not exist."""
    
    exit_code = ExitCode.NOT_FOUND
