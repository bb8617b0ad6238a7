"""Daemon service for Scanwatch.

The daemon owns one ScanContext and drives it from APScheduler interval
jobs:
- dispatch: run one dispatch cycle through the configured scan runner
- pool cleanup: drop idle or dead pooled connections
- alert check: evaluate execution alerts and log each one
- retention cleanup: delete execution records past the retention window

Blocking store and runner work is handed to the default thread pool so
the event loop stays responsive to signals.
"""

import asyncio
import logging
import signal
from typing import Any, Callable, List, Optional, TypeVar

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED, EVENT_JOB_MISSED
from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from scanwatch.config import ScanwatchConfig
from scanwatch.database.connection import create_tables
from scanwatch.dispatch.context import ScanContext, build_context
from scanwatch.dispatch.dispatcher import DispatchReport, ScanDispatcher, ScanRunner
from scanwatch.errors import ConfigurationError
from scanwatch.monitoring.execution_tracker import Alert

logger = logging.getLogger(__name__)

T = TypeVar("T")

DISPATCH_JOB_ID = "dispatch"
POOL_CLEANUP_JOB_ID = "pool_cleanup"
ALERT_CHECK_JOB_ID = "alert_check"
RETENTION_CLEANUP_JOB_ID = "retention_cleanup"


class ScanwatchDaemon:
    """Long-running scan dispatcher with maintenance timers.

    Attributes:
        _config: Scanwatch configuration
        _runner: Scan runner used by the dispatcher
        _context: Scan context (built on start if not injected)
        _scheduler: APScheduler instance while running
        _running: Whether the daemon is running
        _shutdown_event: Event to signal shutdown

    Example:
        daemon = ScanwatchDaemon(config, runner)
        await daemon.start()
        await daemon.run_until_shutdown()
        await daemon.stop()
    """

    def __init__(
        self,
        config: ScanwatchConfig,
        runner: ScanRunner,
        context: Optional[ScanContext] = None,
        worker_id: Optional[str] = None,
    ):
        """Initialize the daemon service.

        Args:
            config: Scanwatch configuration
            runner: Executes one scan
            context: Prebuilt scan context
            worker_id: Claim token for this daemon
        """
        self._config = config
        self._runner = runner
        self._context = context
        self._worker_id = worker_id
        self._dispatcher: Optional[ScanDispatcher] = None
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._running = False
        self._shutdown_event = asyncio.Event()
        self._last_report: Optional[DispatchReport] = None
        self._last_alerts: List[Alert] = []

    async def start(self) -> None:
        """Build the context and start the interval jobs."""
        if self._running:
            logger.warning("Daemon already running")
            return

        logger.info("Starting Scanwatch daemon...")

        if self._context is None:
            self._context = build_context(self._config)
        create_tables(self._context.engine)
        self._dispatcher = ScanDispatcher(
            self._context,
            self._runner,
            worker_id=self._worker_id,
            backend=self._config.daemon.backend,
        )

        self._scheduler = self._create_scheduler()
        self._setup_listeners()
        self._scheduler.start()
        self._add_jobs()

        self._running = True
        logger.info(f"Scanwatch daemon started (worker {self._dispatcher.worker_id})")

    async def stop(self) -> None:
        """Stop the interval jobs and close the scan context."""
        logger.info("Stopping Scanwatch daemon...")

        self._running = False

        if self._scheduler:
            try:
                self._scheduler.shutdown(wait=False)
            except Exception as e:
                logger.warning(f"Error stopping scheduler: {e}")
            self._scheduler = None

        if self._context is not None:
            self._context.close()

        logger.info("Scanwatch daemon stopped")

    def _create_scheduler(self) -> AsyncIOScheduler:
        """Create and configure the APScheduler instance."""
        return AsyncIOScheduler(
            jobstores={"default": MemoryJobStore()},
            executors={"default": AsyncIOExecutor()},
            job_defaults={
                "coalesce": True,  # Combine missed runs
                "max_instances": 1,  # Never overlap a job with itself
                "misfire_grace_time": 60,
            },
            timezone="UTC",
        )

    def _setup_listeners(self) -> None:
        """Set up APScheduler event listeners."""
        if not self._scheduler:
            return

        def on_job_executed(event: Any) -> None:
            logger.debug(f"Job {event.job_id} executed")

        def on_job_error(event: Any) -> None:
            exception = getattr(event, "exception", "Unknown error")
            logger.error(f"Job {event.job_id} failed: {exception}")

        def on_job_missed(event: Any) -> None:
            logger.warning(f"Job {event.job_id} missed scheduled run")

        self._scheduler.add_listener(on_job_executed, EVENT_JOB_EXECUTED)
        self._scheduler.add_listener(on_job_error, EVENT_JOB_ERROR)
        self._scheduler.add_listener(on_job_missed, EVENT_JOB_MISSED)

    def _add_jobs(self) -> None:
        settings = self._config.daemon
        jobs = (
            (DISPATCH_JOB_ID, self.dispatch_tick, settings.dispatch_interval_seconds),
            (POOL_CLEANUP_JOB_ID, self.pool_cleanup_tick, settings.pool_cleanup_interval_seconds),
            (ALERT_CHECK_JOB_ID, self.alert_check_tick, settings.alert_check_interval_seconds),
            (RETENTION_CLEANUP_JOB_ID, self.retention_cleanup_tick, settings.retention_cleanup_interval_seconds),
        )
        for job_id, func, seconds in jobs:
            self._scheduler.add_job(
                func=func,
                trigger=IntervalTrigger(seconds=seconds),
                id=job_id,
                name=job_id.replace("_", " "),
                replace_existing=True,
            )
            logger.debug(f"Scheduled {job_id} every {seconds}s")

    async def _in_thread(self, func: Callable[[], T]) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func)

    async def dispatch_tick(self) -> Optional[DispatchReport]:
        """Run one dispatch cycle.

        A configuration error is fatal: it is logged and the daemon is
        asked to shut down.
        """
        if self._dispatcher is None:
            return None
        try:
            self._last_report = await self._in_thread(self._dispatcher.run_once)
        except ConfigurationError as e:
            logger.error(f"Dispatch configuration error, shutting down: {e}")
            self.request_shutdown()
            return None
        return self._last_report

    async def pool_cleanup_tick(self) -> int:
        """Drop idle pooled connections."""
        return await self._in_thread(self._context.pool.cleanup_idle_connections)

    async def alert_check_tick(self) -> List[Alert]:
        """Evaluate execution alerts and log each one."""
        alerts = await self._in_thread(self._context.tracker.check_alerts)
        for alert in alerts:
            log = logger.critical if alert.severity == "critical" else logger.warning
            log(f"ALERT [{alert.type}] {alert.message}")
        self._last_alerts = alerts
        return alerts

    async def retention_cleanup_tick(self) -> int:
        """Delete execution records past the retention window."""
        return await self._in_thread(self._context.tracker.cleanup)

    async def run_until_shutdown(self) -> None:
        """Block until request_shutdown() is called."""
        await self._shutdown_event.wait()

    def request_shutdown(self) -> None:
        """Request daemon shutdown."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def context(self) -> Optional[ScanContext]:
        return self._context

    @property
    def scheduler(self) -> Optional[AsyncIOScheduler]:
        return self._scheduler

    @property
    def last_report(self) -> Optional[DispatchReport]:
        return self._last_report

    @property
    def last_alerts(self) -> List[Alert]:
        return list(self._last_alerts)


async def run_daemon(
    config: ScanwatchConfig,
    runner: ScanRunner,
    worker_id: Optional[str] = None,
) -> None:
    """Run the daemon until SIGINT or SIGTERM.

    Args:
        config: Scanwatch configuration
        runner: Executes one scan
        worker_id: Claim token for this daemon
    """
    daemon = ScanwatchDaemon(config, runner, worker_id=worker_id)

    loop = asyncio.get_running_loop()

    def handle_signal(sig: signal.Signals) -> None:
        logger.info(f"Received signal {sig.name}, initiating shutdown...")
        daemon.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, lambda s=sig: handle_signal(s))
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            signal.signal(sig, lambda signum, frame: handle_signal(signal.Signals(signum)))

    try:
        await daemon.start()
        await daemon.run_until_shutdown()
    finally:
        await daemon.stop()
