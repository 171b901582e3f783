"""
Scheduler — periodic retention sweep.

Infrastructure layer — uses APScheduler (3.x) for lightweight in-process
scheduling driven by a standard 5-field cron expression.

The scheduler wraps the sweep within a LoggingExecutionContext
for structured observability (timing, success/failure logging).

Graceful shutdown: handles SIGINT/SIGTERM to stop the scheduler cleanly.
"""

from __future__ import annotations

import signal
import sys
from collections.abc import Callable

import structlog
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger
from railway import LoggingExecutionContext
from railway.result import Result

from fiscal_ledger.pipeline import SweepResult

log = structlog.get_logger()

JOB_ID = "fiscal_retention_sweep"


def create_scheduler(
    sweep_fn: Callable[[], Result[SweepResult]],
    cron: str = "0 3 * * *",
    run_on_startup: bool = True,
) -> BlockingScheduler:
    """
    Create a configured APScheduler that runs the retention sweep on a cron schedule.

    Args:
        sweep_fn: Zero-argument callable returning Result[SweepResult] (the wired sweep).
        cron: Standard 5-field cron expression (minute hour dom month dow).
              Default "0 3 * * *" runs daily at 03:00.
        run_on_startup: If True, execute once immediately before entering the loop.

    Returns:
        A configured BlockingScheduler (call .start() to begin).
    """
    scheduler = BlockingScheduler()
    ctx = LoggingExecutionContext(operation="RetentionSweep")

    def _job() -> None:
        """Execute the sweep within logging context and log the outcome."""
        result = ctx.execute(sweep_fn)
        if result.is_success():
            report, outcome = result.value()
            log.info(
                "scheduler.job_completed",
                decisions=len(report.decisions),
                to_archive=len(report.to_archive),
                to_delete=len(report.to_delete),
                applied=outcome is not None,
            )
        else:
            log.error("scheduler.job_failed", failure=str(result.error()))

    minute, hour, dom, month, dow = cron.split()
    scheduler.add_job(
        _job,
        trigger=CronTrigger(
            minute=minute,
            hour=hour,
            day=dom,
            month=month,
            day_of_week=dow,
        ),
        id=JOB_ID,
        name="Fiscal retention sweep",
        replace_existing=True,
    )

    if run_on_startup:
        log.info("scheduler.startup_run", message="Running retention sweep immediately on startup")
        _job()

    _register_shutdown_signals(scheduler)

    return scheduler


def _register_shutdown_signals(scheduler: BlockingScheduler) -> None:
    """Register SIGINT and SIGTERM handlers for graceful shutdown."""

    def _shutdown(signum: int, frame: object) -> None:
        sig_name = signal.Signals(signum).name
        log.info("scheduler.shutdown_requested", signal=sig_name)
        scheduler.shutdown(wait=False)
        sys.exit(0)

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)
