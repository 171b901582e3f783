"""
Web entry point: the retention scheduler behind a small FastAPI surface.

The lifespan wires the services once, starts the cron scheduler on its own
thread and, when Uvicorn stops, stops the scheduler and closes the
certificate signer's worker pool. The HTTP side only reports on that
thread (/health, /ready, /info) and lets an operator run a sweep on demand
(/trigger). Ledger appends and regime submissions are not exposed here.

    uvicorn fiscal_ledger.asgi:app --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import asyncio
import threading
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from functools import partial
from typing import Any

import structlog
from apscheduler.schedulers.blocking import BlockingScheduler
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from railway.result import Result

from fiscal_ledger import __version__
from fiscal_ledger.config import AppSettings
from fiscal_ledger.main import _create_services, configure_structlog
from fiscal_ledger.pipeline import SweepResult, run_retention_sweep
from fiscal_ledger.scheduler import create_scheduler
from fiscal_ledger.signing import CertificateSigner

# Written by the lifespan and the scheduler thread, read by the endpoints.
_scheduler_thread: threading.Thread | None = None
_scheduler_started = False
_scheduler_ready = False
_error_message: str | None = None
_sweep_fn: Callable[[], Result[SweepResult]] | None = None
log = structlog.get_logger()

_THREAD_JOIN_SECONDS = 5.0


def _scheduler_alive() -> bool:
    return _scheduler_thread is not None and _scheduler_thread.is_alive()


def _fail_startup(message: str, event: str) -> None:
    global _error_message
    _error_message = message
    log.error(event, error=message)


def _stop_background(scheduler: BlockingScheduler, signer: CertificateSigner) -> None:
    """Stop the cron scheduler, wait briefly for its thread, then close the signer."""
    try:
        scheduler.shutdown(wait=True)
    except Exception as e:
        log.warning("asgi.scheduler_stop_failed", error=str(e))

    thread = _scheduler_thread
    if thread is not None and thread.is_alive():
        thread.join(timeout=_THREAD_JOIN_SECONDS)
        if thread.is_alive():
            log.warning("asgi.scheduler_still_running", waited_seconds=_THREAD_JOIN_SECONDS)

    signer.close()
    log.info("asgi.signer_closed")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Wire services and start the scheduler thread; undo both on exit."""
    global _scheduler_thread, _scheduler_ready, _sweep_fn

    log.info("asgi.startup")

    try:
        settings = AppSettings()
    except Exception as e:
        _fail_startup(f"Configuration error: {e}", "asgi.startup_error")
        raise

    configure_structlog(settings.log_level)
    log.info(
        "asgi.startup_config",
        version=__version__,
        log_level=settings.log_level,
        cron=settings.scheduler.cron,
        apply_retention=settings.scheduler.apply_retention,
        run_on_startup=settings.run_on_startup,
    )

    try:
        _ledger, _adapters, retention, signer = _create_services(settings)
        _sweep_fn = partial(
            run_retention_sweep,
            retention,
            apply=settings.scheduler.apply_retention,
        )
        scheduler = create_scheduler(
            sweep_fn=_sweep_fn,
            cron=settings.scheduler.cron,
            run_on_startup=settings.run_on_startup,
        )
    except Exception as e:
        _fail_startup(f"Failed to initialize services/scheduler: {e}", "asgi.init_error")
        raise

    def run_scheduler() -> None:
        global _scheduler_started
        _scheduler_started = True
        log.info("asgi.scheduler_thread_started")
        try:
            scheduler.start()
        except KeyboardInterrupt:
            log.info("asgi.scheduler_interrupted")
        except Exception as e:
            _fail_startup(f"Scheduler error: {e}", "asgi.scheduler_error")

    _scheduler_thread = threading.Thread(target=run_scheduler, name="retention-cron", daemon=True)
    _scheduler_thread.start()

    # Ready once the thread is up; the first sweep may be hours away.
    await asyncio.sleep(0.1)
    _scheduler_ready = True
    log.info("asgi.startup_complete")

    yield

    log.info("asgi.shutdown")
    _stop_background(scheduler, signer)
    log.info("asgi.shutdown_complete")


app = FastAPI(
    title="fiscal-ledger",
    description="Fiscal audit trail and digital signing core: status and retention trigger",
    version=__version__,
    lifespan=lifespan,
)


@app.get("/health")
async def health() -> JSONResponse:
    """Liveness: 503 after a startup failure or once the scheduler thread has died."""
    if _error_message:
        log.warning("health.check_failed", error=_error_message)
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "error": _error_message},
        )

    if not _scheduler_alive():
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "reason": "scheduler thread not running"},
        )

    return JSONResponse(
        status_code=200,
        content={"status": "healthy", "scheduler_running": True},
    )


@app.get("/ready")
async def ready() -> JSONResponse:
    # 202 until the lifespan has started the thread; errors win over readiness.
    if not _scheduler_ready or not _scheduler_started:
        return JSONResponse(
            status_code=202,
            content={"status": "starting", "scheduler_started": _scheduler_started},
        )

    if _error_message:
        return JSONResponse(
            status_code=503,
            content={"status": "error", "error": _error_message},
        )

    return JSONResponse(
        status_code=200,
        content={"status": "ready", "scheduler_running": _scheduler_alive()},
    )




@app.get("/info")
async def info() -> dict[str, Any]:
    return {
        "name": "fiscal-ledger",
        "version": __version__,
        "scheduler_running": _scheduler_alive(),
        "scheduler_started": _scheduler_started,
        "scheduler_ready": _scheduler_ready,
        "has_error": _error_message is not None,
    }


@app.post("/trigger")
async def trigger() -> JSONResponse:
    """
    Sweep now instead of waiting for the cron, on a worker thread.

    200 carries the archive/delete counts (and what was applied when the
    service applies retention); a broken chain or any other failure is 500;
    503 until the lifespan has built the sweep.
    """
    if _sweep_fn is None:
        return JSONResponse(
            status_code=503,
            content={"status": "unavailable", "reason": "Retention sweep not initialized"},
        )

    log.info("trigger.manual_start", source="REST")

    try:
        result = await asyncio.to_thread(_sweep_fn)
    except Exception as e:
        log.error("trigger.exception", error=str(e))
        return JSONResponse(
            status_code=500,
            content={"status": "error", "error": str(e)},
        )

    if result.is_success():
        report, outcome = result.value()
        content: dict[str, Any] = {
            "status": "success",
            "decisions": len(report.decisions),
            "to_archive": len(report.to_archive),
            "to_delete": len(report.to_delete),
            "applied": outcome is not None,
        }
        if outcome is not None:
            content["archived"] = outcome.archived
            content["deleted"] = outcome.deleted
        log.info("trigger.completed", **content)
        return JSONResponse(status_code=200, content=content)

    failure = result.error()
    log.error("trigger.sweep_failed", failure=str(failure))
    return JSONResponse(
        status_code=500,
        content={
            "status": "failed",
            "error_code": failure.code.value,
            "message": failure.message,
        },
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "fiscal_ledger.asgi:app",
        host="0.0.0.0",
        port=8000,
        reload=False,
        log_level="info",
    )
