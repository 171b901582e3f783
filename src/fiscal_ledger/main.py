"""
Application entry point — wires dependencies and starts the scheduler.

Composition root: creates concrete adapters, injects them into the
ledger, the regime adapters and the retention engine, and hands the
retention sweep to the scheduler.

This is the ONLY place where concrete classes are instantiated.
Everything else depends on Protocol interfaces.

Responsibilities:
  1. Configure structlog for structured logging
  2. Load and validate configuration from environment
  3. Create concrete adapters (ledger store, log store, certificate store,
     authority clients)
  4. Build the ledger, regime adapters and retention engine
  5. Create and start the scheduler
"""

from __future__ import annotations

import logging
import sys
from functools import partial

import structlog

from fiscal_ledger import __version__
from fiscal_ledger.adapters.certificate_store import (
    PowerShellRunner,
    UnavailableCertificateStore,
    WindowsCertificateStore,
)
from fiscal_ledger.adapters.http_client import FiscalAuthorityClient
from fiscal_ledger.adapters.memory_store import (
    InMemoryLedgerStore,
    InMemoryOperationalLogStore,
)
from fiscal_ledger.adapters.repository import (
    PostgresLedgerStore,
    PostgresOperationalLogStore,
)
from fiscal_ledger.certificates import CertificateRegistry
from fiscal_ledger.config import AppSettings
from fiscal_ledger.domain.ports import CertificateStore, LedgerStore, OperationalLogStore
from fiscal_ledger.ledger import FiscalChainLedger
from fiscal_ledger.pipeline import run_retention_sweep
from fiscal_ledger.regimes.base import RegimeAdapter
from fiscal_ledger.regimes.ticketbai import TicketBaiAdapter
from fiscal_ledger.regimes.verifactu import VerifactuAdapter
from fiscal_ledger.retention import RetentionEngine
from fiscal_ledger.scheduler import create_scheduler
from fiscal_ledger.signing import CertificateSigner, IntegritySigner


def configure_structlog(log_level: str = "INFO") -> None:
    """
    Configure structlog for structured logging.

    Colored, human-readable console output with ISO timestamps; the level
    filter drops anything below `log_level`.
    """
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


type _Services = tuple[
    FiscalChainLedger,
    list[RegimeAdapter],
    RetentionEngine,
    CertificateSigner,
]


def _create_stores(settings: AppSettings) -> tuple[LedgerStore, OperationalLogStore]:
    if settings.database is None:
        structlog.get_logger().warning(
            "app.in_memory_ledger",
            message="No database configured; fiscal entries are lost on restart",
        )
        return InMemoryLedgerStore(), InMemoryOperationalLogStore()

    dsn = settings.database.get_dsn()
    ledger_store = PostgresLedgerStore(dsn=dsn)
    ledger_store.ensure_schema()
    return ledger_store, PostgresOperationalLogStore(dsn=dsn)


def _create_certificate_store(settings: AppSettings) -> CertificateStore:
    cfg = settings.certificate_store
    if not cfg.enabled:
        return UnavailableCertificateStore()
    return WindowsCertificateStore(
        runner=PowerShellRunner(cfg.powershell_executable),
        store_name=cfg.store_name,
        export_timeout=cfg.export_timeout_seconds,
    )


def _create_services(settings: AppSettings) -> _Services:
    """
    Instantiate the ledger, the regime adapters, the retention engine and the
    certificate signer whose worker pool the caller closes on shutdown.

    This is the ONLY place where concrete classes are created.
    TicketBAI is only wired when its endpoint is configured.
    """
    ledger_store, log_store = _create_stores(settings)
    ledger = FiscalChainLedger(
        store=ledger_store,
        signer=IntegritySigner(settings.signing.secret_bytes()),
    )

    certificate_store = _create_certificate_store(settings)
    registry = CertificateRegistry(
        certificate_store,
        settings.certificate_store.registration_map(),
    )
    signer = CertificateSigner(
        certificate_store,
        timeout=settings.certificate_store.signing_timeout_seconds,
    )
    profiles = settings.profiles()

    adapters: list[RegimeAdapter] = [
        VerifactuAdapter(
            registry=registry,
            signer=signer,
            transport=FiscalAuthorityClient(timeout=settings.verifactu.timeout_seconds),
            endpoint=settings.verifactu.endpoint(),
            profiles=profiles,
        )
    ]
    if settings.ticketbai is not None:
        adapters.append(
            TicketBaiAdapter(
                registry=registry,
                signer=signer,
                transport=FiscalAuthorityClient(timeout=settings.ticketbai.timeout_seconds),
                endpoint=settings.ticketbai.endpoint(),
                profiles=profiles,
            )
        )

    retention = RetentionEngine(
        policies=settings.retention_policies(),
        ledger=ledger,
        log_store=log_store,
    )
    return ledger, adapters, retention, signer


def main() -> None:
    """Wire dependencies and launch the scheduled retention sweep."""
    try:
        settings = AppSettings()
    except Exception as e:
        print(f"FATAL: Configuration error — {e}", file=sys.stderr)  # noqa: T201
        sys.exit(1)

    configure_structlog(settings.log_level)
    log = structlog.get_logger()

    log.info(
        "app.starting",
        version=__version__,
        log_level=settings.log_level,
        cron=settings.scheduler.cron,
        apply_retention=settings.scheduler.apply_retention,
        run_on_startup=settings.run_on_startup,
        tenants=len(settings.tenants),
    )

    _ledger, _adapters, retention, signer = _create_services(settings)

    scheduler = create_scheduler(
        sweep_fn=partial(
            run_retention_sweep,
            retention,
            apply=settings.scheduler.apply_retention,
        ),
        cron=settings.scheduler.cron,
        run_on_startup=settings.run_on_startup,
    )

    log.info("app.scheduler_starting", cron=settings.scheduler.cron)

    try:
        scheduler.start()
    except KeyboardInterrupt:
        log.info("app.shutdown", reason="signal received")
    except SystemExit:
        log.info("app.shutdown", reason="signal received")
        raise
    except Exception as e:
        log.error("app.fatal_error", error=str(e))
        sys.exit(1)
    finally:
        signer.close()
        log.info("app.signer_closed")


if __name__ == "__main__":
    main()
