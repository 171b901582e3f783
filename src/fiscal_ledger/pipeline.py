"""
Pipeline — issuing fiscal documents and running retention, on the railway.

Issuing a document:

  ledger.append(document)                        ← durable first
    → for each regime enabled for the tenant:
        adapter.prepare(entry)                   → signed envelope
          → adapter.submit(envelope)             → authority receipt

Only the append can fail the whole operation. A regime that cannot sign or
submit is recorded in its SubmissionOutcome and the next regime still runs;
the ledger entry stays, and the envelope is kept so resubmit() can send the
same signed bytes again later.
"""

from __future__ import annotations

from collections.abc import Iterable

import structlog
from railway import ErrorCode, FailureDescription
from railway.result import Result

from fiscal_ledger.domain.models import (
    FiscalDocument,
    FiscalLogEntry,
    IssuedDocument,
    RegimeEnvelope,
    RetentionOutcome,
    RetentionReport,
    SubmissionOutcome,
    SubmissionReceipt,
)
from fiscal_ledger.ledger import FiscalChainLedger
from fiscal_ledger.regimes.base import RegimeAdapter
from fiscal_ledger.retention import RetentionEngine

log = structlog.get_logger()

type SweepResult = tuple[RetentionReport, RetentionOutcome | None]


def issue_document(
    ledger: FiscalChainLedger,
    adapters: Iterable[RegimeAdapter],
    document: FiscalDocument,
) -> Result[IssuedDocument]:
    """
    Chain a document, then sign and submit it to every enabled regime.

    Returns Result[IssuedDocument]; a failure means nothing was chained.
    Malformed input fails with VALIDATION_ERROR before the ledger is touched.
    """
    return (
        Result.from_computation(
            document.validate,
            ErrorCode.VALIDATION_ERROR,
            "Invalid fiscal document",
        )
        .flat_map(
            lambda valid: Result.from_computation(
                lambda: ledger.append(valid),
                ErrorCode.DATABASE_ERROR,
                "Ledger append failed",
            )
        )
        .map(
            lambda entry: IssuedDocument(
                entry=entry,
                outcomes=[
                    _issue_to(adapter, entry)
                    for adapter in adapters
                    if adapter.enabled_for(entry.tenant_id)
                ],
            )
        )
    )


def _issue_to(adapter: RegimeAdapter, entry: FiscalLogEntry) -> SubmissionOutcome:
    prepared = adapter.prepare(entry)
    if prepared.is_failure():
        _log_failure(adapter, entry, prepared.error(), stage="prepare")
        return SubmissionOutcome(regime=adapter.regime, failure=prepared.error())

    envelope = prepared.value()
    return adapter.submit(envelope).either(
        lambda receipt: SubmissionOutcome(
            regime=adapter.regime, envelope=envelope, receipt=receipt
        ),
        lambda error: _failed_submission(adapter, entry, envelope, error),
    )


def _failed_submission(
    adapter: RegimeAdapter,
    entry: FiscalLogEntry,
    envelope: RegimeEnvelope,
    error: FailureDescription,
) -> SubmissionOutcome:
    _log_failure(adapter, entry, error, stage="submit")
    return SubmissionOutcome(regime=adapter.regime, envelope=envelope, failure=error)


def _log_failure(
    adapter: RegimeAdapter,
    entry: FiscalLogEntry,
    error: FailureDescription,
    stage: str,
) -> None:
    log.warning(
        "pipeline.regime_failed",
        regime=adapter.regime.value,
        stage=stage,
        entry_id=str(entry.id),
        code=error.code.value,
        retryable=error.retryable,
        error=error.message,
    )


def resubmit(adapter: RegimeAdapter, envelope: RegimeEnvelope) -> Result[SubmissionReceipt]:
    """Send a previously prepared envelope again, unchanged."""
    log.info(
        "pipeline.resubmitting",
        regime=envelope.regime.value,
        identifier=envelope.identifier,
    )
    return adapter.submit(envelope)


def run_retention_sweep(engine: RetentionEngine, apply: bool = False) -> Result[SweepResult]:
    """
    Sweep, and apply the report when `apply` is set.

    A broken tenant chain surfaces as INTEGRITY_VIOLATION and nothing is applied.
    """
    return Result.from_computation(
        engine.sweep,
        ErrorCode.DATABASE_ERROR,
        "Retention sweep failed",
    ).flat_map(
        lambda report: (
            Result.from_computation(
                lambda: (report, engine.apply(report)),
                ErrorCode.DATABASE_ERROR,
                "Retention apply failed",
            )
            if apply
            else Result.success((report, None))
        )
    )
