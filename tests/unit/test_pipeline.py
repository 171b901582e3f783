"""
Unit tests for the pipeline — issuing documents and running retention.

Uses mock regime adapters to test the orchestration in isolation; the
ledger and retention engine are the real ones over in-memory stores.

Test categories:
  - Success track: the entry is chained and every enabled regime accepts
  - Regime isolation: one regime failing never blocks another, nor undoes
    the ledger append
  - Resubmission: a failed envelope is kept and sent again unchanged
  - Ledger failure: nothing is signed or submitted
  - Retention sweep: report-only vs. apply, broken chain
"""

from __future__ import annotations

from dataclasses import replace
from datetime import timedelta
from decimal import Decimal
from unittest.mock import MagicMock
from uuid import uuid4

import pytest
from railway import ErrorCode, Result, ResultAssertions

from fiscal_ledger.adapters.memory_store import InMemoryLedgerStore
from fiscal_ledger.domain.models import (
    FiscalLogEntry,
    Regime,
    RegimeEnvelope,
    SubmissionReceipt,
)
from fiscal_ledger.errors import SigningUnavailable, SubmissionFailure
from fiscal_ledger.ledger import FiscalChainLedger
from fiscal_ledger.pipeline import issue_document, resubmit, run_retention_sweep
from fiscal_ledger.regimes.base import RegimeAdapter
from fiscal_ledger.retention import DEFAULT_POLICIES, RetentionEngine
from tests.conftest import START, TENANT, FixedClock, make_document

# ─────────────────────── Mock Adapter Factories ───────────────────────


def _envelope(regime: Regime, entry_id=None) -> RegimeEnvelope:  # type: ignore[no-untyped-def]
    return RegimeEnvelope(
        regime=regime,
        identifier=f"{regime.value.upper()}-1",
        entry_id=entry_id or uuid4(),
        entry_hash="a" * 64,
        tenant_id=TENANT,
        signing_payload="payload",
        signature="c2lnbmF0dXJl",
        certificate_thumbprint="A" * 40,
        certificate_der="",
        verification_code="X-1",
        qr_payload="qr",
        xml="<xml/>",
    )


def _receipt(regime: Regime, accepted: bool = True) -> SubmissionReceipt:
    return SubmissionReceipt(
        regime=regime,
        envelope_identifier=f"{regime.value.upper()}-1",
        accepted=accepted,
        status="00" if accepted else "01",
    )


def _make_adapter(
    regime: Regime,
    prepared: Result[RegimeEnvelope] | None = None,
    submitted: Result[SubmissionReceipt] | None = None,
    enabled: bool = True,
) -> MagicMock:
    """Create a mock RegimeAdapter returning the given Results."""
    adapter = MagicMock(spec=RegimeAdapter)
    adapter.regime = regime
    adapter.enabled_for.return_value = enabled
    adapter.prepare.return_value = prepared if prepared is not None else Result.success(_envelope(regime))
    adapter.submit.return_value = submitted if submitted is not None else Result.success(_receipt(regime))
    return adapter


# ─────────────────────── Success Track ───────────────────────


class TestIssueSuccess:
    def test_chains_then_submits_to_every_enabled_regime(
        self, ledger: FiscalChainLedger
    ) -> None:
        """
        GIVEN TicketBAI and VeriFactu both enabled and accepting
        WHEN a document is issued
        THEN the entry is chained and both regimes report acceptance.
        """
        tbai = _make_adapter(Regime.TICKETBAI)
        vf = _make_adapter(Regime.VERIFACTU)

        result = issue_document(ledger, [tbai, vf], make_document())

        issued = ResultAssertions.assert_success(result)
        assert issued.fully_accepted is True
        assert [o.regime for o in issued.outcomes] == [Regime.TICKETBAI, Regime.VERIFACTU]
        assert ledger.entries(TENANT) == [issued.entry]
        tbai.prepare.assert_called_once_with(issued.entry)
        vf.submit.assert_called_once()

    def test_disabled_regime_is_skipped(self, ledger: FiscalChainLedger) -> None:
        tbai = _make_adapter(Regime.TICKETBAI, enabled=False)

        issued = ResultAssertions.assert_success(issue_document(ledger, [tbai], make_document()))

        assert issued.outcomes == []
        tbai.prepare.assert_not_called()

    def test_rejection_is_an_outcome_not_a_failure(self, ledger: FiscalChainLedger) -> None:
        vf = _make_adapter(
            Regime.VERIFACTU, submitted=Result.success(_receipt(Regime.VERIFACTU, accepted=False))
        )

        issued = ResultAssertions.assert_success(issue_document(ledger, [vf], make_document()))

        outcome = issued.outcomes[0]
        assert outcome.accepted is False
        assert outcome.failure is None
        assert issued.fully_accepted is False


# ─────────────────────── Regime Isolation ───────────────────────


class TestRegimeIsolation:
    def test_signing_failure_does_not_block_other_regime(
        self, ledger: FiscalChainLedger
    ) -> None:
        """
        GIVEN TicketBAI cannot sign (store unavailable) and VeriFactu can
        WHEN a document is issued
        THEN the entry stays chained, TicketBAI records SIGNING_UNAVAILABLE
             and VeriFactu is still submitted.
        """
        tbai = _make_adapter(
            Regime.TICKETBAI,
            prepared=Result.from_computation(
                lambda: (_ for _ in ()).throw(SigningUnavailable("store down")),
                ErrorCode.TECHNICAL_ERROR,
                "Building envelope failed",
            ),
        )
        vf = _make_adapter(Regime.VERIFACTU)

        issued = ResultAssertions.assert_success(issue_document(ledger, [tbai, vf], make_document()))

        tbai_outcome, vf_outcome = issued.outcomes
        assert tbai_outcome.failure is not None
        assert tbai_outcome.failure.code == ErrorCode.SIGNING_UNAVAILABLE
        assert tbai_outcome.envelope is None
        tbai.submit.assert_not_called()
        assert vf_outcome.accepted is True
        assert len(ledger.entries(TENANT)) == 1

    def test_submission_failure_keeps_envelope_for_resubmission(
        self, ledger: FiscalChainLedger
    ) -> None:
        envelope = _envelope(Regime.TICKETBAI)
        tbai = _make_adapter(
            Regime.TICKETBAI,
            prepared=Result.success(envelope),
            submitted=Result.from_computation(
                lambda: (_ for _ in ()).throw(SubmissionFailure("HTTP 503", status_code=503)),
                ErrorCode.SUBMISSION_FAILURE,
                "Submission failed",
            ),
        )

        issued = ResultAssertions.assert_success(issue_document(ledger, [tbai], make_document()))

        outcome = issued.outcomes[0]
        assert outcome.envelope == envelope
        assert outcome.resubmittable is True

    def test_client_error_is_not_resubmittable(self, ledger: FiscalChainLedger) -> None:
        tbai = _make_adapter(
            Regime.TICKETBAI,
            submitted=Result.from_computation(
                lambda: (_ for _ in ()).throw(
                    SubmissionFailure("HTTP 400", retryable=False, status_code=400)
                ),
                ErrorCode.SUBMISSION_FAILURE,
                "Submission failed",
            ),
        )

        issued = ResultAssertions.assert_success(issue_document(ledger, [tbai], make_document()))

        assert issued.outcomes[0].resubmittable is False


class TestResubmit:
    def test_sends_the_same_envelope(self) -> None:
        envelope = _envelope(Regime.VERIFACTU)
        vf = _make_adapter(Regime.VERIFACTU)

        result = resubmit(vf, envelope)

        assert ResultAssertions.assert_success(result).accepted
        vf.submit.assert_called_once_with(envelope)
        vf.prepare.assert_not_called()


# ─────────────────────── Ledger Failure ───────────────────────


class TestLedgerFailure:
    def test_untrusted_tail_stops_everything(
        self, ledger: FiscalChainLedger, ledger_store: InMemoryLedgerStore
    ) -> None:
        """
        GIVEN a tenant chain whose tail was tampered with
        WHEN a document is issued
        THEN the result is INTEGRITY_VIOLATION and no regime is contacted.
        """
        tail = ledger.append(make_document())
        ledger_store._entries[tail.id] = replace(tail, total=Decimal("0.01"))
        tbai = _make_adapter(Regime.TICKETBAI)

        result = issue_document(ledger, [tbai], make_document(number="0002"))

        ResultAssertions.assert_failure(result, ErrorCode.INTEGRITY_VIOLATION)
        tbai.enabled_for.assert_not_called()
        tbai.prepare.assert_not_called()

    @pytest.mark.parametrize(
        ("total", "reason"),
        [
            ("NaN", "must be finite"),
            ("10.005", "more than two decimal places"),
            ("1" + "0" * 28, "out of range"),
        ],
    )
    def test_malformed_amount_is_validation_error(
        self, ledger: FiscalChainLedger, total: str, reason: str
    ) -> None:
        """
        GIVEN a document whose total was altered after construction
        WHEN it is issued
        THEN the result is a non-retryable VALIDATION_ERROR and nothing is chained.
        """
        document = make_document()
        object.__setattr__(document, "total", Decimal(total))
        tbai = _make_adapter(Regime.TICKETBAI)

        result = issue_document(ledger, [tbai], document)

        error = ResultAssertions.assert_failure(result, ErrorCode.VALIDATION_ERROR)
        assert reason in error.message
        assert error.retryable is False
        assert ledger.entries(TENANT) == []
        tbai.prepare.assert_not_called()

    def test_store_error_is_database_error(self, integrity_signer, clock) -> None:  # type: ignore[no-untyped-def]
        class BrokenStore(InMemoryLedgerStore):
            def append(self, entry: FiscalLogEntry, expected_previous: str) -> None:
                raise OSError("disk full")

        ledger = FiscalChainLedger(BrokenStore(), integrity_signer, clock=clock)

        result = issue_document(ledger, [], make_document())

        ResultAssertions.assert_failure(result, ErrorCode.DATABASE_ERROR)


# ─────────────────────── Retention Sweep ───────────────────────


class TestRunRetentionSweep:
    def _engine(self, ledger: FiscalChainLedger) -> RetentionEngine:
        return RetentionEngine(
            DEFAULT_POLICIES, ledger, clock=FixedClock(START + timedelta(days=1500))
        )

    def test_report_only_changes_nothing(self, ledger: FiscalChainLedger) -> None:
        ledger.append(make_document())

        report, outcome = ResultAssertions.assert_success(
            run_retention_sweep(self._engine(ledger))
        )

        assert len(report.to_archive) == 1
        assert outcome is None
        assert not ledger.entries(TENANT)[0].is_archived

    def test_apply_archives(self, ledger: FiscalChainLedger) -> None:
        ledger.append(make_document())

        report, outcome = ResultAssertions.assert_success(
            run_retention_sweep(self._engine(ledger), apply=True)
        )

        assert outcome is not None
        assert outcome.archived == 1
        assert ledger.entries(TENANT)[0].is_archived

    def test_broken_chain_is_integrity_violation(
        self, ledger: FiscalChainLedger, ledger_store: InMemoryLedgerStore
    ) -> None:
        entry = ledger.append(make_document())
        ledger_store._entries[entry.id] = replace(entry, series="X")

        result = run_retention_sweep(self._engine(ledger), apply=True)

        ResultAssertions.assert_failure(result, ErrorCode.INTEGRITY_VIOLATION)
        assert not ledger.entries(TENANT)[0].is_archived
