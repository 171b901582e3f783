"""
Unit tests for the retention engine.

Covers:
  - the policy table: defaults, overrides, refusals at load time
  - decide(): pure per-record evaluation
  - sweep() reports without touching anything
  - apply() verifies chains first, archives fiscal entries, deletes only
    operational logs
  - expiring_within() for upcoming actions
"""

from __future__ import annotations

from dataclasses import replace
from datetime import timedelta
from decimal import Decimal

import pytest

from fiscal_ledger.adapters.memory_store import InMemoryLedgerStore, InMemoryOperationalLogStore
from fiscal_ledger.domain.models import (
    LogCategory,
    OperationalLogRecord,
    RetentionAction,
    RetentionDecision,
    RetentionPolicy,
    RetentionReport,
)
from fiscal_ledger.errors import IntegrityViolation, PolicyViolation
from fiscal_ledger.ledger import FiscalChainLedger
from fiscal_ledger.retention import (
    DEFAULT_POLICIES,
    FISCAL_MINIMUM_DAYS,
    RetentionEngine,
    decide,
    load_policies,
)
from tests.conftest import START, TENANT, FixedClock, make_document

LATER = START + timedelta(days=FISCAL_MINIMUM_DAYS + 1)


@pytest.fixture()
def engine_clock() -> FixedClock:
    return FixedClock(LATER)


@pytest.fixture()
def engine(
    ledger: FiscalChainLedger,
    log_store: InMemoryOperationalLogStore,
    engine_clock: FixedClock,
) -> RetentionEngine:
    return RetentionEngine(DEFAULT_POLICIES, ledger, log_store, clock=engine_clock)


# ── Policy table ──


class TestLoadPolicies:
    def test_defaults_cover_every_category(self) -> None:
        policies = load_policies()

        assert set(policies) == set(LogCategory)
        assert policies[LogCategory.FISCAL].action == RetentionAction.ARCHIVE
        assert policies[LogCategory.FISCAL].minimum_days == FISCAL_MINIMUM_DAYS

    def test_override_keeps_other_defaults(self) -> None:
        policies = load_policies(
            [RetentionPolicy(LogCategory.SYSTEM, 30, RetentionAction.HARD_DELETE)]
        )

        assert policies[LogCategory.SYSTEM].minimum_days == 30
        assert policies[LogCategory.AUDIT].minimum_days == 730

    def test_longer_fiscal_retention_is_allowed(self) -> None:
        policies = load_policies(
            [RetentionPolicy(LogCategory.FISCAL, 3650, RetentionAction.RETAIN)]
        )

        assert policies[LogCategory.FISCAL].minimum_days == 3650

    def test_fiscal_hard_delete_is_refused(self) -> None:
        """
        GIVEN a policy table asking to hard-delete fiscal records
        WHEN it is loaded
        THEN PolicyViolation is raised before any sweep can run.
        """
        with pytest.raises(PolicyViolation, match="never deleted"):
            load_policies([RetentionPolicy(LogCategory.FISCAL, 5000, RetentionAction.HARD_DELETE)])

    def test_short_fiscal_retention_is_refused(self) -> None:
        with pytest.raises(PolicyViolation, match="1460"):
            load_policies([RetentionPolicy(LogCategory.FISCAL, 365, RetentionAction.ARCHIVE)])

    def test_negative_retention_is_refused(self) -> None:
        with pytest.raises(PolicyViolation, match="negative"):
            load_policies([RetentionPolicy(LogCategory.AUDIT, -1, RetentionAction.HARD_DELETE)])

    def test_duplicate_category_is_refused(self) -> None:
        policy = RetentionPolicy(LogCategory.AUDIT, 10, RetentionAction.HARD_DELETE)

        with pytest.raises(PolicyViolation, match="twice"):
            load_policies([policy, policy])

    def test_engine_refuses_bad_table(self, ledger: FiscalChainLedger) -> None:
        with pytest.raises(PolicyViolation):
            RetentionEngine(
                [RetentionPolicy(LogCategory.FISCAL, 100, RetentionAction.ARCHIVE)], ledger
            )


# ── decide() ──


class TestDecide:
    def test_old_fiscal_entry_is_archived(self, ledger: FiscalChainLedger) -> None:
        entry = ledger.append(make_document())
        policy = load_policies()[LogCategory.FISCAL]

        decision = decide(entry, policy, LATER)

        assert decision.action == RetentionAction.ARCHIVE
        assert decision.category == LogCategory.FISCAL
        assert decision.tenant_id == TENANT
        assert decision.eligible_at == START + timedelta(days=FISCAL_MINIMUM_DAYS)

    def test_recent_fiscal_entry_is_retained(self, ledger: FiscalChainLedger) -> None:
        entry = ledger.append(make_document())

        decision = decide(entry, load_policies()[LogCategory.FISCAL], START + timedelta(days=10))

        assert decision.action == RetentionAction.RETAIN

    def test_eligibility_boundary_is_inclusive(self) -> None:
        record = OperationalLogRecord(LogCategory.SYSTEM, "boot", START)
        policy = RetentionPolicy(LogCategory.SYSTEM, 90, RetentionAction.HARD_DELETE)

        assert decide(record, policy, START + timedelta(days=90)).action == (
            RetentionAction.HARD_DELETE
        )
        assert decide(record, policy, START + timedelta(days=89)).action == (
            RetentionAction.RETAIN
        )

    def test_policy_of_another_category(self) -> None:
        record = OperationalLogRecord(LogCategory.AUDIT, "login", START)

        with pytest.raises(ValueError, match="system"):
            decide(record, load_policies()[LogCategory.SYSTEM], LATER)

    def test_fiscal_hard_delete_refused_even_unvalidated(self, ledger: FiscalChainLedger) -> None:
        entry = ledger.append(make_document())
        rogue = RetentionPolicy(LogCategory.FISCAL, 0, RetentionAction.HARD_DELETE)

        with pytest.raises(PolicyViolation):
            decide(entry, rogue, LATER)


# ── Engine ──


class TestSweep:
    def test_sweep_reports_without_changing_anything(
        self,
        engine: RetentionEngine,
        ledger: FiscalChainLedger,
        log_store: InMemoryOperationalLogStore,
    ) -> None:
        ledger.append(make_document(number="0001"))
        ledger.append(make_document(number="0002"))
        log_store.add(OperationalLogRecord(LogCategory.SYSTEM, "boot", START))
        log_store.add(OperationalLogRecord(LogCategory.AUDIT, "login", LATER))

        report = engine.sweep()

        assert len(report.to_archive) == 2
        assert len(report.to_delete) == 1
        assert len(report.retained) == 1
        assert report.generated_at == LATER
        assert not any(e.is_archived for e in ledger.entries(TENANT))
        assert len(log_store) == 2

    def test_archived_entries_are_not_reconsidered(
        self, engine: RetentionEngine, ledger: FiscalChainLedger
    ) -> None:
        ledger.append(make_document())
        engine.apply(engine.sweep())

        assert engine.sweep().decisions == []

    def test_without_log_store_only_the_ledger_is_swept(
        self, ledger: FiscalChainLedger, engine_clock: FixedClock
    ) -> None:
        ledger.append(make_document())
        engine = RetentionEngine(DEFAULT_POLICIES, ledger, clock=engine_clock)

        report = engine.sweep()

        assert [d.category for d in report.decisions] == [LogCategory.FISCAL]


class TestApply:
    def test_archives_entries_and_deletes_logs(
        self,
        engine: RetentionEngine,
        ledger: FiscalChainLedger,
        log_store: InMemoryOperationalLogStore,
    ) -> None:
        entry = ledger.append(make_document())
        log_store.add(OperationalLogRecord(LogCategory.SYSTEM, "boot", START))

        outcome = engine.apply(engine.sweep())

        assert outcome.archived == 1
        assert outcome.deleted == 1
        assert outcome.verified_tenants == [TENANT]
        archived = ledger.get(entry.id)
        assert archived is not None
        assert archived.archived_at == LATER
        assert archived.hash == entry.hash
        assert len(log_store) == 0

    def test_archival_never_removes_entries(
        self, engine: RetentionEngine, ledger: FiscalChainLedger
    ) -> None:
        for i in range(3):
            ledger.append(make_document(number=f"{i:04d}"))

        engine.apply(engine.sweep())

        assert len(ledger.entries(TENANT)) == 3
        assert ledger.verify(TENANT).valid is True

    def test_broken_chain_blocks_everything(
        self,
        engine: RetentionEngine,
        ledger: FiscalChainLedger,
        ledger_store: InMemoryLedgerStore,
        log_store: InMemoryOperationalLogStore,
    ) -> None:
        """
        GIVEN a tenant chain tampered with at index 1 and an old system log
        WHEN a sweep report is applied
        THEN IntegrityViolation is raised and nothing is archived or deleted.
        """
        ledger.append(make_document("100.00", "0001"))
        second = ledger.append(make_document("200.00", "0002"))
        ledger.append(make_document("50.00", "0003"))
        ledger_store._entries[second.id] = replace(second, total=Decimal("999.00"))
        log_store.add(OperationalLogRecord(LogCategory.SYSTEM, "boot", START))
        report = engine.sweep()

        with pytest.raises(IntegrityViolation) as exc_info:
            engine.apply(report)

        assert exc_info.value.index == 1
        assert not any(e.is_archived for e in ledger.entries(TENANT))
        assert len(log_store) == 1

    def test_report_deleting_fiscal_records_is_refused(
        self, engine: RetentionEngine, ledger: FiscalChainLedger
    ) -> None:
        entry = ledger.append(make_document())
        forged = RetentionReport(
            generated_at=LATER,
            decisions=[
                RetentionDecision(
                    subject_id=entry.id,
                    category=LogCategory.FISCAL,
                    tenant_id=TENANT,
                    action=RetentionAction.HARD_DELETE,
                    eligible_at=START,
                )
            ],
        )

        with pytest.raises(PolicyViolation):
            engine.apply(forged)

        assert ledger.get(entry.id) == entry

    def test_empty_report(self, engine: RetentionEngine) -> None:
        outcome = engine.apply(engine.sweep())

        assert outcome.archived == 0
        assert outcome.deleted == 0
        assert outcome.verified_tenants == []


class TestExpiringWithin:
    def test_lists_records_about_to_become_eligible(
        self,
        ledger: FiscalChainLedger,
        log_store: InMemoryOperationalLogStore,
    ) -> None:
        ledger.append(make_document())
        system = OperationalLogRecord(LogCategory.SYSTEM, "boot", START)
        log_store.add(system)
        engine = RetentionEngine(
            DEFAULT_POLICIES,
            ledger,
            log_store,
            clock=FixedClock(START + timedelta(days=FISCAL_MINIMUM_DAYS - 20)),
        )

        upcoming = engine.expiring_within(30)

        assert [d.category for d in upcoming] == [LogCategory.FISCAL]
        assert upcoming[0].eligible_at == START + timedelta(days=FISCAL_MINIMUM_DAYS)

    def test_retain_policies_never_expire(self, ledger: FiscalChainLedger) -> None:
        ledger.append(make_document())
        engine = RetentionEngine(
            [RetentionPolicy(LogCategory.FISCAL, FISCAL_MINIMUM_DAYS, RetentionAction.RETAIN)],
            ledger,
            clock=FixedClock(START + timedelta(days=FISCAL_MINIMUM_DAYS - 1)),
        )

        assert engine.expiring_within(30) == []
