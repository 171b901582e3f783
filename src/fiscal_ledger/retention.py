"""
Retention engine — how long fiscal entries and operational logs are kept.

Two steps, never merged:

  sweep()  ──▶ RetentionReport   (decisions only, nothing is touched)
  apply(report) ──▶ RetentionOutcome
                    1. every tenant with entries to archive must verify
                       (IntegrityViolation otherwise, nothing applied)
                    2. fiscal entries: archival flag set
                    3. operational logs: deleted

Fiscal entries are never deleted. A policy table asking for that is
refused by load_policies() with PolicyViolation, so a bad configuration
fails at startup and not in the middle of a nightly sweep.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from datetime import UTC, datetime, timedelta

import structlog

from fiscal_ledger.domain.models import (
    FiscalLogEntry,
    LogCategory,
    OperationalLogRecord,
    RetentionAction,
    RetentionDecision,
    RetentionOutcome,
    RetentionPolicy,
    RetentionReport,
)
from fiscal_ledger.domain.ports import OperationalLogStore
from fiscal_ledger.errors import IntegrityViolation, PolicyViolation
from fiscal_ledger.ledger import FiscalChainLedger

log = structlog.get_logger()

# Four years: the statutory minimum for fiscal records.
FISCAL_MINIMUM_DAYS = 1460

DEFAULT_POLICIES: tuple[RetentionPolicy, ...] = (
    RetentionPolicy(LogCategory.FISCAL, FISCAL_MINIMUM_DAYS, RetentionAction.ARCHIVE),
    RetentionPolicy(LogCategory.AUDIT, 730, RetentionAction.HARD_DELETE),
    RetentionPolicy(LogCategory.SYSTEM, 90, RetentionAction.HARD_DELETE),
)

type Subject = FiscalLogEntry | OperationalLogRecord


def load_policies(
    configured: Iterable[RetentionPolicy] = (),
) -> dict[LogCategory, RetentionPolicy]:
    """
    Validate a policy table and fill the categories it leaves out with defaults.

    Raises:
        PolicyViolation: duplicate category, negative retention, deletion of
            fiscal records, or a fiscal minimum under four years.
    """
    policies = {p.category: p for p in DEFAULT_POLICIES}
    seen: set[LogCategory] = set()
    for policy in configured:
        if policy.category in seen:
            raise PolicyViolation(f"Retention policy for {policy.category.value} defined twice")
        seen.add(policy.category)
        _validate(policy)
        policies[policy.category] = policy
    return policies


def _validate(policy: RetentionPolicy) -> None:
    if policy.minimum_days < 0:
        raise PolicyViolation(
            f"Retention for {policy.category.value} cannot be negative ({policy.minimum_days} days)"
        )
    if not policy.category.is_fiscal:
        return
    if policy.action == RetentionAction.HARD_DELETE:
        raise PolicyViolation("Fiscal records can be archived but never deleted")
    if policy.minimum_days < FISCAL_MINIMUM_DAYS:
        raise PolicyViolation(
            f"Fiscal records must be kept at least {FISCAL_MINIMUM_DAYS} days, "
            f"policy asks for {policy.minimum_days}"
        )


def decide(subject: Subject, policy: RetentionPolicy, now: datetime) -> RetentionDecision:
    """Pure evaluation of one policy against one record."""
    if isinstance(subject, FiscalLogEntry):
        category, created_at = LogCategory.FISCAL, subject.timestamp
    else:
        category, created_at = subject.category, subject.created_at

    if policy.category != category:
        raise ValueError(
            f"Policy for {policy.category.value} applied to a {category.value} record"
        )
    if category.is_fiscal and policy.action == RetentionAction.HARD_DELETE:
        raise PolicyViolation("Fiscal records can be archived but never deleted")

    eligible_at = created_at + timedelta(days=policy.minimum_days)
    return RetentionDecision(
        subject_id=subject.id,
        category=category,
        tenant_id=subject.tenant_id,
        action=policy.action if now >= eligible_at else RetentionAction.RETAIN,
        eligible_at=eligible_at,
    )


class RetentionEngine:
    """Evaluates the policy table over the ledger and the operational log."""

    def __init__(
        self,
        policies: Iterable[RetentionPolicy],
        ledger: FiscalChainLedger,
        log_store: OperationalLogStore | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._policies = load_policies(policies)
        self._ledger = ledger
        self._log_store = log_store
        self._clock = clock

    @property
    def policies(self) -> dict[LogCategory, RetentionPolicy]:
        return dict(self._policies)

    def sweep(self) -> RetentionReport:
        """Decide for every live record. Changes nothing."""
        now = self._clock()
        decisions = [
            decide(subject, self._policies[category], now)
            for category, subject in self._subjects()
        ]
        report = RetentionReport(generated_at=now, decisions=decisions)
        log.info(
            "retention.swept",
            decisions=len(decisions),
            to_archive=len(report.to_archive),
            to_delete=len(report.to_delete),
        )
        return report

    def apply(self, report: RetentionReport) -> RetentionOutcome:
        """
        Carry out a sweep report.

        Raises:
            IntegrityViolation: a tenant chain with entries to archive does
                not verify; nothing is archived or deleted.
            PolicyViolation: the report asks to delete fiscal records.
        """
        if any(d.category.is_fiscal for d in report.to_delete):
            raise PolicyViolation("Report asks to delete fiscal records")

        tenants = sorted(
            {d.tenant_id for d in report.to_archive if d.category.is_fiscal and d.tenant_id}
        )
        for tenant_id in tenants:
            try:
                self._ledger.assert_intact(tenant_id)
            except IntegrityViolation as e:
                log.error("retention.refused", tenant_id=tenant_id, broken_at_index=e.index)
                raise

        archived = self._ledger.archive(
            [d.subject_id for d in report.to_archive if d.category.is_fiscal],
            at=self._clock(),
        )
        deleted = 0
        if self._log_store is not None and report.to_delete:
            deleted = self._log_store.delete([d.subject_id for d in report.to_delete])

        outcome = RetentionOutcome(archived=archived, deleted=deleted, verified_tenants=tenants)
        log.info("retention.applied", archived=archived, deleted=deleted, tenants=len(tenants))
        return outcome

    def expiring_within(self, days: int) -> list[RetentionDecision]:
        """Records still retained whose retention ends in the next `days` days."""
        now = self._clock()
        horizon = now + timedelta(days=days)
        upcoming = [
            d
            for category, subject in self._subjects()
            if (d := decide(subject, self._policies[category], now)).action == RetentionAction.RETAIN
            and self._policies[category].action != RetentionAction.RETAIN
            and d.eligible_at <= horizon
        ]
        return sorted(upcoming, key=lambda d: d.eligible_at)

    def _subjects(self) -> Iterable[tuple[LogCategory, Subject]]:
        for tenant_id in self._ledger.tenants():
            for entry in self._ledger.entries(tenant_id):
                if not entry.is_archived:
                    yield LogCategory.FISCAL, entry
        if self._log_store is None:
            return
        for category in self._policies:
            if category.is_fiscal:
                continue
            for record in self._log_store.records(category=category):
                yield category, record
