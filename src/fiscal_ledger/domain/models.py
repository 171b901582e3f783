"""
Domain models — immutable data structures for the fiscal audit trail.

These are pure value objects with no behavior beyond self-validation and a
few derived properties. They represent:
  - fiscal documents and the chained ledger entries built from them
  - certificate metadata (never key material) discovered in the OS store
  - regime envelopes and authority receipts
  - retention policies, decisions and reports

All models are frozen dataclasses (immutable) following functional principles.
Money is always Decimal; timestamps are always timezone-aware UTC.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from enum import StrEnum
from typing import Any
from uuid import UUID, uuid4

from railway import FailureDescription

from fiscal_ledger.errors import IntegrityViolation, ViolationKind

GENESIS = "GENESIS"
"""previous_hash of the first entry in every tenant chain."""


class DocumentType(StrEnum):
    INVOICE = "invoice"
    TICKET = "ticket"
    CREDIT_NOTE = "credit_note"
    REFUND = "refund"


class Regime(StrEnum):
    """External fiscal-authority protocols."""

    TICKETBAI = "ticketbai"
    VERIFACTU = "verifactu"


class CertificateUsage(StrEnum):
    """What a registered certificate may sign for."""

    TICKETBAI = "TICKETBAI"
    VERIFACTU = "VERIFACTU"
    ALL = "ALL"

    @staticmethod
    def for_regime(regime: Regime) -> CertificateUsage:
        return CertificateUsage(regime.value.upper())


class StoreLocation(StrEnum):
    CURRENT_USER = "CurrentUser"
    LOCAL_MACHINE = "LocalMachine"


def _require_aware(value: datetime, name: str) -> None:
    if value.tzinfo is None or value.utcoffset() is None:
        raise ValueError(f"{name} must be timezone-aware, got naive {value.isoformat()}")


def _require_decimal(value: Any, name: str) -> None:
    if isinstance(value, bool) or not isinstance(value, Decimal):
        raise TypeError(f"{name} must be a Decimal, got {type(value).__name__}")


MAX_AMOUNT = Decimal("1E16")
"""Exclusive bound on money magnitude; ledger columns are NUMERIC(18, 2)."""

_CENT = Decimal("0.01")


def _require_amount(value: Any, name: str) -> None:
    _require_decimal(value, name)
    if not value.is_finite():
        raise ValueError(f"{name} must be finite, got {value}")
    if abs(value) >= MAX_AMOUNT:
        raise ValueError(f"{name} is out of range: {value}")
    if value.quantize(_CENT) != value:
        raise ValueError(f"{name} has more than two decimal places: {value}")


# ─────────────────────── Ledger ───────────────────────


@dataclass(frozen=True, slots=True)
class FiscalDocument:
    """
    A fiscal event as it arrives from the business layer.

    The ledger turns it into a FiscalLogEntry by assigning the timestamp,
    the chain link, the hash and the HMAC signature.
    """

    tenant_id: str
    document_type: DocumentType
    document_number: str
    series: str
    taxable_amount: Decimal
    tax_amount: Decimal
    total: Decimal

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> FiscalDocument:
        """
        Check identity and money fields; returns self.

        Amounts must be finite Decimals with at most two decimal places that
        fit the ledger columns. Nothing is rounded: an amount the hash would
        not certify exactly is refused.
        """
        if not self.tenant_id:
            raise ValueError("tenant_id is required")
        if not self.document_number:
            raise ValueError("document_number is required")
        for name in ("taxable_amount", "tax_amount", "total"):
            _require_amount(getattr(self, name), name)
        return self


@dataclass(frozen=True, slots=True)
class FiscalLogEntry:
    """
    One immutable link of a tenant's fiscal chain.

    `hash` covers the identity, money, timestamp and previous_hash fields.
    `signature` is the HMAC over hash, timestamp and tenant.
    `archived_at` is retention metadata: it is not hashed and setting it is
    the only change an entry ever sees after it is appended.
    """

    tenant_id: str
    document_type: DocumentType
    document_number: str
    series: str
    taxable_amount: Decimal
    tax_amount: Decimal
    total: Decimal
    timestamp: datetime
    previous_hash: str
    hash: str
    signature: str
    id: UUID = field(default_factory=uuid4)
    archived_at: datetime | None = None

    def __post_init__(self) -> None:
        _require_aware(self.timestamp, "timestamp")
        for name in ("taxable_amount", "tax_amount", "total"):
            _require_decimal(getattr(self, name), name)

    @property
    def is_genesis(self) -> bool:
        return self.previous_hash == GENESIS

    @property
    def is_archived(self) -> bool:
        return self.archived_at is not None


@dataclass(frozen=True, slots=True)
class ChainVerification:
    """
    Outcome of verifying a (range of a) tenant chain.

    When `valid` is False, `broken_at_index` is the chain-order position of
    the first entry that fails a check and `kind` says which check failed.
    """

    valid: bool
    total_entries: int
    broken_at_index: int | None = None
    entry_id: UUID | None = None
    kind: ViolationKind | None = None
    message: str | None = None

    def to_error(self) -> IntegrityViolation:
        return IntegrityViolation(
            self.message or "Fiscal chain is broken",
            index=self.broken_at_index,
            entry_id=self.entry_id,
            kind=self.kind,
        )

    def to_json_dict(self) -> dict[str, Any]:
        return {
            "valid": self.valid,
            "total_entries": self.total_entries,
            "broken_at_index": self.broken_at_index,
            "entry_id": str(self.entry_id) if self.entry_id else None,
            "kind": self.kind.value if self.kind else None,
            "message": self.message,
        }


@dataclass(frozen=True, slots=True)
class DocumentTotals:
    count: int = 0
    taxable_amount: Decimal = Decimal("0.00")
    tax_amount: Decimal = Decimal("0.00")
    total: Decimal = Decimal("0.00")

    def add(self, entry: FiscalLogEntry) -> DocumentTotals:
        return DocumentTotals(
            count=self.count + 1,
            taxable_amount=self.taxable_amount + entry.taxable_amount,
            tax_amount=self.tax_amount + entry.tax_amount,
            total=self.total + entry.total,
        )


@dataclass(frozen=True, slots=True)
class FiscalSummary:
    """Counts and fixed-point totals per document type over a period."""

    tenant_id: str
    start: datetime | None
    end: datetime | None
    by_type: dict[DocumentType, DocumentTotals] = field(default_factory=dict)

    @property
    def document_count(self) -> int:
        return sum(t.count for t in self.by_type.values())

    @property
    def net_total(self) -> Decimal:
        """Invoices and tickets minus credit notes and refunds."""
        net = Decimal("0.00")
        for doc_type, totals in self.by_type.items():
            if doc_type in (DocumentType.CREDIT_NOTE, DocumentType.REFUND):
                net -= abs(totals.total)
            else:
                net += totals.total
        return net


@dataclass(frozen=True, slots=True)
class AuditExport:
    """A tenant chain (or range of it) packaged for an external auditor."""

    tenant_id: str
    generated_at: datetime
    start: datetime | None
    end: datetime | None
    entries: list[FiscalLogEntry]
    verification: ChainVerification
    expected_first_previous: str = GENESIS

    def to_json_dict(self) -> dict[str, Any]:
        # Local import: hashing depends on this module.
        from fiscal_ledger.hashing import entry_to_json_dict, format_timestamp

        return {
            "tenant_id": self.tenant_id,
            "generated_at": format_timestamp(self.generated_at),
            "start": format_timestamp(self.start) if self.start else None,
            "end": format_timestamp(self.end) if self.end else None,
            "expected_first_previous": self.expected_first_previous,
            "verification": self.verification.to_json_dict(),
            "entries": [entry_to_json_dict(e) for e in self.entries],
        }


# ─────────────────────── Certificates ───────────────────────


@dataclass(frozen=True, slots=True)
class CertificateHolder:
    """Who a certificate belongs to, parsed from its distinguished name."""

    name: str | None = None
    tax_id: str | None = None
    organization: str | None = None


@dataclass(frozen=True, slots=True)
class CertificateRecord:
    """
    Metadata about a certificate held in the OS store.

    This is a pointer into the store: it never carries key material and is
    re-resolved by thumbprint every time something needs to be signed.
    """

    thumbprint: str
    serial_number: str
    subject: str
    issuer: str
    holder: CertificateHolder
    not_before: datetime
    not_after: datetime
    store_location: StoreLocation
    has_private_key: bool
    issuer_name: str | None = None
    issuer_organization: str | None = None
    usages: frozenset[CertificateUsage] = frozenset()
    friendly_name: str | None = None
    sha256_fingerprint: str | None = None

    def is_valid_at(self, at: datetime) -> bool:
        return self.not_before <= at <= self.not_after

    def allows(self, usage: CertificateUsage) -> bool:
        return CertificateUsage.ALL in self.usages or usage in self.usages

    def expires_within(self, at: datetime, days: int) -> bool:
        return at <= self.not_after <= at + timedelta(days=days)

    @property
    def short_thumbprint(self) -> str:
        return self.thumbprint[:8]


@dataclass(frozen=True, slots=True)
class CertificateSignature:
    """An RSA-SHA256 signature plus the public certificate that verifies it."""

    value: bytes = field(repr=False)
    certificate_der: bytes = field(repr=False)
    thumbprint: str
    algorithm: str = "SHA256withRSA"


# ─────────────────────── Regimes ───────────────────────


@dataclass(frozen=True, slots=True)
class TaxpayerProfile:
    """Per-tenant regime enablement and certificate pinning."""

    tenant_id: str
    tax_id: str
    legal_name: str
    regimes: frozenset[Regime] = frozenset()
    certificates: dict[Regime, str] = field(default_factory=dict)

    def pinned_certificate(self, regime: Regime) -> str | None:
        return self.certificates.get(regime)


@dataclass(frozen=True, slots=True)
class RegimeEnvelope:
    """
    A regime-specific signed document derived from one ledger entry.

    The envelope is self-contained: resubmitting it sends exactly the same
    bytes, so a submission can be retried without signing again.
    """

    regime: Regime
    identifier: str
    entry_id: UUID
    entry_hash: str
    tenant_id: str
    signing_payload: str
    signature: str
    certificate_thumbprint: str
    certificate_der: str = field(repr=False)
    verification_code: str
    qr_payload: str
    xml: str = field(repr=False)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    verification_url: str | None = None


@dataclass(frozen=True, slots=True)
class SubmissionReceipt:
    """What the fiscal authority answered for one envelope."""

    regime: Regime
    envelope_identifier: str
    accepted: bool
    status: str
    authority_reference: str | None = None
    errors: list[str] = field(default_factory=list)
    raw_response: str = field(default="", repr=False)
    submitted_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass(frozen=True, slots=True)
class SubmissionOutcome:
    """
    Per-regime result of issuing a document.

    `envelope` is kept even when the submission failed so it can be resubmitted.
    """

    regime: Regime
    envelope: RegimeEnvelope | None = None
    receipt: SubmissionReceipt | None = None
    failure: FailureDescription | None = None

    @property
    def accepted(self) -> bool:
        return self.receipt is not None and self.receipt.accepted

    @property
    def resubmittable(self) -> bool:
        return (
            self.envelope is not None
            and self.failure is not None
            and self.failure.retryable
        )


@dataclass(frozen=True, slots=True)
class IssuedDocument:
    """A document durably chained in the ledger plus its regime outcomes."""

    entry: FiscalLogEntry
    outcomes: list[SubmissionOutcome] = field(default_factory=list)

    @property
    def fully_accepted(self) -> bool:
        return all(o.accepted for o in self.outcomes)


# ─────────────────────── Retention ───────────────────────


class LogCategory(StrEnum):
    FISCAL = "fiscal"
    AUDIT = "audit"
    SYSTEM = "system"

    @property
    def is_fiscal(self) -> bool:
        return self is LogCategory.FISCAL


class RetentionAction(StrEnum):
    RETAIN = "retain"
    ARCHIVE = "archive"
    HARD_DELETE = "hard_delete"


@dataclass(frozen=True, slots=True)
class RetentionPolicy:
    category: LogCategory
    minimum_days: int
    action: RetentionAction


@dataclass(frozen=True, slots=True)
class OperationalLogRecord:
    """A non-fiscal log line (audit trail of user actions, system events)."""

    category: LogCategory
    message: str
    created_at: datetime
    tenant_id: str | None = None
    id: UUID = field(default_factory=uuid4)
    details: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.category.is_fiscal:
            raise ValueError("Fiscal records belong in the ledger, not the operational log")
        _require_aware(self.created_at, "created_at")


@dataclass(frozen=True, slots=True)
class RetentionDecision:
    """What the policy says should happen to one record. Never persisted."""

    subject_id: UUID
    category: LogCategory
    tenant_id: str | None
    action: RetentionAction
    eligible_at: datetime


@dataclass(frozen=True, slots=True)
class RetentionReport:
    """Result of a sweep: decisions only, nothing has been changed yet."""

    generated_at: datetime
    decisions: list[RetentionDecision] = field(default_factory=list)

    def with_action(self, action: RetentionAction) -> list[RetentionDecision]:
        return [d for d in self.decisions if d.action == action]

    @property
    def to_archive(self) -> list[RetentionDecision]:
        return self.with_action(RetentionAction.ARCHIVE)

    @property
    def to_delete(self) -> list[RetentionDecision]:
        return self.with_action(RetentionAction.HARD_DELETE)

    @property
    def retained(self) -> list[RetentionDecision]:
        return self.with_action(RetentionAction.RETAIN)


@dataclass(frozen=True, slots=True)
class RetentionOutcome:
    """What apply() actually did."""

    archived: int = 0
    deleted: int = 0
    verified_tenants: list[str] = field(default_factory=list)
