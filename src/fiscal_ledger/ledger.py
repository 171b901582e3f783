"""
Fiscal chain ledger — per-tenant hash-chained, append-only fiscal log.

Each append is the transition (tail hash) → (new hash) of one tenant chain:

  read tail ──▶ previous_hash = tail.hash | GENESIS
            ──▶ timestamp strictly after the tail
            ──▶ hash = SHA-256(canonical fields)
            ──▶ signature = HMAC(hash|timestamp|tenant)
            ──▶ store.append(entry, expected_previous)   (compare-and-append)

Appends for the same tenant are serialized twice over: by an in-process
lock per tenant, and by the store's compare-and-append, which rejects a
write whose expected tail is stale (another process got there first). On
such a ChainConflict the append is recomputed against the new tail a
bounded number of times. Different tenants never wait for each other.

Entries are never edited. Corrections are new compensating entries
(credit notes, refunds); archival is a flag set by retention.
"""

from __future__ import annotations

import threading
from collections import defaultdict
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from uuid import UUID

import structlog

from fiscal_ledger.domain.models import (
    GENESIS,
    AuditExport,
    ChainVerification,
    DocumentTotals,
    DocumentType,
    FiscalDocument,
    FiscalLogEntry,
    FiscalSummary,
)
from fiscal_ledger.domain.ports import LedgerStore
from fiscal_ledger.errors import ChainConflict, IntegrityViolation, ViolationKind
from fiscal_ledger.hashing import hash_entry, quantize_amount, verify_chain, verify_entry
from fiscal_ledger.signing import IntegritySigner

log = structlog.get_logger()

_ONE_MICROSECOND = timedelta(microseconds=1)


class TenantLocks:
    """One lock per tenant id, created on first use."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = defaultdict(threading.Lock)

    @contextmanager
    def hold(self, tenant_id: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks[tenant_id]
        with lock:
            yield


class FiscalChainLedger:
    """
    Append and verify tenant fiscal chains.

    The store is the only persistence; the ledger itself keeps no chain
    state beyond the per-tenant locks.
    """

    def __init__(
        self,
        store: LedgerStore,
        signer: IntegritySigner,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
        max_append_attempts: int = 3,
    ) -> None:
        self._store = store
        self._signer = signer
        self._clock = clock
        self._max_append_attempts = max_append_attempts
        self._locks = TenantLocks()

    # ──────────────────────── Append ────────────────────────

    def append(self, document: FiscalDocument) -> FiscalLogEntry:
        """
        Chain a fiscal document and persist it. Returns the completed entry.

        Raises:
            IntegrityViolation: the current tail does not verify; nothing is
                chained onto an untrustworthy entry.
            ChainConflict: the tail kept moving under concurrent writers.
        """
        for attempt in range(1, self._max_append_attempts + 1):
            with self._locks.hold(document.tenant_id):
                try:
                    entry = self._append_once(document)
                except ChainConflict:
                    log.warning(
                        "ledger.append_conflict",
                        tenant_id=document.tenant_id,
                        attempt=attempt,
                        max_attempts=self._max_append_attempts,
                    )
                    if attempt == self._max_append_attempts:
                        raise
                    continue

            log.info(
                "ledger.appended",
                tenant_id=entry.tenant_id,
                entry_id=str(entry.id),
                document_type=entry.document_type.value,
                document_number=entry.document_number,
                hash_prefix=entry.hash[:16],
                genesis=entry.is_genesis,
            )
            return entry

        raise RuntimeError("unreachable")  # pragma: no cover

    def _append_once(self, document: FiscalDocument) -> FiscalLogEntry:
        tail = self._store.tail(document.tenant_id)
        if tail is not None:
            self._ensure_tail_trusted(tail)

        previous_hash = tail.hash if tail is not None else GENESIS
        timestamp = self._next_timestamp(tail)

        draft = FiscalLogEntry(
            tenant_id=document.tenant_id,
            document_type=document.document_type,
            document_number=document.document_number,
            series=document.series,
            taxable_amount=quantize_amount(document.taxable_amount),
            tax_amount=quantize_amount(document.tax_amount),
            total=quantize_amount(document.total),
            timestamp=timestamp,
            previous_hash=previous_hash,
            hash="",
            signature="",
        )
        entry_hash = hash_entry(draft)
        entry = replace(
            draft,
            hash=entry_hash,
            signature=self._signer.sign(entry_hash, timestamp, document.tenant_id),
        )
        self._store.append(entry, expected_previous=previous_hash)
        return entry

    def _ensure_tail_trusted(self, tail: FiscalLogEntry) -> None:
        if not verify_entry(tail):
            raise IntegrityViolation(
                f"Chain tail {tail.id} of tenant {tail.tenant_id!r} does not match its hash",
                entry_id=tail.id,
                kind=ViolationKind.HASH_MISMATCH,
            )
        self._signer.ensure_valid(tail)

    def _next_timestamp(self, tail: FiscalLogEntry | None) -> datetime:
        now = self._clock()
        if now.tzinfo is None or now.utcoffset() is None:
            raise ValueError("Ledger clock must return timezone-aware datetimes")
        now = now.astimezone(UTC)
        if tail is not None and now <= tail.timestamp:
            now = tail.timestamp + _ONE_MICROSECOND
        return now

    # ──────────────────────── Verification ────────────────────────

    def verify(
        self,
        tenant_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> ChainVerification:
        """
        Verify a tenant chain, or the part of it between `start` and `end`.

        A range that starts mid-chain is linked against the real entry
        before it, not against GENESIS.
        """
        entries = self._store.range(tenant_id, start, end)
        expected_first = self._expected_first_previous(entries, start)
        result = verify_chain(
            entries,
            verify_signature=self._signer.verify_entry,
            expected_first_previous=expected_first,
        )
        if result.valid:
            log.info("ledger.chain_verified", tenant_id=tenant_id, entries=result.total_entries)
        else:
            log.error(
                "ledger.chain_broken",
                tenant_id=tenant_id,
                broken_at_index=result.broken_at_index,
                entry_id=str(result.entry_id),
                kind=result.kind.value if result.kind else None,
            )
        return result

    def assert_intact(
        self,
        tenant_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> ChainVerification:
        """Like verify(), but a broken chain raises IntegrityViolation."""
        result = self.verify(tenant_id, start, end)
        if not result.valid:
            raise result.to_error()
        return result

    def verify_document(self, entry_id: UUID) -> ChainVerification:
        """
        Verify one entry in place: its hash, its signature, its link to the
        entry before it and the link of the entry after it.

        `broken_at_index` is the position in the full tenant chain.
        """
        entry = self._require(entry_id)
        chain = sorted(self._store.range(entry.tenant_id), key=lambda e: e.timestamp)
        index = next(i for i, e in enumerate(chain) if e.id == entry.id)

        def broken(at: int, kind: ViolationKind, reason: str) -> ChainVerification:
            return ChainVerification(
                valid=False,
                total_entries=len(chain),
                broken_at_index=at,
                entry_id=chain[at].id,
                kind=kind,
                message=f"Entry {chain[at].id} at index {at}: {reason}",
            )

        if not verify_entry(entry):
            return broken(index, ViolationKind.HASH_MISMATCH, "hash does not match fields")
        if not self._signer.verify_entry(entry):
            return broken(index, ViolationKind.SIGNATURE_MISMATCH, "integrity signature invalid")

        expected_previous = chain[index - 1].hash if index > 0 else GENESIS
        if entry.previous_hash != expected_previous:
            kind = ViolationKind.GENESIS_MISMATCH if index == 0 else ViolationKind.LINK_MISMATCH
            return broken(index, kind, "does not link to its predecessor")

        if index + 1 < len(chain) and chain[index + 1].previous_hash != entry.hash:
            return broken(index + 1, ViolationKind.LINK_MISMATCH, "successor does not link back")

        return ChainVerification(valid=True, total_entries=len(chain))

    def _expected_first_previous(
        self,
        entries: list[FiscalLogEntry],
        start: datetime | None,
    ) -> str:
        if not entries or start is None:
            return GENESIS
        first = min(entries, key=lambda e: e.timestamp)
        predecessor = self._store.predecessor(first)
        return predecessor.hash if predecessor is not None else GENESIS

    # ──────────────────────── Reads ────────────────────────

    def get(self, entry_id: UUID) -> FiscalLogEntry | None:
        return self._store.get(entry_id)

    def _require(self, entry_id: UUID) -> FiscalLogEntry:
        entry = self._store.get(entry_id)
        if entry is None:
            raise LookupError(f"No ledger entry with id {entry_id}")
        return entry

    def find_by_number(
        self,
        tenant_id: str,
        series: str,
        document_number: str,
    ) -> FiscalLogEntry | None:
        return next(
            (
                e
                for e in self._store.range(tenant_id)
                if e.series == series and e.document_number == document_number
            ),
            None,
        )

    def entries(
        self,
        tenant_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[FiscalLogEntry]:
        return self._store.range(tenant_id, start, end)

    def tenants(self) -> list[str]:
        return self._store.tenants()

    def archive(self, entry_ids: Iterable[UUID], at: datetime | None = None) -> int:
        """Set the archival flag. The hashed fields are never touched."""
        moment = at or self._clock()
        count = self._store.mark_archived(list(entry_ids), moment)
        log.info("ledger.archived", entries=count)
        return count

    # ──────────────────────── Audit ────────────────────────

    def export_for_audit(
        self,
        tenant_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> AuditExport:
        entries = self._store.range(tenant_id, start, end)
        expected_first = self._expected_first_previous(entries, start)
        verification = self.verify(tenant_id, start, end)
        log.info(
            "ledger.audit_exported",
            tenant_id=tenant_id,
            entries=len(entries),
            valid=verification.valid,
        )
        return AuditExport(
            tenant_id=tenant_id,
            generated_at=self._clock(),
            start=start,
            end=end,
            entries=entries,
            verification=verification,
            expected_first_previous=expected_first,
        )

    def summarize(
        self,
        tenant_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> FiscalSummary:
        by_type: dict[DocumentType, DocumentTotals] = {}
        for entry in self._store.range(tenant_id, start, end):
            by_type[entry.document_type] = by_type.get(
                entry.document_type, DocumentTotals()
            ).add(entry)
        return FiscalSummary(tenant_id=tenant_id, start=start, end=end, by_type=by_type)
