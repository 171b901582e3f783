"""
In-memory stores — LedgerStore and OperationalLogStore without a database.

Adapter layer — used for local development (no DATABASE settings) and as
the store of the acceptance tests. Thread-safe; the compare-and-append of
append() runs under one lock, so it gives the same no-fork guarantee as the
PostgreSQL store within a single process.
"""

from __future__ import annotations

import threading
from collections import defaultdict
from collections.abc import Iterable
from dataclasses import replace
from datetime import datetime
from uuid import UUID

from fiscal_ledger.domain.models import (
    GENESIS,
    FiscalLogEntry,
    LogCategory,
    OperationalLogRecord,
)
from fiscal_ledger.errors import ChainConflict


class InMemoryLedgerStore:
    """Implements the LedgerStore port with dictionaries."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._entries: dict[UUID, FiscalLogEntry] = {}
        self._chains: dict[str, list[UUID]] = defaultdict(list)

    def tail(self, tenant_id: str) -> FiscalLogEntry | None:
        with self._lock:
            chain = self._chains.get(tenant_id)
            return self._entries[chain[-1]] if chain else None

    def append(self, entry: FiscalLogEntry, expected_previous: str) -> None:
        with self._lock:
            tail = self.tail(entry.tenant_id)
            current = tail.hash if tail is not None else GENESIS
            if current != expected_previous or entry.previous_hash != expected_previous:
                raise ChainConflict(entry.tenant_id, expected_previous)
            if entry.id in self._entries:
                raise ValueError(f"Ledger entry {entry.id} already exists")
            self._entries[entry.id] = entry
            self._chains[entry.tenant_id].append(entry.id)

    def get(self, entry_id: UUID) -> FiscalLogEntry | None:
        with self._lock:
            return self._entries.get(entry_id)

    def range(
        self,
        tenant_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[FiscalLogEntry]:
        with self._lock:
            entries = [self._entries[i] for i in self._chains.get(tenant_id, [])]
        return sorted(
            (
                e
                for e in entries
                if (start is None or e.timestamp >= start) and (end is None or e.timestamp <= end)
            ),
            key=lambda e: e.timestamp,
        )

    def predecessor(self, entry: FiscalLogEntry) -> FiscalLogEntry | None:
        earlier = [e for e in self.range(entry.tenant_id) if e.timestamp < entry.timestamp]
        return earlier[-1] if earlier else None

    def tenants(self) -> list[str]:
        with self._lock:
            return sorted(t for t, chain in self._chains.items() if chain)

    def mark_archived(self, entry_ids: Iterable[UUID], at: datetime) -> int:
        count = 0
        with self._lock:
            for entry_id in entry_ids:
                entry = self._entries.get(entry_id)
                if entry is not None and entry.archived_at is None:
                    self._entries[entry_id] = replace(entry, archived_at=at)
                    count += 1
        return count


class InMemoryOperationalLogStore:
    """Implements the OperationalLogStore port with a dictionary."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: dict[UUID, OperationalLogRecord] = {}

    def add(self, record: OperationalLogRecord) -> None:
        with self._lock:
            self._records[record.id] = record

    def records(
        self,
        category: LogCategory | None = None,
        before: datetime | None = None,
    ) -> list[OperationalLogRecord]:
        with self._lock:
            records = list(self._records.values())
        return sorted(
            (
                r
                for r in records
                if (category is None or r.category == category)
                and (before is None or r.created_at < before)
            ),
            key=lambda r: r.created_at,
        )

    def delete(self, record_ids: Iterable[UUID]) -> int:
        count = 0
        with self._lock:
            for record_id in record_ids:
                if self._records.pop(record_id, None) is not None:
                    count += 1
        return count

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
