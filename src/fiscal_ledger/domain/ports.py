"""
Ports — Protocol-based interfaces for infrastructure adapters.

These define WHAT the fiscal core needs (contracts) without specifying
HOW it's done (implementation). Following hexagonal architecture:

  Domain ← Ports (protocols) ← Adapters (implementations)

Each port is a Protocol (structural typing) so adapters satisfy
the contract simply by implementing the methods — no inheritance.

External collaborators:
  LedgerStore          → append-capable document store holding the chains
  OperationalLogStore  → non-fiscal logs subject to retention
  CertificateStore     → OS-managed credential store (export-use-discard)
  AuthorityTransport   → HTTP channel to a fiscal authority endpoint
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from datetime import datetime
from typing import Protocol, TypeVar, runtime_checkable
from uuid import UUID

from cryptography import x509
from cryptography.hazmat.primitives.asymmetric.types import PrivateKeyTypes
from railway.result import Result

from fiscal_ledger.domain.models import (
    CertificateRecord,
    FiscalLogEntry,
    LogCategory,
    OperationalLogRecord,
)

T = TypeVar("T")

KeyOperation = Callable[[PrivateKeyTypes, x509.Certificate], T]


@runtime_checkable
class LedgerStore(Protocol):
    """
    Port: append-only persistence for fiscal chains.

    There is deliberately no update or delete: the only mutation after
    append is setting the archival flag.

    `append` is a compare-and-append: it must raise ChainConflict when the
    tenant's current tail hash is not `expected_previous` (GENESIS for an
    empty chain), so two writers can never both extend the same tail.
    """

    def tail(self, tenant_id: str) -> FiscalLogEntry | None: ...

    def append(self, entry: FiscalLogEntry, expected_previous: str) -> None: ...

    def get(self, entry_id: UUID) -> FiscalLogEntry | None: ...

    def range(
        self,
        tenant_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[FiscalLogEntry]:
        """Entries of one tenant in timestamp order, `start` and `end` inclusive."""
        ...

    def predecessor(self, entry: FiscalLogEntry) -> FiscalLogEntry | None:
        """The entry immediately before `entry` in its tenant chain."""
        ...

    def tenants(self) -> list[str]: ...

    def mark_archived(self, entry_ids: Iterable[UUID], at: datetime) -> int: ...


@runtime_checkable
class OperationalLogStore(Protocol):
    """Port: non-fiscal logs. Hard deletion is allowed here and only here."""

    def add(self, record: OperationalLogRecord) -> None: ...

    def records(
        self,
        category: LogCategory | None = None,
        before: datetime | None = None,
    ) -> list[OperationalLogRecord]:
        """Records oldest first, optionally of one category and created before `before`."""
        ...

    def delete(self, record_ids: Iterable[UUID]) -> int: ...


@runtime_checkable
class CertificateStore(Protocol):
    """
    Port: the OS-managed certificate store.

    `export_and_use` is the export-use-discard contract: the private key
    exists in memory only while `operation` runs, the temporary container
    and its passphrase are fresh for every call and never reused.

    When the store does not exist on this host, `is_available()` is False,
    `list()` returns nothing and `export_and_use` raises SigningUnavailable.
    """

    def is_available(self) -> bool: ...

    def list(self, store_name: str | None = None) -> list[CertificateRecord]: ...

    def export_and_use(self, thumbprint: str, operation: KeyOperation[T]) -> T: ...


@runtime_checkable
class AuthorityTransport(Protocol):
    """
    Port: send a signed XML document to a fiscal authority.

    Returns Result[str] with the raw response body on any response the
    authority parsed (accepted or rejected at the business level).
    """

    def post_xml(self, url: str, body: str, headers: dict[str, str] | None = None) -> Result[str]: ...

    def ping(self, url: str) -> Result[int]: ...
