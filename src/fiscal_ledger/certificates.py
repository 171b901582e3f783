"""
Certificate registry — which store certificates may sign for which regime.

The OS store is the source of truth for which certificates exist; the
registry only adds the administrator's usage declarations on top of it.
A certificate is selectable for a regime when:
  - it is currently present in the store with a private key
  - it has been registered for that regime's usage (or ALL)
  - it is inside its validity window

Selection never guesses: if more than one certificate qualifies and the
tenant has not pinned one, or the pinned one does not qualify, selection
fails instead of silently picking another certificate.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable, Mapping
from dataclasses import replace
from datetime import UTC, datetime

import structlog

from fiscal_ledger.domain.models import CertificateRecord, CertificateUsage
from fiscal_ledger.domain.ports import CertificateStore
from fiscal_ledger.errors import CertificateSelectionError, SigningUnavailable

log = structlog.get_logger()


def _normalize(thumbprint: str) -> str:
    return thumbprint.replace(" ", "").replace(":", "").upper()


class CertificateRegistry:
    """Usage registrations over the certificates of a CertificateStore."""

    def __init__(
        self,
        store: CertificateStore,
        registrations: Mapping[str, Iterable[CertificateUsage]] | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._store = store
        self._clock = clock
        self._lock = threading.Lock()
        self._usages: dict[str, frozenset[CertificateUsage]] = {
            _normalize(thumbprint): frozenset(usages)
            for thumbprint, usages in (registrations or {}).items()
        }

    @property
    def store(self) -> CertificateStore:
        return self._store

    def discover(self) -> list[CertificateRecord]:
        """Store listing annotated with the registered usages."""
        with self._lock:
            usages = dict(self._usages)
        return [
            replace(record, usages=usages.get(record.thumbprint, frozenset()))
            for record in self._store.list()
        ]

    def register(
        self,
        thumbprint: str,
        usages: Iterable[CertificateUsage],
    ) -> CertificateRecord:
        """
        Declare what a certificate may sign for.

        The certificate must currently be in the store: the registry never
        invents certificates of its own.
        """
        declared = frozenset(usages)
        if not declared:
            raise ValueError("At least one usage must be declared")

        normalized = _normalize(thumbprint)
        record = next((r for r in self._store.list() if r.thumbprint == normalized), None)
        if record is None:
            raise CertificateSelectionError(
                f"Certificate {normalized[:8]} is not present in the store"
            )

        with self._lock:
            self._usages[normalized] = declared

        log.info(
            "certificate.registered",
            thumbprint=normalized[:8],
            usages=sorted(u.value for u in declared),
            holder_tax_id=record.holder.tax_id,
        )
        return replace(record, usages=declared)

    def select(
        self,
        usage: CertificateUsage,
        pinned: str | None = None,
        at: datetime | None = None,
    ) -> CertificateRecord:
        """
        The one certificate to sign with for `usage`.

        Raises:
            SigningUnavailable: the store is not available on this host.
            CertificateSelectionError: nothing qualifies, the pin does not
                qualify, or several qualify and none is pinned.
        """
        if not self._store.is_available():
            raise SigningUnavailable("Certificate store is not available on this host")

        moment = at or self._clock()
        candidates = self.discover()

        if pinned is not None:
            return self._check_pinned(candidates, _normalize(pinned), usage, moment)

        usable = [c for c in candidates if c.allows(usage) and c.is_valid_at(moment)]
        if not usable:
            raise CertificateSelectionError(
                f"No valid certificate registered for {usage.value}"
            )
        if len(usable) > 1:
            raise CertificateSelectionError(
                f"{len(usable)} certificates qualify for {usage.value}; "
                f"pin one explicitly ({', '.join(c.short_thumbprint for c in usable)})"
            )
        return usable[0]

    def _check_pinned(
        self,
        candidates: list[CertificateRecord],
        pinned: str,
        usage: CertificateUsage,
        moment: datetime,
    ) -> CertificateRecord:
        record = next((c for c in candidates if c.thumbprint == pinned), None)
        if record is None:
            raise CertificateSelectionError(f"Pinned certificate {pinned[:8]} is not in the store")
        if not record.allows(usage):
            raise CertificateSelectionError(
                f"Pinned certificate {pinned[:8]} is not registered for {usage.value}"
            )
        if not record.is_valid_at(moment):
            raise CertificateSelectionError(
                f"Pinned certificate {pinned[:8]} is outside its validity window "
                f"({record.not_before.date()} to {record.not_after.date()})"
            )
        return record

    def expiring_within(self, days: int, at: datetime | None = None) -> list[CertificateRecord]:
        """Registered certificates whose validity ends in the next `days` days."""
        moment = at or self._clock()
        expiring = [
            record
            for record in self.discover()
            if record.usages and record.expires_within(moment, days)
        ]
        return sorted(expiring, key=lambda r: r.not_after)
