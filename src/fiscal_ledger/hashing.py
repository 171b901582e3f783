"""
Hashing — deterministic digests of fiscal records and chain verification.

Canonical form (what an auditor must reproduce byte for byte):
  - JSON with object keys sorted recursively, compact separators, UTF-8
  - money as fixed-point strings with two decimals (ROUND_HALF_EVEN)
  - timestamps as UTC ISO-8601 with microseconds: 2024-05-01T10:00:00.000000Z
  - enums as their value, UUIDs as their string form
  - floats are rejected: they cannot be hashed reproducibly

Digest: lowercase hex SHA-256 of the canonical bytes.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import re
from collections.abc import Callable, Iterable, Mapping
from datetime import UTC, date, datetime
from decimal import ROUND_HALF_EVEN, Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from fiscal_ledger.domain.models import (
    GENESIS,
    ChainVerification,
    DocumentType,
    FiscalLogEntry,
)
from fiscal_ledger.errors import IntegrityViolation, ViolationKind

CENT = Decimal("0.01")
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"
_DIGEST_PATTERN = re.compile(r"^[0-9a-f]{64}$")


# ─────────────────────── Normalization ───────────────────────


def format_timestamp(value: datetime) -> str:
    if value.tzinfo is None or value.utcoffset() is None:
        raise ValueError(f"Naive datetime cannot be hashed: {value.isoformat()}")
    return value.astimezone(UTC).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> datetime:
    return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=UTC)


def quantize_amount(value: Decimal) -> Decimal:
    if not value.is_finite():
        raise ValueError(f"Amount must be finite, got {value}")
    return value.quantize(CENT, rounding=ROUND_HALF_EVEN)


def format_amount(value: Decimal) -> str:
    return str(quantize_amount(value))


def _normalize(value: Any) -> Any:
    if value is None or isinstance(value, (bool, int, str)) and not isinstance(value, Enum):
        return value
    if isinstance(value, Enum):
        return _normalize(value.value)
    if isinstance(value, float):
        raise TypeError("Floats are not allowed in fiscal records; use Decimal")
    if isinstance(value, Decimal):
        return format_amount(value)
    if isinstance(value, datetime):
        return format_timestamp(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, Mapping):
        items = {_normalize_key(k): v for k, v in value.items()}
        return {k: _normalize(items[k]) for k in sorted(items)}
    if isinstance(value, (list, tuple)):
        return [_normalize(item) for item in value]
    raise TypeError(f"Cannot canonicalize type: {type(value).__name__}")


def _normalize_key(key: Any) -> str:
    if isinstance(key, Enum):
        key = key.value
    if not isinstance(key, str):
        raise TypeError(f"Record keys must be strings, got {type(key).__name__}")
    return key


def canonicalize(record: Mapping[str, Any]) -> bytes:
    """Canonical JSON bytes of a record. Same logical record, same bytes."""
    return json.dumps(
        _normalize(record), separators=(",", ":"), ensure_ascii=False
    ).encode("utf-8")


# ─────────────────────── Digests ───────────────────────


def hash_record(record: Mapping[str, Any]) -> str:
    return hashlib.sha256(canonicalize(record)).hexdigest()


def verify(record: Mapping[str, Any], expected_digest: str) -> bool:
    """
    Recompute the digest of `record` and compare it in constant time.

    A stored digest that is not a SHA-256 hex string at all is not a
    mismatch to be shrugged off: it raises IntegrityViolation.
    """
    if not isinstance(expected_digest, str) or not _DIGEST_PATTERN.match(expected_digest):
        raise IntegrityViolation(
            f"Stored digest is malformed: {str(expected_digest)[:16]!r}",
            kind=ViolationKind.HASH_MISMATCH,
        )
    return hmac.compare_digest(hash_record(record), expected_digest)


def entry_fields(entry: FiscalLogEntry) -> dict[str, Any]:
    """The fields covered by an entry's hash."""
    return {
        "tenant_id": entry.tenant_id,
        "document_type": entry.document_type,
        "document_number": entry.document_number,
        "series": entry.series,
        "taxable_amount": entry.taxable_amount,
        "tax_amount": entry.tax_amount,
        "total": entry.total,
        "timestamp": entry.timestamp,
        "previous_hash": entry.previous_hash,
    }


def hash_entry(entry: FiscalLogEntry) -> str:
    return hash_record(entry_fields(entry))


def verify_entry(entry: FiscalLogEntry) -> bool:
    try:
        return verify(entry_fields(entry), entry.hash)
    except IntegrityViolation:
        return False


# ─────────────────────── Chain verification ───────────────────────


def verify_chain(
    entries: Iterable[FiscalLogEntry],
    verify_signature: Callable[[FiscalLogEntry], bool] | None = None,
    expected_first_previous: str = GENESIS,
) -> ChainVerification:
    """
    Verify a tenant chain and report the first entry where trust breaks.

    Entries are sorted by timestamp. For every entry, in this order:
      1. its hash must recompute from its fields
      2. its previous_hash must equal the prior entry's hash
         (`expected_first_previous` for the first one, GENESIS by default)
      3. its HMAC signature must verify, when `verify_signature` is given

    `expected_first_previous` lets a range that starts mid-chain be checked
    against the real predecessor instead of the sentinel.
    """
    ordered = sorted(entries, key=lambda e: e.timestamp)

    for index, entry in enumerate(ordered):
        if not verify_entry(entry):
            return _broken(
                ordered, index, ViolationKind.HASH_MISMATCH,
                "Stored hash does not match the entry fields",
            )

        expected = expected_first_previous if index == 0 else ordered[index - 1].hash
        if entry.previous_hash != expected:
            kind = (
                ViolationKind.GENESIS_MISMATCH
                if index == 0 and expected == GENESIS
                else ViolationKind.LINK_MISMATCH
            )
            return _broken(
                ordered, index, kind,
                f"previous_hash {entry.previous_hash[:16]} does not link to {expected[:16]}",
            )

        if verify_signature is not None and not verify_signature(entry):
            return _broken(
                ordered, index, ViolationKind.SIGNATURE_MISMATCH,
                "Integrity signature does not verify",
            )

    return ChainVerification(valid=True, total_entries=len(ordered))


def _broken(
    ordered: list[FiscalLogEntry],
    index: int,
    kind: ViolationKind,
    reason: str,
) -> ChainVerification:
    entry = ordered[index]
    return ChainVerification(
        valid=False,
        total_entries=len(ordered),
        broken_at_index=index,
        entry_id=entry.id,
        kind=kind,
        message=f"Chain broken at index {index} (entry {entry.id}): {reason}",
    )


# ─────────────────────── JSON form ───────────────────────


def entry_to_json_dict(entry: FiscalLogEntry) -> dict[str, Any]:
    """Full JSON form of an entry, as written to audit exports."""
    data = _normalize(entry_fields(entry))
    data.update(
        {
            "id": str(entry.id),
            "hash": entry.hash,
            "signature": entry.signature,
            "archived_at": format_timestamp(entry.archived_at) if entry.archived_at else None,
        }
    )
    return data


def entry_from_json_dict(data: Mapping[str, Any]) -> FiscalLogEntry:
    archived_at = data.get("archived_at")
    return FiscalLogEntry(
        id=UUID(data["id"]),
        tenant_id=data["tenant_id"],
        document_type=DocumentType(data["document_type"]),
        document_number=data["document_number"],
        series=data["series"],
        taxable_amount=Decimal(data["taxable_amount"]),
        tax_amount=Decimal(data["tax_amount"]),
        total=Decimal(data["total"]),
        timestamp=parse_timestamp(data["timestamp"]),
        previous_hash=data["previous_hash"],
        hash=data["hash"],
        signature=data["signature"],
        archived_at=parse_timestamp(archived_at) if archived_at else None,
    )
