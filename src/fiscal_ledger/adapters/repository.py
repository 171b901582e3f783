"""
PostgreSQL adapters — fiscal chains and operational logs.

Adapter layer — implements the LedgerStore and OperationalLogStore ports
using psycopg (v3) for sync PostgreSQL access with parameterized queries.

Compare-and-append, in one transaction:
  1. BEGIN
  2. pg_advisory_xact_lock(tenant)     → serializes writers of one tenant
                                         across processes, other tenants
                                         are not blocked
  3. SELECT the tenant tail hash       → must equal expected_previous,
                                         otherwise ChainConflict
  4. INSERT the entry
  5. COMMIT (or automatic ROLLBACK on failure → no partial entry visible)

UNIQUE (tenant_id, previous_hash) makes a fork impossible even for a
writer that bypasses this adapter.

The ledger table has no UPDATE path except archived_at and no DELETE at all.
No ORM — raw parameterized SQL for maximum control and transparency.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from typing import Any
from uuid import UUID

import psycopg
import structlog
from psycopg import errors as pg_errors
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from fiscal_ledger.domain.models import (
    GENESIS,
    DocumentType,
    FiscalLogEntry,
    LogCategory,
    OperationalLogRecord,
)
from fiscal_ledger.errors import ChainConflict

log = structlog.get_logger()

SCHEMA = """
CREATE TABLE IF NOT EXISTS fiscal_log_entries (
    id               UUID PRIMARY KEY,
    tenant_id        TEXT NOT NULL,
    document_type    TEXT NOT NULL,
    document_number  TEXT NOT NULL,
    series           TEXT NOT NULL,
    taxable_amount   NUMERIC(18, 2) NOT NULL,
    tax_amount       NUMERIC(18, 2) NOT NULL,
    total            NUMERIC(18, 2) NOT NULL,
    timestamp        TIMESTAMP WITH TIME ZONE NOT NULL,
    previous_hash    TEXT NOT NULL,
    hash             TEXT NOT NULL,
    signature        TEXT NOT NULL,
    archived_at      TIMESTAMP WITH TIME ZONE,
    CONSTRAINT fiscal_log_entries_no_fork UNIQUE (tenant_id, previous_hash)
);

CREATE INDEX IF NOT EXISTS fiscal_log_entries_tenant_timestamp
    ON fiscal_log_entries (tenant_id, timestamp);

CREATE TABLE IF NOT EXISTS operational_logs (
    id          UUID PRIMARY KEY,
    category    TEXT NOT NULL,
    tenant_id   TEXT,
    message     TEXT NOT NULL,
    details     JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at  TIMESTAMP WITH TIME ZONE NOT NULL
);

CREATE INDEX IF NOT EXISTS operational_logs_created_at
    ON operational_logs (created_at);
"""

_ENTRY_COLUMNS = """
    id, tenant_id, document_type, document_number, series,
    taxable_amount, tax_amount, total, timestamp,
    previous_hash, hash, signature, archived_at
"""

_INSERT_ENTRY = f"""
INSERT INTO fiscal_log_entries ({_ENTRY_COLUMNS})
VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
"""

_SELECT_TAIL = f"""
SELECT {_ENTRY_COLUMNS} FROM fiscal_log_entries
WHERE tenant_id = %s
ORDER BY timestamp DESC
LIMIT 1
"""

_SELECT_BY_ID = f"SELECT {_ENTRY_COLUMNS} FROM fiscal_log_entries WHERE id = %s"

_SELECT_PREDECESSOR = f"""
SELECT {_ENTRY_COLUMNS} FROM fiscal_log_entries
WHERE tenant_id = %s AND timestamp < %s
ORDER BY timestamp DESC
LIMIT 1
"""

_INSERT_LOG = """
INSERT INTO operational_logs (id, category, tenant_id, message, details, created_at)
VALUES (%s, %s, %s, %s, %s, %s)
"""


def _row_to_entry(row: dict[str, Any]) -> FiscalLogEntry:
    return FiscalLogEntry(
        id=row["id"],
        tenant_id=row["tenant_id"],
        document_type=DocumentType(row["document_type"]),
        document_number=row["document_number"],
        series=row["series"],
        taxable_amount=row["taxable_amount"],
        tax_amount=row["tax_amount"],
        total=row["total"],
        timestamp=row["timestamp"],
        previous_hash=row["previous_hash"],
        hash=row["hash"],
        signature=row["signature"],
        archived_at=row["archived_at"],
    )


class PostgresLedgerStore:
    """
    Persist fiscal chains to PostgreSQL.

    Implements the LedgerStore port. Exceptions propagate to the ledger,
    which is where the append is retried or surfaced.
    """

    def __init__(self, dsn: str) -> None:
        self._dsn = dsn

    def ensure_schema(self) -> None:
        """Create the tables when they do not exist yet."""
        with psycopg.connect(self._dsn) as conn, conn.transaction():
            conn.execute(SCHEMA)
        log.info("repository.schema_ready")

    def tail(self, tenant_id: str) -> FiscalLogEntry | None:
        return self._fetch_one(_SELECT_TAIL, (tenant_id,))

    def append(self, entry: FiscalLogEntry, expected_previous: str) -> None:
        with psycopg.connect(self._dsn) as conn, conn.transaction(), conn.cursor() as cur:
            cur.execute(
                "SELECT pg_advisory_xact_lock(hashtextextended(%s, 0))",
                (entry.tenant_id,),
            )
            cur.execute(
                "SELECT hash FROM fiscal_log_entries WHERE tenant_id = %s "
                "ORDER BY timestamp DESC LIMIT 1",
                (entry.tenant_id,),
            )
            row = cur.fetchone()
            current = row[0] if row is not None else GENESIS
            if current != expected_previous or entry.previous_hash != expected_previous:
                raise ChainConflict(entry.tenant_id, expected_previous)
            try:
                cur.execute(
                    _INSERT_ENTRY,
                    (
                        entry.id,
                        entry.tenant_id,
                        entry.document_type.value,
                        entry.document_number,
                        entry.series,
                        entry.taxable_amount,
                        entry.tax_amount,
                        entry.total,
                        entry.timestamp,
                        entry.previous_hash,
                        entry.hash,
                        entry.signature,
                        entry.archived_at,
                    ),
                )
            except pg_errors.UniqueViolation as e:
                raise ChainConflict(entry.tenant_id, expected_previous) from e
        log.debug("repository.entry_stored", tenant_id=entry.tenant_id, entry_id=str(entry.id))

    def get(self, entry_id: UUID) -> FiscalLogEntry | None:
        return self._fetch_one(_SELECT_BY_ID, (entry_id,))

    def range(
        self,
        tenant_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[FiscalLogEntry]:
        query = f"SELECT {_ENTRY_COLUMNS} FROM fiscal_log_entries WHERE tenant_id = %s"
        params: list[Any] = [tenant_id]
        if start is not None:
            query += " AND timestamp >= %s"
            params.append(start)
        if end is not None:
            query += " AND timestamp <= %s"
            params.append(end)
        query += " ORDER BY timestamp ASC"
        with psycopg.connect(self._dsn) as conn, conn.cursor(row_factory=dict_row) as cur:
            cur.execute(query, params)
            return [_row_to_entry(row) for row in cur.fetchall()]

    def predecessor(self, entry: FiscalLogEntry) -> FiscalLogEntry | None:
        return self._fetch_one(_SELECT_PREDECESSOR, (entry.tenant_id, entry.timestamp))

    def tenants(self) -> list[str]:
        with psycopg.connect(self._dsn) as conn, conn.cursor() as cur:
            cur.execute("SELECT DISTINCT tenant_id FROM fiscal_log_entries ORDER BY tenant_id")
            return [row[0] for row in cur.fetchall()]

    def mark_archived(self, entry_ids: Iterable[UUID], at: datetime) -> int:
        ids = list(entry_ids)
        if not ids:
            return 0
        with psycopg.connect(self._dsn) as conn, conn.transaction(), conn.cursor() as cur:
            cur.execute(
                "UPDATE fiscal_log_entries SET archived_at = %s "
                "WHERE id = ANY(%s) AND archived_at IS NULL",
                (at, ids),
            )
            count = cur.rowcount
        log.info("repository.entries_archived", entries=count)
        return count

    def _fetch_one(self, query: str, params: tuple[Any, ...]) -> FiscalLogEntry | None:
        with psycopg.connect(self._dsn) as conn, conn.cursor(row_factory=dict_row) as cur:
            cur.execute(query, params)
            row = cur.fetchone()
            return _row_to_entry(row) if row is not None else None


class PostgresOperationalLogStore:
    """Implements the OperationalLogStore port on the operational_logs table."""

    def __init__(self, dsn: str) -> None:
        self._dsn = dsn

    def add(self, record: OperationalLogRecord) -> None:
        with psycopg.connect(self._dsn) as conn, conn.transaction():
            conn.execute(
                _INSERT_LOG,
                (
                    record.id,
                    record.category.value,
                    record.tenant_id,
                    record.message,
                    Jsonb(record.details),
                    record.created_at,
                ),
            )

    def records(
        self,
        category: LogCategory | None = None,
        before: datetime | None = None,
    ) -> list[OperationalLogRecord]:
        query = (
            "SELECT id, category, tenant_id, message, details, created_at "
            "FROM operational_logs WHERE TRUE"
        )
        params: list[Any] = []
        if category is not None:
            query += " AND category = %s"
            params.append(category.value)
        if before is not None:
            query += " AND created_at < %s"
            params.append(before)
        query += " ORDER BY created_at ASC"
        with psycopg.connect(self._dsn) as conn, conn.cursor(row_factory=dict_row) as cur:
            cur.execute(query, params)
            return [
                OperationalLogRecord(
                    id=row["id"],
                    category=LogCategory(row["category"]),
                    tenant_id=row["tenant_id"],
                    message=row["message"],
                    details=row["details"] or {},
                    created_at=row["created_at"],
                )
                for row in cur.fetchall()
            ]

    def delete(self, record_ids: Iterable[UUID]) -> int:
        ids = list(record_ids)
        if not ids:
            return 0
        with psycopg.connect(self._dsn) as conn, conn.transaction(), conn.cursor() as cur:
            cur.execute(
                "DELETE FROM operational_logs WHERE id = ANY(%s) AND category <> %s",
                (ids, LogCategory.FISCAL.value),
            )
            count = cur.rowcount
        log.info("repository.logs_deleted", records=count)
        return count
