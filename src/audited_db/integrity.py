"""Integrity verification: recompute a row's canonical hash and compare.

A mismatch means the stored domain fields no longer hash to the value that
was recorded when the row was last written through this package, i.e. the
row was edited behind its back.  Mismatches are reported, never raised.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from enum import Enum

from audited_db.db import audit_repo, records_repo
from audited_db.hashing import compute_hash
from audited_db.schema import DATA_HASH, TX_ID, TableSchema, quote_identifier
from audited_db.types import AuditEntry

logger = logging.getLogger(__name__)


class IntegrityStatus(str, Enum):
    NOT_FOUND = "not_found"
    MISMATCH = "mismatch"
    VERIFIED = "verified"


@dataclass(frozen=True)
class IntegrityResult:
    """Outcome of verifying one row.

    Attributes:
        status: ``not_found``, ``mismatch`` or ``verified``.
        table: Table that was checked.
        tx_id: Row that was checked.
        stored_hash: ``_data_hash`` as stored (``None`` when not found).
        calculated_hash: Hash recomputed from the stored domain fields.
        audit_count: Number of audit entries for the row.  Populated even
            for hard-deleted rows.
        last_audit: Most recent audit entry, if any.
    """

    status: IntegrityStatus
    table: str
    tx_id: str
    stored_hash: str | None = None
    calculated_hash: str | None = None
    audit_count: int = 0
    last_audit: AuditEntry | None = None

    @property
    def match(self) -> bool:
        return self.status is IntegrityStatus.VERIFIED


def verify_record(connection: sqlite3.Connection, table: TableSchema, tx_id: str) -> IntegrityResult:
    """Verify one row, soft-deleted rows included."""
    audit_count = audit_repo.count_entries(connection, table=table.name, tx_id=tx_id)
    last_audit = audit_repo.latest_entry(connection, table=table.name, tx_id=tx_id)

    row = records_repo.fetch_row(connection, table, tx_id)
    if row is None:
        return IntegrityResult(
            status=IntegrityStatus.NOT_FOUND,
            table=table.name,
            tx_id=tx_id,
            audit_count=audit_count,
            last_audit=last_audit,
        )

    stored_hash = row[DATA_HASH]
    calculated_hash = compute_hash(table.decode_row(row))
    status = IntegrityStatus.VERIFIED if stored_hash == calculated_hash else IntegrityStatus.MISMATCH
    if status is IntegrityStatus.MISMATCH:
        logger.warning(
            "Integrity mismatch for %s/%s: stored %s, calculated %s",
            table.name,
            tx_id,
            stored_hash,
            calculated_hash,
        )
    return IntegrityResult(
        status=status,
        table=table.name,
        tx_id=tx_id,
        stored_hash=stored_hash,
        calculated_hash=calculated_hash,
        audit_count=audit_count,
        last_audit=last_audit,
    )


def verify_table(connection: sqlite3.Connection, table: TableSchema) -> list[IntegrityResult]:
    """Verify every row of *table* and return only the mismatches."""
    tx_ids = [
        row[0]
        for row in connection.execute(
            f"SELECT {TX_ID} FROM {quote_identifier(table.name)} ORDER BY rowid"
        ).fetchall()
    ]
    results = [verify_record(connection, table, tx_id) for tx_id in tx_ids]
    return [result for result in results if result.status is IntegrityStatus.MISMATCH]
