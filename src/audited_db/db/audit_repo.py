"""Append-only audit trail persistence.

One entry per accepted mutation, written in the same transaction as the row
change.  Entries are never updated or deleted (triggers on the table refuse
both).  Reads come back in commit order, ``id`` ascending, unless the caller
asks for newest first.
"""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Mapping
from typing import Any

from audited_db.db.bootstrap import AUDIT_TABLE
from audited_db.types import AuditEntry


def append_entry(
    connection: sqlite3.Connection,
    *,
    tx_id: str,
    table: str,
    operation: str,
    data_hash: str,
    previous_hash: str | None,
    ledger_timestamp: int,
    ledger_sequence: int | None,
    channel_id: str | None,
    metadata: Mapping[str, Any],
    actor_id: str | None,
    origin_address: str | None,
    recorded_at: str,
) -> int:
    """Insert one audit entry and return its id.

    Raises:
        sqlite3.IntegrityError: If ``(channel_id, ledger_sequence)`` is
            already recorded.
    """
    cursor = connection.execute(
        f"""
        INSERT INTO {AUDIT_TABLE} (
            tx_id,
            table_name,
            operation,
            data_hash,
            previous_hash,
            ledger_timestamp,
            ledger_sequence,
            channel_id,
            metadata,
            actor_id,
            origin_address,
            recorded_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            tx_id,
            table,
            operation,
            data_hash,
            previous_hash,
            ledger_timestamp,
            ledger_sequence,
            channel_id,
            json.dumps(dict(metadata), sort_keys=True, default=str),
            actor_id,
            origin_address,
            recorded_at,
        ),
    )
    entry_id = cursor.lastrowid
    if entry_id is None:
        raise ValueError("Failed to append audit entry.")
    return int(entry_id)


def get_trail(
    connection: sqlite3.Connection,
    *,
    table: str | None = None,
    tx_id: str | None = None,
    operation: str | None = None,
    descending: bool = False,
    limit: int | None = None,
) -> list[AuditEntry]:
    """Return audit entries, optionally narrowed to a table, row or operation."""
    conditions: list[str] = []
    params: list[Any] = []
    if table is not None:
        conditions.append("table_name = ?")
        params.append(table)
    if tx_id is not None:
        conditions.append("tx_id = ?")
        params.append(tx_id)
    if operation is not None:
        conditions.append("operation = ?")
        params.append(operation)

    sql = f"SELECT * FROM {AUDIT_TABLE}"
    if conditions:
        sql += " WHERE " + " AND ".join(conditions)
    sql += " ORDER BY id DESC" if descending else " ORDER BY id ASC"
    if limit is not None:
        sql += " LIMIT ?"
        params.append(int(limit))

    return [_row_to_entry(row) for row in connection.execute(sql, params).fetchall()]


def count_entries(connection: sqlite3.Connection, *, table: str, tx_id: str) -> int:
    """Return the number of audit entries recorded for one row."""
    row = connection.execute(
        f"SELECT COUNT(*) FROM {AUDIT_TABLE} WHERE table_name = ? AND tx_id = ?",
        (table, tx_id),
    ).fetchone()
    return int(row[0]) if row else 0


def latest_entry(connection: sqlite3.Connection, *, table: str, tx_id: str) -> AuditEntry | None:
    """Return the most recent audit entry for one row, if any."""
    trail = get_trail(connection, table=table, tx_id=tx_id, descending=True, limit=1)
    return trail[0] if trail else None


def has_sequence(connection: sqlite3.Connection, *, channel_id: str, sequence: int) -> bool:
    """Return ``True`` when an entry for this channel sequence already exists."""
    row = connection.execute(
        f"SELECT 1 FROM {AUDIT_TABLE} WHERE channel_id = ? AND ledger_sequence = ? LIMIT 1",
        (channel_id, sequence),
    ).fetchone()
    return row is not None


def _row_to_entry(row: sqlite3.Row) -> AuditEntry:
    return AuditEntry(
        id=int(row["id"]),
        tx_id=row["tx_id"],
        table=row["table_name"],
        operation=row["operation"],
        data_hash=row["data_hash"],
        previous_hash=row["previous_hash"],
        ledger_timestamp=int(row["ledger_timestamp"]),
        ledger_sequence=row["ledger_sequence"],
        channel_id=row["channel_id"],
        metadata=json.loads(row["metadata"] or "{}"),
        actor_id=row["actor_id"],
        origin_address=row["origin_address"],
        recorded_at=row["recorded_at"],
    )
