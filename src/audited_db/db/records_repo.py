"""User-table row persistence.

Every function here runs on a connection handed in by the caller, usually
inside :meth:`ConnectionPool.transaction`, so the row write, the audit entry
and the cursor advance all land in one transaction.  Nothing in this module
commits.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Mapping, Sequence
from typing import Any

from audited_db.db.filters import compile_order_by, compile_where
from audited_db.errors import InvalidFilter
from audited_db.schema import (
    CREATED_AT,
    CREATED_BY,
    DATA_HASH,
    IS_DELETED,
    TX_ID,
    UPDATED_AT,
    VERSION,
    TableSchema,
    quote_identifier,
)
from audited_db.types import Record


def row_to_record(table: TableSchema, row: Mapping[str, Any]) -> Record:
    """Build a :class:`Record` from a raw ``sqlite3.Row``."""
    return Record(
        tx_id=row[TX_ID],
        fields=table.decode_row(row),
        version=int(row[VERSION]),
        data_hash=row[DATA_HASH],
        created_by=row[CREATED_BY],
        is_deleted=bool(row[IS_DELETED]),
        created_at=row[CREATED_AT],
        updated_at=row[UPDATED_AT],
    )


def fetch_row(
    connection: sqlite3.Connection,
    table: TableSchema,
    tx_id: str,
    *,
    include_deleted: bool = True,
) -> sqlite3.Row | None:
    """Return the raw row for *tx_id*, or ``None`` when absent."""
    sql = f"SELECT * FROM {quote_identifier(table.name)} WHERE {TX_ID} = ?"
    if not include_deleted:
        sql += f" AND {IS_DELETED} = 0"
    return connection.execute(sql, (tx_id,)).fetchone()


def insert_row(
    connection: sqlite3.Connection,
    table: TableSchema,
    *,
    tx_id: str,
    fields: Mapping[str, Any],
    data_hash: str,
    created_by: str | None,
    timestamp: str,
) -> None:
    """Insert a new row at version 1.

    ``fields`` must already be completed and coerced by
    :meth:`TableSchema.complete`.
    """
    columns = [TX_ID, CREATED_AT, UPDATED_AT, VERSION, DATA_HASH, CREATED_BY, IS_DELETED]
    params: list[Any] = [tx_id, timestamp, timestamp, 1, data_hash, created_by, 0]
    for column in table.columns:
        columns.append(quote_identifier(column.name))
        params.append(column.to_db(fields[column.name]))

    placeholders = ", ".join("?" for _ in columns)
    connection.execute(
        f"INSERT INTO {quote_identifier(table.name)} ({', '.join(columns)}) VALUES ({placeholders})",
        params,
    )


def update_row(
    connection: sqlite3.Connection,
    table: TableSchema,
    *,
    tx_id: str,
    patch: Mapping[str, Any],
    data_hash: str,
    version: int,
    timestamp: str,
) -> None:
    """Write a coerced *patch* plus the new hash, version and timestamp."""
    assignments = [f"{UPDATED_AT} = ?", f"{VERSION} = ?", f"{DATA_HASH} = ?"]
    params: list[Any] = [timestamp, version, data_hash]
    for name, value in patch.items():
        column = table.column(name)
        assignments.append(f"{quote_identifier(name)} = ?")
        params.append(column.to_db(value))
    params.append(tx_id)

    connection.execute(
        f"UPDATE {quote_identifier(table.name)} SET {', '.join(assignments)} WHERE {TX_ID} = ?",
        params,
    )


def mark_deleted(connection: sqlite3.Connection, table: TableSchema, *, tx_id: str, timestamp: str) -> None:
    """Set the soft-delete flag; the row stays in place and keeps its hash."""
    connection.execute(
        f"UPDATE {quote_identifier(table.name)} SET {IS_DELETED} = 1, {UPDATED_AT} = ? WHERE {TX_ID} = ?",
        (timestamp, tx_id),
    )


def remove_row(connection: sqlite3.Connection, table: TableSchema, *, tx_id: str) -> None:
    """Physically delete the row.  Its audit entries are untouched."""
    connection.execute(f"DELETE FROM {quote_identifier(table.name)} WHERE {TX_ID} = ?", (tx_id,))


def select_rows(
    connection: sqlite3.Connection,
    table: TableSchema,
    *,
    where: Mapping[str, Any] | None = None,
    order_by: str | Sequence[Any] | None = None,
    limit: int | None = None,
    offset: int | None = None,
    include_deleted: bool = False,
) -> list[sqlite3.Row]:
    """Run a filtered, ordered, paginated SELECT against one table.

    Soft-deleted rows are excluded unless ``include_deleted`` is set.  With no
    explicit ordering, rows come back in insertion order.

    Raises:
        InvalidFilter: On unknown fields, operators or ordering terms, or a
            negative ``limit`` or ``offset``.
    """
    compiled = compile_where(table, where)
    conditions = list(compiled.conditions)
    params: list[Any] = list(compiled.params)
    if not include_deleted:
        conditions.insert(0, f"{IS_DELETED} = 0")

    sql = f"SELECT * FROM {quote_identifier(table.name)}"
    if conditions:
        sql += " WHERE " + " AND ".join(f"({condition})" for condition in conditions)

    ordering = compile_order_by(table, order_by)
    sql += f" ORDER BY {ordering}" if ordering else " ORDER BY rowid"

    if limit is not None or offset is not None:
        if (limit is not None and limit < 0) or (offset is not None and offset < 0):
            raise InvalidFilter("limit and offset must be non-negative", table=table.name)
        # SQLite has no OFFSET without LIMIT; -1 means unbounded.
        sql += " LIMIT ? OFFSET ?"
        params.extend([limit if limit is not None else -1, offset or 0])

    return connection.execute(sql, params).fetchall()
