"""Schema creation for system tables and user tables.

Kept apart from the repositories so DDL changes are reviewable without wading
through query code.  Every identifier interpolated into DDL here comes from a
validated :class:`~audited_db.schema.DatabaseSchema` and is quoted.
"""

from __future__ import annotations

import json
import sqlite3

from audited_db.schema import (
    CREATED_AT,
    CREATED_BY,
    DATA_HASH,
    IS_DELETED,
    TX_ID,
    UPDATED_AT,
    VERSION,
    DatabaseSchema,
    TableSchema,
    quote_identifier,
)

AUDIT_TABLE = "_audit_log"
SCHEMA_VERSIONS_TABLE = "_schema_versions"
SYNC_CURSOR_TABLE = "_sync_cursor"

SYSTEM_TABLE_STATEMENTS = (
    f"""
    CREATE TABLE IF NOT EXISTS {AUDIT_TABLE} (
        id INTEGER PRIMARY KEY AUTOINCREMENT,  -- commit order
        tx_id TEXT NOT NULL,
        table_name TEXT NOT NULL,
        operation TEXT NOT NULL,
        data_hash TEXT NOT NULL,
        previous_hash TEXT,
        ledger_timestamp INTEGER NOT NULL,
        ledger_sequence INTEGER,
        channel_id TEXT,
        metadata TEXT NOT NULL DEFAULT '{{}}',
        actor_id TEXT,
        origin_address TEXT,
        recorded_at TEXT NOT NULL
    )
    """,
    f"CREATE INDEX IF NOT EXISTS idx_audit_table_tx ON {AUDIT_TABLE}(table_name, tx_id)",
    f"CREATE INDEX IF NOT EXISTS idx_audit_recorded ON {AUDIT_TABLE}(recorded_at DESC, id DESC)",
    f"CREATE INDEX IF NOT EXISTS idx_audit_operation ON {AUDIT_TABLE}(operation, table_name)",
    (
        f"CREATE UNIQUE INDEX IF NOT EXISTS idx_audit_channel_sequence "
        f"ON {AUDIT_TABLE}(channel_id, ledger_sequence) WHERE ledger_sequence IS NOT NULL"
    ),
    # Entries are append-only: the store itself refuses rewrites.
    f"""
    CREATE TRIGGER IF NOT EXISTS trg_audit_no_update
    BEFORE UPDATE ON {AUDIT_TABLE}
    BEGIN
        SELECT RAISE(ABORT, 'audit entries are append-only');
    END
    """,
    f"""
    CREATE TRIGGER IF NOT EXISTS trg_audit_no_delete
    BEFORE DELETE ON {AUDIT_TABLE}
    BEGIN
        SELECT RAISE(ABORT, 'audit entries are append-only');
    END
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {SCHEMA_VERSIONS_TABLE} (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        db_name TEXT NOT NULL,
        version TEXT NOT NULL,
        schema TEXT NOT NULL,
        channel_id TEXT,
        ledger_sequence INTEGER,
        applied_at TEXT NOT NULL
    )
    """,
    (
        f"CREATE UNIQUE INDEX IF NOT EXISTS idx_schema_versions_sequence "
        f"ON {SCHEMA_VERSIONS_TABLE}(channel_id, ledger_sequence) WHERE ledger_sequence IS NOT NULL"
    ),
    f"""
    CREATE TABLE IF NOT EXISTS {SYNC_CURSOR_TABLE} (
        channel_id TEXT PRIMARY KEY,
        last_sequence INTEGER NOT NULL DEFAULT 0,
        updated_at TEXT NOT NULL
    )
    """,
)


def create_table_statements(table: TableSchema) -> list[str]:
    """Return the DDL for one user table and its timestamp indexes."""
    name = quote_identifier(table.name)
    column_defs = []
    for column in table.columns:
        parts = [quote_identifier(column.name), column.sql_type]
        if not column.nullable:
            parts.append("NOT NULL")
        if column.unique:
            parts.append("UNIQUE")
        column_defs.append(" ".join(parts))

    create = (
        f"CREATE TABLE IF NOT EXISTS {name} (\n"
        f"    {TX_ID} TEXT PRIMARY KEY,\n"
        f"    {CREATED_AT} TEXT NOT NULL,\n"
        f"    {UPDATED_AT} TEXT NOT NULL,\n"
        f"    {VERSION} INTEGER NOT NULL DEFAULT 1,\n"
        f"    {DATA_HASH} TEXT NOT NULL,\n"
        f"    {CREATED_BY} TEXT,\n"
        f"    {IS_DELETED} INTEGER NOT NULL DEFAULT 0,\n"
        f"    " + ",\n    ".join(column_defs) + "\n)"
    )
    index_created = quote_identifier(f"idx_{table.name}_created")
    index_updated = quote_identifier(f"idx_{table.name}_updated")
    return [
        create,
        f"CREATE INDEX IF NOT EXISTS {index_created} ON {name}({CREATED_AT} DESC)",
        f"CREATE INDEX IF NOT EXISTS {index_updated} ON {name}({UPDATED_AT} DESC)",
    ]


def create_infrastructure(connection: sqlite3.Connection, schema: DatabaseSchema) -> None:
    """Create all system tables and every user table declared in *schema*.

    Must run inside the caller's transaction; idempotent.
    """
    for statement in SYSTEM_TABLE_STATEMENTS:
        connection.execute(statement)
    for table in schema.tables.values():
        for statement in create_table_statements(table):
            connection.execute(statement)


def record_schema_version(
    connection: sqlite3.Connection,
    *,
    db_name: str,
    version: str,
    schema: dict,
    channel_id: str | None,
    ledger_sequence: int | None,
    applied_at: str,
) -> bool:
    """Insert a ``_schema_versions`` row; returns False if this sequence is already recorded."""
    cursor = connection.execute(
        f"""
        INSERT OR IGNORE INTO {SCHEMA_VERSIONS_TABLE}
            (db_name, version, schema, channel_id, ledger_sequence, applied_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (
            db_name,
            version,
            json.dumps(schema, sort_keys=True),
            channel_id,
            ledger_sequence,
            applied_at,
        ),
    )
    return cursor.rowcount > 0
