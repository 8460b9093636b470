"""Replay cursor persistence: the last channel sequence applied locally."""

from __future__ import annotations

import sqlite3

from audited_db.db.bootstrap import SYNC_CURSOR_TABLE


def load_cursor(connection: sqlite3.Connection, channel_id: str) -> int:
    """Return the last applied sequence for *channel_id* (``0`` when unset)."""
    row = connection.execute(
        f"SELECT last_sequence FROM {SYNC_CURSOR_TABLE} WHERE channel_id = ?",
        (channel_id,),
    ).fetchone()
    return int(row[0]) if row else 0


def advance_cursor(connection: sqlite3.Connection, channel_id: str, sequence: int, *, timestamp: str) -> None:
    """Move the cursor to *sequence*; the cursor never moves backwards."""
    connection.execute(
        f"""
        INSERT INTO {SYNC_CURSOR_TABLE} (channel_id, last_sequence, updated_at)
        VALUES (?, ?, ?)
        ON CONFLICT(channel_id) DO UPDATE SET
            last_sequence = MAX(last_sequence, excluded.last_sequence),
            updated_at = excluded.updated_at
        """,
        (channel_id, sequence, timestamp),
    )
