"""Result dataclasses returned by the public database operations."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from audited_db.schema import (
    CREATED_AT,
    CREATED_BY,
    DATA_HASH,
    IS_DELETED,
    TX_ID,
    UPDATED_AT,
    VERSION,
)


@dataclass(frozen=True)
class Record:
    """One logical row as seen by callers.

    Attributes:
        tx_id: Stable identifier; primary key and ledger correlation key.
        fields: Domain fields, converted back to Python types.
        version: 1 on insert, incremented by every update.
        data_hash: Canonical hash of ``fields``.
        created_by: Actor that inserted the row, if known.
        is_deleted: Soft-delete flag.
        created_at: ISO-8601 UTC timestamp of the insert.
        updated_at: ISO-8601 UTC timestamp of the last mutation.
    """

    tx_id: str
    fields: dict[str, Any]
    version: int
    data_hash: str
    created_by: str | None
    is_deleted: bool
    created_at: str
    updated_at: str

    def as_row(self) -> dict[str, Any]:
        """Flatten into the stored row layout (system columns + domain fields)."""
        return {
            TX_ID: self.tx_id,
            CREATED_AT: self.created_at,
            UPDATED_AT: self.updated_at,
            VERSION: self.version,
            DATA_HASH: self.data_hash,
            CREATED_BY: self.created_by,
            IS_DELETED: self.is_deleted,
            **self.fields,
        }


@dataclass(frozen=True)
class AuditEntry:
    """One append-only audit row.

    Attributes:
        id: Local commit-order identifier.
        tx_id: Row the operation addressed.
        table: Table the operation addressed.
        operation: ``INSERT``, ``UPDATE``, ``DELETE_SOFT`` or ``DELETE_HARD``.
        data_hash: Row hash after the operation (unchanged for deletes).
        previous_hash: Row hash before an update; ``None`` otherwise.
        ledger_timestamp: Channel timestamp of the matching message, ms.
        ledger_sequence: Channel sequence of the matching message.
        channel_id: Channel the message was ordered on.
        metadata: Caller metadata with secrets stripped.
        actor_id: Acting user, when supplied.
        origin_address: Caller network address, when supplied.
        recorded_at: ISO-8601 UTC time the entry was written locally.
    """

    id: int
    tx_id: str
    table: str
    operation: str
    data_hash: str
    previous_hash: str | None
    ledger_timestamp: int
    ledger_sequence: int | None
    channel_id: str | None
    metadata: dict[str, Any]
    actor_id: str | None
    origin_address: str | None
    recorded_at: str


@dataclass(frozen=True)
class InitResult:
    """Outcome of :meth:`AuditedDatabase.initialize`."""

    channel_id: str
    status: str
    sequence_number: int
    created_channel: bool


@dataclass(frozen=True)
class InsertResult:
    """Outcome of an insert: the new record and its ledger acknowledgement."""

    tx_id: str
    record: Record
    data_hash: str
    ledger_status: str
    sequence_number: int
    ledger_timestamp: int


@dataclass(frozen=True)
class UpdateResult:
    """Outcome of an update."""

    tx_id: str
    record: Record
    previous_hash: str
    new_hash: str
    version: int
    sequence_number: int


@dataclass(frozen=True)
class DeleteResult:
    """Outcome of a soft or hard delete."""

    tx_id: str
    hard: bool
    data_hash: str
    sequence_number: int


@dataclass(frozen=True)
class QueryResult:
    """Rows matched by a query."""

    records: list[Record] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.records)
