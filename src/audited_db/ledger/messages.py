"""Ledger wire format.

Every mutation is published to the channel as one JSON document::

    {
      "type":      "INSERT" | "UPDATE" | "DELETE_SOFT" | "DELETE_HARD" | "SCHEMA_INIT",
      "table":     "users",
      "txId":      "9f2c...",
      "dataHash":  "ab12...",                 # INSERT / DELETE_*
      "previousHash": "...", "newHash": "...", # UPDATE
      "updates":   ["age"],                   # UPDATE: changed field names
      "data":      {...},                     # optional: inserted fields / patch
      "timestamp": 1706745600000,             # ms epoch, informational only
      "metadata":  {...}
    }

``SCHEMA_INIT`` carries ``dbName``, ``schema`` and ``version`` instead of
``table``/``txId``.  The document is serialised with the same canonical rules
as record hashes (sorted keys, compact separators) so that the exact bytes on
the channel are reproducible.

Ordering is *never* taken from ``timestamp``: the channel assigns the
authoritative sequence number on acceptance, delivered alongside the payload
as a :class:`ChannelMessage`.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from audited_db.errors import EncodingError
from audited_db.hashing import canonical_bytes


class MessageType(str, Enum):
    """Operation kinds carried on the channel."""

    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE_SOFT = "DELETE_SOFT"
    DELETE_HARD = "DELETE_HARD"
    SCHEMA_INIT = "SCHEMA_INIT"


def now_ms() -> int:
    """Current UTC wall-clock time in milliseconds since the epoch."""
    return int(datetime.now(UTC).timestamp() * 1000)


def iso_from_ms(timestamp_ms: int) -> str:
    """Render a ms-epoch timestamp as ISO-8601 UTC (row and audit timestamps)."""
    return datetime.fromtimestamp(timestamp_ms / 1000, UTC).isoformat(timespec="milliseconds")


@dataclass(frozen=True)
class LedgerMessage:
    """The canonical payload published to, and read back from, the channel.

    Attributes:
        type: Operation kind.
        table: Target table (empty for ``SCHEMA_INIT``).
        tx_id: Row identifier (empty for ``SCHEMA_INIT``).
        timestamp: Publisher wall clock, ms epoch.  Informational.
        metadata: Caller metadata with secrets already stripped.
        data_hash: Row hash for INSERT and DELETE_* messages.
        previous_hash: Hash before an UPDATE.
        new_hash: Hash after an UPDATE.
        updates: Names of the fields an UPDATE changed.
        data: Inserted field set or update patch, when payloads are published.
        db_name: Database name (``SCHEMA_INIT`` only).
        schema: Plain-data schema (``SCHEMA_INIT`` only).
        version: Schema version string (``SCHEMA_INIT`` only).
    """

    type: MessageType
    table: str = ""
    tx_id: str = ""
    timestamp: int = field(default_factory=now_ms)
    metadata: dict[str, Any] = field(default_factory=dict)
    data_hash: str | None = None
    previous_hash: str | None = None
    new_hash: str | None = None
    updates: tuple[str, ...] | None = None
    data: dict[str, Any] | None = None
    db_name: str | None = None
    schema: dict[str, Any] | None = None
    version: str | None = None

    def to_wire(self) -> dict[str, Any]:
        """Render the JSON document published to the channel."""
        wire: dict[str, Any] = {
            "type": self.type.value,
            "timestamp": self.timestamp,
            "metadata": self.metadata,
        }
        if self.type is not MessageType.SCHEMA_INIT:
            wire["table"] = self.table
            wire["txId"] = self.tx_id
        optional = {
            "dataHash": self.data_hash,
            "previousHash": self.previous_hash,
            "newHash": self.new_hash,
            "updates": list(self.updates) if self.updates is not None else None,
            "data": self.data,
            "dbName": self.db_name,
            "schema": self.schema,
            "version": self.version,
        }
        wire.update({key: value for key, value in optional.items() if value is not None})
        return wire

    def encode(self) -> bytes:
        """Serialise to canonical bytes.

        Raises:
            EncodingError: If the payload contains non-canonical values.
        """
        return canonical_bytes(self.to_wire())

    @classmethod
    def from_wire(cls, wire: Any) -> LedgerMessage:
        """Validate and build a message from a decoded JSON document.

        Raises:
            EncodingError: If required keys are missing or mistyped.
        """
        if not isinstance(wire, dict):
            raise EncodingError("Ledger message must be a JSON object")
        try:
            message_type = MessageType(wire.get("type"))
        except ValueError as exc:
            raise EncodingError(f"Unknown ledger message type: {wire.get('type')!r}") from exc

        table = wire.get("table", "")
        tx_id = wire.get("txId", "")
        if message_type is not MessageType.SCHEMA_INIT:
            if not isinstance(table, str) or not table:
                raise EncodingError(f"{message_type.value} message is missing 'table'")
            if not isinstance(tx_id, str) or not tx_id:
                raise EncodingError(f"{message_type.value} message is missing 'txId'")
            if message_type is MessageType.UPDATE:
                if not wire.get("previousHash") or not wire.get("newHash"):
                    raise EncodingError("UPDATE message requires 'previousHash' and 'newHash'")
            elif not wire.get("dataHash"):
                raise EncodingError(f"{message_type.value} message is missing 'dataHash'")

        metadata = wire.get("metadata") or {}
        data = wire.get("data")
        if not isinstance(metadata, dict) or (data is not None and not isinstance(data, dict)):
            raise EncodingError("Ledger message 'metadata' and 'data' must be objects")

        timestamp = wire.get("timestamp", 0)
        if not isinstance(timestamp, int) or isinstance(timestamp, bool):
            raise EncodingError("Ledger message 'timestamp' must be an integer")

        updates = wire.get("updates")
        return cls(
            type=message_type,
            table=table,
            tx_id=tx_id,
            timestamp=timestamp,
            metadata=metadata,
            data_hash=wire.get("dataHash"),
            previous_hash=wire.get("previousHash"),
            new_hash=wire.get("newHash"),
            updates=tuple(updates) if isinstance(updates, list) else None,
            data=data,
            db_name=wire.get("dbName"),
            schema=wire.get("schema"),
            version=wire.get("version"),
        )

    @classmethod
    def decode(cls, payload: bytes) -> LedgerMessage:
        """Parse raw channel bytes.

        Raises:
            EncodingError: If the bytes are not a valid ledger message.
        """
        try:
            wire = json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise EncodingError(f"Ledger payload is not valid JSON: {exc}") from exc
        return cls.from_wire(wire)


@dataclass(frozen=True)
class ChannelMessage:
    """One raw delivery from the channel.

    Attributes:
        sequence: Channel-assigned sequence number; the sole source of order.
        payload: The bytes that were submitted.
        timestamp: Channel (consensus) timestamp, ms epoch.
    """

    sequence: int
    payload: bytes
    timestamp: int


@dataclass(frozen=True)
class ChannelInfo:
    """State of a channel at create/attach time.

    Attributes:
        channel_id: Identifier assigned by the channel service.
        memo: Free-form description set at creation.
        sequence_number: Highest sequence assigned so far (``0`` when empty).
    """

    channel_id: str
    memo: str
    sequence_number: int


@dataclass(frozen=True)
class SubmitResult:
    """Acknowledgement of a durable, ordered submission.

    Attributes:
        status: Status string reported by the channel (``"SUCCESS"``).
        submitted_at: Local wall clock when the acknowledgement arrived, ms.
        sequence_number: Sequence the channel assigned to the message.
        consensus_timestamp: Channel timestamp of the message, ms epoch.
    """

    status: str
    submitted_at: int
    sequence_number: int
    consensus_timestamp: int
