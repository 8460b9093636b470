"""
The audited database: one relational store, one ordered channel.

=============================================================================
MUTATION PIPELINE
=============================================================================

Every insert, update and delete runs the same steps inside one local
``BEGIN IMMEDIATE`` transaction::

    validate against schema
        -> canonical hash of the full domain field set
        -> write the row
        -> publish the LedgerMessage and block for the channel's ordering ack
        -> append the AuditEntry (carrying the channel sequence + timestamp)
        -> COMMIT

A failure at any step before COMMIT rolls the row back, so no AuditEntry
exists for an unpublished mutation.  If COMMIT itself fails after the channel
accepted the message, the channel holds a mutation the store does not; the
sync engine later replays it from the channel.  No two-phase commit spans the
two systems.

=============================================================================
LIFECYCLE
=============================================================================

    db = AuditedDatabase(load_config())
    db.initialize("inventory", {"items": {"sku": {"type": "string", "nullable": False}}})
    result = db.insert("items", {"sku": "A-100"}, {"user_id": "u-7"})
    db.verify_integrity("items", result.tx_id).match    # True
    db.close()

The object is also a context manager that closes itself on exit.
"""

from __future__ import annotations

import logging
import secrets
import sqlite3
import threading
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import Any, NoReturn

from audited_db.config import AuditedDbConfig, load_config, validate_config
from audited_db.db import audit_repo, bootstrap, records_repo
from audited_db.db.connection import ConnectionPool
from audited_db.errors import (
    AlreadyInitialized,
    AuditedDatabaseError,
    DatabaseOperationContext,
    DatabaseOperationError,
    DatabaseReadError,
    DatabaseWriteError,
    NotFound,
    NotInitialized,
    SchemaViolation,
    VersionConflict,
)
from audited_db.events import ChangeNotifier, EventHandler, Events, SyncHandler, Unsubscribe
from audited_db.hashing import compute_hash
from audited_db.integrity import IntegrityResult, verify_record, verify_table
from audited_db.ledger.client import LedgerClient
from audited_db.ledger.messages import LedgerMessage, MessageType, SubmitResult, iso_from_ms, now_ms
from audited_db.ledger.transport import LedgerTransport, build_transport
from audited_db.metadata import actor_of, origin_of, sanitize_metadata
from audited_db.metrics import Metrics
from audited_db.schema import DATA_HASH, VERSION, DatabaseSchema, TableSchema, load_schema_file
from audited_db.sync import ReplaySummary, SyncEngine
from audited_db.types import (
    AuditEntry,
    DeleteResult,
    InitResult,
    InsertResult,
    QueryResult,
    Record,
    UpdateResult,
)

logger = logging.getLogger(__name__)


def _raise_read_error(operation: str, exc: Exception, *, details: str | None = None) -> NoReturn:
    """Raise a typed read error while preserving the chained cause."""
    if isinstance(exc, DatabaseOperationError):
        raise exc
    raise DatabaseReadError(
        context=DatabaseOperationContext(operation=operation, details=details or str(exc)),
        cause=exc,
    ) from exc


def _raise_write_error(operation: str, exc: Exception, *, details: str | None = None) -> NoReturn:
    """Raise a typed write error while preserving the chained cause."""
    if isinstance(exc, DatabaseOperationError):
        raise exc
    raise DatabaseWriteError(
        context=DatabaseOperationContext(operation=operation, details=details or str(exc)),
        cause=exc,
    ) from exc


class AuditedDatabase:
    """
    Tamper-evident store: relational rows, append-only audit, ordered channel.

    Args:
        config: Settings; :func:`~audited_db.config.load_config` when omitted.
        transport: Channel transport; built from ``config.ledger`` when omitted.
        client: Fully built ledger client (overrides *transport*).

    Raises:
        ConfigurationError: If the configuration is incomplete.
    """

    def __init__(
        self,
        config: AuditedDbConfig | None = None,
        *,
        transport: LedgerTransport | None = None,
        client: LedgerClient | None = None,
    ) -> None:
        self.config = config if config is not None else load_config()
        validate_config(self.config)

        self.metrics = Metrics()
        self.notifier = ChangeNotifier(
            queue_size=self.config.events.queue_size,
            on_drop=lambda _event: self.metrics.increment("notifications_dropped"),
        )

        if client is None:
            ledger = self.config.ledger
            client = LedgerClient(
                transport or build_transport(ledger, poll_interval=self.config.sync.poll_interval_seconds),
                max_attempts=ledger.max_attempts,
                backoff_seconds=ledger.backoff_seconds,
                backoff_max_seconds=ledger.backoff_max_seconds,
            )
        self.client = client

        self.db_name: str | None = None
        self._schema: DatabaseSchema | None = None
        self._pool: ConnectionPool | None = None
        self._sync: SyncEngine | None = None
        self._state_lock = threading.Lock()
        self._closed = False

    # =========================================================================
    # PROPERTIES
    # =========================================================================

    @property
    def initialized(self) -> bool:
        return self._pool is not None and not self._closed

    @property
    def schema(self) -> DatabaseSchema:
        self._require()
        assert self._schema is not None
        return self._schema

    @property
    def channel_id(self) -> str | None:
        return self.client.channel_id

    @property
    def sync(self) -> SyncEngine:
        self._require()
        assert self._sync is not None
        return self._sync

    # =========================================================================
    # INITIALIZE
    # =========================================================================

    def initialize(
        self,
        db_name: str,
        schema: DatabaseSchema | Mapping[str, Any] | str | Path,
        *,
        channel_id: str | None = None,
        memo: str | None = None,
        schema_version: str = "1.0.0",
    ) -> InitResult:
        """Create system and user tables, then bind the channel.

        Without a channel id (argument or ``ledger.channel_id``) a new channel
        is created and a ``SCHEMA_INIT`` message is published as its first
        entry.  With one, the existing channel is attached and nothing is
        published; call :meth:`replay` to catch up with it.

        Raises:
            AlreadyInitialized: On a second call.
            SchemaViolation: If *schema* is invalid.
            LedgerSubmissionError: If the channel cannot be created/attached.
            DatabaseOperationError: If the store cannot be prepared.
        """
        with self._state_lock:
            if self._closed:
                raise NotInitialized("Database has been closed")
            if self._pool is not None:
                raise AlreadyInitialized(f"Database {self.db_name!r} is already initialized")

            parsed = self._parse_schema(schema)
            channel_id = channel_id or self.config.ledger.channel_id or None
            pool = ConnectionPool(
                self.config.database.absolute_path,
                max_size=self.config.database.pool_size,
                timeout=self.config.database.pool_timeout_seconds,
                busy_timeout_ms=self.config.database.busy_timeout_ms,
            )
            try:
                try:
                    with pool.transaction() as connection:
                        bootstrap.create_infrastructure(connection, parsed)
                except sqlite3.Error as exc:
                    _raise_write_error("bootstrap.create_infrastructure", exc)

                if channel_id:
                    info = self.client.attach_to_channel(channel_id)
                    result = InitResult(
                        channel_id=info.channel_id,
                        status="ATTACHED",
                        sequence_number=info.sequence_number,
                        created_channel=False,
                    )
                else:
                    info = self.client.create_channel(db_name, memo or f"audited-db:{db_name}")
                    ack = self._publish_schema(pool, db_name, parsed, schema_version)
                    result = InitResult(
                        channel_id=info.channel_id,
                        status=ack.status,
                        sequence_number=ack.sequence_number,
                        created_channel=True,
                    )
            except BaseException:
                pool.close()
                raise

            self.db_name = db_name
            self._schema = parsed
            self._pool = pool
            self._sync = SyncEngine(
                pool=pool,
                schema=parsed,
                client=self.client,
                db_name=db_name,
                metrics=self.metrics,
                notifier=self.notifier,
                verify_hashes=self.config.sync.verify_hashes,
                retry_interval=self.config.sync.retry_interval_seconds,
            )

        self.notifier.start()
        if self.config.sync.enabled:
            self._sync.start()

        self.notifier.publish(Events.DATABASE_INITIALIZED, {"db_name": db_name, "channel_id": result.channel_id})
        logger.info(
            "Audited database %r initialized on channel %s (%s)",
            db_name,
            result.channel_id,
            "created" if result.created_channel else "attached",
        )
        return result

    def _parse_schema(self, schema: DatabaseSchema | Mapping[str, Any] | str | Path) -> DatabaseSchema:
        if isinstance(schema, DatabaseSchema):
            return schema
        if isinstance(schema, (str, Path)):
            return load_schema_file(schema)
        return DatabaseSchema.from_mapping(schema)

    def _publish_schema(
        self, pool: ConnectionPool, db_name: str, schema: DatabaseSchema, version: str
    ) -> SubmitResult:
        schema_map = schema.to_mapping()
        message = LedgerMessage(
            type=MessageType.SCHEMA_INIT,
            db_name=db_name,
            schema=schema_map,
            version=version,
        )
        ack = self.client.submit(message)
        self.metrics.increment("publications")
        try:
            with pool.transaction() as connection:
                bootstrap.record_schema_version(
                    connection,
                    db_name=db_name,
                    version=version,
                    schema=schema_map,
                    channel_id=self.client.channel_id,
                    ledger_sequence=ack.sequence_number,
                    applied_at=iso_from_ms(message.timestamp),
                )
        except sqlite3.Error as exc:
            _raise_write_error("bootstrap.record_schema_version", exc)
        return ack

    # =========================================================================
    # MUTATIONS
    # =========================================================================

    def insert(
        self,
        table: str,
        fields: Mapping[str, Any],
        metadata: Mapping[str, Any] | None = None,
    ) -> InsertResult:
        """Insert a row, publish it, and audit it atomically.

        Raises:
            SchemaViolation: Unknown table/field, missing required field, type
                mismatch, or a UNIQUE constraint violation.
            EncodingError: If a value has no canonical form.
            LedgerSubmissionError: If the channel rejects the message.
        """
        with self._operation("insert", table):
            _, table_schema = self._table(table)
            completed = table_schema.complete(fields)
            data_hash = compute_hash(completed)
            meta = sanitize_metadata(metadata)
            tx_id = secrets.token_hex(16)
            message = LedgerMessage(
                type=MessageType.INSERT,
                table=table,
                tx_id=tx_id,
                metadata=meta,
                data_hash=data_hash,
                data=self._payload(completed),
            )
            # Reject values with no canonical form before anything is written.
            message.encode()

            with self._write("records.insert", table) as connection:
                records_repo.insert_row(
                    connection,
                    table_schema,
                    tx_id=tx_id,
                    fields=completed,
                    data_hash=data_hash,
                    created_by=actor_of(meta),
                    timestamp=iso_from_ms(message.timestamp),
                )
                ack = self._submit(message)
                self._audit(connection, message, ack, data_hash=data_hash)
                record = self._reload(connection, table_schema, tx_id)

        self.metrics.increment("inserts")
        self.notifier.publish(
            Events.RECORD_INSERTED,
            {"table": table, "tx_id": tx_id, "data_hash": data_hash, "sequence": ack.sequence_number},
        )
        logger.debug("insert %s/%s hash=%s seq=%d", table, tx_id, data_hash, ack.sequence_number)
        return InsertResult(
            tx_id=tx_id,
            record=record,
            data_hash=data_hash,
            ledger_status=ack.status,
            sequence_number=ack.sequence_number,
            ledger_timestamp=ack.consensus_timestamp,
        )

    def update(
        self,
        table: str,
        tx_id: str,
        patch: Mapping[str, Any],
        metadata: Mapping[str, Any] | None = None,
        *,
        expected_version: int | None = None,
    ) -> UpdateResult:
        """Apply a partial update, publish it, and audit it atomically.

        Without ``expected_version`` concurrent updates of one row are
        last-committer-wins.

        Raises:
            NotFound: If the row does not exist or is soft-deleted.
            VersionConflict: If ``expected_version`` is given and differs.
            SchemaViolation: On an empty patch, unknown field or bad value.
        """
        with self._operation("update", table):
            _, table_schema = self._table(table)
            checked = table_schema.validate_patch(patch)
            if not checked:
                raise SchemaViolation(f"Update of {table!r} requires at least one field", table=table)
            meta = sanitize_metadata(metadata)
            timestamp = now_ms()

            with self._write("records.update", table) as connection:
                row = records_repo.fetch_row(connection, table_schema, tx_id, include_deleted=False)
                if row is None:
                    raise NotFound(table, tx_id)
                current_version = int(row[VERSION])
                if expected_version is not None and expected_version != current_version:
                    raise VersionConflict(table, tx_id, expected=expected_version, actual=current_version)

                previous_hash = row[DATA_HASH]
                new_hash = compute_hash({**table_schema.decode_row(row), **checked})
                version = current_version + 1
                message = LedgerMessage(
                    type=MessageType.UPDATE,
                    table=table,
                    tx_id=tx_id,
                    timestamp=timestamp,
                    metadata=meta,
                    previous_hash=previous_hash,
                    new_hash=new_hash,
                    updates=tuple(checked),
                    data=self._payload(checked),
                )
                message.encode()

                records_repo.update_row(
                    connection,
                    table_schema,
                    tx_id=tx_id,
                    patch=checked,
                    data_hash=new_hash,
                    version=version,
                    timestamp=iso_from_ms(timestamp),
                )
                ack = self._submit(message)
                self._audit(connection, message, ack, data_hash=new_hash, previous_hash=previous_hash)
                record = self._reload(connection, table_schema, tx_id)

        self.metrics.increment("updates")
        self.notifier.publish(
            Events.RECORD_UPDATED,
            {
                "table": table,
                "tx_id": tx_id,
                "previous_hash": previous_hash,
                "new_hash": new_hash,
                "version": version,
                "sequence": ack.sequence_number,
            },
        )
        logger.debug("update %s/%s v%d hash=%s seq=%d", table, tx_id, version, new_hash, ack.sequence_number)
        return UpdateResult(
            tx_id=tx_id,
            record=record,
            previous_hash=previous_hash,
            new_hash=new_hash,
            version=version,
            sequence_number=ack.sequence_number,
        )

    def delete(
        self,
        table: str,
        tx_id: str,
        metadata: Mapping[str, Any] | None = None,
        *,
        hard: bool = False,
    ) -> DeleteResult:
        """Soft-delete (default) or hard-delete a row, publish, and audit.

        A soft delete keeps the row and its hash; a hard delete removes the
        row and leaves only its audit entries.

        Raises:
            NotFound: If the row does not exist (or, for a soft delete, is
                already soft-deleted).
        """
        with self._operation("delete", table):
            _, table_schema = self._table(table)
            meta = sanitize_metadata(metadata)
            message_type = MessageType.DELETE_HARD if hard else MessageType.DELETE_SOFT

            with self._write("records.delete", table) as connection:
                row = records_repo.fetch_row(connection, table_schema, tx_id, include_deleted=hard)
                if row is None:
                    raise NotFound(table, tx_id)
                data_hash = row[DATA_HASH]
                message = LedgerMessage(
                    type=message_type,
                    table=table,
                    tx_id=tx_id,
                    metadata=meta,
                    data_hash=data_hash,
                )
                if hard:
                    records_repo.remove_row(connection, table_schema, tx_id=tx_id)
                else:
                    records_repo.mark_deleted(
                        connection, table_schema, tx_id=tx_id, timestamp=iso_from_ms(message.timestamp)
                    )
                ack = self._submit(message)
                self._audit(connection, message, ack, data_hash=data_hash)

        self.metrics.increment("deletes")
        self.notifier.publish(
            Events.RECORD_DELETED,
            {"table": table, "tx_id": tx_id, "hard": hard, "sequence": ack.sequence_number},
        )
        logger.debug("%s %s/%s seq=%d", message_type.value, table, tx_id, ack.sequence_number)
        return DeleteResult(tx_id=tx_id, hard=hard, data_hash=data_hash, sequence_number=ack.sequence_number)

    # =========================================================================
    # READS
    # =========================================================================

    def query(
        self,
        table: str,
        where: Mapping[str, Any] | None = None,
        *,
        order_by: str | Sequence[Any] | None = None,
        limit: int | None = None,
        offset: int | None = None,
        include_deleted: bool = False,
    ) -> QueryResult:
        """Return the rows of *table* matching *where*.

        See :mod:`audited_db.db.filters` for the filter syntax.

        Raises:
            SchemaViolation: On an unknown table.
            InvalidFilter: On unknown fields/operators or bad paging values.
        """
        with self._operation("query", table):
            pool, table_schema = self._table(table)
            try:
                with pool.connection() as connection:
                    rows = records_repo.select_rows(
                        connection,
                        table_schema,
                        where=where,
                        order_by=order_by,
                        limit=limit,
                        offset=offset,
                        include_deleted=include_deleted,
                    )
            except sqlite3.Error as exc:
                _raise_read_error("records.query", exc, details=f"table={table}")
            records = [records_repo.row_to_record(table_schema, row) for row in rows]

        self.metrics.increment("queries")
        return QueryResult(records=records)

    def get(self, table: str, tx_id: str, *, include_deleted: bool = False) -> Record:
        """Return one row by ``tx_id``.

        Raises:
            NotFound: If the row does not exist (or is soft-deleted and
                ``include_deleted`` is false).
        """
        pool, table_schema = self._table(table)
        try:
            with pool.connection() as connection:
                row = records_repo.fetch_row(connection, table_schema, tx_id, include_deleted=include_deleted)
        except sqlite3.Error as exc:
            _raise_read_error("records.get", exc, details=f"table={table}")
        if row is None:
            raise NotFound(table, tx_id)
        return records_repo.row_to_record(table_schema, row)

    def get_audit_trail(
        self,
        table: str | None = None,
        tx_id: str | None = None,
        *,
        operation: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[AuditEntry]:
        """Return audit entries in commit order (or newest first)."""
        pool = self._require()
        if table is not None:
            self.schema.table(table)
        try:
            with pool.connection() as connection:
                return audit_repo.get_trail(
                    connection,
                    table=table,
                    tx_id=tx_id,
                    operation=operation,
                    descending=descending,
                    limit=limit,
                )
        except sqlite3.Error as exc:
            _raise_read_error("audit.get_trail", exc)

    def verify_integrity(self, table: str, tx_id: str) -> IntegrityResult:
        """Recompute the hash of one row and compare it with the stored one."""
        pool, table_schema = self._table(table)
        try:
            with pool.connection() as connection:
                return verify_record(connection, table_schema, tx_id)
        except sqlite3.Error as exc:
            _raise_read_error("integrity.verify", exc, details=f"{table}/{tx_id}")

    def verify_table(self, table: str) -> list[IntegrityResult]:
        """Verify every row of *table*; returns the mismatches only."""
        pool, table_schema = self._table(table)
        try:
            with pool.connection() as connection:
                return verify_table(connection, table_schema)
        except sqlite3.Error as exc:
            _raise_read_error("integrity.verify_table", exc, details=table)

    def get_metrics(self) -> dict[str, Any]:
        """Counters plus channel and sync state."""
        metrics: dict[str, Any] = self.metrics.snapshot().as_dict()
        metrics["channel_id"] = self.client.channel_id
        metrics["initialized"] = self.initialized
        metrics["sync_enabled"] = self._sync is not None and self._sync.running
        return metrics

    # =========================================================================
    # SYNC / EVENTS
    # =========================================================================

    def replay(self, until_sequence: int | None = None) -> ReplaySummary:
        """Synchronously apply channel messages after the local cursor."""
        return self.sync.replay(until_sequence)

    def on(self, event_type: str, handler: EventHandler) -> Unsubscribe:
        """Subscribe to change notifications (see :class:`~audited_db.events.Events`)."""
        return self.notifier.on(event_type, handler)

    def once(self, event_type: str, handler: SyncHandler) -> Unsubscribe:
        return self.notifier.once(event_type, handler)

    # =========================================================================
    # CLOSE
    # =========================================================================

    def close(self) -> None:
        """Stop sync, drain notifications, release the channel and the pool.

        Idempotent.  An in-flight replay apply is allowed to finish first.
        """
        with self._state_lock:
            if self._closed:
                return
            self._closed = True

        if self._sync is not None:
            self._sync.shutdown()
        self.notifier.publish(Events.DATABASE_CLOSED, {"db_name": self.db_name})
        self.notifier.stop()
        self.client.close()
        if self._pool is not None:
            self._pool.close()
        logger.info("Audited database %r closed", self.db_name)

    def __enter__(self) -> AuditedDatabase:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _require(self) -> ConnectionPool:
        if self._closed:
            raise NotInitialized("Database has been closed")
        if self._pool is None:
            raise NotInitialized("Database is not initialized; call initialize() first")
        return self._pool

    def _table(self, table: str) -> tuple[ConnectionPool, TableSchema]:
        pool = self._require()
        assert self._schema is not None
        return pool, self._schema.table(table)

    def _payload(self, fields: Mapping[str, Any]) -> dict[str, Any] | None:
        return dict(fields) if self.config.ledger.include_payload else None

    def _submit(self, message: LedgerMessage) -> SubmitResult:
        ack = self.client.submit(message)
        self.metrics.increment("publications")
        return ack

    def _audit(
        self,
        connection: sqlite3.Connection,
        message: LedgerMessage,
        ack: SubmitResult,
        *,
        data_hash: str,
        previous_hash: str | None = None,
    ) -> None:
        audit_repo.append_entry(
            connection,
            tx_id=message.tx_id,
            table=message.table,
            operation=message.type.value,
            data_hash=data_hash,
            previous_hash=previous_hash,
            ledger_timestamp=ack.consensus_timestamp,
            ledger_sequence=ack.sequence_number,
            channel_id=self.client.channel_id,
            metadata=message.metadata,
            actor_id=actor_of(message.metadata),
            origin_address=origin_of(message.metadata),
            recorded_at=iso_from_ms(now_ms()),
        )

    def _reload(self, connection: sqlite3.Connection, table: TableSchema, tx_id: str) -> Record:
        row = records_repo.fetch_row(connection, table, tx_id)
        if row is None:
            raise NotFound(table.name, tx_id, detail="vanished inside its own transaction")
        return records_repo.row_to_record(table, row)

    @contextmanager
    def _write(self, operation: str, table: str) -> Iterator[sqlite3.Connection]:
        """Mutation transaction; constraint violations surface as schema errors."""
        pool = self._require()
        try:
            with pool.transaction() as connection:
                yield connection
        except sqlite3.IntegrityError as exc:
            raise SchemaViolation(f"Constraint violated in table {table!r}: {exc}", table=table) from exc
        except sqlite3.Error as exc:
            _raise_write_error(operation, exc, details=f"table={table}")

    @contextmanager
    def _operation(self, name: str, table: str) -> Iterator[None]:
        """Count and log a failed public operation, then re-raise."""
        try:
            yield
        except AuditedDatabaseError as exc:
            self.metrics.increment("errors")
            if isinstance(exc, DatabaseOperationError):
                logger.error("%s on %r failed: %s", name, table, exc, exc_info=True)
            else:
                logger.error("%s on %r failed: %s", name, table, exc)
            raise
