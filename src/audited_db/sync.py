"""Sync/replay engine: materialise the channel into the local store.

The channel is authoritative; the local tables are a projection of it.  The
engine reads deliveries in channel-sequence order starting just after the
persisted cursor and applies each one idempotently:

==============  =========================================================
Message         Local effect
==============  =========================================================
INSERT          row absent: insert from payload (hash re-verified);
                row present with the same hash: no-op; different: conflict
UPDATE          current hash == new hash: no-op; == previous hash: merge
                patch, verify, bump version; otherwise: conflict
DELETE_SOFT     row absent: conflict; already deleted: no-op; else flag it
DELETE_HARD     row absent: no-op; else remove it
SCHEMA_INIT     record the schema version
==============  =========================================================

A delivery whose sequence already appears in the audit log was originated by
this store (or applied before) and is a duplicate.  The apply, its audit
entry and the cursor advance share one ``BEGIN IMMEDIATE`` transaction, so
the cursor only ever describes work that committed.

Failure policy
--------------
- Undecodable payload: logged, counted as skipped, cursor advanced.
- Conflict or hash mismatch: logged, counted as failed, cursor unchanged.
  The background loop abandons the stream and resubscribes from the cursor
  after ``retry_interval``; ``replay()`` returns at the failing sequence.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import closing
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum

from audited_db.db import audit_repo, bootstrap, cursor_repo, records_repo
from audited_db.db.connection import ConnectionPool
from audited_db.errors import (
    ApplyConflict,
    AuditedDatabaseError,
    EncodingError,
    NotInitialized,
    SchemaViolation,
)
from audited_db.events import ChangeNotifier, Events
from audited_db.hashing import compute_hash
from audited_db.ledger.client import LedgerClient
from audited_db.ledger.messages import ChannelMessage, LedgerMessage, MessageType, iso_from_ms
from audited_db.metadata import actor_of, origin_of
from audited_db.metrics import Metrics
from audited_db.schema import DATA_HASH, IS_DELETED, VERSION, DatabaseSchema, TableSchema

logger = logging.getLogger(__name__)


class ApplyOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class ReplaySummary:
    """Tally of one :meth:`SyncEngine.replay` run.

    Attributes:
        applied: Messages that changed local state.
        duplicates: Messages already reflected locally.
        skipped: Undecodable messages stepped over.
        failed_sequence: Sequence that stopped the run, if any.
        error: Description of that failure.
        last_sequence: Cursor position when the run ended.
    """

    applied: int = 0
    duplicates: int = 0
    skipped: int = 0
    failed_sequence: int | None = None
    error: str | None = None
    last_sequence: int = 0

    @property
    def ok(self) -> bool:
        return self.failed_sequence is None


class SyncEngine:
    """Applies channel deliveries to the local store.

    Args:
        pool: Connection pool of the local store.
        schema: Table descriptors used to validate payloads.
        client: Ledger client bound to the database's channel.
        db_name: Name recorded with ``SCHEMA_INIT`` messages lacking one.
        metrics: Counter sink.
        notifier: Change notification sink.
        verify_hashes: Refuse payloads whose recomputed hash differs from the
            declared one.
        retry_interval: Seconds to wait before resubscribing after a failure.
    """

    def __init__(
        self,
        *,
        pool: ConnectionPool,
        schema: DatabaseSchema,
        client: LedgerClient,
        db_name: str,
        metrics: Metrics,
        notifier: ChangeNotifier,
        verify_hashes: bool = True,
        retry_interval: float = 5.0,
    ) -> None:
        self.pool = pool
        self.schema = schema
        self.client = client
        self.db_name = db_name
        self.metrics = metrics
        self.notifier = notifier
        self.verify_hashes = verify_hashes
        self.retry_interval = retry_interval

        self._apply_lock = threading.Lock()
        self._halted = False
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    # ------------------------------------------------------------------
    # Cursor
    # ------------------------------------------------------------------

    @property
    def channel_id(self) -> str:
        channel_id = self.client.channel_id
        if channel_id is None:
            raise NotInitialized("Sync engine has no bound channel")
        return channel_id

    def cursor(self) -> int:
        """Last channel sequence applied locally."""
        with self.pool.connection() as connection:
            return cursor_repo.load_cursor(connection, self.channel_id)

    # ------------------------------------------------------------------
    # Single delivery
    # ------------------------------------------------------------------

    def process(self, delivery: ChannelMessage) -> ApplyOutcome:
        """Apply one delivery and report what happened.  Never raises for
        conflicts or garbage; infrastructure failures are reported as FAILED.
        """
        with self._apply_lock:
            if self._halted:
                raise NotInitialized("Sync engine has been shut down")
            return self._process(delivery)

    def _process(self, delivery: ChannelMessage) -> ApplyOutcome:
        channel_id = self.channel_id
        sequence = delivery.sequence

        try:
            message = LedgerMessage.decode(delivery.payload)
        except EncodingError as exc:
            try:
                with self.pool.transaction() as connection:
                    if sequence <= cursor_repo.load_cursor(connection, channel_id):
                        return ApplyOutcome.DUPLICATE
                    cursor_repo.advance_cursor(connection, channel_id, sequence, timestamp=_now_iso())
            except (AuditedDatabaseError, sqlite3.Error) as db_exc:
                logger.error("Could not step over sequence %d: %s", sequence, db_exc, exc_info=True)
                self.metrics.increment("replay_failed")
                return ApplyOutcome.FAILED
            logger.warning("Skipping undecodable message at sequence %d: %s", sequence, exc)
            self.metrics.increment("replay_skipped")
            return ApplyOutcome.SKIPPED

        try:
            with self.pool.transaction() as connection:
                if sequence <= cursor_repo.load_cursor(connection, channel_id):
                    return ApplyOutcome.DUPLICATE
                if audit_repo.has_sequence(connection, channel_id=channel_id, sequence=sequence):
                    cursor_repo.advance_cursor(connection, channel_id, sequence, timestamp=_now_iso())
                    return ApplyOutcome.DUPLICATE
                changed = self._apply(connection, message, delivery)
                cursor_repo.advance_cursor(connection, channel_id, sequence, timestamp=_now_iso())
        except (ApplyConflict, SchemaViolation, EncodingError) as exc:
            logger.error(
                "Replay conflict at sequence %d (%s %s/%s): %s",
                sequence,
                message.type.value,
                message.table,
                message.tx_id,
                exc,
            )
            self.metrics.increment("replay_failed")
            return ApplyOutcome.FAILED
        except (AuditedDatabaseError, sqlite3.Error) as exc:
            logger.error("Replay failed at sequence %d: %s", sequence, exc, exc_info=True)
            self.metrics.increment("replay_failed")
            return ApplyOutcome.FAILED

        if not changed:
            return ApplyOutcome.DUPLICATE

        self.metrics.increment("replay_applied")
        self.notifier.publish(
            Events.REPLAY_APPLIED,
            {
                "sequence": sequence,
                "type": message.type.value,
                "table": message.table,
                "tx_id": message.tx_id,
            },
            source="sync",
        )
        logger.debug("Applied %s %s/%s at sequence %d", message.type.value, message.table, message.tx_id, sequence)
        return ApplyOutcome.APPLIED

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _apply(self, connection: sqlite3.Connection, message: LedgerMessage, delivery: ChannelMessage) -> bool:
        if message.type is MessageType.SCHEMA_INIT:
            return bootstrap.record_schema_version(
                connection,
                db_name=message.db_name or self.db_name,
                version=message.version or "",
                schema=message.schema or {},
                channel_id=self.channel_id,
                ledger_sequence=delivery.sequence,
                applied_at=iso_from_ms(delivery.timestamp),
            )

        table = self.schema.table(message.table)
        handlers = {
            MessageType.INSERT: self._apply_insert,
            MessageType.UPDATE: self._apply_update,
            MessageType.DELETE_SOFT: self._apply_delete_soft,
            MessageType.DELETE_HARD: self._apply_delete_hard,
        }
        return handlers[message.type](connection, table, message, delivery)

    def _apply_insert(self, connection, table: TableSchema, message: LedgerMessage, delivery: ChannelMessage) -> bool:
        row = records_repo.fetch_row(connection, table, message.tx_id)
        if row is not None:
            if row[DATA_HASH] == message.data_hash:
                return False
            raise ApplyConflict(
                f"INSERT {table.name}/{message.tx_id}: row exists with hash {row[DATA_HASH]}, "
                f"message declares {message.data_hash}",
                sequence=delivery.sequence,
            )
        if message.data is None:
            raise ApplyConflict(
                f"INSERT {table.name}/{message.tx_id}: row is missing and the message carries no payload",
                sequence=delivery.sequence,
            )

        fields = table.complete(message.data)
        data_hash = self._checked_hash(fields, message.data_hash, message, delivery)
        timestamp = iso_from_ms(message.timestamp)
        records_repo.insert_row(
            connection,
            table,
            tx_id=message.tx_id,
            fields=fields,
            data_hash=data_hash,
            created_by=actor_of(message.metadata),
            timestamp=timestamp,
        )
        self._record_audit(connection, message, delivery, data_hash=data_hash)
        return True

    def _apply_update(self, connection, table: TableSchema, message: LedgerMessage, delivery: ChannelMessage) -> bool:
        row = records_repo.fetch_row(connection, table, message.tx_id)
        if row is None:
            raise ApplyConflict(
                f"UPDATE {table.name}/{message.tx_id}: row does not exist", sequence=delivery.sequence
            )
        current = row[DATA_HASH]
        if current == message.new_hash:
            return False
        if current != message.previous_hash:
            raise ApplyConflict(
                f"UPDATE {table.name}/{message.tx_id}: local hash {current} matches neither "
                f"previous {message.previous_hash} nor new {message.new_hash}",
                sequence=delivery.sequence,
            )
        if message.data is None:
            raise ApplyConflict(
                f"UPDATE {table.name}/{message.tx_id}: message carries no payload to apply",
                sequence=delivery.sequence,
            )

        patch = table.validate_patch(message.data)
        merged = {**table.decode_row(row), **patch}
        new_hash = self._checked_hash(merged, message.new_hash, message, delivery)
        records_repo.update_row(
            connection,
            table,
            tx_id=message.tx_id,
            patch=patch,
            data_hash=new_hash,
            version=int(row[VERSION]) + 1,
            timestamp=iso_from_ms(message.timestamp),
        )
        self._record_audit(connection, message, delivery, data_hash=new_hash, previous_hash=current)
        return True

    def _apply_delete_soft(
        self, connection, table: TableSchema, message: LedgerMessage, delivery: ChannelMessage
    ) -> bool:
        row = records_repo.fetch_row(connection, table, message.tx_id)
        if row is None:
            raise ApplyConflict(
                f"DELETE_SOFT {table.name}/{message.tx_id}: row does not exist", sequence=delivery.sequence
            )
        if row[IS_DELETED]:
            return False
        self._check_local_hash(row[DATA_HASH], message, delivery)
        records_repo.mark_deleted(
            connection, table, tx_id=message.tx_id, timestamp=iso_from_ms(message.timestamp)
        )
        self._record_audit(connection, message, delivery, data_hash=row[DATA_HASH])
        return True

    def _apply_delete_hard(
        self, connection, table: TableSchema, message: LedgerMessage, delivery: ChannelMessage
    ) -> bool:
        row = records_repo.fetch_row(connection, table, message.tx_id)
        if row is None:
            return False
        self._check_local_hash(row[DATA_HASH], message, delivery)
        records_repo.remove_row(connection, table, tx_id=message.tx_id)
        self._record_audit(connection, message, delivery, data_hash=row[DATA_HASH])
        return True

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _checked_hash(self, fields, declared: str | None, message: LedgerMessage, delivery: ChannelMessage) -> str:
        calculated = compute_hash(fields)
        if calculated != declared:
            if self.verify_hashes:
                raise ApplyConflict(
                    f"{message.type.value} {message.table}/{message.tx_id}: payload hashes to "
                    f"{calculated}, message declares {declared}",
                    sequence=delivery.sequence,
                )
            logger.warning(
                "Payload hash mismatch at sequence %d accepted (verify_hashes off)", delivery.sequence
            )
        return calculated

    def _check_local_hash(self, local: str, message: LedgerMessage, delivery: ChannelMessage) -> None:
        if self.verify_hashes and local != message.data_hash:
            raise ApplyConflict(
                f"{message.type.value} {message.table}/{message.tx_id}: local hash {local} "
                f"differs from declared {message.data_hash}",
                sequence=delivery.sequence,
            )

    def _record_audit(
        self,
        connection: sqlite3.Connection,
        message: LedgerMessage,
        delivery: ChannelMessage,
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
            ledger_timestamp=delivery.timestamp,
            ledger_sequence=delivery.sequence,
            channel_id=self.channel_id,
            metadata=message.metadata,
            actor_id=actor_of(message.metadata),
            origin_address=origin_of(message.metadata),
            recorded_at=_now_iso(),
        )

    # ------------------------------------------------------------------
    # Catch-up replay
    # ------------------------------------------------------------------

    def replay(self, until_sequence: int | None = None) -> ReplaySummary:
        """Apply everything after the cursor up to the channel head.

        On a fresh store this rebuilds every table from sequence 1.  The run
        stops at the first FAILED delivery.
        """
        summary = ReplaySummary()
        head = self.client.channel_info().sequence_number
        target = head if until_sequence is None else min(until_sequence, head)
        start = self.cursor() + 1

        if start <= target:
            with closing(self.client.subscribe(start, follow=False)) as stream:
                for delivery in stream:
                    if delivery.sequence > target:
                        break
                    outcome = self.process(delivery)
                    if outcome is ApplyOutcome.APPLIED:
                        summary.applied += 1
                    elif outcome is ApplyOutcome.DUPLICATE:
                        summary.duplicates += 1
                    elif outcome is ApplyOutcome.SKIPPED:
                        summary.skipped += 1
                    else:
                        summary.failed_sequence = delivery.sequence
                        summary.error = f"apply failed at sequence {delivery.sequence}"
                        break

        summary.last_sequence = self.cursor()
        logger.info(
            "Replay finished at sequence %d (applied=%d, duplicates=%d, skipped=%d, failed=%s)",
            summary.last_sequence,
            summary.applied,
            summary.duplicates,
            summary.skipped,
            summary.failed_sequence,
        )
        return summary

    # ------------------------------------------------------------------
    # Background tailing
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start tailing the channel on a daemon thread."""
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="audited-db-sync", daemon=True)
        self._thread.start()
        logger.info("Sync engine started on channel %s", self.channel_id)

    def stop(self, timeout: float | None = 10.0) -> None:
        """Signal the loop to stop and wait for the in-flight apply to finish."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            if self._thread.is_alive():
                logger.warning("Sync engine did not stop within %ss", timeout)
            self._thread = None

    def shutdown(self, timeout: float | None = 10.0) -> None:
        """Stop tailing and refuse further applies.

        The join is bounded, but the apply lock is not: a delivery that is
        mid-transaction when this is called commits or rolls back before
        ``shutdown`` returns, so the caller can close the pool afterwards.
        The cursor only moves inside that transaction.
        """
        self.stop(timeout)
        with self._apply_lock:
            self._halted = True

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self._follow_once()
            except Exception as exc:
                logger.warning("Sync stream interrupted: %s", exc, exc_info=True)
            if self._stop.is_set():
                break
            self._stop.wait(self.retry_interval)

    def _follow_once(self) -> None:
        """Consume the stream from the cursor until stop or the first failure."""
        start = self.cursor() + 1
        with closing(self.client.subscribe(start, stop=self._stop, follow=True)) as stream:
            for delivery in stream:
                if self.process(delivery) is ApplyOutcome.FAILED:
                    logger.error(
                        "Sync stalled at sequence %d; retrying in %ss", delivery.sequence, self.retry_interval
                    )
                    return
                if self._stop.is_set():
                    return


def _now_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds")
