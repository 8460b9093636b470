"""SQLite connection primitives and the bounded connection pool.

This module owns connection creation, connection-level pragmas, and
transaction scoping so repository code can stay focused on queries.

Connections are opened in autocommit mode (``isolation_level=None``) and
transactions are started explicitly.  Mutations use ``BEGIN IMMEDIATE``: the
writer lock is taken up front, so a read-modify-write sequence inside the
transaction cannot lose an update to a concurrent writer, and a replayed
message racing a locally originating mutation waits for that mutation's
commit before it looks at the row.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from audited_db.errors import DatabaseOperationContext, DatabaseOperationError, PoolExhausted

logger = logging.getLogger(__name__)


def configure_connection(connection: sqlite3.Connection, *, busy_timeout_ms: int = 5000) -> sqlite3.Connection:
    """Apply connection-level SQLite pragmas required by the application.

    Notes:
        - ``foreign_keys=ON`` is required because SQLite does not enforce
          foreign-key constraints by default.
        - ``busy_timeout`` lets ``BEGIN IMMEDIATE`` wait for a concurrent
          writer instead of failing straight away.
        - ``journal_mode=WAL`` lets readers proceed while a writer holds the
          lock across its ledger round-trip.
        - ``case_sensitive_like=ON`` makes ``$like`` case-sensitive;
          ``$ilike`` applies the ``casefold`` function to both sides.
    """
    connection.row_factory = sqlite3.Row
    connection.execute("PRAGMA foreign_keys = ON")
    connection.execute(f"PRAGMA busy_timeout = {int(busy_timeout_ms)}")
    connection.execute("PRAGMA journal_mode = WAL")
    connection.execute("PRAGMA case_sensitive_like = ON")
    connection.create_function("casefold", 1, _casefold, deterministic=True)
    return connection


def _casefold(value):
    return value.casefold() if isinstance(value, str) else value


def open_connection(path: Path, *, busy_timeout_ms: int = 5000) -> sqlite3.Connection:
    """Create and configure a new SQLite connection usable from any thread."""
    path.parent.mkdir(parents=True, exist_ok=True)
    connection = sqlite3.connect(str(path), check_same_thread=False, isolation_level=None)
    return configure_connection(connection, busy_timeout_ms=busy_timeout_ms)


class ConnectionPool:
    """Bounded pool of SQLite connections.

    At most ``max_size`` connections exist at once.  ``acquire`` blocks for up
    to ``timeout`` seconds and raises :exc:`~audited_db.errors.PoolExhausted`
    after that.  Idle connections are reused most-recently-released first.

    Args:
        path: SQLite database file.
        max_size: Upper bound on open connections.
        timeout: Seconds to wait for a free connection.
        busy_timeout_ms: SQLite busy timeout applied to each connection.
    """

    def __init__(
        self,
        path: Path,
        *,
        max_size: int = 20,
        timeout: float = 10.0,
        busy_timeout_ms: int = 5000,
    ) -> None:
        self.path = path
        self.max_size = max_size
        self.timeout = timeout
        self.busy_timeout_ms = busy_timeout_ms
        self._slots = threading.BoundedSemaphore(max_size)
        self._idle: list[sqlite3.Connection] = []
        self._lock = threading.Lock()
        self._opened = 0
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def opened(self) -> int:
        """Number of connections currently open (idle or in use)."""
        return self._opened

    def acquire(self) -> sqlite3.Connection:
        """Check out a connection, opening a new one if none is idle.

        Raises:
            PoolExhausted: If no connection frees up within ``timeout``.
            DatabaseOperationError: If the pool is closed or a connection
                cannot be opened.
        """
        if self._closed:
            raise DatabaseOperationError(context=DatabaseOperationContext("pool.acquire", "pool is closed"))
        if not self._slots.acquire(timeout=self.timeout):
            raise PoolExhausted(
                context=DatabaseOperationContext(
                    "pool.acquire", f"no connection available within {self.timeout}s"
                )
            )
        with self._lock:
            if self._closed:
                self._slots.release()
                raise DatabaseOperationError(
                    context=DatabaseOperationContext("pool.acquire", "pool is closed")
                )
            if self._idle:
                return self._idle.pop()
        try:
            connection = open_connection(self.path, busy_timeout_ms=self.busy_timeout_ms)
        except (sqlite3.Error, OSError) as exc:
            self._slots.release()
            raise DatabaseOperationError(
                context=DatabaseOperationContext("pool.acquire", str(exc)), cause=exc
            ) from exc
        with self._lock:
            self._opened += 1
        return connection

    def release(self, connection: sqlite3.Connection) -> None:
        """Return a connection to the pool (or close it if the pool is closed)."""
        try:
            if connection.in_transaction:
                connection.rollback()
        except sqlite3.Error:
            logger.warning("Discarding pooled connection after failed rollback", exc_info=True)
            self._discard(connection)
            return

        with self._lock:
            if not self._closed:
                self._idle.append(connection)
                self._slots.release()
                return
        self._discard(connection)

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """Yield a pooled connection for read-only work."""
        connection = self.acquire()
        try:
            yield connection
        finally:
            self.release(connection)

    @contextmanager
    def transaction(self, *, immediate: bool = True) -> Iterator[sqlite3.Connection]:
        """Yield a connection inside an explicit transaction.

        Behavior:
            - ``BEGIN IMMEDIATE`` (or plain ``BEGIN``) on entry.
            - ``COMMIT`` at the end of a successful block.
            - ``ROLLBACK`` before re-raising any exception; the original
              exception is preserved if the rollback itself fails.
        """
        connection = self.acquire()
        try:
            connection.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
            try:
                yield connection
                connection.execute("COMMIT")
            except BaseException:
                try:
                    connection.execute("ROLLBACK")
                except sqlite3.Error:
                    logger.warning("Rollback failed", exc_info=True)
                raise
        finally:
            self.release(connection)

    def close(self) -> None:
        """Close idle connections and refuse new checkouts.

        Connections still checked out are closed when they are released.
        """
        with self._lock:
            self._closed = True
            idle, self._idle = self._idle, []
        for connection in idle:
            self._discard(connection)

    def _discard(self, connection: sqlite3.Connection) -> None:
        try:
            connection.close()
        except sqlite3.Error:
            logger.warning("Error closing pooled connection", exc_info=True)
        with self._lock:
            self._opened -= 1
            if not self._closed:
                self._slots.release()
