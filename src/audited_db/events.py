"""
Change Notifications for an Audited Database

Every committed mutation and every applied replay message is announced to
in-process subscribers. Notifications are a convenience for callers (cache
invalidation, UI refresh, fan-out); the channel and the audit log stay the
record of what happened.

=============================================================================
DELIVERY GUARANTEES
=============================================================================

1. PUBLISH NEVER BLOCKS
   - ``publish`` puts the event on a bounded queue and returns
   - A full queue drops the event, counts it, and logs a warning
   - The mutation that triggered the event has already committed

2. ONE DISPATCHER, FIFO
   - A single daemon thread drains the queue in order
   - Events from one source are therefore delivered in the order emitted

3. HANDLERS CANNOT HURT THE CALLER
   - Handler exceptions are logged and swallowed by the dispatcher
   - Async handlers are run to completion on the dispatcher thread

4. NO SINGLETON
   - Each database owns its own notifier; closing the database stops it

=============================================================================
USAGE
=============================================================================

    from audited_db.events import Events

    def on_insert(event):
        logger.info("new row %s in %s", event.detail["tx_id"], event.detail["table"])

    unsubscribe = db.on(Events.RECORD_INSERTED, on_insert)

    # Later: stop listening
    unsubscribe()

=============================================================================
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
import logging
import queue
import threading
import time
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, field
from typing import Any

from audited_db.ledger.messages import now_ms

logger = logging.getLogger(__name__)


# =============================================================================
# TYPE ALIASES
# =============================================================================

SyncHandler = Callable[["ChangeEvent"], None]
AsyncHandler = Callable[["ChangeEvent"], Coroutine[Any, Any, None]]
EventHandler = SyncHandler | AsyncHandler
Unsubscribe = Callable[[], None]


# =============================================================================
# EVENT TYPES
# =============================================================================


class Events:
    """Standard notification types, ``domain:action`` in past tense."""

    RECORD_INSERTED = "record:inserted"
    """A row was inserted. detail: table, tx_id, data_hash, sequence."""

    RECORD_UPDATED = "record:updated"
    """A row was updated. detail: table, tx_id, previous_hash, new_hash, version, sequence."""

    RECORD_DELETED = "record:deleted"
    """A row was soft- or hard-deleted. detail: table, tx_id, hard, sequence."""

    REPLAY_APPLIED = "replay:applied"
    """A channel message was applied by the sync engine. detail: sequence, type, table, tx_id."""

    DATABASE_INITIALIZED = "database:initialized"
    """``initialize`` completed. detail: db_name, channel_id."""

    DATABASE_CLOSED = "database:closed"
    """``close`` started; delivered before the dispatcher stops."""


# =============================================================================
# CHANGE EVENT
# =============================================================================


@dataclass(frozen=True)
class EventMetadata:
    """
    Metadata attached to every notification.

    Attributes:
        timestamp: Unix epoch milliseconds (UTC) at publish time. For display
                   only, not ordering.
        source: Component that published (``"database"`` or ``"sync"``).
        sequence: Per-notifier monotonically increasing counter.
    """

    timestamp: int
    source: str
    sequence: int


@dataclass(frozen=True)
class ChangeEvent:
    """
    A single notification.

    Attributes:
        type: One of the :class:`Events` constants.
        detail: Payload describing the change.
        meta: Publish-time metadata.
    """

    type: str
    detail: dict[str, Any] = field(default_factory=dict)
    meta: EventMetadata | None = None

    def __str__(self) -> str:
        if self.meta:
            return f"ChangeEvent(type='{self.type}', source='{self.meta.source}', seq={self.meta.sequence})"
        return f"ChangeEvent(type='{self.type}')"


# =============================================================================
# CHANGE NOTIFIER
# =============================================================================


class ChangeNotifier:
    """
    Per-database subscription registry backed by a bounded queue.

    Args:
        queue_size: Maximum number of undelivered events.
        on_drop: Called (with the dropped event) whenever the queue is full.
    """

    def __init__(self, queue_size: int = 1000, on_drop: Callable[[ChangeEvent], None] | None = None) -> None:
        # =====================================================================
        # HANDLER REGISTRY
        # =====================================================================
        # event_type -> handlers in registration order
        self._handlers: dict[str, list[EventHandler]] = {}
        self._lock = threading.Lock()

        self._queue: queue.Queue[ChangeEvent] = queue.Queue(maxsize=max(1, queue_size))
        self._sequence = itertools.count(1)
        self._on_drop = on_drop

        self._stopping = threading.Event()
        self._thread: threading.Thread | None = None

    # =========================================================================
    # SUBSCRIPTION
    # =========================================================================

    def on(self, event_type: str, handler: EventHandler) -> Unsubscribe:
        """Subscribe *handler* to *event_type*; returns an unsubscribe function."""
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)

        def unsubscribe() -> None:
            with self._lock:
                handlers = self._handlers.get(event_type, [])
                if handler in handlers:
                    handlers.remove(handler)

        return unsubscribe

    def once(self, event_type: str, handler: SyncHandler) -> Unsubscribe:
        """Subscribe for the next matching event only."""

        def wrapper(event: ChangeEvent) -> None:
            unsubscribe()
            handler(event)

        unsubscribe = self.on(event_type, wrapper)
        return unsubscribe

    def handler_count(self, event_type: str) -> int:
        with self._lock:
            return len(self._handlers.get(event_type, []))

    # =========================================================================
    # PUBLISH
    # =========================================================================

    def publish(self, event_type: str, detail: dict[str, Any] | None = None, source: str = "database") -> bool:
        """Queue a notification without blocking.

        Returns:
            ``True`` if queued, ``False`` if dropped because the queue is full
            or the notifier has stopped.
        """
        if self._stopping.is_set():
            return False
        event = ChangeEvent(
            type=event_type,
            detail=detail if detail is not None else {},
            meta=EventMetadata(timestamp=now_ms(), source=source, sequence=next(self._sequence)),
        )
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            logger.warning("Notification queue full; dropping %s", event)
            if self._on_drop is not None:
                self._on_drop(event)
            return False
        return True

    # =========================================================================
    # DISPATCHER LIFECYCLE
    # =========================================================================

    def start(self) -> None:
        """Start the dispatcher thread (no-op if already running)."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stopping.clear()
        self._thread = threading.Thread(target=self._run, name="audited-db-notifier", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        """Deliver what is already queued, then stop the dispatcher."""
        self._stopping.set()
        if self._thread is not None:
            self._thread.join(timeout)
            if self._thread.is_alive():
                logger.warning("Notifier dispatcher did not stop within %ss", timeout)
            self._thread = None

    def flush(self, timeout: float | None = None) -> bool:
        """Block until every queued event has been delivered.

        Returns:
            ``False`` if *timeout* elapsed first.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._queue.all_tasks_done:
            while self._queue.unfinished_tasks:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._queue.all_tasks_done.wait(remaining)
        return True

    def _run(self) -> None:
        while True:
            try:
                event = self._queue.get(timeout=0.1)
            except queue.Empty:
                if self._stopping.is_set():
                    return
                continue
            try:
                self._deliver(event)
            finally:
                self._queue.task_done()

    def _deliver(self, event: ChangeEvent) -> None:
        with self._lock:
            handlers = list(self._handlers.get(event.type, []))

        for handler in handlers:
            try:
                if inspect.iscoroutinefunction(handler):
                    asyncio.run(handler(event))
                else:
                    handler(event)
            except Exception as exc:
                logger.error("Handler error for '%s': %s", event.type, exc, exc_info=True)
