"""Operation counters for one :class:`~audited_db.database.AuditedDatabase`.

Counters are process-local and reset when the database object is created.
They are bumped from caller threads, the sync thread, and the notifier, so
every read and write goes through one lock.
"""

from __future__ import annotations

import threading
from dataclasses import asdict, dataclass


@dataclass(frozen=True)
class MetricsSnapshot:
    """Point-in-time copy of every counter."""

    inserts: int = 0
    updates: int = 0
    deletes: int = 0
    queries: int = 0
    publications: int = 0
    errors: int = 0
    replay_applied: int = 0
    replay_skipped: int = 0
    replay_failed: int = 0
    notifications_dropped: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


COUNTERS = tuple(MetricsSnapshot.__dataclass_fields__)


class Metrics:
    """Thread-safe named counters.

    Example:
        metrics = Metrics()
        metrics.increment("inserts")
        metrics.snapshot().inserts  # 1
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._values: dict[str, int] = {name: 0 for name in COUNTERS}

    def increment(self, name: str, amount: int = 1) -> None:
        """Add *amount* to counter *name*.

        Raises:
            KeyError: If *name* is not a known counter.
        """
        with self._lock:
            if name not in self._values:
                raise KeyError(f"Unknown metric: {name}")
            self._values[name] += amount

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            return MetricsSnapshot(**self._values)
