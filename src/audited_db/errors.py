"""Typed exception hierarchy for the audited database.

Every failure a caller can observe is one of the classes below.  The tree is
kept deliberately shallow so callers can catch at the granularity they need:

    AuditedDatabaseError
    ├── ConfigurationError        missing credentials / connection parameters
    ├── NotInitialized            operation before ``initialize()`` completed
    ├── AlreadyInitialized        second ``initialize()`` on one instance
    ├── SchemaViolation           unknown table / field, bad value type
    │   └── InvalidFilter         malformed query filter or ordering
    ├── NotFound                  missing or already-deleted row
    ├── VersionConflict           ``expected_version`` precondition failed
    ├── EncodingError             canonical serialisation / hash failure
    ├── LedgerError               channel-side failures
    │   └── LedgerSubmissionError transient (retried) or permanent (fatal)
    ├── ApplyConflict             replayed message disagrees with local state
    └── DatabaseOperationError    relational infrastructure failure
        ├── DatabaseReadError     query failure
        ├── DatabaseWriteError    mutation / transaction failure
        └── PoolExhausted         no connection available before timeout

Integrity mismatches are *reported* through
:class:`~audited_db.integrity.IntegrityResult`, never raised.
"""

from __future__ import annotations

from dataclasses import dataclass


class AuditedDatabaseError(RuntimeError):
    """Base exception for every error raised by this package."""


class ConfigurationError(AuditedDatabaseError):
    """Required configuration (credentials, paths, endpoints) is missing or invalid."""


class NotInitialized(AuditedDatabaseError):
    """An operation was attempted before ``initialize()`` completed."""


class AlreadyInitialized(AuditedDatabaseError):
    """``initialize()`` was called twice on the same database instance."""


class SchemaViolation(AuditedDatabaseError):
    """A table, field, or value does not conform to the loaded schema.

    Attributes:
        table: Table the violation was detected on, when known.
        field: Offending field name, when known.
    """

    def __init__(self, message: str, *, table: str | None = None, field: str | None = None) -> None:
        super().__init__(message)
        self.table = table
        self.field = field


class InvalidFilter(SchemaViolation):
    """A query filter, operator, or ordering clause is malformed."""


class NotFound(AuditedDatabaseError):
    """The addressed row does not exist (or is soft-deleted, where that matters)."""

    def __init__(self, table: str, tx_id: str, *, detail: str = "not found") -> None:
        super().__init__(f"Record {tx_id!r} in table {table!r}: {detail}")
        self.table = table
        self.tx_id = tx_id


class VersionConflict(AuditedDatabaseError):
    """The row's current version differs from the caller's expected version."""

    def __init__(self, table: str, tx_id: str, *, expected: int, actual: int) -> None:
        super().__init__(
            f"Record {tx_id!r} in table {table!r} is at version {actual}, expected {expected}"
        )
        self.table = table
        self.tx_id = tx_id
        self.expected = expected
        self.actual = actual


class EncodingError(AuditedDatabaseError):
    """A value cannot be serialised deterministically."""


class LedgerError(AuditedDatabaseError):
    """Base class for failures on the external channel."""


class LedgerSubmissionError(LedgerError):
    """Submitting to, or reading from, the channel failed.

    Attributes:
        transient: ``True`` for network-level failures worth retrying;
            ``False`` for permanent rejections (invalid channel, insufficient
            resources) that must be propagated unchanged.
        attempts: Number of attempts made before giving up (``0`` when the
            error was raised by a transport and not yet retried).
    """

    def __init__(self, message: str, *, transient: bool, attempts: int = 0) -> None:
        super().__init__(message)
        self.transient = transient
        self.attempts = attempts


class ApplyConflict(AuditedDatabaseError):
    """A replayed channel message cannot be applied to the local store.

    Attributes:
        sequence: Channel sequence number of the failing message.
    """

    def __init__(self, message: str, *, sequence: int | None = None) -> None:
        super().__init__(message)
        self.sequence = sequence


@dataclass(slots=True)
class DatabaseOperationContext:
    """Structured operation metadata carried by infrastructure exceptions.

    Attributes:
        operation: Stable operation identifier (for example
            ``"records.insert"``).
        details: Optional human-readable context for logs and debugging.
    """

    operation: str
    details: str | None = None


class DatabaseOperationError(AuditedDatabaseError):
    """Relational store failure (connection, SQL, or transaction).

    Args:
        context: Structured operation metadata.
        cause: Optional underlying exception.
    """

    def __init__(
        self,
        *,
        context: DatabaseOperationContext,
        cause: Exception | None = None,
    ) -> None:
        message = context.operation
        if context.details:
            message = f"{message}: {context.details}"
        super().__init__(message)
        self.context = context
        self.cause = cause


class DatabaseReadError(DatabaseOperationError):
    """Query or read failure."""


class DatabaseWriteError(DatabaseOperationError):
    """Mutation or transaction failure."""


class PoolExhausted(DatabaseOperationError):
    """No pooled connection became available before the acquire timeout."""
