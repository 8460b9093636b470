"""audited-db: tamper-evident auditing for a relational store.

Every mutation is fingerprinted with a canonical SHA-256 hash, published to an
external append-only, globally ordered channel, and recorded in an
append-only audit log, all inside one local transaction.  Integrity can be
re-verified at any time, and the store can be rebuilt by replaying the
channel.

Version Management
------------------
``__version__`` is read from the installed package metadata at import time.
The single source of truth is the ``version`` field in ``pyproject.toml``.
"""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version

try:
    __version__: str = version("audited-db")
except PackageNotFoundError:
    __version__ = "0.1.0"

from audited_db.config import AuditedDbConfig, load_config  # noqa: E402
from audited_db.database import AuditedDatabase  # noqa: E402
from audited_db.events import Events  # noqa: E402
from audited_db.hashing import canonical_bytes, compute_hash  # noqa: E402
from audited_db.integrity import IntegrityResult, IntegrityStatus  # noqa: E402
from audited_db.logging_config import configure_logging  # noqa: E402
from audited_db.schema import DatabaseSchema  # noqa: E402
from audited_db.sync import ApplyOutcome, ReplaySummary  # noqa: E402

__all__ = [
    "ApplyOutcome",
    "AuditedDatabase",
    "AuditedDbConfig",
    "DatabaseSchema",
    "Events",
    "IntegrityResult",
    "IntegrityStatus",
    "ReplaySummary",
    "__version__",
    "canonical_bytes",
    "compute_hash",
    "configure_logging",
    "load_config",
]
