"""
Shared pytest fixtures for the audited database test suite.

This module provides fixtures that are automatically available to all test files:
- Temporary configuration pointing at a per-test SQLite file and channel root
- Initialized databases (origin) and attachable replicas
- A sample schema covering every column kind

Every database-backed fixture is function scoped: each test gets its own
files under ``tmp_path`` and nothing leaks between tests.
"""

from collections.abc import Callable, Generator
from pathlib import Path

import pytest

from audited_db.config import AuditedDbConfig, use_test_database
from audited_db.database import AuditedDatabase

# ============================================================================
# SCHEMA
# ============================================================================

SAMPLE_SCHEMA = {
    "users": {
        "name": {"type": "string", "nullable": False},
        "email": {"type": "string", "unique": True},
        "age": "integer",
        "active": {"type": "boolean", "default": True},
        "tags": "json",
    },
    "documents": {
        "title": {"type": "string", "nullable": False},
        "body": "binary",
        "score": "number",
    },
}


@pytest.fixture
def sample_schema() -> dict:
    """A two-table schema exercising text, integer, real, boolean, json and binary."""
    return SAMPLE_SCHEMA


# ============================================================================
# CONFIGURATION FIXTURES
# ============================================================================


def _test_config(root: Path) -> AuditedDbConfig:
    cfg = AuditedDbConfig()
    cfg.database.path = str(root / "audited.db")
    cfg.database.pool_size = 4
    cfg.database.pool_timeout_seconds = 2.0
    cfg.ledger.transport = "file"
    cfg.ledger.root = str(root / "channels")
    cfg.ledger.backoff_seconds = 0.0
    cfg.ledger.backoff_max_seconds = 0.0
    # Background tailing is switched on explicitly by the tests that need it.
    cfg.sync.enabled = False
    cfg.sync.poll_interval_seconds = 0.02
    cfg.sync.retry_interval_seconds = 0.05
    return cfg


@pytest.fixture(scope="function")
def cfg(tmp_path: Path) -> Generator[AuditedDbConfig, None, None]:
    """
    Configuration for one test.

    Uses the config system's use_test_database context manager to place the
    SQLite file and the file channel under ``tmp_path``.

    Yields:
        AuditedDbConfig with sync disabled and zero retry backoff
    """
    config = _test_config(tmp_path)
    with use_test_database(config, tmp_path):
        yield config


# ============================================================================
# DATABASE FIXTURES
# ============================================================================


@pytest.fixture(scope="function")
def db(cfg: AuditedDbConfig) -> Generator[AuditedDatabase, None, None]:
    """
    An initialized database on a freshly created channel.

    Yields:
        AuditedDatabase named ``testdb`` with :data:`SAMPLE_SCHEMA`

    Cleanup:
        Closes the database (sync engine, notifier, pool)
    """
    database = AuditedDatabase(cfg)
    database.initialize("testdb", SAMPLE_SCHEMA)
    yield database
    database.close()


@pytest.fixture(scope="function")
def make_replica(tmp_path: Path) -> Generator[Callable[..., AuditedDatabase], None, None]:
    """
    Factory for replicas attached to an existing channel.

    Each replica has its own SQLite file but shares the channel root of the
    ``cfg`` fixture, so it sees every message the origin publishes.

    Returns:
        ``make(channel_id, *, name="replica", **sync_overrides)``
    """
    created: list[AuditedDatabase] = []

    def make(channel_id: str, *, name: str = "replica", **sync_overrides) -> AuditedDatabase:
        replica_cfg = _test_config(tmp_path)
        replica_cfg.database.path = str(tmp_path / f"{name}.db")
        for key, value in sync_overrides.items():
            setattr(replica_cfg.sync, key, value)
        replica = AuditedDatabase(replica_cfg)
        replica.initialize("testdb", SAMPLE_SCHEMA, channel_id=channel_id)
        created.append(replica)
        return replica

    yield make

    for replica in created:
        replica.close()
