"""Tests for the record, audit and cursor repositories and for bootstrap DDL."""

from __future__ import annotations

import sqlite3

import pytest

from audited_db.db import audit_repo, cursor_repo, records_repo
from audited_db.db.bootstrap import create_infrastructure, record_schema_version
from audited_db.db.connection import ConnectionPool
from audited_db.errors import InvalidFilter
from audited_db.hashing import compute_hash
from audited_db.schema import DatabaseSchema

TS = "2026-01-01T00:00:00.000+00:00"


@pytest.fixture
def schema(sample_schema):
    return DatabaseSchema.from_mapping(sample_schema)


@pytest.fixture
def pool(tmp_path, schema):
    pool = ConnectionPool(tmp_path / "repo.db", max_size=2)
    with pool.transaction() as conn:
        create_infrastructure(conn, schema)
    yield pool
    pool.close()


def _insert_user(conn, schema, tx_id, **fields):
    users = schema.table("users")
    completed = users.complete(fields)
    records_repo.insert_row(
        conn,
        users,
        tx_id=tx_id,
        fields=completed,
        data_hash=compute_hash(completed),
        created_by="u-1",
        timestamp=TS,
    )
    return completed


def _append(conn, tx_id, *, sequence, operation="INSERT", channel_id="chan"):
    return audit_repo.append_entry(
        conn,
        tx_id=tx_id,
        table="users",
        operation=operation,
        data_hash="h" * 64,
        previous_hash=None,
        ledger_timestamp=1_700_000_000_000 + sequence,
        ledger_sequence=sequence,
        channel_id=channel_id,
        metadata={"user_id": "u-1"},
        actor_id="u-1",
        origin_address=None,
        recorded_at=TS,
    )


# ── Bootstrap ─────────────────────────────────────────────────────────────────


@pytest.mark.db
def test_create_infrastructure_is_idempotent(pool, schema):
    with pool.transaction() as conn:
        create_infrastructure(conn, schema)

    with pool.connection() as conn:
        names = {
            row["name"]
            for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
        }
    assert {"_audit_log", "_schema_versions", "_sync_cursor", "users", "documents"} <= names


@pytest.mark.db
def test_record_schema_version_ignores_duplicate_sequences(pool, schema):
    with pool.transaction() as conn:
        kwargs = dict(
            db_name="testdb",
            version="1.0.0",
            schema=schema.to_mapping(),
            channel_id="chan",
            ledger_sequence=1,
            applied_at=TS,
        )
        assert record_schema_version(conn, **kwargs) is True
        assert record_schema_version(conn, **kwargs) is False


# ── Records ───────────────────────────────────────────────────────────────────


@pytest.mark.db
def test_insert_and_fetch_round_trip(pool, schema):
    users = schema.table("users")
    with pool.transaction() as conn:
        completed = _insert_user(conn, schema, "tx-1", name="Alice", age=30, tags=["a", "b"])

    with pool.connection() as conn:
        record = records_repo.row_to_record(users, records_repo.fetch_row(conn, users, "tx-1"))

    assert record.fields == completed
    assert record.version == 1
    assert record.is_deleted is False
    assert record.created_by == "u-1"
    assert record.created_at == record.updated_at == TS
    assert compute_hash(record.fields) == record.data_hash


@pytest.mark.db
def test_update_and_soft_delete(pool, schema):
    users = schema.table("users")
    with pool.transaction() as conn:
        _insert_user(conn, schema, "tx-1", name="Alice", age=30)
        records_repo.update_row(
            conn, users, tx_id="tx-1", patch={"age": 31}, data_hash="n" * 64, version=2, timestamp="later"
        )
        records_repo.mark_deleted(conn, users, tx_id="tx-1", timestamp="latest")

    with pool.connection() as conn:
        assert records_repo.fetch_row(conn, users, "tx-1", include_deleted=False) is None
        row = records_repo.fetch_row(conn, users, "tx-1")

    assert row["age"] == 31
    assert row["_version"] == 2
    assert row["_data_hash"] == "n" * 64
    assert row["_is_deleted"] == 1
    assert row["_updated_at"] == "latest"


@pytest.mark.db
def test_remove_row(pool, schema):
    users = schema.table("users")
    with pool.transaction() as conn:
        _insert_user(conn, schema, "tx-1", name="Alice")
        records_repo.remove_row(conn, users, tx_id="tx-1")

    with pool.connection() as conn:
        assert records_repo.fetch_row(conn, users, "tx-1") is None


@pytest.mark.db
def test_select_rows_filters_orders_and_pages(pool, schema):
    users = schema.table("users")
    with pool.transaction() as conn:
        for index, (name, age) in enumerate([("Alice", 30), ("Bob", 25), ("Carol", 35), ("Dan", 40)]):
            _insert_user(conn, schema, f"tx-{index}", name=name, age=age)
        records_repo.mark_deleted(conn, users, tx_id="tx-3", timestamp=TS)

    with pool.connection() as conn:
        in_range = records_repo.select_rows(
            conn, users, where={"age": {"$gte": 25, "$lte": 35}}, order_by="age DESC"
        )
        default_order = records_repo.select_rows(conn, users)
        paged = records_repo.select_rows(conn, users, order_by="age", limit=1, offset=1)
        offset_only = records_repo.select_rows(conn, users, offset=2)
        with_deleted = records_repo.select_rows(conn, users, include_deleted=True)

    assert [row["name"] for row in in_range] == ["Carol", "Alice", "Bob"]
    assert [row["name"] for row in default_order] == ["Alice", "Bob", "Carol"]
    assert [row["name"] for row in paged] == ["Alice"]
    assert [row["name"] for row in offset_only] == ["Carol"]
    assert len(with_deleted) == 4


@pytest.mark.db
def test_select_rows_like_and_ilike(pool, schema):
    users = schema.table("users")
    with pool.transaction() as conn:
        _insert_user(conn, schema, "tx-1", name="Alice", email="ALICE@example.com")
        _insert_user(conn, schema, "tx-2", name="alan", email="alan@example.com")

    with pool.connection() as conn:
        like = records_repo.select_rows(conn, users, where={"name": {"$like": "A%"}})
        ilike = records_repo.select_rows(conn, users, where={"email": {"$ilike": "al%"}})

    assert [row["name"] for row in like] == ["Alice"]
    assert [row["name"] for row in ilike] == ["Alice", "alan"]


@pytest.mark.db
def test_select_rows_ilike_folds_non_ascii_text(pool, schema):
    users = schema.table("users")
    with pool.transaction() as conn:
        _insert_user(conn, schema, "tx-1", name="ÉCOLE")
        _insert_user(conn, schema, "tx-2", name="Straße")
        _insert_user(conn, schema, "tx-3", name="ecole")

    with pool.connection() as conn:
        accented = records_repo.select_rows(conn, users, where={"name": {"$ilike": "école"}})
        sharp_s = records_repo.select_rows(conn, users, where={"name": {"$ilike": "STRASSE"}})
        exact = records_repo.select_rows(conn, users, where={"name": {"$like": "école"}})

    assert [row["name"] for row in accented] == ["ÉCOLE"]
    assert [row["name"] for row in sharp_s] == ["Straße"]
    assert exact == []


@pytest.mark.db
def test_select_rows_rejects_negative_paging(pool, schema):
    users = schema.table("users")
    with pool.connection() as conn:
        with pytest.raises(InvalidFilter):
            records_repo.select_rows(conn, users, limit=-1)
        with pytest.raises(InvalidFilter):
            records_repo.select_rows(conn, users, offset=-5)


@pytest.mark.db
def test_unique_constraint_is_enforced(pool, schema):
    with pool.transaction() as conn:
        _insert_user(conn, schema, "tx-1", name="Alice", email="a@example.com")

    with pytest.raises(sqlite3.IntegrityError):
        with pool.transaction() as conn:
            _insert_user(conn, schema, "tx-2", name="Other", email="a@example.com")


# ── Audit trail ───────────────────────────────────────────────────────────────


@pytest.mark.db
def test_audit_trail_is_in_commit_order(pool):
    with pool.transaction() as conn:
        _append(conn, "tx-1", sequence=2)
        _append(conn, "tx-1", sequence=3, operation="UPDATE")
        _append(conn, "tx-2", sequence=4)

    with pool.connection() as conn:
        trail = audit_repo.get_trail(conn, table="users", tx_id="tx-1")
        newest = audit_repo.get_trail(conn, descending=True, limit=1)
        updates = audit_repo.get_trail(conn, operation="UPDATE")
        latest = audit_repo.latest_entry(conn, table="users", tx_id="tx-1")
        count = audit_repo.count_entries(conn, table="users", tx_id="tx-1")

    assert [entry.operation for entry in trail] == ["INSERT", "UPDATE"]
    assert trail[0].id < trail[1].id
    assert trail[0].metadata == {"user_id": "u-1"}
    assert trail[0].ledger_timestamp == 1_700_000_000_002
    assert newest[0].tx_id == "tx-2"
    assert [entry.ledger_sequence for entry in updates] == [3]
    assert latest.operation == "UPDATE"
    assert count == 2


@pytest.mark.db
def test_audit_sequence_lookup(pool):
    with pool.transaction() as conn:
        _append(conn, "tx-1", sequence=7)

    with pool.connection() as conn:
        assert audit_repo.has_sequence(conn, channel_id="chan", sequence=7)
        assert not audit_repo.has_sequence(conn, channel_id="chan", sequence=8)
        assert not audit_repo.has_sequence(conn, channel_id="other", sequence=7)


@pytest.mark.db
def test_audit_sequence_is_unique_per_channel(pool):
    with pool.transaction() as conn:
        _append(conn, "tx-1", sequence=7)
        _append(conn, "tx-1", sequence=7, channel_id="other")

    with pytest.raises(sqlite3.IntegrityError):
        with pool.transaction() as conn:
            _append(conn, "tx-2", sequence=7)


@pytest.mark.db
def test_audit_entries_cannot_be_rewritten(pool):
    with pool.transaction() as conn:
        _append(conn, "tx-1", sequence=1)

    with pytest.raises(sqlite3.DatabaseError, match="append-only"):
        with pool.transaction() as conn:
            conn.execute("UPDATE _audit_log SET data_hash = 'forged'")

    with pytest.raises(sqlite3.DatabaseError, match="append-only"):
        with pool.transaction() as conn:
            conn.execute("DELETE FROM _audit_log")

    with pool.connection() as conn:
        assert audit_repo.count_entries(conn, table="users", tx_id="tx-1") == 1


# ── Cursor ────────────────────────────────────────────────────────────────────


@pytest.mark.db
def test_cursor_starts_at_zero_and_never_rewinds(pool):
    with pool.transaction() as conn:
        assert cursor_repo.load_cursor(conn, "chan") == 0
        cursor_repo.advance_cursor(conn, "chan", 5, timestamp=TS)
        cursor_repo.advance_cursor(conn, "chan", 3, timestamp=TS)
        cursor_repo.advance_cursor(conn, "other", 1, timestamp=TS)

    with pool.connection() as conn:
        assert cursor_repo.load_cursor(conn, "chan") == 5
        assert cursor_repo.load_cursor(conn, "other") == 1
