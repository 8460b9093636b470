"""Tests for canonical serialisation and record hashing."""

import hashlib
import math

import pytest

from audited_db.errors import EncodingError
from audited_db.hashing import canonical_bytes, compute_hash, domain_fields


@pytest.mark.unit
def test_canonical_bytes_sorts_keys_and_uses_compact_separators():
    assert canonical_bytes({"name": "Alice", "age": 30}) == b'{"age":30,"name":"Alice"}'


@pytest.mark.unit
def test_canonical_bytes_sorts_nested_mappings():
    assert canonical_bytes({"b": {"z": 1, "a": [2, {"y": 0, "x": 1}]}, "a": None}) == (
        b'{"a":null,"b":{"a":[2,{"x":1,"y":0}],"z":1}}'
    )


@pytest.mark.unit
def test_canonical_bytes_keeps_non_ascii_as_utf8():
    assert canonical_bytes({"name": "Zoë"}) == '{"name":"Zoë"}'.encode()


@pytest.mark.unit
def test_canonical_bytes_renders_bytes_as_base64():
    assert canonical_bytes({"blob": b"\x00\x01\xff"}) == b'{"blob":"base64:AAH/"}'


@pytest.mark.unit
def test_compute_hash_is_sha256_of_canonical_form():
    expected = hashlib.sha256(b'{"age":30,"name":"Alice"}').hexdigest()
    assert compute_hash({"name": "Alice", "age": 30}) == expected
    assert len(expected) == 64


@pytest.mark.unit
def test_compute_hash_independent_of_insertion_order():
    assert compute_hash({"a": 1, "b": 2, "c": 3}) == compute_hash({"c": 3, "a": 1, "b": 2})


@pytest.mark.unit
def test_compute_hash_ignores_system_columns():
    row = {
        "_tx_id": "abc",
        "_version": 4,
        "_data_hash": "deadbeef",
        "_is_deleted": 1,
        "name": "Alice",
    }
    assert compute_hash(row) == compute_hash({"name": "Alice"})


@pytest.mark.unit
def test_compute_hash_changes_with_any_value():
    assert compute_hash({"age": 30}) != compute_hash({"age": 31})
    assert compute_hash({"age": 30}) != compute_hash({"age": "30"})


@pytest.mark.unit
def test_domain_fields_drops_underscore_keys():
    assert domain_fields({"_created_at": "x", "title": "t"}) == {"title": "t"}


@pytest.mark.unit
@pytest.mark.parametrize(
    "fields",
    [
        {"tags": {"a", "b"}},
        {"tags": frozenset({"a"})},
        {"nested": {"deep": {1, 2}}},
        {"score": math.nan},
        {"score": math.inf},
        {"when": object()},
    ],
)
def test_non_deterministic_values_are_rejected(fields):
    with pytest.raises(EncodingError):
        compute_hash(fields)


@pytest.mark.unit
def test_non_string_keys_are_rejected():
    with pytest.raises(EncodingError, match="Non-string key"):
        canonical_bytes({"lookup": {1: "one"}})


@pytest.mark.unit
def test_lone_surrogates_are_rejected():
    with pytest.raises(EncodingError, match="Cannot canonicalise"):
        compute_hash({"name": "\ud800"})
