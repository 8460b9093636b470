"""Tests for caller metadata sanitising."""

import pytest

from audited_db.errors import SchemaViolation
from audited_db.metadata import actor_of, origin_of, sanitize_metadata


@pytest.mark.unit
def test_secret_keys_are_stripped_case_insensitively():
    cleaned = sanitize_metadata(
        {
            "user_id": "u1",
            "Password": "hunter2",
            "API_KEY": "abc",
            "token": "t",
            "reason": "import",
        }
    )

    assert cleaned == {"user_id": "u1", "reason": "import"}


@pytest.mark.unit
def test_input_is_not_modified():
    original = {"secret": "s", "note": "n"}

    sanitize_metadata(original)

    assert original == {"secret": "s", "note": "n"}


@pytest.mark.unit
def test_none_becomes_empty():
    assert sanitize_metadata(None) == {}


@pytest.mark.unit
@pytest.mark.parametrize("value", ["user=1", ["user_id"], 42])
def test_non_mapping_is_rejected(value):
    with pytest.raises(SchemaViolation, match="mapping"):
        sanitize_metadata(value)


@pytest.mark.unit
def test_actor_and_origin_accept_both_spellings():
    assert actor_of({"user_id": 7}) == "7"
    assert actor_of({"userId": "alice"}) == "alice"
    assert origin_of({"ip_address": "10.0.0.1"}) == "10.0.0.1"
    assert origin_of({"ipAddress": "::1"}) == "::1"


@pytest.mark.unit
def test_actor_and_origin_missing():
    assert actor_of({}) is None
    assert origin_of({"user_id": None}) is None
