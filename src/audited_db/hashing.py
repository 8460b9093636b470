"""Canonical serialisation and hashing of record domain fields.

The canonical form of a record is the JSON serialisation of its *domain*
fields only, with keys sorted and compact separators, encoded as UTF-8.
System columns (everything prefixed with ``_``: identifier, timestamps,
version, the hash itself, the delete flag) never participate.

::

    >>> compute_hash({"name": "Alice", "age": 30}) == compute_hash({"age": 30, "name": "Alice"})
    True

Values that have no single deterministic JSON rendering raise
:exc:`~audited_db.errors.EncodingError` instead of producing a digest that
could differ between processes:

- ``set`` / ``frozenset`` (no defined iteration order),
- ``NaN`` / ``Infinity`` (not valid JSON),
- mapping keys that are not strings,
- any other object JSON does not know about.

``bytes`` are accepted and rendered as ``"base64:<payload>"``.
"""

from __future__ import annotations

import base64
import hashlib
import json
from collections.abc import Mapping
from typing import Any

from audited_db.errors import EncodingError

#: Prefix marking system columns; these are excluded from the canonical form.
SYSTEM_PREFIX = "_"

#: Prefix of the string form given to ``bytes`` values.
BINARY_PREFIX = "base64:"


def domain_fields(row: Mapping[str, Any]) -> dict[str, Any]:
    """Return only the domain fields of *row* (drop ``_``-prefixed system columns)."""
    return {key: value for key, value in row.items() if not key.startswith(SYSTEM_PREFIX)}


def canonical_bytes(fields: Any) -> bytes:
    """Serialise *fields* to the canonical byte sequence.

    Raises:
        EncodingError: If any value cannot be serialised deterministically.
    """
    _check_deterministic(fields, path="")
    try:
        text = json.dumps(
            fields,
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
            allow_nan=False,
            default=_encode_extra,
        )
        # Lone surrogates survive json.dumps but not UTF-8 encoding.
        return text.encode("utf-8")
    except (TypeError, ValueError) as exc:
        raise EncodingError(f"Cannot canonicalise fields: {exc}") from exc


def compute_hash(fields: Mapping[str, Any]) -> str:
    """Return the SHA-256 hex digest of the canonical form of the domain fields."""
    return hashlib.sha256(canonical_bytes(domain_fields(fields))).hexdigest()


def _encode_extra(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return BINARY_PREFIX + base64.b64encode(bytes(value)).decode("ascii")
    raise TypeError(f"Object of type {type(value).__name__} is not canonically serialisable")


def _check_deterministic(value: Any, *, path: str) -> None:
    """Walk *value* and reject structures without a stable ordering.

    ``json.dumps`` would happily raise for sets, but it silently coerces
    non-string keys (``{1: "a"}`` and ``{"1": "a"}`` collide), so both are
    rejected here with a path that points at the culprit.
    """
    if isinstance(value, (set, frozenset)):
        raise EncodingError(f"Unordered collection at {path or '<root>'} cannot be hashed")
    if isinstance(value, Mapping):
        for key, item in value.items():
            if not isinstance(key, str):
                raise EncodingError(
                    f"Non-string key {key!r} at {path or '<root>'} cannot be hashed"
                )
            _check_deterministic(item, path=f"{path}.{key}" if path else key)
    elif isinstance(value, (list, tuple)):
        for index, item in enumerate(value):
            _check_deterministic(item, path=f"{path}[{index}]")
