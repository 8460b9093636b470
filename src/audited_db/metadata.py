"""Caller metadata handling.

Metadata travels on the channel and into the audit log, both of which are
append-only, so secrets are stripped before either sees it.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from audited_db.errors import SchemaViolation

#: Keys (compared case-insensitively) that never leave the caller.
SECRET_KEYS = frozenset({"password", "token", "secret", "api_key", "private_key"})

_ACTOR_KEYS = ("user_id", "userId")
_ORIGIN_KEYS = ("ip_address", "ipAddress")


def sanitize_metadata(metadata: Mapping[str, Any] | None) -> dict[str, Any]:
    """Return a copy of *metadata* without secret-bearing keys.

    Raises:
        SchemaViolation: If *metadata* is not a mapping.
    """
    if metadata is None:
        return {}
    if not isinstance(metadata, Mapping):
        raise SchemaViolation("metadata must be a mapping")
    return {
        key: value
        for key, value in metadata.items()
        if not (isinstance(key, str) and key.lower() in SECRET_KEYS)
    }


def _first(metadata: Mapping[str, Any], keys: tuple[str, ...]) -> str | None:
    for key in keys:
        value = metadata.get(key)
        if value is not None:
            return str(value)
    return None


def actor_of(metadata: Mapping[str, Any]) -> str | None:
    """Acting user id carried in the metadata, if any."""
    return _first(metadata, _ACTOR_KEYS)


def origin_of(metadata: Mapping[str, Any]) -> str | None:
    """Caller network address carried in the metadata, if any."""
    return _first(metadata, _ORIGIN_KEYS)
