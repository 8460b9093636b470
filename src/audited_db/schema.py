"""Typed per-table schema descriptors.

A schema is supplied once, at :meth:`AuditedDatabase.initialize`, either as a
mapping or as a YAML file::

    users:
      name:   {type: string, nullable: false}
      email:  {type: string, unique: true}
      age:    integer
      active: {type: boolean, default: true}

It is validated up front and is read-only afterwards.  The descriptors are the
*only* source of identifiers that ever reach SQL text: table names, column
names, and ordering fields coming from callers are checked against them and
then quoted.  Values are always bound as parameters.

Column types and their storage
------------------------------
==========================================  =========  ======================
Declared type                               SQLite     Python value
==========================================  =========  ======================
string, text, varchar, uuid, date,
datetime, time                              TEXT       ``str``
integer, int, bigint, timestamp (ms epoch)  INTEGER    ``int``
number, float, double                       REAL       ``float``
boolean, bool                               INTEGER    ``bool``
json, jsonb, array                          TEXT       any JSON value
binary                                      BLOB       ``bytes``
==========================================  =========  ======================

Values are coerced to the Python type on the way in, so that the canonical
hash computed at write time is exactly the hash recomputed from the row read
back later (``30`` stored in a REAL column comes back as ``30.0``; coercing
first keeps both sides equal).
"""

from __future__ import annotations

import base64
import binascii
import json
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from audited_db.errors import SchemaViolation
from audited_db.hashing import BINARY_PREFIX, canonical_bytes

# ── Identifier rules ──────────────────────────────────────────────────────────
# User identifiers may not start with an underscore: that namespace belongs to
# the system columns and system tables.
_IDENTIFIER_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_]{0,62}$")

# ── System columns present on every user table ────────────────────────────────
TX_ID = "_tx_id"
CREATED_AT = "_created_at"
UPDATED_AT = "_updated_at"
VERSION = "_version"
DATA_HASH = "_data_hash"
CREATED_BY = "_created_by"
IS_DELETED = "_is_deleted"

SYSTEM_COLUMNS = (TX_ID, CREATED_AT, UPDATED_AT, VERSION, DATA_HASH, CREATED_BY, IS_DELETED)

_TEXT_TYPES = {"string", "text", "varchar", "uuid", "date", "datetime", "time"}
_INTEGER_TYPES = {"integer", "int", "bigint", "timestamp"}
_REAL_TYPES = {"number", "float", "double"}
_BOOLEAN_TYPES = {"boolean", "bool"}
_JSON_TYPES = {"json", "jsonb", "array"}
_BINARY_TYPES = {"binary"}

# SQLite INTEGER is a signed 64-bit value.
_INTEGER_MIN = -(2**63)
_INTEGER_MAX = 2**63 - 1

_KIND_BY_TYPE: dict[str, str] = {
    **{name: "text" for name in _TEXT_TYPES},
    **{name: "integer" for name in _INTEGER_TYPES},
    **{name: "real" for name in _REAL_TYPES},
    **{name: "boolean" for name in _BOOLEAN_TYPES},
    **{name: "json" for name in _JSON_TYPES},
    **{name: "binary" for name in _BINARY_TYPES},
}

_SQL_TYPE_BY_KIND = {
    "text": "TEXT",
    "integer": "INTEGER",
    "real": "REAL",
    "boolean": "INTEGER",
    "json": "TEXT",
    "binary": "BLOB",
}


def is_valid_identifier(name: str) -> bool:
    """Return True when *name* is acceptable as a user table or column name."""
    return isinstance(name, str) and bool(_IDENTIFIER_RE.match(name))


def quote_identifier(name: str) -> str:
    """Double-quote an identifier that has already passed whitelist checks."""
    return '"' + name.replace('"', '""') + '"'


@dataclass(frozen=True)
class ColumnSpec:
    """Descriptor for one domain column.

    Attributes:
        name: Column name.
        type: Declared type, lower-cased (see module docstring).
        nullable: Whether ``None`` is an acceptable value.
        unique: Whether a UNIQUE constraint is declared.
        default: Value used when an insert omits the field.  Already coerced.
    """

    name: str
    type: str
    nullable: bool = True
    unique: bool = False
    default: Any = None

    @property
    def kind(self) -> str:
        return _KIND_BY_TYPE[self.type]

    @property
    def sql_type(self) -> str:
        return _SQL_TYPE_BY_KIND[self.kind]

    def coerce(self, value: Any, *, table: str) -> Any:
        """Normalise *value* to this column's Python type.

        Raises:
            SchemaViolation: On ``None`` for a non-nullable column or on a
                value whose type does not fit the column.
        """
        if value is None:
            if not self.nullable:
                raise SchemaViolation(
                    f"Field {self.name!r} in table {table!r} may not be null",
                    table=table,
                    field=self.name,
                )
            return None

        kind = self.kind
        if kind == "text" and isinstance(value, str):
            return value
        if kind == "integer" and isinstance(value, int) and not isinstance(value, bool):
            return self._check_integer_range(value, table=table)
        if kind == "integer" and isinstance(value, float) and value.is_integer():
            return self._check_integer_range(int(value), table=table)
        if kind == "real" and isinstance(value, (int, float)) and not isinstance(value, bool):
            number = float(value)
            # SQLite stores -0.0 as 0, so the signed zero would not survive a round trip.
            return 0.0 if number == 0 else number
        if kind == "boolean" and isinstance(value, bool):
            return value
        if kind == "binary" and isinstance(value, (bytes, bytearray)):
            return bytes(value)
        if kind == "binary" and isinstance(value, str) and value.startswith(BINARY_PREFIX):
            # Canonical JSON renders bytes this way; payloads replayed from the
            # channel arrive in that form.
            try:
                return base64.b64decode(value[len(BINARY_PREFIX):], validate=True)
            except binascii.Error as exc:
                raise SchemaViolation(
                    f"Field {self.name!r} in table {table!r} has invalid base64 content",
                    table=table,
                    field=self.name,
                ) from exc
        if kind == "json":
            return value

        raise SchemaViolation(
            f"Field {self.name!r} in table {table!r} expects {self.type}, "
            f"got {type(value).__name__}",
            table=table,
            field=self.name,
        )

    def _check_integer_range(self, value: int, *, table: str) -> int:
        if not _INTEGER_MIN <= value <= _INTEGER_MAX:
            raise SchemaViolation(
                f"Field {self.name!r} in table {table!r} is outside the 64-bit integer range",
                table=table,
                field=self.name,
            )
        return value

    def to_db(self, value: Any) -> Any:
        """Convert an already-coerced value into a bound SQL parameter."""
        if value is None:
            return None
        if self.kind == "boolean":
            return 1 if value else 0
        if self.kind == "json":
            return canonical_bytes(value).decode("utf-8")
        return value

    def from_db(self, value: Any) -> Any:
        """Convert a stored SQLite value back into the column's Python type."""
        if value is None:
            return None
        if self.kind == "boolean":
            return bool(value)
        if self.kind == "json":
            return json.loads(value)
        if self.kind == "real":
            return float(value)
        if self.kind == "binary":
            return bytes(value)
        return value


@dataclass(frozen=True)
class TableSchema:
    """Descriptor for one user table: an ordered set of :class:`ColumnSpec`."""

    name: str
    columns: tuple[ColumnSpec, ...]
    _by_name: dict[str, ColumnSpec] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "_by_name", {column.name: column for column in self.columns})

    @property
    def column_names(self) -> tuple[str, ...]:
        return tuple(column.name for column in self.columns)

    def column(self, name: str) -> ColumnSpec:
        """Return the column descriptor for *name*.

        Raises:
            SchemaViolation: If the column is not declared.
        """
        spec = self._by_name.get(name)
        if spec is None:
            raise SchemaViolation(
                f"Unknown field: {name!r} in table {self.name!r}", table=self.name, field=name
            )
        return spec

    def has_column(self, name: str) -> bool:
        return name in self._by_name

    def validate_patch(self, fields: Mapping[str, Any]) -> dict[str, Any]:
        """Check and coerce a partial field set (update patches)."""
        if not isinstance(fields, Mapping):
            raise SchemaViolation(f"Fields for table {self.name!r} must be a mapping", table=self.name)
        return {name: self.column(name).coerce(value, table=self.name) for name, value in fields.items()}

    def complete(self, fields: Mapping[str, Any]) -> dict[str, Any]:
        """Validate *fields* and fill every undeclared column with its default.

        The returned mapping contains exactly one entry per declared column,
        in declaration order, which is the field set that gets stored and
        hashed.
        """
        checked = self.validate_patch(fields)
        completed: dict[str, Any] = {}
        for column in self.columns:
            if column.name in checked:
                completed[column.name] = checked[column.name]
            else:
                completed[column.name] = column.coerce(column.default, table=self.name)
        return completed

    def decode_row(self, row: Mapping[str, Any]) -> dict[str, Any]:
        """Return the domain fields of a raw row, converted to Python types."""
        return {column.name: column.from_db(row[column.name]) for column in self.columns}

    def to_mapping(self) -> dict[str, dict[str, Any]]:
        return {
            column.name: {
                "type": column.type,
                "nullable": column.nullable,
                "unique": column.unique,
                "default": column.default,
            }
            for column in self.columns
        }


@dataclass(frozen=True)
class DatabaseSchema:
    """All table descriptors for one database, keyed by table name."""

    tables: dict[str, TableSchema]

    def table(self, name: str) -> TableSchema:
        """Return the descriptor for *name*.

        Raises:
            SchemaViolation: If the table is not declared.
        """
        spec = self.tables.get(name) if isinstance(name, str) else None
        if spec is None:
            raise SchemaViolation(f"Unknown table: {name!r}", table=name)
        return spec

    @property
    def table_names(self) -> tuple[str, ...]:
        return tuple(self.tables)

    def to_mapping(self) -> dict[str, dict[str, dict[str, Any]]]:
        """Plain-data rendering, used for the SCHEMA_INIT message and ``_schema_versions``."""
        return {name: table.to_mapping() for name, table in self.tables.items()}

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> DatabaseSchema:
        """Build and validate a schema from ``{table: {column: spec}}``.

        A column spec is either a type name (``"string"``) or a mapping with
        ``type`` and optional ``nullable`` (default true), ``unique`` (default
        false) and ``default`` keys.

        Raises:
            SchemaViolation: On invalid identifiers, unknown types, empty
                tables, or defaults that do not fit their column.
        """
        if not isinstance(raw, Mapping) or not raw:
            raise SchemaViolation("Schema must be a non-empty mapping of tables")

        tables: dict[str, TableSchema] = {}
        for table_name, columns_raw in raw.items():
            if not is_valid_identifier(table_name):
                raise SchemaViolation(f"Invalid table name: {table_name!r}", table=str(table_name))
            if not isinstance(columns_raw, Mapping) or not columns_raw:
                raise SchemaViolation(
                    f"Table {table_name!r} must declare at least one column", table=table_name
                )
            columns = tuple(
                _parse_column(table_name, column_name, column_raw)
                for column_name, column_raw in columns_raw.items()
            )
            tables[table_name] = TableSchema(name=table_name, columns=columns)
        return cls(tables=tables)


def load_schema_file(path: Path | str) -> DatabaseSchema:
    """Load a schema from a YAML file (see module docstring for the format).

    Raises:
        FileNotFoundError: If *path* does not exist.
        SchemaViolation: If the document is not a valid schema.
    """
    schema_path = Path(path)
    if not schema_path.exists():
        raise FileNotFoundError(f"Schema file not found: {schema_path}")

    with schema_path.open(encoding="utf-8") as fh:
        raw = yaml.safe_load(fh)

    if not isinstance(raw, dict):
        raise SchemaViolation(f"{schema_path.name} must be a YAML mapping at the top level")
    # Accept either the bare table mapping or one nested under "tables".
    if "tables" in raw and isinstance(raw["tables"], dict):
        raw = raw["tables"]
    return DatabaseSchema.from_mapping(raw)


def _parse_column(table_name: str, column_name: Any, raw: Any) -> ColumnSpec:
    if not is_valid_identifier(column_name):
        raise SchemaViolation(
            f"Invalid column name {column_name!r} in table {table_name!r}",
            table=table_name,
            field=str(column_name),
        )

    if isinstance(raw, str):
        raw = {"type": raw}
    if not isinstance(raw, Mapping):
        raise SchemaViolation(
            f"Column {column_name!r} in table {table_name!r} must be a type name or mapping",
            table=table_name,
            field=column_name,
        )

    type_name = str(raw.get("type", "string")).lower()
    if type_name not in _KIND_BY_TYPE:
        raise SchemaViolation(
            f"Unknown type {type_name!r} for column {column_name!r} in table {table_name!r}",
            table=table_name,
            field=column_name,
        )

    spec = ColumnSpec(
        name=column_name,
        type=type_name,
        nullable=raw.get("nullable", True) is not False,
        unique=bool(raw.get("unique", False)),
    )
    default = _parse_default(spec, raw.get("default"))
    if default is not None:
        default = spec.coerce(default, table=table_name)
    return ColumnSpec(
        name=spec.name,
        type=spec.type,
        nullable=spec.nullable,
        unique=spec.unique,
        default=default,
    )


def _parse_default(spec: ColumnSpec, value: Any) -> Any:
    # Defaults written as SQL literals ("TRUE", "FALSE") are still accepted
    # for boolean columns.
    if spec.kind == "boolean" and isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "1"):
            return True
        if lowered in ("false", "0"):
            return False
    return value
