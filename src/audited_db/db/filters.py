"""Compile caller-supplied filters and orderings into parameterised SQL.

A filter maps field names to either a plain value (equality) or an operator
mapping::

    {"name": "Alice"}                         name = ?
    {"email": None}                           email IS NULL
    {"age": {"$gte": 25, "$lte": 35}}         age >= ? AND age <= ?
    {"status": {"$in": ["new", "paid"]}}      status IN (?, ?)
    {"name": {"$ilike": "al%"}}               casefold(name) LIKE casefold(?)

Field names are resolved against the table's :class:`~audited_db.schema.TableSchema`
(plus the system columns) before they reach SQL text, and are then quoted.
Values are never interpolated; every one becomes a bound parameter, converted
with the column's storage rules.
"""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from audited_db.errors import InvalidFilter
from audited_db.schema import IS_DELETED, SYSTEM_COLUMNS, TableSchema, quote_identifier

_COMPARISON_OPERATORS = {
    "$eq": "=",
    "$ne": "!=",
    "$gt": ">",
    "$gte": ">=",
    "$lt": "<",
    "$lte": "<=",
}
_MEMBERSHIP_OPERATORS = {"$in": "IN", "$nin": "NOT IN"}
_PATTERN_OPERATORS = {"$like", "$ilike"}

SUPPORTED_OPERATORS = frozenset(_COMPARISON_OPERATORS) | frozenset(_MEMBERSHIP_OPERATORS) | _PATTERN_OPERATORS

_ORDER_TERM_RE = re.compile(r"^\s*(-?)([A-Za-z_][A-Za-z0-9_]*)\s*(ASC|DESC)?\s*$", re.IGNORECASE)


@dataclass(frozen=True)
class CompiledFilter:
    """SQL fragments and their parameters, ready to be joined into a statement."""

    conditions: tuple[str, ...]
    params: tuple[Any, ...]


def _system_to_db(column: str, value: Any) -> Any:
    if column == IS_DELETED:
        return 1 if value else 0
    return value


def _resolve(table: TableSchema, field: str) -> tuple[str, Any]:
    """Return ``(quoted column, converter)`` for a whitelisted field name."""
    if field in SYSTEM_COLUMNS:
        return field, lambda value: _system_to_db(field, value)
    if not isinstance(field, str) or not table.has_column(field):
        raise InvalidFilter(
            f"Unknown field: {field!r} in table {table.name!r}", table=table.name, field=str(field)
        )
    spec = table.column(field)
    return quote_identifier(field), spec.to_db


def compile_where(table: TableSchema, where: Mapping[str, Any] | None) -> CompiledFilter:
    """Translate a filter mapping into AND-joined conditions and parameters.

    Raises:
        InvalidFilter: On unknown fields or operators, or malformed operands.
    """
    if where is None:
        return CompiledFilter(conditions=(), params=())
    if not isinstance(where, Mapping):
        raise InvalidFilter(f"Filter for table {table.name!r} must be a mapping", table=table.name)

    conditions: list[str] = []
    params: list[Any] = []
    for field, condition in where.items():
        column, to_db = _resolve(table, field)
        if isinstance(condition, Mapping):
            if not condition:
                raise InvalidFilter(f"Empty operator mapping for field {field!r}", table=table.name, field=field)
            for operator, operand in condition.items():
                sql, values = _compile_operator(table, field, column, to_db, operator, operand)
                conditions.append(sql)
                params.extend(values)
        else:
            sql, values = _compile_operator(table, field, column, to_db, "$eq", condition)
            conditions.append(sql)
            params.extend(values)
    return CompiledFilter(conditions=tuple(conditions), params=tuple(params))


def _compile_operator(
    table: TableSchema,
    field: str,
    column: str,
    to_db,
    operator: str,
    operand: Any,
) -> tuple[str, list[Any]]:
    if operator not in SUPPORTED_OPERATORS:
        raise InvalidFilter(
            f"Unsupported operator {operator!r} on field {field!r}", table=table.name, field=field
        )

    if operator in ("$eq", "$ne") and operand is None:
        return f"{column} IS {'NOT ' if operator == '$ne' else ''}NULL", []

    if operator in _COMPARISON_OPERATORS:
        if isinstance(operand, (Mapping, list, tuple, set)) and operator not in ("$eq", "$ne"):
            raise InvalidFilter(
                f"Operator {operator} on field {field!r} needs a scalar operand",
                table=table.name,
                field=field,
            )
        return f"{column} {_COMPARISON_OPERATORS[operator]} ?", [to_db(operand)]

    if operator in _MEMBERSHIP_OPERATORS:
        if isinstance(operand, (str, bytes, Mapping)) or not isinstance(operand, (Sequence, set, frozenset)):
            raise InvalidFilter(
                f"Operator {operator} on field {field!r} needs a list operand",
                table=table.name,
                field=field,
            )
        values = [to_db(item) for item in operand]
        if not values:
            # Nothing is a member of the empty set.
            return ("0" if operator == "$in" else "1"), []
        placeholders = ", ".join("?" for _ in values)
        return f"{column} {_MEMBERSHIP_OPERATORS[operator]} ({placeholders})", values

    # $like and $ilike
    if not isinstance(operand, str):
        raise InvalidFilter(
            f"Operator {operator} on field {field!r} needs a string pattern",
            table=table.name,
            field=field,
        )
    if operator == "$ilike":
        # casefold() is registered on every pooled connection; SQLite's lower() only folds ASCII.
        return f"casefold({column}) LIKE casefold(?)", [operand]
    return f"{column} LIKE ?", [operand]


def compile_order_by(table: TableSchema, order_by: str | Sequence[Any] | None) -> str:
    """Translate an ordering into an ``ORDER BY`` clause body (or ``""``).

    Accepts ``"age DESC, name"``, ``"-age, name"`` or
    ``[("age", "desc"), "name"]``. A leading ``-`` means descending.

    Raises:
        InvalidFilter: On unknown fields or directions.
    """
    if not order_by:
        return ""

    if isinstance(order_by, str):
        terms: list[tuple[str, str]] = []
        for raw in order_by.split(","):
            match = _ORDER_TERM_RE.match(raw)
            if not match:
                raise InvalidFilter(f"Invalid ordering term: {raw.strip()!r}", table=table.name)
            descending, field, direction = match.groups()
            if descending and direction:
                raise InvalidFilter(f"Invalid ordering term: {raw.strip()!r}", table=table.name)
            terms.append((field, "DESC" if descending else (direction or "ASC").upper()))
    else:
        terms = []
        for item in order_by:
            if isinstance(item, str) and item.startswith("-"):
                field, direction = item[1:], "DESC"
            elif isinstance(item, str):
                field, direction = item, "ASC"
            elif isinstance(item, Sequence) and len(item) == 2:
                field, direction = item[0], str(item[1]).upper()
            else:
                raise InvalidFilter(f"Invalid ordering term: {item!r}", table=table.name)
            terms.append((field, direction))

    rendered = []
    for field, direction in terms:
        if direction not in ("ASC", "DESC"):
            raise InvalidFilter(f"Invalid ordering direction {direction!r}", table=table.name, field=field)
        column, _ = _resolve(table, field)
        rendered.append(f"{column} {direction}")
    return ", ".join(rendered)
