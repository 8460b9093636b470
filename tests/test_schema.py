"""Tests for schema descriptors, value coercion and YAML loading."""

import pytest

from audited_db.errors import SchemaViolation
from audited_db.schema import ColumnSpec, DatabaseSchema, load_schema_file


@pytest.mark.unit
def test_from_mapping_accepts_type_shorthand_and_full_specs(sample_schema):
    schema = DatabaseSchema.from_mapping(sample_schema)

    users = schema.table("users")
    assert users.column_names == ("name", "email", "age", "active", "tags")
    assert users.column("age") == ColumnSpec(name="age", type="integer")
    assert users.column("name").nullable is False
    assert users.column("email").unique is True
    assert users.column("active").default is True
    assert schema.table_names == ("users", "documents")


@pytest.mark.unit
@pytest.mark.parametrize(
    "raw",
    [
        {},
        {"_private": {"a": "string"}},
        {"1users": {"a": "string"}},
        {"users": {}},
        {"users": {"_hidden": "string"}},
        {"users": {"name": "varchar(20)"}},
        {"users": {"name": 42}},
        {"users": {"age": {"type": "integer", "default": "old"}}},
    ],
)
def test_invalid_schemas_are_rejected(raw):
    with pytest.raises(SchemaViolation):
        DatabaseSchema.from_mapping(raw)


@pytest.mark.unit
def test_unknown_table_and_column_raise_schema_violation(sample_schema):
    schema = DatabaseSchema.from_mapping(sample_schema)

    with pytest.raises(SchemaViolation, match="Unknown table"):
        schema.table("orders")
    with pytest.raises(SchemaViolation, match="Unknown field") as excinfo:
        schema.table("users").column("nickname")
    assert excinfo.value.field == "nickname"


@pytest.mark.unit
def test_complete_fills_defaults_and_nulls(sample_schema):
    users = DatabaseSchema.from_mapping(sample_schema).table("users")

    completed = users.complete({"name": "Alice", "age": 30})

    assert completed == {
        "name": "Alice",
        "email": None,
        "age": 30,
        "active": True,
        "tags": None,
    }
    assert list(completed) == list(users.column_names)


@pytest.mark.unit
def test_complete_requires_non_nullable_fields(sample_schema):
    users = DatabaseSchema.from_mapping(sample_schema).table("users")

    with pytest.raises(SchemaViolation, match="may not be null"):
        users.complete({"age": 30})


@pytest.mark.unit
@pytest.mark.parametrize(
    ("type_name", "value", "expected"),
    [
        ("integer", 7, 7),
        ("integer", 7.0, 7),
        ("number", 30, 30.0),
        ("boolean", False, False),
        ("string", "x", "x"),
        ("json", {"k": [1, 2]}, {"k": [1, 2]}),
        ("binary", b"\x01", b"\x01"),
        ("binary", "base64:AQI=", b"\x01\x02"),
    ],
)
def test_coerce_normalises_values(type_name, value, expected):
    column = ColumnSpec(name="c", type=type_name)
    result = column.coerce(value, table="t")
    assert result == expected
    assert type(result) is type(expected)


@pytest.mark.unit
@pytest.mark.parametrize(
    ("type_name", "value"),
    [
        ("integer", True),
        ("integer", 1.5),
        ("integer", "7"),
        ("number", "1.0"),
        ("boolean", 1),
        ("string", 5),
        ("binary", "not-prefixed"),
        ("binary", "base64:***"),
    ],
)
def test_coerce_rejects_mismatched_types(type_name, value):
    with pytest.raises(SchemaViolation):
        ColumnSpec(name="c", type=type_name).coerce(value, table="t")


@pytest.mark.unit
def test_storage_conversion_round_trips():
    tags = ColumnSpec(name="tags", type="json")
    active = ColumnSpec(name="active", type="boolean")
    score = ColumnSpec(name="score", type="number")

    assert tags.to_db({"b": 1, "a": 2}) == '{"a":2,"b":1}'
    assert tags.from_db('{"a":2,"b":1}') == {"a": 2, "b": 1}
    assert active.to_db(True) == 1
    assert active.from_db(0) is False
    assert score.from_db(3) == 3.0
    assert tags.to_db(None) is None


@pytest.mark.unit
def test_boolean_defaults_accept_sql_literals():
    schema = DatabaseSchema.from_mapping({"flags": {"on": {"type": "bool", "default": "FALSE"}}})
    assert schema.table("flags").column("on").default is False


@pytest.mark.unit
def test_to_mapping_is_plain_data(sample_schema):
    mapping = DatabaseSchema.from_mapping(sample_schema).to_mapping()
    assert mapping["users"]["name"] == {
        "type": "string",
        "nullable": False,
        "unique": False,
        "default": None,
    }


@pytest.mark.unit
def test_load_schema_file_reads_yaml(tmp_path):
    path = tmp_path / "schema.yaml"
    path.write_text(
        """
tables:
  users:
    name: {type: string, nullable: false}
    age: integer
""",
        encoding="utf-8",
    )

    schema = load_schema_file(path)

    assert schema.table("users").column_names == ("name", "age")


@pytest.mark.unit
def test_load_schema_file_missing(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_schema_file(tmp_path / "absent.yaml")


@pytest.mark.unit
def test_load_schema_file_rejects_non_mapping(tmp_path):
    path = tmp_path / "schema.yaml"
    path.write_text("- just\n- a list\n", encoding="utf-8")

    with pytest.raises(SchemaViolation):
        load_schema_file(path)
