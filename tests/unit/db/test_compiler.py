"""Tests for the PartiQL query compiler."""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone

import pytest

from ledgerdoc.db.codec import EncodingError, decode
from ledgerdoc.db.compiler import (
    Operator,
    ParamStyle,
    QueryError,
    build_committed_query,
    build_delete,
    build_history_query,
    build_insert,
    build_key_lookup,
    build_lookup,
    build_select,
    build_update,
    build_where,
    render_literal,
    resolve_subfilters,
)
from ledgerdoc.db.models import UNSAFE_DELETE, UNSAFE_UPDATE, ErrorKind, QueryArgs, Statement
from ledgerdoc.db.schema import SchemaField, SchemaModel
from ledgerdoc.db.types import FieldKind

LITERAL = ParamStyle.LITERAL
NOW = datetime(2024, 6, 1, tzinfo=timezone.utc)


def _params(statement: Statement) -> list:
    return [decode(p) for p in statement.params]


class _Lookup:
    """Records lookup statements and answers each with *rows*."""

    def __init__(self, rows):
        self.rows = rows
        self.seen: list[str] = []

    def __call__(self, statement):
        self.seen.append(statement.text)
        return list(self.rows)


# ------------------------------------------------------------------
# Literals
# ------------------------------------------------------------------


@pytest.mark.parametrize(
    "value, text",
    [
        (None, "NULL"),
        (True, "true"),
        (3, "3"),
        (2.5, "2.5"),
        ("O'Brien", "'O''Brien'"),
        ([1, "a"], "[1, 'a']"),
        ({"a": 1, "b": None}, "{'a': 1, 'b': NULL}"),
        (datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc), "`2024-01-02T03:04:05+00:00`"),
        (datetime(2024, 1, 2, 3, 4, 5), "`2024-01-02T03:04:05-00:00`"),
        (date(2024, 1, 2), "`2024-01-02T`"),
    ],
)
def test_render_literal(value, text):
    assert render_literal(value) == text


def test_render_literal_unsupported():
    with pytest.raises(EncodingError):
        render_literal(object())


def test_operator_parse():
    assert Operator.parse("notIn") is Operator.NOT_IN
    assert Operator.parse("GTE") is Operator.GTE
    assert Operator.GTE.symbol == ">="
    with pytest.raises(QueryError, match="Unknown operator"):
        Operator.parse("like")


# ------------------------------------------------------------------
# WHERE
# ------------------------------------------------------------------


def test_empty_where_is_always_true(person_schema):
    assert build_where({}, "Person", person_schema).text == "1 = 1"
    assert build_where(None, "Person", person_schema).params == ()


def test_where_parameterized(person_schema):
    st = build_where({"name": "Ann", "age": (Operator.GT, 3)}, "Person", person_schema)
    assert st.text == "Person.name = ? AND Person.age > ?"
    assert _params(st) == ["Ann", 3]


def test_where_literal_quotes_strings(person_schema):
    st = build_where({"name": "x' OR '1'='1"}, "Person", person_schema, style=LITERAL)
    assert st.text == "Person.name = 'x'' OR ''1''=''1'"
    assert st.params == ()


@pytest.mark.parametrize(
    "where, text",
    [
        ({"age": 30}, "Person.age = 30"),
        ({"age": (Operator.NE, 30)}, "Person.age != 30"),
        ({"age": (Operator.GTE, 30)}, "Person.age >= 30"),
        ({"age": (Operator.LT, 30)}, "Person.age < 30"),
        ({"age": (Operator.LTE, 30)}, "Person.age <= 30"),
        ({"name": ["a", "b"]}, "Person.name IN ['a', 'b']"),
        ({"name": (Operator.IN, ["a"])}, "Person.name IN ['a']"),
        ({"name": (Operator.NOT_IN, ["a", "b"])}, "Person.name NOT IN ['a', 'b']"),
        ({"age": None}, "Person.age IS NULL"),
        ({"age": (Operator.NE, None)}, "Person.age IS NOT NULL"),
    ],
)
def test_where_operators(person_schema, where, text):
    assert build_where(where, "Person", person_schema, style=LITERAL).text == text


def test_where_in_parameterizes_each_element(person_schema):
    st = build_where({"name": ["a", "b"]}, "Person", person_schema)
    assert st.text == "Person.name IN [?, ?]"
    assert _params(st) == ["a", "b"]


def test_where_unknown_field(person_schema):
    with pytest.raises(QueryError, match="nope is not defined for Person"):
        build_where({"nope": 1}, "Person", person_schema)


def test_where_rejects_non_identifier_paths(person_schema):
    with pytest.raises(QueryError, match="Invalid field path"):
        build_where({"name = 'x' OR 1": 1}, "Person", person_schema)


def test_where_dotted_path(vehicle_schema):
    st = build_where({"specs.make": "VW"}, "Vehicle", vehicle_schema, style=LITERAL)
    assert st.text == "Vehicle.specs.make = 'VW'"


def test_where_reference_subfilter(vehicle_schema):
    st = build_where({"owner": {"name": "Ann"}, "vin": "V1"}, "Vehicle", vehicle_schema, style=LITERAL)
    assert st.text == "Person.name = 'Ann' AND Vehicle.vin = 'V1'"


def test_where_reference_subfilter_unknown_field(vehicle_schema):
    with pytest.raises(QueryError, match="nope is not defined for Person"):
        build_where({"owner": {"nope": 1}}, "Vehicle", vehicle_schema)


def test_where_reference_primitive_filters_foreign_key(vehicle_schema):
    st = build_where({"owner": "p1"}, "Vehicle", vehicle_schema, style=LITERAL)
    assert st.text == "Vehicle.owner = 'p1'"


def test_lookup_rejects_reference_subfilter(vehicle_schema):
    with pytest.raises(QueryError, match="resolve them to keys first"):
        build_lookup("Vehicle", vehicle_schema, "owner", {"owner": {"name": "Ann"}})


def test_key_lookup_is_join_free(vehicle_schema):
    st = build_key_lookup("Vehicle", vehicle_schema, "V1")
    assert st.text == "SELECT * FROM Vehicle WHERE Vehicle.vin = ?"
    assert _params(st) == ["V1"]


def test_key_lookup_needs_primary_key():
    schema = SchemaModel([SchemaField("msg", FieldKind.STRING)])
    with pytest.raises(QueryError, match="no primary key"):
        build_key_lookup("Log", schema, "x")


def test_resolve_subfilters_to_foreign_keys(vehicle_schema):
    lookup = _Lookup([{"id": "p1"}, {"id": "p2"}])
    where = resolve_subfilters(
        "Vehicle", vehicle_schema, {"owner": {"name": "Ann"}, "vin": "V1"}, lookup, style=LITERAL
    )
    assert where == {"owner": (Operator.IN, ["p1", "p2"]), "vin": "V1"}
    assert lookup.seen == ["SELECT Person.id FROM Person WHERE Person.name = 'Ann'"]


def test_resolve_subfilters_needs_lookup(vehicle_schema):
    with pytest.raises(QueryError, match="needs a lookup"):
        resolve_subfilters("Vehicle", vehicle_schema, {"owner": {"name": "Ann"}}, None)
    assert resolve_subfilters("Vehicle", vehicle_schema, {"owner": "p1"}, None) == {"owner": "p1"}


# ------------------------------------------------------------------
# SELECT
# ------------------------------------------------------------------


def test_select_plain(person_schema):
    st = build_select("Person", person_schema)
    assert st.text == "SELECT Person.id, Person.name, Person.age FROM Person WHERE 1 = 1"


def test_select_reference_emits_one_join_with_alias(vehicle_schema):
    st = build_select("Vehicle", vehicle_schema)
    assert st.text == (
        "SELECT Vehicle.vin, Person AS owner, Vehicle.specs FROM Vehicle "
        "JOIN Person ON Vehicle.owner = Person.id WHERE 1 = 1"
    )
    assert st.text.count("JOIN") == 1


def test_select_fields_restrict_projection(vehicle_schema):
    st = build_select("Vehicle", vehicle_schema, {"fields": ["vin"], "where": {"vin": "V1"}}, style=LITERAL)
    assert st.text == (
        "SELECT Vehicle.vin FROM Vehicle JOIN Person ON Vehicle.owner = Person.id WHERE Vehicle.vin = 'V1'"
    )


def test_select_unknown_projection_field(person_schema):
    with pytest.raises(QueryError):
        build_select("Person", person_schema, QueryArgs(fields=["nope"]))


def test_select_invalid_table_name(person_schema):
    with pytest.raises(QueryError, match="table name"):
        build_select("Person; DELETE", person_schema)


# ------------------------------------------------------------------
# INSERT
# ------------------------------------------------------------------


def test_insert_literal_keeps_nulls():
    st = build_insert("t", {"id": "a1", "age": None}, style=LITERAL)
    assert st.text == "INSERT INTO t VALUE {'id': 'a1', 'age': NULL}"


def test_insert_parameterized_sends_one_ion_document():
    doc = {"vin": "V1", "owner": "p1", "specs": {"make": "VW", "year": 2020}, "tags": ["a"]}
    st = build_insert("Vehicle", doc)
    assert st.text == "INSERT INTO Vehicle ?"
    assert _params(st) == [doc]


# ------------------------------------------------------------------
# UPDATE
# ------------------------------------------------------------------


def test_update_without_where_is_refused(person_schema):
    assert build_update("Person", {"name": "Bo"}, {}, person_schema) is UNSAFE_UPDATE
    assert build_update("Person", {"name": "Bo"}, None, person_schema).reason == "unsafe_update"


def test_update_literal(person_schema):
    (st,) = build_update("Person", {"name": "Bo", "age": 4}, {"id": "p1"}, person_schema, style=LITERAL)
    assert st.text == "UPDATE Person SET Person.name = 'Bo', Person.age = 4 WHERE Person.id = 'p1'"
    assert not st.detached


def test_update_parameter_order(person_schema):
    (st,) = build_update("Person", {"name": "Bo"}, {"id": "p1"}, person_schema)
    assert st.text == "UPDATE Person SET Person.name = ? WHERE Person.id = ?"
    assert _params(st) == ["Bo", "p1"]


def test_update_nested_object_flattens_to_paths(vehicle_schema):
    (st,) = build_update("Vehicle", {"specs": {"year": 2021}}, {"vin": "V1"}, vehicle_schema, style=LITERAL)
    assert st.text == "UPDATE Vehicle SET Vehicle.specs.year = 2021 WHERE Vehicle.vin = 'V1'"


def test_update_reference_primitive_reassigns_foreign_key(vehicle_schema):
    (st,) = build_update("Vehicle", {"owner": "p2"}, {"vin": "V1"}, vehicle_schema, style=LITERAL)
    assert st.text == "UPDATE Vehicle SET Vehicle.owner = 'p2' WHERE Vehicle.vin = 'V1'"


def test_update_reference_mapping_cascades_detached(vehicle_schema):
    lookup = _Lookup([{"owner": "p1"}])
    statements = build_update(
        "Vehicle",
        {"owner": {"name": "Zed"}, "specs": {"year": 2021}},
        {"vin": "V1"},
        vehicle_schema,
        lookup=lookup,
        style=LITERAL,
    )
    assert lookup.seen == ["SELECT Vehicle.owner FROM Vehicle WHERE Vehicle.vin = 'V1'"]
    assert [(s.text, s.detached) for s in statements] == [
        ("UPDATE Person SET Person.name = 'Zed' WHERE Person.id = 'p1'", True),
        ("UPDATE Vehicle SET Vehicle.specs.year = 2021 WHERE Vehicle.vin = 'V1'", False),
    ]


def test_update_cascade_skipped_when_nothing_referenced(vehicle_schema):
    statements = build_update(
        "Vehicle", {"owner": {"name": "Zed"}}, {"vin": "V1"}, vehicle_schema, lookup=_Lookup([]), style=LITERAL
    )
    assert statements == []


def test_update_cascade_needs_lookup(vehicle_schema):
    with pytest.raises(QueryError, match="lookup"):
        build_update("Vehicle", {"owner": {"name": "Zed"}}, {"vin": "V1"}, vehicle_schema)


def test_update_filtered_by_reference_fields(vehicle_schema):
    lookup = _Lookup([{"id": "p1"}])
    (st,) = build_update(
        "Vehicle", {"specs": {"year": 2020}}, {"owner": {"name": "Ann"}}, vehicle_schema, lookup=lookup, style=LITERAL
    )
    assert st.text == "UPDATE Vehicle SET Vehicle.specs.year = 2020 WHERE Vehicle.owner IN ['p1']"
    assert lookup.seen == ["SELECT Person.id FROM Person WHERE Person.name = 'Ann'"]


def test_update_reference_subfilter_needs_lookup(vehicle_schema):
    with pytest.raises(QueryError, match="needs a lookup"):
        build_update("Vehicle", {"specs": {"year": 2020}}, {"owner": {"name": "Ann"}}, vehicle_schema)


def test_update_failing_cascade_lookup_skips_cascade_only(vehicle_schema, caplog):
    def lookup(statement):
        raise RuntimeError("timeout")

    with caplog.at_level(logging.WARNING, logger="ledgerdoc.db.compiler"):
        statements = build_update(
            "Vehicle",
            {"owner": {"name": "Zed"}, "specs": {"year": 2021}},
            {"vin": "V1"},
            vehicle_schema,
            lookup=lookup,
            style=LITERAL,
        )
    assert [s.text for s in statements] == ["UPDATE Vehicle SET Vehicle.specs.year = 2021 WHERE Vehicle.vin = 'V1'"]
    assert "cascade lookup Vehicle.owner failed" in caplog.text


def test_update_unknown_field(person_schema):
    with pytest.raises(QueryError, match="nope is not defined for Person"):
        build_update("Person", {"nope": 1}, {"id": "p1"}, person_schema)


def test_update_nothing_to_set(person_schema):
    with pytest.raises(QueryError, match="Nothing to update"):
        build_update("Person", {}, {"id": "p1"}, person_schema)


# ------------------------------------------------------------------
# DELETE
# ------------------------------------------------------------------


def test_delete_without_where_is_refused(person_schema):
    assert build_delete("Person", person_schema, {}) is UNSAFE_DELETE
    assert build_delete("Person", person_schema, None, recursive=True) is UNSAFE_DELETE


def test_delete_literal(person_schema):
    (st,) = build_delete("Person", person_schema, {"id": "p1"}, style=LITERAL)
    assert st.text == "DELETE FROM Person WHERE Person.id = 'p1'"


def test_delete_recursive_follows_references(vehicle_schema):
    lookup = _Lookup([{"owner": "p1"}])
    statements = build_delete("Vehicle", vehicle_schema, {"vin": "V1"}, recursive=True, lookup=lookup, style=LITERAL)
    assert [s.text for s in statements] == [
        "DELETE FROM Vehicle WHERE Vehicle.vin = 'V1'",
        "DELETE FROM Person WHERE Person.id = 'p1'",
    ]
    assert lookup.seen == ["SELECT Vehicle.owner FROM Vehicle WHERE Vehicle.vin = 'V1'"]


def test_delete_recursive_without_referenced_document(vehicle_schema):
    statements = build_delete("Vehicle", vehicle_schema, {"vin": "V1"}, recursive=True, lookup=_Lookup([]))
    assert [s.text for s in statements] == ["DELETE FROM Vehicle WHERE Vehicle.vin = ?"]


def test_delete_filtered_by_reference_fields(vehicle_schema):
    lookup = _Lookup([{"id": "p1"}])
    (st,) = build_delete("Vehicle", vehicle_schema, {"owner": {"name": "Ann"}}, lookup=lookup, style=LITERAL)
    assert st.text == "DELETE FROM Vehicle WHERE Vehicle.owner IN ['p1']"


# ------------------------------------------------------------------
# History / committed view
# ------------------------------------------------------------------


def test_history_without_window():
    st = build_history_query("Person", {"id": "p1"}, now=NOW, style=LITERAL)
    assert st.text == "SELECT * FROM history(Person) AS h WHERE h.data.id = 'p1'"


def test_history_without_where():
    assert build_history_query("Person", now=NOW).text == "SELECT * FROM history(Person) AS h"


def test_history_with_window():
    st = build_history_query("Person", {"id": "p1"}, start=date(2024, 1, 1), end=date(2024, 2, 1), now=NOW)
    assert st.text == "SELECT * FROM history(Person, `2024-01-01T`, `2024-02-01T`) AS h WHERE h.data.id = ?"
    assert _params(st) == ["p1"]


def test_history_iso_string_bounds():
    st = build_history_query("Person", start="2024-01-01T00:00:00Z", now=NOW)
    assert st.text == "SELECT * FROM history(Person, `2024-01-01T00:00:00+00:00`) AS h"


def test_history_metadata_filter():
    st = build_history_query("Person", {"id": "doc-1"}, use_metadata=True, now=NOW, style=LITERAL)
    assert st.text == "SELECT * FROM history(Person) AS h WHERE h.metadata.id = 'doc-1'"


@pytest.mark.parametrize(
    "start, end, field",
    [
        (date(2030, 1, 1), None, "start"),
        (date(2024, 1, 1), date(2030, 1, 1), "end"),
        (None, date(2024, 1, 1), "start"),
        (date(2024, 3, 1), date(2024, 2, 1), "end"),
        ("not a date", None, "start"),
    ],
)
def test_history_invalid_dates(start, end, field):
    errors = build_history_query("Person", {"id": "p1"}, start=start, end=end, now=NOW)
    assert isinstance(errors, list)
    assert errors
    assert all(e.kind is ErrorKind.INVALID_DATES for e in errors)
    assert field in {e.field for e in errors}


def test_committed_query():
    st = build_committed_query("Person", {"metadata.id": "doc-1"}, style=LITERAL)
    assert st.text == "SELECT * FROM _ql_committed_Person WHERE metadata.id = 'doc-1'"
    assert build_committed_query("Person").text == "SELECT * FROM _ql_committed_Person"
