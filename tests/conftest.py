"""Shared pytest fixtures."""

from __future__ import annotations

from typing import Any

import pytest

from ledgerdoc.db import codec
from ledgerdoc.db.repository import LedgerRepository
from ledgerdoc.db.schema import SchemaField, SchemaModel
from ledgerdoc.db.types import FieldKind


class FakeLedgerClient:
    """In-memory stand-in for LedgerClient.

    Records every statement with its decoded parameters and answers with
    scripted rows: the first response whose fragment occurs in the statement
    text (and whose params match, when given) wins. INSERTs without a
    scripted response return one ``documentId`` row.
    """

    def __init__(self, tables: list[str] | None = None) -> None:
        self.tables = list(tables or [])
        self.indexes: dict[str, list[str]] = {}
        self.statements: list[tuple[str, list[Any]]] = []
        self.responses: list[tuple[str, list[Any] | None, Any]] = []
        self.created_tables: list[str] = []
        self.created_indexes: list[tuple[str, str]] = []
        self.closed = False
        self._inserted = 0

    def respond(self, fragment: str, rows: Any, params: list[Any] | None = None) -> None:
        """Answer statements containing *fragment* with *rows* (or raise it, if an exception)."""
        self.responses.append((fragment, params, rows))

    @property
    def texts(self) -> list[str]:
        return [text for text, _ in self.statements]

    def execute_statement(self, query: str, params: Any = ()) -> list[Any]:
        decoded = [codec.decode(p) for p in params]
        self.statements.append((query, decoded))
        for fragment, expected, rows in self.responses:
            if fragment in query and (expected is None or expected == decoded):
                if isinstance(rows, Exception):
                    raise rows
                return list(rows)
        if query.startswith("INSERT"):
            self._inserted += 1
            return [{"documentId": f"doc-{self._inserted}"}]
        return []

    def get_table_names(self) -> list[str]:
        return list(self.tables)

    def create_table(self, name: str) -> None:
        self.tables.append(name)
        self.created_tables.append(name)

    def create_index(self, table: str, field_name: str) -> None:
        self.indexes.setdefault(table, []).append(field_name)
        self.created_indexes.append((table, field_name))

    def get_indexed_fields(self, table: str) -> list[str]:
        return list(self.indexes.get(table, []))

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def client():
    """Fake ledger that already holds the Person and Vehicle tables."""
    return FakeLedgerClient(tables=["Person", "Vehicle"])


@pytest.fixture
def person_schema():
    return SchemaModel(
        [
            SchemaField("id", FieldKind.STRING, primary_key=True),
            SchemaField("name", FieldKind.STRING),
            SchemaField("age", FieldKind.INTEGER, allow_null=True),
        ]
    )


@pytest.fixture
def people(client, person_schema):
    return LedgerRepository(client, "Person", person_schema)


@pytest.fixture
def vehicle_schema(people):
    return SchemaModel(
        [
            SchemaField("vin", FieldKind.STRING, primary_key=True),
            SchemaField("owner", FieldKind.REFERENCE, target=people),
            SchemaField(
                "specs",
                FieldKind.OBJECT,
                allow_null=True,
                schema=SchemaModel(
                    [
                        SchemaField("make", FieldKind.STRING),
                        SchemaField("year", FieldKind.INTEGER),
                    ]
                ),
            ),
        ]
    )


@pytest.fixture
def vehicles(client, vehicle_schema, people):
    return LedgerRepository(client, "Vehicle", vehicle_schema, catalog=people.catalog)


PROJECT_YAML = """\
ledger:
  name: test-ledger
tables:
  Person:
    fields:
      id: {kind: string, primaryKey: true}
      name: {kind: string}
      age: {kind: integer, allowNull: true}
  Vehicle:
    fields:
      vin: {kind: string, primaryKey: true}
      owner: {kind: reference, table: Person}
"""


@pytest.fixture
def ledger_project(tmp_path, monkeypatch):
    """A project dir with ledgerdoc.yaml (Person, Vehicle) whose commands talk to a fake ledger.

    Returns the FakeLedgerClient the CLI will use.
    """
    from ledgerdoc.db.connection import LedgerClient

    (tmp_path / "ledgerdoc.yaml").write_text(PROJECT_YAML, encoding="utf-8")
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr("ledgerdoc.config._GLOBAL_CONFIG_PATH", tmp_path / "global.yaml")
    monkeypatch.delenv("LEDGERDOC_LEDGER_NAME", raising=False)
    monkeypatch.delenv("LEDGERDOC_REGION", raising=False)

    fake = FakeLedgerClient(tables=["Person", "Vehicle"])
    monkeypatch.setattr(LedgerClient, "from_config", classmethod(lambda cls, cfg: fake))
    return fake
