"""Shared plumbing for commands that talk to the ledger.

open_repositories() loads the configuration, connects a LedgerClient and
builds every declared repository; on a configuration problem it prints the
matching message and exits with status 1.
"""

from __future__ import annotations

import json
import re
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any

import typer
import yaml
from rich.console import Console
from rich.markup import escape

from ledgerdoc.cli.errors import (
    err_config,
    err_invalid_json,
    err_invalid_order,
    err_invalid_where,
    err_no_ledger_name,
    err_unknown_table,
)
from ledgerdoc.config import ConfigError, load_config
from ledgerdoc.db.compiler import Operator
from ledgerdoc.db.connection import LedgerClient
from ledgerdoc.db.registry import build_repositories
from ledgerdoc.db.repository import LedgerRepository
from ledgerdoc.db.schema import SchemaModel
from ledgerdoc.db.types import FieldKind

console = Console()

_WHERE_RE: re.Pattern[str] = re.compile(r"^\s*([A-Za-z_][A-Za-z0-9_.]*)\s*(>=|<=|!=|=|>|<)\s*(.*)$")

_OPERATORS: dict[str, Operator] = {
    "=": Operator.EQ,
    "!=": Operator.NE,
    ">": Operator.GT,
    ">=": Operator.GTE,
    "<": Operator.LT,
    "<=": Operator.LTE,
}


@contextmanager
def open_repositories(project_dir: Path | None = None) -> Iterator[dict[str, LedgerRepository]]:
    """Yield repositories for every table in ledgerdoc.yaml; the client is closed on exit."""
    try:
        cfg = load_config(project_dir)
    except ConfigError as exc:
        console.print(err_config(str(exc)))
        raise typer.Exit(1) from None
    if not cfg.ledger.name:
        console.print(err_no_ledger_name())
        raise typer.Exit(1)

    client = LedgerClient.from_config(cfg.ledger)
    try:
        repos = build_repositories(client, cfg)
    except ConfigError as exc:
        console.print(err_config(str(exc)))
        raise typer.Exit(1) from None
    try:
        yield repos
    finally:
        client.close()


def pick(repos: dict[str, LedgerRepository], table: str) -> LedgerRepository:
    if table not in repos:
        console.print(err_unknown_table(table, list(repos)))
        raise typer.Exit(1)
    return repos[table]


# ------------------------------------------------------------------
# Argument parsing
# ------------------------------------------------------------------


def parse_value(text: str) -> Any:
    """Interpret a command-line value as a YAML scalar (30, true, null, 2024-01-01, [a, b])."""
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError:
        return text


def parse_where(terms: list[str] | None, schema: SchemaModel) -> dict[str, Any]:
    """Turn ``--where`` terms into a where mapping.

    ``owner.name=Ann`` on a REFERENCE field becomes a sub-filter on the
    referenced table; on any other field it stays a dotted path.
    """
    where: dict[str, Any] = {}
    for term in terms or []:
        match = _WHERE_RE.match(term)
        if match is None:
            console.print(err_invalid_where(term))
            raise typer.Exit(1)
        key, symbol, raw = match.groups()
        value = parse_value(raw)
        operator = _OPERATORS[symbol]
        if isinstance(value, list):
            operator = {Operator.EQ: Operator.IN, Operator.NE: Operator.NOT_IN}.get(operator, operator)
        condition = value if operator is Operator.EQ and not isinstance(value, list) else (operator, value)

        head, _, rest = key.partition(".")
        f = schema.get(head)
        if rest and f is not None and f.kind is FieldKind.REFERENCE:
            where.setdefault(head, {})[rest] = condition
        else:
            where[key] = condition
    return where


def parse_order(term: str | None) -> dict[str, str] | None:
    if not term:
        return None
    name, _, direction = term.partition(":")
    direction = (direction or "asc").lower()
    if not name or direction not in ("asc", "desc"):
        console.print(err_invalid_order(term))
        raise typer.Exit(1)
    return {name: direction}


def parse_document(text: str | None, file: Path | None, what: str) -> dict[str, Any]:
    """Read a JSON object from *text* or *file*."""
    try:
        raw = file.read_text(encoding="utf-8") if file is not None else (text or "")
        data = json.loads(raw)
    except (OSError, json.JSONDecodeError) as exc:
        console.print(err_invalid_json(what, str(exc)))
        raise typer.Exit(1) from None
    if not isinstance(data, dict):
        console.print(err_invalid_json(what, f"got {type(data).__name__}"))
        raise typer.Exit(1)
    return data


# ------------------------------------------------------------------
# Output
# ------------------------------------------------------------------


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, bytes):
        return value.hex()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def to_json(value: Any) -> str:
    return json.dumps(value, default=_json_default, indent=2)


def cell(value: Any) -> str:
    """Render one value for a rich table cell."""
    if value is None:
        return "[dim]null[/]"
    if isinstance(value, (dict, list)):
        return escape(json.dumps(value, default=_json_default))
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return escape(str(value))
