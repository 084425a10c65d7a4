"""PartiQL query compiler.

Every builder is a pure function of (table, schema, arguments) and returns
Statement values; builders that need data from the ledger (cascading update
and recursive delete resolve referenced primary keys first) take a *lookup*
callable that runs a Statement and returns decoded rows.

Two parameter styles:
  PARAMETERIZED  values become ``?`` placeholders, each paired with an
                 Ion-binary encoded parameter (default).
  LITERAL        values are embedded as PartiQL literals; string quotes are
                 doubled, timestamps become backtick Ion literals.

Identifiers (tables, fields, where paths) are checked against the schema or
the identifier pattern before they reach the statement text.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Callable, Mapping
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any

from ledgerdoc.db import codec
from ledgerdoc.db.codec import EncodingError
from ledgerdoc.db.mapper import ValidatedDocument
from ledgerdoc.db.models import (
    UNSAFE_DELETE,
    UNSAFE_UPDATE,
    ErrorKind,
    QueryArgs,
    Refusal,
    Statement,
    ValidationError,
)
from ledgerdoc.db.schema import SchemaError, SchemaField, SchemaModel, check_identifier
from ledgerdoc.db.types import FieldKind, coerce_timestamp

logger = logging.getLogger(__name__)

Lookup = Callable[[Statement], list[dict[str, Any]]]

ALWAYS_TRUE = "1 = 1"
COMMITTED_PREFIX = "_ql_committed_"


class QueryError(ValueError):
    """Raised when query arguments name unknown fields or cannot be compiled."""


class ParamStyle(str, Enum):
    LITERAL = "literal"
    PARAMETERIZED = "parameterized"


class Operator(Enum):
    """Comparison operators accepted in where-arguments as ``(Operator, value)`` pairs."""

    EQ = "eq"
    NE = "ne"
    IN = "in"
    NOT_IN = "notIn"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"

    @property
    def symbol(self) -> str:
        return _SYMBOLS[self]

    @classmethod
    def parse(cls, name: str) -> Operator:
        for op in cls:
            if op.value.lower() == name.strip().lower():
                return op
        raise QueryError(f"Unknown operator '{name}'. Known: {', '.join(op.value for op in cls)}")


_SYMBOLS: dict[Operator, str] = {
    Operator.EQ: "=",
    Operator.NE: "!=",
    Operator.IN: "IN",
    Operator.NOT_IN: "NOT IN",
    Operator.GT: ">",
    Operator.GTE: ">=",
    Operator.LT: "<",
    Operator.LTE: "<=",
}


# ------------------------------------------------------------------
# Literals and parameters
# ------------------------------------------------------------------


def render_literal(value: Any) -> str:
    """Render *value* as a PartiQL literal.

    Raises:
        EncodingError: For values with no PartiQL literal form.
    """
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float, Decimal)):
        return str(value)
    if isinstance(value, str):
        return _quote(value)
    if isinstance(value, (datetime, date)):
        return ion_timestamp(value)
    if isinstance(value, (list, tuple)):
        return "[" + ", ".join(render_literal(v) for v in value) + "]"
    if isinstance(value, Mapping):
        items = (f"{_quote(str(k))}: {render_literal(v)}" for k, v in value.items())
        return "{" + ", ".join(items) + "}"
    raise EncodingError(f"No PartiQL literal for type: {type(value).__name__}.")


def _quote(text: str) -> str:
    return "'" + text.replace("'", "''") + "'"


def ion_timestamp(value: datetime | date) -> str:
    """Backtick Ion timestamp literal; naive datetimes get the unknown offset."""
    if isinstance(value, datetime):
        text = value.isoformat()
        if value.tzinfo is None:
            text += "-00:00"
        return f"`{text}`"
    return f"`{value.isoformat()}T`"


class _Params:
    """Collects parameters in placeholder order for one statement."""

    def __init__(self, style: ParamStyle) -> None:
        self.style = ParamStyle(style)
        self.values: list[bytes] = []

    def render(self, value: Any) -> str:
        if self.style is ParamStyle.PARAMETERIZED:
            self.values.append(codec.encode(value))
            return "?"
        return render_literal(value)

    def statement(self, text: str) -> Statement:
        logger.debug("compiled: %s (%d params)", text, len(self.values))
        return Statement(text=text, params=tuple(self.values))


def _table(name: str) -> str:
    try:
        return check_identifier(name, "table name")
    except SchemaError as exc:
        raise QueryError(str(exc)) from None


def _path(path: str) -> str:
    for segment in path.split("."):
        try:
            check_identifier(segment, "field path")
        except SchemaError:
            raise QueryError(f"Invalid field path {path!r}.") from None
    return path


def _field(schema: SchemaModel, path: str, table: str) -> SchemaField:
    head = _path(path).split(".", 1)[0]
    f = schema.get(head)
    if f is None:
        raise QueryError(f"{head} is not defined for {table}")
    return f


# ------------------------------------------------------------------
# WHERE
# ------------------------------------------------------------------


def build_where(
    where: Mapping[str, Any] | None,
    table: str,
    schema: SchemaModel,
    *,
    style: ParamStyle = ParamStyle.PARAMETERIZED,
) -> Statement:
    """Compile *where* into a predicate (without the WHERE keyword) for a joined SELECT.

    An empty or absent mapping compiles to ``1 = 1``. Reference sub-filters
    address the joined target table directly.
    """
    params = _Params(style)
    text = _where(where, _table(table), schema, params, joined=True)
    return Statement(text=text, params=tuple(params.values))


def _is_subfilter(f: SchemaField, key: str, value: Any) -> bool:
    return f.kind is FieldKind.REFERENCE and "." not in key and isinstance(value, Mapping)


def _where(
    where: Mapping[str, Any] | None,
    table: str,
    schema: SchemaModel,
    params: _Params,
    *,
    joined: bool = False,
) -> str:
    # Reference sub-filters name the target table, so only joined SELECTs can carry them.
    terms: list[str] = []
    for key, value in (where or {}).items():
        f = _field(schema, key, table)
        if _is_subfilter(f, key, value):
            target = f.target
            if not joined:
                raise QueryError(
                    f"{table}.{key} is filtered by {target.table} fields; resolve them to keys first."
                )
            for sub_key, sub_value in value.items():
                _field(target.schema, sub_key, target.table)
                terms.append(_term(f"{target.table}.{sub_key}", sub_value, params))
        else:
            terms.append(_term(f"{table}.{key}", value, params))
    return " AND ".join(terms) if terms else ALWAYS_TRUE


def _is_tagged(value: Any) -> bool:
    return isinstance(value, (list, tuple)) and len(value) == 2 and isinstance(value[0], Operator)


def _term(path: str, value: Any, params: _Params) -> str:
    operator = Operator.EQ
    if _is_tagged(value):
        operator, value = value[0], value[1]
    elif isinstance(value, (list, tuple)):
        operator = Operator.IN

    if value is None and operator is Operator.EQ:
        return f"{path} IS NULL"
    if value is None and operator is Operator.NE:
        return f"{path} IS NOT NULL"

    if operator in (Operator.IN, Operator.NOT_IN):
        items = value if isinstance(value, (list, tuple)) else [value]
        rendered = "[" + ", ".join(params.render(v) for v in items) + "]"
    else:
        rendered = params.render(value)
    return f"{path} {operator.symbol} {rendered}"


# ------------------------------------------------------------------
# SELECT / INSERT
# ------------------------------------------------------------------


def build_select(
    table: str,
    schema: SchemaModel,
    args: QueryArgs | Mapping[str, Any] | None = None,
    *,
    style: ParamStyle = ParamStyle.PARAMETERIZED,
) -> Statement:
    """Compile a SELECT with one JOIN per reference field.

    Reference targets are projected whole, aliased under the reference
    field's name. ``args.fields`` restricts the projection.
    """
    table = _table(table)
    args = QueryArgs.coerce(args)
    if args.fields is not None:
        for name in args.fields:
            _field(schema, name, table)

    columns: list[str] = []
    joins: list[str] = []
    for f in schema:
        selected = args.fields is None or f.name in args.fields
        if f.kind is FieldKind.REFERENCE:
            target = f.target
            joins.append(
                f" JOIN {target.table} ON {table}.{f.name} = {target.table}.{target.schema.primary_key}"
            )
            if selected:
                columns.append(f"{target.table} AS {f.name}")
        elif selected:
            columns.append(f"{table}.{f.name}")
    if not columns:
        raise QueryError(f"Nothing to select from {table}.")

    params = _Params(style)
    where = _where(args.where, table, schema, params, joined=True)
    return params.statement(f"SELECT {', '.join(columns)} FROM {table}{''.join(joins)} WHERE {where}")


def build_lookup(
    table: str,
    schema: SchemaModel,
    path: str,
    where: Mapping[str, Any] | None,
    *,
    style: ParamStyle = ParamStyle.PARAMETERIZED,
) -> Statement:
    """Single-column SELECT used to resolve a referenced primary key."""
    table = _table(table)
    _field(schema, path, table)
    params = _Params(style)
    return params.statement(f"SELECT {table}.{path} FROM {table} WHERE {_where(where, table, schema, params)}")


def build_key_lookup(
    table: str,
    schema: SchemaModel,
    value: Any,
    *,
    style: ParamStyle = ParamStyle.PARAMETERIZED,
) -> Statement:
    """Join-free SELECT of the stored document whose primary key is *value*.

    Reference fields stay foreign keys, so a document whose reference is null
    or dangling is still found.

    Raises:
        QueryError: If *schema* declares no primary key.
    """
    table = _table(table)
    pk = schema.primary_key
    if pk is None:
        raise QueryError(f"{table} declares no primary key.")
    params = _Params(style)
    return params.statement(f"SELECT * FROM {table} WHERE {_term(f'{table}.{pk}', value, params)}")


def build_insert(
    table: str,
    document: ValidatedDocument | Mapping[str, Any],
    *,
    style: ParamStyle = ParamStyle.PARAMETERIZED,
) -> Statement:
    """Compile an INSERT of the full validated value tree.

    Pending references are serialized as their primary key; the caller must
    have inserted them first.
    """
    table = _table(table)
    value = document.to_value() if isinstance(document, ValidatedDocument) else dict(document)
    params = _Params(style)
    if params.style is ParamStyle.PARAMETERIZED:
        return params.statement(f"INSERT INTO {table} {params.render(value)}")
    return params.statement(f"INSERT INTO {table} VALUE {render_literal(value)}")


# ------------------------------------------------------------------
# UPDATE / DELETE
# ------------------------------------------------------------------


def _lookup_key(
    lookup: Lookup | None,
    table: str,
    schema: SchemaModel,
    path: str,
    where: Mapping[str, Any],
    style: ParamStyle,
) -> Any:
    if lookup is None:
        raise QueryError(f"Resolving {table}.{path} needs a lookup.")
    rows = lookup(build_lookup(table, schema, path, where, style=style))
    if not rows:
        return None
    return rows[0].get(path.rsplit(".", 1)[-1])


def resolve_subfilters(
    table: str,
    schema: SchemaModel,
    where: Mapping[str, Any],
    lookup: Lookup | None,
    *,
    style: ParamStyle = ParamStyle.PARAMETERIZED,
) -> dict[str, Any]:
    """Replace reference sub-filters in *where* with ``in`` conditions on the foreign key.

    ``{"owner": {"name": "Ann"}}`` becomes ``{"owner": (Operator.IN, [keys])}``
    where *keys* are the primary keys of the matching target documents. UPDATE,
    DELETE and lookup statements have no JOIN, so they need this form.

    Raises:
        QueryError: If a sub-filter is present and *lookup* is None.
    """
    resolved: dict[str, Any] = {}
    for key, value in where.items():
        f = _field(schema, key, table)
        if not _is_subfilter(f, key, value):
            resolved[key] = value
            continue
        if lookup is None:
            raise QueryError(f"Filtering {table}.{key} by {f.target.table} fields needs a lookup.")
        target = f.target
        pk = target.schema.primary_key
        sub_where = resolve_subfilters(target.table, target.schema, value, lookup, style=style)
        rows = lookup(build_lookup(target.table, target.schema, pk, sub_where, style=style))
        resolved[key] = (Operator.IN, [row.get(pk) for row in rows])
    return resolved


def build_update(
    table: str,
    fields: Mapping[str, Any],
    where: Mapping[str, Any] | None,
    schema: SchemaModel,
    *,
    lookup: Lookup | None = None,
    style: ParamStyle = ParamStyle.PARAMETERIZED,
) -> list[Statement] | Refusal:
    """Compile an UPDATE, plus detached cascade updates on referenced tables.

    Nested OBJECT values become dotted assignments (``t.parent.child = v``).
    A REFERENCE field given a mapping updates the referenced document: its
    key is looked up through *lookup* using the same *where*, and the
    resulting statements are marked ``detached``. A failing cascade lookup is
    logged and skips that cascade only. A REFERENCE field given a primitive
    reassigns the foreign key. Reference sub-filters in *where* are resolved
    to foreign keys first.

    Returns:
        Detached cascade statements followed by the local UPDATE, or
        UNSAFE_UPDATE when *where* is empty.

    Raises:
        QueryError: For fields not declared in *schema*, nothing to set, or a
            resolution that has no *lookup*.
    """
    table = _table(table)
    if not where:
        return UNSAFE_UPDATE

    params = _Params(style)
    assignments: list[str] = []
    cascades: list[tuple[str, SchemaField, Mapping[str, Any]]] = []
    _assign(table, "", fields, schema, params, assignments, cascades)
    if not assignments and not cascades:
        raise QueryError(f"Nothing to update in {table}.")
    if cascades and lookup is None:
        raise QueryError(f"Resolving {table}.{cascades[0][0]} needs a lookup.")
    where = resolve_subfilters(table, schema, where, lookup, style=style)

    statements: list[Statement] = []
    for path, f, sub_fields in cascades:
        try:
            key = _lookup_key(lookup, table, schema, path, where, style)
        except Exception:
            logger.warning("cascade lookup %s.%s failed; cascade skipped", table, path, exc_info=True)
            continue
        if key is None:
            logger.debug("no %s.%s to cascade into", table, path)
            continue
        target = f.target
        sub = build_update(
            target.table,
            sub_fields,
            {target.schema.primary_key: key},
            target.schema,
            lookup=lookup,
            style=style,
        )
        if isinstance(sub, list):
            statements.extend(dataclasses.replace(s, detached=True) for s in sub)

    if assignments:
        text = f"UPDATE {table} SET {', '.join(assignments)} WHERE {_where(where, table, schema, params)}"
        statements.append(params.statement(text))
    return statements


def _assign(
    table: str,
    prefix: str,
    fields: Mapping[str, Any],
    schema: SchemaModel,
    params: _Params,
    out: list[str],
    cascades: list[tuple[str, SchemaField, Mapping[str, Any]]],
) -> None:
    for name, value in fields.items():
        f = schema.get(name)
        if f is None:
            raise QueryError(f"{name} is not defined for {table}{'.' + prefix if prefix else ''}")
        path = f"{prefix}.{name}" if prefix else name
        if f.kind is FieldKind.REFERENCE and isinstance(value, Mapping):
            cascades.append((path, f, value))
        elif f.kind is FieldKind.OBJECT and isinstance(value, Mapping):
            _assign(table, path, value, f.schema, params, out, cascades)
        else:
            out.append(f"{table}.{path} = {params.render(value)}")


def build_delete(
    table: str,
    schema: SchemaModel,
    where: Mapping[str, Any] | None,
    *,
    recursive: bool = False,
    lookup: Lookup | None = None,
    style: ParamStyle = ParamStyle.PARAMETERIZED,
) -> list[Statement] | Refusal:
    """Compile a DELETE; never an unconditioned one.

    With *recursive*, every reference field's document is deleted too: its key
    is resolved with an auxiliary lookup scoped by the original *where*, then
    a delete on the referenced table is compiled the same way. Reference
    sub-filters in *where* are resolved to foreign keys first.

    Returns:
        Statements in execution order, or UNSAFE_DELETE when *where* is empty.
    """
    table = _table(table)
    if not where:
        return UNSAFE_DELETE
    where = resolve_subfilters(table, schema, where, lookup, style=style)

    params = _Params(style)
    statements = [params.statement(f"DELETE FROM {table} WHERE {_where(where, table, schema, params)}")]
    if not recursive:
        return statements

    for f in schema.references:
        key = _lookup_key(lookup, table, schema, f.name, where, style)
        if key is None:
            continue
        target = f.target
        sub = build_delete(
            target.table,
            target.schema,
            {target.schema.primary_key: key},
            recursive=True,
            lookup=lookup,
            style=style,
        )
        if isinstance(sub, list):
            statements.extend(sub)
    return statements


# ------------------------------------------------------------------
# History / committed view
# ------------------------------------------------------------------


def _as_utc(value: Any) -> datetime | None:
    moment = coerce_timestamp(value)
    if moment is None:
        return None
    if not isinstance(moment, datetime):
        moment = datetime(moment.year, moment.month, moment.day)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


def check_window(start: Any, end: Any, now: datetime | None = None) -> list[ValidationError]:
    """Return ``invalid_dates`` errors for a history window, or an empty list."""
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    errors: list[ValidationError] = []
    bounds = {}
    for name, value in (("start", start), ("end", end)):
        if value is None:
            continue
        moment = _as_utc(value)
        if moment is None:
            errors.append(
                ValidationError(field=name, kind=ErrorKind.INVALID_DATES, value=value, expected="timestamp")
            )
        elif moment > now:
            errors.append(
                ValidationError(field=name, kind=ErrorKind.INVALID_DATES, value=value, expected="not after now")
            )
        else:
            bounds[name] = moment
    if end is not None and start is None:
        errors.append(ValidationError(field="start", kind=ErrorKind.INVALID_DATES, expected="start with end"))
    if "start" in bounds and "end" in bounds and bounds["start"] > bounds["end"]:
        errors.append(
            ValidationError(field="end", kind=ErrorKind.INVALID_DATES, value=end, expected="not before start")
        )
    return errors


def build_history_query(
    table: str,
    where: Mapping[str, Any] | None = None,
    *,
    start: Any = None,
    end: Any = None,
    use_metadata: bool = False,
    now: datetime | None = None,
    style: ParamStyle = ParamStyle.PARAMETERIZED,
) -> Statement | list[ValidationError]:
    """Compile a query over ``history(table[, start[, end]])``.

    *where* keys address ``h.data.<key>``, or ``h.metadata.<key>`` with
    *use_metadata*. A bound after *now* (or an otherwise unusable window)
    returns ``invalid_dates`` errors and no statement.
    """
    table = _table(table)
    errors = check_window(start, end, now)
    if errors:
        return errors

    source = table
    if start is not None:
        source += f", {ion_timestamp(coerce_timestamp(start))}"
    if end is not None:
        source += f", {ion_timestamp(coerce_timestamp(end))}"

    params = _Params(style)
    prefix = "h.metadata." if use_metadata else "h.data."
    terms = [_term(prefix + _path(key), value, params) for key, value in (where or {}).items()]
    text = f"SELECT * FROM history({source}) AS h"
    if terms:
        text += " WHERE " + " AND ".join(terms)
    return params.statement(text)


def build_committed_query(
    table: str,
    where: Mapping[str, Any] | None = None,
    *,
    style: ParamStyle = ParamStyle.PARAMETERIZED,
) -> Statement:
    """Compile a query over the committed view, which holds every revision.

    *where* keys are committed-view paths such as ``metadata.id`` or ``data.vin``.
    """
    table = _table(table)
    params = _Params(style)
    terms = [_term(_path(key), value, params) for key, value in (where or {}).items()]
    text = f"SELECT * FROM {COMMITTED_PREFIX}{table}"
    if terms:
        text += " WHERE " + " AND ".join(terms)
    return params.statement(text)
