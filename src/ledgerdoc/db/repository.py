"""Ledger document repository: one table, one schema.

Every write goes mapper -> compiler -> codec -> ledger client. Reads compile a
SELECT with reference joins; ordering and pagination are applied client-side
over the full result, so get_by() with order/limit is meant for small tables.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Mapping
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any

from ledgerdoc.db.compiler import (
    ParamStyle,
    QueryError,
    build_committed_query,
    build_delete,
    build_history_query,
    build_insert,
    build_key_lookup,
    build_select,
    build_update,
)
from ledgerdoc.db.connection import LedgerClient, TableCatalog
from ledgerdoc.db.mapper import (
    DEFAULT_MAX_DEPTH,
    DepthPolicy,
    Invalid,
    ValidatedDocument,
    validate,
)
from ledgerdoc.db.models import (
    DocumentRecord,
    ErrorKind,
    Outcome,
    Page,
    QueryArgs,
    Refusal,
    Statement,
    ValidationError,
)
from ledgerdoc.db.schema import SchemaError, SchemaField, SchemaModel, check_identifier
from ledgerdoc.db.types import FieldKind

logger = logging.getLogger(__name__)

CREATED_AT = "createdAt"
UPDATED_AT = "updatedAt"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class LedgerRepository:
    """CRUD and audit-history access to one ledger table.

    The repository owns its SchemaModel and serves as the *owner* collection
    the mapper consults for primary-key uniqueness and index creation. Other
    repositories reference it through REFERENCE fields.
    """

    def __init__(
        self,
        client: LedgerClient,
        table: str,
        schema: SchemaModel,
        *,
        catalog: TableCatalog | None = None,
        timestamps: bool = False,
        auto_create: bool = True,
        max_depth: int = DEFAULT_MAX_DEPTH,
        depth_policy: DepthPolicy = DepthPolicy.ACCEPT,
        param_style: ParamStyle = ParamStyle.PARAMETERIZED,
    ) -> None:
        """Bind a table and its schema to a ledger client.

        Args:
            client: Ledger client (or any object with the same methods).
            table: Table name; must be a plain identifier.
            schema: Document model for the table.
            catalog: Shared table/index cache. A private one is created when omitted.
            timestamps: Append ``createdAt``/``updatedAt`` TIMESTAMP fields
                defaulting to now; update() refreshes ``updatedAt``.
            auto_create: Create the table on first write if it does not exist.
            max_depth: Nesting level at which validation stops.
            depth_policy: What validation does at *max_depth*.
            param_style: Placeholders with Ion parameters, or inline literals.

        Raises:
            SchemaError: If *table* is not a valid identifier.
        """
        self.client = client
        self.table = check_identifier(table, "table name")
        if timestamps:
            schema = schema.extended(
                [
                    SchemaField(CREATED_AT, FieldKind.TIMESTAMP, default=_now),
                    SchemaField(UPDATED_AT, FieldKind.TIMESTAMP, default=_now),
                ]
            )
        self.schema = schema
        self.catalog = catalog if catalog is not None else TableCatalog(client)
        self.timestamps = timestamps
        self.auto_create = auto_create
        self.max_depth = max_depth
        self.depth_policy = DepthPolicy(depth_policy)
        self.param_style = ParamStyle(param_style)

    def __repr__(self) -> str:
        return f"LedgerRepository({self.table!r})"

    @property
    def primary_key(self) -> str:
        pk = self.schema.primary_key
        if pk is None:
            raise SchemaError(f"Table '{self.table}' declares no primary key.")
        return pk

    def _run(self, statement: Statement) -> list[Any]:
        return self.client.execute_statement(statement.text, statement.params)

    def _ensure_table(self) -> None:
        if self.auto_create:
            self.catalog.create(self.table)

    def ensure_index(self, field_name: str) -> None:
        """Create a secondary index on *field_name* unless the catalog already lists one."""
        self._ensure_table()
        self.catalog.ensure_index(self.table, field_name)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_all(self, args: QueryArgs | Mapping[str, Any] | None = None) -> Page:
        """Return every document; *args* may still restrict fields, order and page."""
        args = dataclasses.replace(QueryArgs.coerce(args), where={})
        return self.get_by(args)

    def get_by(self, args: QueryArgs | Mapping[str, Any] | None = None) -> Page:
        """Return documents matching ``args.where``, sorted and sliced client-side.

        Args:
            args: QueryArgs or the equivalent mapping (where, fields, order,
                limit, offset).

        Returns:
            Page of plain documents; ``total`` is the size before slicing.

        Raises:
            QueryError: For unknown fields, operators or order keys.
        """
        args = QueryArgs.coerce(args)
        rows = self._run(build_select(self.table, self.schema, args, style=self.param_style))
        rows = self._sort(rows, args.order)
        return paginate(rows, args.offset, args.limit)

    def get_one_by(self, args: QueryArgs | Mapping[str, Any] | None = None) -> dict[str, Any] | None:
        rows = self.get_by(args)
        return rows[0] if rows else None

    def get_by_primary_key(self, value: Any) -> dict[str, Any] | None:
        return self.get_one_by(QueryArgs(where={self.primary_key: value}))

    def exists(self, value: Any) -> bool:
        """Whether a document with primary key *value* is stored, whatever its references hold."""
        return bool(self._run(build_key_lookup(self.table, self.schema, value, style=self.param_style)))

    def get_by_document_id(self, document_id: str) -> DocumentRecord | None:
        """Return the latest committed revision of a document, or None."""
        statement = build_committed_query(self.table, {"metadata.id": document_id}, style=self.param_style)
        records = [self._record(r) for r in self._run(statement)]
        if not records:
            return None
        return max(records, key=lambda r: r.metadata.version)

    def get_history_by_primary_key(self, value: Any, start: Any = None, end: Any = None) -> Outcome:
        return self.get_history_by({self.primary_key: value}, start=start, end=end)

    def get_history_by_document_id(self, document_id: str, start: Any = None, end: Any = None) -> Outcome:
        return self.get_history_by({"id": document_id}, start=start, end=end, use_metadata=True)

    def get_history_by(
        self,
        where: Mapping[str, Any] | None = None,
        *,
        start: Any = None,
        end: Any = None,
        use_metadata: bool = False,
    ) -> Outcome:
        """Return every revision matching *where* inside the [start, end] window.

        Args:
            where: Keys are paths under the revision's data (or metadata when
                *use_metadata* is set).
            start: Window start (datetime, date or ISO string).
            end: Window end; requires *start*.
            use_metadata: Filter on ``h.metadata`` instead of ``h.data``.

        Returns:
            Outcome whose rows are DocumentRecord instances, or whose errors
            are ``invalid_dates`` when the window is unusable.
        """
        compiled = build_history_query(
            self.table, where, start=start, end=end, use_metadata=use_metadata, style=self.param_style
        )
        if isinstance(compiled, list):
            return Outcome(errors=compiled)
        return Outcome(rows=[self._record(r) for r in self._run(compiled)])

    def _record(self, row: Mapping[str, Any]) -> DocumentRecord:
        record = DocumentRecord.from_row(row)
        if record.data is None:
            return record
        return dataclasses.replace(record, data=self.schema.decode(record.data))

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def add(self, data: Mapping[str, Any]) -> Outcome:
        """Validate and insert one document.

        Referenced documents given as mappings are inserted into their own
        tables first; each of those inserts is its own transaction.

        Returns:
            Outcome with the driver's result rows (``documentId`` entries), or
            the validation errors. Nothing is written when validation fails.
        """
        self._ensure_table()
        checked = validate(
            data,
            self.schema,
            self,
            max_depth=self.max_depth,
            depth_policy=self.depth_policy,
        )
        if isinstance(checked, Invalid):
            return Outcome(errors=checked.errors)
        return Outcome(rows=self.insert_validated(checked))

    def insert_validated(self, document: ValidatedDocument) -> list[Any]:
        """Insert an already validated document, after its pending references."""
        self._ensure_table()
        for pending in document.pending_references():
            logger.debug("inserting referenced %s document %r", pending.target.table, pending.key)
            pending.target.insert_validated(pending.document)
        return self._run(build_insert(self.table, document, style=self.param_style))

    def update(self, fields: Mapping[str, Any], where: Mapping[str, Any] | None) -> Outcome:
        """Validate *fields* as a partial document and update matching documents.

        An explicit None sets the field to null. Only ``allow_null`` fields
        accept it; defaults are never substituted on update. Mapping values
        for REFERENCE fields update the referenced document in a detached
        statement; a failure there is logged, not returned.

        Returns:
            Outcome with result rows, validation errors, or the
            ``unsafe_update`` refusal when *where* is empty.

        Raises:
            QueryError: For fields not declared in the schema.
        """
        fields = dict(fields)
        if self.timestamps:
            fields.setdefault(UPDATED_AT, _now())

        errors = [
            ValidationError(field=f.name, kind=ErrorKind.INVALID_VALUE, expected=f.kind.value, received="null")
            for f in self.schema
            if f.name in fields and fields[f.name] is None and not f.allow_null
        ]
        partial = SchemaModel([f for f in self.schema if fields.get(f.name) is not None])
        checked = validate(
            fields,
            partial,
            self,
            max_depth=self.max_depth,
            is_update=True,
            depth_policy=self.depth_policy,
        )
        if isinstance(checked, Invalid):
            errors.extend(checked.errors)
        if errors:
            return Outcome(errors=errors)

        plain = checked.to_value()
        values = {
            name: value if value is None or isinstance(value, Mapping) else plain.get(name, value)
            for name, value in fields.items()
        }
        compiled = build_update(
            self.table, values, where, self.schema, lookup=self._run, style=self.param_style
        )
        if isinstance(compiled, Refusal):
            return Outcome(refused=compiled)
        return Outcome(rows=self._execute(compiled))

    def delete(self, where: Mapping[str, Any] | None, *, recursive: bool = False) -> Outcome:
        """Delete matching documents, and with *recursive* the documents they reference.

        Returns:
            Outcome with result rows, or the ``unsafe_delete`` refusal when
            *where* is empty.
        """
        compiled = build_delete(
            self.table, self.schema, where, recursive=recursive, lookup=self._run, style=self.param_style
        )
        if isinstance(compiled, Refusal):
            return Outcome(refused=compiled)
        return Outcome(rows=self._execute(compiled))

    def _execute(self, statements: list[Statement]) -> list[Any]:
        rows: list[Any] = []
        for statement in statements:
            if not statement.detached:
                rows.extend(self._run(statement))
                continue
            try:
                self._run(statement)
            except Exception:
                logger.warning("detached statement failed: %s", statement.text, exc_info=True)
        return rows

    # ------------------------------------------------------------------
    # Client-side ordering
    # ------------------------------------------------------------------

    def _sort(self, rows: list[Any], order: Mapping[str, str] | None) -> list[Any]:
        if not order:
            return rows
        key, direction = next(iter(order.items()))
        if key.split(".", 1)[0] not in self.schema:
            raise QueryError(f"Cannot order {self.table} by unknown field '{key}'.")
        if str(direction).lower() not in ("asc", "desc"):
            raise QueryError(f"Order direction must be 'asc' or 'desc', got {direction!r}.")
        if len(order) > 1:
            logger.debug("ordering %s by '%s' only; extra order keys ignored", self.table, key)
        return sort_rows(rows, key, descending=str(direction).lower() == "desc")


def _lookup(row: Any, path: str) -> Any:
    value = row
    for segment in path.split("."):
        if not isinstance(value, Mapping):
            return None
        value = value.get(segment)
    return value


def _sort_key(value: Any) -> tuple[Any, ...]:
    # Values of different types order by kind first: booleans, numbers, strings, timestamps, dates.
    if isinstance(value, bool):
        return (0, value)
    if isinstance(value, (int, float, Decimal)):
        return (1, value)
    if isinstance(value, str):
        return (2, value.casefold())
    if isinstance(value, datetime):
        aware = value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)
        return (3, aware.timestamp())
    if isinstance(value, date):
        return (4, value.toordinal())
    return (5, str(value))


def sort_rows(rows: list[Any], key: str, *, descending: bool = False) -> list[Any]:
    """Sort rows on one (dotted) key, case-insensitively; rows without the key go last."""
    present = [r for r in rows if _lookup(r, key) is not None]
    absent = [r for r in rows if _lookup(r, key) is None]
    present.sort(key=lambda r: _sort_key(_lookup(r, key)), reverse=descending)
    return present + absent


def paginate(rows: list[Any], offset: int = 0, limit: int | None = None) -> Page:
    offset = max(offset or 0, 0)
    stop = None if limit is None else offset + max(limit, 0)
    return Page(rows[offset:stop], total=len(rows))
