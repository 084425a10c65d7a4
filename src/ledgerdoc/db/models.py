"""Domain models shared by the mapper, compiler and repository."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    MISSING = "missing"
    INVALID_VALUE = "invalid_value"
    PK_REFERENCE_DUPLICATE = "pk_reference_duplicate"
    DOCUMENT_REFERENCE_NOT_FOUND = "document_reference_not_found"
    INVALID_DATES = "invalid_dates"
    DEPTH_EXCEEDED = "depth_exceeded"


@dataclass(frozen=True)
class ValidationError:
    """One validation failure. *field* is a dotted path for nested failures."""

    field: str
    kind: ErrorKind
    value: Any = None
    expected: str | None = None
    received: str | None = None

    def prefixed(self, prefix: str) -> ValidationError:
        return ValidationError(
            field=f"{prefix}.{self.field}" if self.field else prefix,
            kind=self.kind,
            value=self.value,
            expected=self.expected,
            received=self.received,
        )

    def as_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"field": self.field, "kind": self.kind.value}
        if self.value is not None:
            out["value"] = self.value
        if self.expected is not None:
            out["expected"] = self.expected
        if self.received is not None:
            out["received"] = self.received
        return out


@dataclass(frozen=True)
class Refusal:
    """Returned by the compiler instead of a statement it will not emit."""

    reason: str
    message: str = ""


UNSAFE_DELETE = Refusal("unsafe_delete", "unsafe delete with empty where statement.")
UNSAFE_UPDATE = Refusal("unsafe_update", "unsafe update with empty where statement.")


@dataclass(frozen=True)
class Statement:
    """A compiled PartiQL statement.

    Attributes:
        text: Statement text. Contains ``?`` placeholders in parameterized style.
        params: Ion-binary encoded parameters, one per placeholder, in order.
        detached: Cascade statements whose outcome is not reported to the caller.
    """

    text: str
    params: tuple[bytes, ...] = ()
    detached: bool = False


@dataclass
class QueryArgs:
    """Arguments for reads, updates and deletes.

    *where* maps a field name (or dotted path) to a value, a sequence (``in``),
    or an ``(Operator, value)`` pair. *order* maps one field to ``asc``/``desc``.
    """

    where: dict[str, Any] = field(default_factory=dict)
    fields: list[str] | None = None
    order: dict[str, str] | None = None
    limit: int | None = None
    offset: int = 0
    recursive: bool = False

    @classmethod
    def coerce(cls, args: QueryArgs | Mapping[str, Any] | None) -> QueryArgs:
        if args is None:
            return cls()
        if isinstance(args, QueryArgs):
            return args
        return cls(
            where=dict(args.get("where") or {}),
            fields=list(args["fields"]) if args.get("fields") else None,
            order=dict(args["order"]) if args.get("order") else None,
            limit=args.get("limit"),
            offset=int(args.get("offset") or 0),
            recursive=bool(args.get("recursive", False)),
        )


@dataclass(frozen=True)
class DocumentMetadata:
    id: str
    version: int
    tx_id: str
    tx_time: datetime | None


@dataclass(frozen=True)
class DocumentRecord:
    """One committed revision of a document, as exposed by the ledger."""

    metadata: DocumentMetadata
    block_address: dict[str, Any]
    hash: bytes | None
    data: dict[str, Any] | None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> DocumentRecord:
        meta = row.get("metadata") or {}
        return cls(
            metadata=DocumentMetadata(
                id=meta.get("id", ""),
                version=int(meta.get("version", 0)),
                tx_id=meta.get("txId", ""),
                tx_time=meta.get("txTime"),
            ),
            block_address=dict(row.get("blockAddress") or {}),
            hash=row.get("hash"),
            data=dict(row["data"]) if row.get("data") is not None else None,
        )


@dataclass
class Outcome:
    """Result of a write or history call.

    Exactly one of the following describes a failure: *errors* (validation)
    or *refused* (the compiler declined to emit a statement).
    """

    rows: list[Any] = field(default_factory=list)
    errors: list[ValidationError] = field(default_factory=list)
    refused: Refusal | None = None

    @property
    def ok(self) -> bool:
        return not self.errors and self.refused is None

    @property
    def document_ids(self) -> list[str]:
        return [r["documentId"] for r in self.rows if isinstance(r, Mapping) and "documentId" in r]


class Page(list):
    """A slice of a larger, client-side materialized result; *total* is its full size."""

    def __init__(self, rows: list[Any], total: int) -> None:
        super().__init__(rows)
        self.total = total
