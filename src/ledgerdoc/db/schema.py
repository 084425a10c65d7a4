"""Schema model: an immutable, ordered list of field descriptors per table.

A SchemaModel is built once, when the repository that owns it is created.
Field order is declaration order and decides the order of compiled columns.
The primary key is resolved at construction; reference targets are checked
for a primary key of their own at the same time.

Schemas can be declared in Python:

    person = SchemaModel([
        SchemaField("id", FieldKind.STRING, primary_key=True),
        SchemaField("age", FieldKind.INTEGER, allow_null=True),
    ])

or from the mapping form used in ledgerdoc.yaml (see from_mapping()).
"""

from __future__ import annotations

import dataclasses
import logging
import re
from collections.abc import Callable, Iterable, Iterator, Mapping
from dataclasses import dataclass
from typing import Any, Protocol

from ledgerdoc.db.types import FieldKind, coerce_timestamp

logger = logging.getLogger(__name__)

_IDENTIFIER_RE: re.Pattern[str] = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class SchemaError(ValueError):
    """Raised when a schema declaration is inconsistent."""


class _NoDefault:
    def __repr__(self) -> str:
        return "NO_DEFAULT"


NO_DEFAULT: Any = _NoDefault()


class Collection(Protocol):
    """What the mapper and repository need from the collection that owns a schema."""

    table: str
    schema: SchemaModel

    # Join-free primary-key lookup used for uniqueness and reference checks.
    def exists(self, value: Any) -> bool: ...

    def ensure_index(self, field_name: str) -> None: ...

    # Used by the owning repository to insert pending referenced documents.
    def insert_validated(self, document: Any) -> list[Any]: ...


def check_identifier(name: str, what: str = "identifier") -> str:
    """Return *name* unchanged, or raise SchemaError if it is not a plain identifier."""
    if not isinstance(name, str) or not _IDENTIFIER_RE.match(name):
        raise SchemaError(f"Invalid {what} {name!r}: use letters, digits and underscores only.")
    return name


@dataclass(frozen=True)
class SchemaField:
    """Descriptor for one field of a table document.

    Attributes:
        name: Field name inside the document.
        kind: Semantic kind (FieldKind).
        primary_key: Marks the application-level primary key.
        allow_null: Missing values bind to None instead of raising ``missing``.
        default: Value used when the input omits the field. Zero-argument
            callables are called on every validation.
        indexed: Missing values ask the owner to ensure a secondary index.
        schema: Nested model for OBJECT fields, or the element model for ARRAY.
        target: Referenced repository for REFERENCE fields, or the element
            target for an ARRAY of references.
    """

    name: str
    kind: FieldKind
    primary_key: bool = False
    allow_null: bool = False
    default: Any = NO_DEFAULT
    indexed: bool = False
    schema: SchemaModel | None = None
    target: Collection | None = None

    def __post_init__(self) -> None:
        check_identifier(self.name, "field name")
        if not isinstance(self.kind, FieldKind):
            object.__setattr__(self, "kind", FieldKind.parse(str(self.kind)))
        if self.kind is FieldKind.OBJECT and self.schema is None:
            raise SchemaError(f"Field '{self.name}': OBJECT fields need a nested schema.")
        if self.kind is FieldKind.REFERENCE and self.target is None:
            raise SchemaError(f"Field '{self.name}': REFERENCE fields need a target repository.")
        if self.schema is not None and self.target is not None:
            raise SchemaError(f"Field '{self.name}': declare either a nested schema or a target, not both.")
        if self.target is not None and self.target.schema.primary_key is None:
            raise SchemaError(
                f"Field '{self.name}': referenced table '{self.target.table}' has no primary key."
            )

    @property
    def has_default(self) -> bool:
        return self.default is not NO_DEFAULT

    def resolve_default(self) -> Any:
        return self.default() if callable(self.default) else self.default

    @property
    def element_model(self) -> SchemaModel | Collection | None:
        """Model each element of a sequence value is validated against."""
        return self.target if self.target is not None else self.schema


class SchemaModel:
    """Ordered, immutable mapping of field name to SchemaField."""

    def __init__(self, fields: Iterable[SchemaField]) -> None:
        ordered: dict[str, SchemaField] = {}
        primary_key: str | None = None
        for f in fields:
            if f.name in ordered:
                raise SchemaError(f"Duplicate field name '{f.name}'.")
            if f.primary_key:
                if primary_key is None:
                    primary_key = f.name
                else:
                    logger.warning(
                        "Field '%s' is also flagged primaryKey; '%s' was declared first and wins.",
                        f.name,
                        primary_key,
                    )
                    f = dataclasses.replace(f, primary_key=False)
            ordered[f.name] = f
        self._fields = ordered
        self._primary_key = primary_key

    # ------------------------------------------------------------------
    # Mapping-ish access
    # ------------------------------------------------------------------

    def __iter__(self) -> Iterator[SchemaField]:
        return iter(self._fields.values())

    def __len__(self) -> int:
        return len(self._fields)

    def __contains__(self, name: object) -> bool:
        return name in self._fields

    def __getitem__(self, name: str) -> SchemaField:
        return self._fields[name]

    def get(self, name: str) -> SchemaField | None:
        return self._fields.get(name)

    def __repr__(self) -> str:
        return f"SchemaModel({list(self._fields)})"

    @property
    def names(self) -> list[str]:
        return list(self._fields)

    @property
    def primary_key(self) -> str | None:
        """Name of the primary key field, or None when the model declares none."""
        return self._primary_key

    @property
    def references(self) -> list[SchemaField]:
        return [f for f in self if f.kind is FieldKind.REFERENCE]

    # ------------------------------------------------------------------
    # Derivation
    # ------------------------------------------------------------------

    def extended(self, extra: Iterable[SchemaField]) -> SchemaModel:
        """Return a new model with *extra* fields appended (existing names are kept)."""
        fields = list(self)
        fields.extend(f for f in extra if f.name not in self._fields)
        return SchemaModel(fields)

    def decode(self, data: Mapping[str, Any]) -> dict[str, Any]:
        """Read stored *data* back through this model.

        Declared fields come out in declaration order, undeclared keys are
        dropped, timestamp strings become datetimes and nested objects are
        decoded by their own models. Fields missing from *data* stay missing.
        """
        result: dict[str, Any] = {}
        for f in self:
            if f.name in data:
                result[f.name] = _decode_value(f, data[f.name])
        return result

    # ------------------------------------------------------------------
    # Declarative form
    # ------------------------------------------------------------------

    @classmethod
    def from_mapping(
        cls,
        spec: Mapping[str, Mapping[str, Any]],
        resolve_target: Callable[[str], Collection] | None = None,
    ) -> SchemaModel:
        """Build a model from the ``fields:`` mapping used in ledgerdoc.yaml.

        Each entry accepts ``kind`` (required), ``primaryKey``, ``allowNull``,
        ``default``, ``indexed``, ``fields`` (nested model) and ``table``
        (reference target, resolved through *resolve_target*). snake_case
        spellings of the flags are accepted as well.

        Raises:
            SchemaError: On an unknown kind, a missing target resolver, or any
                inconsistency caught by SchemaField.
        """
        fields: list[SchemaField] = []
        for name, raw in spec.items():
            if not isinstance(raw, Mapping):
                raise SchemaError(f"Field '{name}': expected a mapping, got {type(raw).__name__}.")
            try:
                kind = FieldKind.parse(str(raw.get("kind", "")))
            except ValueError as exc:
                raise SchemaError(f"Field '{name}': {exc}") from None

            nested = None
            if "fields" in raw:
                nested = cls.from_mapping(raw["fields"], resolve_target)

            target = None
            if raw.get("table"):
                if resolve_target is None:
                    raise SchemaError(f"Field '{name}': cannot resolve table '{raw['table']}'.")
                target = resolve_target(str(raw["table"]))

            fields.append(
                SchemaField(
                    name=str(name),
                    kind=kind,
                    primary_key=bool(_flag(raw, "primaryKey", "primary_key")),
                    allow_null=bool(_flag(raw, "allowNull", "allow_null")),
                    default=raw["default"] if "default" in raw else NO_DEFAULT,
                    indexed=bool(raw.get("indexed", False)),
                    schema=nested,
                    target=target,
                )
            )
        return cls(fields)


def _flag(raw: Mapping[str, Any], camel: str, snake: str) -> Any:
    return raw.get(camel, raw.get(snake, False))


def _decode_value(f: SchemaField, value: Any) -> Any:
    if f.kind is FieldKind.TIMESTAMP and isinstance(value, str):
        parsed = coerce_timestamp(value)
        return value if parsed is None else parsed
    if f.schema is None:
        return value
    if isinstance(value, Mapping):
        return f.schema.decode(value)
    if isinstance(value, (list, tuple)):
        return [f.schema.decode(v) if isinstance(v, Mapping) else v for v in value]
    return value
