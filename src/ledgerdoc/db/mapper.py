"""Document mapper: validate untyped input against a SchemaModel.

validate() walks the schema in declaration order and returns either a
ValidatedDocument (every field's resolved value attached) or Invalid (the
collected ValidationErrors). Failures are values, never exceptions.

Reference fields given a primitive are checked against the target table's
primary key; given a mapping they are validated against the target schema and
bound as a PendingReference, which the repository inserts before the outer
document. Nested errors carry dotted paths (``owner.name``, ``tags.2.label``).

Below *max_depth* nothing is inspected. What happens there is the explicit
DepthPolicy: ACCEPT binds the raw data unchecked, REJECT fails closed.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from ledgerdoc.db.models import ErrorKind, ValidationError
from ledgerdoc.db.schema import Collection, SchemaField, SchemaModel
from ledgerdoc.db.types import FieldKind, coerce_timestamp, describe, matches_kind

DEFAULT_MAX_DEPTH = 3


class DepthPolicy(str, Enum):
    """What validate() does with data nested deeper than *max_depth*."""

    ACCEPT = "accept"
    REJECT = "reject"


@dataclass(frozen=True)
class Invalid:
    errors: list[ValidationError]


@dataclass(frozen=True)
class BoundField:
    field: SchemaField
    value: Any


@dataclass(frozen=True)
class PendingReference:
    """A referenced document that does not exist yet and must be inserted first."""

    target: Collection
    document: ValidatedDocument

    @property
    def key(self) -> Any:
        return self.document.get(self.target.schema.primary_key)


@dataclass(frozen=True)
class ValidatedDocument:
    """Validated value tree for one schema level.

    An unchecked document (``checked=False``) is what the depth cutoff returns
    under DepthPolicy.ACCEPT: it carries the raw input and nothing else.
    """

    fields: tuple[BoundField, ...] = ()
    raw: Any = None
    checked: bool = True

    @classmethod
    def unchecked(cls, data: Any) -> ValidatedDocument:
        return cls(raw=data, checked=False)

    def get(self, name: str | None, default: Any = None) -> Any:
        if not self.checked:
            return self.raw.get(name, default) if isinstance(self.raw, Mapping) else default
        for bound in self.fields:
            if bound.field.name == name:
                return bound.value
        return default

    def names(self) -> list[str]:
        return [b.field.name for b in self.fields]

    def to_value(self) -> Any:
        """Plain value tree; pending references collapse to their primary key."""
        if not self.checked:
            return self.raw
        return {b.field.name: _plain(b.value) for b in self.fields}

    def pending_references(self) -> Iterator[PendingReference]:
        """Yield references at this level (including nested objects and arrays) still to insert."""
        for bound in self.fields:
            yield from _pending_in(bound.value)


def _plain(value: Any) -> Any:
    if isinstance(value, ValidatedDocument):
        return value.to_value()
    if isinstance(value, PendingReference):
        return value.key
    if isinstance(value, list):
        return [_plain(v) for v in value]
    return value


def _pending_in(value: Any) -> Iterator[PendingReference]:
    if isinstance(value, PendingReference):
        yield value
    elif isinstance(value, ValidatedDocument):
        yield from value.pending_references()
    elif isinstance(value, list):
        for element in value:
            yield from _pending_in(element)


# Marks a field the mapper decided not to bind.
_UNBOUND = object()


@dataclass(frozen=True)
class _Pass:
    owner: Collection
    max_depth: int
    is_update: bool
    depth_policy: DepthPolicy


def validate(
    data: Any,
    schema: SchemaModel,
    owner: Collection,
    *,
    depth: int = 0,
    max_depth: int = DEFAULT_MAX_DEPTH,
    is_update: bool = False,
    depth_policy: DepthPolicy = DepthPolicy.ACCEPT,
) -> ValidatedDocument | Invalid:
    """Validate *data* against *schema*, owned by the repository *owner*.

    Args:
        data: Untyped input mapping.
        schema: Model for this level.
        owner: Repository whose table holds documents of *schema*; used for
            primary-key uniqueness lookups and ensure_index() calls.
        depth: Current nesting level.
        max_depth: Level at which validation stops (see DepthPolicy).
        is_update: Skip ``missing`` and primary-key uniqueness checks.
        depth_policy: Behaviour at the depth cutoff.

    Returns:
        ValidatedDocument on success, Invalid with every collected error otherwise.
    """
    run = _Pass(owner=owner, max_depth=max_depth, is_update=is_update, depth_policy=depth_policy)
    return _validate(data, schema, run, depth)


def _validate(data: Any, schema: SchemaModel, run: _Pass, depth: int) -> ValidatedDocument | Invalid:
    if depth >= run.max_depth:
        if run.depth_policy is DepthPolicy.REJECT:
            return Invalid([ValidationError(field="", kind=ErrorKind.DEPTH_EXCEEDED, value=depth)])
        return ValidatedDocument.unchecked(data)

    if not isinstance(data, Mapping):
        return Invalid(
            [ValidationError(field="", kind=ErrorKind.INVALID_VALUE, expected="object", received=describe(data))]
        )

    errors: list[ValidationError] = []
    bound: list[BoundField] = []
    for f in schema:
        value = data.get(f.name)
        if value is not None:
            resolved, field_errors = _bind_value(f, value, schema, run, depth)
            errors.extend(field_errors)
            if resolved is not _UNBOUND:
                bound.append(BoundField(f, resolved))
        elif f.has_default:
            bound.append(BoundField(f, f.resolve_default()))
        elif f.allow_null:
            bound.append(BoundField(f, None))
        elif f.indexed:
            run.owner.ensure_index(f.name)
        elif not run.is_update:
            errors.append(ValidationError(field=f.name, kind=ErrorKind.MISSING))

    if errors:
        return Invalid(errors)
    return ValidatedDocument(fields=tuple(bound))


def _bind_value(
    f: SchemaField, value: Any, schema: SchemaModel, run: _Pass, depth: int
) -> tuple[Any, list[ValidationError]]:
    if f.kind is FieldKind.REFERENCE:
        return _bind_reference(f.name, f.target, value, run, depth + 1)

    if f.kind is FieldKind.JSON:
        return value, []

    if f.kind is FieldKind.TIMESTAMP:
        value = coerce_timestamp(value) or value

    if matches_kind(f.kind, value):
        if f.kind is FieldKind.OBJECT:
            nested = _validate(value, f.schema, run, depth + 1)
            if isinstance(nested, Invalid):
                return _UNBOUND, [e.prefixed(f.name) for e in nested.errors]
            value = nested
        elif f.kind is FieldKind.ARRAY and f.element_model is not None:
            return _bind_sequence(f, value, run, depth)

        if f.primary_key and not run.is_update and schema is run.owner.schema:
            if run.owner.exists(value):
                return _UNBOUND, [
                    ValidationError(field=f.name, kind=ErrorKind.PK_REFERENCE_DUPLICATE, value=value)
                ]
        return value, []

    if matches_kind(FieldKind.ARRAY, value) and f.element_model is not None:
        return _bind_sequence(f, value, run, depth)

    return _UNBOUND, [
        ValidationError(
            field=f.name,
            kind=ErrorKind.INVALID_VALUE,
            value=value,
            expected=f.kind.value,
            received=describe(value),
        )
    ]


def _bind_reference(
    path: str, target: Collection, value: Any, run: _Pass, depth: int
) -> tuple[Any, list[ValidationError]]:
    if isinstance(value, Mapping):
        nested_run = _Pass(
            owner=target,
            max_depth=run.max_depth,
            is_update=run.is_update,
            depth_policy=run.depth_policy,
        )
        nested = _validate(value, target.schema, nested_run, depth)
        if isinstance(nested, Invalid):
            return _UNBOUND, [e.prefixed(path) for e in nested.errors]
        return PendingReference(target=target, document=nested), []

    if matches_kind(FieldKind.ARRAY, value):
        return _UNBOUND, [
            ValidationError(
                field=path,
                kind=ErrorKind.INVALID_VALUE,
                value=value,
                expected=FieldKind.REFERENCE.value,
                received=describe(value),
            )
        ]

    if not target.exists(value):
        return _UNBOUND, [ValidationError(field=path, kind=ErrorKind.DOCUMENT_REFERENCE_NOT_FOUND, value=value)]
    return value, []


def _bind_sequence(
    f: SchemaField, value: list[Any], run: _Pass, depth: int
) -> tuple[list[Any], list[ValidationError]]:
    # The sequence is bound even when elements fail; the errors still fail the document.
    errors: list[ValidationError] = []
    items: list[Any] = []
    for index, element in enumerate(value):
        path = f"{f.name}.{index}"
        if f.target is not None:
            item, element_errors = _bind_reference(path, f.target, element, run, depth + 1)
        else:
            nested = _validate(element, f.schema, run, depth + 1)
            if isinstance(nested, Invalid):
                item, element_errors = _UNBOUND, [e.prefixed(path) for e in nested.errors]
            else:
                item, element_errors = nested, []
        errors.extend(element_errors)
        items.append(element if item is _UNBOUND else item)
    return items, errors
