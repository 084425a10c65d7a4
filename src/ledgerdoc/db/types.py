"""Field kinds understood by the document mapper and query compiler."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any


class FieldKind(str, Enum):
    """Closed set of semantic field kinds a schema field can declare."""

    STRING = "string"
    NUMBER = "number"
    INTEGER = "integer"
    BOOLEAN = "boolean"
    TIMESTAMP = "timestamp"
    OBJECT = "object"
    ARRAY = "array"
    JSON = "json"
    REFERENCE = "reference"

    @classmethod
    def parse(cls, name: str) -> FieldKind:
        """Return the kind for *name*, accepting a few common aliases."""
        key = name.strip().lower()
        key = _ALIASES.get(key, key)
        try:
            return cls(key)
        except ValueError:
            known = ", ".join(k.value for k in cls)
            raise ValueError(f"Unknown field kind '{name}'. Known kinds: {known}") from None

    @property
    def is_numeric(self) -> bool:
        return self in (FieldKind.NUMBER, FieldKind.INTEGER)


_ALIASES: dict[str, str] = {
    "str": "string",
    "int": "integer",
    "bool": "boolean",
    "float": "number",
    "decimal": "number",
    "datetime": "timestamp",
    "struct": "object",
    "list": "array",
    "ledger": "reference",
}


def _is_string(value: Any) -> bool:
    return isinstance(value, str)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)


def _is_integer(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_boolean(value: Any) -> bool:
    return isinstance(value, bool)


def _is_timestamp(value: Any) -> bool:
    return isinstance(value, (datetime, date))


def _is_object(value: Any) -> bool:
    return isinstance(value, Mapping)


def _is_array(value: Any) -> bool:
    return isinstance(value, (list, tuple))


# REFERENCE and JSON are resolved by the mapper before a native check is made.
_NATIVE_CHECKS = {
    FieldKind.STRING: _is_string,
    FieldKind.NUMBER: _is_number,
    FieldKind.INTEGER: _is_integer,
    FieldKind.BOOLEAN: _is_boolean,
    FieldKind.TIMESTAMP: _is_timestamp,
    FieldKind.OBJECT: _is_object,
    FieldKind.ARRAY: _is_array,
}


def matches_kind(kind: FieldKind, value: Any) -> bool:
    """Return True if *value* has the native Python shape of *kind*."""
    check = _NATIVE_CHECKS.get(kind)
    return check(value) if check is not None else False


def coerce_timestamp(value: Any) -> datetime | date | None:
    """Return a datetime for an ISO-8601 string, the value itself if temporal, else None."""
    if _is_timestamp(value):
        return value
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return datetime.fromisoformat(text)
        except ValueError:
            return None
    return None


def describe(value: Any) -> str:
    """Name the kind a value would have, for ``invalid_value`` errors."""
    if value is None:
        return "null"
    for kind in (
        FieldKind.BOOLEAN,
        FieldKind.INTEGER,
        FieldKind.NUMBER,
        FieldKind.STRING,
        FieldKind.TIMESTAMP,
        FieldKind.OBJECT,
        FieldKind.ARRAY,
    ):
        if matches_kind(kind, value):
            return kind.value
    return type(value).__name__
