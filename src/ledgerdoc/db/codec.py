"""Amazon Ion codec for statement parameters and ledger results.

encode() writes one value as an Ion binary stream through the event writer;
decode() reads it back through the event reader. to_native() turns values the
driver has already materialized (IonPyDict, IonPyList, IonPyText, ...) into
plain Python trees so callers never see Ion wrapper types.

Supported shapes: None, bool, int, float, Decimal, str, bytes, datetime,
date, sequences (Ion list) and string-keyed mappings (Ion struct).
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import date, datetime
from decimal import Decimal
from io import BytesIO
from typing import Any

from amazon.ion.core import (
    ION_STREAM_END_EVENT,
    IonEvent,
    IonEventType,
    IonType,
    Timestamp,
    TimestampPrecision,
)
from amazon.ion.reader import NEXT_EVENT, blocking_reader
from amazon.ion.reader_binary import binary_reader
from amazon.ion.reader_managed import managed_reader
from amazon.ion.simple_types import IonPyNull
from amazon.ion.symbols import SymbolToken
from amazon.ion.writer import blocking_writer
from amazon.ion.writer_binary import binary_writer


class EncodingError(ValueError):
    """Raised for values the codec cannot represent in Ion."""


# ------------------------------------------------------------------
# Encoding
# ------------------------------------------------------------------


def encode(value: Any) -> bytes:
    """Return *value* as a single-value Ion binary stream.

    Raises:
        EncodingError: If the value (or anything nested in it) has an
            unsupported type, or a struct key is not a string.
    """
    buf = BytesIO()
    writer = blocking_writer(binary_writer(), buf)
    _write(writer, value)
    writer.send(ION_STREAM_END_EVENT)
    return buf.getvalue()


def _write(writer: Any, value: Any, field_name: str | None = None) -> None:
    if value is None:
        writer.send(IonEvent(IonEventType.SCALAR, IonType.NULL, field_name=field_name))
    elif isinstance(value, bool):
        writer.send(IonEvent(IonEventType.SCALAR, IonType.BOOL, value, field_name=field_name))
    elif isinstance(value, int):
        writer.send(IonEvent(IonEventType.SCALAR, IonType.INT, value, field_name=field_name))
    elif isinstance(value, float):
        writer.send(IonEvent(IonEventType.SCALAR, IonType.FLOAT, value, field_name=field_name))
    elif isinstance(value, Decimal):
        writer.send(IonEvent(IonEventType.SCALAR, IonType.DECIMAL, value, field_name=field_name))
    elif isinstance(value, str):
        writer.send(IonEvent(IonEventType.SCALAR, IonType.STRING, value, field_name=field_name))
    elif isinstance(value, (bytes, bytearray)):
        writer.send(IonEvent(IonEventType.SCALAR, IonType.BLOB, bytes(value), field_name=field_name))
    elif isinstance(value, datetime):
        writer.send(IonEvent(IonEventType.SCALAR, IonType.TIMESTAMP, value, field_name=field_name))
    elif isinstance(value, date):
        day = Timestamp(value.year, value.month, value.day, precision=TimestampPrecision.DAY)
        writer.send(IonEvent(IonEventType.SCALAR, IonType.TIMESTAMP, day, field_name=field_name))
    elif isinstance(value, (list, tuple)):
        writer.send(IonEvent(IonEventType.CONTAINER_START, IonType.LIST, field_name=field_name))
        for element in value:
            _write(writer, element)
        writer.send(IonEvent(IonEventType.CONTAINER_END))
    elif isinstance(value, Mapping):
        writer.send(IonEvent(IonEventType.CONTAINER_START, IonType.STRUCT, field_name=field_name))
        for key, element in value.items():
            if not isinstance(key, str):
                raise EncodingError(f"Struct keys must be strings, got {type(key).__name__}.")
            _write(writer, element, field_name=key)
        writer.send(IonEvent(IonEventType.CONTAINER_END))
    else:
        raise EncodingError(f"Cannot convert to Ion for type: {type(value).__name__}.")


# ------------------------------------------------------------------
# Decoding
# ------------------------------------------------------------------


def decode(data: bytes) -> Any:
    """Decode the first value of an Ion binary stream into a plain tree."""
    reader = blocking_reader(managed_reader(binary_reader(), None), BytesIO(data))
    return decode_reader(reader)


def decode_reader(reader: Any, event: Any = None) -> Any:
    """Decode the value at *event* (or, if None, the reader's next value).

    A reader that has not produced an event yet is advanced once before the
    type is inspected. Structs and lists are read recursively until their
    CONTAINER_END event.
    """
    if event is None:
        event = reader.send(NEXT_EVENT)
    while event.event_type is IonEventType.VERSION_MARKER:
        event = reader.send(NEXT_EVENT)

    if event.event_type is IonEventType.SCALAR:
        return _scalar(event)

    if event.event_type is IonEventType.CONTAINER_START:
        if event.ion_type is IonType.STRUCT:
            struct: dict[str, Any] = {}
            child = reader.send(NEXT_EVENT)
            while child.event_type is not IonEventType.CONTAINER_END:
                struct[_field_name(child)] = decode_reader(reader, child)
                child = reader.send(NEXT_EVENT)
            return struct
        items: list[Any] = []
        child = reader.send(NEXT_EVENT)
        while child.event_type is not IonEventType.CONTAINER_END:
            items.append(decode_reader(reader, child))
            child = reader.send(NEXT_EVENT)
        return items

    if event.event_type is IonEventType.STREAM_END:
        raise EncodingError("Ion stream contains no value.")
    raise EncodingError(f"Unexpected Ion event: {event.event_type}.")


def _scalar(event: Any) -> Any:
    value = event.value
    if value is None or event.ion_type is IonType.NULL:
        return None
    if event.ion_type is IonType.BOOL:
        return bool(value)
    if event.ion_type is IonType.SYMBOL:
        return value.text if isinstance(value, SymbolToken) else str(value)
    if event.ion_type is IonType.TIMESTAMP:
        return _plain_temporal(value)
    if event.ion_type in (IonType.BLOB, IonType.CLOB):
        return bytes(value)
    return value


def _field_name(event: Any) -> str:
    name = event.field_name
    return name.text if isinstance(name, SymbolToken) else str(name)


def _plain_temporal(value: datetime) -> datetime | date:
    if getattr(value, "precision", None) is TimestampPrecision.DAY:
        return date(value.year, value.month, value.day)
    return datetime(
        value.year,
        value.month,
        value.day,
        value.hour,
        value.minute,
        value.second,
        value.microsecond,
        tzinfo=value.tzinfo,
    )


# ------------------------------------------------------------------
# Materialized driver values
# ------------------------------------------------------------------


def to_native(value: Any) -> Any:
    """Convert a driver result value (IonPy* types or plain Python) to a plain tree."""
    if value is None or isinstance(value, IonPyNull):
        return None
    if isinstance(value, bool) or getattr(value, "ion_type", None) is IonType.BOOL:
        return bool(value)
    if isinstance(value, SymbolToken):
        return value.text
    if isinstance(value, Mapping):
        return {str(k): to_native(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_native(v) for v in value]
    if isinstance(value, str):
        return str(value)
    if isinstance(value, int):
        return int(value)
    if isinstance(value, float):
        return float(value)
    if isinstance(value, Decimal):
        return Decimal(value)
    if isinstance(value, datetime):
        return _plain_temporal(value)
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    return value
