"""Casting helpers from producer rows to Arrow column values.

Producers hand over loosely typed rows (dicts with ints, strings, datetimes,
ISO strings...). Before rows are batched they are cast to the stream schema so
any mismatch is surfaced at the producer boundary rather than as a corrupt
batch downstream.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import UTC, date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

import pyarrow as pa

from contracts.errors import ShapeError


class RowCastError(ShapeError):
    """Raised when a row value cannot be cast to its column type."""


def _parse_datetime_utc(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        # epoch seconds, as emitted by stat(2)
        return datetime.fromtimestamp(value, tz=UTC)
    if isinstance(value, str):
        txt = value.strip()
        if txt == "":
            return None
        try:
            if txt.endswith("Z"):
                txt = txt[:-1] + "+00:00"
            dt = datetime.fromisoformat(txt)
        except ValueError:
            return None
        dt = dt if dt.tzinfo else dt.replace(tzinfo=UTC)
        return dt.astimezone(UTC)
    if isinstance(value, datetime):
        dt = value if value.tzinfo else value.replace(tzinfo=UTC)
        return dt.astimezone(UTC)
    return None


def _parse_date(value: Any) -> date | None:
    if isinstance(value, str):
        txt = value.strip()
        if txt == "":
            return None
        try:
            return date.fromisoformat(txt)
        except ValueError:
            return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return None


def _parse_decimal(value: Any) -> Decimal | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        txt = value.strip()
        if txt == "":
            return None
        try:
            return Decimal(txt)
        except InvalidOperation:
            return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        return Decimal(str(value))
    return None


def _empty_to_none_if_needed(value: Any, field_type: pa.DataType) -> Any:
    # For non-string fields, "" should become None
    if isinstance(value, str) and value == "":
        if pa.types.is_string(field_type) or pa.types.is_large_string(field_type):
            return value
        return None
    return value


def cast_value(value: Any, field_type: pa.DataType) -> Any:
    """
    Cast a single value to match an Arrow field type.
    Returns Python values suitable for pa.RecordBatch.from_pylist(..., schema=...).
    """
    value = _empty_to_none_if_needed(value, field_type)
    if value is None:
        return None

    if pa.types.is_null(field_type):
        raise RowCastError(f"Cannot cast {value!r} to null")

    # Strings
    if pa.types.is_string(field_type) or pa.types.is_large_string(field_type):
        if isinstance(value, bytes):
            try:
                return value.decode("utf-8")
            except UnicodeDecodeError as exc:
                raise RowCastError(f"Cannot cast {value!r} to utf8") from exc
        return str(value)

    # Boolean
    if pa.types.is_boolean(field_type):
        if isinstance(value, bool):
            return value
        if isinstance(value, int):
            return bool(value)
        if isinstance(value, str):
            txt = value.strip().lower()
            if txt in ("true", "1", "yes", "y"):
                return True
            if txt in ("false", "0", "no", "n"):
                return False
        raise RowCastError(f"Cannot cast {value!r} to bool")

    # Integers
    if pa.types.is_integer(field_type):
        if isinstance(value, float) and not value.is_integer():
            raise RowCastError(f"Cannot cast {value!r} to {field_type} without losing precision")
        try:
            out = int(value)
        except (ValueError, TypeError) as exc:
            raise RowCastError(f"Cannot cast {value!r} to int") from exc
        if pa.types.is_unsigned_integer(field_type) and out < 0:
            raise RowCastError(f"Cannot cast negative {value!r} to {field_type}")
        return out

    # Floating point
    if pa.types.is_floating(field_type):
        if isinstance(value, bool):
            raise RowCastError(f"Cannot cast {value!r} to {field_type}")
        try:
            return float(value)
        except (ValueError, TypeError) as exc:
            raise RowCastError(f"Cannot cast {value!r} to float") from exc

    # Decimal
    if pa.types.is_decimal(field_type):
        dec = _parse_decimal(value)
        if dec is None:
            raise RowCastError(f"Cannot cast {value!r} to Decimal")
        return dec

    # Timestamp
    if pa.types.is_timestamp(field_type):
        dt = _parse_datetime_utc(value)
        if dt is None:
            raise RowCastError(f"Cannot cast {value!r} to datetime")
        # naive columns store UTC wall time
        return dt if field_type.tz else dt.replace(tzinfo=None)

    # Date32/Date64
    if pa.types.is_date(field_type):
        d = _parse_date(value)
        if d is None:
            raise RowCastError(f"Cannot cast {value!r} to date")
        return d

    raise RowCastError(f"Unsupported column type {field_type}")


def cast_row(row: Mapping[str, Any], schema: pa.Schema) -> dict[str, Any]:
    """
    Cast a producer row into a record that matches the given Arrow schema.
    Unknown keys are ignored (schema is the contract).
    Missing keys become None, which is rejected for non-nullable columns.
    """
    out: dict[str, Any] = {}
    for field in schema:
        try:
            value = cast_value(row.get(field.name), field.type)
        except RowCastError as exc:
            raise RowCastError(f"Column {field.name!r}: {exc}") from exc
        if value is None and not field.nullable:
            raise RowCastError(f"Column {field.name!r} is not nullable but has no value")
        out[field.name] = value
    return out
