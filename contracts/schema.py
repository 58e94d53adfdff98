"""Column types, schema validation and batch construction.

A stream schema is a plain ``pyarrow.Schema`` restricted to a closed set of
primitive column types. Everything that crosses the wire is checked here:
the encoder validates the schema it is opened with, the decoder validates the
schema it reads, and both check every batch against it.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from typing import Any

import pyarrow as pa

from contracts.errors import SchemaError, ShapeError

# -----------------------------
# Closed set of column types
# -----------------------------

_SUPPORTED_TYPE_CHECKS: tuple[tuple[str, Callable[[pa.DataType], bool]], ...] = (
    ("signed integer", pa.types.is_signed_integer),
    ("unsigned integer", pa.types.is_unsigned_integer),
    ("floating point", pa.types.is_floating),
    ("boolean", pa.types.is_boolean),
    ("utf8", pa.types.is_string),
    ("large utf8", pa.types.is_large_string),
    ("timestamp", pa.types.is_timestamp),
    ("date", pa.types.is_date),
    ("decimal", pa.types.is_decimal),
    ("null", pa.types.is_null),
)

UTC_TS_S = pa.timestamp("s")

# Schema emitted by the file statistics producer upstream of the query stage.
FILE_STATS_SCHEMA = pa.schema([
    pa.field("path", pa.string(), nullable=False),
    pa.field("type", pa.string(), nullable=False),       # "dir" | "file" | "symlink" | "unspecified"
    pa.field("read_only", pa.bool_(), nullable=False),
    pa.field("mode", pa.uint32(), nullable=True),
    pa.field("nlink", pa.uint64(), nullable=True),
    pa.field("len", pa.uint64(), nullable=False),
    pa.field("uid", pa.uint32(), nullable=True),
    pa.field("gid", pa.uint32(), nullable=True),
    pa.field("mtime", UTC_TS_S, nullable=True),
])


def type_kind(data_type: pa.DataType) -> str | None:
    """Return the kind name for a supported type, or None if it is not supported."""
    for kind, check in _SUPPORTED_TYPE_CHECKS:
        if check(data_type):
            return kind
    return None


def is_supported_type(data_type: pa.DataType) -> bool:
    return type_kind(data_type) is not None


def validate_schema(schema: pa.Schema) -> pa.Schema:
    """Check that *schema* can be used for a stream or a table.

    Raises SchemaError on zero columns, duplicate names, empty names or a
    column type outside the supported set. Returns the schema unchanged.
    """
    if not isinstance(schema, pa.Schema):
        raise SchemaError(f"Expected a pyarrow.Schema, got {type(schema).__name__}")
    if len(schema) == 0:
        raise SchemaError("Schema must declare at least one column")

    seen: set[str] = set()
    for field in schema:
        if not field.name:
            raise SchemaError("Column names must be non-empty")
        if field.name in seen:
            raise SchemaError(f"Duplicate column name: {field.name!r}")
        seen.add(field.name)
        if not is_supported_type(field.type):
            raise SchemaError(f"Unsupported type for column {field.name!r}: {field.type}")
    return schema


def schemas_compatible(left: pa.Schema, right: pa.Schema) -> bool:
    """Same order, names and types.

    Nullability flags and schema metadata are not compared; nulls in a
    non-nullable column are caught by check_batch instead.
    """
    if len(left) != len(right):
        return False
    for a, b in zip(left, right):
        if a.name != b.name or not a.type.equals(b.type):
            return False
    return True


def describe_schema(schema: pa.Schema) -> str:
    return ", ".join(f"{f.name}:{f.type}{'' if f.nullable else ' not null'}" for f in schema)


# -----------------------------
# Batches
# -----------------------------


def _as_array(values: Any, field: pa.Field) -> pa.Array:
    if isinstance(values, pa.ChunkedArray):
        values = values.combine_chunks()
    if isinstance(values, pa.Array):
        if not values.type.equals(field.type):
            raise ShapeError(
                f"Column {field.name!r} has type {values.type}, schema declares {field.type}"
            )
        return values
    try:
        return pa.array(values, type=field.type)
    except (pa.ArrowInvalid, pa.ArrowTypeError, TypeError, ValueError, OverflowError) as exc:
        raise ShapeError(f"Column {field.name!r} cannot be built as {field.type}: {exc}") from exc


def make_batch(schema: pa.Schema, columns: Mapping[str, Any] | Sequence[Any]) -> pa.RecordBatch:
    """Build a RecordBatch from column values.

    *columns* is either a mapping of column name to values or a sequence of
    column values in schema order. Values may be pyarrow arrays or plain
    Python sequences. Raises ShapeError on a column count/name mismatch or if
    two columns differ in length.
    """
    if isinstance(columns, Mapping):
        names = list(columns.keys())
        if names != schema.names:
            raise ShapeError(f"Batch columns {names} do not match schema columns {schema.names}")
        raw = [columns[name] for name in names]
    else:
        raw = list(columns)
        if len(raw) != len(schema):
            raise ShapeError(f"Batch has {len(raw)} columns, schema declares {len(schema)}")

    arrays = [_as_array(values, field) for values, field in zip(raw, schema)]

    lengths = {field.name: len(arr) for field, arr in zip(schema, arrays)}
    if len(set(lengths.values())) > 1:
        raise ShapeError(f"Columns differ in length: {lengths}")

    batch = pa.RecordBatch.from_arrays(arrays, schema=schema)
    check_batch(schema, batch)
    return batch


def check_batch(schema: pa.Schema, batch: pa.RecordBatch) -> None:
    """Raise ShapeError unless *batch* conforms to *schema*."""
    if not schemas_compatible(schema, batch.schema):
        raise ShapeError(
            f"Batch schema ({describe_schema(batch.schema)}) does not match "
            f"stream schema ({describe_schema(schema)})"
        )
    for field, column in zip(schema, batch.columns):
        if len(column) != batch.num_rows:
            raise ShapeError(
                f"Column {field.name!r} has {len(column)} values, batch declares {batch.num_rows} rows"
            )
        if not field.nullable and column.null_count:
            raise ShapeError(f"Non-nullable column {field.name!r} holds {column.null_count} nulls")


__all__ = [
    "FILE_STATS_SCHEMA",
    "UTC_TS_S",
    "check_batch",
    "describe_schema",
    "is_supported_type",
    "make_batch",
    "schemas_compatible",
    "type_kind",
    "validate_schema",
]
