"""Chunk producer rows into record batches.

Rows are cast to the stream schema (contracts.row_cast) and grouped into
batches of at most ``batch_size`` rows. Only one batch worth of rows is held
in memory at a time.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass
from typing import Any

import pyarrow as pa

from contracts.errors import ConfigError
from contracts.row_cast import cast_row
from contracts.schema import validate_schema

DEFAULT_BATCH_SIZE = 1024


def check_batch_size(batch_size: int, *, what: str = "batch_size") -> int:
    if isinstance(batch_size, bool) or not isinstance(batch_size, int) or batch_size <= 0:
        raise ConfigError(f"{what} must be a positive integer, got {batch_size!r}")
    return batch_size


def iter_record_batches(
    rows: Iterable[Mapping[str, Any]],
    schema: pa.Schema,
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> Iterator[pa.RecordBatch]:
    """Yield RecordBatches of at most *batch_size* rows, in row order.

    No batch is yielded for an empty input.
    """
    check_batch_size(batch_size)
    validate_schema(schema)

    buffer: list[dict[str, Any]] = []
    for row in rows:
        buffer.append(cast_row(row, schema))
        if len(buffer) >= batch_size:
            yield pa.RecordBatch.from_pylist(buffer, schema=schema)
            buffer = []

    if buffer:
        yield pa.RecordBatch.from_pylist(buffer, schema=schema)


@dataclass(frozen=True)
class RowsSource:
    """In-memory RecordSource over a list of rows."""

    schema: pa.Schema
    records: tuple[Mapping[str, Any], ...]

    @classmethod
    def of(cls, schema: pa.Schema, rows: Iterable[Mapping[str, Any]]) -> RowsSource:
        return cls(schema=schema, records=tuple(rows))

    def rows(self) -> Iterator[Mapping[str, Any]]:
        return iter(self.records)
