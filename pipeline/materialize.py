"""Bounded materialization of a batch stream into a named table.

Batches are consumed strictly in order until the stream ends or the row cap
is reached. Under the default ``truncate`` policy the batch that crosses the
cap is cut to exactly the remaining rows and the input is not advanced any
further. Under ``reject`` crossing the cap is an error.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from typing import Literal

import pyarrow as pa

from contracts.errors import ConfigError, RowCapExceededError, ShapeError
from contracts.schema import check_batch, describe_schema, validate_schema

logger = logging.getLogger(__name__)

OverflowPolicy = Literal["truncate", "reject"]
OVERFLOW_POLICIES: tuple[str, ...] = ("truncate", "reject")


@dataclass(frozen=True)
class Table:
    """
    A named, immutable, in-memory table.

    ``data`` holds the materialized batches as chunks of one Arrow table, in
    stream order. Arrow tables are immutable, so the table can be handed to
    any number of queries.
    """
    name: str
    schema: pa.Schema
    data: pa.Table
    batches_consumed: int = 0
    truncated: bool = False

    @property
    def num_rows(self) -> int:
        return self.data.num_rows

    def to_batches(self) -> list[pa.RecordBatch]:
        return self.data.to_batches()

    def column(self, name: str) -> list:
        return self.data.column(name).to_pylist()


def _check_params(name: str, max_rows: int, overflow: str) -> None:
    if not isinstance(name, str) or not name.strip():
        raise ConfigError(f"Table name must be a non-empty string, got {name!r}")
    if isinstance(max_rows, bool) or not isinstance(max_rows, int) or max_rows <= 0:
        raise ConfigError(f"max_rows must be a positive integer, got {max_rows!r}")
    if overflow not in OVERFLOW_POLICIES:
        raise ConfigError(f"overflow must be one of {OVERFLOW_POLICIES}, got {overflow!r}")


def materialize(
    schema: pa.Schema,
    batches: Iterable[pa.RecordBatch],
    name: str,
    max_rows: int,
    *,
    overflow: OverflowPolicy = "truncate",
) -> Table:
    """
    Concatenate *batches* into a Table of at most *max_rows* rows.
    """
    _check_params(name, max_rows, overflow)
    validate_schema(schema)

    kept: list[pa.RecordBatch] = []
    rows_so_far = 0
    consumed = 0
    truncated = False

    it: Iterator[pa.RecordBatch] = iter(batches)
    while rows_so_far < max_rows:
        batch = next(it, None)
        if batch is None:
            break
        consumed += 1

        try:
            check_batch(schema, batch)
        except ShapeError as exc:
            raise ShapeError(f"Batch {consumed} does not fit table {name!r}: {exc}") from exc
        if not batch.schema.equals(schema):
            batch = pa.RecordBatch.from_arrays(batch.columns, schema=schema)

        remaining = max_rows - rows_so_far
        if batch.num_rows > remaining:
            if overflow == "reject":
                raise RowCapExceededError(
                    f"Table {name!r} would exceed max_rows={max_rows} "
                    f"(batch {consumed} brings {rows_so_far + batch.num_rows} rows)"
                )
            batch = batch.slice(0, remaining)
            truncated = True

        kept.append(batch)
        rows_so_far += batch.num_rows

    if overflow == "reject" and rows_so_far == max_rows:
        # cap hit exactly: any further non-empty batch is overflow
        for extra in it:
            if extra.num_rows:
                raise RowCapExceededError(
                    f"Table {name!r} would exceed max_rows={max_rows} (stream has more rows)"
                )

    data = pa.Table.from_batches(kept, schema=schema)
    table = Table(name=name, schema=schema, data=data, batches_consumed=consumed, truncated=truncated)

    logger.info(
        "materialized table %r: rows=%d batches=%d truncated=%s schema=(%s)",
        name,
        table.num_rows,
        consumed,
        truncated,
        describe_schema(schema),
    )
    return table
