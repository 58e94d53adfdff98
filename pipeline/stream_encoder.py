"""Arrow IPC stream encoder.

This is the write side of the wire boundary: it validates the schema once,
checks every batch against it and appends self-framed messages (schema,
record batches, end-of-stream marker) to a byte sink as they are submitted.
Nothing is buffered beyond the batch being written.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass
from types import TracebackType
from typing import Any

import pyarrow as pa

from contracts.errors import ClosedStreamError, ConfigError, ShapeError, StreamError
from contracts.interfaces import ByteSinkProtocol, RecordSourceProtocol
from contracts.schema import check_batch, make_batch, validate_schema
from pipeline.batching import DEFAULT_BATCH_SIZE, check_batch_size, iter_record_batches

logger = logging.getLogger(__name__)

_COMPRESSIONS = (None, "lz4", "zstd")

BatchLike = pa.RecordBatch | Mapping[str, Any] | Sequence[Any]


@dataclass(frozen=True)
class EncoderConfig:
    """
    Encoder settings.
    """
    max_batch_size: int = DEFAULT_BATCH_SIZE   # larger batches are split
    compression: str | None = None             # IPC body compression: None | "lz4" | "zstd"

    def validate(self) -> EncoderConfig:
        check_batch_size(self.max_batch_size, what="max_batch_size")
        if self.compression not in _COMPRESSIONS:
            raise ConfigError(f"compression must be one of {_COMPRESSIONS}, got {self.compression!r}")
        return self


@dataclass
class EncoderStats:
    batches_written: int = 0
    rows_written: int = 0


class StreamEncoder:
    """
    Writes one schema, then record batches, then the end-of-stream marker.

    Batches are emitted in submission order. A batch with more than
    ``max_batch_size`` rows is emitted as consecutive slices.

    Usage:
        with StreamEncoder(sys.stdout.buffer, schema) as enc:
            enc.write_batch(batch)
    """

    def __init__(
        self,
        sink: ByteSinkProtocol | pa.NativeFile,
        schema: pa.Schema,
        *,
        config: EncoderConfig | None = None,
    ) -> None:
        self._cfg = (config or EncoderConfig()).validate()
        self._schema = validate_schema(schema)
        self._sink = sink
        self._closed = False
        self.stats = EncoderStats()

        options = pa.ipc.IpcWriteOptions(compression=self._cfg.compression)
        try:
            self._writer = pa.ipc.new_stream(sink, self._schema, options=options)
        except OSError as exc:
            raise StreamError(f"Cannot open output stream: {exc}") from exc

    @property
    def schema(self) -> pa.Schema:
        return self._schema

    @property
    def closed(self) -> bool:
        return self._closed

    def write_batch(self, batch: BatchLike) -> None:
        """
        Write one batch (RecordBatch, mapping of columns, or sequence of columns).
        """
        self._check_open()
        batch = self._conform(batch)
        for piece in self._slices(batch):
            self._write(piece)

    def write_table(self, table: pa.Table) -> None:
        """
        Write every batch of an Arrow table, in order.
        """
        self._check_open()
        for batch in table.to_batches(max_chunksize=self._cfg.max_batch_size):
            self.write_batch(batch)

    def write_batches(self, batches: Iterable[BatchLike]) -> None:
        for batch in batches:
            self.write_batch(batch)

    def write_rows(self, rows: Iterable[Mapping[str, Any]]) -> None:
        """
        Cast and chunk producer rows into batches of at most max_batch_size rows.
        """
        self._check_open()
        self.write_batches(iter_record_batches(rows, self._schema, self._cfg.max_batch_size))

    def close(self) -> EncoderStats:
        """
        Write the end-of-stream marker and flush the sink. Safe to call twice.
        """
        if self._closed:
            return self.stats
        self._closed = True
        try:
            self._writer.close()
            flush = getattr(self._sink, "flush", None)
            if callable(flush):
                flush()
        except OSError as exc:
            raise StreamError(f"Cannot finish output stream: {exc}") from exc

        logger.debug(
            "stream closed: batches=%d rows=%d", self.stats.batches_written, self.stats.rows_written
        )
        return self.stats

    def abort(self) -> None:
        """
        Stop writing without an end-of-stream marker (the stream stays incomplete).
        """
        self._closed = True

    def __enter__(self) -> StreamEncoder:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if exc_type is None:
            self.close()
        else:
            self.abort()

    # -------------------------
    # Internal helpers
    # -------------------------

    def _check_open(self) -> None:
        if self._closed:
            raise ClosedStreamError("Stream encoder is closed")

    def _conform(self, batch: BatchLike) -> pa.RecordBatch:
        if not isinstance(batch, pa.RecordBatch):
            return make_batch(self._schema, batch)

        check_batch(self._schema, batch)
        if not batch.schema.equals(self._schema):
            # nullability flags / metadata differ: re-label with the stream schema
            batch = pa.RecordBatch.from_arrays(batch.columns, schema=self._schema)
        return batch

    def _slices(self, batch: pa.RecordBatch) -> Iterator[pa.RecordBatch]:
        size = self._cfg.max_batch_size
        if batch.num_rows <= size:
            yield batch
            return
        for offset in range(0, batch.num_rows, size):
            yield batch.slice(offset, size)

    def _write(self, batch: pa.RecordBatch) -> None:
        try:
            self._writer.write_batch(batch)
        except pa.ArrowInvalid as exc:
            raise ShapeError(f"Batch rejected by the stream writer: {exc}") from exc
        except OSError as exc:
            raise StreamError(f"Cannot write to output stream: {exc}") from exc

        self.stats.batches_written += 1
        self.stats.rows_written += batch.num_rows


def open_stream(
    sink: ByteSinkProtocol | pa.NativeFile,
    schema: pa.Schema,
    *,
    max_batch_size: int = DEFAULT_BATCH_SIZE,
    compression: str | None = None,
) -> StreamEncoder:
    """Open an encoder on *sink*; fails with SchemaError on an invalid schema."""
    return StreamEncoder(
        sink,
        schema,
        config=EncoderConfig(max_batch_size=max_batch_size, compression=compression),
    )


def encode_source(
    source: RecordSourceProtocol,
    sink: ByteSinkProtocol | pa.NativeFile,
    *,
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> EncoderStats:
    """Encode every row of a record source as one complete stream."""
    with open_stream(sink, source.schema, max_batch_size=batch_size) as enc:
        enc.write_rows(source.rows())
    return enc.stats
