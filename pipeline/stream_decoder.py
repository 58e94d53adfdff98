"""Arrow IPC stream decoder.

Read side of the wire boundary. Opening a decoder reads and validates the
schema message; batches are then decoded lazily, one message at a time, as
the caller iterates. The decoder is the batch sequence itself: forward-only,
single-pass and not restartable.

Failure translation:
  - truncated / malformed messages        -> FramingError
  - invalid declared schema               -> SchemaError
  - batch inconsistent with its buffers   -> ShapeError
  - I/O failure on the source             -> StreamError
Any failure aborts the sequence; later iteration yields nothing.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any

import pyarrow as pa

from contracts.errors import FramingError, SchemaError, ShapeError, StreamError
from contracts.interfaces import ByteSourceProtocol
from contracts.schema import check_batch, validate_schema
from pipeline.batching import check_batch_size

logger = logging.getLogger(__name__)

SourceLike = bytes | bytearray | memoryview | pa.Buffer | pa.NativeFile | ByteSourceProtocol

# Decoder states
STATE_OPEN = "open"
STATE_EXHAUSTED = "exhausted"
STATE_FAILED = "failed"


@dataclass
class DecoderStats:
    batches_read: int = 0
    rows_read: int = 0


def _is_transport_error(exc: OSError) -> bool:
    """Tell a failing source (pipe, file) apart from Arrow's short-read status.

    Errors raised by the source itself keep their Python type and usually an
    errno; Arrow reports a message body shorter than its declared length as a
    bare OSError without errno.
    """
    return type(exc) is not OSError or exc.errno is not None


def _is_length_mismatch(exc: Exception) -> bool:
    """Arrow rejects a batch whose declared row count disagrees with a column length."""
    return "did not match record batch length" in str(exc)


def _as_source(source: Any) -> Any:
    if isinstance(source, (bytes, bytearray, memoryview)):
        return pa.BufferReader(pa.py_buffer(source))
    if isinstance(source, pa.Buffer):
        return pa.BufferReader(source)
    return source


class StreamDecoder:
    """
    Lazy batch sequence over an Arrow IPC stream.

    Usage:
        decoder = StreamDecoder(sys.stdin.buffer)
        for batch in decoder:
            ...
        assert decoder.exhausted
    """

    def __init__(self, source: SourceLike, *, max_batch_size: int | None = None) -> None:
        if max_batch_size is not None:
            check_batch_size(max_batch_size, what="max_batch_size")
        self._max_batch_size = max_batch_size
        self._state = STATE_OPEN
        self.stats = DecoderStats()

        try:
            self._reader = pa.ipc.open_stream(_as_source(source))
        except pa.ArrowNotImplementedError as exc:
            raise SchemaError(f"Unsupported schema message: {exc}") from exc
        except pa.ArrowInvalid as exc:
            raise FramingError(f"Cannot read schema message: {exc}") from exc
        except OSError as exc:
            if _is_transport_error(exc):
                raise StreamError(f"Cannot read input stream: {exc}") from exc
            raise FramingError(f"Truncated schema message: {exc}") from exc

        self._schema = validate_schema(self._reader.schema)

    @property
    def schema(self) -> pa.Schema:
        return self._schema

    @property
    def state(self) -> str:
        return self._state

    @property
    def exhausted(self) -> bool:
        """True once the end-of-stream marker has been read."""
        return self._state == STATE_EXHAUSTED

    @property
    def failed(self) -> bool:
        return self._state == STATE_FAILED

    def __iter__(self) -> Iterator[pa.RecordBatch]:
        return self

    def __next__(self) -> pa.RecordBatch:
        if self._state != STATE_OPEN:
            raise StopIteration

        try:
            batch = self._reader.read_next_batch()
        except StopIteration:
            self._state = STATE_EXHAUSTED
            logger.debug(
                "end of stream: batches=%d rows=%d", self.stats.batches_read, self.stats.rows_read
            )
            raise
        except pa.ArrowInvalid as exc:
            self._fail()
            if _is_length_mismatch(exc):
                raise self._length_mismatch(exc) from exc
            raise FramingError(
                f"Malformed record batch message after batch {self.stats.batches_read}: {exc}"
            ) from exc
        except pa.ArrowNotImplementedError as exc:
            self._fail()
            raise FramingError(f"Unsupported message after batch {self.stats.batches_read}: {exc}") from exc
        except OSError as exc:
            self._fail()
            if _is_transport_error(exc):
                raise StreamError(f"Cannot read input stream: {exc}") from exc
            if _is_length_mismatch(exc):
                raise self._length_mismatch(exc) from exc
            raise FramingError(
                f"Truncated record batch message after batch {self.stats.batches_read}: {exc}"
            ) from exc

        self._check_shape(batch)

        self.stats.batches_read += 1
        self.stats.rows_read += batch.num_rows
        return batch

    def read_all(self) -> pa.Table:
        """Drain the remaining batches into a table (for small streams and tests)."""
        return pa.Table.from_batches(list(self), schema=self._schema)

    # -------------------------
    # Internal helpers
    # -------------------------

    def _fail(self) -> None:
        self._state = STATE_FAILED

    def _length_mismatch(self, exc: Exception) -> ShapeError:
        return ShapeError(
            f"Batch {self.stats.batches_read} row count does not match its column lengths: {exc}"
        )

    def _check_shape(self, batch: pa.RecordBatch) -> None:
        try:
            batch.validate(full=True)
            check_batch(self._schema, batch)
        except pa.ArrowInvalid as exc:
            self._fail()
            raise ShapeError(f"Batch {self.stats.batches_read} is inconsistent: {exc}") from exc
        except ShapeError:
            self._fail()
            raise

        if self._max_batch_size is not None and batch.num_rows > self._max_batch_size:
            self._fail()
            raise ShapeError(
                f"Batch {self.stats.batches_read} has {batch.num_rows} rows, "
                f"maximum is {self._max_batch_size}"
            )


def open_stream_reader(source: SourceLike, *, max_batch_size: int | None = None) -> StreamDecoder:
    """Open a decoder on *source*; the schema is available immediately."""
    return StreamDecoder(source, max_batch_size=max_batch_size)


def decode(
    source: SourceLike, *, max_batch_size: int | None = None
) -> tuple[pa.Schema, Iterator[pa.RecordBatch]]:
    """Return ``(schema, batches)`` where batches is a lazy single-pass iterator."""
    decoder = StreamDecoder(source, max_batch_size=max_batch_size)
    return decoder.schema, decoder
