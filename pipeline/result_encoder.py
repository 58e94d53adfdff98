"""Re-encode a query result onto the pipeline output.

The result goes through the same StreamEncoder as any producer, so the
consumer cannot tell a query result from a directly produced stream.
"""

from __future__ import annotations

import pyarrow as pa

from contracts.interfaces import ByteSinkProtocol
from pipeline.batching import DEFAULT_BATCH_SIZE
from pipeline.query_duckdb import QueryResult
from pipeline.stream_encoder import EncoderStats, open_stream


def encode_result(
    result: QueryResult,
    sink: ByteSinkProtocol | pa.NativeFile,
    *,
    max_batch_size: int = DEFAULT_BATCH_SIZE,
    compression: str | None = None,
) -> EncoderStats:
    """Write *result* as one complete stream (schema, batches, end marker)."""
    with open_stream(sink, result.schema, max_batch_size=max_batch_size, compression=compression) as enc:
        enc.write_batches(result.batches)
    return enc.stats
