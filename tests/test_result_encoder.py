from __future__ import annotations

import io

import pyarrow as pa

from pipeline.materialize import materialize
from pipeline.query_duckdb import QueryNamespace
from pipeline.result_encoder import encode_result
from pipeline.stream_decoder import decode
from pipeline.stream_encoder import EncoderStats
from tests.factories import NUMBERS_SCHEMA, encode_batches, make_numbers_batch


def _query(sql: str) -> tuple[bytes, EncoderStats]:
    table = materialize(NUMBERS_SCHEMA, [make_numbers_batch([1, 2, 3, 4], [4, None, 2, 1])], "t", 10)
    with QueryNamespace() as ns:
        ns.bind(table)
        result = ns.execute(sql)
    sink = io.BytesIO()
    stats = encode_result(result, sink, max_batch_size=3)
    return sink.getvalue(), stats


def test_result_stream_decodes_like_a_direct_stream() -> None:
    data, stats = _query("SELECT * FROM t")
    direct = encode_batches([make_numbers_batch([1, 2, 3, 4], [4, None, 2, 1])], max_batch_size=3)

    schema, batches = decode(data)
    direct_schema, direct_batches = decode(direct)
    got = pa.Table.from_batches(list(batches), schema=schema)
    want = pa.Table.from_batches(list(direct_batches), schema=direct_schema)

    assert schema.names == direct_schema.names
    assert [f.type for f in schema] == [f.type for f in direct_schema]
    assert got.to_pylist() == want.to_pylist()
    assert [b.num_rows for b in got.to_batches()] == [3, 1]
    assert stats.rows_written == 4
    assert stats.batches_written == 2


def test_empty_result_is_a_complete_stream() -> None:
    data, stats = _query("SELECT id, name FROM t WHERE n > 100")

    schema, batches = decode(data)
    assert schema.names == ["id", "name"]
    assert sum(b.num_rows for b in batches) == 0
    assert stats.rows_written == 0
