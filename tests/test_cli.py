"""End-to-end tests of the query stage CLI over in-memory pipes."""

from __future__ import annotations

import io
import os
from pathlib import Path
from typing import Any

import pyarrow as pa
import pytest

import cli
from infra.config import clear_settings_cache
from pipeline.stream_decoder import decode
from tests.factories import encode_batches, encode_file_stats, make_file_stat_rows, make_numbers_batch


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch: Any, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    for key in list(os.environ):
        if key.startswith(("STREAMTAB_", "STREAM__", "TABLE__", "QUERY__", "LOGGING__")):
            monkeypatch.delenv(key, raising=False)
    clear_settings_cache()
    yield
    clear_settings_cache()


def _run(argv: list[str], data: bytes) -> tuple[int, bytes]:
    stdout = io.BytesIO()
    code = cli.main(argv, stdin=io.BytesIO(data), stdout=stdout)
    return code, stdout.getvalue()


def _decode_table(data: bytes) -> pa.Table:
    schema, batches = decode(data)
    return pa.Table.from_batches(list(batches), schema=schema)


def _numbers_stream() -> bytes:
    return encode_batches([
        make_numbers_batch([0, 1, 2], [1, 5, 3]),
        make_numbers_batch([3, 4], [5, 2]),
    ])


def test_default_query_passes_the_table_through() -> None:
    code, out = _run([], _numbers_stream())

    assert code == cli.EXIT_OK
    table = _decode_table(out)
    assert table.column("id").to_pylist() == [0, 1, 2, 3, 4]
    assert table.schema.names == ["id", "n", "name"]


def test_order_by_limit_over_truncated_table() -> None:
    code, out = _run(
        ["--max-rows", "4", "--sql", "SELECT id, n FROM t ORDER BY n DESC LIMIT 3"],
        _numbers_stream(),
    )

    assert code == cli.EXIT_OK
    table = _decode_table(out)
    assert table.column("id").to_pylist() == [1, 3, 2]
    assert table.schema.names == ["id", "n"]


def test_file_stats_pipeline_with_custom_table_name() -> None:
    data = encode_file_stats(make_file_stat_rows(20), batch_size=6)
    code, out = _run(
        [
            "--tabname", "file_stats",
            "--batch-size", "2",
            "--sql", "SELECT path, nlink FROM file_stats ORDER BY nlink DESC LIMIT 3",
        ],
        data,
    )

    assert code == cli.EXIT_OK
    schema, batches = decode(out)
    batches = list(batches)
    assert schema.names == ["path", "nlink"]
    assert [b.num_rows for b in batches] == [2, 1]
    paths = [p for b in batches for p in b.column(0).to_pylist()]
    assert paths == ["entry-3", "entry-7", "entry-11"]


def test_settings_from_env_are_used(monkeypatch: Any) -> None:
    monkeypatch.setenv("STREAMTAB_MAX_ROWS", "2")
    code, out = _run([], _numbers_stream())
    assert code == cli.EXIT_OK
    assert _decode_table(out).num_rows == 2


def test_invalid_configuration_exits_2(capsys: Any) -> None:
    code, out = _run(["--max-rows", "0"], _numbers_stream())

    assert code == cli.EXIT_CONFIG
    assert out == b""
    assert "streamtab: ConfigError:" in capsys.readouterr().err


def test_reject_overflow_exits_3(capsys: Any) -> None:
    code, out = _run(["--max-rows", "4", "--overflow", "reject"], _numbers_stream())

    assert code == cli.EXIT_STREAM
    assert out == b""
    assert "RowCapExceededError" in capsys.readouterr().err


def test_truncated_input_exits_3(capsys: Any) -> None:
    code, out = _run([], _numbers_stream()[:-20])

    assert code == cli.EXIT_STREAM
    assert out == b""
    assert "FramingError" in capsys.readouterr().err


def test_empty_input_exits_3() -> None:
    code, _ = _run([], b"")
    assert code == cli.EXIT_STREAM


@pytest.mark.parametrize(
    ("sql", "kind"),
    [
        ("SELECT * FROM nope", "UnknownTableError"),
        ("SELECT nope FROM t", "UnknownColumnError"),
        ("SELECT * FROM t WHERE", "QuerySyntaxError"),
        ("SELECT sum(name) FROM t", "QueryTypeError"),
    ],
)
def test_query_errors_exit_4(sql: str, kind: str, capsys: Any) -> None:
    code, out = _run(["--sql", sql], _numbers_stream())

    assert code == cli.EXIT_QUERY
    assert out == b""
    assert f"streamtab: {kind}:" in capsys.readouterr().err


def test_version_flag(capsys: Any) -> None:
    code, out = _run(["--version"], b"")

    assert code == cli.EXIT_OK
    assert out == b""
    printed = capsys.readouterr().out
    assert printed.startswith("streamtab 0.1.0")
    assert "arrow-ipc-stream" in printed
