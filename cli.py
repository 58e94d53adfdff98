"""
streamtab CLI: the decode -> materialize -> query -> re-encode stage.

Reads an Arrow IPC stream on stdin, materializes at most --max-rows rows as
table --tabname, runs --sql against it and writes the result as a new Arrow
IPC stream on stdout. Diagnostics go to stderr only.

Usage
-----
ls . | names2stats | streamtab --max-rows 1024 --tabname file_stats \\
    --sql "SELECT * FROM file_stats ORDER BY nlink DESC LIMIT 3" | arrow-cat

Exit codes
----------
0  stream drained, queried and re-encoded
2  invalid configuration (ConfigError)
3  stream failure (FramingError, ShapeError, SchemaError, StreamError...)
4  query failure (UnknownTableError, UnknownColumnError, QuerySyntaxError...)
"""

from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import dataclass
from typing import BinaryIO, List, Optional

import duckdb
import pyarrow as pa

from contracts.errors import ConfigError, QueryError, StreamError, StreamtabError
from infra.config import StageConfig, get_settings
from infra.logging_config import StructuredLogger, set_log_context, setup_logging
from pipeline.materialize import materialize
from pipeline.query_duckdb import QueryConfig, QueryNamespace
from pipeline.result_encoder import encode_result
from pipeline.stream_decoder import open_stream_reader
from version import ENGINE_NAME, ENGINE_VERSION, WIRE_FORMAT, WIRE_FORMAT_VERSION

logger = StructuredLogger(__name__)

EXIT_OK = 0
EXIT_CONFIG = 2
EXIT_STREAM = 3
EXIT_QUERY = 4


@dataclass
class StageReport:
    rows_in: int = 0
    batches_in: int = 0
    table_rows: int = 0
    truncated: bool = False
    rows_out: int = 0
    batches_out: int = 0


def run_stage(cfg: StageConfig, source: BinaryIO, sink: BinaryIO) -> StageReport:
    """
    Run one stage over *source* / *sink*. Errors propagate (no partial recovery).
    """
    report = StageReport()

    decoder = open_stream_reader(source)
    table = materialize(
        decoder.schema,
        decoder,
        cfg.table.tabname,
        cfg.table.max_rows,
        overflow=cfg.table.overflow,
    )
    report.rows_in = decoder.stats.rows_read
    report.batches_in = decoder.stats.batches_read
    report.table_rows = table.num_rows
    report.truncated = table.truncated
    logger.info(
        "table_materialized",
        rows=table.num_rows,
        batches=table.batches_consumed,
        truncated=table.truncated,
    )

    query_cfg = QueryConfig(threads=cfg.query.threads, rows_per_batch=cfg.query.rows_per_batch)
    with QueryNamespace(query_cfg) as ns:
        ns.bind(table)
        result = ns.execute(cfg.sql)
    logger.info("query_executed", rows=result.num_rows, columns=len(result.schema))

    stats = encode_result(
        result,
        sink,
        max_batch_size=cfg.stream.batch_size,
        compression=cfg.stream.compression,
    )
    report.rows_out = stats.rows_written
    report.batches_out = stats.batches_written
    return report


def _exit_code(exc: StreamtabError) -> int:
    if isinstance(exc, ConfigError):
        return EXIT_CONFIG
    if isinstance(exc, QueryError):
        return EXIT_QUERY
    if isinstance(exc, StreamError):
        return EXIT_STREAM
    return 1


def _report_error(exc: StreamtabError) -> None:
    print(f"{ENGINE_NAME}: {exc.kind}: {exc}", file=sys.stderr)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog=ENGINE_NAME,
        description="Query an Arrow IPC stream with SQL and re-emit the result as a stream.",
    )
    p.add_argument(
        "--batch-size",
        type=int,
        default=None,
        help="Maximum rows per emitted batch (or STREAMTAB_BATCH_SIZE). Default: 1024",
    )
    p.add_argument(
        "--max-rows",
        type=int,
        default=None,
        help="Row cap of the materialized table (or STREAMTAB_MAX_ROWS). Default: 1024",
    )
    p.add_argument(
        "--tabname",
        default=None,
        help="Name the table is bound under (or STREAMTAB_TABNAME). Default: t",
    )
    p.add_argument(
        "--sql",
        default=None,
        help="Query to run. Default: SELECT * FROM <tabname>",
    )
    p.add_argument(
        "--overflow",
        choices=["truncate", "reject"],
        default=None,
        help="What to do when the stream exceeds --max-rows (default: truncate).",
    )
    p.add_argument(
        "--threads",
        type=int,
        default=None,
        help="DuckDB threads (or STREAMTAB_THREADS). Default: 4",
    )
    p.add_argument("--log-level", default=None, help="DEBUG|INFO|WARNING|ERROR (logs go to stderr).")
    p.add_argument("--json-logs", action="store_true", help="Emit JSON log lines on stderr.")
    p.add_argument("--version", action="store_true", help="Print version information and exit.")
    return p


def main(
    argv: Optional[List[str]] = None,
    *,
    stdin: Optional[BinaryIO] = None,
    stdout: Optional[BinaryIO] = None,
) -> int:
    """CLI entrypoint."""
    args = build_parser().parse_args(argv)

    if args.version:
        print(f"{ENGINE_NAME} {ENGINE_VERSION}")
        print(f"WIRE_FORMAT={WIRE_FORMAT} v{WIRE_FORMAT_VERSION}")
        print(f"pyarrow={pa.__version__} duckdb={duckdb.__version__}")
        return EXIT_OK

    try:
        settings = get_settings(reload=True)
        setup_logging(level=args.log_level, json_logs=True if args.json_logs else None)
        cfg = StageConfig.build(
            settings,
            batch_size=args.batch_size,
            max_rows=args.max_rows,
            tabname=args.tabname,
            overflow=args.overflow,
            threads=args.threads,
            sql=args.sql,
        )
    except ConfigError as exc:
        _report_error(exc)
        return EXIT_CONFIG

    set_log_context(tabname=cfg.table.tabname, max_rows=cfg.table.max_rows)
    source = stdin if stdin is not None else sys.stdin.buffer
    sink = stdout if stdout is not None else sys.stdout.buffer

    logger.info("stage_started", batch_size=cfg.stream.batch_size, overflow=cfg.table.overflow)
    try:
        report = run_stage(cfg, source, sink)
    except StreamtabError as exc:
        logger.error("stage_failed", kind=exc.kind)
        logging.getLogger(__name__).debug("stage failure detail", exc_info=True)
        _report_error(exc)
        return _exit_code(exc)

    logger.info(
        "stage_finished",
        rows_in=report.rows_in,
        table_rows=report.table_rows,
        rows_out=report.rows_out,
        batches_out=report.batches_out,
    )
    return EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
