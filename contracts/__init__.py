"""Contracts shared by every pipeline stage.

The contracts package defines:
- the error taxonomy (ConfigError, StreamError family, QueryError family)
- the closed set of column types, schema validation and batch construction
- row casting from producer values to Arrow column types
- Protocol definitions for byte sinks/sources and record sources

Main exports:
- validate_schema, make_batch, check_batch, FILE_STATS_SCHEMA
- cast_row, RowCastError
"""

from contracts import errors
from contracts import row_cast
from contracts import schema as schema_module

# Explicit re-exports to satisfy ruff F401
__all__ = [
    "FILE_STATS_SCHEMA",
    "RowCastError",
    "StreamtabError",
    "cast_row",
    "check_batch",
    "make_batch",
    "validate_schema",
]

# Re-export for convenience
FILE_STATS_SCHEMA = schema_module.FILE_STATS_SCHEMA
check_batch = schema_module.check_batch
make_batch = schema_module.make_batch
validate_schema = schema_module.validate_schema

RowCastError = row_cast.RowCastError
cast_row = row_cast.cast_row

StreamtabError = errors.StreamtabError
