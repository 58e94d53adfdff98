"""Error taxonomy shared by the codec, materializer and query stage.

Every error carries a stable ``kind`` so the CLI can report it on the
diagnostic channel without parsing messages. Library exceptions (pyarrow,
duckdb, sqlglot, pydantic) are translated into these at module boundaries.
"""

from __future__ import annotations


class StreamtabError(Exception):
    """Base class for all pipeline errors."""

    kind: str = "StreamtabError"

    def __init_subclass__(cls, **kwargs: object) -> None:
        super().__init_subclass__(**kwargs)
        cls.kind = cls.__name__


class ConfigError(StreamtabError, ValueError):
    """Raised for invalid stage parameters (batch size, row cap, table name...)."""


# -----------------------------
# Stream (wire) errors
# -----------------------------


class StreamError(StreamtabError, RuntimeError):
    """Raised when the underlying byte stream fails (I/O error, closed pipe)."""


class FramingError(StreamError):
    """Raised on truncated or malformed wire data."""


class SchemaError(StreamError):
    """Raised when a schema is invalid (no columns, duplicate names, unknown type)."""


class ShapeError(StreamError):
    """Raised when a batch does not match its schema or has ragged columns."""


class ClosedStreamError(StreamError):
    """Raised when writing to an encoder that has already been closed."""


class RowCapExceededError(StreamError):
    """Raised by the materializer when the row cap is exceeded under the reject policy."""


# -----------------------------
# Query errors
# -----------------------------


class QueryError(StreamtabError, RuntimeError):
    """Base class for query stage failures."""


class DuplicateTableError(QueryError):
    """Raised when binding a table name that is already bound."""


class UnknownTableError(QueryError):
    """Raised when a query references a table that is not bound."""


class UnknownColumnError(QueryError):
    """Raised when a query references a column the table does not declare."""


class QuerySyntaxError(QueryError):
    """Raised for unparseable query text or unsupported statements."""


class QueryTypeError(QueryError):
    """Raised when an operation is applied to incompatible column types."""


class UnstableOrderError(QueryError):
    """Raised when tied ORDER BY rows cannot be kept in stream order."""


__all__ = [
    "ClosedStreamError",
    "ConfigError",
    "DuplicateTableError",
    "FramingError",
    "QueryError",
    "QuerySyntaxError",
    "QueryTypeError",
    "RowCapExceededError",
    "SchemaError",
    "ShapeError",
    "StreamError",
    "StreamtabError",
    "UnknownColumnError",
    "UnknownTableError",
    "UnstableOrderError",
]
