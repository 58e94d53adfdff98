"""
Protocol definitions for the pipeline's collaborators.

The codec never depends on a concrete producer or transport. It only needs:
- a byte sink to append encoded messages to
- a byte source to read encoded messages from
- a record source: anything that yields rows conforming to an agreed schema

Usage:
    from contracts.interfaces import RecordSourceProtocol

    # In production, a producer object (e.g. file statistics) or stdin/stdout
    # In tests, io.BytesIO and small in-memory row sources
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from typing import Any, Protocol, runtime_checkable

import pyarrow as pa


@runtime_checkable
class ByteSinkProtocol(Protocol):
    """Binary, append-only output (pipe, file, BytesIO)."""

    def write(self, data: bytes, /) -> Any:
        ...

    def flush(self) -> None:
        ...


@runtime_checkable
class ByteSourceProtocol(Protocol):
    """Binary, forward-only input (pipe, file, BytesIO)."""

    def read(self, size: int = -1, /) -> bytes:
        ...


@runtime_checkable
class RecordSourceProtocol(Protocol):
    """Any producer of rows conforming to a declared schema."""

    @property
    def schema(self) -> pa.Schema:
        """Schema every produced row conforms to."""
        ...

    def rows(self) -> Iterator[Mapping[str, Any]]:
        """Yield rows as mappings of column name to value."""
        ...


__all__ = [
    "ByteSinkProtocol",
    "ByteSourceProtocol",
    "RecordSourceProtocol",
]
