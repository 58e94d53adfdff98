"""Query stage on top of an in-memory DuckDB connection.

A namespace owns one DuckDB connection. Binding a Table copies it into a
DuckDB table of the same name (so results never alias the source storage and
every row gets an insertion ordinal, DuckDB's ``rowid``). Executing a query:

1) parses it with sqlglot (single read-only statement, bound tables only)
2) appends the row ordinal (``rowid``) as the last sort key of every ORDER BY,
   carrying it out of derived tables and CTEs, so rows with equal keys keep
   their original order
3) runs it in DuckDB and returns a fresh Arrow schema + batches

DuckDB errors are translated into the QueryError family.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from time import perf_counter
from types import TracebackType
from typing import Any

import duckdb
import pyarrow as pa
import sqlglot
from sqlglot import exp
from sqlglot.errors import SqlglotError

from contracts.errors import (
    ConfigError,
    DuplicateTableError,
    QueryError,
    QuerySyntaxError,
    QueryTypeError,
    UnknownColumnError,
    UnknownTableError,
    UnstableOrderError,
)
from pipeline.materialize import Table

logger = logging.getLogger(__name__)

_DIALECT = "duckdb"
_ROW_ORDINAL = "rowid"
_CARRIED_PREFIX = "__streamtab_ord_"

_COLUMN_NOT_FOUND_RE = re.compile(
    r"Referenced column .* not found|does not have a column named|column .* does not exist",
    re.IGNORECASE,
)


def _qident(name: str) -> str:
    """Quote an identifier for DuckDB SQL (double quotes)."""
    return '"' + name.replace('"', '""') + '"'


@dataclass(frozen=True)
class QueryConfig:
    threads: int = 4
    rows_per_batch: int = 1024  # result batch size handed back to the caller

    def validate(self) -> QueryConfig:
        if self.threads <= 0:
            raise ConfigError(f"threads must be a positive integer, got {self.threads!r}")
        if self.rows_per_batch <= 0:
            raise ConfigError(f"rows_per_batch must be a positive integer, got {self.rows_per_batch!r}")
        return self


@dataclass
class QueryResult:
    """
    Anonymous result set: its own schema and batches, independent of the table.
    """
    schema: pa.Schema
    batches: list[pa.RecordBatch] = field(default_factory=list)

    @property
    def num_rows(self) -> int:
        return sum(b.num_rows for b in self.batches)

    def to_table(self) -> pa.Table:
        return pa.Table.from_batches(self.batches, schema=self.schema)

    def column(self, name: str) -> list:
        return self.to_table().column(name).to_pylist()

    def __iter__(self) -> Iterator[Any]:
        # allows `schema, batches = execute(ns, sql)`
        return iter((self.schema, self.batches))


def _translate_duckdb_error(exc: duckdb.Error) -> QueryError:
    msg = str(exc)
    if isinstance(exc, duckdb.ParserException):
        return QuerySyntaxError(msg)
    if isinstance(exc, duckdb.CatalogException):
        if _COLUMN_NOT_FOUND_RE.search(msg):
            return UnknownColumnError(msg)
        return UnknownTableError(msg)
    if isinstance(exc, duckdb.BinderException):
        if _COLUMN_NOT_FOUND_RE.search(msg):
            return UnknownColumnError(msg)
        # "No function matches...", "Cannot compare values of type..."
        return QueryTypeError(msg)
    if isinstance(
        exc,
        (
            duckdb.ConversionException,
            duckdb.TypeMismatchException,
            duckdb.OutOfRangeException,
            duckdb.InvalidInputException,
        ),
    ):
        return QueryTypeError(msg)
    return QueryError(msg)


class QueryNamespace:
    """
    The set of tables a query can reference, backed by an in-memory DuckDB.
    """

    def __init__(self, cfg: QueryConfig | None = None) -> None:
        self._cfg = (cfg or QueryConfig()).validate()
        self._tables: dict[str, Table] = {}
        self._con = duckdb.connect(database=":memory:")
        self._con.execute(f"PRAGMA threads={int(self._cfg.threads)};")
        self._con.execute("PRAGMA enable_progress_bar=false;")
        self._con.execute("SET preserve_insertion_order=true;")

    @property
    def table_names(self) -> list[str]:
        return [t.name for t in self._tables.values()]

    def close(self) -> None:
        self._con.close()

    def __enter__(self) -> QueryNamespace:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    # -------------------------
    # Public API
    # -------------------------

    def bind(self, table: Table) -> QueryNamespace:
        """
        Register *table* under its name. The data is copied into DuckDB.
        """
        key = table.name.lower()  # DuckDB identifiers are case-insensitive
        if key in self._tables:
            raise DuplicateTableError(f"Table {table.name!r} is already bound")

        src = f"__streamtab_src_{len(self._tables)}"
        self._con.register(src, table.data)
        try:
            self._con.execute(f"CREATE TABLE {_qident(table.name)} AS SELECT * FROM {src}")
        except duckdb.Error as exc:
            raise _translate_duckdb_error(exc) from exc
        finally:
            self._con.unregister(src)

        self._tables[key] = table
        logger.debug("bound table %r (%d rows)", table.name, table.num_rows)
        return self

    def execute(self, sql: str) -> QueryResult:
        """
        Run one read-only query and return its result as Arrow batches.
        """
        t0 = perf_counter()
        prepared = self._prepare(sql)

        try:
            result = self._con.execute(prepared).to_arrow_table()
        except duckdb.Error as exc:
            raise _translate_duckdb_error(exc) from exc

        carried = [name for name in result.column_names if name.startswith(_CARRIED_PREFIX)]
        if carried:
            result = result.drop_columns(carried)

        batches = result.to_batches(max_chunksize=self._cfg.rows_per_batch)
        out = QueryResult(schema=result.schema, batches=batches)

        logger.info(
            "query executed: rows=%d columns=%d elapsed_ms=%.1f",
            out.num_rows,
            len(out.schema),
            (perf_counter() - t0) * 1000.0,
        )
        return out

    # -------------------------
    # Internal helpers
    # -------------------------

    def _prepare(self, sql: str) -> str:
        if sql is None or not str(sql).strip():
            raise QuerySyntaxError("Query is empty")

        try:
            statements = [s for s in sqlglot.parse(sql, read=_DIALECT) if s is not None]
        except SqlglotError as exc:
            raise QuerySyntaxError(f"Cannot parse query: {exc}") from exc

        if len(statements) != 1:
            raise QuerySyntaxError(
                f"Query must be a single statement, got {len(statements)}"
            )
        stmt = statements[0]
        if not isinstance(stmt, exp.Query):
            raise QuerySyntaxError(f"Only SELECT queries are supported, got {stmt.key.upper()}")

        self._check_tables(stmt)
        _RowOrderRewriter(stmt, self._tables).rewrite()
        return stmt.sql(dialect=_DIALECT)

    def _check_tables(self, stmt: exp.Expression) -> None:
        cte_names = {cte.alias_or_name.lower() for cte in stmt.find_all(exp.CTE)}
        for tbl in stmt.find_all(exp.Table):
            name = tbl.name
            if name.lower() in cte_names:
                continue
            if name.lower() not in self._tables:
                bound = ", ".join(self.table_names) or "<none>"
                raise UnknownTableError(f"Table {name or tbl.sql()!r} is not bound (bound: {bound})")


def _is_grouped(select: exp.Select) -> bool:
    if select.args.get("group"):
        return True
    for projection in select.expressions:
        if projection.alias_or_name.startswith(_CARRIED_PREFIX):
            continue
        for agg in projection.find_all(exp.AggFunc):
            if agg.parent_select is select and not agg.find_ancestor(exp.Window):
                return True
    return False


def _sources(select: exp.Select) -> list[exp.Expression]:
    """FROM and JOIN sources of *select* itself (not of nested queries)."""
    return [
        node.this
        for node in select.find_all(exp.From, exp.Join)
        if node.parent_select is select
    ]


class _RowOrderRewriter:
    """
    Append stream-order tiebreak keys to every ORDER BY of one statement.

    A bound table contributes its ``rowid``. Derived tables and CTEs carry the
    ordinals of their own sources out as extra ``__streamtab_ord_<n>`` columns,
    so an outer ORDER BY can still sort ties by stream position. A grouped
    query uses the smallest ordinal of each group (its first appearance).

    DISTINCT queries are left alone: their rows have no single stream
    position. An ORDER BY over a source that reads a bound table but cannot
    carry an ordinal (set operations, DISTINCT bodies, recursive CTEs) raises
    UnstableOrderError.
    """

    def __init__(self, stmt: exp.Expression, bound: Iterable[str]) -> None:
        self._stmt = stmt
        self._bound = {name.lower() for name in bound}
        self._ctes: dict[str, exp.Expression | None] = {}
        for with_ in stmt.find_all(exp.With):
            recursive = bool(with_.args.get("recursive"))
            for cte in with_.expressions:
                self._ctes[cte.alias_or_name.lower()] = None if recursive else cte.this
        self._carried: dict[int, list[str] | None] = {}
        self._next_ordinal = 0

    def rewrite(self) -> None:
        for select in list(self._stmt.find_all(exp.Select)):
            if select.args.get("order") and not select.args.get("distinct"):
                self._add_tiebreak(select)

        for setop in self._stmt.find_all(exp.Union, exp.Intersect, exp.Except):
            if setop.args.get("order") and not setop.args.get("distinct") and self._reads_table(setop):
                raise UnstableOrderError(
                    "ORDER BY over a set operation cannot keep tied rows in stream order; "
                    "add a unique sort key or order inside a derived table"
                )

    def _add_tiebreak(self, select: exp.Select) -> None:
        keys = self._row_keys(select)
        if keys is None:
            opaque = [s for s in _sources(select) if self._source_keys(s) is None and self._reads_table(s)]
            if opaque:
                raise UnstableOrderError(
                    f"ORDER BY over {opaque[0].sql(dialect=_DIALECT)!r} cannot keep tied rows "
                    "in stream order; add a unique sort key"
                )
            return

        if _is_grouped(select):
            keys = [exp.Min(this=key) for key in keys]
        for key in keys:
            select.order_by(exp.Ordered(this=key, desc=False, nulls_first=False), append=True, copy=False)

    def _row_keys(self, select: exp.Select) -> list[exp.Expression] | None:
        sources = _sources(select)
        if not sources:
            return None
        keys: list[exp.Expression] = []
        for source in sources:
            source_keys = self._source_keys(source)
            if source_keys is None:
                return None
            keys.extend(source_keys)
        return keys

    def _source_keys(self, source: exp.Expression) -> list[exp.Expression] | None:
        if isinstance(source, exp.Table):
            name = source.name.lower()
            ref = source.alias_or_name
            if name in self._ctes:
                return self._carried_keys(self._ctes[name], ref)
            if name in self._bound:
                return [exp.column(_ROW_ORDINAL, table=ref)]
            return None
        if isinstance(source, exp.Subquery):
            return self._carried_keys(source.this, source.alias)
        return None

    def _carried_keys(self, body: exp.Expression | None, ref: str) -> list[exp.Expression] | None:
        names = self._carry(body)
        if names is None:
            return None
        return [exp.column(name, table=ref or None) for name in names]

    def _carry(self, body: exp.Expression | None) -> list[str] | None:
        """Project the row ordinals of *body* as extra columns; return their names."""
        if body is None:
            return None
        key = id(body)
        if key in self._carried:
            return self._carried[key]
        self._carried[key] = None

        if not isinstance(body, exp.Select) or body.args.get("distinct"):
            return None
        keys = self._row_keys(body)
        if keys is None:
            return None
        if _is_grouped(body):
            keys = [exp.Min(this=k) for k in keys]

        names = []
        for k in keys:
            name = f"{_CARRIED_PREFIX}{self._next_ordinal}"
            self._next_ordinal += 1
            body.select(exp.alias_(k, name), append=True, copy=False)
            names.append(name)
        self._carried[key] = names
        return names

    def _reads_table(self, node: exp.Expression) -> bool:
        return any(
            t.name.lower() in self._bound or t.name.lower() in self._ctes
            for t in node.find_all(exp.Table)
        )


def bind(table: Table, namespace: QueryNamespace | None = None) -> QueryNamespace:
    """Bind *table* into *namespace* (a new one if omitted) and return the namespace."""
    ns = namespace if namespace is not None else QueryNamespace()
    return ns.bind(table)


def execute(namespace: QueryNamespace, sql: str) -> QueryResult:
    return namespace.execute(sql)
