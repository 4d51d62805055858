"""
Table schema cache and prepared statement cache.

Callers send heterogeneous partial field sets; without canonicalization every
distinct subset or ordering would build its own statement. Statement keys are
therefore built from sorted column lists, and INSERT always targets the
table's full column list (omitted columns are bound as NULL), so one INSERT
statement serves every caller of a table.

Key format::

    <table>|<kind>|<col>,<col>[|where=<col>,<col>]

``|`` and ``,`` never occur in allow-listed identifiers, so the ``<table>|``
prefix of one table can never match a key of another table ("t" vs "t2").

Invariants:
    - Same (table, kind, canonical column sets) returns the identical instance
    - Invalidating a table closes and evicts only that table's statements
    - Schema entries are read-only once stored

How to change safely:
    - Any new key component must be delimited with a character that cannot
      appear in identifiers
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..cache import ExpiringCache
from ..errors import DuckGateError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

KEY_SEPARATOR = "|"
COLUMN_SEPARATOR = ","


class StatementClosedError(DuckGateError):
    """The statement was invalidated after the caller looked it up."""

    def __init__(self, key: str) -> None:
        super().__init__(f"statement '{key}' is closed", code="STATEMENT_CLOSED")
        self.key = key


class StatementKind(Enum):
    """Mutation shapes that get prepared statements."""

    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


def canonical_columns(columns: Iterable[str]) -> tuple[str, ...]:
    """Stable, order-independent form of a column set."""
    return tuple(sorted(columns))


def table_prefix(table: str) -> str:
    return f"{table}{KEY_SEPARATOR}"


def statement_key(
    table: str,
    kind: StatementKind,
    columns: Iterable[str] = (),
    where_columns: Iterable[str] = (),
) -> str:
    """Build the cache key for a statement shape.

    Example:
        >>> statement_key("orders", StatementKind.UPDATE, ["status", "note"], ["id"])
        'orders|update|note,status|where=id'
    """
    key = (
        f"{table}{KEY_SEPARATOR}{kind.value}{KEY_SEPARATOR}"
        f"{COLUMN_SEPARATOR.join(canonical_columns(columns))}"
    )
    if kind is not StatementKind.INSERT:
        where = COLUMN_SEPARATOR.join(canonical_columns(where_columns))
        key += f"{KEY_SEPARATOR}where={where}"
    return key


@dataclass(eq=False)
class PreparedStatement:
    """A reusable statement and the parameter layout it expects.

    DuckDB's Python API exposes no standalone prepared-statement object, so a
    statement here is validated SQL text plus the column order of its
    parameters. Each transaction executes it on its own connection.

    Attributes:
        key: Cache key
        table: Target table
        kind: Statement kind
        sql: Parameterized SQL text
        columns: Value columns, in parameter order
        where_columns: WHERE columns, following ``columns`` in parameter order
    """

    key: str
    table: str
    kind: StatementKind
    sql: str
    columns: tuple[str, ...]
    where_columns: tuple[str, ...] = ()
    closed: bool = field(default=False, repr=False)

    def bind(
        self,
        values: Mapping[str, Any] | None = None,
        where: Mapping[str, Any] | None = None,
    ) -> list[Any]:
        """Order caller values into positional parameters.

        Value columns missing from ``values`` bind as NULL.

        Raises:
            StatementClosedError: If the statement was invalidated
        """
        if self.closed:
            raise StatementClosedError(self.key)
        values = values or {}
        where = where or {}
        params = [values.get(col) for col in self.columns]
        params.extend(where[col] for col in self.where_columns)
        return params

    def close(self) -> None:
        self.closed = True


def _build_sql(
    table: str,
    kind: StatementKind,
    columns: Sequence[str],
    where_columns: Sequence[str],
) -> str:
    where_sql = " AND ".join(f"{col} = ?" for col in where_columns)
    if kind is StatementKind.INSERT:
        placeholders = ", ".join("?" for _ in columns)
        return f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})"
    if kind is StatementKind.UPDATE:
        set_sql = ", ".join(f"{col} = ?" for col in columns)
        return f"UPDATE {table} SET {set_sql} WHERE {where_sql}"
    return f"DELETE FROM {table} WHERE {where_sql}"


class SchemaCache:
    """Table name to ordered column list, populated lazily.

    Args:
        introspect: Returns a table's columns in ordinal order (empty if the
            table does not exist)
        ttl_seconds: Safety expiry for entries
        max_size: Maximum cached tables
    """

    def __init__(
        self,
        introspect: Callable[[str], Sequence[str]],
        ttl_seconds: float = 3600.0,
        max_size: int = 1024,
    ) -> None:
        self._introspect = introspect
        self._entries: ExpiringCache[str, tuple[str, ...]] = ExpiringCache(max_size, ttl_seconds)

    def get_columns(self, table: str) -> tuple[str, ...]:
        """Get the ordered column list for a table.

        Raises:
            NotFoundError: If the table reports no columns
        """
        return self._entries.get_or_set(table, lambda: self._load(table))

    def _load(self, table: str) -> tuple[str, ...]:
        columns = tuple(self._introspect(table))
        if not columns:
            raise NotFoundError(
                f"table '{table}' has no columns or does not exist",
                resource_type="table",
                resource_id=table,
            )
        logger.debug("Loaded table schema", extra={"table": table, "columns": len(columns)})
        return columns

    def invalidate(self, table: str) -> bool:
        return self._entries.pop(table) is not None

    def __contains__(self, table: object) -> bool:
        return table in self._entries

    def __len__(self) -> int:
        return len(self._entries)


class StatementCache:
    """(table, kind, canonical columns) to PreparedStatement."""

    def __init__(
        self,
        schemas: SchemaCache,
        ttl_seconds: float = 3600.0,
        max_size: int = 4096,
    ) -> None:
        self.schemas = schemas
        self._entries: ExpiringCache[str, PreparedStatement] = ExpiringCache(max_size, ttl_seconds)

    def get_or_prepare(
        self,
        table: str,
        kind: StatementKind,
        columns: Iterable[str] = (),
        where_columns: Iterable[str] = (),
    ) -> PreparedStatement:
        """Return the cached statement for this shape, preparing it on first use.

        For INSERT, ``columns`` is ignored: the statement always covers the
        table's full column list. UPDATE needs SET and WHERE columns; DELETE
        needs WHERE columns.

        Raises:
            NotFoundError: If an INSERT targets an unknown table
            ValidationError: If a required column set is empty
        """
        if kind is StatementKind.INSERT:
            cols = canonical_columns(self.schemas.get_columns(table))
            where_cols: tuple[str, ...] = ()
        else:
            cols = canonical_columns(columns) if kind is StatementKind.UPDATE else ()
            where_cols = canonical_columns(where_columns)
            if kind is StatementKind.UPDATE and not cols:
                raise ValidationError("no SET columns provided for update")
            if not where_cols:
                raise ValidationError(f"no WHERE columns provided for {kind.value}")

        key = statement_key(table, kind, cols, where_cols)

        def _prepare() -> PreparedStatement:
            stmt = PreparedStatement(
                key=key,
                table=table,
                kind=kind,
                sql=_build_sql(table, kind, cols, where_cols),
                columns=cols,
                where_columns=where_cols,
            )
            logger.debug(
                f"Prepared {kind.value.upper()} statement",
                extra={"table": table, "columns": len(cols), "where_columns": len(where_cols)},
            )
            return stmt

        return self._entries.get_or_set(key, _prepare)

    def invalidate(self, table: str) -> int:
        """Close and evict every statement for ``table``.

        Returns:
            Number of statements evicted
        """
        prefix = table_prefix(table)
        evicted = self._entries.evict_where(lambda key: key.startswith(prefix))
        for stmt in evicted:
            stmt.close()
        return len(evicted)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)
