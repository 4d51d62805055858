"""
Transactional CRUD operations for the main database.

Every mutation runs in its own transaction, retried on optimistic-concurrency
conflicts (see retry.py). Reads run outside transactions and return cursors.

Invariants:
    - Insert needs a non-empty field map; update needs SET and WHERE;
      delete needs WHERE. These checks run before any connection is taken
    - Each retry attempt opens a fresh transaction; failures roll back
    - Non-conflict engine errors become OperationError with table context

How to change safely:
    - Keep SQL construction parameterized; only identifiers go into SQL text
    - Route any new mutation through _mutate so it inherits retry and rollback
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterator, Mapping, Sequence
from contextlib import AbstractContextManager
from typing import Any

import duckdb

from ..errors import OperationError, ValidationError
from .cursor import RowCursor
from .filters import Filter, Sort, build_order_by, build_where
from .retry import retry_on_conflict
from .statements import SchemaCache, StatementCache, StatementClosedError, StatementKind

logger = logging.getLogger(__name__)


class CrudOperations:
    """Insert/update/delete/select on top of the Manager's topology.

    Host classes provide ``schemas``, ``statements``, ``transaction()``,
    ``execute_in()``, ``query_main()`` and ``query_row_main()``.
    """

    schemas: SchemaCache
    statements: StatementCache
    retry_sleep: Callable[[float], None] = staticmethod(time.sleep)

    def transaction(self) -> AbstractContextManager[duckdb.DuckDBPyConnection]:
        raise NotImplementedError

    def execute_in(
        self, conn: duckdb.DuckDBPyConnection, sql: str, params: Sequence[Any] = ()
    ) -> int:
        raise NotImplementedError

    def query_main(self, sql: str, params: Sequence[Any] = ()) -> RowCursor:
        raise NotImplementedError

    def query_row_main(self, sql: str, params: Sequence[Any] = ()) -> tuple | None:
        raise NotImplementedError

    def _bind_prepared(
        self,
        table: str,
        kind: StatementKind,
        values: Mapping[str, Any] | None = None,
        where: Mapping[str, Any] | None = None,
    ) -> tuple[str, list[Any]]:
        values = values or {}
        where = where or {}
        stmt = self.statements.get_or_prepare(table, kind, values, where)
        try:
            return stmt.sql, stmt.bind(values, where)
        except StatementClosedError:
            # Invalidated between lookup and bind; the next lookup re-prepares.
            stmt = self.statements.get_or_prepare(table, kind, values, where)
            return stmt.sql, stmt.bind(values, where)

    def _mutate(self, table: str, operation: str, sql: str, params: Sequence[Any]) -> int:
        def attempt() -> int:
            with self.transaction() as conn:
                return self.execute_in(conn, sql, params)

        try:
            affected = retry_on_conflict(
                attempt, table=table, operation=operation, sleep=self.retry_sleep
            )
        except duckdb.Error as e:
            raise OperationError(
                f"failed to execute {operation} on '{table}': {e}", table, operation
            ) from e

        logger.debug(
            f"Executed {operation}",
            extra={"table": table, "operation": operation, "rows_affected": affected},
        )
        return affected

    def insert(self, table: str, data: Mapping[str, Any]) -> int:
        """Insert a single row.

        Columns missing from ``data`` are inserted as NULL, so callers may
        omit nullable columns.

        Args:
            table: Pre-validated table name
            data: Column values

        Returns:
            Rows affected (1)

        Raises:
            ValidationError: If ``data`` is empty or names unknown columns
            NotFoundError: If the table does not exist
            ConflictError: If conflict retries are exhausted
        """
        if not data:
            raise ValidationError("no data provided for insert")

        columns = self.schemas.get_columns(table)
        unknown = sorted(set(data) - set(columns))
        if unknown:
            raise ValidationError(
                f"unknown columns for table '{table}': {', '.join(unknown)}",
                field_name=unknown[0],
                errors=unknown,
            )

        sql, params = self._bind_prepared(table, StatementKind.INSERT, values=data)
        return self._mutate(table, "insert", sql, params)

    def update(
        self,
        table: str,
        set_values: Mapping[str, Any],
        where: Mapping[str, Any],
    ) -> int:
        """Update rows matching column equality conditions.

        Uses a prepared statement cached by the SET/WHERE column sets.
        Prefer ``update_with_filters`` for anything beyond equality.
        """
        if not set_values:
            raise ValidationError("no data provided for update")
        if not where:
            raise ValidationError("no where clause provided for update (safety check)")

        sql, params = self._bind_prepared(table, StatementKind.UPDATE, set_values, where)
        return self._mutate(table, "update", sql, params)

    def update_with_filters(
        self,
        table: str,
        set_values: Mapping[str, Any],
        filters: Sequence[Filter],
    ) -> int:
        """Update rows matching filter conditions (all operators supported)."""
        if not set_values:
            raise ValidationError("no data provided for update")
        if not filters:
            raise ValidationError("no filters provided for update (safety check)")

        set_cols = sorted(set_values)
        where_sql, where_params = build_where(filters)
        sql = (
            f"UPDATE {table} SET {', '.join(f'{col} = ?' for col in set_cols)} "
            f"WHERE {where_sql}"
        )
        params = [set_values[col] for col in set_cols] + where_params
        return self._mutate(table, "update", sql, params)

    def delete(self, table: str, where: Mapping[str, Any]) -> int:
        """Delete rows matching column equality conditions (prepared, cached)."""
        if not where:
            raise ValidationError("no where clause provided for delete (safety check)")

        sql, params = self._bind_prepared(table, StatementKind.DELETE, where=where)
        return self._mutate(table, "delete", sql, params)

    def delete_with_filters(self, table: str, filters: Sequence[Filter]) -> int:
        """Delete rows matching filter conditions (all operators supported)."""
        if not filters:
            raise ValidationError("no filters provided for delete (safety check)")

        where_sql, params = build_where(filters)
        return self._mutate(table, "delete", f"DELETE FROM {table} WHERE {where_sql}", params)

    def count_with_filters(self, table: str, filters: Sequence[Filter]) -> int:
        """Count the rows a filtered delete would affect, without deleting."""
        if not filters:
            raise ValidationError("no filters provided for delete (safety check)")
        return self.count(table, filters)

    def select(
        self,
        table: str,
        filters: Sequence[Filter] = (),
        sorts: Sequence[Sort] = (),
        limit: int = 0,
        offset: int = 0,
    ) -> RowCursor:
        """Select rows with optional filters, ordering and pagination.

        Runs outside a transaction; readers see an MVCC snapshot.

        Returns:
            A live cursor; the caller must close it
        """
        sql = f"SELECT * FROM {table}"
        params: list[Any] = []
        if filters:
            where_sql, params = build_where(filters)
            sql += f" WHERE {where_sql}"
        if sorts:
            sql += f" ORDER BY {build_order_by(sorts)}"
        if limit > 0:
            sql += " LIMIT ?"
            params.append(limit)
        if offset > 0:
            sql += " OFFSET ?"
            params.append(offset)
        return self.query_main(sql, params)

    def count(self, table: str, filters: Sequence[Filter] = ()) -> int:
        """Count rows matching the filters."""
        sql = f"SELECT COUNT(*) FROM {table}"
        params: list[Any] = []
        if filters:
            where_sql, params = build_where(filters)
            sql += f" WHERE {where_sql}"
        row = self.query_row_main(sql, params)
        return int(row[0]) if row else 0

    def iter_rows(self, table: str, **kwargs: Any) -> Iterator[dict[str, Any]]:
        """Yield selected rows as dicts, closing the cursor when exhausted."""
        with self.select(table, **kwargs) as cursor:
            for row in cursor:
                yield dict(zip(cursor.columns, row))
