"""
Database manager: connection topology for the main and credential stores.

The manager owns two independently pooled DuckDB databases:
- main: the data callers read and mutate
- auth: the credential store (roles, api_keys, permissions)

It also owns the schema and statement caches and, through CrudOperations,
the transactional mutation API.

Invariants:
    - Both pools are open and answer a ping before open() returns
    - The credential store is validated, never created, outside of tests
    - Every Exec/Query carries the configured per-call timeout
    - Query cursors keep their timeout alive until closed (see cursor.py)
    - close() is idempotent

How to change safely:
    - Schema changes to the credential store must be mirrored in
      AUTH_SCHEMA and in the external bootstrap tooling
    - Call invalidate_table_schema() after any DDL on the main database

Credential store schema:
    roles:
        - role_name VARCHAR PRIMARY KEY
        - description VARCHAR

    api_keys:
        - key VARCHAR PRIMARY KEY
        - role_name VARCHAR (FK roles)
        - created_at TIMESTAMP
        - expires_at TIMESTAMP (NULL = never)
        - is_active BOOLEAN

    permissions:
        - id INTEGER PRIMARY KEY (permissions_id_seq)
        - role_name VARCHAR (FK roles)
        - table_name VARCHAR ('*' = every table)
        - can_create, can_read, can_update, can_delete, can_query BOOLEAN
        - UNIQUE (role_name, table_name)
"""

from __future__ import annotations

import logging
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from typing import Any

import duckdb

from ..config import CacheConfig, DatabaseConfig
from ..errors import ConfigurationError, SchemaValidationError
from .cursor import RowCursor, Watchdog, timeout_error
from .operations import CrudOperations
from .pool import ConnectionPool, PoolStats
from .statements import SchemaCache, StatementCache
from .warmer import warm_pool

logger = logging.getLogger(__name__)

REQUIRED_AUTH_TABLES = ("roles", "api_keys", "permissions")

AUTH_SCHEMA = """
    -- Roles table
    CREATE TABLE IF NOT EXISTS roles (
        role_name VARCHAR PRIMARY KEY,
        description VARCHAR
    );

    -- API keys table
    CREATE TABLE IF NOT EXISTS api_keys (
        key VARCHAR PRIMARY KEY,
        role_name VARCHAR NOT NULL,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        expires_at TIMESTAMP,
        is_active BOOLEAN DEFAULT true,
        FOREIGN KEY (role_name) REFERENCES roles(role_name)
    );

    -- Permissions table
    CREATE TABLE IF NOT EXISTS permissions (
        id INTEGER PRIMARY KEY,
        role_name VARCHAR NOT NULL,
        table_name VARCHAR NOT NULL,
        can_create BOOLEAN DEFAULT false,
        can_read BOOLEAN DEFAULT false,
        can_update BOOLEAN DEFAULT false,
        can_delete BOOLEAN DEFAULT false,
        can_query BOOLEAN DEFAULT false,
        FOREIGN KEY (role_name) REFERENCES roles(role_name),
        UNIQUE (role_name, table_name)
    );

    CREATE SEQUENCE IF NOT EXISTS permissions_id_seq START 1;
"""

DEFAULT_AUTH_DATA = """
    INSERT INTO roles (role_name, description)
    VALUES ('admin', 'Full access to all tables and raw SQL queries')
    ON CONFLICT DO NOTHING;

    INSERT INTO roles (role_name, description)
    VALUES ('editor', 'CRUD access to all tables, no raw SQL')
    ON CONFLICT DO NOTHING;

    INSERT INTO roles (role_name, description)
    VALUES ('reader', 'Read-only access to all tables')
    ON CONFLICT DO NOTHING;

    INSERT INTO permissions (id, role_name, table_name, can_create, can_read, can_update, can_delete, can_query)
    VALUES (nextval('permissions_id_seq'), 'admin', '*', true, true, true, true, true)
    ON CONFLICT DO NOTHING;

    INSERT INTO permissions (id, role_name, table_name, can_create, can_read, can_update, can_delete, can_query)
    VALUES (nextval('permissions_id_seq'), 'editor', '*', true, true, true, true, false)
    ON CONFLICT DO NOTHING;

    INSERT INTO permissions (id, role_name, table_name, can_create, can_read, can_update, can_delete, can_query)
    VALUES (nextval('permissions_id_seq'), 'reader', '*', false, true, false, false, false)
    ON CONFLICT DO NOTHING;
"""


class Manager(CrudOperations):
    """Owns the main and credential-store pools and the statement caches.

    Thread safety:
        Pools and caches are internally synchronized; a single Manager is
        shared by all worker threads. Each call borrows its own connection.

    Example:
        >>> manager = Manager.open(config.database, config.cache)
        >>> manager.insert("orders", {"id": 1, "status": "new"})
        1
        >>> with manager.select("orders") as rows:
        ...     rows.fetchall()
        [(1, 'new', None)]
        >>> manager.close()
    """

    def __init__(self, config: DatabaseConfig, cache: CacheConfig | None = None) -> None:
        """Create an unopened manager. Use open() or open_for_testing().

        Args:
            config: Connection topology configuration
            cache: Cache configuration (defaults if not provided)
        """
        self.config = config
        self.cache_config = cache or CacheConfig()
        self.query_timeout = config.query_timeout_seconds
        self.main_pool: ConnectionPool | None = None
        self.auth_pool: ConnectionPool | None = None
        self._closed = False

        self.schemas = SchemaCache(
            self._introspect_columns, ttl_seconds=self.cache_config.schema_cache_ttl_seconds
        )
        self.statements = StatementCache(
            self.schemas,
            ttl_seconds=self.cache_config.schema_cache_ttl_seconds,
            max_size=self.cache_config.statement_cache_size,
        )

    @classmethod
    def open(cls, config: DatabaseConfig, cache: CacheConfig | None = None) -> Manager:
        """Open both pools and validate the credential store.

        Raises:
            ConfigurationError: If the auth database path is missing
            SchemaValidationError: If the credential store lacks tables or roles
            duckdb.Error: If either database cannot be opened
        """
        manager = cls(config, cache)
        manager._connect()
        try:
            manager.validate_auth_schema()
        except BaseException:
            manager.close()
            raise

        if config.warm_connections:
            manager.warm_connections()
        return manager

    @classmethod
    def open_for_testing(cls, config: DatabaseConfig, cache: CacheConfig | None = None) -> Manager:
        """Open both pools and seed the default credential schema.

        ONLY for tests; production credential stores are bootstrapped
        externally and validated by open().
        """
        manager = cls(config, cache)
        manager._connect()
        try:
            manager.init_auth_schema_for_testing()
        except BaseException:
            manager.close()
            raise
        return manager

    def _connect(self) -> None:
        cfg = self.config
        if not cfg.auth_db_path:
            raise ConfigurationError("auth_db_path is required", setting="auth_db_path")

        self.main_pool = ConnectionPool(
            "main",
            cfg.main_database,
            read_only=cfg.read_only,
            engine_settings=cfg.engine_settings(),
            max_open=cfg.max_open_conns,
            max_idle=cfg.max_idle_conns,
            max_lifetime_seconds=cfg.conn_max_lifetime_seconds,
        )
        try:
            self.main_pool.ping(self.query_timeout)
        except BaseException:
            self.close()
            raise

        logger.info(
            "Main database connected",
            extra={
                "database": cfg.main_database,
                "in_memory": not cfg.main_db_path,
                "max_open_conns": cfg.max_open_conns,
                "max_idle_conns": cfg.max_idle_conns,
            },
        )

        try:
            self.auth_pool = ConnectionPool(
                "auth",
                cfg.auth_db_path,
                engine_settings=cfg.auth_engine_settings(),
                max_open=cfg.max_open_conns,
                max_idle=cfg.max_idle_conns,
                max_lifetime_seconds=cfg.conn_max_lifetime_seconds,
            )
            self.auth_pool.ping(self.query_timeout)
        except BaseException:
            self.close()
            raise

        logger.info(
            "Auth database connected",
            extra={
                "path": cfg.auth_db_path,
                "max_open_conns": cfg.max_open_conns,
                "max_idle_conns": cfg.max_idle_conns,
            },
        )

    def validate_auth_schema(self) -> None:
        """Check that the credential store was bootstrapped.

        Raises:
            SchemaValidationError: If a required table is missing or no role exists
        """
        path = self.config.auth_db_path
        for table in REQUIRED_AUTH_TABLES:
            row = self.query_row_auth(
                "SELECT COUNT(*) FROM information_schema.tables WHERE table_name = ?",
                [table],
            )
            if not row or row[0] == 0:
                raise SchemaValidationError(
                    f"auth database is missing required table '{table}'. "
                    f"Initialize the auth database at {path} before starting.",
                    database_path=path,
                )

        row = self.query_row_auth("SELECT COUNT(*) FROM roles")
        role_count = row[0] if row else 0
        if role_count == 0:
            raise SchemaValidationError(
                "auth database has no roles defined. Add at least one role before starting.",
                database_path=path,
            )

        logger.info("Auth database schema validated", extra={"roles": role_count})

    def init_auth_schema_for_testing(self, with_defaults: bool = True) -> None:
        """Create the credential schema, optionally with default roles."""
        self.exec_auth(AUTH_SCHEMA)
        if with_defaults:
            self.exec_auth(DEFAULT_AUTH_DATA)

    def warm_connections(self) -> int:
        """Pre-establish main pool connections. Returns the number warmed."""
        return warm_pool(self._require(self.main_pool))

    def close(self) -> None:
        """Close both pools. Idempotent."""
        if self._closed:
            return
        self._closed = True
        errors: list[BaseException] = []
        for pool in (self.main_pool, self.auth_pool):
            if pool is None:
                continue
            try:
                pool.close()
            except duckdb.Error as e:
                errors.append(e)
        if errors:
            raise errors[0]

    def __enter__(self) -> Manager:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _require(self, pool: ConnectionPool | None) -> ConnectionPool:
        if pool is None:
            raise ConfigurationError("manager is not open")
        return pool

    def pool_stats(self) -> list[PoolStats]:
        return [pool.stats() for pool in (self.main_pool, self.auth_pool) if pool is not None]

    # Execution primitives

    def execute_in(
        self, conn: duckdb.DuckDBPyConnection, sql: str, params: Sequence[Any] = ()
    ) -> int:
        """Execute on an already-borrowed connection with the per-call timeout.

        Returns:
            Rows affected for DML, 0 for statements without a count
        """
        with Watchdog(conn, self.query_timeout) as watchdog:
            try:
                if params:
                    conn.execute(sql, list(params))
                else:
                    conn.execute(sql)
                # DDL produces no result set.
                row = conn.fetchone() if conn.description else None
            except duckdb.InterruptException as e:
                raise timeout_error(watchdog.timeout) from e
        if row and isinstance(row[0], int) and not isinstance(row[0], bool):
            return row[0]
        return 0

    def _exec(self, pool: ConnectionPool | None, sql: str, params: Sequence[Any]) -> int:
        with self._require(pool).connection(self.query_timeout) as conn:
            return self.execute_in(conn, sql, params)

    def _query(self, pool: ConnectionPool | None, sql: str, params: Sequence[Any]) -> RowCursor:
        pool = self._require(pool)
        pooled = pool.acquire(self.query_timeout)
        watchdog = Watchdog(pooled.conn, self.query_timeout)
        try:
            if params:
                pooled.conn.execute(sql, list(params))
            else:
                pooled.conn.execute(sql)
        except BaseException as e:
            watchdog.cancel()
            pool.release(pooled)
            if isinstance(e, duckdb.InterruptException):
                raise timeout_error(self.query_timeout) from e
            raise
        return RowCursor(pooled.conn, lambda: pool.release(pooled), watchdog)

    def _query_row(
        self, pool: ConnectionPool | None, sql: str, params: Sequence[Any]
    ) -> tuple | None:
        with self._query(pool, sql, params) as cursor:
            return cursor.fetchone()

    def exec_main(self, sql: str, params: Sequence[Any] = ()) -> int:
        return self._exec(self.main_pool, sql, params)

    def query_main(self, sql: str, params: Sequence[Any] = ()) -> RowCursor:
        """Run a query on the main database; the caller closes the cursor."""
        return self._query(self.main_pool, sql, params)

    def query_row_main(self, sql: str, params: Sequence[Any] = ()) -> tuple | None:
        return self._query_row(self.main_pool, sql, params)

    def exec_auth(self, sql: str, params: Sequence[Any] = ()) -> int:
        return self._exec(self.auth_pool, sql, params)

    def query_auth(self, sql: str, params: Sequence[Any] = ()) -> RowCursor:
        """Run a query on the credential store; the caller closes the cursor."""
        return self._query(self.auth_pool, sql, params)

    def query_row_auth(self, sql: str, params: Sequence[Any] = ()) -> tuple | None:
        return self._query_row(self.auth_pool, sql, params)

    @contextmanager
    def transaction(self) -> Iterator[duckdb.DuckDBPyConnection]:
        """Run a block in a main-database transaction.

        Commits when the block completes, rolls back on any exception.
        Statements inside should go through execute_in() for the timeout.
        """
        with self._require(self.main_pool).connection(self.query_timeout) as conn:
            conn.begin()
            try:
                yield conn
                conn.commit()
            except BaseException:
                try:
                    conn.rollback()
                except duckdb.Error as e:
                    # A failed COMMIT already ended the transaction.
                    logger.debug(f"Rollback after failure: {e}")
                raise

    # Schema

    def _introspect_columns(self, table: str) -> list[str]:
        with self.query_main(
            """
            SELECT column_name
            FROM information_schema.columns
            WHERE table_name = ?
            ORDER BY ordinal_position
            """,
            [table],
        ) as cursor:
            return [row[0] for row in cursor]

    def get_table_columns(self, table: str) -> tuple[str, ...]:
        """Ordered column names for a table (cached).

        Raises:
            NotFoundError: If the table does not exist
        """
        return self.schemas.get_columns(table)

    def invalidate_table_schema(self, table: str) -> None:
        """Forget a table's schema and close its statements. Call after DDL."""
        self.schemas.invalidate(table)
        evicted = self.statements.invalidate(table)
        logger.debug(
            "Invalidated table schema cache",
            extra={"table": table, "statements_evicted": evicted},
        )

    def table_exists(self, table: str) -> bool:
        row = self.query_row_main(
            "SELECT COUNT(*) FROM information_schema.tables WHERE table_name = ?",
            [table],
        )
        return bool(row and row[0] > 0)


__all__ = ["Manager", "AUTH_SCHEMA", "DEFAULT_AUTH_DATA", "REQUIRED_AUTH_TABLES"]
