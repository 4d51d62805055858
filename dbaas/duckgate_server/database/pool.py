"""
Bounded connection pool over one embedded DuckDB database.

A DuckDB database is opened once per pool; pooled connections are cursors
of that database, each with its own transaction state. This gives each
worker thread an independent connection while all of them see the same
MVCC-versioned data.

Invariants:
    - At most ``max_open`` connections are checked out or idle at once
    - At most ``max_idle`` connections are kept for reuse; extras are closed
    - Connections older than ``max_lifetime_seconds`` are never reused
    - ``close()`` is idempotent and closes the database handle last

How to change safely:
    - Never hand one connection to two threads at the same time
    - Keep acquisition timeouts mapped to QueryTimeoutError
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any

import duckdb

from ..errors import DuckGateError, QueryTimeoutError

logger = logging.getLogger(__name__)


class PoolClosedError(DuckGateError):
    """The pool was closed and can no longer hand out connections."""

    def __init__(self, name: str) -> None:
        super().__init__(f"connection pool '{name}' is closed", code="POOL_CLOSED")


@dataclass(frozen=True)
class PoolStats:
    """Point-in-time pool counters.

    Attributes:
        name: Pool name (main or auth)
        max_open: Upper bound on open connections
        max_idle: Upper bound on idle connections
        open: Connections currently open (in use + idle)
        in_use: Connections currently checked out
        idle: Connections waiting for reuse
        wait_count: Acquisitions that had to wait for a free slot
    """

    name: str
    max_open: int
    max_idle: int
    open: int
    in_use: int
    idle: int
    wait_count: int


class PooledConnection:
    """A checked-out connection and its creation time."""

    __slots__ = ("conn", "created_at")

    def __init__(self, conn: duckdb.DuckDBPyConnection, created_at: float) -> None:
        self.conn = conn
        self.created_at = created_at


class ConnectionPool:
    """Thread-safe pool of DuckDB connections to a single database.

    Example:
        >>> pool = ConnectionPool("main", ":memory:", max_open=8, max_idle=4)
        >>> with pool.connection(timeout=5) as conn:
        ...     conn.execute("SELECT 42").fetchone()
        (42,)
        >>> pool.close()
    """

    def __init__(
        self,
        name: str,
        database: str,
        *,
        read_only: bool = False,
        engine_settings: dict[str, Any] | None = None,
        max_open: int = 8,
        max_idle: int = 4,
        max_lifetime_seconds: float = 3600.0,
    ) -> None:
        """Open the database and prepare an empty pool.

        Args:
            name: Pool name used in logs and errors
            database: DuckDB database path, or ":memory:"
            read_only: Open the database read-only
            engine_settings: DuckDB settings (threads, memory_limit, ...)
            max_open: Maximum simultaneously open connections
            max_idle: Maximum idle connections kept for reuse
            max_lifetime_seconds: Age after which a connection is recycled

        Raises:
            duckdb.Error: If the database cannot be opened
        """
        if max_open <= 0:
            raise ValueError("max_open must be greater than 0")
        self.name = name
        self.database = database
        self.max_open = max_open
        self.max_idle = min(max_idle, max_open)
        self.max_lifetime_seconds = max_lifetime_seconds

        self._db = duckdb.connect(
            database=database,
            read_only=read_only,
            config=dict(engine_settings or {}),
        )
        self._slots = threading.BoundedSemaphore(max_open)
        self._idle: deque[PooledConnection] = deque()
        self._lock = threading.Lock()
        self._open = 0
        self._in_use = 0
        self._wait_count = 0
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def acquire(self, timeout: float | None = None) -> PooledConnection:
        """Check out a connection, blocking while the pool is saturated.

        Args:
            timeout: Seconds to wait for a free slot (None waits forever)

        Raises:
            QueryTimeoutError: If no slot frees up within ``timeout``
            PoolClosedError: If the pool is closed
        """
        if self._closed:
            raise PoolClosedError(self.name)

        if not self._slots.acquire(blocking=False):
            with self._lock:
                self._wait_count += 1
            if not self._slots.acquire(timeout=timeout):
                raise QueryTimeoutError(
                    f"timed out waiting for a '{self.name}' connection",
                    timeout_seconds=timeout,
                )

        try:
            with self._lock:
                if self._closed:
                    raise PoolClosedError(self.name)
                now = time.monotonic()
                while self._idle:
                    pooled = self._idle.pop()
                    if now - pooled.created_at < self.max_lifetime_seconds:
                        self._in_use += 1
                        return pooled
                    self._discard(pooled)

                pooled = PooledConnection(self._db.cursor(), now)
                self._open += 1
                self._in_use += 1
                return pooled
        except BaseException:
            self._slots.release()
            raise

    def release(self, pooled: PooledConnection, discard: bool = False) -> None:
        """Return a connection to the pool (or close it)."""
        with self._lock:
            self._in_use -= 1
            expired = time.monotonic() - pooled.created_at >= self.max_lifetime_seconds
            if self._closed or discard or expired or len(self._idle) >= self.max_idle:
                self._discard(pooled)
            else:
                self._idle.append(pooled)
        self._slots.release()

    @contextmanager
    def connection(self, timeout: float | None = None) -> Iterator[duckdb.DuckDBPyConnection]:
        """Borrow a connection for the duration of a ``with`` block."""
        pooled = self.acquire(timeout)
        try:
            yield pooled.conn
        finally:
            self.release(pooled)

    def ping(self, timeout: float | None = None) -> None:
        """Round-trip a trivial query.

        Raises:
            duckdb.Error: If the database does not answer
        """
        with self.connection(timeout) as conn:
            conn.execute("SELECT 1").fetchone()

    def stats(self) -> PoolStats:
        with self._lock:
            return PoolStats(
                name=self.name,
                max_open=self.max_open,
                max_idle=self.max_idle,
                open=self._open,
                in_use=self._in_use,
                idle=len(self._idle),
                wait_count=self._wait_count,
            )

    def close(self) -> None:
        """Close idle connections and the database handle. Idempotent."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            while self._idle:
                self._discard(self._idle.pop())
        try:
            self._db.close()
        finally:
            logger.debug("Closed connection pool", extra={"pool": self.name})

    def _discard(self, pooled: PooledConnection) -> None:
        # Caller holds self._lock.
        self._open -= 1
        try:
            pooled.conn.close()
        except duckdb.Error as e:
            logger.warning(f"Failed to close pooled connection: {e}", extra={"pool": self.name})
