"""
Row cursors and per-call timeout enforcement.

A query's timeout must outlive the call that started it: callers iterate
the returned cursor after ``query_main`` has returned. ``Watchdog`` is a
background timer that interrupts the engine when the timeout fires; the
cursor cancels it on close, whichever comes first.

Invariants:
    - A RowCursor owns exactly one pooled connection until closed
    - close() is idempotent, cancels the watchdog, then returns the connection
    - An interrupt caused by the watchdog surfaces as QueryTimeoutError
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterator
from typing import Any

import duckdb

from ..errors import QueryTimeoutError

logger = logging.getLogger(__name__)


class Watchdog:
    """Interrupts a connection if it is still busy after ``timeout`` seconds."""

    def __init__(self, conn: duckdb.DuckDBPyConnection, timeout: float | None) -> None:
        self.timeout = timeout
        self.fired = False
        self._conn = conn
        self._timer: threading.Timer | None = None
        if timeout is not None and timeout > 0:
            self._timer = threading.Timer(timeout, self._fire)
            self._timer.daemon = True
            self._timer.start()

    def _fire(self) -> None:
        self.fired = True
        try:
            self._conn.interrupt()
        except duckdb.Error as e:
            logger.debug(f"Interrupt after timeout failed: {e}")

    def cancel(self) -> None:
        if self._timer is not None:
            self._timer.cancel()

    def __enter__(self) -> Watchdog:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.cancel()


def timeout_error(timeout: float | None) -> QueryTimeoutError:
    return QueryTimeoutError(f"query exceeded timeout of {timeout}s", timeout_seconds=timeout)


class RowCursor:
    """Live result of a query; the caller must close it.

    Example:
        >>> with manager.select("orders", sorts=[Sort("id")]) as rows:
        ...     print(rows.columns)
        ...     for row in rows:
        ...         handle(row)
    """

    def __init__(
        self,
        conn: duckdb.DuckDBPyConnection,
        release: Callable[[], None],
        watchdog: Watchdog,
        arraysize: int = 1000,
    ) -> None:
        self.arraysize = arraysize
        self._conn = conn
        self._release = release
        self._watchdog = watchdog
        self._closed = False
        self.columns: list[str] = [d[0] for d in (conn.description or [])]

    @property
    def closed(self) -> bool:
        return self._closed

    def _fetch(self, fn: Callable[[], Any]) -> Any:
        if self._closed:
            raise ValueError("cursor is closed")
        try:
            return fn()
        except duckdb.InterruptException as exc:
            raise timeout_error(self._watchdog.timeout) from exc

    def fetchone(self) -> tuple | None:
        return self._fetch(self._conn.fetchone)

    def fetchmany(self, size: int | None = None) -> list[tuple]:
        return self._fetch(lambda: self._conn.fetchmany(size or self.arraysize))

    def fetchall(self) -> list[tuple]:
        return self._fetch(self._conn.fetchall)

    def __iter__(self) -> Iterator[tuple]:
        while True:
            batch = self.fetchmany()
            if not batch:
                return
            yield from batch

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._watchdog.cancel()
        self._release()

    def __enter__(self) -> RowCursor:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()
