"""
Connection pre-warming to remove cold-start latency.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, wait

import duckdb

from ..errors import DuckGateError
from .pool import ConnectionPool

logger = logging.getLogger(__name__)

WARM_TIMEOUT_SECONDS = 5.0


def warm_pool(pool: ConnectionPool, timeout: float = WARM_TIMEOUT_SECONDS) -> int:
    """Open and ping up to ``pool.max_open`` connections concurrently.

    Failures are logged and never abort startup. Connections beyond the
    pool's idle limit are closed again on release, so the pool settles at
    ``max_idle`` warm connections.

    Args:
        pool: Pool to warm
        timeout: Seconds allowed for each connection and for the whole pass

    Returns:
        Number of connections that answered the ping
    """
    target = pool.max_open
    logger.info(
        "Pre-warming database connections",
        extra={"pool": pool.name, "target_connections": target},
    )

    def _warm_one(index: int) -> bool:
        try:
            pooled = pool.acquire(timeout)
        except DuckGateError as e:
            logger.warning(
                f"Failed to create warm connection: {e}",
                extra={"pool": pool.name, "connection_index": index},
            )
            return False
        try:
            pooled.conn.execute("SELECT 1").fetchone()
            return True
        except duckdb.Error as e:
            logger.warning(
                f"Failed to ping warm connection: {e}",
                extra={"pool": pool.name, "connection_index": index},
            )
            return False
        finally:
            pool.release(pooled)

    executor = ThreadPoolExecutor(max_workers=target, thread_name_prefix=f"warm-{pool.name}")
    try:
        futures = [executor.submit(_warm_one, i) for i in range(target)]
        done, pending = wait(futures, timeout=timeout)
    finally:
        # Stragglers finish in the background and release their connections.
        executor.shutdown(wait=False, cancel_futures=True)

    warmed = sum(1 for f in done if f.result())
    logger.info(
        "Connection pool warmed",
        extra={"pool": pool.name, "warmed": warmed, "pending": len(pending)},
    )
    return warmed
