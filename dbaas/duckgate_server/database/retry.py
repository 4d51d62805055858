"""
Conflict classification and bounded retry for transactional mutations.

DuckDB uses optimistic concurrency: two transactions writing the same rows
do not block each other, the loser fails with a conflict error at write or
commit time. Those errors are transient; everything else is terminal.

Invariants:
    - Classification lives in ``is_transaction_conflict`` only
    - At most ``MAX_ATTEMPTS`` attempts; delays double from ``BASE_RETRY_DELAY``
    - Non-conflict errors propagate on the first attempt, unretried

How to change safely:
    - If the driver grows a typed conflict error, check it here first and keep
      the message markers as a fallback
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import TypeVar

from ..errors import ConflictError

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_ATTEMPTS = 3
BASE_RETRY_DELAY = 0.05  # seconds

# Lower-case substrings of engine messages that signal a write-write conflict.
CONFLICT_MARKERS = (
    "transaction conflict",
    "conflict on table",
    "conflict on update",
    "conflict on tuple",
    "write-write conflict",
)


def is_transaction_conflict(exc: BaseException | None) -> bool:
    """Check whether an engine error is a transient transaction conflict."""
    if exc is None:
        return False
    message = str(exc).lower()
    return any(marker in message for marker in CONFLICT_MARKERS)


def backoff_delay(attempt: int, base_delay: float = BASE_RETRY_DELAY) -> float:
    """Delay after the zero-based ``attempt``: 50ms, 100ms, 200ms, ..."""
    return base_delay * (2**attempt)


def retry_on_conflict(
    fn: Callable[[], T],
    *,
    table: str | None = None,
    operation: str | None = None,
    max_attempts: int = MAX_ATTEMPTS,
    base_delay: float = BASE_RETRY_DELAY,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``fn``, retrying with exponential backoff on transaction conflicts.

    ``fn`` must open and finish its own transaction so that every attempt
    starts fresh.

    Args:
        fn: The attempt to run
        table: Table name for error context
        operation: Operation name for error context
        max_attempts: Total attempts including the first
        base_delay: Delay before the second attempt, doubled each time
        sleep: Sleep function (injectable for tests)

    Returns:
        Whatever ``fn`` returns on its first successful attempt

    Raises:
        ConflictError: If every attempt failed with a conflict
        Exception: Any non-conflict error from ``fn``, unchanged
    """
    last_exc: Exception | None = None
    for attempt in range(max_attempts):
        try:
            return fn()
        except Exception as exc:
            if not is_transaction_conflict(exc):
                raise
            last_exc = exc

        if attempt < max_attempts - 1:
            delay = backoff_delay(attempt, base_delay)
            logger.debug(
                "Transaction conflict, retrying",
                extra={
                    "table": table,
                    "operation": operation,
                    "attempt": attempt + 1,
                    "delay_ms": int(delay * 1000),
                },
            )
            sleep(delay)

    logger.warning(
        "Transaction conflict retries exhausted",
        extra={"table": table, "operation": operation, "attempts": max_attempts},
    )
    raise ConflictError(
        f"transaction failed after {max_attempts} attempts: {last_exc}",
        table=table,
        operation=operation,
        attempts=max_attempts,
    ) from last_exc
