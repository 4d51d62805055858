"""
Unit tests for conflict classification and retry.

Tests cover:
- Conflict message classification
- Backoff schedule
- Exhaustion after three attempts
- Non-conflict errors propagate immediately
"""

import pytest

from dbaas.duckgate_server.database.retry import (
    BASE_RETRY_DELAY,
    MAX_ATTEMPTS,
    backoff_delay,
    is_transaction_conflict,
    retry_on_conflict,
)
from dbaas.duckgate_server.errors import ConflictError


class FakeEngineError(Exception):
    """Stands in for an engine error with a given message."""


class TestIsTransactionConflict:
    """Tests for conflict classification."""

    @pytest.mark.parametrize(
        "message",
        [
            "TransactionContext Error: Transaction conflict: cannot update a table that has been altered",
            "Conflict on table orders",
            "TRANSACTION CONFLICT",
            "Catalog write-write conflict on alter with \"orders\"",
        ],
    )
    def test_conflict_messages(self, message):
        """Known conflict phrasings are classified case-insensitively."""
        assert is_transaction_conflict(FakeEngineError(message))

    @pytest.mark.parametrize(
        "message",
        [
            "Constraint Error: Duplicate key",
            "Binder Error: column not found",
            "",
        ],
    )
    def test_other_messages(self, message):
        """Other engine errors are not conflicts."""
        assert not is_transaction_conflict(FakeEngineError(message))

    def test_none_is_not_conflict(self):
        """A missing error is not a conflict."""
        assert not is_transaction_conflict(None)


class TestBackoff:
    """Tests for the backoff schedule."""

    def test_doubles_from_base(self):
        """Delays double from the 50ms base."""
        assert backoff_delay(0) == pytest.approx(0.05)
        assert backoff_delay(1) == pytest.approx(0.10)
        assert backoff_delay(2) == pytest.approx(0.20)

    def test_defaults(self):
        """Three attempts starting at 50ms by default."""
        assert MAX_ATTEMPTS == 3
        assert BASE_RETRY_DELAY == pytest.approx(0.05)


class TestRetryOnConflict:
    """Tests for retry_on_conflict."""

    @pytest.fixture
    def sleeps(self):
        return []

    def test_success_first_attempt(self, sleeps):
        """No sleep when the first attempt succeeds."""
        assert retry_on_conflict(lambda: 7, sleep=sleeps.append) == 7
        assert sleeps == []

    def test_retries_then_succeeds(self, sleeps):
        """Two conflicts then success sleeps 50ms and 100ms."""
        outcomes = [
            FakeEngineError("Transaction conflict"),
            FakeEngineError("Conflict on table t"),
            1,
        ]

        def attempt():
            outcome = outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        assert retry_on_conflict(attempt, sleep=sleeps.append) == 1
        assert sleeps == pytest.approx([0.05, 0.10])

    def test_exhaustion_raises_conflict_error(self, sleeps):
        """Three conflicts raise ConflictError wrapping the last error."""
        calls = []

        def attempt():
            calls.append(1)
            raise FakeEngineError(f"Transaction conflict #{len(calls)}")

        with pytest.raises(ConflictError) as exc_info:
            retry_on_conflict(attempt, table="orders", operation="update", sleep=sleeps.append)

        err = exc_info.value
        assert len(calls) == 3
        assert sleeps == pytest.approx([0.05, 0.10])
        assert err.attempts == 3
        assert err.code == "CONFLICT"
        assert "after 3 attempts" in err.message
        assert "#3" in err.message
        assert isinstance(err.__cause__, FakeEngineError)

    def test_non_conflict_not_retried(self, sleeps):
        """Other errors propagate unchanged on the first attempt."""
        calls = []

        def attempt():
            calls.append(1)
            raise FakeEngineError("Constraint Error: NOT NULL constraint failed")

        with pytest.raises(FakeEngineError):
            retry_on_conflict(attempt, sleep=sleeps.append)
        assert len(calls) == 1
        assert sleeps == []

    def test_custom_attempts(self, sleeps):
        """A single-attempt budget fails without sleeping."""
        def attempt():
            raise FakeEngineError("transaction conflict")

        with pytest.raises(ConflictError) as exc_info:
            retry_on_conflict(attempt, max_attempts=1, sleep=sleeps.append)
        assert exc_info.value.attempts == 1
        assert sleeps == []
