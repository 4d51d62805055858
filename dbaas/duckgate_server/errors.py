"""
Error types for DuckGate.

This module defines all exception types raised by the data-access and
authorization layers:
- DuckGateError: Base exception
- ConfigurationError: Missing or invalid setting (fatal at construction)
- SchemaValidationError: Credential store is not initialized (fatal at startup)
- NotFoundError: Table, API key, permission or role absent
- ConflictError: Transaction conflict persisted after all retries
- AuthenticationError: API key is invalid, expired or revoked
- ValidationError: Caller-supplied identifier/operator/payload rejected
- QueryTimeoutError: Per-call timeout elapsed
- OperationError: Terminal engine error for a table operation

Invariants:
    - All errors inherit from DuckGateError
    - Errors include table/operation context where one exists
    - Engine causes are chained with ``raise ... from exc``
"""

from __future__ import annotations

from typing import Any


class DuckGateError(Exception):
    """Base exception for all DuckGate errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "DUCKGATE_ERROR"
        self.details = details or {}


class ConfigurationError(DuckGateError):
    """A required setting is missing or invalid."""

    def __init__(self, message: str, setting: str | None = None) -> None:
        super().__init__(message, code="CONFIGURATION_ERROR", details={"setting": setting})
        self.setting = setting


class SchemaValidationError(DuckGateError):
    """The credential store is missing required tables or has no roles.

    Raised at startup only. The credential store is bootstrapped externally
    and is never created implicitly outside of tests.
    """

    def __init__(self, message: str, database_path: str | None = None) -> None:
        super().__init__(
            message,
            code="SCHEMA_VALIDATION_ERROR",
            details={"database_path": database_path},
        )
        self.database_path = database_path


class NotFoundError(DuckGateError):
    """Resource not found.

    Raised when:
    - Table doesn't exist or reports no columns
    - API key doesn't exist
    - Permission or role doesn't exist
    """

    def __init__(
        self,
        message: str,
        resource_type: str,
        resource_id: str,
    ) -> None:
        super().__init__(
            message,
            code="NOT_FOUND",
            details={
                "resource_type": resource_type,
                "resource_id": resource_id,
            },
        )
        self.resource_type = resource_type
        self.resource_id = resource_id


class ConflictError(DuckGateError):
    """Transaction conflict that survived every retry attempt."""

    def __init__(
        self,
        message: str,
        table: str | None = None,
        operation: str | None = None,
        attempts: int = 0,
    ) -> None:
        super().__init__(
            message,
            code="CONFLICT",
            details={"table": table, "operation": operation, "attempts": attempts},
        )
        self.table = table
        self.operation = operation
        self.attempts = attempts


class AuthenticationError(DuckGateError):
    """API key could not be authenticated."""

    def __init__(self, message: str, code: str = "AUTHENTICATION_ERROR") -> None:
        super().__init__(message, code=code)


class InvalidApiKeyError(AuthenticationError):
    """API key is unknown."""

    def __init__(self, message: str = "invalid API key") -> None:
        super().__init__(message, code="INVALID_API_KEY")


class ExpiredApiKeyError(AuthenticationError):
    """API key is past its expiration time."""

    def __init__(self, message: str = "API key has expired") -> None:
        super().__init__(message, code="API_KEY_EXPIRED")


class RevokedApiKeyError(AuthenticationError):
    """API key has been revoked (flagged inactive)."""

    def __init__(self, message: str = "API key has been revoked") -> None:
        super().__init__(message, code="API_KEY_REVOKED")


class AccessDeniedError(DuckGateError):
    """Role lacks the permission for an operation on a table."""

    def __init__(self, role: str, table: str, operation: str) -> None:
        super().__init__(
            f"Access denied: role '{role}' lacks {operation} on '{table}'",
            code="ACCESS_DENIED",
            details={"role": role, "table": table, "operation": operation},
        )
        self.role = role
        self.table = table
        self.operation = operation


class ValidationError(DuckGateError):
    """Caller-supplied input failed validation.

    Raised when:
    - Identifier fails the allow-list
    - Filter operator or permission operation is unknown
    - Insert has no fields, or update/delete has no WHERE
    """

    def __init__(
        self,
        message: str,
        field_name: str | None = None,
        errors: list[str] | None = None,
    ) -> None:
        super().__init__(
            message,
            code="VALIDATION_ERROR",
            details={"field": field_name, "errors": errors or []},
        )
        self.field_name = field_name
        self.errors = errors or []


class QueryTimeoutError(DuckGateError, TimeoutError):
    """Per-call timeout elapsed before the engine responded.

    Also a builtin ``TimeoutError``, so generic timeout handlers catch it.
    """

    def __init__(self, message: str, timeout_seconds: float | None = None) -> None:
        super().__init__(
            message,
            code="QUERY_TIMEOUT",
            details={"timeout_seconds": timeout_seconds},
        )
        self.timeout_seconds = timeout_seconds


class OperationError(DuckGateError):
    """Terminal, non-conflict failure of a table operation."""

    def __init__(self, message: str, table: str, operation: str) -> None:
        super().__init__(
            message,
            code="OPERATION_ERROR",
            details={"table": table, "operation": operation},
        )
        self.table = table
        self.operation = operation
