"""
Credential store records: API keys, roles and table permissions.

Timestamps are naive UTC datetimes, matching the TIMESTAMP columns of the
credential store.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

from ..errors import ValidationError

WILDCARD_TABLE = "*"


def utcnow() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def mask_key(key: str) -> str:
    """Key shortened for display and logs."""
    return key[:8] + "..." if len(key) > 8 else key


def to_naive_utc(value: datetime | None) -> datetime | None:
    """Normalize an aware datetime to naive UTC; naive values pass through."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class Operation(Enum):
    """Operations a permission can grant."""

    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    QUERY = "query"

    @classmethod
    def parse(cls, value: str | Operation) -> Operation:
        """Coerce a string to an Operation.

        Raises:
            ValidationError: If the operation is unknown
        """
        if isinstance(value, Operation):
            return value
        try:
            return cls(value)
        except ValueError:
            raise ValidationError(f"unknown operation: {value}", field_name="operation") from None


# Short forms accepted by Permission.from_operations
_OPERATION_ALIASES = {
    "c": Operation.CREATE,
    "r": Operation.READ,
    "u": Operation.UPDATE,
    "d": Operation.DELETE,
    "q": Operation.QUERY,
}


@dataclass(frozen=True)
class ApiKey:
    """An API key bound to a role.

    Attributes:
        key: Opaque secret presented by the caller
        role_name: Role the key acts as
        created_at: Creation time (naive UTC)
        expires_at: Expiry time (naive UTC), None for never
        is_active: False once revoked
    """

    key: str
    role_name: str
    created_at: datetime | None = None
    expires_at: datetime | None = None
    is_active: bool = True

    @classmethod
    def from_row(cls, row: tuple) -> ApiKey:
        key, role_name, created_at, expires_at, is_active = row
        return cls(
            key=key,
            role_name=role_name,
            created_at=created_at,
            expires_at=expires_at,
            is_active=bool(is_active),
        )

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at < now

    def masked(self) -> str:
        return mask_key(self.key)

    def __repr__(self) -> str:
        return (
            f"ApiKey(key={self.masked()!r}, role_name={self.role_name!r}, "
            f"expires_at={self.expires_at!r}, is_active={self.is_active!r})"
        )


@dataclass(frozen=True)
class Role:
    role_name: str
    description: str = ""


@dataclass(frozen=True)
class Permission:
    """Operations a role may perform on a table.

    A ``table_name`` of ``'*'`` applies to every table without an exact
    permission row of its own.

    Attributes:
        role_name: Role granted the permission
        table_name: Table name, or '*'
        can_create: INSERT allowed
        can_read: SELECT allowed
        can_update: UPDATE allowed
        can_delete: DELETE allowed
        can_query: Raw SQL allowed
        id: Row id, None until stored
    """

    role_name: str
    table_name: str
    can_create: bool = False
    can_read: bool = False
    can_update: bool = False
    can_delete: bool = False
    can_query: bool = False
    id: int | None = None

    @classmethod
    def from_row(cls, row: tuple) -> Permission:
        perm_id, role_name, table_name, c, r, u, d, q = row
        return cls(
            role_name=role_name,
            table_name=table_name,
            can_create=bool(c),
            can_read=bool(r),
            can_update=bool(u),
            can_delete=bool(d),
            can_query=bool(q),
            id=perm_id,
        )

    @classmethod
    def from_operations(cls, role_name: str, table_name: str, operations: str) -> Permission:
        """Build a permission from an operation list.

        Accepts ``all``, ``crud`` (everything but query), or a comma list of
        operation names or their initials.

        Example:
            >>> Permission.from_operations("analyst", "sales", "r,q").operations()
            [<Operation.READ: 'read'>, <Operation.QUERY: 'query'>]

        Raises:
            ValidationError: If an operation is unknown
        """
        shorthand = operations.strip().lower()
        if shorthand == "all":
            granted = set(Operation)
        elif shorthand == "crud":
            granted = set(Operation) - {Operation.QUERY}
        else:
            granted = set()
            for part in shorthand.split(","):
                part = part.strip()
                granted.add(_OPERATION_ALIASES.get(part) or Operation.parse(part))

        return cls(
            role_name=role_name,
            table_name=table_name,
            **{f"can_{op.value}": op in granted for op in Operation},
        )

    def allows(self, operation: str | Operation) -> bool:
        return bool(getattr(self, f"can_{Operation.parse(operation).value}"))

    def operations(self) -> list[Operation]:
        return [op for op in Operation if self.allows(op)]

    @property
    def is_wildcard(self) -> bool:
        return self.table_name == WILDCARD_TABLE
