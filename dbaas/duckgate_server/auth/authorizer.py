"""
API key authentication and role-based table authorization.

Invariants:
    - A cached API key is re-checked for expiry on every hit
    - Permission lookups prefer an exact table row over the '*' row
    - A role without a matching row is denied (never an error)
    - Every mutation invalidates the caches it can affect before returning
    - A lookup that overlaps an invalidation never writes its result back
    - Cache entries expire after ``cache_ttl_seconds`` even if an
      invalidation was missed (e.g. the store was edited externally)

How to change safely:
    - New operations need a can_<op> column, an Operation member and
      an entry in the permission SELECT list
    - Never log full API keys; use ApiKey.masked()
    - Read the cache generation before a lookup query, never after
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Callable
from datetime import datetime
from typing import Any

import duckdb

from ..cache import ExpiringCache
from ..database.manager import Manager
from ..errors import (
    AccessDeniedError,
    ExpiredApiKeyError,
    InvalidApiKeyError,
    NotFoundError,
    OperationError,
    RevokedApiKeyError,
    ValidationError,
)
from .models import ApiKey, Operation, Permission, Role, mask_key, to_naive_utc, utcnow

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL_SECONDS = 300.0
DEFAULT_PERMISSION_CACHE_SIZE = 1000
DEFAULT_API_KEY_CACHE_SIZE = 500

_PERMISSION_COLUMNS = (
    "id, role_name, table_name, can_create, can_read, can_update, can_delete, can_query"
)


def generate_api_key() -> str:
    """Generate a random URL-safe API key (32 bytes of entropy)."""
    return secrets.token_urlsafe(32)


class Authorizer:
    """Authenticates API keys and resolves table permissions.

    Lookups hit the credential store through the manager's auth pool and
    are cached in two expiring LRU caches. One instance is shared by all
    worker threads.

    Example:
        >>> authorizer = Authorizer(manager)
        >>> api_key = authorizer.authenticate(request_key)
        >>> authorizer.check_permission(api_key.role_name, "orders", "read")
        True
    """

    def __init__(
        self,
        manager: Manager,
        cache_ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
        permission_cache_size: int = DEFAULT_PERMISSION_CACHE_SIZE,
        api_key_cache_size: int = DEFAULT_API_KEY_CACHE_SIZE,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        """Initialize the authorizer.

        Args:
            manager: Open database manager (credential store access)
            cache_ttl_seconds: Safety expiry for cached keys and permissions
            permission_cache_size: Maximum cached (role, table, operation) entries
            api_key_cache_size: Maximum cached API keys
            clock: Returns the current naive UTC time (injectable for tests)
        """
        self.manager = manager
        self._clock = clock
        self._permissions: ExpiringCache[tuple[str, str, Operation], bool] = ExpiringCache(
            permission_cache_size, cache_ttl_seconds
        )
        self._api_keys: ExpiringCache[str, ApiKey] = ExpiringCache(
            api_key_cache_size, cache_ttl_seconds
        )

    # Authentication

    def authenticate(self, key: str) -> ApiKey:
        """Validate an API key and return it.

        Raises:
            InvalidApiKeyError: If the key does not exist
            RevokedApiKeyError: If the key was revoked
            ExpiredApiKeyError: If the key has expired
        """
        if not key:
            raise InvalidApiKeyError()

        now = self._clock()
        cached = self._api_keys.get(key)
        if cached is not None:
            if cached.is_expired(now):
                self._api_keys.pop(key)
                raise ExpiredApiKeyError()
            return cached

        generation = self._api_keys.generation
        row = self.manager.query_row_auth(
            """
            SELECT key, role_name, created_at, expires_at, is_active
            FROM api_keys
            WHERE key = ?
            """,
            [key],
        )
        if row is None:
            raise InvalidApiKeyError()

        api_key = ApiKey.from_row(row)
        if not api_key.is_active:
            raise RevokedApiKeyError()
        if api_key.is_expired(now):
            raise ExpiredApiKeyError()

        # Skipped if the key was invalidated while its row was being read.
        self._api_keys.set(key, api_key, generation=generation)
        return api_key

    # Authorization

    def check_permission(self, role_name: str, table_name: str, operation: str | Operation) -> bool:
        """Check whether a role may perform an operation on a table.

        Raises:
            ValidationError: If the operation is unknown
        """
        op = Operation.parse(operation)

        # A load that overlaps a purge is returned but not cached.
        return self._permissions.get_or_set(
            (role_name, table_name, op),
            lambda: self._load_permission(role_name, table_name, op),
        )

    def _load_permission(self, role_name: str, table_name: str, op: Operation) -> bool:
        row = self.manager.query_row_auth(
            f"""
            SELECT {_PERMISSION_COLUMNS}
            FROM permissions
            WHERE role_name = ? AND (table_name = ? OR table_name = '*')
            ORDER BY CASE WHEN table_name = ? THEN 1 ELSE 2 END
            LIMIT 1
            """,
            [role_name, table_name, table_name],
        )
        if row is None:
            return False
        return Permission.from_row(row).allows(op)

    def authorize(self, key: str, table_name: str, operation: str | Operation) -> ApiKey:
        """Authenticate a key and require a permission in one step.

        Raises:
            AuthenticationError: If the key is invalid, revoked or expired
            AccessDeniedError: If the key's role lacks the permission
        """
        api_key = self.authenticate(key)
        op = Operation.parse(operation)
        if not self.check_permission(api_key.role_name, table_name, op):
            logger.info(
                "Access denied",
                extra={"role": api_key.role_name, "table": table_name, "operation": op.value},
            )
            raise AccessDeniedError(api_key.role_name, table_name, op.value)
        return api_key

    # Invalidation

    def invalidate_api_key(self, key: str) -> None:
        self._api_keys.pop(key)

    def invalidate_api_key_cache(self) -> None:
        self._api_keys.purge()

    def invalidate_permission_cache(self) -> None:
        self._permissions.purge()

    # Mutations

    def _exec(self, table: str, operation: str, sql: str, params: list[Any]) -> int:
        try:
            return self.manager.exec_auth(sql, params)
        except duckdb.ConstraintException as e:
            raise ValidationError(f"{operation} on '{table}' violates a constraint: {e}") from e
        except duckdb.Error as e:
            raise OperationError(f"failed to {operation} on '{table}': {e}", table, operation) from e

    def _require_role(self, role_name: str) -> None:
        if self.manager.query_row_auth("SELECT 1 FROM roles WHERE role_name = ?", [role_name]) is None:
            raise NotFoundError(
                f"role '{role_name}' does not exist", resource_type="role", resource_id=role_name
            )

    def create_role(self, role_name: str, description: str = "") -> Role:
        self._exec(
            "roles",
            "create role",
            "INSERT INTO roles (role_name, description) VALUES (?, ?)",
            [role_name, description],
        )
        logger.info("Created role", extra={"role": role_name})
        return Role(role_name, description)

    def delete_role(self, role_name: str) -> None:
        """Delete a role with its permissions and API keys.

        Raises:
            NotFoundError: If the role does not exist
        """
        # Separate statements: the FK checks must see dependents gone.
        self._exec(
            "permissions", "delete role permissions",
            "DELETE FROM permissions WHERE role_name = ?", [role_name],
        )
        self._exec(
            "api_keys", "delete role API keys",
            "DELETE FROM api_keys WHERE role_name = ?", [role_name],
        )
        deleted = self._exec(
            "roles", "delete role",
            "DELETE FROM roles WHERE role_name = ?", [role_name],
        )

        # Purged even when the role was missing: dependents may have been removed.
        self.invalidate_permission_cache()
        self.invalidate_api_key_cache()

        if deleted == 0:
            raise NotFoundError(
                f"role '{role_name}' not found", resource_type="role", resource_id=role_name
            )
        logger.info("Deleted role", extra={"role": role_name})

    def create_api_key(
        self,
        role_name: str,
        key: str | None = None,
        expires_at: datetime | None = None,
    ) -> ApiKey:
        """Create an API key for a role, generating the key if not given.

        Raises:
            NotFoundError: If the role does not exist
            ValidationError: If the key already exists
        """
        self._require_role(role_name)
        api_key = ApiKey(
            key=key or generate_api_key(),
            role_name=role_name,
            created_at=self._clock(),
            expires_at=to_naive_utc(expires_at),
        )
        self._exec(
            "api_keys",
            "create API key",
            "INSERT INTO api_keys (key, role_name, created_at, expires_at, is_active) "
            "VALUES (?, ?, ?, ?, true)",
            [api_key.key, api_key.role_name, api_key.created_at, api_key.expires_at],
        )
        self.invalidate_api_key(api_key.key)
        logger.info(
            "Created API key",
            extra={"role": role_name, "key": api_key.masked(), "expires_at": str(expires_at)},
        )
        return api_key

    def revoke_api_key(self, key: str) -> None:
        """Deactivate an API key.

        Raises:
            NotFoundError: If the key does not exist
        """
        updated = self._exec(
            "api_keys",
            "revoke API key",
            "UPDATE api_keys SET is_active = false WHERE key = ?",
            [key],
        )
        if updated == 0:
            raise NotFoundError("API key not found", resource_type="api_key", resource_id=mask_key(key))
        self.invalidate_api_key(key)
        logger.info("Revoked API key", extra={"key": mask_key(key)})

    def create_permission(self, permission: Permission) -> Permission:
        """Store a new permission row.

        Raises:
            NotFoundError: If the role does not exist
            ValidationError: If the role already has a row for the table
        """
        self._require_role(permission.role_name)
        self._exec(
            "permissions",
            "create permission",
            f"INSERT INTO permissions ({_PERMISSION_COLUMNS}) "
            "VALUES (nextval('permissions_id_seq'), ?, ?, ?, ?, ?, ?, ?)",
            [
                permission.role_name,
                permission.table_name,
                permission.can_create,
                permission.can_read,
                permission.can_update,
                permission.can_delete,
                permission.can_query,
            ],
        )
        self.invalidate_permission_cache()
        logger.info(
            "Created permission",
            extra={
                "role": permission.role_name,
                "table": permission.table_name,
                "operations": [op.value for op in permission.operations()],
            },
        )
        return permission

    def update_permission(self, permission: Permission) -> None:
        """Replace the flags of the (role, table) permission row.

        Raises:
            NotFoundError: If no such row exists
        """
        updated = self._exec(
            "permissions",
            "update permission",
            """
            UPDATE permissions
            SET can_create = ?, can_read = ?, can_update = ?, can_delete = ?, can_query = ?
            WHERE role_name = ? AND table_name = ?
            """,
            [
                permission.can_create,
                permission.can_read,
                permission.can_update,
                permission.can_delete,
                permission.can_query,
                permission.role_name,
                permission.table_name,
            ],
        )
        if updated == 0:
            raise self._permission_not_found(permission.role_name, permission.table_name)
        self.invalidate_permission_cache()

    def delete_permission(self, role_name: str, table_name: str) -> None:
        deleted = self._exec(
            "permissions",
            "delete permission",
            "DELETE FROM permissions WHERE role_name = ? AND table_name = ?",
            [role_name, table_name],
        )
        if deleted == 0:
            raise self._permission_not_found(role_name, table_name)
        self.invalidate_permission_cache()

    @staticmethod
    def _permission_not_found(role_name: str, table_name: str) -> NotFoundError:
        return NotFoundError(
            f"permission not found for role '{role_name}' and table '{table_name}'",
            resource_type="permission",
            resource_id=f"{role_name}:{table_name}",
        )

    # Read helpers

    def get_permissions(self, role_name: str) -> list[Permission]:
        with self.manager.query_auth(
            f"SELECT {_PERMISSION_COLUMNS} FROM permissions WHERE role_name = ? ORDER BY table_name",
            [role_name],
        ) as rows:
            return [Permission.from_row(row) for row in rows]

    def list_roles(self) -> list[Role]:
        with self.manager.query_auth(
            "SELECT role_name, description FROM roles ORDER BY role_name"
        ) as rows:
            return [Role(name, description or "") for name, description in rows]

    def list_api_keys(self, role_name: str | None = None) -> list[ApiKey]:
        sql = "SELECT key, role_name, created_at, expires_at, is_active FROM api_keys"
        params: list[Any] = []
        if role_name is not None:
            sql += " WHERE role_name = ?"
            params.append(role_name)
        sql += " ORDER BY created_at DESC, key"
        with self.manager.query_auth(sql, params) as rows:
            return [ApiKey.from_row(row) for row in rows]
