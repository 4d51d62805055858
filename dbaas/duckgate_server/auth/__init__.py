"""
Auth module for DuckGate - API keys and role-based table permissions.

This module handles:
- API key authentication against the credential store
- Permission resolution per (role, table, operation), '*' as fallback
- Expiring caches for keys and permissions, with explicit invalidation
- Credential store administration (roles, keys, permissions)

Invariants:
    - Authentication and authorization never run raw SQL from callers
    - Denial is the default when no permission row matches
    - Mutations invalidate the affected caches before returning

How to change safely:
    - Keep the permission query's exact-over-wildcard ordering
    - Test revocation and permission changes against warm caches
"""

from .authorizer import Authorizer, generate_api_key
from .models import ApiKey, Operation, Permission, Role, WILDCARD_TABLE

__all__ = [
    "Authorizer",
    "generate_api_key",
    "ApiKey",
    "Operation",
    "Permission",
    "Role",
    "WILDCARD_TABLE",
]
