"""
Database module for DuckGate.

This module provides the data plane over embedded DuckDB:
- Connection topology (main database + credential store, each pooled)
- Connection warming at startup
- Per-call query timeouts and live row cursors
- Table schema and prepared statement caches
- Filter/sort translation to parameterized SQL
- Transactional CRUD with bounded retry on write conflicts

Invariants:
    - Only allow-listed identifiers are ever interpolated into SQL text
    - Every value reaches the engine as a bound parameter
    - Each mutation is atomic; conflicts are retried, other errors are not

How to change safely:
    - Route new SQL construction through filters.py helpers
    - Route new mutations through CrudOperations._mutate
    - Invalidate schema caches after DDL
"""

from .cursor import RowCursor
from .filters import (
    Filter,
    FilterOperator,
    Sort,
    SortDirection,
    build_order_by,
    build_where,
    parse_filters,
    parse_sorts,
    validate_identifier,
)
from .manager import Manager
from .pool import ConnectionPool, PoolClosedError, PoolStats
from .retry import is_transaction_conflict, retry_on_conflict
from .statements import (
    PreparedStatement,
    SchemaCache,
    StatementCache,
    StatementClosedError,
    StatementKind,
)
from .warmer import warm_pool

__all__ = [
    # Topology
    "Manager",
    "ConnectionPool",
    "PoolClosedError",
    "PoolStats",
    "RowCursor",
    "warm_pool",
    # Filters
    "Filter",
    "FilterOperator",
    "Sort",
    "SortDirection",
    "build_where",
    "build_order_by",
    "parse_filters",
    "parse_sorts",
    "validate_identifier",
    # Statements
    "PreparedStatement",
    "SchemaCache",
    "StatementCache",
    "StatementClosedError",
    "StatementKind",
    # Retry
    "is_transaction_conflict",
    "retry_on_conflict",
]
