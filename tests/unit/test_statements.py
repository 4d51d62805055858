"""
Unit tests for the schema and statement caches.

Tests cover:
- Canonical statement keys
- Identity of cached statements under column reordering
- Full-column INSERT statements and NULL binding
- Per-table invalidation ("t" vs "t2")
- Closed statements refuse to bind
"""

import pytest

from dbaas.duckgate_server.database.statements import (
    SchemaCache,
    StatementCache,
    StatementClosedError,
    StatementKind,
    statement_key,
)
from dbaas.duckgate_server.errors import NotFoundError, ValidationError

TABLES = {
    "t": ["id", "name", "email"],
    "t2": ["id", "value"],
}


class FakeIntrospector:
    """Returns canned column lists and counts lookups."""

    def __init__(self, tables):
        self.tables = tables
        self.calls = []

    def __call__(self, table):
        self.calls.append(table)
        return list(self.tables.get(table, []))


class TestStatementKey:
    """Tests for key canonicalization."""

    def test_column_order_irrelevant(self):
        """Column order does not change the key."""
        a = statement_key("t", StatementKind.UPDATE, ["name", "email"], ["id"])
        b = statement_key("t", StatementKind.UPDATE, ["email", "name"], ["id"])
        assert a == b == "t|update|email,name|where=id"

    def test_insert_has_no_where(self):
        """INSERT keys carry no WHERE component."""
        assert statement_key("t", StatementKind.INSERT, ["b", "a"]) == "t|insert|a,b"

    def test_delete_key(self):
        """DELETE keys have empty SET columns."""
        assert statement_key("t", StatementKind.DELETE, (), ["name", "id"]) == "t|delete||where=id,name"


class TestSchemaCache:
    """Tests for SchemaCache."""

    @pytest.fixture
    def introspect(self):
        return FakeIntrospector(TABLES)

    @pytest.fixture
    def schemas(self, introspect):
        return SchemaCache(introspect)

    def test_columns_cached(self, schemas, introspect):
        """Columns are introspected once, then served from cache."""
        assert schemas.get_columns("t") == ("id", "name", "email")
        assert schemas.get_columns("t") == ("id", "name", "email")
        assert introspect.calls == ["t"]
        assert "t" in schemas

    def test_unknown_table(self, schemas):
        """A table without columns is NotFound and not cached."""
        with pytest.raises(NotFoundError) as exc_info:
            schemas.get_columns("missing")
        assert exc_info.value.resource_id == "missing"
        assert "missing" not in schemas

    def test_invalidate(self, schemas, introspect):
        """Invalidation forces a fresh introspection."""
        schemas.get_columns("t")
        assert schemas.invalidate("t")
        assert not schemas.invalidate("t")
        schemas.get_columns("t")
        assert introspect.calls == ["t", "t"]


class TestStatementCache:
    """Tests for StatementCache."""

    @pytest.fixture
    def statements(self):
        return StatementCache(SchemaCache(FakeIntrospector(TABLES)))

    def test_same_shape_same_instance(self, statements):
        """Reordered column sets reuse one statement."""
        a = statements.get_or_prepare("t", StatementKind.UPDATE, ["name", "email"], ["id"])
        b = statements.get_or_prepare("t", StatementKind.UPDATE, {"email": 1, "name": 2}, {"id": 3})
        assert a is b
        assert len(statements) == 1

    def test_update_sql_and_binding(self, statements):
        """SET parameters precede WHERE parameters, each sorted."""
        stmt = statements.get_or_prepare("t", StatementKind.UPDATE, ["name", "email"], ["id"])
        assert stmt.sql == "UPDATE t SET email = ?, name = ? WHERE id = ?"
        params = stmt.bind({"name": "Ann", "email": "a@x"}, {"id": 7})
        assert params == ["a@x", "Ann", 7]

    def test_insert_covers_all_columns(self, statements):
        """One INSERT per table regardless of supplied fields."""
        a = statements.get_or_prepare("t", StatementKind.INSERT, ["name"])
        b = statements.get_or_prepare("t", StatementKind.INSERT, ["email", "id"])
        assert a is b
        assert a.sql == "INSERT INTO t (email, id, name) VALUES (?, ?, ?)"

    def test_insert_binds_missing_as_null(self, statements):
        """Unsupplied columns bind as None."""
        stmt = statements.get_or_prepare("t", StatementKind.INSERT)
        assert stmt.bind({"id": 1, "name": "Ann"}) == [None, 1, "Ann"]

    def test_delete_sql(self, statements):
        """DELETE binds WHERE values in canonical order."""
        stmt = statements.get_or_prepare("t", StatementKind.DELETE, where_columns=["name", "id"])
        assert stmt.sql == "DELETE FROM t WHERE id = ? AND name = ?"
        assert stmt.bind(where={"name": "Ann", "id": 1}) == [1, "Ann"]

    def test_missing_where_rejected(self, statements):
        """DELETE and UPDATE need WHERE columns."""
        with pytest.raises(ValidationError):
            statements.get_or_prepare("t", StatementKind.DELETE)
        with pytest.raises(ValidationError):
            statements.get_or_prepare("t", StatementKind.UPDATE, ["name"])

    def test_missing_set_rejected(self, statements):
        """UPDATE needs SET columns."""
        with pytest.raises(ValidationError):
            statements.get_or_prepare("t", StatementKind.UPDATE, [], ["id"])

    def test_invalidate_is_table_scoped(self, statements):
        """Invalidating "t" leaves "t2" statements untouched."""
        t_insert = statements.get_or_prepare("t", StatementKind.INSERT)
        t_delete = statements.get_or_prepare("t", StatementKind.DELETE, where_columns=["id"])
        t2_insert = statements.get_or_prepare("t2", StatementKind.INSERT)

        assert statements.invalidate("t") == 2
        assert t_insert.closed and t_delete.closed
        assert not t2_insert.closed
        assert t2_insert.key in statements
        assert t_insert.key not in statements

        assert statements.get_or_prepare("t", StatementKind.INSERT) is not t_insert

    def test_closed_statement_refuses_bind(self, statements):
        """A statement evicted by invalidation cannot be bound again."""
        stmt = statements.get_or_prepare("t", StatementKind.DELETE, where_columns=["id"])
        statements.invalidate("t")
        with pytest.raises(StatementClosedError) as exc_info:
            stmt.bind(where={"id": 1})
        assert exc_info.value.key == "t|delete||where=id"

        fresh = statements.get_or_prepare("t", StatementKind.DELETE, where_columns=["id"])
        assert fresh.bind(where={"id": 1}) == [1]


class TestSchemaInvalidationRace:
    """Schema loads that overlap an invalidation."""

    def test_load_overlapping_invalidate_not_cached(self):
        """A column list read before DDL is not kept after invalidation."""
        tables = {"t": ["id"]}
        schemas = None

        def introspect(table):
            columns = list(tables[table])
            tables["t"] = ["id", "note"]
            schemas.invalidate("t")
            return columns

        schemas = SchemaCache(introspect)
        assert schemas.get_columns("t") == ("id",)
        assert "t" not in schemas
