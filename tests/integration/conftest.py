"""
Integration test fixtures for DuckGate.

Each test gets its own temporary directory holding a fresh credential
store; the main database is in-memory unless a test asks otherwise.
"""

import tempfile
from pathlib import Path

import pytest

from dbaas.duckgate_server.config import DatabaseConfig
from dbaas.duckgate_server.database import Manager

USERS_DDL = """
    CREATE TABLE users (
        id INTEGER,
        name VARCHAR,
        email VARCHAR,
        age INTEGER,
        status VARCHAR
    )
"""

SEED_USERS = [
    {"id": 1, "name": "Ann", "email": "ann@example.com", "age": 34, "status": "active"},
    {"id": 2, "name": "Bob", "email": "bob@example.com", "age": 17, "status": "pending"},
    {"id": 3, "name": "Cid", "email": None, "age": 52, "status": "inactive"},
    {"id": 4, "name": "Dee", "email": "dee@example.org", "age": 29, "status": "active"},
]


@pytest.fixture
def data_dir():
    """Create temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def db_config(data_dir):
    """Small pools and a short timeout so tests stay fast."""
    return DatabaseConfig(
        auth_db_path=str(data_dir / "auth.duckdb"),
        threads=2,
        query_timeout_seconds=5.0,
        warm_connections=False,
    )


@pytest.fixture
def manager(db_config):
    """Open a manager with the default credential schema seeded."""
    mgr = Manager.open_for_testing(db_config)
    yield mgr
    mgr.close()


@pytest.fixture
def users(manager):
    """Create and seed the users table; returns the manager."""
    manager.exec_main(USERS_DDL)
    for row in SEED_USERS:
        manager.insert("users", row)
    return manager
