"""
DuckGate Test Suite.

This package contains:
- unit/: Unit tests (no database engine)
- integration/: Integration tests (real DuckDB files in temp directories)
"""
