"""
DuckGate Server - concurrency-safe data access and authorization over DuckDB.

This package implements the data plane behind a REST-style gateway:
- An embedded DuckDB main database, pooled for concurrent worker threads
- A separate DuckDB credential store (roles, API keys, permissions)
- Transactional CRUD with retry on optimistic-concurrency conflicts
- Filter/sort translation to parameterized SQL over allow-listed identifiers
- Cached API key authentication and per-table role permissions

Architecture:
    ┌─────────────┐     ┌─────────────┐     ┌─────────────────┐
    │   Worker    │────▶│ Authorizer  │────▶│  auth pool      │
    │  (thread)   │     │  (caches)   │     │ (credential db) │
    └──────┬──────┘     └─────────────┘     └─────────────────┘
           │
           ▼
    ┌─────────────┐     ┌─────────────┐     ┌─────────────────┐
    │   Manager   │────▶│ statement / │     │   main pool     │
    │   (CRUD)    │     │schema cache │────▶│  (main db)      │
    └─────────────┘     └─────────────┘     └─────────────────┘

Invariants:
    - Caller-supplied values never reach SQL text; identifiers are allow-listed
    - Each mutation is atomic and retried only on write-write conflicts
    - Permission checks default to deny
    - Configuration comes from environment variables only

Version: see _version.py.
"""

from ._version import __version__

__all__ = ["__version__"]
