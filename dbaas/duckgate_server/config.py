"""
Configuration management for DuckGate.

All configuration is done via environment variables - no config files inside containers.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - The credential (auth) database path has no default and must be set
    - Pool limits are derived from the thread count (max open = threads * 2)
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Keep environment variable names stable; deployments depend on them
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

IN_MEMORY = ":memory:"


class AccessMode(Enum):
    """Access modes accepted by the main database."""

    READ_WRITE = "read_write"
    READ_ONLY = "read_only"


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


def _env_number(name: str, default: str, cast: type = int):
    raw = os.getenv(name, default)
    try:
        return cast(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got '{raw}'", setting=name)


@dataclass(frozen=True)
class DatabaseConfig:
    """Connection topology configuration.

    Attributes:
        main_db_path: Path to the main DuckDB file ("" for in-memory)
        auth_db_path: Path to the credential store (always file-based, required)
        threads: DuckDB worker threads; also sizes both connection pools
        access_mode: Access mode for the main database
        memory_limit: DuckDB memory ceiling (e.g. "4GB"), engine default if empty
        enable_object_cache: Enable DuckDB's object cache
        temp_directory: Spill directory, engine default if empty
        query_timeout_seconds: Per-call timeout for every Exec/Query
        conn_max_lifetime_seconds: Pooled connections older than this are recycled
        warm_connections: Pre-establish pooled connections at startup
    """

    main_db_path: str = ""
    auth_db_path: str = ""
    threads: int = 4
    access_mode: AccessMode = AccessMode.READ_WRITE
    memory_limit: str | None = None
    enable_object_cache: bool = False
    temp_directory: str | None = None
    query_timeout_seconds: float = 10.0
    conn_max_lifetime_seconds: float = 3600.0
    warm_connections: bool = True

    @property
    def max_open_conns(self) -> int:
        return self.threads * 2

    @property
    def max_idle_conns(self) -> int:
        return self.threads

    @property
    def main_database(self) -> str:
        """DuckDB database argument for the main store."""
        return self.main_db_path or IN_MEMORY

    @classmethod
    def from_env(cls) -> DatabaseConfig:
        """Load configuration from environment variables."""
        mode_str = os.getenv("DUCKDB_ACCESS_MODE", "read_write").lower()
        try:
            access_mode = AccessMode(mode_str)
        except ValueError:
            raise ConfigurationError(
                f"Invalid DUCKDB_ACCESS_MODE '{mode_str}'. Must be one of: read_write, read_only",
                setting="DUCKDB_ACCESS_MODE",
            )

        return cls(
            main_db_path=os.getenv("DUCKDB_DATABASE_PATH", ""),
            auth_db_path=os.getenv("DUCKDB_AUTH_DATABASE_PATH", ""),
            threads=_env_number("DUCKDB_THREADS", "4"),
            access_mode=access_mode,
            memory_limit=os.getenv("DUCKDB_MEMORY_LIMIT") or None,
            enable_object_cache=_env_bool("DUCKDB_ENABLE_OBJECT_CACHE", "false"),
            temp_directory=os.getenv("DUCKDB_TEMP_DIRECTORY") or None,
            query_timeout_seconds=_env_number("DUCKDB_QUERY_TIMEOUT", "10", float),
            conn_max_lifetime_seconds=_env_number("DUCKDB_CONN_MAX_LIFETIME", "3600", float),
            warm_connections=_env_bool("DUCKDB_WARM_CONNECTIONS", "true"),
        )

    @property
    def read_only(self) -> bool:
        return self.access_mode == AccessMode.READ_ONLY

    def engine_settings(self) -> dict[str, str | int | bool]:
        """DuckDB settings for the main database (access mode is passed separately)."""
        settings: dict[str, str | int | bool] = {"threads": self.threads}
        if self.memory_limit:
            settings["memory_limit"] = self.memory_limit
        if self.enable_object_cache:
            settings["enable_object_cache"] = True
        if self.temp_directory:
            settings["temp_directory"] = self.temp_directory
        return settings

    def auth_engine_settings(self) -> dict[str, str | int | bool]:
        """DuckDB settings for the credential store."""
        return {"threads": self.threads}


@dataclass(frozen=True)
class CacheConfig:
    """Cache sizing and safety-window configuration.

    Attributes:
        auth_cache_ttl_seconds: Expiry for API key and permission cache entries
        permission_cache_size: Capacity of the permission-decision cache
        api_key_cache_size: Capacity of the API key cache
        schema_cache_ttl_seconds: Expiry for table schema and statement entries
        statement_cache_size: Capacity of the prepared statement cache
    """

    auth_cache_ttl_seconds: float = 300.0  # 5 minutes
    # ~10 roles * ~20 tables * 5 operations
    permission_cache_size: int = 1000
    api_key_cache_size: int = 500
    schema_cache_ttl_seconds: float = 3600.0
    statement_cache_size: int = 4096

    @classmethod
    def from_env(cls) -> CacheConfig:
        """Load configuration from environment variables."""
        return cls(
            auth_cache_ttl_seconds=_env_number("AUTH_CACHE_TTL", "300", float),
            permission_cache_size=_env_number("AUTH_PERMISSION_CACHE_SIZE", "1000"),
            api_key_cache_size=_env_number("AUTH_API_KEY_CACHE_SIZE", "500"),
            schema_cache_ttl_seconds=_env_number("SCHEMA_CACHE_TTL", "3600", float),
            statement_cache_size=_env_number("STATEMENT_CACHE_SIZE", "4096"),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class GatewayConfig:
    """Complete gateway configuration.

    Attributes:
        database: Connection topology configuration
        cache: Cache configuration
        observability: Logging configuration
    """

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> GatewayConfig:
        """Load complete configuration from environment variables.

        Returns:
            GatewayConfig with all sections populated from environment.

        Raises:
            ConfigurationError: If required configuration is missing or invalid.
        """
        config = cls(
            database=DatabaseConfig.from_env(),
            cache=CacheConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ConfigurationError: If configuration is invalid.
        """
        db = self.database
        if not db.auth_db_path:
            raise ConfigurationError(
                "DUCKDB_AUTH_DATABASE_PATH is required", setting="auth_db_path"
            )
        if db.auth_db_path == IN_MEMORY:
            raise ConfigurationError(
                "The auth database must be file-based", setting="auth_db_path"
            )
        if db.threads <= 0:
            raise ConfigurationError("threads must be greater than 0", setting="threads")
        if db.query_timeout_seconds <= 0:
            raise ConfigurationError(
                "query timeout must be greater than 0", setting="query_timeout_seconds"
            )
        if db.access_mode == AccessMode.READ_ONLY and db.main_database == IN_MEMORY:
            raise ConfigurationError(
                "read_only access requires a file-based main database", setting="access_mode"
            )

        cache = self.cache
        if cache.auth_cache_ttl_seconds <= 0 or cache.schema_cache_ttl_seconds <= 0:
            raise ConfigurationError("cache TTLs must be greater than 0", setting="cache")
        if cache.permission_cache_size <= 0 or cache.api_key_cache_size <= 0:
            raise ConfigurationError("cache sizes must be greater than 0", setting="cache")

        if self.observability.log_format not in ("json", "text"):
            raise ConfigurationError(
                f"Invalid LOG_FORMAT '{self.observability.log_format}'. Must be one of: json, text",
                setting="log_format",
            )

        if db.main_db_path and not os.path.exists(db.main_db_path):
            logger.warning(
                f"Main database does not exist: {db.main_db_path}. "
                "It will be created on first open."
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        db = self.database
        logger.info(
            "Gateway configuration loaded",
            extra={
                "main_db": db.main_database,
                "auth_db": db.auth_db_path,
                "threads": db.threads,
                "access_mode": db.access_mode.value,
                "memory_limit": db.memory_limit,
                "enable_object_cache": db.enable_object_cache,
                "temp_directory": db.temp_directory,
                "query_timeout_seconds": db.query_timeout_seconds,
                "max_open_conns": db.max_open_conns,
                "max_idle_conns": db.max_idle_conns,
                "auth_cache_ttl_seconds": self.cache.auth_cache_ttl_seconds,
                "log_level": self.observability.log_level,
            },
        )
