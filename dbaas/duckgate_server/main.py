"""
DuckGate Server - Main entry point.

This module wires the gateway components together:
- Main database pool (data reads and mutations)
- Credential store pool (authentication and authorization)
- Authorizer with its key and permission caches

The HTTP layer embeds a Gateway and hands its manager and authorizer to
request workers. ``duckgate-check`` starts a gateway once to verify a
deployment: configuration, both databases, the credential store schema
and connection warming.

Usage:
    duckgate-check
    python -m dbaas.duckgate_server.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - The gateway never serves before the credential store is validated
    - stop() closes both pools and is safe to call twice

How to change safely:
    - Add new components to start()/stop() in dependency order
    - Keep startup failures non-zero for orchestration health checks
"""

from __future__ import annotations

import logging
import sys
from typing import Any

import duckdb
import json_log_formatter

from .auth import Authorizer
from .config import GatewayConfig
from .database import Manager, PoolStats
from .errors import ConfigurationError, DuckGateError

logger = logging.getLogger(__name__)


def setup_logging(config: GatewayConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Gateway configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("fsspec").setLevel(logging.WARNING)
    logging.getLogger("concurrent.futures").setLevel(logging.WARNING)


class Gateway:
    """DuckGate orchestrator.

    Manages the lifecycle of the data plane components:
    - Database manager (main + auth pools, statement caches)
    - Authorizer

    Attributes:
        config: Gateway configuration
        manager: Database manager (set by start())
        authorizer: Authorizer (set by start())

    Example:
        >>> with Gateway() as gateway:
        ...     key = gateway.authorizer.authorize(request_key, "orders", "read")
        ...     with gateway.manager.select("orders") as rows:
        ...         rows.fetchall()
    """

    def __init__(self, config: GatewayConfig | None = None) -> None:
        """Initialize the gateway.

        Args:
            config: Optional gateway configuration (loaded from env if not provided)
        """
        self.config = config or GatewayConfig.from_env()
        self.manager: Manager | None = None
        self.authorizer: Authorizer | None = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Open the databases, validate the credential store and warm pools."""
        if self._running:
            logger.warning("Gateway already running")
            return

        logger.info("Starting DuckGate")
        self.config.log_config()

        self.manager = Manager.open(self.config.database, self.config.cache)
        cache = self.config.cache
        self.authorizer = Authorizer(
            self.manager,
            cache_ttl_seconds=cache.auth_cache_ttl_seconds,
            permission_cache_size=cache.permission_cache_size,
            api_key_cache_size=cache.api_key_cache_size,
        )

        self._running = True
        logger.info("DuckGate started successfully")

    def pool_stats(self) -> list[PoolStats]:
        """Pool counters, empty when the gateway is not running."""
        if self.manager is None:
            return []
        return self.manager.pool_stats()

    def stop(self) -> None:
        """Close both pools."""
        if self.manager is None:
            return

        logger.info("Stopping DuckGate")
        try:
            self.manager.close()
        finally:
            self.manager = None
            self.authorizer = None
            self._running = False
        logger.info("DuckGate stopped")

    def __enter__(self) -> Gateway:
        self.start()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.stop()


def main() -> None:
    """Main entry point: start once, report pool state, exit."""
    try:
        config = GatewayConfig.from_env()
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)

    gateway = Gateway(config)
    try:
        gateway.start()
        for stats in gateway.pool_stats():
            logger.info(
                "Connection pool ready",
                extra={
                    "pool": stats.name,
                    "open": stats.open,
                    "idle": stats.idle,
                    "max_open": stats.max_open,
                    "max_idle": stats.max_idle,
                },
            )
    except (DuckGateError, duckdb.Error) as e:
        logger.error(f"Gateway startup failed: {e}", exc_info=True)
        sys.exit(1)
    finally:
        gateway.stop()


if __name__ == "__main__":
    main()
