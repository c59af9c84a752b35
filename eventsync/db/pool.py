# eventsync/db/pool.py
"""
PostgreSQL connection pool backing the entity store and the task queue.

One manager is created per AppContext with the postgres storage backend;
there is no module-level pool.
"""

import asyncio
import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import psycopg
from psycopg import sql
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from eventsync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

CLOSE_TIMEOUT_SECONDS = 30.0
# readiness fails above this utilization or round trip
MAX_HEALTHY_UTILIZATION = 90
MAX_HEALTHY_ROUND_TRIP_MS = 100


class DatabasePoolManager:
    """Opens, configures, health-checks and closes one AsyncConnectionPool."""

    def __init__(
        self,
        conninfo: str,
        pool_config: dict[str, Any] | None = None,
        application_name: str = "eventsync",
    ):
        self.conninfo = conninfo
        self.pool_config = dict(pool_config or {"min_size": 1, "max_size": 4, "timeout": 15.0})
        self.application_name = application_name
        self.pool: AsyncConnectionPool | None = None
        self._closed = False

    @property
    def is_initialized(self) -> bool:
        return self.pool is not None and not self._closed

    async def initialize(self) -> None:
        """Open the pool and verify one round trip before serving."""
        if self.pool is not None:
            logger.warning("Database pool already initialized")
            return
        if self._closed:
            raise RuntimeError("Cannot reinitialize closed pool")

        logger.info("Initializing database connection pool", **self.pool_config)
        pool = AsyncConnectionPool(
            conninfo=self.conninfo,
            open=False,
            check=AsyncConnectionPool.check_connection,
            configure=self._configure_connection,
            **self.pool_config,
        )
        try:
            await pool.open()
            await pool.wait()
            self.pool = pool
            await self._round_trip()
        except Exception as e:
            logger.error("Failed to initialize database pool", error=str(e))
            self.pool = None
            await pool.close()
            raise RuntimeError(f"Database pool initialization failed: {e}") from e

        logger.info("Database pool initialized successfully")

    async def _configure_connection(self, conn: psycopg.AsyncConnection) -> None:
        conn.row_factory = dict_row
        # explicit transaction() blocks only; single statements autocommit
        await conn.set_autocommit(True)
        await conn.execute(
            sql.SQL("SET application_name = {}").format(sql.Literal(self.application_name))
        )
        await conn.execute("SET timezone = 'UTC'")
        await conn.execute("SET statement_timeout = '60s'")

    async def _round_trip(self) -> float:
        """Run SELECT 1 and return the elapsed milliseconds."""
        start = time.time()
        async with self.connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute("SELECT 1 AS ok")
                row = await cur.fetchone()
        if not row or row["ok"] != 1:
            raise RuntimeError("Database connection test returned an unexpected result")
        return (time.time() - start) * 1000

    async def close(self) -> None:
        """Close the pool; safe to call more than once."""
        if self.pool is None or self._closed:
            return

        logger.info("Closing database connection pool")
        self._closed = True
        try:
            await asyncio.wait_for(self.pool.close(), timeout=CLOSE_TIMEOUT_SECONDS)
        except TimeoutError:
            logger.warning("Database pool close timed out, forcing shutdown")
            return
        logger.info("Database pool closed successfully")

    @asynccontextmanager
    async def connection(self) -> AsyncGenerator[psycopg.AsyncConnection, None]:
        """Borrow an autocommit connection."""
        if not self.is_initialized:
            raise RuntimeError("Database pool not initialized. Call initialize() first.")
        async with self.pool.connection() as conn:
            yield conn

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[psycopg.AsyncConnection, None]:
        """Borrow a connection inside a transaction: commit on exit, rollback on error."""
        async with self.connection() as conn:
            async with conn.transaction():
                yield conn

    async def health_check(self) -> dict[str, Any]:
        """Pool utilization plus a timed SELECT 1, as reported by /readyz."""
        if not self.is_initialized:
            return {"healthy": False, "error": "Pool not initialized"}

        try:
            round_trip_ms = await self._round_trip()
        except (psycopg.Error, RuntimeError) as e:
            logger.error("Database pool health check failed", error=str(e))
            return {"healthy": False, "error": str(e), "error_type": type(e).__name__}

        stats = self.pool.get_stats()
        size = stats.get("pool_size", 0)
        available = stats.get("pool_available", 0)
        waiting = stats.get("requests_waiting", 0)
        utilization = (size - available) / size * 100 if size > 0 else 0

        health = {
            "healthy": utilization < MAX_HEALTHY_UTILIZATION
            and round_trip_ms < MAX_HEALTHY_ROUND_TRIP_MS,
            "connection_time_ms": round(round_trip_ms, 2),
            "pool_stats": {
                "pool_size": size,
                "pool_available": available,
                "pool_utilization_percent": round(utilization, 2),
                "requests_waiting": waiting,
            },
        }
        if waiting > 0:
            health["warnings"] = [f"Requests waiting for connections: {waiting}"]
        return health
