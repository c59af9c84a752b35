# eventsync/db/helpers.py
"""
Database helper functions for common patterns.
Reduces boilerplate in the store and queue layers.

Every helper runs on the given connection when one is passed (the caller's
transaction), otherwise on a connection borrowed from the pool.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import psycopg
from psycopg import errors as pg_errors

from eventsync.db.pool import DatabasePoolManager
from eventsync.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

# concurrent writers collided; the whole transaction may be retried
_CONFLICT_ERRORS = (
    pg_errors.SerializationFailure,
    pg_errors.DeadlockDetected,
    pg_errors.UniqueViolation,
)


class DatabaseError(Exception):
    """Custom exception for database operations."""

    def __init__(
        self,
        message: str,
        operation: str = "unknown",
        recoverable: bool = True,
        conflict: bool = False,
    ):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable
        self.conflict = conflict


def _wrap(e: psycopg.Error, operation: str, query: str) -> DatabaseError:
    logger.error(f"Database {operation} error", query=query[:100], error=str(e))
    return DatabaseError(
        f"Query failed: {e}",
        operation=operation,
        recoverable=not isinstance(e, pg_errors.ProgrammingError),
        conflict=isinstance(e, _CONFLICT_ERRORS),
    )


@asynccontextmanager
async def _borrow(
    connection: psycopg.AsyncConnection | None, pool: DatabasePoolManager | None
) -> AsyncGenerator[psycopg.AsyncConnection, None]:
    if connection is not None:
        yield connection
        return
    if pool is None:
        raise DatabaseError("No connection or pool given", recoverable=False)
    async with pool.connection() as conn:
        yield conn


async def fetch_one(
    query: str,
    params: tuple = (),
    *,
    connection: psycopg.AsyncConnection | None = None,
    pool: DatabasePoolManager | None = None,
) -> dict[str, Any] | None:
    """
    Execute query and return single row as dict.

    Args:
        query: SQL query with %s placeholders
        params: Query parameters
        connection: Optional existing connection (e.g. inside a transaction)
        pool: Pool to borrow from when no connection is given

    Returns:
        Dict with row data or None if no results
    """
    try:
        async with _borrow(connection, pool) as conn:
            async with conn.cursor() as cur:
                await cur.execute(query, params)
                return await cur.fetchone()
    except psycopg.Error as e:
        raise _wrap(e, "fetch_one", query) from e


async def fetch_all(
    query: str,
    params: tuple = (),
    *,
    connection: psycopg.AsyncConnection | None = None,
    pool: DatabasePoolManager | None = None,
) -> list[dict[str, Any]]:
    """Execute query and return all rows as list of dicts."""
    try:
        async with _borrow(connection, pool) as conn:
            async with conn.cursor() as cur:
                await cur.execute(query, params)
                return await cur.fetchall()
    except psycopg.Error as e:
        raise _wrap(e, "fetch_all", query) from e


async def execute_query(
    query: str,
    params: tuple = (),
    *,
    connection: psycopg.AsyncConnection | None = None,
    pool: DatabasePoolManager | None = None,
) -> int:
    """Execute query and return number of affected rows."""
    try:
        async with _borrow(connection, pool) as conn:
            cursor = await conn.execute(query, params)
            return cursor.rowcount
    except psycopg.Error as e:
        raise _wrap(e, "execute", query) from e
