"""
Query helpers shared by the repositories.

Driver errors surface as DatabaseError, flagged recoverable when the failure
looks transient (dropped connection, pool timeout), so ``with_db_retry`` can
tell what is worth another attempt. Integrity errors pass through untouched:
a constraint conflict is an answer, not an outage.
"""

import asyncio
import functools
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import psycopg

from app.db.pool import get_db_connection
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class DatabaseError(Exception):
    """Custom exception for database operations."""

    def __init__(self, message: str, operation: str = "unknown", recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


def _is_transient(error: psycopg.Error) -> bool:
    return isinstance(error, psycopg.OperationalError)


@asynccontextmanager
async def _borrowed(
    connection: psycopg.AsyncConnection | None,
) -> AsyncIterator[psycopg.AsyncConnection]:
    if connection is not None:
        yield connection
        return
    async with await get_db_connection() as conn:
        yield conn


async def _run(
    operation: str,
    query: str,
    params: tuple,
    connection: psycopg.AsyncConnection | None,
    fetch: str | None,
) -> Any:
    try:
        async with _borrowed(connection) as conn:
            cursor = await conn.execute(query, params)
            if fetch == "one":
                return await cursor.fetchone()
            if fetch == "all":
                return await cursor.fetchall()
            return cursor.rowcount

    except psycopg.IntegrityError:
        raise
    except psycopg.Error as e:
        logger.error(
            "Database query failed",
            operation=operation,
            query=query.strip()[:100],
            error=str(e),
            error_type=type(e).__name__,
        )
        raise DatabaseError(
            f"Query failed: {e}", operation=operation, recoverable=_is_transient(e)
        ) from e


async def fetch_one(
    query: str, params: tuple = (), *, connection: psycopg.AsyncConnection | None = None
) -> dict[str, Any] | None:
    """
    Execute query and return single row as dict.

    Args:
        query: SQL query with %s placeholders
        params: Query parameters
        connection: Optional existing connection

    Returns:
        Dict with row data or None if no results
    """
    return await _run("fetch_one", query, params, connection, fetch="one")


async def fetch_all(
    query: str, params: tuple = (), *, connection: psycopg.AsyncConnection | None = None
) -> list[dict[str, Any]]:
    """Execute query and return all rows as list of dicts."""
    return await _run("fetch_all", query, params, connection, fetch="all")


async def execute_query(
    query: str, params: tuple = (), *, connection: psycopg.AsyncConnection | None = None
) -> int:
    """Execute a write and return the number of affected rows."""
    return await _run("execute", query, params, connection, fetch=None)


def with_db_retry(max_retries: int = 3, base_delay: float = 0.1):
    """
    Retry a coroutine on recoverable DatabaseErrors with exponential backoff.

    After the last attempt the error is re-raised as non-recoverable so
    outer retry layers do not multiply the attempts.
    """

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            attempt = 0
            while True:
                try:
                    return await func(*args, **kwargs)
                except DatabaseError as e:
                    if not e.recoverable:
                        raise
                    if attempt >= max_retries:
                        logger.error(
                            "Database operation failed after all retries",
                            operation=func.__name__,
                            attempts=attempt + 1,
                            error=str(e),
                        )
                        raise DatabaseError(
                            f"Operation failed after {max_retries} retries: {e}",
                            operation=func.__name__,
                            recoverable=False,
                        ) from e

                    delay = base_delay * (2**attempt)
                    attempt += 1
                    logger.warning(
                        "Database operation failed, retrying",
                        operation=func.__name__,
                        attempt=attempt,
                        max_retries=max_retries,
                        delay=delay,
                        error=str(e),
                    )
                    await asyncio.sleep(delay)

        return wrapper

    return decorator
