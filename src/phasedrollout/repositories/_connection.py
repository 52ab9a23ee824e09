"""
Connection handling helper for database-backed repositories.

Repositories accept either an AsyncEngine or an AsyncConnection;
``execute_with_connection`` gives them one code path for both.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine


@asynccontextmanager
async def execute_with_connection(
    conn: AsyncConnection | AsyncEngine,
    transactional: bool = True,
) -> AsyncIterator[AsyncConnection]:
    """
    Yield a connection ready for ``execute()``.

    Args:
        conn: Database connection or engine
        transactional: Wrap the block in a transaction (``begin``) rather
            than a bare ``connect``. Only applies to engines; a passed-in
            connection is yielded as-is and the caller owns its transaction.

    Yields:
        AsyncConnection

    Example:
        >>> async with execute_with_connection(self._conn) as conn:
        ...     await conn.execute(query, params)
    """
    if isinstance(conn, AsyncEngine):
        if transactional:
            async with conn.begin() as connection:
                yield connection
        else:
            async with conn.connect() as connection:
                yield connection
    else:
        yield conn
