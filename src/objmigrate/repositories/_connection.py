"""
Connection scoping for the PostgreSQL run, checkpoint and lock stores.

Each store is built over an AsyncEngine or an AsyncConnection. With an
engine, every store operation gets its own short-lived connection, so a
lock acquire or a checkpoint save commits on its own. With a connection,
the host decides when to commit and may group store writes with its own.
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
    Yield the connection one store operation runs on.

    Args:
        conn: Engine or caller-owned connection the store was built with.
        transactional: Engines only. Writes run inside ``begin()`` and
            commit on exit; lookups pass False and use ``connect()``.

    Example:
        >>> async with execute_with_connection(self.conn) as conn:
        ...     await conn.execute(query, {"run_id": run_id})
    """
    if isinstance(conn, AsyncEngine):
        if transactional:
            async with conn.begin() as connection:
                yield connection
        else:
            async with conn.connect() as connection:
                yield connection
    else:
        # Caller-owned: no commit here.
        yield conn
