"""Async SQLite connection for the persistence gateway."""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import aiosqlite

from lumina.db.schema import SCHEMA_SQL


class Database:
    """aiosqlite connection with WAL, enforced foreign keys and grouped writes.

    Single statements commit immediately. Inside ``transaction()`` they are
    held until the block exits and rolled back together if it raises.
    The connection is shared, so a transaction holds it exclusively: other
    tasks' statements wait until it commits or rolls back.
    """

    def __init__(self, connection: aiosqlite.Connection) -> None:
        self._conn = connection
        self._lock = asyncio.Lock()
        self._owner: asyncio.Task | None = None

    @classmethod
    async def connect(cls, path: str = "lumina.db") -> "Database":
        conn = await aiosqlite.connect(path)
        conn.row_factory = aiosqlite.Row
        await conn.execute("PRAGMA journal_mode=WAL")
        await conn.execute("PRAGMA foreign_keys=ON")
        await conn.execute("PRAGMA busy_timeout=5000")
        await conn.executescript(SCHEMA_SQL)
        await conn.commit()
        return cls(conn)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["Database"]:
        # Nested blocks in the owning task join the outer transaction.
        if self._owns_transaction():
            yield self
            return
        async with self._lock:
            self._owner = asyncio.current_task()
            try:
                yield self
            except BaseException:
                await self._conn.rollback()
                raise
            else:
                await self._conn.commit()
            finally:
                self._owner = None

    async def execute(self, sql: str, params: tuple | None = None) -> int:
        """Execute one statement and return the affected row count."""
        if self._owns_transaction():
            cursor = await self._conn.execute(sql, params or ())
            return cursor.rowcount
        async with self._lock:
            cursor = await self._conn.execute(sql, params or ())
            await self._conn.commit()
            return cursor.rowcount

    async def fetchone(self, sql: str, params: tuple | None = None) -> aiosqlite.Row | None:
        if self._owns_transaction():
            cursor = await self._conn.execute(sql, params or ())
            return await cursor.fetchone()
        async with self._lock:
            cursor = await self._conn.execute(sql, params or ())
            return await cursor.fetchone()

    async def fetchall(self, sql: str, params: tuple | None = None) -> list[aiosqlite.Row]:
        if self._owns_transaction():
            cursor = await self._conn.execute(sql, params or ())
            return list(await cursor.fetchall())
        async with self._lock:
            cursor = await self._conn.execute(sql, params or ())
            return list(await cursor.fetchall())

    async def close(self) -> None:
        await self._conn.close()

    def _owns_transaction(self) -> bool:
        return self._owner is not None and self._owner is asyncio.current_task()
