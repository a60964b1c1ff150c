import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from contextvars import ContextVar
from importlib.resources import files

import aiosqlite

_SCHEMA = files("gateway_webhooks").joinpath("schema.sql").read_text()


class Database:
    """The service's single aiosqlite connection.

    Writes go through ``transaction()``. Transactions are serialized by a lock
    because every task shares the connection, and a ``transaction()`` opened
    while the current task already holds one joins it, so only the outermost
    block commits or rolls back.
    """

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self.conn = conn
        self._lock = asyncio.Lock()
        self._active: ContextVar[bool] = ContextVar(f"transaction_{id(self)}", default=False)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        if self._active.get():
            yield self.conn
            return
        async with self._lock:
            token = self._active.set(True)
            try:
                yield self.conn
            except BaseException:
                await self.conn.rollback()
                raise
            else:
                await self.conn.commit()
            finally:
                self._active.reset(token)

    async def close(self) -> None:
        await self.conn.close()


async def open_db(db_path: str) -> Database:
    conn = await aiosqlite.connect(db_path)
    await conn.execute("PRAGMA journal_mode=WAL")
    await conn.execute("PRAGMA busy_timeout=5000")
    await conn.execute("PRAGMA foreign_keys=ON")
    await conn.executescript(_SCHEMA)
    return Database(conn)
