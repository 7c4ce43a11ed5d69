"""Shared aiosqlite connection for the repository, scheduler and API."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

import aiosqlite

logger = logging.getLogger(__name__)

# Applied on every new connection. WAL lets the status CLI read while the
# service writes; busy_timeout covers that reader briefly holding a lock.
PRAGMAS: tuple[str, ...] = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA foreign_keys=ON",
    "PRAGMA busy_timeout=5000",
)


class Database:
    """One long-lived SQLite connection plus a write lock.

    Single statements go through ``connection`` and commit themselves;
    multi-statement writes (strategy + conditions, job leases) use
    ``transaction()`` so concurrent tasks never interleave inside them.

    Parameters
    ----------
    db_path:
        File path; parent directories are created on connect.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        self._conn: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()

    @property
    def path(self) -> str:
        return self._db_path

    @property
    def is_connected(self) -> bool:
        return self._conn is not None

    @property
    def connection(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError(f"Database {self._db_path} is not connected; call connect() first")
        return self._conn

    async def connect(self) -> None:
        if self._conn is not None:
            return
        Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        conn = await aiosqlite.connect(self._db_path)
        conn.row_factory = aiosqlite.Row
        for pragma in PRAGMAS:
            await conn.execute(pragma)
        self._conn = conn
        logger.info("Opened database %s", self._db_path)

    async def disconnect(self) -> None:
        conn, self._conn = self._conn, None
        if conn is None:
            return
        await conn.close()
        logger.info("Closed database %s", self._db_path)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Run several statements atomically; commits on success, rolls back on error."""
        conn = self.connection
        async with self._write_lock:
            await conn.execute("BEGIN")
            try:
                yield conn
            except BaseException:
                await conn.rollback()
                raise
            await conn.commit()

    async def __aenter__(self) -> "Database":
        await self.connect()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.disconnect()
