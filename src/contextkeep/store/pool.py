"""
Shared SQLite connections for the session stores.

A ``StorePool`` holds one ``aiosqlite.Connection`` per database path. Every
``MessageStore`` and ``SummaryStore`` pointing at the same file borrows that
connection, so concurrent sessions in one process never contend for SQLite's
single-writer lock.

Usage::

    pool = StorePool()

    messages = MessageStore(config, pool=pool)
    summaries = SummaryStore(messages)

    await messages.initialize()   # opens the connection and applies the schema

    # ... use stores ...

    await pool.close_all()        # close every managed connection at shutdown
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import aiosqlite
import structlog

_logger = structlog.get_logger("contextkeep.store.pool")


def resolve_db_path(db_path: str) -> str:
    """Expand ``~`` and return the absolute path used as the pool key."""
    return str(Path(db_path).expanduser().resolve())


class StorePool:
    """
    Registry of open ``aiosqlite.Connection`` objects, one per resolved path.

    Only safe to use from a single asyncio event loop.

    ``acquire()`` may be called concurrently; the first caller opens the
    connection and later callers receive the same object. Alongside each
    connection the pool keeps an ``asyncio.Lock`` that serializes write
    transactions. WAL mode allows concurrent readers but a single writer, and
    a transaction on a shared connection must not interleave with another
    coroutine's writes.
    """

    def __init__(self) -> None:
        self._connections: dict[str, aiosqlite.Connection] = {}
        self._write_locks: dict[str, asyncio.Lock] = {}
        self._open_locks: dict[str, asyncio.Lock] = {}

    async def acquire(
        self,
        db_path: str,
        *,
        wal_mode: bool = True,
        connection_timeout: float = 30.0,
    ) -> aiosqlite.Connection:
        """
        Return the shared connection for *db_path*, opening it if needed.

        Args:
            db_path: Database file path. ``~`` is expanded.
            wal_mode: Enable WAL journal mode on first open.
            connection_timeout: SQLite busy timeout in seconds.
        """
        resolved = resolve_db_path(db_path)

        if resolved in self._connections:
            return self._connections[resolved]

        open_lock = self._open_locks.setdefault(resolved, asyncio.Lock())
        async with open_lock:
            if resolved in self._connections:
                return self._connections[resolved]

            Path(resolved).parent.mkdir(parents=True, exist_ok=True)
            conn = await aiosqlite.connect(resolved, timeout=connection_timeout)
            try:
                conn.row_factory = aiosqlite.Row
                if wal_mode:
                    await conn.execute("PRAGMA journal_mode=WAL")
                await conn.execute("PRAGMA foreign_keys=ON")
                await conn.execute("PRAGMA synchronous=NORMAL")
            except Exception:
                await conn.close()
                raise

            self._connections[resolved] = conn
            self._write_locks[resolved] = asyncio.Lock()
            _logger.debug("pool_connection_opened", db_path=resolved)
            return conn

    def write_lock(self, db_path: str) -> asyncio.Lock:
        """
        Return the write-serialization lock for *db_path*.

        Raises:
            KeyError: If ``acquire()`` has not been called for this path.
        """
        return self._write_locks[resolve_db_path(db_path)]

    def is_open(self, db_path: str) -> bool:
        return resolve_db_path(db_path) in self._connections

    async def close_path(self, db_path: str) -> None:
        """Close and forget the connection for a single path."""
        resolved = resolve_db_path(db_path)
        conn = self._connections.pop(resolved, None)
        self._write_locks.pop(resolved, None)
        self._open_locks.pop(resolved, None)
        if conn is not None:
            await conn.close()
            _logger.debug("pool_connection_closed", db_path=resolved)

    async def close_all(self) -> None:
        """Close every connection managed by this pool."""
        for path in list(self._connections):
            await self.close_path(path)
