"""Append-only SQLite message log plus session rows."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import aiosqlite
import structlog

from contextkeep.errors import ContextKeepError, SessionCorruptionError
from contextkeep.events.bus import ContextKeepEvent, EventBus
from contextkeep.models.config import StoreConfig
from contextkeep.models.message import Message
from contextkeep.models.session import (
    AgentParticipant,
    MemorySource,
    SessionRecord,
    SessionStats,
    SessionStatus,
    StrategyConfig,
)
from contextkeep.store.pool import StorePool

# ── Exceptions ─────────────────────────────────────────────────────────────────


class ContextStoreError(ContextKeepError):
    """Base class for store errors."""


class SessionNotFoundError(ContextStoreError):
    """Raised when a session_id does not exist in the store."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session not found: {session_id!r}")
        self.session_id = session_id


class MessageNotFoundError(ContextStoreError):
    """Raised when a message_id does not exist in the store."""

    def __init__(self, message_id: str) -> None:
        super().__init__(f"Message not found: {message_id!r}")
        self.message_id = message_id


class DuplicateIDError(ContextStoreError):
    """Raised when attempting to insert a record with a duplicate primary key."""

    def __init__(self, record_id: str) -> None:
        super().__init__(f"Duplicate ID: {record_id!r}")
        self.record_id = record_id


# ── MessageStore ───────────────────────────────────────────────────────────────


class MessageStore:
    """
    Append-only, SQLite-backed message log and session table.

    Message rows are written once and never updated. Ordering within a
    conversation is ``(created_at, rowid)``; the active chain of a session is
    the ``parent_id`` path ending at ``SessionRecord.parent_message_id``.

    Every write runs inside :meth:`atomic`, which holds the pool's write lock
    for the database path. Calls made inside an open ``atomic()`` block by the
    same task join that transaction instead of opening their own, so a context
    build can commit its new message and its rolling summary together::

        async with store.atomic():
            await store.append(new_message)
            await summaries.insert(summary, session_id)
        # committed here; MESSAGE_APPENDED is published after the commit

    When no ``StorePool`` is supplied the store creates a private one and
    closes it in :meth:`close`.
    """

    def __init__(
        self,
        config: StoreConfig,
        pool: StorePool | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self._config = config
        self._db_path = str(Path(config.db_path).expanduser())
        self._owns_pool = pool is None
        self._pool = pool or StorePool()
        self._event_bus = event_bus
        self._conn: aiosqlite.Connection | None = None
        self._tx_owner: asyncio.Task[Any] | None = None
        self._pending_events: list[tuple[ContextKeepEvent, dict[str, Any]]] = []
        self._logger = structlog.get_logger("contextkeep.store")

    async def initialize(self) -> None:
        """
        Borrow the pooled connection and apply the schema.

        Raises:
            aiosqlite.Error: If the database cannot be opened or the schema fails.
        """
        conn = await self._pool.acquire(
            self._db_path,
            wal_mode=self._config.wal_mode,
            connection_timeout=self._config.connection_timeout,
        )
        schema = (Path(__file__).parent / "schema.sql").read_text()
        async with self._pool.write_lock(self._db_path):
            await conn.executescript(schema)
            await conn.commit()
        self._conn = conn
        self._logger.info("store_initialized", db_path=self._db_path)

    async def close(self) -> None:
        """Release the connection. A private pool is closed; a shared one is left open."""
        if self._conn is None:
            return
        if self._owns_pool:
            await self._pool.close_all()
        self._conn = None

    @property
    def connection(self) -> aiosqlite.Connection:
        return self._conn_or_raise()

    def _conn_or_raise(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise ContextStoreError("Store is not initialized. Call initialize() first.")
        return self._conn

    # ── Transactions ───────────────────────────────────────────────────────────

    @asynccontextmanager
    async def atomic(self) -> AsyncIterator[aiosqlite.Connection]:
        """
        Run the enclosed writes as one transaction.

        Commits on normal exit and rolls back on any exception, including
        ``asyncio.CancelledError``. Events queued by the enclosed writes are
        published only after the commit succeeds.
        """
        conn = self._conn_or_raise()
        current = asyncio.current_task()
        if self._tx_owner is not None and self._tx_owner is current:
            yield conn
            return

        async with self._pool.write_lock(self._db_path):
            self._tx_owner = current
            try:
                yield conn
                await conn.commit()
            except BaseException:
                self._pending_events.clear()
                await conn.rollback()
                raise
            finally:
                self._tx_owner = None

        pending, self._pending_events = self._pending_events, []
        if self._event_bus is not None:
            for event, payload in pending:
                self._event_bus.publish(event, payload)

    # ── Message Methods ────────────────────────────────────────────────────────

    async def append(self, message: Message, *, session_id: str | None = None) -> str:
        """
        Append a priced message to the log.

        Args:
            message: The message to persist. Must carry a pre-generated id and
                a ``token_count``.
            session_id: Included in the ``MESSAGE_APPENDED`` payload so caches
                can invalidate precisely.

        Returns:
            The stored message id.

        Raises:
            ValueError: If the message has not been priced.
            DuplicateIDError: If a message with this ID already exists.
        """
        if message.token_count is None:
            raise ValueError(f"Message {message.id!r} must be priced before it is stored")

        async with self.atomic() as conn:
            try:
                await conn.execute(
                    """
                    INSERT INTO messages (
                        id, conversation_id, parent_id, role, agent_id, content,
                        token_count, token_provider, token_model, context_priority,
                        context_type, summarized_count, supersedes_summary_id,
                        summary_method, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        message.id,
                        message.conversation_id,
                        message.parent_id,
                        message.role,
                        message.agent_id,
                        dump_parts(message),
                        message.token_count,
                        message.token_provider,
                        message.token_model,
                        message.context_priority,
                        message.context_type,
                        message.summarized_count,
                        message.supersedes_summary_id,
                        message.summary_method,
                        message.created_at,
                    ),
                )
            except aiosqlite.IntegrityError as exc:
                raise DuplicateIDError(message.id) from exc

            payload: dict[str, Any] = {
                "message_id": message.id,
                "conversation_id": message.conversation_id,
            }
            if session_id is not None:
                payload["session_id"] = session_id
            self._pending_events.append((ContextKeepEvent.MESSAGE_APPENDED, payload))

        return message.id

    async def get_message(self, message_id: str) -> Message:
        """
        Fetch a single message by ID.

        Raises:
            MessageNotFoundError: If no message with this ID exists.
        """
        conn = self._conn_or_raise()
        async with conn.execute("SELECT * FROM messages WHERE id = ?", (message_id,)) as cursor:
            row = await cursor.fetchone()
        if row is None:
            raise MessageNotFoundError(message_id)
        return self._row_to_message(row)

    async def get_messages(self, conversation_id: str) -> list[Message]:
        """All messages of a conversation in ``(created_at, rowid)`` order."""
        conn = self._conn_or_raise()
        async with conn.execute(
            "SELECT * FROM messages WHERE conversation_id = ? ORDER BY created_at ASC, rowid ASC",
            (conversation_id,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [self._row_to_message(r) for r in rows]

    async def count_messages(self, conversation_id: str) -> int:
        conn = self._conn_or_raise()
        async with conn.execute(
            "SELECT COUNT(*) FROM messages WHERE conversation_id = ?", (conversation_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return int(row[0]) if row else 0

    async def follow_chain(self, conversation_id: str, head: str) -> list[Message]:
        """
        Walk ``parent_id`` links from *head* back to the root.

        Returns:
            The chain in chronological (root-first) order.

        Raises:
            SessionCorruptionError: If a parent is missing or the links loop.
        """
        by_id = {m.id: m for m in await self.get_messages(conversation_id)}
        chain: list[Message] = []
        visited: set[str] = set()
        current: str | None = head
        while current is not None:
            if current in visited:
                raise SessionCorruptionError(conversation_id, current, "parent links form a cycle")
            visited.add(current)
            message = by_id.get(current)
            if message is None:
                raise SessionCorruptionError(conversation_id, current, "missing message")
            chain.append(message)
            current = message.parent_id
        chain.reverse()
        return chain

    async def get_chain(
        self,
        conversation_id: str,
        parent_message_id: str | None = None,
    ) -> list[Message]:
        """
        Return the active chain ending at *parent_message_id*.

        With no head every message of the conversation is returned in
        chronological order. A broken or cyclic chain is logged and the
        chronological listing is returned instead. Never raises for corruption.
        """
        if parent_message_id is None:
            return await self.get_messages(conversation_id)
        try:
            return await self.follow_chain(conversation_id, parent_message_id)
        except SessionCorruptionError as exc:
            self._logger.warning(
                "chain_corrupted",
                conversation_id=conversation_id,
                message_id=exc.message_id,
                reason=exc.reason,
            )
            return await self.get_messages(conversation_id)

    # ── Session Methods ────────────────────────────────────────────────────────

    async def create_session(self, record: SessionRecord) -> SessionRecord:
        """
        Insert a new session row.

        Raises:
            DuplicateIDError: If a session with this ID already exists.
        """
        async with self.atomic() as conn:
            try:
                await conn.execute(
                    f"INSERT INTO sessions ({_SESSION_COLUMNS}) VALUES ({_SESSION_PLACEHOLDERS})",
                    self._session_params(record),
                )
            except aiosqlite.IntegrityError as exc:
                raise DuplicateIDError(record.id) from exc
        return record

    async def save_session(self, record: SessionRecord) -> None:
        """Insert or replace the row for *record*."""
        updates = ", ".join(f"{col} = excluded.{col}" for col in _SESSION_FIELDS[1:])
        async with self.atomic() as conn:
            await conn.execute(
                f"INSERT INTO sessions ({_SESSION_COLUMNS}) VALUES ({_SESSION_PLACEHOLDERS})"
                f" ON CONFLICT(id) DO UPDATE SET {updates}",
                self._session_params(record),
            )

    async def get_session(self, session_id: str) -> SessionRecord:
        """
        Fetch a session by ID.

        Raises:
            SessionNotFoundError: If no session with this ID exists.
        """
        conn = self._conn_or_raise()
        async with conn.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)) as cursor:
            row = await cursor.fetchone()
        if row is None:
            raise SessionNotFoundError(session_id)
        return self._row_to_session(row)

    async def list_sessions(
        self,
        *,
        status: SessionStatus | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[SessionRecord]:
        """
        List sessions, most recently updated first.

        Args:
            status: Only return sessions in this state.
            limit: Maximum number of sessions to return.
            offset: Number of sessions to skip (for pagination).
        """
        conn = self._conn_or_raise()
        where = ""
        params: list[Any] = []
        if status is not None:
            where = "WHERE status = ?"
            params.append(str(status))
        params.extend([limit, offset])
        async with conn.execute(
            f"SELECT * FROM sessions {where} ORDER BY updated_at DESC, rowid DESC LIMIT ? OFFSET ?",
            params,
        ) as cursor:
            rows = await cursor.fetchall()
        return [self._row_to_session(r) for r in rows]

    async def delete_session(self, session_id: str) -> bool:
        """
        Permanently remove a session with its summaries and messages.

        Messages are kept while another session still references the same
        conversation. Returns False if the session did not exist.
        """
        async with self.atomic() as conn:
            async with conn.execute(
                "SELECT conversation_id FROM sessions WHERE id = ?", (session_id,)
            ) as cursor:
                row = await cursor.fetchone()
            if row is None:
                return False
            conversation_id = row["conversation_id"]
            await conn.execute("DELETE FROM summaries WHERE session_id = ?", (session_id,))
            await conn.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
            async with conn.execute(
                "SELECT COUNT(*) FROM sessions WHERE conversation_id = ?", (conversation_id,)
            ) as cursor:
                shared = await cursor.fetchone()
            if not shared or shared[0] == 0:
                await conn.execute(
                    "DELETE FROM messages WHERE conversation_id = ?", (conversation_id,)
                )
        self._logger.info("session_deleted", session_id=session_id)
        return True

    # ── Private Helpers ────────────────────────────────────────────────────────

    @staticmethod
    def _session_params(record: SessionRecord) -> tuple[Any, ...]:
        return (
            record.id,
            record.conversation_id,
            record.parent_message_id,
            str(record.status),
            record.strategy.model_dump_json(),
            json.dumps(
                {k: v.model_dump(mode="json") for k, v in record.agent_participants.items()}
            ),
            record.stats.model_dump_json(),
            json.dumps([s.model_dump(mode="json") for s in record.memory_sources]),
            record.model,
            record.instructions,
            record.title,
            record.created_at,
            record.updated_at,
        )

    @staticmethod
    def _row_to_session(row: aiosqlite.Row) -> SessionRecord:
        participants = json.loads(row["agent_participants"] or "{}")
        sources = json.loads(row["memory_sources"] or "[]")
        return SessionRecord(
            id=row["id"],
            conversation_id=row["conversation_id"],
            parent_message_id=row["parent_message_id"],
            status=SessionStatus(row["status"]),
            strategy=StrategyConfig.model_validate_json(row["strategy_config"]),
            agent_participants={
                k: AgentParticipant.model_validate(v) for k, v in participants.items()
            },
            stats=SessionStats.model_validate_json(row["stats"] or "{}"),
            memory_sources=[MemorySource.model_validate(s) for s in sources],
            model=row["model"],
            instructions=row["instructions"],
            title=row["title"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_message(row: aiosqlite.Row) -> Message:
        return Message.model_validate(
            {
                "id": row["id"],
                "conversation_id": row["conversation_id"],
                "parent_id": row["parent_id"],
                "role": row["role"],
                "agent_id": row["agent_id"],
                "parts": json.loads(row["content"]),
                "token_count": row["token_count"],
                "token_provider": row["token_provider"],
                "token_model": row["token_model"],
                "context_priority": row["context_priority"],
                "context_type": row["context_type"],
                "summarized_count": row["summarized_count"],
                "supersedes_summary_id": row["supersedes_summary_id"],
                "summary_method": row["summary_method"],
                "created_at": row["created_at"],
            }
        )


def dump_parts(message: Message) -> str:
    """Serialize a message's parts to the JSON stored in ``content`` columns."""
    return json.dumps([part.model_dump(mode="json") for part in message.parts])


_SESSION_FIELDS = (
    "id",
    "conversation_id",
    "parent_message_id",
    "status",
    "strategy_config",
    "agent_participants",
    "stats",
    "memory_sources",
    "model",
    "instructions",
    "title",
    "created_at",
    "updated_at",
)
_SESSION_COLUMNS = ", ".join(_SESSION_FIELDS)
_SESSION_PLACEHOLDERS = ", ".join("?" * len(_SESSION_FIELDS))
