"""Persistence for rolling summaries."""

from __future__ import annotations

import json

import aiosqlite
import structlog

from contextkeep.models.message import Message
from contextkeep.store.messages import MessageStore, dump_parts


class SummaryStore:
    """
    Stores the rolling summary chain of each session.

    Summaries form a singly linked list through ``supersedes_summary_id``;
    only the newest one is active. The table shares the ``MessageStore``
    connection and joins its :meth:`~MessageStore.atomic` transactions, so a
    new summary and the message that triggered it commit together.
    """

    def __init__(self, store: MessageStore) -> None:
        self._store = store
        self._logger = structlog.get_logger("contextkeep.store.summaries")

    async def insert(self, summary: Message, session_id: str) -> bool:
        """
        Persist *summary* as the active summary of *session_id*.

        Idempotent on ``summary.id``: re-inserting an existing summary is a
        no-op and returns False. A fresh insert deactivates every other
        summary of the session.

        Raises:
            ValueError: If *summary* is not a priced summary message.
        """
        if not summary.is_summary:
            raise ValueError(f"Message {summary.id!r} is not a summary")
        if summary.token_count is None:
            raise ValueError(f"Summary {summary.id!r} must be priced before it is stored")

        async with self._store.atomic() as conn:
            cursor = await conn.execute(
                """
                INSERT OR IGNORE INTO summaries (
                    id, session_id, conversation_id, content, token_count,
                    token_provider, token_model, summarized_count,
                    supersedes_summary_id, method, is_active, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1, ?)
                """,
                (
                    summary.id,
                    session_id,
                    summary.conversation_id,
                    dump_parts(summary),
                    summary.token_count,
                    summary.token_provider,
                    summary.token_model,
                    summary.summarized_count,
                    summary.supersedes_summary_id,
                    summary.summary_method or "llm",
                    summary.created_at,
                ),
            )
            inserted = cursor.rowcount > 0
            await cursor.close()
            if inserted:
                await conn.execute(
                    "UPDATE summaries SET is_active = 0 WHERE session_id = ? AND id != ?",
                    (session_id, summary.id),
                )

        if inserted:
            self._logger.debug(
                "summary_stored",
                session_id=session_id,
                summary_id=summary.id,
                summarized_count=summary.summarized_count,
            )
        return inserted

    async def get_active(self, session_id: str) -> Message | None:
        """Return the active summary of a session, or None."""
        conn = self._store.connection
        async with conn.execute(
            "SELECT * FROM summaries WHERE session_id = ? AND is_active = 1"
            " ORDER BY created_at DESC, rowid DESC LIMIT 1",
            (session_id,),
        ) as cursor:
            row = await cursor.fetchone()
        return self._row_to_summary(row) if row else None

    async def get(self, summary_id: str) -> Message | None:
        conn = self._store.connection
        async with conn.execute("SELECT * FROM summaries WHERE id = ?", (summary_id,)) as cursor:
            row = await cursor.fetchone()
        return self._row_to_summary(row) if row else None

    async def get_chain(self, session_id: str) -> list[Message]:
        """
        Walk from the active summary back through ``supersedes_summary_id``.

        Returns newest first. Stops at a missing link or a repeated id.
        """
        by_id = {s.id: s for s in await self.list(session_id)}
        active = await self.get_active(session_id)
        chain: list[Message] = []
        visited: set[str] = set()
        current = active
        while current is not None and current.id not in visited:
            visited.add(current.id)
            chain.append(current)
            parent = current.supersedes_summary_id
            current = by_id.get(parent) if parent else None
        return chain

    async def list(self, session_id: str) -> list[Message]:
        """All summaries of a session in creation order."""
        conn = self._store.connection
        async with conn.execute(
            "SELECT * FROM summaries WHERE session_id = ? ORDER BY created_at ASC, rowid ASC",
            (session_id,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [self._row_to_summary(r) for r in rows]

    @staticmethod
    def _row_to_summary(row: aiosqlite.Row) -> Message:
        return Message.model_validate(
            {
                "id": row["id"],
                "conversation_id": row["conversation_id"],
                "role": "system",
                "parts": json.loads(row["content"]),
                "token_count": row["token_count"],
                "token_provider": row["token_provider"],
                "token_model": row["token_model"],
                "context_type": "summary",
                "summarized_count": row["summarized_count"],
                "supersedes_summary_id": row["supersedes_summary_id"],
                "summary_method": row["method"],
                "created_at": row["created_at"],
            }
        )
