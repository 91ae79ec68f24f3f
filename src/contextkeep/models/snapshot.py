"""Portable export envelope for a session."""

from __future__ import annotations

import time

from pydantic import BaseModel, Field

from contextkeep.models.context import MemoryReference
from contextkeep.models.message import Message
from contextkeep.models.session import SessionRecord

SCHEMA_VERSION = 1


class SessionSnapshot(BaseModel):
    """Versioned JSON envelope produced by ``SessionManager.export()``.

    Attributes:
        schema_version: Envelope format version. Imports reject versions they
            do not understand.
        session: The session row as it was at export time.
        messages: Every message of the conversation, chronological.
        summaries: The summary chain, oldest first.
        memory_references: Memory files the session is configured to use.
            Memory content is not exported; it is shared, not owned.
        exported_at: Unix millisecond timestamp.
    """

    schema_version: int = SCHEMA_VERSION
    session: SessionRecord
    messages: list[Message] = Field(default_factory=list)
    summaries: list[Message] = Field(default_factory=list)
    memory_references: list[MemoryReference] = Field(default_factory=list)
    exported_at: int = Field(default_factory=lambda: int(time.time() * 1000))
