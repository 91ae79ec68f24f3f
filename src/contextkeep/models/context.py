"""Memory entries and per-turn context results."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

from contextkeep.models.config import StrategyType
from contextkeep.models.message import Message

MemoryScope = Literal["project", "user", "agent"]


class MemoryEntry(BaseModel):
    """A memory file loaded for one context build. Read-only."""

    scope: MemoryScope
    path: str
    """Resolved absolute path."""
    content: str
    token_count: int
    mtime: int
    """``st_mtime_ns`` at load time; a change invalidates the cached entry."""
    imported_by: str | None = None
    """Path of the memory file or message that referenced this entry."""


class MemoryReference(BaseModel):
    """What an exported snapshot records about memory used by a session."""

    scope: MemoryScope
    path: str
    mtime: int = 0


class ContextResult(BaseModel):
    """
    The token-bounded context assembled for one turn.

    Ephemeral; never persisted. ``messages`` is chronological and ends with
    the new message. The budget invariant always holds::

        instructions_tokens + sum(messages) + sum(summaries) + sum(memory)
            == total_tokens <= max_tokens
    """

    session_id: str = ""
    strategy: StrategyType
    max_tokens: int
    messages: list[Message] = Field(default_factory=list)
    dropped_ids: list[str] = Field(default_factory=list)
    summaries: list[Message] = Field(default_factory=list)
    memory: list[MemoryEntry] = Field(default_factory=list)
    instructions: str = ""
    instructions_tokens: int = 0
    total_tokens: int = 0
    degraded: bool = False
    """True when a summary had to fall back to naive truncation."""
    from_cache: bool = False

    @property
    def summary(self) -> Message | None:
        """The primary summary (the rolling summary for the summarize strategy)."""
        return self.summaries[0] if self.summaries else None

    @property
    def message_tokens(self) -> int:
        return sum(m.tokens for m in self.messages)

    @property
    def summary_tokens(self) -> int:
        return sum(s.tokens for s in self.summaries)

    @property
    def memory_tokens(self) -> int:
        return sum(e.token_count for e in self.memory)

    def computed_total(self) -> int:
        """Recompute the total from components rather than trusting ``total_tokens``."""
        return (
            self.instructions_tokens
            + self.message_tokens
            + self.summary_tokens
            + self.memory_tokens
        )

    def fits(self) -> bool:
        return self.computed_total() <= self.max_tokens
