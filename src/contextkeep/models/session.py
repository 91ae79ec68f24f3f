"""Session state, lifecycle and restore models."""

from __future__ import annotations

import time
from enum import StrEnum

from pydantic import BaseModel, Field

from contextkeep.models.config import HybridAllocation, StrategyType
from contextkeep.models.context import MemoryScope
from contextkeep.models.message import Message


def _now_ms() -> int:
    return int(time.time() * 1000)


class SessionStatus(StrEnum):
    """Session lifecycle: ``created → active ⇄ paused → completed | archived``."""

    CREATED = "created"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    ARCHIVED = "archived"


ALLOWED_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.CREATED: frozenset({SessionStatus.ACTIVE, SessionStatus.ARCHIVED}),
    SessionStatus.ACTIVE: frozenset(
        {SessionStatus.PAUSED, SessionStatus.COMPLETED, SessionStatus.ARCHIVED}
    ),
    SessionStatus.PAUSED: frozenset(
        {SessionStatus.ACTIVE, SessionStatus.COMPLETED, SessionStatus.ARCHIVED}
    ),
    SessionStatus.COMPLETED: frozenset({SessionStatus.ARCHIVED}),
    SessionStatus.ARCHIVED: frozenset(),
}
"""Transitions allowed without an explicit reactivation flag."""


class StrategyConfig(BaseModel):
    """Per-session context strategy settings."""

    type: StrategyType = "summarize"
    max_context_tokens: int = Field(default=8_192, ge=1)
    summary_reserve_fraction: float = Field(default=0.30, gt=0.0, lt=1.0)
    allocation: HybridAllocation = Field(default_factory=HybridAllocation)


class AgentParticipant(BaseModel):
    """Per-agent counters within one session."""

    agent_id: str
    message_count: int = 0
    token_count: int = 0
    last_active_at: int | None = None


class SessionStats(BaseModel):
    """Cumulative counters for a session."""

    message_count: int = 0
    token_count: int = 0
    summary_count: int = 0
    build_count: int = 0
    total_build_ms: float = 0.0


class MemorySource(BaseModel):
    """A memory file configured for a session."""

    scope: MemoryScope
    path: str


class SessionRecord(BaseModel):
    """
    The persisted state of one session.

    ``parent_message_id`` points at the newest message of the active chain and
    is the only field touched on every append.
    """

    id: str
    conversation_id: str
    parent_message_id: str | None = None
    status: SessionStatus = SessionStatus.CREATED
    strategy: StrategyConfig = Field(default_factory=StrategyConfig)
    agent_participants: dict[str, AgentParticipant] = Field(default_factory=dict)
    stats: SessionStats = Field(default_factory=SessionStats)
    memory_sources: list[MemorySource] = Field(default_factory=list)
    model: str = ""
    """litellm-style model string; selects the token pricing rules."""
    instructions: str = ""
    """System instructions reserved at the top of every context build."""
    title: str | None = None
    created_at: int = Field(default_factory=_now_ms)
    updated_at: int = Field(default_factory=_now_ms)

    def touch(self) -> None:
        self.updated_at = _now_ms()

    def participant(self, agent_id: str) -> AgentParticipant:
        """Return the counters for *agent_id*, registering the agent if new."""
        if agent_id not in self.agent_participants:
            self.agent_participants[agent_id] = AgentParticipant(agent_id=agent_id)
        return self.agent_participants[agent_id]


class RestoredContext(BaseModel):
    """The result of :meth:`~contextkeep.session.SessionManager.resume`."""

    session: SessionRecord
    messages: list[Message] = Field(default_factory=list)
    """Chain order, root first."""
    active_summary: Message | None = None
    recovered: bool = False
    """True when a corrupted chain was rebuilt from the chronological listing."""

    @property
    def token_count(self) -> int:
        return sum(m.tokens for m in self.messages)
