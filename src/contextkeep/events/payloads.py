"""Typed payload definitions for each ContextKeepEvent.

Usage example::

    from contextkeep.events.bus import ContextKeepEvent, EventBus
    from contextkeep.events.payloads import ContextBuiltPayload

    def on_built(event: ContextKeepEvent, payload: ContextBuiltPayload) -> None:
        print(f"{payload['kept']} kept, {payload['dropped']} dropped")

    bus.subscribe(ContextKeepEvent.CONTEXT_BUILT, on_built)  # type: ignore[arg-type]
"""

from __future__ import annotations

from typing import NotRequired, TypedDict

# ── Session lifecycle ─────────────────────────────────────────────────────────


class SessionCreatedPayload(TypedDict):
    session_id: str
    conversation_id: str
    strategy: str


class SessionStatusChangedPayload(TypedDict):
    session_id: str
    previous: str
    status: str


class SessionSavedPayload(TypedDict):
    session_id: str
    attempts: int


class SessionSaveFailedPayload(TypedDict):
    session_id: str
    error: str


class SessionRecoveredPayload(TypedDict):
    """Published when a corrupted chain was rebuilt chronologically."""

    session_id: str
    reason: str
    message_count: int


class SessionDeletedPayload(TypedDict):
    session_id: str


# ── Messages and summaries ────────────────────────────────────────────────────


class MessageAppendedPayload(TypedDict):
    message_id: str
    conversation_id: str
    session_id: NotRequired[str]
    """Present when the append was made on behalf of a known session."""


class SummaryCreatedPayload(TypedDict):
    session_id: str
    summary_id: str
    summarized_count: int
    token_count: int
    supersedes_summary_id: str | None


class SummarizationDegradedPayload(TypedDict):
    conversation_id: str
    error: str
    attempts: int


# ── Context assembly ──────────────────────────────────────────────────────────


class ContextBuiltPayload(TypedDict):
    session_id: str
    strategy: str
    total_tokens: int
    max_tokens: int
    kept: int
    dropped: int
    elapsed_ms: float


class MemoryImportCyclePayload(TypedDict):
    reference: str
    chain: list[str]
