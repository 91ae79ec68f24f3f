"""LRU cache of assembled context results."""

from __future__ import annotations

import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any

import structlog

from contextkeep.events.bus import ContextKeepEvent, EventBus
from contextkeep.models.config import CacheConfig
from contextkeep.models.context import ContextResult

CacheKey = tuple[str, int, str]
"""``(session_id, message_count, strategy)``"""


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    invalidations: int = 0
    size: int = 0


class ContextCache:
    """
    Per-process cache of ``ContextResult`` objects.

    Entries are keyed by ``(session_id, message_count, strategy)``: a new
    message changes the count, so a stale result can only be served if the
    count is reused, which :meth:`invalidate` prevents. Eviction is least
    recently used beyond ``max_entries``; entries older than ``ttl_seconds``
    (monotonic clock) are treated as misses.

    The cache is an injected service. Call :meth:`attach` to invalidate a
    session automatically whenever the store publishes ``MESSAGE_APPENDED``.
    """

    def __init__(self, config: CacheConfig | None = None) -> None:
        self._config = config or CacheConfig()
        self._entries: OrderedDict[CacheKey, tuple[float, ContextResult]] = OrderedDict()
        self._conversations: dict[str, str] = {}
        """session_id -> conversation_id, for invalidation by conversation."""
        self._stats = CacheStats()
        self._logger = structlog.get_logger("contextkeep.cache")

    def get(self, session_id: str, message_count: int, strategy: str) -> ContextResult | None:
        """Return the cached result, or None on a miss or expired entry."""
        key = (session_id, message_count, strategy)
        entry = self._entries.get(key)
        if entry is None:
            self._stats.misses += 1
            return None
        stored_at, result = entry
        if time.monotonic() - stored_at > self._config.ttl_seconds:
            del self._entries[key]
            self._stats.misses += 1
            self._logger.debug("cache_expired", session_id=session_id)
            return None
        self._entries.move_to_end(key)
        self._stats.hits += 1
        return result.model_copy(update={"from_cache": True})

    def set(
        self,
        session_id: str,
        message_count: int,
        strategy: str,
        result: ContextResult,
    ) -> None:
        """Store *result*, evicting the least recently used entries at capacity."""
        key = (session_id, message_count, strategy)
        if key in self._entries:
            self._entries.move_to_end(key)
        self._entries[key] = (time.monotonic(), result.model_copy(update={"from_cache": False}))
        if result.messages:
            self._conversations[session_id] = result.messages[-1].conversation_id
        while len(self._entries) > self._config.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            self._stats.evictions += 1
            self._logger.debug("cache_evict", session_id=evicted[0])

    def invalidate(self, session_id: str) -> int:
        """Drop every entry for *session_id*. Returns the number removed."""
        stale = [key for key in self._entries if key[0] == session_id]
        for key in stale:
            del self._entries[key]
        self._conversations.pop(session_id, None)
        if stale:
            self._stats.invalidations += len(stale)
            self._logger.debug("cache_invalidated", session_id=session_id, entries=len(stale))
        return len(stale)

    def invalidate_conversation(self, conversation_id: str) -> int:
        removed = 0
        for session_id, conv in list(self._conversations.items()):
            if conv == conversation_id:
                removed += self.invalidate(session_id)
        return removed

    def clear(self) -> None:
        self._entries.clear()
        self._conversations.clear()

    def stats(self) -> CacheStats:
        self._stats.size = len(self._entries)
        return CacheStats(**vars(self._stats))

    def attach(self, event_bus: EventBus) -> None:
        """Invalidate on every ``MESSAGE_APPENDED`` published on *event_bus*."""
        event_bus.subscribe(ContextKeepEvent.MESSAGE_APPENDED, self._on_message_appended)

    def _on_message_appended(self, event: ContextKeepEvent, payload: dict[str, Any]) -> None:
        session_id = payload.get("session_id")
        if session_id:
            self.invalidate(session_id)
        else:
            self.invalidate_conversation(payload["conversation_id"])

    def __len__(self) -> int:
        return len(self._entries)
