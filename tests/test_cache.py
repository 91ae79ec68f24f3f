"""Tests for ContextCache."""

from __future__ import annotations

import pytest

from contextkeep.context import cache as cache_module
from contextkeep.context.cache import ContextCache
from contextkeep.events.bus import ContextKeepEvent, EventBus
from contextkeep.models.config import CacheConfig
from contextkeep.models.context import ContextResult
from tests.conftest import make_message


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def monotonic(self) -> float:
        return self.now


@pytest.fixture
def clock(monkeypatch):
    fake = FakeClock()
    monkeypatch.setattr(cache_module, "time", fake)
    return fake


def make_result(session_id: str = "sess_TEST", conversation_id: str = "conv_TEST") -> ContextResult:
    msg = make_message(conversation_id)
    return ContextResult(
        session_id=session_id,
        strategy="summarize",
        max_tokens=2048,
        messages=[msg],
        total_tokens=msg.tokens,
    )


class TestContextCache:
    def test_hit_and_miss(self):
        cache = ContextCache()
        result = make_result()
        assert cache.get("sess_TEST", 1, "summarize") is None
        cache.set("sess_TEST", 1, "summarize", result)
        hit = cache.get("sess_TEST", 1, "summarize")
        assert hit is not None
        assert hit.from_cache is True
        assert hit.messages == result.messages
        assert cache.get("sess_TEST", 2, "summarize") is None
        assert cache.get("sess_TEST", 1, "hybrid") is None
        stats = cache.stats()
        assert (stats.hits, stats.misses, stats.size) == (1, 3, 1)

    def test_lru_eviction(self):
        """The least recently used entry goes first."""
        cache = ContextCache(CacheConfig(max_entries=2))
        cache.set("sess_A", 1, "discard", make_result("sess_A"))
        cache.set("sess_B", 1, "discard", make_result("sess_B"))
        cache.get("sess_A", 1, "discard")
        cache.set("sess_C", 1, "discard", make_result("sess_C"))

        assert cache.get("sess_B", 1, "discard") is None
        assert cache.get("sess_A", 1, "discard") is not None
        assert cache.get("sess_C", 1, "discard") is not None
        assert cache.stats().evictions == 1

    def test_ttl_expiry(self, clock):
        cache = ContextCache(CacheConfig(ttl_seconds=10.0))
        cache.set("sess_TEST", 1, "summarize", make_result())
        clock.now += 5
        assert cache.get("sess_TEST", 1, "summarize") is not None
        clock.now += 6
        assert cache.get("sess_TEST", 1, "summarize") is None
        assert len(cache) == 0

    def test_invalidate_session(self):
        cache = ContextCache()
        cache.set("sess_A", 1, "summarize", make_result("sess_A"))
        cache.set("sess_A", 2, "summarize", make_result("sess_A"))
        cache.set("sess_B", 1, "summarize", make_result("sess_B"))
        assert cache.invalidate("sess_A") == 2
        assert len(cache) == 1
        assert cache.stats().invalidations == 2

    def test_invalidate_conversation(self):
        cache = ContextCache()
        cache.set("sess_A", 1, "summarize", make_result("sess_A", "conv_SHARED"))
        cache.set("sess_B", 1, "summarize", make_result("sess_B", "conv_SHARED"))
        cache.set("sess_C", 1, "summarize", make_result("sess_C", "conv_OTHER"))
        assert cache.invalidate_conversation("conv_SHARED") == 2
        assert cache.get("sess_C", 1, "summarize") is not None

    def test_invalidate_forgets_conversation(self):
        """Invalidated sessions leave nothing behind in the conversation index."""
        cache = ContextCache()
        cache.set("sess_A", 1, "summarize", make_result("sess_A", "conv_SHARED"))
        cache.set("sess_B", 1, "summarize", make_result("sess_B", "conv_OTHER"))
        cache.invalidate("sess_A")
        assert cache._conversations == {"sess_B": "conv_OTHER"}
        cache.invalidate_conversation("conv_OTHER")
        assert cache._conversations == {}

    def test_clear(self):
        cache = ContextCache()
        cache.set("sess_A", 1, "summarize", make_result("sess_A"))
        cache.clear()
        assert len(cache) == 0


class TestEventInvalidation:
    def test_message_appended_invalidates_session(self):
        bus = EventBus()
        cache = ContextCache()
        cache.attach(bus)
        cache.set("sess_A", 1, "summarize", make_result("sess_A"))
        cache.set("sess_B", 1, "summarize", make_result("sess_B"))

        bus.publish(
            ContextKeepEvent.MESSAGE_APPENDED,
            {"message_id": "msg_1", "conversation_id": "conv_TEST", "session_id": "sess_A"},
        )
        assert cache.get("sess_A", 1, "summarize") is None
        assert cache.get("sess_B", 1, "summarize") is not None

    def test_message_without_session_invalidates_conversation(self):
        bus = EventBus()
        cache = ContextCache()
        cache.attach(bus)
        cache.set("sess_A", 1, "summarize", make_result("sess_A", "conv_X"))
        bus.publish(
            ContextKeepEvent.MESSAGE_APPENDED, {"message_id": "msg_1", "conversation_id": "conv_X"}
        )
        assert len(cache) == 0

    async def test_store_append_invalidates(self, store, event_bus):
        """A committed append through the store reaches an attached cache."""
        cache = ContextCache()
        cache.attach(event_bus)
        cache.set("sess_TEST", 0, "summarize", make_result())
        await store.append(make_message(), session_id="sess_TEST")
        assert len(cache) == 0
