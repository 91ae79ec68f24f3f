"""Tests for the EventBus."""

from __future__ import annotations

import asyncio

from structlog.testing import capture_logs

from contextkeep.events.bus import ContextKeepEvent, EventBus


class TestEventBus:
    def test_sync_handler_called_inline(self):
        bus = EventBus()
        seen = []
        bus.subscribe(ContextKeepEvent.SESSION_CREATED, lambda e, p: seen.append((e, p)))
        bus.publish(ContextKeepEvent.SESSION_CREATED, {"session_id": "sess_1"})
        assert seen == [(ContextKeepEvent.SESSION_CREATED, {"session_id": "sess_1"})]

    def test_handlers_only_receive_their_event(self):
        bus = EventBus()
        seen = []
        bus.subscribe(ContextKeepEvent.SESSION_DELETED, lambda e, p: seen.append(e))
        bus.publish(ContextKeepEvent.SESSION_CREATED, {})
        assert seen == []

    def test_subscribe_all(self):
        bus = EventBus()
        seen = []
        bus.subscribe_all(lambda e, p: seen.append(e))
        bus.publish(ContextKeepEvent.CONTEXT_BUILT, {})
        bus.publish(ContextKeepEvent.SUMMARY_CREATED, {})
        assert seen == [ContextKeepEvent.CONTEXT_BUILT, ContextKeepEvent.SUMMARY_CREATED]

    def test_unsubscribe(self):
        bus = EventBus()
        seen = []

        def handler(event, payload):
            seen.append(event)

        bus.subscribe(ContextKeepEvent.SESSION_SAVED, handler)
        bus.unsubscribe(ContextKeepEvent.SESSION_SAVED, handler)
        bus.unsubscribe(ContextKeepEvent.SESSION_SAVED, handler)
        bus.publish(ContextKeepEvent.SESSION_SAVED, {})
        assert seen == []

    def test_handler_errors_are_swallowed(self):
        """A failing handler is logged and does not stop later handlers."""
        bus = EventBus()
        seen = []

        def broken(event, payload):
            raise RuntimeError("handler bug")

        bus.subscribe(ContextKeepEvent.SESSION_SAVED, broken)
        bus.subscribe(ContextKeepEvent.SESSION_SAVED, lambda e, p: seen.append(p))
        with capture_logs() as logs:
            bus.publish(ContextKeepEvent.SESSION_SAVED, {"session_id": "sess_1"})
        assert seen == [{"session_id": "sess_1"}]
        assert any(entry["event"] == "event_handler_error" for entry in logs)

    async def test_async_handler_scheduled(self):
        bus = EventBus()
        done = asyncio.Event()
        received = []

        async def handler(event, payload):
            received.append(payload)
            done.set()

        bus.subscribe(ContextKeepEvent.MESSAGE_APPENDED, handler)
        bus.publish(ContextKeepEvent.MESSAGE_APPENDED, {"message_id": "msg_1"})
        assert received == []
        await asyncio.wait_for(done.wait(), timeout=1.0)
        assert received == [{"message_id": "msg_1"}]

    def test_async_handler_without_loop_is_dropped(self):
        bus = EventBus()
        calls = []

        async def handler(event, payload):
            calls.append(payload)

        bus.subscribe(ContextKeepEvent.MESSAGE_APPENDED, handler)
        bus.publish(ContextKeepEvent.MESSAGE_APPENDED, {})
        assert calls == []

    def test_event_values(self):
        assert str(ContextKeepEvent.MESSAGE_APPENDED) == "message.appended"
        assert ContextKeepEvent("context.built") is ContextKeepEvent.CONTEXT_BUILT
