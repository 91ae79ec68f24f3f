"""In-process pub/sub event bus for session and context lifecycle events."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import Any

import structlog

Handler = Callable[["ContextKeepEvent", dict[str, Any]], None | Awaitable[None]]


class ContextKeepEvent(StrEnum):
    """All event types published by contextkeep components.

    Typed payload definitions for each event live in
    :mod:`contextkeep.events.payloads`.

    ``MESSAGE_APPENDED`` is published by the store after the transaction that
    wrote the message commits; :class:`~contextkeep.context.cache.ContextCache`
    relies on it for invalidation.
    """

    # Session lifecycle
    SESSION_CREATED = "session.created"
    SESSION_STATUS_CHANGED = "session.status_changed"
    SESSION_SAVED = "session.saved"
    SESSION_SAVE_FAILED = "session.save_failed"
    SESSION_RECOVERED = "session.recovered"
    SESSION_DELETED = "session.deleted"

    # Messages and summaries
    MESSAGE_APPENDED = "message.appended"
    SUMMARY_CREATED = "summary.created"
    SUMMARIZATION_DEGRADED = "summary.degraded"

    # Context assembly
    CONTEXT_BUILT = "context.built"
    MEMORY_IMPORT_CYCLE = "memory.import_cycle"


class EventBus:
    """
    Simple in-process pub/sub event bus.

    Design decisions:
    - Sync handlers are called inline within ``publish()``.
    - Async handlers are scheduled via ``asyncio.create_task()`` (fire-and-forget).
    - Handler exceptions are logged but never propagate to the publisher.
    - One bus is shared by every component of a ``SessionManager``.

    Example::

        bus = EventBus()

        def on_built(event, payload):
            print(f"{payload['session_id']}: {payload['total_tokens']} tokens")

        bus.subscribe(ContextKeepEvent.CONTEXT_BUILT, on_built)
    """

    def __init__(self, logger: structlog.BoundLogger | None = None) -> None:
        self._handlers: dict[ContextKeepEvent, list[Handler]] = {}
        self._global_handlers: list[Handler] = []
        self._logger = logger or structlog.get_logger("contextkeep.events")

    def subscribe(self, event: ContextKeepEvent, handler: Handler) -> None:
        """
        Register a handler for a specific event type.

        Args:
            event: The event type to listen for.
            handler: Callable accepting ``(event, payload)``. May be sync or async.
        """
        self._handlers.setdefault(event, []).append(handler)

    def subscribe_all(self, handler: Handler) -> None:
        """Register a handler for ALL event types."""
        self._global_handlers.append(handler)

    def unsubscribe(self, event: ContextKeepEvent, handler: Handler) -> None:
        """Remove a previously registered handler. No-op if not found."""
        handlers = self._handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    def publish(self, event: ContextKeepEvent, payload: dict[str, Any]) -> None:
        """
        Publish an event to all registered handlers.

        Sync handlers are called immediately in registration order.
        Async handlers are scheduled as background tasks (non-blocking).
        Exceptions from any handler are logged and swallowed.
        """
        all_handlers = list(self._handlers.get(event, [])) + list(self._global_handlers)
        for handler in all_handlers:
            try:
                result = handler(event, payload)
                if asyncio.iscoroutine(result):
                    try:
                        loop = asyncio.get_running_loop()
                    except RuntimeError:
                        # No running event loop: drop the coroutine
                        result.close()
                        continue
                    loop.create_task(result)  # noqa: RUF006
            except Exception as exc:
                self._logger.error(
                    "event_handler_error",
                    event_type=str(event),
                    handler=getattr(handler, "__qualname__", repr(handler)),
                    error=str(exc),
                )
