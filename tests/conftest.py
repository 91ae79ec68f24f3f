"""Shared fixtures for contextkeep tests."""

from __future__ import annotations

import itertools
from typing import Any

import pytest
import pytest_asyncio

from contextkeep.events.bus import ContextKeepEvent, EventBus
from contextkeep.models.config import (
    ContextKeepConfig,
    MemoryConfig,
    SessionConfig,
    StoreConfig,
    SummarizerConfig,
)
from contextkeep.models.message import Message, TextPart
from contextkeep.models.session import SessionRecord
from contextkeep.session import SessionManager
from contextkeep.store.messages import MessageStore
from contextkeep.store.pool import StorePool
from contextkeep.store.summaries import SummaryStore
from contextkeep.tokens.counter import TokenCounter

_counter = itertools.count(1)


@pytest.fixture
def config(tmp_path):
    """ContextKeepConfig with a temp database and isolated memory roots."""
    (tmp_path / "project").mkdir()
    (tmp_path / "user").mkdir()
    (tmp_path / "agents").mkdir()
    return ContextKeepConfig(
        store=StoreConfig(db_path=str(tmp_path / "test.db")),
        memory=MemoryConfig(
            project_root=str(tmp_path / "project"),
            user_root=str(tmp_path / "user"),
            agent_root=str(tmp_path / "agents"),
        ),
        summarizer=SummarizerConfig(backoff_base=0.0, backoff_max=0.0),
        session=SessionConfig(auto_save=False, save_backoff=0.0),
    )


@pytest_asyncio.fixture
async def pool(config):
    """StorePool for the test database. Closed after each test."""
    p = StorePool()
    yield p
    await p.close_all()


@pytest.fixture
def event_bus():
    """EventBus with a .collected list for asserting events."""
    bus = EventBus()
    collected: list[tuple[ContextKeepEvent, dict[str, Any]]] = []

    def _collect(event: ContextKeepEvent, payload: dict[str, Any]) -> None:
        collected.append((event, payload))

    bus.subscribe_all(_collect)
    bus.collected = collected  # type: ignore[attr-defined]
    return bus


@pytest_asyncio.fixture
async def store(config, pool, event_bus):
    """Initialized MessageStore backed by a temp SQLite database (pool-managed)."""
    s = MessageStore(config.store, pool=pool, event_bus=event_bus)
    await s.initialize()
    yield s
    await s.close()


@pytest_asyncio.fixture
async def summary_store(store):
    return SummaryStore(store)


@pytest.fixture
def counter():
    """TokenCounter using heuristics only (no tiktoken required in tests)."""
    return TokenCounter(force_heuristic=True)


class FakeLLM:
    """Records calls and returns a fixed summary, or raises ``fail_times`` times first."""

    def __init__(self, text: str = "Summary of the earlier conversation.", fail_times: int = 0):
        self.text = text
        self.fail_times = fail_times
        self.calls: list[dict[str, Any]] = []

    async def __call__(self, *, model: str, messages: list[dict[str, str]], max_tokens: int) -> str:
        self.calls.append({"model": model, "messages": messages, "max_tokens": max_tokens})
        if len(self.calls) <= self.fail_times:
            raise RuntimeError("provider unavailable")
        return self.text


@pytest.fixture
def fake_llm():
    return FakeLLM()


@pytest_asyncio.fixture
async def manager(config, event_bus, fake_llm, counter):
    """SessionManager over the temp database with a fake LLM and heuristic counting."""
    m = await SessionManager.open(
        config, llm_call=fake_llm, event_bus=event_bus, token_counter=counter
    )
    yield m
    await m.close()


def make_message(
    conversation_id: str = "conv_TEST",
    role: str = "user",
    text: str = "Hello world",
    *,
    msg_id: str | None = None,
    tokens: int | None = 10,
    priority: int = 5,
    parent_id: str | None = None,
    created_at: int | None = None,
    agent_id: str | None = None,
) -> Message:
    """Helper to create a test Message with an explicit token count."""
    seq = next(_counter)
    return Message(
        id=msg_id or f"msg_{seq:06d}",
        conversation_id=conversation_id,
        role=role,  # type: ignore[arg-type]
        parts=[TextPart(text=text)],
        token_count=tokens,
        context_priority=priority,
        parent_id=parent_id,
        created_at=created_at if created_at is not None else 1_700_000_000_000 + seq,
        agent_id=agent_id,
    )


def make_history(count: int, tokens: int, *, conversation_id: str = "conv_TEST", **kwargs: Any):
    """A linked chain of *count* messages with *tokens* tokens each, oldest first."""
    history: list[Message] = []
    parent: str | None = None
    for i in range(count):
        msg = make_message(
            conversation_id,
            "user" if i % 2 == 0 else "assistant",
            f"message {i}",
            tokens=tokens,
            parent_id=parent,
            **kwargs,
        )
        history.append(msg)
        parent = msg.id
    return history


def make_session(
    session_id: str = "sess_TEST", conversation_id: str = "conv_TEST"
) -> SessionRecord:
    return SessionRecord(id=session_id, conversation_id=conversation_id)
