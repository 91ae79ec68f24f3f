"""SessionManager: the public entry point for context builds and session state."""

from __future__ import annotations

import asyncio
import json
import time
from typing import Any

import structlog
from ulid import ULID

from contextkeep.compaction.summarizer import DeltaObserver, LLMCall, Summarizer
from contextkeep.context.cache import ContextCache
from contextkeep.context.strategies import DiscardStrategy, make_strategy
from contextkeep.errors import BudgetExceededError, InvalidTransitionError, SessionCorruptionError
from contextkeep.events.bus import ContextKeepEvent, EventBus
from contextkeep.memory.integrator import MemoryIntegrator
from contextkeep.models.config import ContextKeepConfig, StoreConfig, StrategyType
from contextkeep.models.context import ContextResult, MemoryEntry, MemoryReference
from contextkeep.models.message import Message, MessagePart, Role, TextPart
from contextkeep.models.session import (
    ALLOWED_TRANSITIONS,
    MemorySource,
    RestoredContext,
    SessionRecord,
    SessionStatus,
    StrategyConfig,
)
from contextkeep.models.snapshot import SCHEMA_VERSION, SessionSnapshot
from contextkeep.store.messages import MessageStore, SessionNotFoundError
from contextkeep.store.pool import StorePool
from contextkeep.store.summaries import SummaryStore
from contextkeep.tokens.counter import TokenCounter, resolve_provider


def make_id(prefix: str) -> str:
    """
    Generate a ULID-based sortable identifier.

    Args:
        prefix: Short prefix for readability (e.g. ``"msg"``, ``"sess"``, ``"conv"``).

    Returns:
        ID string in the format ``"{prefix}_{ulid}"``.
    """
    return f"{prefix}_{ULID()}"


class SessionManager:
    """
    Owns the sessions of one database and assembles their context windows.

    Usage::

        async with await SessionManager.open(config) as manager:
            session = await manager.create(model="anthropic/claude-sonnet-4-5")
            await manager.activate(session.id)

            message = manager.new_message(session.id, "user", "Hello!")
            result = await manager.build_context(session.id, message)
            provider_messages = render_context(result)

    Lifecycle: ``created -> active <-> paused -> completed | archived``.
    Context builds and appends only run on active sessions. Builds and
    appends of one session are serialized; different sessions proceed
    concurrently.

    Persistence: messages and summaries are written transactionally as part
    of each build. The session row is saved in the background after every
    change, retried on failure, and periodically by the auto-save task; a
    failed save is logged and never fails the turn.
    """

    def __init__(
        self,
        config: ContextKeepConfig,
        *,
        store: MessageStore,
        summaries: SummaryStore,
        token_counter: TokenCounter,
        summarizer: Summarizer,
        memory: MemoryIntegrator,
        cache: ContextCache,
        event_bus: EventBus,
        pool: StorePool,
        owns_pool: bool = True,
    ) -> None:
        self._config = config
        self._store = store
        self._summaries = summaries
        self._counter = token_counter
        self._summarizer = summarizer
        self._memory = memory
        self._cache = cache
        self._event_bus = event_bus
        self._pool = pool
        self._owns_pool = owns_pool
        self._sessions: dict[str, SessionRecord] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._dirty: set[str] = set()
        self._save_tasks: set[asyncio.Task[bool]] = set()
        self._last_memory: dict[str, list[MemoryEntry]] = {}
        self._auto_save_task: asyncio.Task[None] | None = None
        self._closed = False
        self._logger = structlog.get_logger("contextkeep.session")

    @classmethod
    async def open(
        cls,
        config: ContextKeepConfig | None = None,
        *,
        db_path: str | None = None,
        llm_call: LLMCall | None = None,
        pool: StorePool | None = None,
        event_bus: EventBus | None = None,
        token_counter: TokenCounter | None = None,
    ) -> SessionManager:
        """
        Build the full stack and open the database.

        Args:
            config: Configuration. Defaults to ``ContextKeepConfig()``.
            db_path: Override database path (useful for testing). Raises
                ``ValueError`` if ``config.store.db_path`` was also changed.
            llm_call: Completion callable for summarization. Defaults to
                ``litellm.acompletion`` with ``config.summarizer.model``.
            pool: Shared connection pool. When omitted the manager owns a
                private pool and closes it in :meth:`close`.
            event_bus: Bus to publish on. A new one is created if omitted.
            token_counter: Counter to price with. Tests pass
                ``TokenCounter(force_heuristic=True)``.

        Returns:
            An open manager. Use it with ``async with`` or call :meth:`close`.
        """
        cfg = config or ContextKeepConfig()
        if db_path is not None:
            if config is not None and cfg.store.db_path != StoreConfig().db_path:
                raise ValueError(
                    "Specify db_path either via db_path= or config.store.db_path, not both."
                )
            cfg = cfg.model_copy(
                update={"store": cfg.store.model_copy(update={"db_path": db_path})}
            )

        bus = event_bus or EventBus()
        owns_pool = pool is None
        shared_pool = pool or StorePool()
        store = MessageStore(cfg.store, pool=shared_pool, event_bus=bus)
        await store.initialize()

        counter = token_counter or TokenCounter()
        cache = ContextCache(cfg.cache)
        cache.attach(bus)

        manager = cls(
            cfg,
            store=store,
            summaries=SummaryStore(store),
            token_counter=counter,
            summarizer=Summarizer(cfg.summarizer, counter, bus, llm_call=llm_call),
            memory=MemoryIntegrator(cfg.memory, counter, bus),
            cache=cache,
            event_bus=bus,
            pool=shared_pool,
            owns_pool=owns_pool,
        )
        if cfg.session.auto_save:
            manager._auto_save_task = asyncio.create_task(manager._auto_save_loop())
        return manager

    # ── Session lifecycle ──────────────────────────────────────────────────────

    async def create(
        self,
        *,
        model: str = "",
        instructions: str = "",
        title: str | None = None,
        strategy: StrategyType | StrategyConfig | None = None,
        max_tokens: int | None = None,
        memory_sources: list[MemorySource] | None = None,
        conversation_id: str | None = None,
        session_id: str | None = None,
    ) -> SessionRecord:
        """
        Create and persist a new session in the ``created`` state.

        Args:
            model: litellm-style model string used to price messages.
            instructions: System instructions reserved on every build.
            title: Optional human-readable title.
            strategy: Strategy name or full config. Defaults to
                ``config.context``.
            max_tokens: Overrides the strategy's ``max_context_tokens``.
            memory_sources: Memory files for this session. Empty means the
                default ``MEMORY.md`` in each scope root.
            conversation_id: Attach to an existing conversation.
            session_id: Explicit id; generated when omitted.

        Raises:
            DuplicateIDError: If *session_id* already exists.
        """
        if isinstance(strategy, StrategyConfig):
            strategy_config = strategy
        else:
            ctx = self._config.context
            strategy_config = StrategyConfig(
                type=strategy or ctx.strategy,
                max_context_tokens=ctx.max_tokens,
                summary_reserve_fraction=ctx.summary_reserve_fraction,
                allocation=ctx.allocation,
            )
        if max_tokens is not None:
            strategy_config = strategy_config.model_copy(update={"max_context_tokens": max_tokens})

        record = SessionRecord(
            id=session_id or make_id("sess"),
            conversation_id=conversation_id or make_id("conv"),
            strategy=strategy_config,
            memory_sources=memory_sources or [],
            model=model,
            instructions=instructions,
            title=title,
        )
        await self._store.create_session(record)
        self._sessions[record.id] = record
        self._event_bus.publish(
            ContextKeepEvent.SESSION_CREATED,
            {
                "session_id": record.id,
                "conversation_id": record.conversation_id,
                "strategy": strategy_config.type,
            },
        )
        self._logger.info(
            "session_created",
            session_id=record.id,
            strategy=strategy_config.type,
            max_tokens=strategy_config.max_context_tokens,
        )
        return record.model_copy(deep=True)

    async def activate(self, session_id: str) -> SessionRecord:
        return await self._transition(session_id, SessionStatus.ACTIVE)

    async def pause(self, session_id: str) -> SessionRecord:
        return await self._transition(session_id, SessionStatus.PAUSED)

    async def complete(self, session_id: str) -> SessionRecord:
        return await self._transition(session_id, SessionStatus.COMPLETED)

    async def archive(self, session_id: str) -> SessionRecord:
        return await self._transition(session_id, SessionStatus.ARCHIVED)

    async def get(self, session_id: str) -> SessionRecord:
        """
        Return a copy of the session's current state.

        Raises:
            SessionNotFoundError: If the session does not exist.
        """
        return (await self._load(session_id)).model_copy(deep=True)

    async def list_sessions(
        self, status: SessionStatus | None = None, *, limit: int = 100
    ) -> list[SessionRecord]:
        """List persisted sessions, most recently updated first."""
        await self._flush_dirty()
        return await self._store.list_sessions(status=status, limit=limit)

    async def delete(self, session_id: str) -> bool:
        """Permanently delete a session, its summaries and its messages."""
        async with self._lock(session_id):
            if self._save_tasks:
                await asyncio.gather(*self._save_tasks, return_exceptions=True)
            deleted = await self._store.delete_session(session_id)
            self._sessions.pop(session_id, None)
            self._dirty.discard(session_id)
            self._last_memory.pop(session_id, None)
            self._cache.invalidate(session_id)
        self._locks.pop(session_id, None)
        if deleted:
            self._event_bus.publish(ContextKeepEvent.SESSION_DELETED, {"session_id": session_id})
        return deleted

    # ── Turns ──────────────────────────────────────────────────────────────────

    def new_message(
        self,
        session_id: str,
        role: Role,
        content: str | list[MessagePart],
        *,
        agent_id: str | None = None,
        priority: int = 5,
    ) -> Message:
        """
        Create an unpriced message for *session_id*.

        Conversation, parent, timestamp ordering and price are filled in when
        the message is built or appended.
        """
        record = self._sessions.get(session_id)
        parts: list[MessagePart] = (
            [TextPart(text=content)] if isinstance(content, str) else list(content)
        )
        return Message(
            id=make_id("msg"),
            conversation_id=record.conversation_id if record else "",
            role=role,
            parts=parts,
            agent_id=agent_id,
            context_priority=priority,
        )

    async def build_context(
        self,
        session_id: str,
        new_message: Message,
        *,
        abort: asyncio.Event | None = None,
        on_delta: DeltaObserver | None = None,
    ) -> ContextResult:
        """
        Assemble the context for a new message and commit the message.

        Steps: price the message, load the chain and the active summary,
        resolve memory, apply the session's strategy, then commit the message
        and any new rolling summary in one transaction.

        Args:
            session_id: An active session.
            new_message: The message that triggered the turn.
            abort: Setting it before the commit cancels the build.
            on_delta: Receives streamed summarizer output, if any.

        Returns:
            The assembled context, ending with the committed message.

        Raises:
            InvalidTransitionError: If the session is not active.
            BudgetExceededError: If the message cannot fit even alone.
            asyncio.CancelledError: If aborted or cancelled; nothing is committed.
        """
        async with self._lock(session_id):
            started = time.perf_counter()
            record = await self._load(session_id)
            self._require_active(record, "build context")
            log = self._logger.bind(session_id=session_id)

            active_summary = await self._summaries.get_active(session_id)
            chain, _ = await self._load_chain(record)
            message = self._prepare(record, new_message, chain[-1] if chain else None)
            history = ([active_summary] if active_summary else []) + chain

            _check_abort(abort)
            memory: list[MemoryEntry] = []
            if self._config.context.memory_integration:
                memory = await self._memory.resolve(record, message, abort=abort)

            strategy_kwargs: dict[str, Any] = {
                "pricing_model": record.model,
                "conversation_id": record.conversation_id,
                "session_id": session_id,
                "on_delta": on_delta,
            }
            max_tokens = record.strategy.max_context_tokens
            try:
                strategy = make_strategy(
                    record.strategy, self._counter, self._summarizer, **strategy_kwargs
                )
                result = await strategy.apply(
                    history, message, memory, max_tokens, record.instructions, abort=abort
                )
            except BudgetExceededError as exc:
                log.error(
                    "context_budget_exceeded",
                    strategy=record.strategy.type,
                    total=exc.total,
                    limit=exc.limit,
                )
                fallback = DiscardStrategy(
                    record.strategy, self._counter, None, **strategy_kwargs
                )
                result = await fallback.apply(
                    history, message, [], max_tokens, record.instructions, abort=abort
                )

            new_summary: Message | None = None
            if (
                result.strategy == "summarize"
                and result.summary is not None
                and (active_summary is None or result.summary.id != active_summary.id)
            ):
                new_summary = result.summary

            message_count = await self._store.count_messages(record.conversation_id) + 1
            _check_abort(abort)
            async with self._store.atomic():
                await self._store.append(message, session_id=session_id)
                if new_summary is not None:
                    await self._summaries.insert(new_summary, session_id)

            record.parent_message_id = message.id
            self._count_message(record, message)
            if new_summary is not None:
                record.stats.summary_count += 1
                self._event_bus.publish(
                    ContextKeepEvent.SUMMARY_CREATED,
                    {
                        "session_id": session_id,
                        "summary_id": new_summary.id,
                        "summarized_count": new_summary.summarized_count,
                        "token_count": new_summary.tokens,
                        "supersedes_summary_id": new_summary.supersedes_summary_id,
                    },
                )
            elapsed_ms = (time.perf_counter() - started) * 1000
            record.stats.build_count += 1
            record.stats.total_build_ms += elapsed_ms
            record.touch()
            self._last_memory[session_id] = list(result.memory)

            self._cache.set(session_id, message_count, record.strategy.type, result)
            self._event_bus.publish(
                ContextKeepEvent.CONTEXT_BUILT,
                {
                    "session_id": session_id,
                    "strategy": result.strategy,
                    "total_tokens": result.total_tokens,
                    "max_tokens": result.max_tokens,
                    "kept": len(result.messages),
                    "dropped": len(result.dropped_ids),
                    "elapsed_ms": elapsed_ms,
                },
            )
            log.info(
                "context_built",
                strategy=result.strategy,
                total_tokens=result.total_tokens,
                max_tokens=result.max_tokens,
                kept=len(result.messages),
                dropped=len(result.dropped_ids),
                degraded=result.degraded,
            )
            self._mark_dirty(session_id)
            return result

    async def append_message(self, session_id: str, message: Message) -> Message:
        """
        Append a response (typically an agent's) to the active chain.

        Appends of one session are sequential; the message becomes the new
        head and is credited to its ``agent_id``.

        Returns:
            The stored, priced message.

        Raises:
            InvalidTransitionError: If the session is not active.
        """
        async with self._lock(session_id):
            record = await self._load(session_id)
            self._require_active(record, "append message")
            chain, _ = await self._load_chain(record)
            stored = self._prepare(record, message, chain[-1] if chain else None)
            await self._store.append(stored, session_id=session_id)
            record.parent_message_id = stored.id
            self._count_message(record, stored)
            record.touch()
            self._mark_dirty(session_id)
            return stored

    async def snapshot(
        self, session_id: str, *, abort: asyncio.Event | None = None
    ) -> ContextResult:
        """
        Return the session's current context without committing anything.

        Used to hand the same view to several agents. Served from the cache
        when the conversation has not changed since the last build; otherwise
        computed with the newest chain message as the anchor.
        """
        record = await self._load(session_id)
        count = await self._store.count_messages(record.conversation_id)
        cached = self._cache.get(session_id, count, record.strategy.type)
        if cached is not None:
            return cached

        chain = await self._store.get_chain(record.conversation_id, record.parent_message_id)
        max_tokens = record.strategy.max_context_tokens
        if not chain:
            return ContextResult(
                session_id=session_id, strategy=record.strategy.type, max_tokens=max_tokens
            )
        active_summary = await self._summaries.get_active(session_id)
        anchor = chain[-1]
        history = ([active_summary] if active_summary else []) + chain[:-1]
        memory: list[MemoryEntry] = []
        if self._config.context.memory_integration:
            memory = await self._memory.resolve(record, anchor, abort=abort)
        strategy = make_strategy(
            record.strategy,
            self._counter,
            self._summarizer,
            pricing_model=record.model,
            conversation_id=record.conversation_id,
            session_id=session_id,
        )
        result = await strategy.apply(
            history, anchor, memory, max_tokens, record.instructions, abort=abort
        )
        self._cache.set(session_id, count, record.strategy.type, result)
        return result

    # ── Restore and persistence ────────────────────────────────────────────────

    async def resume(self, session_id: str, *, reactivate: bool = False) -> RestoredContext:
        """
        Reload a session's chain and make it active.

        A chain whose parent links are broken or cyclic is rebuilt from the
        chronological message listing, the head is repaired to the newest
        message and ``recovered`` is set on the result.

        Args:
            session_id: Session to restore.
            reactivate: Allow resuming a completed or archived session.

        Raises:
            SessionNotFoundError: If the session does not exist.
            InvalidTransitionError: If the session is completed or archived
                and *reactivate* is False.
        """
        async with self._lock(session_id):
            record = await self._load(session_id)
            if (
                record.status in (SessionStatus.COMPLETED, SessionStatus.ARCHIVED)
                and not reactivate
            ):
                raise InvalidTransitionError(
                    session_id,
                    str(record.status),
                    str(SessionStatus.ACTIVE),
                    "pass reactivate=True to reopen it",
                )

            messages, recovered = await self._load_chain(record)
            if record.status != SessionStatus.ACTIVE:
                self._set_status(record, SessionStatus.ACTIVE)
            if recovered or record.id in self._dirty:
                record.touch()
                await self.save(session_id)

            return RestoredContext(
                session=record.model_copy(deep=True),
                messages=messages,
                active_summary=await self._summaries.get_active(session_id),
                recovered=recovered,
            )

    async def save(self, session_id: str) -> bool:
        """
        Persist the session row.

        Retries ``session.save_retries`` times with exponential backoff. On
        final failure the last good row stays in place, a warning is logged
        and ``SESSION_SAVE_FAILED`` is published.

        Returns:
            True if the row was written.

        Raises:
            SessionNotFoundError: If the session is unknown.
        """
        record = await self._load(session_id)
        attempts = self._config.session.save_retries + 1
        last_error = ""
        for attempt in range(1, attempts + 1):
            try:
                await self._store.save_session(record)
            except Exception as exc:
                last_error = str(exc) or type(exc).__name__
                self._logger.warning(
                    "session_save_failed", session_id=session_id, attempt=attempt, error=last_error
                )
                if attempt < attempts:
                    await asyncio.sleep(self._config.session.save_backoff * (2 ** (attempt - 1)))
                continue
            self._dirty.discard(session_id)
            self._event_bus.publish(
                ContextKeepEvent.SESSION_SAVED, {"session_id": session_id, "attempts": attempt}
            )
            return True

        self._logger.warning("session_save_abandoned", session_id=session_id, error=last_error)
        self._event_bus.publish(
            ContextKeepEvent.SESSION_SAVE_FAILED, {"session_id": session_id, "error": last_error}
        )
        return False

    async def export(self, session_id: str) -> dict[str, Any]:
        """Return a JSON-ready :class:`SessionSnapshot` of the session."""
        record = await self._load(session_id)
        snapshot = SessionSnapshot(
            session=record.model_copy(deep=True),
            messages=await self._store.get_messages(record.conversation_id),
            summaries=await self._summaries.list(session_id),
            memory_references=self._memory_references(record),
        )
        self._logger.info(
            "session_exported", session_id=session_id, messages=len(snapshot.messages)
        )
        return snapshot.model_dump(mode="json")

    async def export_json(self, session_id: str, *, indent: int | None = None) -> str:
        return json.dumps(await self.export(session_id), indent=indent)

    async def import_snapshot(
        self, snapshot: dict[str, Any] | str | SessionSnapshot
    ) -> SessionRecord:
        """
        Recreate a session from an exported snapshot, preserving every id.

        Raises:
            ValueError: If the snapshot's ``schema_version`` is not supported.
            DuplicateIDError: If the session or a message already exists.
        """
        if isinstance(snapshot, str):
            snapshot = json.loads(snapshot)
        if isinstance(snapshot, dict):
            version = snapshot.get("schema_version")
            if version != SCHEMA_VERSION:
                raise ValueError(
                    f"Unsupported snapshot schema_version {version!r}; expected {SCHEMA_VERSION}"
                )
            snapshot = SessionSnapshot.model_validate(snapshot)
        elif snapshot.schema_version != SCHEMA_VERSION:
            raise ValueError(
                f"Unsupported snapshot schema_version {snapshot.schema_version!r}; "
                f"expected {SCHEMA_VERSION}"
            )

        record = snapshot.session.model_copy(deep=True)
        async with self._store.atomic():
            await self._store.create_session(record)
            for message in snapshot.messages:
                await self._store.append(message, session_id=record.id)
            for summary in snapshot.summaries:
                await self._summaries.insert(summary, record.id)

        self._sessions[record.id] = record
        self._logger.info(
            "session_imported",
            session_id=record.id,
            messages=len(snapshot.messages),
            summaries=len(snapshot.summaries),
        )
        return record.model_copy(deep=True)

    async def close(self) -> None:
        """
        Stop auto-save, flush dirty sessions and release the database.

        Pending background saves are awaited first so no write is cut off.
        """
        if self._closed:
            return
        self._closed = True
        if self._auto_save_task is not None:
            self._auto_save_task.cancel()
            try:
                await self._auto_save_task
            except asyncio.CancelledError:
                pass
            self._auto_save_task = None
        if self._save_tasks:
            await asyncio.gather(*self._save_tasks, return_exceptions=True)
        await self._flush_dirty()
        await self._store.close()
        if self._owns_pool:
            await self._pool.close_all()
        self._logger.info("session_manager_closed")

    async def __aenter__(self) -> SessionManager:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    @property
    def event_bus(self) -> EventBus:
        return self._event_bus

    @property
    def cache(self) -> ContextCache:
        return self._cache

    @property
    def store(self) -> MessageStore:
        return self._store

    @property
    def summaries(self) -> SummaryStore:
        return self._summaries

    def subscribe(self, event: ContextKeepEvent, handler: Any) -> None:
        """Convenience wrapper for ``manager.event_bus.subscribe()``."""
        self._event_bus.subscribe(event, handler)

    # ── Internals ──────────────────────────────────────────────────────────────

    def _lock(self, session_id: str) -> asyncio.Lock:
        return self._locks.setdefault(session_id, asyncio.Lock())

    async def _load(self, session_id: str) -> SessionRecord:
        record = self._sessions.get(session_id)
        if record is None:
            record = await self._store.get_session(session_id)
            self._sessions[session_id] = record
        return record

    async def _transition(self, session_id: str, target: SessionStatus) -> SessionRecord:
        async with self._lock(session_id):
            record = await self._load(session_id)
            if target not in ALLOWED_TRANSITIONS[record.status]:
                raise InvalidTransitionError(session_id, str(record.status), str(target))
            self._set_status(record, target)
            await self.save(session_id)
            return record.model_copy(deep=True)

    def _set_status(self, record: SessionRecord, target: SessionStatus) -> None:
        previous = record.status
        record.status = target
        record.touch()
        self._dirty.add(record.id)
        self._event_bus.publish(
            ContextKeepEvent.SESSION_STATUS_CHANGED,
            {"session_id": record.id, "previous": str(previous), "status": str(target)},
        )
        self._logger.info(
            "session_status_changed", session_id=record.id, previous=previous, status=target
        )

    @staticmethod
    def _require_active(record: SessionRecord, action: str) -> None:
        if record.status != SessionStatus.ACTIVE:
            raise InvalidTransitionError(
                record.id, str(record.status), action, "the session must be active"
            )

    async def _load_chain(self, record: SessionRecord) -> tuple[list[Message], bool]:
        """
        Load the chain ending at the session's head.

        A session without a head sees the whole conversation, so a session
        that joins an existing conversation continues from its newest message.
        A head whose parent links are broken or cyclic is repaired to the
        newest message of the chronological listing.

        Returns:
            The chain in chronological order and whether it was recovered.
        """
        if record.parent_message_id is None:
            return await self._store.get_messages(record.conversation_id), False
        try:
            chain = await self._store.follow_chain(
                record.conversation_id, record.parent_message_id
            )
        except SessionCorruptionError as exc:
            messages = await self._store.get_messages(record.conversation_id)
            record.parent_message_id = messages[-1].id if messages else None
            record.touch()
            self._dirty.add(record.id)
            self._cache.invalidate(record.id)
            self._logger.warning(
                "session_chain_recovered",
                session_id=record.id,
                reason=exc.reason,
                message_id=exc.message_id,
                message_count=len(messages),
            )
            self._event_bus.publish(
                ContextKeepEvent.SESSION_RECOVERED,
                {"session_id": record.id, "reason": exc.reason, "message_count": len(messages)},
            )
            return messages, True
        return chain, False

    def _prepare(self, record: SessionRecord, message: Message, head: Message | None) -> Message:
        """Attach *message* to the chain head, order its timestamp and price it."""
        update: dict[str, Any] = {
            "conversation_id": record.conversation_id,
            "parent_id": head.id if head is not None else record.parent_message_id,
        }
        if head is not None and message.created_at <= head.created_at:
            update["created_at"] = head.created_at + 1
        prepared = message.model_copy(update=update)
        provider, model = resolve_provider(record.model)
        return self._counter.price(prepared, provider, model)

    @staticmethod
    def _count_message(record: SessionRecord, message: Message) -> None:
        record.stats.message_count += 1
        record.stats.token_count += message.tokens
        if message.agent_id:
            participant = record.participant(message.agent_id)
            participant.message_count += 1
            participant.token_count += message.tokens
            participant.last_active_at = message.created_at

    def _memory_references(self, record: SessionRecord) -> list[MemoryReference]:
        entries = self._last_memory.get(record.id)
        if entries:
            return [MemoryReference(scope=e.scope, path=e.path, mtime=e.mtime) for e in entries]
        sources = record.memory_sources or self._memory.default_sources(record)
        return [MemoryReference(scope=s.scope, path=s.path) for s in sources]

    def _mark_dirty(self, session_id: str) -> None:
        """Record a change and save it in the background."""
        self._dirty.add(session_id)
        task = asyncio.create_task(self._background_save(session_id))
        self._save_tasks.add(task)
        task.add_done_callback(self._save_tasks.discard)

    async def _background_save(self, session_id: str) -> bool:
        try:
            return await self.save(session_id)
        except SessionNotFoundError:
            self._dirty.discard(session_id)
            return False

    async def _flush_dirty(self) -> None:
        for session_id in list(self._dirty):
            try:
                await self.save(session_id)
            except SessionNotFoundError:
                self._dirty.discard(session_id)

    async def _auto_save_loop(self) -> None:
        interval = self._config.session.auto_save_interval
        while True:
            await asyncio.sleep(interval)
            if self._dirty:
                self._logger.debug("auto_save_tick", dirty=len(self._dirty))
            await self._flush_dirty()


def _check_abort(abort: asyncio.Event | None) -> None:
    if abort is not None and abort.is_set():
        raise asyncio.CancelledError("Context build aborted")
