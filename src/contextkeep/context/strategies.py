"""Context window strategies: discard, summarize, hybrid."""

from __future__ import annotations

import asyncio
import math
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Literal

import structlog

from contextkeep.errors import BudgetExceededError
from contextkeep.models.config import StrategyType
from contextkeep.models.context import ContextResult, MemoryEntry
from contextkeep.models.message import Message
from contextkeep.models.session import StrategyConfig
from contextkeep.tokens.counter import TokenCounter, resolve_provider

if TYPE_CHECKING:
    from contextkeep.compaction.summarizer import DeltaObserver, Summarizer

logger = structlog.get_logger("contextkeep.context")

Bucket = Literal["critical", "important", "normal", "buffer"]

BUCKET_ORDER: tuple[Bucket, ...] = ("critical", "important", "normal", "buffer")
"""Hybrid buckets from highest to lowest priority."""


def bucket_for(priority: int) -> Bucket:
    """Map a context priority to its hybrid bucket. Lower bounds are inclusive."""
    if priority >= 8:
        return "critical"
    if priority >= 6:
        return "important"
    if priority >= 3:
        return "normal"
    return "buffer"


@dataclass
class _Fill:
    kept: list[Message] = field(default_factory=list)
    dropped: list[Message] = field(default_factory=list)
    used: int = 0


def fill_newest_first(messages: Sequence[Message], capacity: int) -> _Fill:
    """
    Keep messages from newest to oldest while the running total fits.

    Stops at the first message that does not fit; it and everything older are
    dropped. Both lists come back in chronological order.
    """
    fill = _Fill()
    cut = len(messages)
    for index in range(len(messages) - 1, -1, -1):
        tokens = messages[index].tokens
        if fill.used + tokens > capacity:
            break
        fill.used += tokens
        cut = index
    fill.kept = list(messages[cut:])
    fill.dropped = list(messages[:cut])
    return fill


class ContextStrategy(ABC):
    """
    Decides which history fits a token budget for one turn.

    Every strategy reserves the instructions and the new message first and
    then spends the remainder. The returned :class:`ContextResult` always
    satisfies ``total_tokens <= max_tokens``; a violation is a defect and
    raises :class:`BudgetExceededError` from :meth:`_verify`.
    """

    name: StrategyType

    def __init__(
        self,
        config: StrategyConfig,
        token_counter: TokenCounter,
        summarizer: Summarizer | None = None,
        *,
        pricing_model: str = "",
        conversation_id: str = "",
        session_id: str = "",
        on_delta: DeltaObserver | None = None,
    ) -> None:
        self._config = config
        self._counter = token_counter
        self._summarizer = summarizer
        self._pricing_model = pricing_model
        self._conversation_id = conversation_id
        self._session_id = session_id
        self._on_delta = on_delta
        self._logger = logger.bind(strategy=self.name, session_id=session_id or None)

    @abstractmethod
    async def apply(
        self,
        history: Sequence[Message],
        new_message: Message,
        memory: Sequence[MemoryEntry],
        max_tokens: int,
        instructions: str = "",
        *,
        abort: asyncio.Event | None = None,
    ) -> ContextResult:
        """
        Assemble the context for one turn.

        Args:
            history: Prior messages in chain order. May contain the active
                rolling summary; only the summarize strategy uses it.
            new_message: The priced message that triggered the build.
            memory: Resolved memory entries, in priority order.
            max_tokens: Hard budget for the whole result.
            instructions: System instructions, reserved before anything else.
            abort: Checked before summarization.

        Raises:
            BudgetExceededError: If instructions and the new message alone
                exceed *max_tokens*, or the result fails verification.
            asyncio.CancelledError: If aborted.
        """

    # ── Shared steps ───────────────────────────────────────────────────────────

    def _reserve(self, new_message: Message, instructions: str, max_tokens: int) -> tuple[int, int]:
        """Return ``(instructions_tokens, remaining)`` after the fixed reservations."""
        provider, model = resolve_provider(self._pricing_model)
        instructions_tokens = self._counter.count_text(instructions, provider, model)
        fixed = instructions_tokens + new_message.tokens
        if fixed > max_tokens:
            raise BudgetExceededError(fixed, max_tokens, self.name)
        return instructions_tokens, max_tokens - fixed

    @staticmethod
    def _fit_memory(memory: Sequence[MemoryEntry], capacity: int) -> tuple[list[MemoryEntry], int]:
        """Take memory entries in order while they fit."""
        kept: list[MemoryEntry] = []
        used = 0
        for entry in memory:
            if used + entry.token_count > capacity:
                break
            kept.append(entry)
            used += entry.token_count
        return kept, used

    async def _summarize(
        self,
        messages: Sequence[Message],
        previous: Message | None,
        max_tokens: int,
        abort: asyncio.Event | None,
    ) -> Message:
        if self._summarizer is None:
            raise RuntimeError(f"{self.name} strategy requires a summarizer")
        if abort is not None and abort.is_set():
            raise asyncio.CancelledError("Context build aborted")
        return await self._summarizer.summarize(
            messages,
            previous_summary=previous,
            max_tokens=max_tokens,
            conversation_id=self._conversation_id,
            pricing_model=self._pricing_model,
            abort=abort,
            on_delta=self._on_delta,
        )

    def _verify(self, result: ContextResult) -> ContextResult:
        """Enforce the budget invariant on a finished result."""
        computed = result.computed_total()
        if computed != result.total_tokens or computed > result.max_tokens:
            raise BudgetExceededError(computed, result.max_tokens, self.name)
        self._logger.debug(
            "context_assembled",
            kept=len(result.messages),
            dropped=len(result.dropped_ids),
            summaries=len(result.summaries),
            memory=len(result.memory),
            total_tokens=result.total_tokens,
            max_tokens=result.max_tokens,
        )
        return result

    def _result(
        self,
        *,
        kept: list[Message],
        new_message: Message,
        dropped: list[Message],
        summaries: list[Message],
        memory: list[MemoryEntry],
        instructions: str,
        instructions_tokens: int,
        max_tokens: int,
    ) -> ContextResult:
        messages = [*kept, new_message]
        total = (
            instructions_tokens
            + sum(m.tokens for m in messages)
            + sum(s.tokens for s in summaries)
            + sum(e.token_count for e in memory)
        )
        return self._verify(
            ContextResult(
                session_id=self._session_id,
                strategy=self.name,
                max_tokens=max_tokens,
                messages=messages,
                dropped_ids=[m.id for m in dropped],
                summaries=summaries,
                memory=memory,
                instructions=instructions,
                instructions_tokens=instructions_tokens,
                total_tokens=total,
                degraded=any(s.summary_method == "naive" for s in summaries),
            )
        )


# ── Discard ────────────────────────────────────────────────────────────────────


class DiscardStrategy(ContextStrategy):
    """Keep the newest messages that fit; drop everything older. No summaries."""

    name: StrategyType = "discard"

    async def apply(
        self,
        history: Sequence[Message],
        new_message: Message,
        memory: Sequence[MemoryEntry],
        max_tokens: int,
        instructions: str = "",
        *,
        abort: asyncio.Event | None = None,
    ) -> ContextResult:
        instructions_tokens, remaining = self._reserve(new_message, instructions, max_tokens)
        kept_memory, memory_used = self._fit_memory(memory, remaining)
        messages = [m for m in history if not m.is_summary]
        fill = fill_newest_first(messages, remaining - memory_used)
        return self._result(
            kept=fill.kept,
            new_message=new_message,
            dropped=fill.dropped,
            summaries=[],
            memory=kept_memory,
            instructions=instructions,
            instructions_tokens=instructions_tokens,
            max_tokens=max_tokens,
        )


# ── Summarize ──────────────────────────────────────────────────────────────────


class SummarizeStrategy(ContextStrategy):
    """
    Fold dropped history into a rolling summary.

    The latest summary in the history covers the first ``summarized_count``
    non-summary messages; those never come back verbatim. When the rest does
    not fit, ``floor(max_tokens * summary_reserve_fraction)`` tokens are set
    aside, the newest messages fill what is left, and the messages that fell
    out are merged with the previous summary into a new one no larger than
    the reserve.
    """

    name: StrategyType = "summarize"

    async def apply(
        self,
        history: Sequence[Message],
        new_message: Message,
        memory: Sequence[MemoryEntry],
        max_tokens: int,
        instructions: str = "",
        *,
        abort: asyncio.Event | None = None,
    ) -> ContextResult:
        instructions_tokens, remaining = self._reserve(new_message, instructions, max_tokens)
        kept_memory, memory_used = self._fit_memory(memory, remaining)
        remaining -= memory_used

        previous: Message | None = None
        messages: list[Message] = []
        for message in history:
            if message.is_summary:
                previous = message
            else:
                messages.append(message)
        covered = min(previous.summarized_count, len(messages)) if previous else 0
        candidates = messages[covered:]
        uncovered = sum(m.tokens for m in candidates)
        previous_tokens = previous.tokens if previous else 0

        common = {
            "new_message": new_message,
            "memory": kept_memory,
            "instructions": instructions,
            "instructions_tokens": instructions_tokens,
            "max_tokens": max_tokens,
        }

        if uncovered + previous_tokens <= remaining:
            return self._result(
                kept=candidates,
                dropped=[],
                summaries=[previous] if previous else [],
                **common,  # type: ignore[arg-type]
            )

        reserve = min(math.floor(max_tokens * self._config.summary_reserve_fraction), remaining)
        if reserve <= 0:
            fill = fill_newest_first(candidates, remaining)
            return self._result(
                kept=fill.kept,
                dropped=fill.dropped,
                summaries=[],
                **common,  # type: ignore[arg-type]
            )

        fill = fill_newest_first(candidates, remaining - reserve)
        if fill.dropped:
            summary = await self._summarize(fill.dropped, previous, reserve, abort)
        elif previous is not None and previous.tokens > reserve:
            self._logger.info(
                "summary_rebounded", summary_id=previous.id, tokens=previous.tokens, reserve=reserve
            )
            summary = await self._summarize([], previous, reserve, abort)
        else:
            summary = previous

        return self._result(
            kept=fill.kept,
            dropped=fill.dropped,
            summaries=[summary] if summary else [],
            **common,  # type: ignore[arg-type]
        )


# ── Hybrid ─────────────────────────────────────────────────────────────────────


class HybridStrategy(ContextStrategy):
    """
    Priority-bucketed allocation.

    The budget left after instructions and the new message is split between
    memory and four priority buckets (see :class:`HybridAllocation`). Unused
    memory capacity goes to the buffer bucket. Buckets are filled from the
    highest priority down:

    - capacity a bucket leaves unused passes to the next bucket;
    - a bucket whose messages do not fit first borrows capacity from the
      lower buckets, lowest first;
    - whatever still does not fit is summarized inside that bucket, and every
      lower bucket is dropped.

    So a message is never dropped while a lower-priority message is kept.
    Summaries produced here are ephemeral and are not persisted.
    """

    name: StrategyType = "hybrid"

    def capacities(self, remaining: int) -> dict[str, int]:
        """Split *remaining* tokens between memory and the buckets."""
        allocation = self._config.allocation
        caps = {
            "memory": math.floor(remaining * allocation.memory),
            "critical": math.floor(remaining * allocation.critical),
            "important": math.floor(remaining * allocation.important),
            "normal": math.floor(remaining * allocation.normal),
        }
        caps["buffer"] = remaining - sum(caps.values())
        return caps

    async def apply(
        self,
        history: Sequence[Message],
        new_message: Message,
        memory: Sequence[MemoryEntry],
        max_tokens: int,
        instructions: str = "",
        *,
        abort: asyncio.Event | None = None,
    ) -> ContextResult:
        instructions_tokens, remaining = self._reserve(new_message, instructions, max_tokens)
        caps = self.capacities(remaining)
        kept_memory, memory_used = self._fit_memory(memory, caps["memory"])
        caps["buffer"] += caps["memory"] - memory_used

        messages = [m for m in history if not m.is_summary]
        position = {m.id: i for i, m in enumerate(messages)}
        members: dict[Bucket, list[Message]] = {b: [] for b in BUCKET_ORDER}
        for message in messages:
            members[bucket_for(message.context_priority)].append(message)

        kept: list[Message] = []
        dropped: list[Message] = []
        summaries: list[Message] = []
        carry = 0
        overflowed = False

        for index, bucket in enumerate(BUCKET_ORDER):
            ranked = sorted(
                members[bucket],
                key=lambda m: (m.context_priority, m.created_at, position[m.id]),
                reverse=True,
            )
            if overflowed:
                dropped.extend(ranked)
                continue

            capacity = caps[bucket] + carry
            demand = sum(m.tokens for m in ranked)
            if demand > capacity:
                for lower in reversed(BUCKET_ORDER[index + 1 :]):
                    take = min(caps[lower], demand - capacity)
                    caps[lower] -= take
                    capacity += take
                    if capacity >= demand:
                        break

            if demand <= capacity:
                kept.extend(ranked)
                carry = capacity - demand
                continue

            overflowed = True
            reserve = (
                math.floor(capacity * self._config.summary_reserve_fraction)
                if self._summarizer is not None
                else 0
            )
            taken, used = [], 0
            for message in ranked:
                if used + message.tokens > capacity - reserve:
                    break
                taken.append(message)
                used += message.tokens
            overflow = ranked[len(taken) :]
            kept.extend(taken)
            dropped.extend(overflow)
            self._logger.info(
                "bucket_overflow",
                bucket=bucket,
                capacity=capacity,
                demand=demand,
                kept=len(taken),
                overflow=len(overflow),
            )
            if overflow and reserve > 0:
                chronological = sorted(overflow, key=lambda m: position[m.id])
                summaries.append(await self._summarize(chronological, None, reserve, abort))

        kept.sort(key=lambda m: position[m.id])
        dropped.sort(key=lambda m: position[m.id])
        return self._result(
            kept=kept,
            new_message=new_message,
            dropped=dropped,
            summaries=summaries,
            memory=kept_memory,
            instructions=instructions,
            instructions_tokens=instructions_tokens,
            max_tokens=max_tokens,
        )


STRATEGIES: dict[str, type[ContextStrategy]] = {
    "discard": DiscardStrategy,
    "summarize": SummarizeStrategy,
    "hybrid": HybridStrategy,
}


def make_strategy(
    config: StrategyConfig,
    token_counter: TokenCounter,
    summarizer: Summarizer | None = None,
    **kwargs: object,
) -> ContextStrategy:
    """Instantiate the strategy named by ``config.type``."""
    strategy_cls = STRATEGIES[config.type]
    return strategy_cls(config, token_counter, summarizer, **kwargs)  # type: ignore[arg-type]
