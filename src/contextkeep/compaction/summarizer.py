"""Rolling summaries via an LLM, with a deterministic fallback."""

from __future__ import annotations

import asyncio
import hashlib
import json
import os
from collections import OrderedDict
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from typing import Any

import structlog
from jinja2 import Template

from contextkeep.context.render import render_transcript
from contextkeep.errors import SummarizationFailure
from contextkeep.events.bus import ContextKeepEvent, EventBus
from contextkeep.models.config import SummarizerConfig
from contextkeep.models.message import Message, TextPart
from contextkeep.tokens.counter import TokenCounter, resolve_provider

LLMCall = Callable[..., Awaitable[str | AsyncIterator[str]] | AsyncIterator[str]]
"""``llm_call(model=, messages=, max_tokens=)`` returning text or a stream of text deltas."""

DeltaObserver = Callable[[str], None]

SUMMARY_PROMPT = """\
You are maintaining a rolling summary of a long conversation so that it can
continue inside a limited context window. The summary replaces the messages
below, so preserve every goal, decision, constraint, open question, file path
and tool result that later turns may depend on. Attribute statements to the
agent that made them when more than one agent took part.

Keep the summary under {{ max_tokens }} tokens. Write short paragraphs or
bullets; do not add commentary about the summarization itself.
{% if previous_summary %}
Fold this existing summary of even earlier turns into your new summary:

<previous_summary>
{{ previous_summary }}
</previous_summary>
{% endif %}
<conversation>
{{ transcript }}
</conversation>
"""

NAIVE_HEADER = "[Summary unavailable; earlier messages concatenated and truncated]"


def make_llm_call(model: str) -> LLMCall:
    """Return the default completion call used for summarization."""

    async def _call(*, model: str = model, messages: list[dict[str, str]], max_tokens: int) -> str:
        if os.environ.get("CONTEXTKEEP_MOCK_LLM") == "1":
            content = messages[0]["content"] if messages else ""
            conv_text = ""
            if "<conversation>" in content:
                conv_text = content.split("<conversation>")[1].split("</conversation>")[0].strip()
            lines = [ln.strip() for ln in conv_text.splitlines() if ln.strip()]
            bullets = "\n".join(f"- {ln[:120]}" for ln in lines[:8]) or "- (no messages)"
            return "Earlier in this conversation:\n" + bullets + "\n"

        import litellm

        response = await litellm.acompletion(
            model=model,
            messages=messages,
            max_tokens=max_tokens,
            temperature=0.2,
        )
        return response.choices[0].message.content or ""

    return _call


class Summarizer:
    """
    Compresses a run of messages plus the previous rolling summary into one
    new summary message.

    Guarantees:
    - The returned summary prices at ``<= max_tokens`` for the pricing model.
    - The same inputs produce the same summary: results are cached by a
      content hash, and the summary id is derived from that hash, so a repeat
      build neither calls the provider nor changes what is stored.
    - Provider failures are retried with exponential backoff; once retries are
      exhausted the summary degrades to a naive concatenation
      (``summary_method="naive"``) and ``SUMMARIZATION_DEGRADED`` is published.
      Degraded summaries are not cached, so the next build tries again.
    - Cancellation (an ``abort`` event or task cancellation) propagates.

    Example::

        summarizer = Summarizer(SummarizerConfig(), TokenCounter())
        summary = await summarizer.summarize(
            dropped,
            previous_summary=previous,
            max_tokens=614,
            conversation_id=session.conversation_id,
        )
    """

    def __init__(
        self,
        config: SummarizerConfig,
        token_counter: TokenCounter,
        event_bus: EventBus | None = None,
        llm_call: LLMCall | None = None,
    ) -> None:
        self._config = config
        self._counter = token_counter
        self._event_bus = event_bus
        self._llm_call = llm_call or make_llm_call(config.model)
        self._template = Template(config.prompt or SUMMARY_PROMPT)
        self._cache: OrderedDict[str, Message] = OrderedDict()
        self._logger = structlog.get_logger("contextkeep.summarizer")

    async def summarize(
        self,
        messages: Sequence[Message],
        previous_summary: Message | None = None,
        max_tokens: int = 1024,
        *,
        conversation_id: str,
        pricing_model: str = "",
        abort: asyncio.Event | None = None,
        on_delta: DeltaObserver | None = None,
    ) -> Message:
        """
        Produce a summary covering *previous_summary* plus *messages*.

        Args:
            messages: The newly dropped messages, chronological.
            previous_summary: The rolling summary they extend, if any.
            max_tokens: Upper bound on the summary's priced size.
            conversation_id: Conversation the summary belongs to.
            pricing_model: litellm-style model string the summary is priced for.
            abort: Checked before each provider attempt.
            on_delta: Receives streamed text deltas, if the provider streams.

        Returns:
            A priced summary message with ``summarized_count`` equal to the
            previous summary's count plus ``len(messages)``.

        Raises:
            asyncio.CancelledError: If aborted.
        """
        _check_abort(abort)
        key = self._cache_key(messages, previous_summary, max_tokens, pricing_model)
        cached = self._cache.get(key)
        if cached is not None:
            self._cache.move_to_end(key)
            self._logger.debug("summary_cache_hit", summary_id=cached.id)
            return cached

        prompt = self._template.render(
            max_tokens=max_tokens,
            previous_summary=previous_summary.text_content() if previous_summary else "",
            transcript=render_transcript(messages),
        )

        method = "llm"
        try:
            text = await self._complete(prompt, max_tokens, abort=abort, on_delta=on_delta)
        except SummarizationFailure as exc:
            self._logger.warning(
                "summarization_degraded",
                conversation_id=conversation_id,
                attempts=exc.attempts,
                error=exc.last_error,
            )
            if self._event_bus is not None:
                self._event_bus.publish(
                    ContextKeepEvent.SUMMARIZATION_DEGRADED,
                    {
                        "conversation_id": conversation_id,
                        "error": exc.last_error,
                        "attempts": exc.attempts,
                    },
                )
            text = self.naive_text(messages, previous_summary)
            method = "naive"

        summary = self._build(
            key,
            text,
            messages,
            previous_summary,
            max_tokens,
            conversation_id=conversation_id,
            pricing_model=pricing_model,
            method=method,
        )
        if method == "llm":
            self._cache[key] = summary
            if len(self._cache) > self._config.cache_size:
                self._cache.popitem(last=False)
        self._logger.info(
            "summary_created",
            summary_id=summary.id,
            method=method,
            summarized_count=summary.summarized_count,
            tokens=summary.token_count,
            max_tokens=max_tokens,
        )
        return summary

    def naive_text(self, messages: Sequence[Message], previous_summary: Message | None) -> str:
        """Deterministic fallback: previous summary and transcript, concatenated."""
        blocks = [NAIVE_HEADER]
        if previous_summary is not None:
            blocks.append(previous_summary.text_content())
        blocks.append(render_transcript(messages, max_chars=500))
        return "\n\n".join(b for b in blocks if b)

    # ── Internals ──────────────────────────────────────────────────────────────

    async def _complete(
        self,
        prompt: str,
        max_tokens: int,
        *,
        abort: asyncio.Event | None,
        on_delta: DeltaObserver | None,
    ) -> str:
        attempts = self._config.max_retries + 1
        last_error = ""
        for attempt in range(1, attempts + 1):
            _check_abort(abort)
            try:
                result = self._llm_call(
                    model=self._config.model,
                    messages=[{"role": "user", "content": prompt}],
                    max_tokens=max_tokens,
                )
                text = await _collect(result, on_delta)
                if not text.strip():
                    raise ValueError("provider returned an empty summary")
                return text
            except Exception as exc:
                last_error = str(exc) or type(exc).__name__
                self._logger.warning("summarizer_llm_error", attempt=attempt, error=last_error)
                if attempt < attempts:
                    delay = min(
                        self._config.backoff_base * (2 ** (attempt - 1)),
                        self._config.backoff_max,
                    )
                    await asyncio.sleep(delay)
        raise SummarizationFailure(attempts, last_error)

    def _build(
        self,
        key: str,
        text: str,
        messages: Sequence[Message],
        previous_summary: Message | None,
        max_tokens: int,
        *,
        conversation_id: str,
        pricing_model: str,
        method: str,
    ) -> Message:
        provider, model = resolve_provider(pricing_model)
        text = self._counter.truncate(text.strip(), max_tokens, provider, model)
        summary = Message(
            id=f"sum_{key[:26]}" if method == "llm" else f"sum_{key[:21]}naive",
            conversation_id=conversation_id,
            role="system",
            parts=[TextPart(text=text)],
            context_type="summary",
            context_priority=10,
            summarized_count=(previous_summary.summarized_count if previous_summary else 0)
            + len(messages),
            supersedes_summary_id=previous_summary.id if previous_summary else None,
            summary_method=method,  # type: ignore[arg-type]
        )
        return self._counter.price(summary, provider, model)

    def _cache_key(
        self,
        messages: Sequence[Message],
        previous_summary: Message | None,
        max_tokens: int,
        pricing_model: str,
    ) -> str:
        payload: dict[str, Any] = {
            "model": self._config.model,
            "pricing_model": pricing_model,
            "max_tokens": max_tokens,
            "previous": (
                [previous_summary.id, previous_summary.text_content()] if previous_summary else None
            ),
            "messages": [
                [m.id, [p.serialized() for p in m.parts]] for m in messages
            ],
        }
        return hashlib.sha256(json.dumps(payload, sort_keys=True).encode()).hexdigest()


async def _collect(result: Any, on_delta: DeltaObserver | None) -> str:
    """Resolve a provider result into final text, forwarding stream deltas."""
    if not hasattr(result, "__aiter__"):
        result = await result
    if isinstance(result, str):
        return result
    chunks: list[str] = []
    async for delta in result:
        if on_delta is not None:
            on_delta(delta)
        chunks.append(delta)
    return "".join(chunks)


def _check_abort(abort: asyncio.Event | None) -> None:
    if abort is not None and abort.is_set():
        raise asyncio.CancelledError("Context build aborted")
