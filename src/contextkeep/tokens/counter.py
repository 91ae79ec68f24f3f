"""Per-provider token counting with caching and heuristic fallback."""

from __future__ import annotations

import hashlib
from collections.abc import Sequence
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

import structlog

from contextkeep.errors import TokenCountError
from contextkeep.models.message import Message, MessagePart, TextPart

logger = structlog.get_logger("contextkeep.tokens")


class Provider(StrEnum):
    """Model vendors with distinct token pricing rules."""

    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class PricingRule:
    """How one provider's models are priced.

    ``models`` maps a model-name prefix to a tiktoken encoding name, or to
    ``None`` when the provider publishes no local tokenizer and the
    ``chars_per_token`` ratio is used instead.
    """

    chars_per_token: int
    message_overhead: int
    models: tuple[tuple[str, str | None], ...] = ()

    def match(self, model: str) -> tuple[bool, str | None]:
        for prefix, encoding in self.models:
            if model.startswith(prefix):
                return True, encoding
        return False, None


PRICING: dict[Provider, PricingRule] = {
    Provider.OPENAI: PricingRule(
        chars_per_token=4,
        message_overhead=4,
        models=(
            ("gpt-4o", "o200k_base"),
            ("gpt-4.1", "o200k_base"),
            ("gpt-5", "o200k_base"),
            ("o1", "o200k_base"),
            ("o3", "o200k_base"),
            ("o4", "o200k_base"),
            ("gpt-4", "cl100k_base"),
            ("gpt-3.5", "cl100k_base"),
        ),
    ),
    Provider.ANTHROPIC: PricingRule(
        chars_per_token=3,
        message_overhead=5,
        models=(("claude", None),),
    ),
    Provider.GOOGLE: PricingRule(
        chars_per_token=4,
        message_overhead=4,
        models=(("gemini", None),),
    ),
}

FALLBACK_RULE = PricingRule(chars_per_token=4, message_overhead=4)
"""Heuristic used when a provider/model pair is unrecognized."""


def resolve_provider(model: str) -> tuple[Provider, str]:
    """
    Split a litellm-style model string into ``(provider, model_name)``.

    Supports strings like ``anthropic/claude-opus-4-6``, ``gpt-4o`` and
    ``openai/gpt-4-turbo``. Unknown vendors map to ``Provider.UNKNOWN``.
    """
    lower = model.lower()
    if "/" in lower:
        prefix, name = lower.split("/", 1)
        try:
            return Provider(prefix), name
        except ValueError:
            lower = name
    if lower.startswith("claude"):
        return Provider.ANTHROPIC, lower
    if lower.startswith("gemini"):
        return Provider.GOOGLE, lower
    matched, _ = PRICING[Provider.OPENAI].match(lower)
    if matched:
        return Provider.OPENAI, lower
    return Provider.UNKNOWN, lower


class TokenCounter:
    """
    Deterministic token accounting per ``(content, provider, model)``.

    Priority order:
    1. tiktoken for recognised OpenAI model families
    2. The provider's chars-per-token ratio for recognised non-OpenAI models
    3. ``len // 4`` per part plus the provider's overhead for everything else

    Case 3 is reached through a :class:`TokenCountError`, which ``count()``
    logs and recovers from.

    Caching:
    - Encoder objects are cached by encoding name (one load per process).
    - Counts are cached by SHA-256 of the serialized parts plus provider and
      model. Stored content never changes, so entries are never invalidated.
    """

    def __init__(self, *, force_heuristic: bool = False) -> None:
        self._encoder_cache: dict[str, Any] = {}
        self._count_cache: dict[str, int] = {}
        self._warned: set[tuple[str, str]] = set()
        self._force_heuristic = force_heuristic
        """Skip tiktoken entirely; tests set this to avoid encoder downloads."""

    # ── Public API ─────────────────────────────────────────────────────────────

    def count(
        self,
        parts: Sequence[MessagePart],
        provider: Provider | str,
        model: str,
    ) -> int:
        """
        Count tokens for an ordered list of message parts.

        Args:
            parts: The message's content parts. Aggregation is additive; tool
                parts are priced on their canonical JSON serialization.
            provider: Provider tag (or its string value).
            model: Model name without the provider prefix.

        Returns:
            Token count including the provider's per-message overhead, or 0
            when every part is empty.
        """
        provider = self._coerce_provider(provider)
        key = self._cache_key(parts, provider, model)
        cached = self._count_cache.get(key)
        if cached is not None:
            return cached

        try:
            total = self._count_exact(parts, provider, model)
        except TokenCountError as exc:
            if (provider, model) not in self._warned:
                self._warned.add((provider, model))
                logger.warning(
                    "token_count_heuristic_fallback",
                    provider=str(provider),
                    model=model,
                    reason=exc.reason,
                )
            total = self._count_heuristic(parts, provider)

        self._count_cache[key] = total
        return total

    def count_text(self, text: str, provider: Provider | str, model: str) -> int:
        """Count tokens for a bare string priced as one message."""
        if not text:
            return 0
        return self.count([TextPart(text=text)], provider, model)

    def count_for(self, parts: Sequence[MessagePart], model_string: str) -> int:
        """Count using a litellm-style model string such as ``openai/gpt-4o``."""
        provider, model = resolve_provider(model_string)
        return self.count(parts, provider, model)

    def price(self, message: Message, provider: Provider | str, model: str) -> Message:
        """
        Return *message* with ``token_count`` filled in.

        Already-priced messages are returned unchanged; a message is priced
        exactly once and is immutable afterwards.
        """
        if message.token_count is not None:
            return message
        provider = self._coerce_provider(provider)
        return message.model_copy(
            update={
                "token_count": self.count(message.parts, provider, model),
                "token_provider": str(provider),
                "token_model": model,
            }
        )

    def truncate(self, text: str, max_tokens: int, provider: Provider | str, model: str) -> str:
        """
        Return the longest prefix of *text* that prices at ``<= max_tokens``.

        Probes bypass the count cache so truncation does not fill it with
        throwaway prefixes.
        """
        provider = self._coerce_provider(provider)
        if max_tokens <= 0 or not text:
            return ""
        if self._count_text_uncached(text, provider, model) <= max_tokens:
            return text

        lo, hi = 0, len(text)
        while lo < hi:
            mid = (lo + hi + 1) // 2
            if self._count_text_uncached(text[:mid], provider, model) <= max_tokens:
                lo = mid
            else:
                hi = mid - 1
        return text[:lo]

    @staticmethod
    def content_hash(text: str) -> str:
        """Return a stable SHA-256 hex digest for use as a cache key."""
        return hashlib.sha256(text.encode()).hexdigest()

    # ── Internals ──────────────────────────────────────────────────────────────

    @staticmethod
    def _coerce_provider(provider: Provider | str) -> Provider:
        if isinstance(provider, Provider):
            return provider
        try:
            return Provider(provider.lower())
        except ValueError:
            return Provider.UNKNOWN

    @staticmethod
    def _cache_key(parts: Sequence[MessagePart], provider: Provider, model: str) -> str:
        serialized = "\x1f".join(f"{part.type}:{part.serialized()}" for part in parts)
        digest = hashlib.sha256(serialized.encode()).hexdigest()
        return f"{digest}:{provider}:{model}"

    def _count_text_uncached(self, text: str, provider: Provider, model: str) -> int:
        parts = [TextPart(text=text)]
        try:
            return self._count_exact(parts, provider, model)
        except TokenCountError:
            return self._count_heuristic(parts, provider)

    def _count_exact(self, parts: Sequence[MessagePart], provider: Provider, model: str) -> int:
        rule = PRICING.get(provider)
        if rule is None:
            raise TokenCountError(str(provider), model, "unrecognized provider")
        matched, encoding = rule.match(model.lower())
        if not matched:
            raise TokenCountError(str(provider), model)

        total = 0
        for part in parts:
            text = part.serialized()
            if not text:
                continue
            if encoding is not None and not self._force_heuristic:
                total += self._tiktoken_count(text, encoding, provider, model)
            else:
                total += max(1, len(text) // rule.chars_per_token)
        return total + rule.message_overhead if total else 0

    @staticmethod
    def _count_heuristic(parts: Sequence[MessagePart], provider: Provider) -> int:
        """4 characters per token, minimum 1 per part, plus the provider's overhead."""
        overhead = PRICING.get(provider, FALLBACK_RULE).message_overhead
        total = 0
        for part in parts:
            text = part.serialized()
            if text:
                total += max(1, len(text) // FALLBACK_RULE.chars_per_token)
        return total + overhead if total else 0

    def _tiktoken_count(self, text: str, encoding_name: str, provider: Provider, model: str) -> int:
        """Encode with tiktoken, caching the encoder object."""
        if encoding_name not in self._encoder_cache:
            try:
                import tiktoken

                self._encoder_cache[encoding_name] = tiktoken.get_encoding(encoding_name)
            except Exception as exc:
                raise TokenCountError(
                    str(provider), model, f"tokenizer unavailable: {exc}"
                ) from exc
        encoder = self._encoder_cache[encoding_name]
        return len(encoder.encode(text))
