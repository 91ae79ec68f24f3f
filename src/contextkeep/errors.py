"""Error taxonomy for the context engine.

Only :class:`InvalidTransitionError` is meant to reach callers in normal
operation. The others are raised at the point of failure and recovered by the
component one level up (heuristic token counts, naive summaries, omitted
memory references, chronological chain reconstruction).
"""

from __future__ import annotations


class ContextKeepError(Exception):
    """Base class for all context engine errors."""


class TokenCountError(ContextKeepError):
    """Raised when no exact tokenizer is available for a provider/model pair."""

    def __init__(self, provider: str, model: str, reason: str = "unrecognized model") -> None:
        super().__init__(f"Cannot count tokens for {provider}/{model}: {reason}")
        self.provider = provider
        self.model = model
        self.reason = reason


class SummarizationFailure(ContextKeepError):
    """Raised when the completion provider keeps failing after all retries."""

    def __init__(self, attempts: int, last_error: str) -> None:
        super().__init__(f"Summarization failed after {attempts} attempt(s): {last_error}")
        self.attempts = attempts
        self.last_error = last_error


class ImportCycleError(ContextKeepError):
    """Raised for a memory reference that transitively imports itself."""

    def __init__(self, reference: str, chain: list[str]) -> None:
        cycle = " -> ".join([*chain, reference])
        super().__init__(f"Memory import cycle: {cycle}")
        self.reference = reference
        self.chain = chain


class SessionCorruptionError(ContextKeepError):
    """Raised when a session's message chain cannot be followed."""

    def __init__(self, conversation_id: str, message_id: str | None, reason: str) -> None:
        super().__init__(
            f"Corrupted chain in conversation {conversation_id!r} at {message_id!r}: {reason}"
        )
        self.conversation_id = conversation_id
        self.message_id = message_id
        self.reason = reason


class InvalidTransitionError(ContextKeepError):
    """Raised when a session state change is not allowed."""

    def __init__(self, session_id: str, current: str, target: str, detail: str = "") -> None:
        message = f"Session {session_id!r} cannot go from {current!r} to {target!r}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.session_id = session_id
        self.current = current
        self.target = target


class BudgetExceededError(ContextKeepError):
    """Raised when an assembled context would not fit its token budget."""

    def __init__(self, total: int, limit: int, strategy: str = "") -> None:
        where = f" ({strategy})" if strategy else ""
        super().__init__(f"Context of {total} tokens exceeds budget of {limit}{where}")
        self.total = total
        self.limit = limit
        self.strategy = strategy
