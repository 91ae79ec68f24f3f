"""
contextkeep: token-bounded context assembly and durable sessions for
multi-agent LLM conversations.

Primary entry point::

    from contextkeep import ContextKeepConfig, SessionManager

    async with await SessionManager.open(ContextKeepConfig()) as manager:
        session = await manager.create(model="anthropic/claude-sonnet-4-5")
        await manager.activate(session.id)
        message = manager.new_message(session.id, "user", "Hello!")
        result = await manager.build_context(session.id, message)
"""

from contextkeep.session import SessionManager, make_id
from contextkeep.errors import (
    BudgetExceededError,
    ContextKeepError,
    ImportCycleError,
    InvalidTransitionError,
    SessionCorruptionError,
    SummarizationFailure,
    TokenCountError,
)
from contextkeep.models import (
    ContextKeepConfig,
    ContextConfig,
    SummarizerConfig,
    MemoryConfig,
    StoreConfig,
    CacheConfig,
    SessionConfig,
    HybridAllocation,
    TextPart,
    ReasoningPart,
    ToolCallPart,
    ToolResultPart,
    MessagePart,
    Message,
    ContextResult,
    MemoryEntry,
    MemoryReference,
    SessionRecord,
    SessionStatus,
    StrategyConfig,
    RestoredContext,
    SessionSnapshot,
)
from contextkeep.events.bus import ContextKeepEvent, EventBus
from contextkeep.context import ContextCache, render_context
from contextkeep.memory import MemoryIntegrator
from contextkeep.compaction import Summarizer
from contextkeep.tokens import Provider, TokenCounter

__version__ = "0.1.0"

__all__ = [
    # Core
    "SessionManager",
    "make_id",
    # Errors
    "ContextKeepError",
    "BudgetExceededError",
    "ImportCycleError",
    "InvalidTransitionError",
    "SessionCorruptionError",
    "SummarizationFailure",
    "TokenCountError",
    # Config
    "ContextKeepConfig",
    "ContextConfig",
    "SummarizerConfig",
    "MemoryConfig",
    "StoreConfig",
    "CacheConfig",
    "SessionConfig",
    "HybridAllocation",
    # Models
    "TextPart",
    "ReasoningPart",
    "ToolCallPart",
    "ToolResultPart",
    "MessagePart",
    "Message",
    "ContextResult",
    "MemoryEntry",
    "MemoryReference",
    "SessionRecord",
    "SessionStatus",
    "StrategyConfig",
    "RestoredContext",
    "SessionSnapshot",
    # Events
    "EventBus",
    "ContextKeepEvent",
    # Components
    "ContextCache",
    "render_context",
    "MemoryIntegrator",
    "Summarizer",
    "Provider",
    "TokenCounter",
]
