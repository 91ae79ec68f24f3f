"""contextkeep data models."""

from contextkeep.models.config import (
    CacheConfig,
    ContextConfig,
    ContextKeepConfig,
    HybridAllocation,
    MemoryConfig,
    SessionConfig,
    StoreConfig,
    StrategyType,
    SummarizerConfig,
)
from contextkeep.models.context import (
    ContextResult,
    MemoryEntry,
    MemoryReference,
    MemoryScope,
)
from contextkeep.models.message import (
    Message,
    MessagePart,
    ReasoningPart,
    TextPart,
    ToolCallPart,
    ToolResultPart,
    text_message,
)
from contextkeep.models.session import (
    AgentParticipant,
    MemorySource,
    RestoredContext,
    SessionRecord,
    SessionStats,
    SessionStatus,
    StrategyConfig,
)
from contextkeep.models.snapshot import SCHEMA_VERSION, SessionSnapshot

__all__ = [
    # Config
    "CacheConfig",
    "ContextConfig",
    "ContextKeepConfig",
    "HybridAllocation",
    "MemoryConfig",
    "SessionConfig",
    "StoreConfig",
    "StrategyType",
    "SummarizerConfig",
    # Message parts
    "TextPart",
    "ReasoningPart",
    "ToolCallPart",
    "ToolResultPart",
    "MessagePart",
    # Message
    "Message",
    "text_message",
    # Context
    "ContextResult",
    "MemoryEntry",
    "MemoryReference",
    "MemoryScope",
    # Session
    "AgentParticipant",
    "MemorySource",
    "RestoredContext",
    "SessionRecord",
    "SessionStats",
    "SessionStatus",
    "StrategyConfig",
    # Snapshot
    "SCHEMA_VERSION",
    "SessionSnapshot",
]
