from contextkeep.context.cache import CacheStats, ContextCache
from contextkeep.context.render import LLMMessage, render_context, render_message
from contextkeep.context.strategies import (
    ContextStrategy,
    DiscardStrategy,
    HybridStrategy,
    SummarizeStrategy,
    bucket_for,
    make_strategy,
)

__all__ = [
    "CacheStats",
    "ContextCache",
    "ContextStrategy",
    "DiscardStrategy",
    "HybridStrategy",
    "LLMMessage",
    "SummarizeStrategy",
    "bucket_for",
    "make_strategy",
    "render_context",
    "render_message",
]
