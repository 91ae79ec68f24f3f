"""SQLite persistence: message log, session rows and rolling summaries."""

from contextkeep.store.messages import (
    ContextStoreError,
    DuplicateIDError,
    MessageNotFoundError,
    MessageStore,
    SessionNotFoundError,
)
from contextkeep.store.pool import StorePool
from contextkeep.store.summaries import SummaryStore

__all__ = [
    "ContextStoreError",
    "DuplicateIDError",
    "MessageNotFoundError",
    "MessageStore",
    "SessionNotFoundError",
    "StorePool",
    "SummaryStore",
]
