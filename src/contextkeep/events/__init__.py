"""contextkeep event system."""

from contextkeep.events.bus import ContextKeepEvent, EventBus
from contextkeep.events.payloads import (
    ContextBuiltPayload,
    MemoryImportCyclePayload,
    MessageAppendedPayload,
    SessionCreatedPayload,
    SessionDeletedPayload,
    SessionRecoveredPayload,
    SessionSaveFailedPayload,
    SessionSavedPayload,
    SessionStatusChangedPayload,
    SummarizationDegradedPayload,
    SummaryCreatedPayload,
)

__all__ = [
    "ContextKeepEvent",
    "EventBus",
    "ContextBuiltPayload",
    "MemoryImportCyclePayload",
    "MessageAppendedPayload",
    "SessionCreatedPayload",
    "SessionDeletedPayload",
    "SessionRecoveredPayload",
    "SessionSaveFailedPayload",
    "SessionSavedPayload",
    "SessionStatusChangedPayload",
    "SummarizationDegradedPayload",
    "SummaryCreatedPayload",
]
