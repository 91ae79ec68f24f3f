"""Core message and part data models."""

from __future__ import annotations

import json
import time
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field

# ── Part Models ────────────────────────────────────────────────────────────────


class TextPart(BaseModel):
    """A plain text segment of a message."""

    type: Literal["text"] = "text"
    text: str

    def serialized(self) -> str:
        return self.text


class ReasoningPart(BaseModel):
    """Chain-of-thought ("think") text emitted by the model alongside its answer."""

    type: Literal["reasoning"] = "reasoning"
    text: str

    def serialized(self) -> str:
        return self.text


class ToolCallPart(BaseModel):
    """A tool invocation requested by an assistant message."""

    type: Literal["tool_call"] = "tool_call"
    tool_name: str
    tool_call_id: str
    arguments: dict[str, Any] = Field(default_factory=dict)

    def serialized(self) -> str:
        """Canonical JSON form; this is what gets priced and rendered."""
        return json.dumps(
            {"tool": self.tool_name, "id": self.tool_call_id, "arguments": self.arguments},
            sort_keys=True,
        )


class ToolResultPart(BaseModel):
    """The output of a tool call, fed back to the model."""

    type: Literal["tool_result"] = "tool_result"
    tool_call_id: str
    output: str = ""
    is_error: bool = False

    def serialized(self) -> str:
        return json.dumps(
            {"id": self.tool_call_id, "output": self.output, "is_error": self.is_error},
            sort_keys=True,
        )


# Discriminated union keyed on ``type``.
MessagePart = Annotated[
    TextPart | ReasoningPart | ToolCallPart | ToolResultPart,
    Field(discriminator="type"),
]

Role = Literal["user", "assistant", "system", "tool"]


def _now_ms() -> int:
    return int(time.time() * 1000)


# ── Message ────────────────────────────────────────────────────────────────────


class Message(BaseModel):
    """
    A single conversation message.

    Messages are frozen: once ``token_count`` is set (see
    :meth:`~contextkeep.tokens.counter.TokenCounter.price`) the message is
    never changed. A rolling summary is a ``Message`` with
    ``context_type="summary"``; it stands in for the first
    ``summarized_count`` non-summary messages of its chain.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    """ULID-based sortable ID, e.g. ``msg_01JXYZ6K3MNPQR4STUVWXYZ01``."""
    conversation_id: str
    role: Role
    parts: list[MessagePart] = Field(default_factory=list)
    parent_id: str | None = None
    agent_id: str | None = None
    created_at: int = Field(default_factory=_now_ms)
    """Unix millisecond timestamp."""
    context_priority: int = Field(default=5, ge=0, le=10)
    """Retention priority: higher values survive longer under budget pressure."""
    token_count: int | None = None
    token_provider: str = ""
    token_model: str = ""
    context_type: Literal["message", "summary"] = "message"
    # Summary-only fields
    summarized_count: int = 0
    supersedes_summary_id: str | None = None
    summary_method: Literal["llm", "naive"] | None = None

    @property
    def is_summary(self) -> bool:
        return self.context_type == "summary"

    @property
    def tokens(self) -> int:
        """Token count, treating an unpriced message as zero."""
        return self.token_count or 0

    def text_content(self) -> str:
        """Concatenate text from all TextPart objects in this message."""
        return "".join(part.text for part in self.parts if isinstance(part, TextPart))

    def searchable_text(self) -> str:
        """All text and reasoning segments, newline separated."""
        return "\n".join(
            part.text for part in self.parts if isinstance(part, (TextPart, ReasoningPart))
        )


def text_message(
    id: str,
    conversation_id: str,
    role: Role,
    text: str,
    **fields: Any,
) -> Message:
    """Shorthand for a message holding a single text part."""
    return Message(
        id=id,
        conversation_id=conversation_id,
        role=role,
        parts=[TextPart(text=text)],
        **fields,
    )
