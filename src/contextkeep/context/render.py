"""Turn a ContextResult into the message list sent to a provider."""

from __future__ import annotations

import json
from collections.abc import Sequence
from dataclasses import dataclass

from contextkeep.models.context import ContextResult, MemoryEntry
from contextkeep.models.message import (
    Message,
    ReasoningPart,
    TextPart,
    ToolCallPart,
    ToolResultPart,
)


@dataclass
class LLMMessage:
    """A single message formatted for the LLM provider API."""

    role: str
    content: str

    def as_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


def render_context(result: ContextResult, *, include_reasoning: bool = False) -> list[LLMMessage]:
    """
    Assemble provider messages in window order.

    Order: system instructions, memory (one system message), summaries,
    then the kept messages ending with the new one.
    """
    messages: list[LLMMessage] = []
    if result.instructions:
        messages.append(LLMMessage(role="system", content=result.instructions))
    if result.memory:
        messages.append(LLMMessage(role="system", content=render_memory(result.memory)))
    for summary in result.summaries:
        messages.append(
            LLMMessage(role="system", content=f"[Conversation summary]\n{summary.text_content()}")
        )
    for message in result.messages:
        messages.append(render_message(message, include_reasoning=include_reasoning))
    return messages


def render_message(message: Message, *, include_reasoning: bool = False) -> LLMMessage:
    """Convert one stored message to an LLMMessage."""
    content_parts: list[str] = []
    for part in message.parts:
        if isinstance(part, TextPart):
            content_parts.append(part.text)
        elif isinstance(part, ReasoningPart):
            if include_reasoning:
                content_parts.append(f"<thinking>\n{part.text}\n</thinking>")
        elif isinstance(part, ToolCallPart):
            content_parts.append(render_tool_call(part))
        elif isinstance(part, ToolResultPart):
            content_parts.append(render_tool_result(part))
    return LLMMessage(role=message.role, content="\n".join(content_parts))


def render_tool_call(part: ToolCallPart) -> str:
    return "\n".join(
        [
            f"[Tool: {part.tool_name}] ({part.tool_call_id})",
            f"Input: {json.dumps(part.arguments, indent=2, sort_keys=True)}",
            "[/Tool]",
        ]
    )


def render_tool_result(part: ToolResultPart) -> str:
    label = "Error" if part.is_error else "Output"
    return f"[Tool result {part.tool_call_id}]\n{label}: {part.output}\n[/Tool result]"


def render_memory(entries: Sequence[MemoryEntry]) -> str:
    blocks = [
        f'<memory scope="{e.scope}" path="{e.path}">\n{e.content}\n</memory>' for e in entries
    ]
    return "\n\n".join(blocks)


def render_transcript(messages: Sequence[Message], max_chars: int = 2000) -> str:
    """Format messages as a readable transcript, capping each message at *max_chars*."""
    lines: list[str] = []
    for message in messages:
        text = render_message(message).content[:max_chars]
        if not text:
            continue
        label = message.role.upper()
        if message.agent_id:
            label = f"{label} ({message.agent_id})"
        lines.append(f"[{label}]:\n{text}")
    return "\n\n".join(lines)
