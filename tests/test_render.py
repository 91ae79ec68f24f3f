"""Tests for rendering context results into provider messages."""

from __future__ import annotations

from contextkeep.context.render import render_context, render_message, render_transcript
from contextkeep.models.context import ContextResult, MemoryEntry
from contextkeep.models.message import (
    Message,
    ReasoningPart,
    TextPart,
    ToolCallPart,
    ToolResultPart,
)
from tests.conftest import make_message


def test_render_order():
    """Instructions, memory, summaries, then messages."""
    summary = Message(
        id="sum_1",
        conversation_id="conv_TEST",
        role="system",
        parts=[TextPart(text="we agreed on REST")],
        token_count=8,
        context_type="summary",
        summarized_count=3,
    )
    result = ContextResult(
        strategy="summarize",
        max_tokens=2048,
        instructions="Be concise.",
        memory=[
            MemoryEntry(
                scope="project", path="/p/MEMORY.md", content="Use uv.", token_count=5, mtime=0
            )
        ],
        summaries=[summary],
        messages=[make_message(text="next step?")],
    )
    rendered = [m.as_dict() for m in render_context(result)]
    assert [m["role"] for m in rendered] == ["system", "system", "system", "user"]
    assert rendered[0]["content"] == "Be concise."
    assert 'scope="project"' in rendered[1]["content"]
    assert "Use uv." in rendered[1]["content"]
    assert rendered[2]["content"].endswith("we agreed on REST")
    assert rendered[3]["content"] == "next step?"


def test_empty_result_renders_nothing():
    assert render_context(ContextResult(strategy="discard", max_tokens=256)) == []


def test_reasoning_hidden_by_default():
    msg = Message(
        id="msg_1",
        conversation_id="conv_TEST",
        role="assistant",
        parts=[ReasoningPart(text="thinking it over"), TextPart(text="Answer")],
    )
    assert render_message(msg).content == "Answer"
    assert "<thinking>" in render_message(msg, include_reasoning=True).content


def test_tool_parts():
    msg = Message(
        id="msg_2",
        conversation_id="conv_TEST",
        role="assistant",
        parts=[
            ToolCallPart(tool_name="grep", tool_call_id="call_9", arguments={"pattern": "TODO"}),
            ToolResultPart(tool_call_id="call_9", output="3 matches", is_error=False),
        ],
    )
    content = render_message(msg).content
    assert "[Tool: grep] (call_9)" in content
    assert '"pattern": "TODO"' in content
    assert "Output: 3 matches" in content


def test_transcript_labels_agents():
    msgs = [
        make_message(text="Draft the plan", role="user"),
        make_message(text="Plan drafted", role="assistant", agent_id="planner"),
    ]
    transcript = render_transcript(msgs)
    assert "[USER]:\nDraft the plan" in transcript
    assert "[ASSISTANT (planner)]:\nPlan drafted" in transcript


def test_transcript_caps_long_messages():
    transcript = render_transcript([make_message(text="z" * 5000)], max_chars=100)
    assert transcript.count("z") == 100
