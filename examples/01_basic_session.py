"""
Example 01: Basic Session
=========================

Demonstrates the simplest end-to-end usage of SessionManager:
- Creating and activating a session
- Building a token-bounded context for each new message
- Watching the rolling summary appear once history overflows
- Rendering the context into provider messages
- Using the manager as an async context manager

Run without an API key:
    CONTEXTKEEP_MOCK_LLM=1 uv run python examples/01_basic_session.py

Run with a real LLM for summaries (set your API key first):
    ANTHROPIC_API_KEY=sk-... uv run python examples/01_basic_session.py
"""

import asyncio
import sys
from pathlib import Path

# Add project root to path when running directly
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

_ANSWERS = [
    "The GIL is a mutex that lets only one thread execute Python bytecode at a time.",
    "asyncio runs coroutines on a single-threaded event loop that switches at await points.",
    "Threads are preemptive and OS-scheduled; coroutines yield cooperatively.",
    "Use asyncio for I/O-bound concurrency and multiprocessing for CPU-bound work.",
    "async def main(): await asyncio.gather(fetch(a), fetch(b)); asyncio.run(main())",
]


async def main() -> None:
    from contextkeep import ContextConfig, ContextKeepConfig, SessionManager, render_context
    from contextkeep.models import StoreConfig

    print("=== contextkeep Basic Session Example ===\n")

    # A deliberately small budget so the summarize strategy kicks in quickly
    config = ContextKeepConfig(
        context=ContextConfig(strategy="summarize", max_tokens=400),
        store=StoreConfig(db_path="/tmp/contextkeep_example_01.db"),
    )

    async with await SessionManager.open(config) as manager:
        session = await manager.create(
            model="anthropic/claude-sonnet-4-5",
            instructions="You are a helpful coding assistant. Be concise.",
            title="Python concurrency",
        )
        await manager.activate(session.id)
        print(f"Session created: {session.id}\n")

        questions = [
            "What is Python's GIL?",
            "How does asyncio work at a high level?",
            "What's the difference between async/await and threading?",
            "When should I use asyncio vs multiprocessing?",
            "Can you show a simple asyncio example?",
        ]

        for i, question in enumerate(questions):
            print(f"Turn {i + 1}: {question}")
            message = manager.new_message(session.id, "user", question)
            result = await manager.build_context(session.id, message)
            print(
                f"  Context: {result.total_tokens}/{result.max_tokens} tokens, "
                f"{len(result.messages)} kept, {len(result.dropped_ids)} dropped"
            )
            if result.summary is not None:
                print(f"  Summary covers {result.summary.summarized_count} earlier messages")

            # This is where the rendered messages go to your LLM of choice
            provider_messages = [m.as_dict() for m in render_context(result)]
            print(f"  Sending {len(provider_messages)} provider messages")

            reply = manager.new_message(session.id, "assistant", _ANSWERS[i], agent_id="tutor")
            await manager.append_message(session.id, reply)
            print()

        record = await manager.get(session.id)
        print(f"Messages stored: {record.stats.message_count}")
        print(f"Summaries created: {record.stats.summary_count}")
        await manager.complete(session.id)

    print("\nSession closed cleanly.")


if __name__ == "__main__":
    asyncio.run(main())
