"""
Example 02: Multiple Agents, Priorities and Portability
=======================================================

Demonstrates a session shared by several agents:
- The hybrid strategy, which keeps high-priority messages under pressure
- Project memory files with ``@path`` imports
- ``snapshot()`` to hand every agent the same context view
- Resuming a paused session and moving it between databases with
  ``export()`` / ``import_snapshot()``

Run:
    CONTEXTKEEP_MOCK_LLM=1 uv run python examples/02_multi_agent.py
"""

import asyncio
import sys
import tempfile
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))


async def main() -> None:
    from contextkeep import (
        ContextConfig,
        ContextKeepConfig,
        ContextKeepEvent,
        MemoryConfig,
        SessionManager,
        StoreConfig,
    )

    print("=== contextkeep Multi-Agent Example ===\n")

    workdir = Path(tempfile.mkdtemp(prefix="contextkeep_"))
    (workdir / "MEMORY.md").write_text("Project: payments API. Coding rules live in @rules.md\n")
    (workdir / "rules.md").write_text("- Type hints everywhere\n- No float money\n")

    config = ContextKeepConfig(
        context=ContextConfig(strategy="hybrid", max_tokens=600),
        memory=MemoryConfig(project_root=str(workdir), user_root=str(workdir / "user")),
        store=StoreConfig(db_path=str(workdir / "team.db")),
    )

    async with await SessionManager.open(config) as manager:
        manager.subscribe(
            ContextKeepEvent.CONTEXT_BUILT,
            lambda e, p: print(f"    [event] built {p['total_tokens']}/{p['max_tokens']} tokens"),
        )
        session = await manager.create(model="gpt-4o", title="Payments refactor")
        await manager.activate(session.id)

        requirement = manager.new_message(
            session.id, "user", "Requirement: refunds must be idempotent per order id.", priority=9
        )
        await manager.build_context(session.id, requirement)

        chatter = [
            ("planner", "I'll split the work into API, storage and tests."),
            ("coder", "Storage layer drafted; refunds table has a unique order_id."),
            ("reviewer", "Looks fine, minor naming nits in the repository class."),
            ("coder", "Renamed RefundRepo to RefundRepository."),
            ("planner", "Next: API handler and retry semantics."),
        ]
        for agent, text in chatter:
            reply = manager.new_message(session.id, "assistant", text, agent_id=agent, priority=4)
            await manager.append_message(session.id, reply)

        print("Shared snapshot for all agents:")
        view = await manager.snapshot(session.id)
        for message in view.messages:
            who = message.agent_id or message.role
            print(f"  p{message.context_priority} {who}: {message.text_content()[:60]}")
        print(f"  memory files: {[Path(e.path).name for e in view.memory]}")
        print(f"  dropped: {len(view.dropped_ids)}\n")

        await manager.pause(session.id)
        restored = await manager.resume(session.id)
        print(f"Resumed with {len(restored.messages)} messages ({restored.token_count} tokens)")

        exported = await manager.export_json(session.id, indent=2)

    target = config.model_copy(update={"store": StoreConfig(db_path=str(workdir / "copy.db"))})
    async with await SessionManager.open(target) as copy:
        imported = await copy.import_snapshot(exported)
        participants = sorted(imported.agent_participants)
        print(f"Imported {imported.id} into copy.db; participants: {participants}")


if __name__ == "__main__":
    asyncio.run(main())
