"""Tests for MemoryIntegrator scope files and @path imports."""

from __future__ import annotations

import asyncio
import os
from pathlib import Path

import pytest

from contextkeep.errors import ImportCycleError
from contextkeep.events.bus import ContextKeepEvent
from contextkeep.memory.integrator import MemoryIntegrator
from contextkeep.models.session import MemorySource
from tests.conftest import make_message, make_session


@pytest.fixture
def integrator(config, counter, event_bus):
    return MemoryIntegrator(config.memory, counter, event_bus)


@pytest.fixture
def roots(config):
    return (
        Path(config.memory.project_root),
        Path(config.memory.user_root),
        Path(config.memory.agent_root),
    )


def names(entries):
    return [Path(e.path).name for e in entries]


class TestScopeFiles:
    async def test_no_files_no_entries(self, integrator):
        """Absent default files are normal and produce nothing."""
        resolution = await integrator.resolve_detailed(make_session())
        assert resolution.entries == []
        assert resolution.missing == []
        assert resolution.errors == []

    async def test_default_scopes(self, integrator, roots):
        project, user, agents = roots
        (project / "MEMORY.md").write_text("Project conventions")
        (user / "MEMORY.md").write_text("User preferences")
        (agents / "planner").mkdir()
        (agents / "planner" / "MEMORY.md").write_text("Planner notes")
        session = make_session()
        session.participant("planner")

        entries = await integrator.resolve(session)
        assert [e.scope for e in entries] == ["project", "user", "agent"]
        assert [e.content for e in entries] == [
            "Project conventions",
            "User preferences",
            "Planner notes",
        ]
        assert all(e.token_count > 0 for e in entries)

    async def test_triggering_agent_scope_included(self, integrator, roots):
        """The agent that sent the message gets its memory even before it is a participant."""
        _, _, agents = roots
        (agents / "coder").mkdir()
        (agents / "coder" / "MEMORY.md").write_text("Coder notes")
        entries = await integrator.resolve(make_session(), make_message(agent_id="coder"))
        assert [e.content for e in entries] == ["Coder notes"]

    async def test_explicit_sources_replace_defaults(self, integrator, roots):
        project, _, _ = roots
        (project / "MEMORY.md").write_text("default")
        (project / "team.md").write_text("team rules")
        session = make_session()
        session.memory_sources = [MemorySource(scope="project", path="team.md")]
        entries = await integrator.resolve(session)
        assert [e.content for e in entries] == ["team rules"]

    async def test_missing_explicit_source_reported(self, integrator):
        session = make_session()
        session.memory_sources = [MemorySource(scope="project", path="gone.md")]
        resolution = await integrator.resolve_detailed(session)
        assert resolution.entries == []
        assert len(resolution.missing) == 1

    async def test_oversized_file_skipped(self, config, counter, roots):
        project, _, _ = roots
        (project / "MEMORY.md").write_text("x" * 64)
        small = MemoryIntegrator(config.memory.model_copy(update={"max_file_bytes": 16}), counter)
        assert await small.resolve(make_session()) == []


class TestImports:
    async def test_nested_imports_loaded_once(self, integrator, roots):
        project, _, _ = roots
        (project / "MEMORY.md").write_text("See @style.md and @api.md")
        (project / "style.md").write_text("Use black. Also @api.md")
        (project / "api.md").write_text("REST only")

        resolution = await integrator.resolve_detailed(make_session())
        assert names(resolution.entries) == ["MEMORY.md", "style.md", "api.md"]
        api = resolution.entries[2]
        assert Path(api.imported_by).name == "style.md"
        assert resolution.errors == []

    async def test_references_in_triggering_message(self, integrator, roots):
        project, _, _ = roots
        (project / "notes.md").write_text("deployment notes")
        msg = make_message(text="Please read @notes.md.")
        entries = await integrator.resolve(make_session(), msg)
        assert names(entries) == ["notes.md"]
        assert entries[0].imported_by == msg.id

    async def test_import_resolved_relative_to_importer(self, integrator, roots):
        project, _, _ = roots
        (project / "docs").mkdir()
        (project / "MEMORY.md").write_text("@docs/index.md")
        (project / "docs" / "index.md").write_text("@detail.md")
        (project / "docs" / "detail.md").write_text("details")
        entries = await integrator.resolve(make_session())
        assert names(entries) == ["MEMORY.md", "index.md", "detail.md"]

    async def test_import_from_user_root(self, integrator, roots):
        project, user, _ = roots
        (project / "MEMORY.md").write_text("@shared.md")
        (user / "shared.md").write_text("shared between projects")
        entries = await integrator.resolve(make_session())
        assert entries[1].scope == "user"

    async def test_cycle_reported_once_and_resolution_succeeds(self, integrator, roots, event_bus):
        """A -> B -> A yields one ImportCycleError and both files still load."""
        project, _, _ = roots
        (project / "MEMORY.md").write_text("@a.md")
        (project / "a.md").write_text("alpha @b.md")
        (project / "b.md").write_text("beta @a.md")

        resolution = await integrator.resolve_detailed(make_session())
        assert names(resolution.entries) == ["MEMORY.md", "a.md", "b.md"]
        assert len(resolution.errors) == 1
        error = resolution.errors[0]
        assert isinstance(error, ImportCycleError)
        assert Path(error.reference).name == "a.md"
        cycles = [e for e, _ in event_bus.collected if e == ContextKeepEvent.MEMORY_IMPORT_CYCLE]
        assert len(cycles) == 1

    async def test_self_import_is_a_cycle(self, integrator, roots):
        project, _, _ = roots
        (project / "MEMORY.md").write_text("me again @MEMORY.md")
        resolution = await integrator.resolve_detailed(make_session())
        assert len(resolution.entries) == 1
        assert len(resolution.errors) == 1

    async def test_unresolved_reference_is_omitted(self, integrator, roots):
        project, _, _ = roots
        (project / "MEMORY.md").write_text("@nowhere.md")
        resolution = await integrator.resolve_detailed(make_session())
        assert names(resolution.entries) == ["MEMORY.md"]
        assert resolution.missing == ["nowhere.md"]

    async def test_depth_limit(self, config, counter, roots):
        project, _, _ = roots
        (project / "MEMORY.md").write_text("@l1.md")
        (project / "l1.md").write_text("@l2.md")
        (project / "l2.md").write_text("@l3.md")
        (project / "l3.md").write_text("bottom")
        shallow = MemoryIntegrator(
            config.memory.model_copy(update={"max_import_depth": 2}), counter
        )
        assert names(await shallow.resolve(make_session())) == ["MEMORY.md", "l1.md", "l2.md"]

    def test_find_references(self, integrator):
        text = "Read @a.md, then @docs/b.md. Mail me at bob@example.com or @~/c.md"
        assert integrator.find_references(text) == ["a.md", "docs/b.md", "~/c.md"]


class TestCaching:
    async def test_reload_on_mtime_change(self, integrator, roots):
        project, _, _ = roots
        path = project / "MEMORY.md"
        path.write_text("version one")
        assert (await integrator.resolve(make_session()))[0].content == "version one"

        path.write_text("version two")
        bumped = path.stat().st_mtime_ns + 1_000_000_000
        os.utime(path, ns=(bumped, bumped))
        entry = (await integrator.resolve(make_session()))[0]
        assert entry.content == "version two"
        assert entry.mtime == bumped

    async def test_unchanged_file_served_from_cache(self, integrator, roots):
        project, _, _ = roots
        path = project / "MEMORY.md"
        path.write_text("cached")
        await integrator.resolve(make_session())
        assert str(path.resolve()) in integrator._cache
        integrator.invalidate()
        assert integrator._cache == {}


async def test_abort_before_load(integrator, roots):
    project, _, _ = roots
    (project / "MEMORY.md").write_text("anything")
    abort = asyncio.Event()
    abort.set()
    with pytest.raises(asyncio.CancelledError):
        await integrator.resolve(make_session(), abort=abort)


async def test_filesystem_work_runs_in_threads(integrator, roots, monkeypatch):
    """Path lookups happen in the same thread hop as stats and reads."""
    project, _, _ = roots
    (project / "MEMORY.md").write_text("See @notes.md")
    (project / "notes.md").write_text("notes")
    offloaded = []
    to_thread = asyncio.to_thread

    async def recording(func, /, *args, **kwargs):
        offloaded.append(getattr(func, "__name__", repr(func)))
        return await to_thread(func, *args, **kwargs)

    monkeypatch.setattr(asyncio, "to_thread", recording)
    entries = await integrator.resolve(make_session(), make_message(text="and @notes.md"))

    assert names(entries) == ["MEMORY.md", "notes.md"]
    assert offloaded[0] == "_scope_files"
    assert offloaded.count("_locate") == 2
    assert {"_stat", "read_text"} <= set(offloaded)
