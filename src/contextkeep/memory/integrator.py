"""Scoped memory files and ``@path`` import resolution."""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass, field
from pathlib import Path

import structlog

from contextkeep.errors import ImportCycleError
from contextkeep.events.bus import ContextKeepEvent, EventBus
from contextkeep.models.config import MemoryConfig
from contextkeep.models.context import MemoryEntry, MemoryScope
from contextkeep.models.message import Message
from contextkeep.models.session import MemorySource, SessionRecord
from contextkeep.tokens.counter import TokenCounter, resolve_provider


@dataclass
class MemoryResolution:
    """Everything one resolution pass produced."""

    entries: list[MemoryEntry] = field(default_factory=list)
    errors: list[ImportCycleError] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)
    """References that pointed at no readable file."""


@dataclass(frozen=True)
class _Frame:
    """One step of the explicit traversal stack."""

    exit: bool
    path: str
    scope: MemoryScope = "project"
    importer: str | None = None
    depth: int = 0
    explicit: bool = True
    """False for default scope files, whose absence is normal."""


class MemoryIntegrator:
    """
    Loads the memory files relevant to a turn.

    Two kinds of source feed a build:

    1. Scope files: the session's ``memory_sources``, or by default
       ``MEMORY.md`` under the project root, the user root and each
       participating agent's directory below the agent root.
    2. Inline imports: ``@path`` references found in the triggering message
       and, recursively, in every loaded memory file.

    A reference is resolved relative to the importing file's directory
    first, then against the project, user and agent roots in that order.
    Traversal is an iterative depth-first walk. A reference that leads back
    to a file still being expanded is an import cycle; it is reported through
    :class:`~contextkeep.errors.ImportCycleError` in
    :attr:`MemoryResolution.errors` and the walk continues with the next
    reference. Each file is loaded at most once per resolution.

    File contents are cached by path and reloaded when ``st_mtime_ns``
    changes. Path lookups, stats and reads run in worker threads.
    """

    def __init__(
        self,
        config: MemoryConfig,
        token_counter: TokenCounter,
        event_bus: EventBus | None = None,
    ) -> None:
        self._config = config
        self._counter = token_counter
        self._event_bus = event_bus
        self._cache: dict[str, tuple[int, str]] = {}
        self._pattern = re.compile(
            rf"(?<![\w{re.escape(config.marker)}]){re.escape(config.marker)}(~?[\w./-]+)"
        )
        self._logger = structlog.get_logger("contextkeep.memory")

    # ── Public API ─────────────────────────────────────────────────────────────

    async def resolve(
        self,
        session: SessionRecord,
        triggering_message: Message | None = None,
        *,
        abort: asyncio.Event | None = None,
    ) -> list[MemoryEntry]:
        """Return the memory entries for one build. See :meth:`resolve_detailed`."""
        resolution = await self.resolve_detailed(session, triggering_message, abort=abort)
        return resolution.entries

    async def resolve_detailed(
        self,
        session: SessionRecord,
        triggering_message: Message | None = None,
        *,
        abort: asyncio.Event | None = None,
    ) -> MemoryResolution:
        """
        Resolve scope files and imports for *session*.

        Args:
            session: Supplies memory sources, participating agents and the
                model used to price entries.
            triggering_message: The new message; its ``@path`` references are
                resolved relative to the project root.
            abort: Checked before each file load.

        Returns:
            Entries in load order plus any per-reference errors.

        Raises:
            asyncio.CancelledError: If *abort* is set during resolution.
        """
        resolution = MemoryResolution()
        provider, model = resolve_provider(session.model)

        scope_files = await asyncio.to_thread(self._scope_files, session, triggering_message)
        roots: list[_Frame] = [
            _Frame(exit=False, path=str(path), scope=scope, explicit=explicit)
            for scope, path, explicit in scope_files
        ]
        if triggering_message is not None:
            for ref in self.find_references(triggering_message.searchable_text()):
                target = await asyncio.to_thread(self._locate, ref, base=None)
                if target is None:
                    self._report_missing(resolution, ref, triggering_message.id)
                    continue
                scope, path = target
                roots.append(
                    _Frame(exit=False, path=path, scope=scope, importer=triggering_message.id)
                )

        stack = list(reversed(roots))
        on_path: list[str] = []
        loaded: set[str] = set()

        while stack:
            frame = stack.pop()
            if frame.exit:
                on_path.pop()
                continue
            if frame.path in on_path:
                self._report_cycle(resolution, frame.path, on_path)
                continue
            if frame.path in loaded:
                continue
            if abort is not None and abort.is_set():
                raise asyncio.CancelledError("Context build aborted")

            content = await self._load(frame.path, explicit=frame.explicit)
            if content is None:
                if frame.explicit:
                    resolution.missing.append(frame.path)
                continue
            mtime, text = content
            loaded.add(frame.path)
            resolution.entries.append(
                MemoryEntry(
                    scope=frame.scope,
                    path=frame.path,
                    content=text,
                    token_count=self._counter.count_text(text, provider, model),
                    mtime=mtime,
                    imported_by=frame.importer,
                )
            )

            if frame.depth >= self._config.max_import_depth:
                self._logger.warning(
                    "memory_import_depth_exceeded", path=frame.path, depth=frame.depth
                )
                continue

            stack.append(_Frame(exit=True, path=frame.path))
            on_path.append(frame.path)
            base = Path(frame.path).parent
            children: list[_Frame] = []
            for ref in self.find_references(text):
                target = await asyncio.to_thread(
                    self._locate, ref, base=base, base_scope=frame.scope
                )
                if target is None:
                    self._report_missing(resolution, ref, frame.path)
                    continue
                scope, path = target
                children.append(
                    _Frame(
                        exit=False,
                        path=path,
                        scope=scope,
                        importer=frame.path,
                        depth=frame.depth + 1,
                    )
                )
            stack.extend(reversed(children))

        self._logger.debug(
            "memory_resolved",
            session_id=session.id,
            entries=len(resolution.entries),
            cycles=len(resolution.errors),
        )
        return resolution

    def find_references(self, text: str) -> list[str]:
        """Return the ``@path`` references in *text*, in order of appearance."""
        return [m.rstrip(".") for m in self._pattern.findall(text) if m.rstrip(".")]

    def default_sources(self, session: SessionRecord) -> list[MemorySource]:
        """The scope files used when a session configures none."""
        sources = [
            MemorySource(scope="project", path=self._config.filename),
            MemorySource(scope="user", path=self._config.filename),
        ]
        for agent_id in session.agent_participants:
            sources.append(MemorySource(scope="agent", path=f"{agent_id}/{self._config.filename}"))
        return sources

    def invalidate(self, path: str | None = None) -> None:
        """Drop cached file contents for *path*, or for every file."""
        if path is None:
            self._cache.clear()
        else:
            self._cache.pop(path, None)

    # ── Internals ──────────────────────────────────────────────────────────────

    def _root(self, scope: MemoryScope) -> Path:
        raw = {
            "project": self._config.project_root,
            "user": self._config.user_root,
            "agent": self._config.agent_root,
        }[scope]
        return Path(raw).expanduser().resolve()

    def _scope_files(
        self, session: SessionRecord, triggering_message: Message | None
    ) -> list[tuple[MemoryScope, Path, bool]]:
        explicit = bool(session.memory_sources)
        sources = list(session.memory_sources) or self.default_sources(session)
        if (
            not explicit
            and triggering_message is not None
            and triggering_message.agent_id
            and triggering_message.agent_id not in session.agent_participants
        ):
            sources.append(
                MemorySource(
                    scope="agent",
                    path=f"{triggering_message.agent_id}/{self._config.filename}",
                )
            )

        files: list[tuple[MemoryScope, Path, bool]] = []
        for source in sources:
            path = Path(source.path).expanduser()
            if not path.is_absolute():
                path = self._root(source.scope) / path
            files.append((source.scope, path.resolve(), explicit))
        return files

    def _locate(
        self,
        ref: str,
        *,
        base: Path | None,
        base_scope: MemoryScope = "project",
    ) -> tuple[MemoryScope, str] | None:
        """Find the file a reference points at, or None."""
        if ref.startswith("~"):
            path = Path(ref).expanduser().resolve()
            return ("user", str(path)) if path.is_file() else None

        candidates: list[tuple[MemoryScope, Path]] = []
        if Path(ref).is_absolute():
            candidates.append((base_scope, Path(ref)))
        else:
            if base is not None:
                candidates.append((base_scope, base / ref))
            for scope in ("project", "user", "agent"):
                candidates.append((scope, self._root(scope) / ref))

        for scope, candidate in candidates:
            resolved = candidate.resolve()
            if resolved.is_file():
                return scope, str(resolved)
        return None

    async def _load(self, path: str, *, explicit: bool) -> tuple[int, str] | None:
        """Return ``(mtime_ns, content)`` or None when the file cannot be used."""
        cached = self._cache.get(path)
        try:
            mtime, size = await asyncio.to_thread(_stat, path)
        except FileNotFoundError:
            if explicit:
                self._logger.warning("memory_file_missing", path=path)
            else:
                self._logger.debug("memory_file_missing", path=path)
            self._cache.pop(path, None)
            return None
        except OSError as exc:
            self._logger.warning("memory_file_unreadable", path=path, error=str(exc))
            return None

        if cached is not None and cached[0] == mtime:
            return cached
        if size > self._config.max_file_bytes:
            self._logger.warning(
                "memory_file_too_large",
                path=path,
                size=size,
                limit=self._config.max_file_bytes,
            )
            return None

        try:
            text = await asyncio.to_thread(Path(path).read_text, encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            self._logger.warning("memory_file_unreadable", path=path, error=str(exc))
            return None

        self._cache[path] = (mtime, text)
        return mtime, text

    def _report_cycle(self, resolution: MemoryResolution, path: str, on_path: list[str]) -> None:
        error = ImportCycleError(path, list(on_path))
        resolution.errors.append(error)
        self._logger.warning("memory_import_cycle", reference=path, chain=error.chain)
        if self._event_bus is not None:
            self._event_bus.publish(
                ContextKeepEvent.MEMORY_IMPORT_CYCLE,
                {"reference": path, "chain": list(error.chain)},
            )

    def _report_missing(self, resolution: MemoryResolution, ref: str, importer: str) -> None:
        resolution.missing.append(ref)
        self._logger.warning("memory_reference_unresolved", reference=ref, imported_by=importer)


def _stat(path: str) -> tuple[int, int]:
    st = Path(path).stat()
    return st.st_mtime_ns, st.st_size
