"""Configuration models for the context engine and its components."""

from __future__ import annotations

import math
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator

StrategyType = Literal["discard", "summarize", "hybrid"]


class HybridAllocation(BaseModel):
    """Fractions of the token budget given to each hybrid-strategy bucket."""

    memory: float = Field(default=0.20, ge=0.0, le=1.0)
    critical: float = Field(default=0.30, ge=0.0, le=1.0)
    """Messages with priority >= 8."""
    important: float = Field(default=0.25, ge=0.0, le=1.0)
    """Messages with priority 6-7."""
    normal: float = Field(default=0.20, ge=0.0, le=1.0)
    """Messages with priority 3-5."""
    buffer: float = Field(default=0.05, ge=0.0, le=1.0)
    """Slack; also holds low-priority (0-2) messages."""

    @model_validator(mode="after")
    def validate_total(self) -> HybridAllocation:
        total = self.memory + self.critical + self.important + self.normal + self.buffer
        if not math.isclose(total, 1.0, abs_tol=1e-6):
            raise ValueError(f"Hybrid allocation fractions must sum to 1.0, got {total:.4f}")
        return self


class ContextConfig(BaseModel):
    """How context windows are assembled."""

    strategy: StrategyType = "summarize"
    """Overflow strategy: ``discard``, ``summarize`` or ``hybrid``."""

    max_tokens: int = Field(
        default=8_192,
        ge=256,
        le=2_000_000,
        description="Maximum tokens a ContextResult may occupy.",
    )

    memory_integration: bool = True
    """Whether scoped memory files and ``@path`` imports are loaded on each build."""

    summary_reserve_fraction: float = Field(
        default=0.30,
        gt=0.0,
        lt=1.0,
        description="Fraction of the budget reserved for the rolling summary.",
    )

    allocation: HybridAllocation = Field(default_factory=HybridAllocation)


class SummarizerConfig(BaseModel):
    """Configuration for the LLM-backed summarizer."""

    model: str = Field(
        default="anthropic/claude-haiku-4-5",
        description="litellm model string used for summarization calls.",
    )

    max_retries: int = Field(
        default=2,
        ge=0,
        le=10,
        description="Provider retries before degrading to a naive summary.",
    )

    backoff_base: float = Field(
        default=0.5,
        ge=0.0,
        description="Seconds before the first retry; doubles on each attempt.",
    )

    backoff_max: float = Field(default=8.0, ge=0.0)
    """Upper bound on a single backoff sleep."""

    prompt: str | None = Field(
        default=None,
        description="Custom summarization instructions. None = built-in prompt.",
    )

    cache_size: int = Field(default=256, ge=1)
    """Number of summaries kept in the content-hash cache."""


class MemoryConfig(BaseModel):
    """Where memory files live and how imports are resolved."""

    project_root: str = "."
    user_root: str = "~/.contextkeep"
    agent_root: str = "~/.contextkeep/agents"
    filename: str = "MEMORY.md"
    """Default memory file looked up in each scope root."""

    marker: str = Field(default="@", min_length=1, max_length=1)
    """Single character that introduces an inline import reference."""

    max_file_bytes: int = Field(default=256_000, ge=1)
    """Larger memory files are skipped with a warning."""

    max_import_depth: int = Field(default=8, ge=1, le=64)
    """Nested ``@path`` imports deeper than this are not followed."""


class StoreConfig(BaseModel):
    """Configuration for the SQLite persistence layer."""

    db_path: str = Field(
        default="~/.contextkeep/sessions.db",
        description="Path to the SQLite database file. ~ is expanded at runtime.",
    )

    wal_mode: bool = True
    """Use WAL journal mode for better concurrent read performance."""

    connection_timeout: float = 30.0
    """Seconds to wait for the database connection before raising."""


class CacheConfig(BaseModel):
    """Configuration for the context result cache."""

    max_entries: int = Field(default=128, ge=1, le=100_000)
    ttl_seconds: float = Field(default=300.0, gt=0.0)


class SessionConfig(BaseModel):
    """Session lifecycle behaviour."""

    auto_save: bool = True
    """Run the background auto-save task."""

    auto_save_interval: float = Field(default=30.0, gt=0.0)
    """Seconds between background saves of dirty sessions."""

    save_retries: int = Field(default=2, ge=0, le=10)
    save_backoff: float = Field(default=0.1, ge=0.0)


class ContextKeepConfig(BaseModel):
    """
    Top-level configuration.

    All sub-configs have sensible defaults and can be overridden individually.

    Example::

        config = ContextKeepConfig(
            context=ContextConfig(strategy="hybrid", max_tokens=32_000),
            store=StoreConfig(db_path="./sessions.db"),
        )
    """

    context: ContextConfig = Field(default_factory=ContextConfig)
    summarizer: SummarizerConfig = Field(default_factory=SummarizerConfig)
    memory: MemoryConfig = Field(default_factory=MemoryConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)

    @classmethod
    def default(cls) -> ContextKeepConfig:
        """Return a config instance with all defaults."""
        return cls()

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> ContextKeepConfig:
        """
        Build a config from a nested mapping, e.g. a parsed settings file.

        Dotted keys are accepted at the top level, so
        ``{"context.strategy": "hybrid"}`` is the same as
        ``{"context": {"strategy": "hybrid"}}``.
        """
        nested: dict[str, Any] = {}
        for key, value in data.items():
            if "." in key:
                section, field_name = key.split(".", 1)
                nested.setdefault(section, {})[field_name] = value
            elif isinstance(value, dict):
                nested.setdefault(key, {}).update(value)
            else:
                nested[key] = value
        return cls.model_validate(nested)
