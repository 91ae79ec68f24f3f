"""Tests for configuration models."""

from __future__ import annotations

import pytest

import contextkeep
from contextkeep.models.config import (
    CacheConfig,
    ContextConfig,
    ContextKeepConfig,
    HybridAllocation,
    MemoryConfig,
    SummarizerConfig,
)
from contextkeep.models.session import ALLOWED_TRANSITIONS, SessionStatus, StrategyConfig


class TestHybridAllocation:
    def test_defaults_sum_to_one(self) -> None:
        alloc = HybridAllocation()
        total = alloc.memory + alloc.critical + alloc.important + alloc.normal + alloc.buffer
        assert total == pytest.approx(1.0)

    def test_custom_allocation(self) -> None:
        alloc = HybridAllocation(memory=0.1, critical=0.4, important=0.3, normal=0.15, buffer=0.05)
        assert alloc.critical == 0.4

    def test_rejects_bad_total(self) -> None:
        with pytest.raises(ValueError, match="sum to 1.0"):
            HybridAllocation(memory=0.5, critical=0.5, important=0.5, normal=0.0, buffer=0.0)

    def test_rejects_out_of_range_fraction(self) -> None:
        with pytest.raises(ValueError):
            HybridAllocation(memory=-0.1, critical=0.5, important=0.3, normal=0.2, buffer=0.1)


class TestContextConfig:
    def test_defaults(self) -> None:
        cfg = ContextConfig()
        assert cfg.strategy == "summarize"
        assert cfg.max_tokens == 8_192
        assert cfg.summary_reserve_fraction == 0.30
        assert cfg.memory_integration is True

    def test_unknown_strategy_rejected(self) -> None:
        with pytest.raises(ValueError):
            ContextConfig(strategy="truncate")  # type: ignore[arg-type]

    def test_reserve_fraction_bounds(self) -> None:
        with pytest.raises(ValueError):
            ContextConfig(summary_reserve_fraction=0.0)
        with pytest.raises(ValueError):
            ContextConfig(summary_reserve_fraction=1.0)

    def test_max_tokens_bounds(self) -> None:
        with pytest.raises(ValueError):
            ContextConfig(max_tokens=100)


class TestComponentConfigs:
    def test_summarizer_retry_bounds(self) -> None:
        assert SummarizerConfig().max_retries == 2
        with pytest.raises(ValueError):
            SummarizerConfig(max_retries=11)

    def test_memory_marker_single_char(self) -> None:
        assert MemoryConfig(marker="!").marker == "!"
        with pytest.raises(ValueError):
            MemoryConfig(marker="@@")

    def test_cache_ttl_positive(self) -> None:
        with pytest.raises(ValueError):
            CacheConfig(ttl_seconds=0)

    def test_strategy_config_defaults(self) -> None:
        cfg = StrategyConfig()
        assert cfg.type == "summarize"
        assert isinstance(cfg.allocation, HybridAllocation)


class TestContextKeepConfig:
    def test_default(self) -> None:
        cfg = ContextKeepConfig.default()
        assert cfg == ContextKeepConfig()
        assert cfg.store.db_path.endswith("sessions.db")

    def test_from_mapping_nested(self) -> None:
        cfg = ContextKeepConfig.from_mapping(
            {"context": {"strategy": "hybrid", "max_tokens": 32_000}}
        )
        assert cfg.context.strategy == "hybrid"
        assert cfg.context.max_tokens == 32_000

    def test_from_mapping_dotted_keys(self) -> None:
        cfg = ContextKeepConfig.from_mapping(
            {
                "context.strategy": "discard",
                "context": {"max_tokens": 4096},
                "store.db_path": "/tmp/ck.db",
            }
        )
        assert cfg.context.strategy == "discard"
        assert cfg.context.max_tokens == 4096
        assert cfg.store.db_path == "/tmp/ck.db"

    def test_from_mapping_validates(self) -> None:
        with pytest.raises(ValueError):
            ContextKeepConfig.from_mapping({"cache.max_entries": 0})


class TestTransitions:
    def test_archived_is_terminal(self) -> None:
        assert ALLOWED_TRANSITIONS[SessionStatus.ARCHIVED] == frozenset()

    def test_every_status_listed(self) -> None:
        assert set(ALLOWED_TRANSITIONS) == set(SessionStatus)


def test_version_exposed() -> None:
    assert contextkeep.__version__ == "0.1.0"
