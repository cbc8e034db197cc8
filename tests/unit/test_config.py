"""Unit tests for configuration dataclasses."""

from dataclasses import FrozenInstanceError

import pytest

from agentctx.config import AuditConfig
from agentctx.config import CompletionConfig
from agentctx.config import ConsolidationConfig
from agentctx.config import ContextConfig
from agentctx.config import RankingConfig
from agentctx.config import StateConfig
from agentctx.config import WorkingMemoryConfig


# ---------------------------------------------------------------------------
# RankingConfig
# ---------------------------------------------------------------------------


class TestRankingConfig:
    def test_defaults(self):
        cfg = RankingConfig()
        assert cfg.similarity_weight == 0.6
        assert cfg.recency_weight == 0.3
        assert cfg.importance_weight == 0.1
        assert cfg.half_life_seconds == 30 * 86_400.0

    def test_weights_must_sum_to_one(self):
        with pytest.raises(ValueError, match="sum to 1.0"):
            RankingConfig(similarity_weight=0.5, recency_weight=0.3, importance_weight=0.1)

    def test_negative_weight_rejected(self):
        with pytest.raises(ValueError, match="non-negative"):
            RankingConfig(similarity_weight=1.2, recency_weight=-0.2, importance_weight=0.0)

    def test_half_life_must_be_positive(self):
        with pytest.raises(ValueError, match="half_life_seconds"):
            RankingConfig(half_life_seconds=0)

    def test_custom_weights_accepted(self):
        cfg = RankingConfig(similarity_weight=0.5, recency_weight=0.25, importance_weight=0.25)
        assert cfg.importance_weight == 0.25


# ---------------------------------------------------------------------------
# Other sections
# ---------------------------------------------------------------------------


class TestWorkingMemoryConfig:
    def test_defaults(self):
        cfg = WorkingMemoryConfig()
        assert cfg.capacity_items == 20
        assert cfg.capacity_tokens == 4_000


class TestConsolidationConfig:
    def test_defaults(self):
        cfg = ConsolidationConfig()
        assert cfg.episode_threshold == 50
        assert cfg.keep_recent == 10


class TestStateConfig:
    def test_defaults(self):
        cfg = StateConfig()
        assert cfg.shared_staleness_seconds == 5.0
        assert cfg.checkpoint_delta_threshold == 50
        assert "local.error_history" in cfg.append_only_fields
        assert "local.learned_patterns" in cfg.append_only_fields


class TestContextConfig:
    def test_defaults(self):
        cfg = ContextConfig()
        assert cfg.default_token_budget == 32_000
        assert cfg.diversity_threshold == 0.92
        assert cfg.diversity_penalty == 0.5


class TestCompletionConfig:
    def test_defaults(self):
        cfg = CompletionConfig()
        assert cfg.provider == "noop"
        assert cfg.api_key is None


# ---------------------------------------------------------------------------
# AuditConfig
# ---------------------------------------------------------------------------


class TestAuditConfig:
    def test_defaults(self):
        cfg = AuditConfig()
        assert cfg.file_path == "agentctx_audit.jsonl"
        assert cfg.enabled is True

    def test_frozen(self):
        cfg = AuditConfig()
        with pytest.raises(FrozenInstanceError):
            cfg.enabled = False  # type: ignore[misc]
