"""Application configuration dataclasses.

Frozen dataclasses with sensible defaults for each subsystem.
No env-var loading or YAML parsing; plain defaults that can
be overridden at construction time.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

# Similarity, recency, stored importance.
DEFAULT_RANKING_WEIGHTS: tuple[float, float, float] = (0.6, 0.3, 0.1)

_DAY_SECONDS = 86_400.0


@dataclass(frozen=True)
class MessageConfig:
    """Message processor settings."""

    canonical_version: str = "3.0.0"
    default_version: str = "1.0.0"
    max_content_chars: int = 200_000


@dataclass(frozen=True)
class RankingConfig:
    """Weights and decay for the combined memory score.

    ``score = similarity * w_similarity + importance * w_importance
    + recency_decay(timestamp) * w_recency``
    """

    similarity_weight: float = DEFAULT_RANKING_WEIGHTS[0]
    recency_weight: float = DEFAULT_RANKING_WEIGHTS[1]
    importance_weight: float = DEFAULT_RANKING_WEIGHTS[2]
    half_life_seconds: float = 30 * _DAY_SECONDS

    def __post_init__(self) -> None:
        weights = (self.similarity_weight, self.recency_weight, self.importance_weight)
        if any(w < 0 for w in weights):
            raise ValueError("ranking weights must be non-negative")
        if not math.isclose(sum(weights), 1.0, abs_tol=1e-9):
            raise ValueError("ranking weights must sum to 1.0")
        if self.half_life_seconds <= 0:
            raise ValueError("half_life_seconds must be > 0")


@dataclass(frozen=True)
class WorkingMemoryConfig:
    """Capacity ceilings for the per-agent working memory resident set."""

    capacity_items: int = 20
    capacity_tokens: int = 4_000


@dataclass(frozen=True)
class RetrievalConfig:
    """Fan-out retrieval parameters."""

    limit: int = 20
    per_store_limit: int = 20
    store_timeout_seconds: float = 2.0
    min_score: float = 0.0


@dataclass(frozen=True)
class ConsolidationConfig:
    """Tuneable parameters for episodic consolidation."""

    episode_threshold: int = 50
    keep_recent: int = 10
    consolidated_decay_rate: float = 0.05


@dataclass(frozen=True)
class StateConfig:
    """State manager consistency and checkpoint policy."""

    schema_version: str = "1.0.0"
    shared_staleness_seconds: float = 5.0
    conflict_window_seconds: float = 5.0
    checkpoint_delta_threshold: int = 50
    checkpoint_interval_seconds: float = 3_600.0
    append_only_fields: tuple[str, ...] = (
        "local.error_history",
        "local.learned_patterns",
    )


@dataclass(frozen=True)
class ContextConfig:
    """Context engine budget and optimization settings."""

    default_token_budget: int = 32_000
    max_history: int = 20
    memory_limit: int = 20
    diversity_threshold: float = 0.92
    diversity_penalty: float = 0.5
    chars_per_token: float = 4.0
    min_compressed_tokens: int = 8
    system_instructions: str = "You are a helpful assistant."


@dataclass(frozen=True)
class CompletionConfig:
    """Completion provider settings."""

    provider: str = "noop"
    model: str = "gpt-4"
    api_key: str | None = None
    base_url: str = "https://api.openai.com/v1"
    temperature: float = 0.2
    max_tokens: int = 1024
    timeout_seconds: float = 30.0


@dataclass(frozen=True)
class AuditConfig:
    """Settings for the JSONL audit logger."""

    file_path: str = "agentctx_audit.jsonl"
    enabled: bool = True
