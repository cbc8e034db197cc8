"""Combined memory scoring shared by retrieval and context ranking.

``score = similarity * w_sim + importance * w_imp + recency * w_rec``
where recency decays exponentially with a configurable half-life.
Equal scores are broken by the more recently accessed item, then by id,
so identical inputs always produce the same order.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from agentctx.config import RankingConfig
from agentctx.memory.schemas import MemoryItem
from agentctx.memory.schemas import MemoryKind
from agentctx.memory.schemas import ScoredMemory

_WORD_RE = re.compile(r"[a-z0-9]+")

# Scores closer than this are treated as equal for tie-breaking.
_SCORE_PRECISION = 9


def tokenize(text: str) -> set[str]:
    """Extract lowercase alphanumeric tokens from *text*."""
    return set(_WORD_RE.findall(text.lower()))


def keyword_similarity(query: str, text: str) -> float:
    """Fraction of query tokens present in *text* (0.0 - 1.0)."""
    query_words = tokenize(query)
    if not query_words:
        return 0.0
    return len(query_words & tokenize(text)) / len(query_words)


def recency_decay(timestamp: float, *, now: float, half_life_seconds: float) -> float:
    """Exponential decay: 1.0 at *now*, 0.5 one half-life ago."""
    age = max(now - timestamp, 0.0)
    return 0.5 ** (age / half_life_seconds)


@dataclass(frozen=True)
class ScoreBreakdown:
    similarity: float
    recency: float
    importance: float
    score: float


class MemoryScorer:
    """Weighted relevance/recency/importance scorer."""

    def __init__(self, config: RankingConfig | None = None) -> None:
        self.config = config or RankingConfig()

    def score(
        self,
        *,
        similarity: float,
        importance: float,
        timestamp: float,
        now: float,
    ) -> ScoreBreakdown:
        cfg = self.config
        similarity = min(max(similarity, 0.0), 1.0)
        importance = min(max(importance, 0.0), 1.0)
        recency = recency_decay(
            timestamp, now=now, half_life_seconds=cfg.half_life_seconds
        )
        combined = (
            similarity * cfg.similarity_weight
            + importance * cfg.importance_weight
            + recency * cfg.recency_weight
        )
        return ScoreBreakdown(
            similarity=similarity,
            recency=recency,
            importance=importance,
            score=combined,
        )

    def score_item(
        self,
        item: MemoryItem,
        *,
        similarity: float,
        now: float,
    ) -> ScoredMemory:
        breakdown = self.score(
            similarity=similarity,
            importance=item.salience(),
            timestamp=item.created_at,
            now=now,
        )
        return ScoredMemory(
            item=item,
            source=MemoryKind(item.kind),
            similarity=breakdown.similarity,
            recency=breakdown.recency,
            importance=breakdown.importance,
            score=breakdown.score,
        )

    def rank(self, scored: list[ScoredMemory]) -> list[ScoredMemory]:
        """Sort best first with the deterministic tie-break."""
        return sorted(scored, key=rank_key)


def rank_key(scored: ScoredMemory) -> tuple[float, float, str]:
    return (
        -round(scored.score, _SCORE_PRECISION),
        -(scored.item.last_accessed or 0.0),
        scored.item.id,
    )
