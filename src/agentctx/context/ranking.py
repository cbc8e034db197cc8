"""Rank stage: score candidate segments and penalize near-duplicates."""

from __future__ import annotations

from agentctx.config import ContextConfig
from agentctx.context.schemas import ContextSegment
from agentctx.context.schemas import SegmentType
from agentctx.memory.scoring import MemoryScorer
from agentctx.memory.vector import cosine_similarity


def segment_order_key(segment: ContextSegment) -> tuple[float, float, str]:
    """Best first: higher score, then newer, then id."""
    return (-round(segment.score, 9), -segment.timestamp, segment.id)


class ContextRanker:
    """Scores segments with the memory scorer plus a diversity penalty.

    A segment whose embedding is at least ``diversity_threshold`` similar
    to a higher-ranked segment has its score multiplied by
    ``1 - diversity_penalty``.  System segments are never scored.
    """

    def __init__(
        self,
        scorer: MemoryScorer | None = None,
        config: ContextConfig | None = None,
    ) -> None:
        self.scorer = scorer or MemoryScorer()
        self.config = config or ContextConfig()

    def rank(self, segments: list[ContextSegment], *, now: float) -> list[ContextSegment]:
        system = [s for s in segments if s.type is SegmentType.system]
        scored = [self._score(s, now=now) for s in segments if s.type is not SegmentType.system]
        scored.sort(key=segment_order_key)
        return system + self.apply_diversity(scored)

    def _score(self, segment: ContextSegment, *, now: float) -> ContextSegment:
        breakdown = self.scorer.score(
            similarity=segment.relevance,
            importance=segment.priority,
            timestamp=segment.timestamp,
            now=now,
        )
        return segment.model_copy(
            update={"recency": breakdown.recency, "score": breakdown.score}
        )

    def apply_diversity(self, ranked: list[ContextSegment]) -> list[ContextSegment]:
        """Down-weight near-duplicates of higher-ranked segments and re-sort."""
        threshold = self.config.diversity_threshold
        factor = 1.0 - self.config.diversity_penalty
        result: list[ContextSegment] = []
        for segment in ranked:
            duplicate = segment.embedding is not None and any(
                cosine_similarity(segment.embedding, other.embedding) >= threshold
                for other in result
                if other.embedding is not None
            )
            if duplicate:
                segment = segment.model_copy(update={"score": segment.score * factor})
            result.append(segment)
        result.sort(key=segment_order_key)
        return result
