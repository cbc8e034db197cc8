"""Compress stage: fit ranked segments into the token budget.

While the estimate exceeds the budget, the lowest-scoring non-system
segment is compressed once (truncation for history, extractive
key-point summarization for everything else) or, when compression does
not help or was already applied, dropped.  System segments are never
touched.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from dataclasses import field

from agentctx.config import ContextConfig
from agentctx.context.schemas import CompressionMethod
from agentctx.context.schemas import CompressionRecord
from agentctx.context.schemas import ContextSegment
from agentctx.context.schemas import DroppedSegment
from agentctx.context.schemas import SegmentType
from agentctx.errors import BudgetExceededError
from agentctx.memory.scoring import tokenize
from agentctx.tokens import CharacterTokenEstimator
from agentctx.tokens import TokenEstimator

logger = logging.getLogger(__name__)

_SENTENCE_RE = re.compile(r"(?<=[.!?])\s+|\n+")
_TRUNCATION_MARKER = " [...]"


def split_sentences(text: str) -> list[str]:
    return [s.strip() for s in _SENTENCE_RE.split(text) if s and s.strip()]


@dataclass
class CompressionOutcome:
    segments: list[ContextSegment]
    dropped: list[DroppedSegment] = field(default_factory=list)
    compressions: list[CompressionRecord] = field(default_factory=list)

    @property
    def used_tokens(self) -> int:
        return sum(s.token_count for s in self.segments)


def _victim_key(segment: ContextSegment) -> tuple[float, float, str]:
    # Lowest score first; among equals the oldest, then by id.
    return (round(segment.score, 9), segment.timestamp, segment.id)


class ContextCompressor:
    def __init__(
        self,
        estimator: TokenEstimator | None = None,
        config: ContextConfig | None = None,
    ) -> None:
        self.config = config or ContextConfig()
        self.estimator = estimator or CharacterTokenEstimator(self.config.chars_per_token)

    # ------------------------------------------------------------------
    # Methods
    # ------------------------------------------------------------------

    def truncate(self, segment: ContextSegment, target_tokens: int) -> ContextSegment | None:
        """Keep the leading part of *segment* within *target_tokens*."""
        target = max(target_tokens, self.config.min_compressed_tokens)
        if target >= segment.token_count:
            return None
        marker_tokens = self.estimator.estimate(_TRUNCATION_MARKER)
        keep_tokens = target - marker_tokens
        if keep_tokens <= 0:
            return None
        keep_chars = _fit_chars(self.estimator, segment.content, keep_tokens)
        content = segment.content[:keep_chars].rstrip() + _TRUNCATION_MARKER
        return self._compressed(segment, content, CompressionMethod.truncation)

    def summarize(self, segment: ContextSegment, target_tokens: int) -> ContextSegment | None:
        """Keep the most representative sentences, in original order."""
        sentences = split_sentences(segment.content)
        if len(sentences) < 2:
            return None
        target = max(target_tokens, self.config.min_compressed_tokens)

        frequency: dict[str, int] = {}
        for sentence in sentences:
            for word in tokenize(sentence):
                frequency[word] = frequency.get(word, 0) + 1

        def weight(index: int) -> tuple[float, int]:
            words = tokenize(sentences[index])
            density = sum(frequency[w] for w in words) / (len(words) or 1)
            # The opening sentence usually carries the topic.
            return (density + (1.0 if index == 0 else 0.0), -index)

        chosen: list[int] = []
        for index in sorted(range(len(sentences)), key=weight, reverse=True):
            candidate = sorted([*chosen, index])
            text = " ".join(sentences[i] for i in candidate)
            if self.estimator.estimate(text) <= target:
                chosen = candidate
        if not chosen:
            return None
        content = " ".join(sentences[i] for i in chosen)
        if self.estimator.estimate(content) >= segment.token_count:
            return None
        return self._compressed(segment, content, CompressionMethod.extractive)

    def _compressed(
        self, segment: ContextSegment, content: str, method: CompressionMethod
    ) -> ContextSegment:
        return segment.model_copy(
            update={
                "content": content,
                "token_count": self.estimator.estimate(content),
                "compressed": True,
                "compression_method": method,
                "original_tokens": segment.token_count,
            }
        )

    # ------------------------------------------------------------------
    # Stage
    # ------------------------------------------------------------------

    def compress(self, segments: list[ContextSegment], budget: int) -> CompressionOutcome:
        """Compress or drop segments until the total fits *budget*.

        Raises:
            BudgetExceededError: system segments alone exceed *budget*.
        """
        system_tokens = sum(s.token_count for s in segments if s.type is SegmentType.system)
        if system_tokens > budget:
            raise BudgetExceededError(required=system_tokens, budget=budget)

        outcome = CompressionOutcome(segments=list(segments))
        records: dict[str, CompressionRecord] = {}
        total = outcome.used_tokens
        while total > budget:
            candidates = [s for s in outcome.segments if s.type is not SegmentType.system]
            victim = min(candidates, key=_victim_key)
            position = outcome.segments.index(victim)

            if not victim.compressed:
                target = victim.token_count - (total - budget)
                if victim.type is SegmentType.history:
                    smaller = self.truncate(victim, target)
                else:
                    smaller = self.summarize(victim, target)
                if smaller is not None and smaller.token_count < victim.token_count:
                    outcome.segments[position] = smaller
                    records[victim.id] = CompressionRecord(
                        segment_id=victim.id,
                        method=smaller.compression_method,
                        original_tokens=victim.token_count,
                        compressed_tokens=smaller.token_count,
                    )
                    total -= victim.token_count - smaller.token_count
                    continue

            del outcome.segments[position]
            records.pop(victim.id, None)
            outcome.dropped.append(
                DroppedSegment(
                    segment_id=victim.id,
                    type=victim.type,
                    token_count=victim.original_tokens or victim.token_count,
                    score=victim.score,
                    source_id=victim.source_id,
                )
            )
            total -= victim.token_count
            logger.debug("Dropped context segment %s (score %.4f)", victim.id, victim.score)

        outcome.compressions = [records[s.id] for s in outcome.segments if s.id in records]
        return outcome


def _fit_chars(estimator: TokenEstimator, text: str, tokens: int) -> int:
    """Longest prefix length of *text* whose estimate stays within *tokens*."""
    if isinstance(estimator, CharacterTokenEstimator):
        return min(estimator.chars_for(tokens), len(text))
    low, high = 0, len(text)
    while low < high:
        mid = (low + high + 1) // 2
        if estimator.estimate(text[:mid]) <= tokens:
            low = mid
        else:
            high = mid - 1
    return low
