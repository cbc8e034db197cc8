"""Unit tests for the rank, compress and structure stages."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from agentctx.config import ContextConfig
from agentctx.context import CompressionMethod
from agentctx.context import CompressionRecord
from agentctx.context import ContextCompressor
from agentctx.context import ContextRanker
from agentctx.context import ContextSegment
from agentctx.context import ContextStructurer
from agentctx.context import ContextWindow
from agentctx.context import SegmentType
from agentctx.context.compression import split_sentences
from agentctx.errors import BudgetExceededError

NOW = 1_700_000_000.0

_E1 = (1.0, 0.0, 0.0)
_E2 = (0.0, 1.0, 0.0)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _segment(
    seg_id: str,
    seg_type: SegmentType = SegmentType.memory,
    *,
    content: str | None = None,
    tokens: int | None = None,
    score: float = 0.5,
    relevance: float = 0.0,
    timestamp: float = NOW,
    source: str | None = None,
    embedding: tuple[float, ...] | None = None,
) -> ContextSegment:
    if content is None:
        content = "x" * ((tokens or 10) * 4)
    return ContextSegment(
        id=seg_id,
        type=seg_type,
        content=content,
        token_count=tokens if tokens is not None else -(-len(content) // 4),
        score=score,
        relevance=relevance,
        timestamp=timestamp,
        source=source,
        embedding=embedding,
    )


_PARAGRAPH = (
    "The billing service failed during the nightly run. "
    "Invoices for three customers were not sent. "
    "The billing team restarted the service at noon. "
    "Weather was sunny."
)


# ---------------------------------------------------------------------------
# Rank
# ---------------------------------------------------------------------------


class TestContextRanker:
    def test_system_first_and_scored_order(self):
        ranker = ContextRanker()
        ranked = ranker.rank(
            [
                _segment("low", relevance=0.1),
                _segment("sys", SegmentType.system),
                _segment("high", relevance=0.9),
            ],
            now=NOW,
        )
        assert [s.id for s in ranked] == ["sys", "high", "low"]
        assert ranked[1].score == pytest.approx(0.9 * 0.6 + 0.3 + 0.05)
        assert ranked[1].recency == 1.0

    def test_near_duplicates_penalized(self):
        ranker = ContextRanker()
        ranked = ranker.rank(
            [
                _segment("a", relevance=1.0, embedding=_E1),
                _segment("b", relevance=0.9, embedding=_E1),
                _segment("c", relevance=0.5, embedding=_E2),
            ],
            now=NOW,
        )
        assert [s.id for s in ranked] == ["a", "c", "b"]
        b = next(s for s in ranked if s.id == "b")
        assert b.score == pytest.approx((0.9 * 0.6 + 0.35) * 0.5)

    def test_penalty_configurable(self):
        ranker = ContextRanker(config=ContextConfig(diversity_penalty=0.0))
        ranked = ranker.rank(
            [
                _segment("a", relevance=1.0, embedding=_E1),
                _segment("b", relevance=0.9, embedding=_E1),
            ],
            now=NOW,
        )
        assert [s.id for s in ranked] == ["a", "b"]

    def test_equal_scores_prefer_newer(self):
        ranker = ContextRanker()
        ranked = ranker.apply_diversity(
            [
                _segment("old", score=0.5, timestamp=NOW - 10),
                _segment("new", score=0.5, timestamp=NOW),
            ]
        )
        assert [s.id for s in ranked] == ["new", "old"]


# ---------------------------------------------------------------------------
# Compress
# ---------------------------------------------------------------------------


class TestCompressionMethods:
    def test_split_sentences(self):
        assert split_sentences("One. Two!\nThree?") == ["One.", "Two!", "Three?"]

    def test_truncate(self):
        compressor = ContextCompressor()
        segment = _segment("h", SegmentType.history, tokens=100)
        smaller = compressor.truncate(segment, 20)
        assert smaller.token_count <= 20
        assert smaller.content.endswith(" [...]")
        assert smaller.compressed is True
        assert smaller.compression_method is CompressionMethod.truncation
        assert smaller.original_tokens == 100

    def test_truncate_respects_minimum(self):
        compressor = ContextCompressor(config=ContextConfig(min_compressed_tokens=8))
        smaller = compressor.truncate(_segment("h", SegmentType.history, tokens=100), 1)
        assert smaller.token_count == 8

    def test_truncate_useless_when_already_small(self):
        compressor = ContextCompressor()
        assert compressor.truncate(_segment("h", SegmentType.history, tokens=5), 3) is None

    def test_summarize_keeps_key_sentences_in_order(self):
        compressor = ContextCompressor()
        segment = _segment("m", content=_PARAGRAPH)
        smaller = compressor.summarize(segment, 26)
        assert smaller is not None
        assert smaller.token_count <= 26
        assert smaller.token_count < segment.token_count
        assert smaller.content.startswith("The billing service failed")
        assert "Weather was sunny." not in smaller.content
        assert smaller.compression_method is CompressionMethod.extractive

    def test_summarize_single_sentence_impossible(self):
        compressor = ContextCompressor()
        assert compressor.summarize(_segment("m", content="Just one sentence here."), 2) is None


class TestCompressStage:
    def test_fits_without_changes(self):
        segments = [_segment("sys", SegmentType.system, tokens=10), _segment("m", tokens=10)]
        outcome = ContextCompressor().compress(segments, 100)
        assert outcome.segments == segments
        assert outcome.dropped == []

    def test_history_truncated_before_dropping(self):
        segments = [
            _segment("sys", SegmentType.system, tokens=10),
            _segment("m", content="y" * 200, score=0.9),
            _segment("h", SegmentType.history, tokens=100, score=0.2),
        ]
        outcome = ContextCompressor().compress(segments, 100)

        assert outcome.used_tokens <= 100
        assert outcome.dropped == []
        [record] = outcome.compressions
        assert record.segment_id == "h"
        assert record.method is CompressionMethod.truncation
        assert record.original_tokens == 100

    def test_uncompressible_lowest_dropped(self):
        segments = [
            _segment("sys", SegmentType.system, tokens=10),
            _segment("keep", tokens=30, score=0.9),
            _segment("weak", content="z" * 200, score=0.1),
        ]
        outcome = ContextCompressor().compress(segments, 60)

        assert [s.id for s in outcome.segments] == ["sys", "keep"]
        [dropped] = outcome.dropped
        assert dropped.segment_id == "weak"
        assert dropped.token_count == 50
        assert outcome.used_tokens == 40

    def test_compressed_then_dropped_loses_record(self):
        segments = [
            _segment("sys", SegmentType.system, tokens=10),
            _segment("h", SegmentType.history, tokens=100, score=0.1),
        ]
        outcome = ContextCompressor().compress(segments, 12)

        assert [s.id for s in outcome.segments] == ["sys"]
        assert outcome.compressions == []
        assert outcome.dropped[0].token_count == 100

    def test_system_never_touched(self):
        system = _segment("sys", SegmentType.system, tokens=50)
        outcome = ContextCompressor().compress([system, _segment("m", tokens=60)], 50)
        assert outcome.segments == [system]

    def test_system_over_budget(self):
        with pytest.raises(BudgetExceededError) as exc_info:
            ContextCompressor().compress([_segment("sys", SegmentType.system, tokens=50)], 40)
        assert exc_info.value.required == 50
        assert exc_info.value.budget == 40


# ---------------------------------------------------------------------------
# Structure
# ---------------------------------------------------------------------------


class TestContextStructurer:
    def test_documented_order(self):
        segments = [
            _segment("know", SegmentType.knowledge, score=0.9),
            _segment("h2", SegmentType.history, timestamp=NOW + 2, score=0.9),
            _segment("epi", SegmentType.memory, source="episodic", score=0.9),
            _segment("tool", SegmentType.tool),
            _segment("h1", SegmentType.history, timestamp=NOW + 1, score=0.1),
            _segment("state", SegmentType.memory, source="state", score=0.1),
            _segment("work", SegmentType.memory, source="working", score=0.1),
            _segment("sys", SegmentType.system),
        ]
        ordered = ContextStructurer().structure(segments)
        assert [s.id for s in ordered] == [
            "sys",
            "work",
            "state",
            "epi",
            "h1",
            "h2",
            "tool",
            "know",
        ]

    def test_same_source_by_score(self):
        ordered = ContextStructurer().structure(
            [
                _segment("e1", source="episodic", score=0.2),
                _segment("e2", source="episodic", score=0.8),
            ]
        )
        assert [s.id for s in ordered] == ["e2", "e1"]


# ---------------------------------------------------------------------------
# Window invariants
# ---------------------------------------------------------------------------


class TestContextWindow:
    def test_used_tokens_must_match(self):
        with pytest.raises(ValidationError):
            ContextWindow(
                agent_id="a", max_tokens=100, used_tokens=5, segments=[_segment("m", tokens=10)]
            )

    def test_budget_enforced(self):
        with pytest.raises(ValidationError):
            ContextWindow(
                agent_id="a", max_tokens=5, used_tokens=10, segments=[_segment("m", tokens=10)]
            )

    def test_compressed_segment_needs_record(self):
        segment = ContextCompressor().truncate(_segment("h", SegmentType.history, tokens=100), 20)
        with pytest.raises(ValidationError):
            ContextWindow(
                agent_id="a",
                max_tokens=100,
                used_tokens=segment.token_count,
                segments=[segment],
            )
        window = ContextWindow(
            agent_id="a",
            max_tokens=100,
            used_tokens=segment.token_count,
            segments=[segment],
            compressions=[
                CompressionRecord(
                    segment_id="h",
                    method=CompressionMethod.truncation,
                    original_tokens=100,
                    compressed_tokens=segment.token_count,
                )
            ],
        )
        assert window.segments_of(SegmentType.history) == [segment]

    def test_compressed_flag_requires_metadata(self):
        with pytest.raises(ValidationError):
            ContextSegment(id="m", type=SegmentType.memory, content="x", token_count=1, compressed=True)

    def test_render(self):
        window = ContextWindow(
            agent_id="a",
            max_tokens=100,
            used_tokens=3,
            segments=[
                _segment("sys", SegmentType.system, content="Be brief.", tokens=1),
                _segment("m", content="fact", tokens=1),
                _segment("h", SegmentType.history, content="user: hi", tokens=1),
            ],
        )
        assert window.render() == "Be brief.\n\n## Memory\n\nfact\n\n## Conversation\n\nuser: hi"
        assert window.render(include_system=False).startswith("## Memory")
