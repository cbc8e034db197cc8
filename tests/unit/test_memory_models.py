"""Unit tests for memory item models, embeddings and the vector index."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from agentctx.memory import classify_memory
from agentctx.memory import EpisodicMemory
from agentctx.memory import HashingEmbedder
from agentctx.memory import InMemoryVectorIndex
from agentctx.memory import ProceduralMemory
from agentctx.memory import SemanticMemory
from agentctx.memory import WorkingMemoryItem
from agentctx.memory.vector import cosine_similarity
from agentctx.tokens import CharacterTokenEstimator


class TestClassifyMemory:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ({"event": "Met the team."}, EpisodicMemory),
            ({"concept": "sky", "definition": "Above us."}, SemanticMemory),
            ({"skill_name": "triage", "steps": ["read", "sort"]}, ProceduralMemory),
            ({"content": "scratch"}, WorkingMemoryItem),
        ],
    )
    def test_shape_decides_kind(self, raw, expected):
        assert isinstance(classify_memory(raw), expected)

    def test_explicit_kind_wins(self):
        item = classify_memory({"kind": "working", "content": "event-like", "event": "x"})
        assert isinstance(item, WorkingMemoryItem)

    def test_invalid_payload_rejected(self):
        with pytest.raises(ValidationError):
            classify_memory({"kind": "semantic"})


class TestMemoryItem:
    def test_last_accessed_defaults_to_created_at(self):
        item = EpisodicMemory(event="x", created_at=100.0)
        assert item.last_accessed == 100.0

    def test_importance_bounded(self):
        with pytest.raises(ValidationError):
            EpisodicMemory(event="x", importance=1.5)

    def test_embedding_set_once(self):
        item = EpisodicMemory(event="x").with_embedding([1.0, 0.0])
        assert item.embedding == (1.0, 0.0)
        with pytest.raises(ValueError, match="already has an embedding"):
            item.with_embedding([0.0, 1.0])

    def test_reembedded_is_new_item(self):
        item = EpisodicMemory(event="x").with_embedding([1.0, 0.0])
        fresh = item.reembedded([0.0, 1.0])
        assert fresh.id != item.id
        assert fresh.embedding == (0.0, 1.0)
        assert item.embedding == (1.0, 0.0)

    def test_text_renderings(self):
        assert EpisodicMemory(event="Shipped.", outcome="ok").text() == "Shipped. Outcome: ok"
        assert SemanticMemory(concept="sky", definition="Above.").text() == "sky: Above."
        skill = ProceduralMemory(skill_name="deploy", steps=["build", "push"])
        assert skill.text() == "Skill: deploy\n1. build\n2. push"

    def test_decay_rate_documented_and_non_negative(self):
        field = EpisodicMemory.model_fields["decay_rate"]
        assert "decay policy" in field.description
        with pytest.raises(ValidationError):
            EpisodicMemory(event="x", decay_rate=-0.1)


class TestHashingEmbedder:
    async def test_deterministic_and_normalized(self):
        embedder = HashingEmbedder(64)
        first = await embedder.embed("billing api deploy")
        second = await embedder.embed("billing api deploy")
        assert first == second
        assert len(first) == 64
        assert sum(v * v for v in first) == pytest.approx(1.0)

    async def test_similar_text_scores_higher(self):
        embedder = HashingEmbedder()
        query = await embedder.embed("billing api deploy")
        close = await embedder.embed("deploy the billing api")
        far = await embedder.embed("weather was sunny")
        assert cosine_similarity(query, close) > cosine_similarity(query, far)

    def test_minimum_dimensions(self):
        with pytest.raises(ValueError):
            HashingEmbedder(4)


class TestInMemoryVectorIndex:
    async def test_filtered_search_ordered(self):
        index = InMemoryVectorIndex()
        await index.upsert("a", [1.0, 0.0], {"agent_id": "agent-1", "kind": "episodic"})
        await index.upsert("b", [0.6, 0.8], {"agent_id": "agent-1", "kind": "episodic"})
        await index.upsert("c", [1.0, 0.0], {"agent_id": "agent-2", "kind": "episodic"})

        matches = await index.search([1.0, 0.0], {"agent_id": "agent-1"}, k=5)

        assert [m.id for m in matches] == ["a", "b"]
        assert matches[0].score == pytest.approx(1.0)

    async def test_zero_and_mismatched_vectors_score_zero(self):
        index = InMemoryVectorIndex()
        await index.upsert("a", [0.0, 1.0], {})
        await index.upsert("b", [0.0, 0.0], {})
        await index.upsert("c", [1.0, 0.0, 0.0], {})

        matches = await index.search([0.0, 2.0], {}, k=3)

        assert [m.id for m in matches] == ["a", "b", "c"]
        assert [m.score for m in matches] == pytest.approx([1.0, 0.0, 0.0])
        assert await index.search([0.0, 1.0], {}, k=0) == []

    async def test_delete(self):
        index = InMemoryVectorIndex()
        await index.upsert("a", [1.0, 0.0], {})
        await index.delete("a")
        await index.delete("missing")
        assert len(index) == 0

    def test_cosine_edge_cases(self):
        assert cosine_similarity([], [1.0]) == 0.0
        assert cosine_similarity([0.0, 0.0], [1.0, 0.0]) == 0.0
        assert cosine_similarity([1.0, 0.0], [1.0]) == 0.0


class TestCharacterTokenEstimator:
    @pytest.mark.parametrize("text,tokens", [("", 0), ("abc", 1), ("abcd", 1), ("abcde", 2)])
    def test_rounds_up(self, text, tokens):
        assert CharacterTokenEstimator().estimate(text) == tokens

    def test_chars_for(self):
        assert CharacterTokenEstimator().chars_for(5) == 20
        assert CharacterTokenEstimator().chars_for(-1) == 0

    def test_rejects_non_positive_ratio(self):
        with pytest.raises(ValueError):
            CharacterTokenEstimator(0)
