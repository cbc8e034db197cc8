"""Per-kind long-term memory stores.

Episodic and semantic stores search through the vector index, filtered
by owning agent and kind; the procedural store matches skills by token
overlap with the query.  Each store returns candidates independently so
the manager can fan out and merge.
"""

from __future__ import annotations

from dataclasses import dataclass

from agentctx.memory.backends import MemoryRecordStore
from agentctx.memory.schemas import MemoryItem
from agentctx.memory.schemas import MemoryKind
from agentctx.memory.schemas import ProceduralMemory
from agentctx.memory.scoring import keyword_similarity
from agentctx.memory.vector import VectorIndex


@dataclass(frozen=True)
class RetrievalQuery:
    text: str
    agent_id: str
    limit: int
    vector: tuple[float, ...] | None = None
    session_id: str | None = None


@dataclass(frozen=True)
class MemoryCandidate:
    item: MemoryItem
    similarity: float


class VectorBackedStore:
    """Store whose retrieval goes through the vector-search collaborator."""

    kind: MemoryKind

    def __init__(self, records: MemoryRecordStore, index: VectorIndex) -> None:
        self._records = records
        self._index = index
        self._hydrated: set[str] = set()

    async def hydrate(self, agent_id: str) -> int:
        """Load an agent's persisted embeddings into the index.

        The index is process-local while records may outlive the process,
        so each store hydrates an agent once before its first search.
        """
        items = await self._records.list(agent_id, self.kind)
        count = 0
        for item in items:
            if item.embedding is not None:
                await self._index.upsert(
                    item.id,
                    item.embedding,
                    {"agent_id": agent_id, "kind": self.kind.value},
                )
                count += 1
        self._hydrated.add(agent_id)
        return count

    async def put(self, item: MemoryItem) -> None:
        await self._records.put(item)
        if item.embedding is not None:
            await self._index.upsert(
                item.id,
                item.embedding,
                {"agent_id": item.agent_id, "kind": self.kind.value},
            )

    async def search(self, query: RetrievalQuery) -> list[MemoryCandidate]:
        if query.vector is None:
            return []
        if query.agent_id not in self._hydrated:
            await self.hydrate(query.agent_id)
        # Over-fetch so archived or other-session hits do not starve the result.
        matches = await self._index.search(
            query.vector,
            {"agent_id": query.agent_id, "kind": self.kind.value},
            query.limit * 2,
        )
        if not matches:
            return []
        similarity = {m.id: max(m.score, 0.0) for m in matches}
        items = await self._records.get_many(similarity)
        candidates = [
            MemoryCandidate(item=item, similarity=similarity[item.id])
            for item in items
            if not item.archived
            and item.agent_id == query.agent_id
            and (query.session_id is None or item.session_id == query.session_id)
        ]
        return candidates[: query.limit]


class EpisodicStore(VectorBackedStore):
    kind = MemoryKind.episodic


class SemanticStore(VectorBackedStore):
    kind = MemoryKind.semantic


class ProceduralStore:
    """Skills matched by name/step/prerequisite similarity."""

    kind = MemoryKind.procedural

    def __init__(self, records: MemoryRecordStore) -> None:
        self._records = records

    async def put(self, item: MemoryItem) -> None:
        await self._records.put(item)

    async def search(self, query: RetrievalQuery) -> list[MemoryCandidate]:
        skills = await self._records.list(query.agent_id, self.kind)
        candidates: list[MemoryCandidate] = []
        for skill in skills:
            assert isinstance(skill, ProceduralMemory)
            name_score = keyword_similarity(query.text, skill.skill_name)
            body = " ".join([*skill.steps, *skill.prerequisites])
            body_score = keyword_similarity(query.text, body)
            similarity = max(name_score, 0.5 * name_score + 0.5 * body_score)
            if similarity > 0.0:
                candidates.append(MemoryCandidate(item=skill, similarity=similarity))
        candidates.sort(key=lambda c: (-c.similarity, c.item.id))
        return candidates[: query.limit]
