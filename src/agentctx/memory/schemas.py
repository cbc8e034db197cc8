"""Memory domain data models.

The four memory kinds are distinct shapes behind one tagged union
(discriminated on ``kind``).  Every item is owned by exactly one agent.
"""

from __future__ import annotations

import time
import uuid
from collections.abc import Sequence
from enum import Enum
from typing import Annotated
from typing import Any
from typing import Literal
from typing import Union

from pydantic import BaseModel
from pydantic import Field
from pydantic import TypeAdapter
from pydantic import model_validator

from agentctx.errors import PartialRetrievalError


def new_memory_id() -> str:
    return f"mem_{uuid.uuid4().hex}"


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class MemoryKind(str, Enum):
    """The four memory stores."""

    episodic = "episodic"
    semantic = "semantic"
    procedural = "procedural"
    working = "working"


class SemanticOrigin(str, Enum):
    """How a semantic fact entered memory."""

    learned = "learned"
    configured = "configured"
    extracted = "extracted"


# ---------------------------------------------------------------------------
# Items
# ---------------------------------------------------------------------------


class MemoryBase(BaseModel):
    """Fields shared by every memory kind."""

    id: str = Field(
        default_factory=new_memory_id,
        description="Unique identifier, auto-generated as mem_{uuid4_hex}.",
    )
    agent_id: str | None = Field(
        default=None,
        description="Owning agent; assigned by the memory manager on store.",
    )
    session_id: str | None = Field(
        default=None,
        description="Conversation session the memory was formed in.",
    )
    created_at: float = Field(
        default_factory=time.time,
        description="Unix epoch when the memory was formed.",
    )
    last_accessed: float | None = Field(
        default=None,
        description="Unix epoch of the last retrieval; defaults to created_at.",
    )
    access_count: int = Field(default=0, ge=0)
    importance: float = Field(default=0.5, ge=0.0, le=1.0)
    archived: bool = Field(
        default=False,
        description="Archived items are kept but no longer retrieved.",
    )
    embedding: tuple[float, ...] | None = Field(
        default=None,
        description="Vector embedding; immutable once computed.",
    )

    @model_validator(mode="after")
    def _default_last_accessed(self) -> MemoryBase:
        if self.last_accessed is None:
            self.last_accessed = self.created_at
        return self

    def text(self) -> str:
        """Plain-text rendering used for embeddings and context segments."""
        raise NotImplementedError

    def salience(self) -> float:
        """Stored importance used by the ranking function."""
        return self.importance

    def with_embedding(self, vector: Sequence[float]):
        """Return a copy carrying *vector*.

        Embeddings never change once set; use :meth:`reembedded` to
        produce a new item instead.
        """
        if self.embedding is not None:
            raise ValueError(f"memory {self.id} already has an embedding")
        return self.model_copy(update={"embedding": tuple(float(v) for v in vector)})

    def reembedded(self, vector: Sequence[float]):
        """Return a new item (new id) carrying *vector*."""
        return self.model_copy(
            update={
                "id": new_memory_id(),
                "embedding": tuple(float(v) for v in vector),
            }
        )


class EpisodicMemory(MemoryBase):
    """A specific event or interaction."""

    kind: Literal["episodic"] = "episodic"
    event: str
    context: dict[str, Any] = Field(default_factory=dict)
    participants: list[str] = Field(default_factory=list)
    outcome: str | None = None
    sequence: int = Field(default=0, ge=0)
    decay_rate: float = Field(
        default=0.1,
        ge=0.0,
        description=(
            "Read by the out-of-band decay policy that archives old "
            "episodes; retrieval ranking ignores it."
        ),
    )
    consolidated_from: list[str] = Field(
        default_factory=list,
        description="Ids of archived episodes this one summarizes.",
    )

    def text(self) -> str:
        if self.outcome:
            return f"{self.event} Outcome: {self.outcome}"
        return self.event


class ConceptRelation(BaseModel):
    relation: str
    target: str
    strength: float = Field(default=1.0, ge=0.0, le=1.0)


class SemanticMemory(MemoryBase):
    """A durable fact or concept."""

    kind: Literal["semantic"] = "semantic"
    concept: str
    definition: str
    relationships: list[ConceptRelation] = Field(default_factory=list)
    origin: SemanticOrigin = SemanticOrigin.learned
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    usage_frequency: int = Field(default=0, ge=0)

    def text(self) -> str:
        return f"{self.concept}: {self.definition}"

    def salience(self) -> float:
        return max(self.importance, self.confidence)


class ProceduralMemory(MemoryBase):
    """A learned skill or workflow."""

    kind: Literal["procedural"] = "procedural"
    skill_name: str
    steps: list[str] = Field(default_factory=list)
    prerequisites: list[str] = Field(default_factory=list)
    success_rate: float = Field(default=0.0, ge=0.0, le=1.0)
    average_duration_ms: float = Field(default=0.0, ge=0.0)
    execution_count: int = Field(default=0, ge=0)
    failure_patterns: list[str] = Field(default_factory=list)

    def text(self) -> str:
        lines = [f"Skill: {self.skill_name}"]
        lines.extend(f"{n}. {step}" for n, step in enumerate(self.steps, start=1))
        return "\n".join(lines)


class WorkingMemoryItem(MemoryBase):
    """Short-lived active content held in the capacity-bounded buffer."""

    kind: Literal["working"] = "working"
    content: str
    priority: float = Field(default=0.5, ge=0.0, le=1.0)
    token_count: int = Field(default=0, ge=0)
    source_id: str | None = Field(
        default=None,
        description="Long-term memory this item mirrors, if any.",
    )

    def text(self) -> str:
        return self.content

    def salience(self) -> float:
        return self.priority


MemoryItem = Annotated[
    Union[EpisodicMemory, SemanticMemory, ProceduralMemory, WorkingMemoryItem],
    Field(discriminator="kind"),
]

MEMORY_ITEM_ADAPTER: TypeAdapter[MemoryItem] = TypeAdapter(MemoryItem)


def classify_memory(raw: dict[str, Any]) -> MemoryItem:
    """Build a typed memory from a raw dict.

    An explicit ``kind`` wins; otherwise the shape decides: steps or a
    skill name make it procedural, a concept or definition semantic, an
    event episodic, anything else is working memory.
    """
    data = dict(raw)
    if "kind" not in data:
        if "skill_name" in data or "steps" in data:
            data["kind"] = MemoryKind.procedural.value
        elif "concept" in data or "definition" in data:
            data["kind"] = MemoryKind.semantic.value
        elif "event" in data:
            data["kind"] = MemoryKind.episodic.value
        else:
            data["kind"] = MemoryKind.working.value
    return MEMORY_ITEM_ADAPTER.validate_python(data)


# ---------------------------------------------------------------------------
# Working memory buffer
# ---------------------------------------------------------------------------


class WorkingMemoryBuffer(BaseModel):
    """Resident set of one agent's working memory."""

    agent_id: str
    items: list[WorkingMemoryItem] = Field(default_factory=list)
    capacity_items: int = Field(ge=1)
    capacity_tokens: int = Field(ge=1)
    compressed: bool = False

    @property
    def token_usage(self) -> int:
        return sum(item.token_count for item in self.items)

    def by_priority(self) -> list[WorkingMemoryItem]:
        return sorted(
            self.items,
            key=lambda i: (-i.priority, -(i.last_accessed or 0.0), i.id),
        )


# ---------------------------------------------------------------------------
# Retrieval contract
# ---------------------------------------------------------------------------


class RetrievalOptions(BaseModel):
    """Per-call retrieval options."""

    limit: int | None = Field(default=None, ge=1)
    kinds: set[MemoryKind] | None = Field(
        default=None,
        description="Restrict the fan-out to these stores.",
    )
    session_id: str | None = None
    store_timeout: float | None = Field(
        default=None,
        gt=0.0,
        description="Sub-deadline per store in seconds.",
    )
    min_score: float | None = None
    track_access: bool = True
    now: float | None = Field(
        default=None,
        description="Reference time for recency decay; defaults to the clock.",
    )


class ScoredMemory(BaseModel):
    """One ranked retrieval result."""

    item: MemoryItem
    source: MemoryKind
    similarity: float
    recency: float
    importance: float
    score: float


class SourceFailure(BaseModel):
    """A store that failed or timed out during retrieval."""

    source: str
    reason: str
    timed_out: bool = False


class RankedMemories(BaseModel):
    """Merged, ranked retrieval results across all stores."""

    query: str
    agent_id: str
    memories: list[ScoredMemory] = Field(default_factory=list)
    partial: bool = False
    failures: list[SourceFailure] = Field(default_factory=list)
    total_candidates: int = 0
    retrieval_ms: float = 0.0

    def ids(self) -> list[str]:
        return [m.item.id for m in self.memories]

    def raise_if_partial(self) -> RankedMemories:
        """Raise ``PartialRetrievalError`` when any source failed."""
        if self.partial:
            raise PartialRetrievalError(self)
        return self


class StoreResult(BaseModel):
    """Outcome of a ``store`` call."""

    memory_id: str
    kind: MemoryKind
    evicted: list[str] = Field(
        default_factory=list,
        description="Working memory items evicted to make room.",
    )


class MemoryOverview(BaseModel):
    """How much an agent remembers and how full its working memory is."""

    agent_id: str
    counts: dict[str, int] = Field(
        default_factory=dict,
        description="Active items per memory kind; working counts resident items.",
    )
    archived: int = Field(default=0, ge=0)
    last_stored_at: float | None = Field(
        default=None,
        description="Creation time of the newest long-term item.",
    )
    working_items: int = Field(default=0, ge=0)
    working_tokens: int = Field(default=0, ge=0)
    capacity_items: int = Field(ge=1)
    capacity_tokens: int = Field(ge=1)
    compressed: bool = False
