"""Context window data models."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel
from pydantic import Field
from pydantic import model_validator


class SegmentType(str, Enum):
    system = "system"
    memory = "memory"
    history = "history"
    tool = "tool"
    knowledge = "knowledge"


class CompressionMethod(str, Enum):
    truncation = "truncation"
    extractive = "extractive"


class ContextSegment(BaseModel):
    """One typed, scored slice of the context window."""

    id: str
    type: SegmentType
    content: str
    token_count: int = Field(ge=0)
    priority: float = Field(
        default=0.5,
        description="Stored importance of the source item (0.0 - 1.0).",
    )
    relevance: float = Field(default=0.0, description="Similarity to the query.")
    recency: float = 0.0
    score: float = 0.0
    compressed: bool = False
    compression_method: CompressionMethod | None = None
    original_tokens: int | None = Field(
        default=None,
        description="Token count before compression; set on compressed segments.",
    )
    source: str | None = Field(
        default=None,
        description="Producer of the segment: a memory kind, state, history or system.",
    )
    source_id: str | None = None
    timestamp: float = 0.0
    embedding: tuple[float, ...] | None = Field(default=None, exclude=True)

    @model_validator(mode="after")
    def _compression_recorded(self) -> ContextSegment:
        if self.compressed and (
            self.original_tokens is None or self.compression_method is None
        ):
            raise ValueError(
                f"compressed segment {self.id} must record its method and original tokens"
            )
        return self


class DroppedSegment(BaseModel):
    """A candidate that did not fit the budget."""

    segment_id: str
    type: SegmentType
    token_count: int
    score: float
    source_id: str | None = None
    reason: str = "budget"


class CompressionRecord(BaseModel):
    segment_id: str
    method: CompressionMethod
    original_tokens: int
    compressed_tokens: int


_RENDER_HEADINGS = {
    SegmentType.memory: "## Memory",
    SegmentType.history: "## Conversation",
    SegmentType.tool: "## Tools",
    SegmentType.knowledge: "## Knowledge",
}


class ContextWindow(BaseModel):
    """The bounded, ordered context assembled for one request."""

    agent_id: str
    session_id: str | None = None
    max_tokens: int = Field(gt=0)
    used_tokens: int = Field(ge=0)
    segments: list[ContextSegment] = Field(default_factory=list)
    dropped: list[DroppedSegment] = Field(default_factory=list)
    compressions: list[CompressionRecord] = Field(default_factory=list)
    partial: bool = Field(
        default=False,
        description="True when a memory or state source failed or timed out.",
    )
    failed_sources: list[str] = Field(default_factory=list)
    build_ms: float = 0.0

    @model_validator(mode="after")
    def _within_budget(self) -> ContextWindow:
        total = sum(s.token_count for s in self.segments)
        if total != self.used_tokens:
            raise ValueError(
                f"used_tokens {self.used_tokens} does not match segment total {total}"
            )
        if total > self.max_tokens:
            raise ValueError(f"context uses {total} tokens, budget is {self.max_tokens}")
        recorded = {c.segment_id for c in self.compressions}
        for segment in self.segments:
            if segment.compressed and segment.id not in recorded:
                raise ValueError(f"compressed segment {segment.id} has no compression record")
        return self

    def segments_of(self, segment_type: SegmentType) -> list[ContextSegment]:
        return [s for s in self.segments if s.type == segment_type]

    def render(self, *, include_system: bool = True) -> str:
        """Plain-text rendering in segment order, one heading per segment type."""
        blocks: list[str] = []
        current: SegmentType | None = None
        for segment in self.segments:
            if segment.type is SegmentType.system and not include_system:
                continue
            if segment.type != current:
                current = segment.type
                heading = _RENDER_HEADINGS.get(segment.type)
                if heading:
                    blocks.append(heading)
            blocks.append(segment.content)
        return "\n\n".join(blocks)
