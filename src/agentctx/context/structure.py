"""Structure stage: the documented output order of a context window.

1. system instructions
2. memory: working memory, then agent state, then episodic by score
3. conversation history, oldest first
4. tool segments by score
5. knowledge segments by score
"""

from __future__ import annotations

from agentctx.context.ranking import segment_order_key
from agentctx.context.schemas import ContextSegment
from agentctx.context.schemas import SegmentType

_TYPE_ORDER = {
    SegmentType.system: 0,
    SegmentType.memory: 1,
    SegmentType.history: 2,
    SegmentType.tool: 3,
    SegmentType.knowledge: 4,
}

_MEMORY_SOURCE_ORDER = {"working": 0, "state": 1, "episodic": 2}


class ContextStructurer:
    def structure(self, segments: list[ContextSegment]) -> list[ContextSegment]:
        return sorted(segments, key=self._key)

    @staticmethod
    def _key(segment: ContextSegment) -> tuple:
        group = _TYPE_ORDER[segment.type]
        if segment.type is SegmentType.history:
            return (group, 0, segment.timestamp, segment.id)
        if segment.type is SegmentType.memory:
            source = _MEMORY_SOURCE_ORDER.get(segment.source or "", len(_MEMORY_SOURCE_ORDER))
            return (group, source, *segment_order_key(segment))
        return (group, 0, *segment_order_key(segment))
