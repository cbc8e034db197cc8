"""Context domain — ranked, compressed, budget-bounded context windows."""

from agentctx.context.compression import CompressionOutcome
from agentctx.context.compression import ContextCompressor
from agentctx.context.engine import ContextEngine
from agentctx.context.engine import RetrievedCandidates
from agentctx.context.engine import summarize_state
from agentctx.context.ranking import ContextRanker
from agentctx.context.schemas import CompressionMethod
from agentctx.context.schemas import CompressionRecord
from agentctx.context.schemas import ContextSegment
from agentctx.context.schemas import ContextWindow
from agentctx.context.schemas import DroppedSegment
from agentctx.context.schemas import SegmentType
from agentctx.context.structure import ContextStructurer

__all__ = [
    "CompressionMethod",
    "CompressionOutcome",
    "CompressionRecord",
    "ContextCompressor",
    "ContextEngine",
    "ContextRanker",
    "ContextSegment",
    "ContextStructurer",
    "ContextWindow",
    "DroppedSegment",
    "RetrievedCandidates",
    "SegmentType",
    "summarize_state",
]
