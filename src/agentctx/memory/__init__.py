"""Memory domain — typed memory items, stores, ranking and consolidation."""

from agentctx.memory.backends import InMemoryRecordStore
from agentctx.memory.backends import MemoryRecordStore
from agentctx.memory.backends import RedisRecordStore
from agentctx.memory.consolidation import ConsolidationResult
from agentctx.memory.consolidation import ExtractiveSummarizer
from agentctx.memory.consolidation import MemoryConsolidator
from agentctx.memory.consolidation import Summarizer
from agentctx.memory.manager import MemoryManager
from agentctx.memory.schemas import classify_memory
from agentctx.memory.schemas import ConceptRelation
from agentctx.memory.schemas import EpisodicMemory
from agentctx.memory.schemas import MemoryItem
from agentctx.memory.schemas import MemoryKind
from agentctx.memory.schemas import MemoryOverview
from agentctx.memory.schemas import ProceduralMemory
from agentctx.memory.schemas import RankedMemories
from agentctx.memory.schemas import RetrievalOptions
from agentctx.memory.schemas import ScoredMemory
from agentctx.memory.schemas import SemanticMemory
from agentctx.memory.schemas import SemanticOrigin
from agentctx.memory.schemas import SourceFailure
from agentctx.memory.schemas import StoreResult
from agentctx.memory.schemas import WorkingMemoryBuffer
from agentctx.memory.schemas import WorkingMemoryItem
from agentctx.memory.scoring import MemoryScorer
from agentctx.memory.scoring import recency_decay
from agentctx.memory.vector import cosine_similarity
from agentctx.memory.vector import EmbeddingService
from agentctx.memory.vector import HashingEmbedder
from agentctx.memory.vector import InMemoryVectorIndex
from agentctx.memory.vector import VectorIndex
from agentctx.memory.working import WorkingMemory

__all__ = [
    "ConceptRelation",
    "ConsolidationResult",
    "EmbeddingService",
    "EpisodicMemory",
    "ExtractiveSummarizer",
    "HashingEmbedder",
    "InMemoryRecordStore",
    "InMemoryVectorIndex",
    "MemoryConsolidator",
    "MemoryItem",
    "MemoryKind",
    "MemoryOverview",
    "MemoryManager",
    "MemoryRecordStore",
    "MemoryScorer",
    "ProceduralMemory",
    "RankedMemories",
    "RedisRecordStore",
    "RetrievalOptions",
    "ScoredMemory",
    "SemanticMemory",
    "SemanticOrigin",
    "SourceFailure",
    "StoreResult",
    "Summarizer",
    "VectorIndex",
    "WorkingMemory",
    "WorkingMemoryBuffer",
    "WorkingMemoryItem",
    "classify_memory",
    "cosine_similarity",
    "recency_decay",
]
