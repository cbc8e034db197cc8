"""Context engine: retrieve, rank, compress and structure one context window.

Each stage is a separate method so it can be exercised on its own.
``build_context`` runs them in order and guarantees that the returned
window's own token estimate never exceeds the budget.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from collections.abc import Callable
from collections.abc import Sequence
from dataclasses import dataclass
from dataclasses import field
from time import perf_counter

from agentctx.audit import AuditEventType
from agentctx.audit import AuditLogger
from agentctx.config import ContextConfig
from agentctx.context.compression import CompressionOutcome
from agentctx.context.compression import ContextCompressor
from agentctx.context.ranking import ContextRanker
from agentctx.context.schemas import ContextSegment
from agentctx.context.schemas import ContextWindow
from agentctx.context.schemas import SegmentType
from agentctx.context.structure import ContextStructurer
from agentctx.errors import BudgetExceededError
from agentctx.errors import ContextError
from agentctx.memory.manager import MemoryManager
from agentctx.memory.schemas import MemoryKind
from agentctx.memory.schemas import RankedMemories
from agentctx.memory.schemas import RetrievalOptions
from agentctx.memory.vector import cosine_similarity
from agentctx.memory.vector import EmbeddingService
from agentctx.messages.schemas import Message
from agentctx.observability import increment_counter
from agentctx.observability import record_latency
from agentctx.state.manager import StateManager
from agentctx.state.schemas import AgentState
from agentctx.state.schemas import StateOptions
from agentctx.tokens import CharacterTokenEstimator
from agentctx.tokens import TokenEstimator

logger = logging.getLogger(__name__)

_KIND_TO_SEGMENT = {
    MemoryKind.working: SegmentType.memory,
    MemoryKind.episodic: SegmentType.memory,
    MemoryKind.semantic: SegmentType.knowledge,
    MemoryKind.procedural: SegmentType.tool,
}

# Agent state is the agent's own operating context; rank it near the top.
_STATE_PRIORITY = 0.9

# Store sub-deadlines end before the build deadline so one slow store
# cannot cancel the whole memory fan-out.
_STORE_DEADLINE_SHARE = 0.75


def summarize_state(state: AgentState, session_id: str | None = None) -> str:
    """Render the parts of *state* worth showing to the model."""
    lines: list[str] = []
    local = state.local
    if local.current_focus:
        lines.append(f"Current focus: {local.current_focus}")
    if local.preferences:
        lines.append(f"Preferences: {json.dumps(local.preferences, sort_keys=True, default=str)}")
    if local.skill_levels:
        skills = ", ".join(f"{k}={v:.2f}" for k, v in sorted(local.skill_levels.items()))
        lines.append(f"Skill levels: {skills}")
    if local.learned_patterns:
        recent = local.learned_patterns[-5:]
        lines.append(f"Learned patterns: {json.dumps(recent, default=str)}")
    if local.error_history:
        recent = local.error_history[-3:]
        lines.append(f"Recent errors: {json.dumps(recent, default=str)}")
    if session_id is not None and state.session.get(session_id):
        lines.append(
            f"Session: {json.dumps(state.session[session_id], sort_keys=True, default=str)}"
        )
    if state.shared:
        lines.append(f"Workspace: {json.dumps(state.shared, sort_keys=True, default=str)}")
    if not lines:
        return ""
    return "Agent state:\n" + "\n".join(lines)


@dataclass
class RetrievedCandidates:
    """Output of the retrieve stage."""

    segments: list[ContextSegment]
    partial: bool = False
    failed_sources: list[str] = field(default_factory=list)


class ContextEngine:
    """Assembles bounded context windows from memory, state and history."""

    def __init__(
        self,
        memory: MemoryManager,
        state: StateManager,
        *,
        config: ContextConfig | None = None,
        estimator: TokenEstimator | None = None,
        embedder: EmbeddingService | None = None,
        audit_logger: AuditLogger | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._memory = memory
        self._state = state
        self._config = config or ContextConfig()
        self._estimator = estimator or CharacterTokenEstimator(self._config.chars_per_token)
        self._embedder = embedder or memory.embedder
        self._audit = audit_logger
        self._clock = clock or time.time
        self.ranker = ContextRanker(memory.scorer, self._config)
        self.compressor = ContextCompressor(self._estimator, self._config)
        self.structurer = ContextStructurer()

    @property
    def config(self) -> ContextConfig:
        return self._config

    def _segment(self, **fields) -> ContextSegment:
        return ContextSegment(token_count=self._estimator.estimate(fields["content"]), **fields)

    def system_segment(self, instructions: str) -> ContextSegment:
        return self._segment(
            id="seg_system",
            type=SegmentType.system,
            content=instructions,
            priority=1.0,
            relevance=1.0,
            score=1.0,
            source="system",
        )

    # ------------------------------------------------------------------
    # Stage 1: retrieve
    # ------------------------------------------------------------------

    async def retrieve(
        self,
        query: str,
        agent_id: str,
        session_id: str | None = None,
        *,
        history: Sequence[Message] = (),
        deadline: float | None = None,
        now: float | None = None,
    ) -> RetrievedCandidates:
        """Fetch memory and state concurrently and turn everything into segments."""
        now = now if now is not None else self._clock()
        store_timeout = None
        if deadline is not None:
            store_timeout = min(
                deadline * _STORE_DEADLINE_SHARE,
                self._memory.retrieval_config.store_timeout_seconds,
            )
        options = RetrievalOptions(
            limit=self._config.memory_limit, store_timeout=store_timeout, now=now
        )

        outcomes = await asyncio.gather(
            asyncio.wait_for(
                self._memory.retrieve(query, agent_id, options), timeout=deadline
            ),
            asyncio.wait_for(
                self._state.get_state(agent_id, StateOptions(session_id=session_id)),
                timeout=deadline,
            ),
            asyncio.wait_for(self._embedder.embed(query), timeout=deadline),
            return_exceptions=True,
        )
        for outcome in outcomes:
            if isinstance(outcome, BaseException) and not isinstance(outcome, Exception):
                raise outcome
        memories, state, query_vector = outcomes

        failed: list[str] = []
        segments: list[ContextSegment] = []
        if isinstance(memories, Exception):
            logger.warning("Memory retrieval failed for agent %s: %r", agent_id, memories)
            failed.append("memory")
        else:
            assert isinstance(memories, RankedMemories)
            failed.extend(f.source for f in memories.failures)
            segments.extend(self._memory_segments(memories))

        if isinstance(state, Exception):
            logger.warning("State retrieval failed for agent %s: %r", agent_id, state)
            failed.append("state")
        else:
            text = summarize_state(state, session_id)
            if text:
                segments.append(
                    self._segment(
                        id=f"seg_state_{agent_id}",
                        type=SegmentType.memory,
                        content=text,
                        priority=_STATE_PRIORITY,
                        source="state",
                        source_id=agent_id,
                        timestamp=state.last_modified,
                    )
                )

        bounded = list(history)[-self._config.max_history :] if self._config.max_history else []
        for message in bounded:
            segments.append(
                self._segment(
                    id=f"seg_{message.id}",
                    type=SegmentType.history,
                    content=f"{message.role.value}: {message.text()}",
                    source="history",
                    source_id=message.id,
                    timestamp=message.created_at.timestamp(),
                )
            )

        if isinstance(query_vector, Exception):
            logger.warning("Query embedding failed: %r", query_vector)
            failed.append("embedding")
        else:
            segments, embedded_all = await self._attach_relevance(
                segments, query_vector, deadline=deadline
            )
            if not embedded_all:
                failed.append("embedding")

        return RetrievedCandidates(
            segments=segments,
            partial=bool(failed),
            failed_sources=failed,
        )

    def _memory_segments(self, memories: RankedMemories) -> list[ContextSegment]:
        segments = []
        for scored in memories.memories:
            item = scored.item
            segments.append(
                self._segment(
                    id=f"seg_{item.id}",
                    type=_KIND_TO_SEGMENT[scored.source],
                    content=item.text(),
                    priority=scored.importance,
                    relevance=scored.similarity,
                    recency=scored.recency,
                    score=scored.score,
                    source=scored.source.value,
                    source_id=item.id,
                    timestamp=item.created_at,
                    embedding=item.embedding,
                )
            )
        return segments

    async def _attach_relevance(
        self,
        segments: list[ContextSegment],
        query_vector: Sequence[float],
        *,
        deadline: float | None = None,
    ) -> tuple[list[ContextSegment], bool]:
        """Embed segments that lack a vector and score history/state against the query.

        Segments whose embedding fails keep ``embedding=None`` and zero
        relevance.  The flag is False when any embedding failed.
        """
        missing = [s for s in segments if s.embedding is None]
        if not missing:
            return segments, True
        try:
            vectors = await asyncio.wait_for(
                asyncio.gather(
                    *(self._embedder.embed(s.content) for s in missing),
                    return_exceptions=True,
                ),
                timeout=deadline,
            )
        except asyncio.TimeoutError as exc:
            vectors = [exc] * len(missing)
        for outcome in vectors:
            if isinstance(outcome, BaseException) and not isinstance(outcome, Exception):
                raise outcome

        embedded: dict[str, tuple[float, ...]] = {}
        failures = 0
        for segment, outcome in zip(missing, vectors):
            if isinstance(outcome, Exception):
                failures += 1
                logger.warning("Embedding failed for segment %s: %r", segment.id, outcome)
            else:
                embedded[segment.id] = tuple(outcome)

        updated = []
        for segment in segments:
            if segment.id not in embedded:
                updated.append(segment)
                continue
            vector = embedded[segment.id]
            update: dict = {"embedding": vector}
            if segment.source in ("history", "state"):
                update["relevance"] = max(cosine_similarity(query_vector, vector), 0.0)
            updated.append(segment.model_copy(update=update))
        return updated, failures == 0

    # ------------------------------------------------------------------
    # Stages 2-4
    # ------------------------------------------------------------------

    def rank(self, segments: list[ContextSegment], *, now: float) -> list[ContextSegment]:
        return self.ranker.rank(segments, now=now)

    def compress(self, segments: list[ContextSegment], budget: int) -> CompressionOutcome:
        return self.compressor.compress(segments, budget)

    def structure(self, segments: list[ContextSegment]) -> list[ContextSegment]:
        return self.structurer.structure(segments)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def build_context(
        self,
        message: Message | str,
        agent_id: str,
        session_id: str | None = None,
        token_budget: int | None = None,
        *,
        history: Sequence[Message] = (),
        deadline: float | None = None,
        system_instructions: str | None = None,
        now: float | None = None,
    ) -> ContextWindow:
        """Build the context window for *message*.

        Memory or state sources that fail or time out degrade the window
        (``partial=True``) instead of failing the call.

        Raises:
            BudgetExceededError: the system instructions alone exceed the
                budget.  They are never truncated.
        """
        start = perf_counter()
        ok = False
        build_id = uuid.uuid4().hex
        budget = token_budget if token_budget is not None else self._config.default_token_budget
        try:
            if budget <= 0:
                raise ContextError(f"token budget must be positive, got {budget}")
            system = self.system_segment(
                system_instructions
                if system_instructions is not None
                else self._config.system_instructions
            )
            if system.token_count > budget:
                raise BudgetExceededError(required=system.token_count, budget=budget)

            now = now if now is not None else self._clock()
            if isinstance(message, Message):
                query = message.text()
                session_id = session_id or message.context.session_id
            else:
                query = message
            candidates = await self.retrieve(
                query,
                agent_id,
                session_id,
                history=history,
                deadline=deadline,
                now=now,
            )
            ranked = self.rank([system, *candidates.segments], now=now)
            outcome = self.compress(ranked, budget)
            ordered = self.structure(outcome.segments)

            window = ContextWindow(
                agent_id=agent_id,
                session_id=session_id,
                max_tokens=budget,
                used_tokens=outcome.used_tokens,
                segments=ordered,
                dropped=outcome.dropped,
                compressions=outcome.compressions,
                partial=candidates.partial,
                failed_sources=candidates.failed_sources,
                build_ms=(perf_counter() - start) * 1000,
            )
            increment_counter("context.dropped_segments", len(window.dropped))
            if window.partial:
                increment_counter("context.partial_builds")
            logger.debug(
                "Context %s for agent %s: %d segments, %d/%d tokens, %d dropped",
                build_id,
                agent_id,
                len(window.segments),
                window.used_tokens,
                window.max_tokens,
                len(window.dropped),
            )
            if self._audit is not None:
                await self._audit.emit(
                    AuditEventType.CONTEXT_BUILT,
                    agent_id=agent_id,
                    subject_id=build_id,
                    used_tokens=window.used_tokens,
                    max_tokens=window.max_tokens,
                    segments=[s.id for s in window.segments],
                    dropped=[d.segment_id for d in window.dropped],
                    partial=window.partial,
                )
            ok = True
            return window
        finally:
            record_latency(
                operation="context.build",
                duration_ms=(perf_counter() - start) * 1000,
                ok=ok,
            )
