"""Episodic memory consolidation.

When a session accumulates more active episodes than
``ConsolidationConfig.episode_threshold``, the oldest ones are folded
into a single consolidated episode and archived.  Originals are never
deleted.  Consolidation is scheduled by the caller; ``store`` never
triggers it.
"""

from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass
from dataclasses import field
from time import perf_counter
from typing import Protocol
from typing import runtime_checkable

from agentctx.audit import AuditEventType
from agentctx.audit import AuditLogger
from agentctx.config import ConsolidationConfig
from agentctx.memory.manager import MemoryManager
from agentctx.memory.schemas import EpisodicMemory
from agentctx.memory.schemas import MemoryKind
from agentctx.observability import increment_counter
from agentctx.observability import record_latency

logger = logging.getLogger(__name__)

_SENTENCE_RE = re.compile(r"(?<=[.!?])\s+")


@runtime_checkable
class Summarizer(Protocol):
    """Turns a run of episodes into one summary string."""

    async def summarize(self, episodes: list[EpisodicMemory]) -> str: ...


class ExtractiveSummarizer:
    """Keeps the first sentence of each episode, in order."""

    def __init__(self, max_chars: int = 2_000) -> None:
        self.max_chars = max_chars

    async def summarize(self, episodes: list[EpisodicMemory]) -> str:
        points: list[str] = []
        seen: set[str] = set()
        for episode in episodes:
            first = _SENTENCE_RE.split(episode.event.strip(), maxsplit=1)[0]
            if first and first not in seen:
                seen.add(first)
                points.append(first)
        summary = "Consolidated: " + "; ".join(points)
        if len(summary) > self.max_chars:
            summary = summary[: self.max_chars - 3].rstrip() + "..."
        return summary


@dataclass
class ConsolidationResult:
    """Summary of one consolidation run."""

    run_id: str
    agent_id: str
    session_id: str | None
    consolidated_id: str | None = None
    archived_ids: list[str] = field(default_factory=list)
    episodes_seen: int = 0

    @property
    def consolidated(self) -> bool:
        return self.consolidated_id is not None


class MemoryConsolidator:
    """Folds old episodes of a session into one consolidated episode."""

    def __init__(
        self,
        manager: MemoryManager,
        *,
        config: ConsolidationConfig | None = None,
        summarizer: Summarizer | None = None,
        audit_logger: AuditLogger | None = None,
    ) -> None:
        self._manager = manager
        self._config = config or ConsolidationConfig()
        self._summarizer = summarizer or ExtractiveSummarizer()
        self._audit = audit_logger

    async def run(
        self, agent_id: str, session_id: str | None = None
    ) -> ConsolidationResult:
        """Consolidate *agent_id*'s episodes, limited to *session_id* if given."""
        start = perf_counter()
        ok = False
        result = ConsolidationResult(
            run_id=uuid.uuid4().hex,
            agent_id=agent_id,
            session_id=session_id,
        )
        try:
            episodes = await self._manager.list_memories(
                agent_id, MemoryKind.episodic, session_id=session_id
            )
            result.episodes_seen = len(episodes)
            if len(episodes) <= self._config.episode_threshold:
                ok = True
                return result

            # list_memories returns oldest first.
            keep = max(self._config.keep_recent, 0)
            old = episodes[: len(episodes) - keep] if keep else list(episodes)
            if len(old) < 2:
                ok = True
                return result

            consolidated = await self._build(old, agent_id, session_id)
            await self._manager.store(consolidated, agent_id)
            archived = [e.id for e in old]
            await self._manager.archive(agent_id, archived)

            result.consolidated_id = consolidated.id
            result.archived_ids = archived
            increment_counter("memory.consolidations")
            logger.info(
                "Consolidated %d episodes for agent %s (session %s) into %s",
                len(archived),
                agent_id,
                session_id,
                consolidated.id,
            )
            if self._audit is not None:
                await self._audit.emit(
                    AuditEventType.MEMORY_CONSOLIDATED,
                    agent_id=agent_id,
                    subject_id=consolidated.id,
                    run_id=result.run_id,
                    archived=archived,
                )
            ok = True
            return result
        finally:
            record_latency(
                operation="memory.consolidate",
                duration_ms=(perf_counter() - start) * 1000,
                ok=ok,
            )

    async def run_all(self, agent_id: str) -> list[ConsolidationResult]:
        """Run consolidation once per session the agent has episodes in."""
        episodes = await self._manager.list_memories(agent_id, MemoryKind.episodic)
        sessions = sorted(
            {e.session_id for e in episodes if e.session_id is not None}
        )
        results = [await self.run(agent_id, session) for session in sessions]
        return [r for r in results if r.consolidated]

    async def _build(
        self,
        episodes: list[EpisodicMemory],
        agent_id: str,
        session_id: str | None,
    ) -> EpisodicMemory:
        summary = await self._summarizer.summarize(episodes)
        participants: list[str] = []
        for episode in episodes:
            for participant in episode.participants:
                if participant not in participants:
                    participants.append(participant)
        return EpisodicMemory(
            agent_id=agent_id,
            session_id=session_id,
            event=summary,
            participants=participants,
            importance=max(e.importance for e in episodes),
            access_count=sum(e.access_count for e in episodes),
            decay_rate=self._config.consolidated_decay_rate,
            sequence=max(e.sequence for e in episodes),
            context={
                "consolidated_at_count": len(episodes),
                "first_created_at": episodes[0].created_at,
                "last_created_at": episodes[-1].created_at,
            },
            consolidated_from=[e.id for e in episodes],
        )
