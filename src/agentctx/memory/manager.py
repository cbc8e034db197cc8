"""Memory manager: one store/retrieve facade over the four memory stores.

Retrieval fans out to every store concurrently, each bounded by a
sub-deadline.  A store that fails or times out is reported in the result
(``partial=True``) instead of failing the call.  Writes are serialized
per agent and any backend failure surfaces as ``StoreWriteError``.
"""

from __future__ import annotations

import asyncio
import logging
import time
import weakref
from collections.abc import Awaitable
from collections.abc import Callable
from time import perf_counter
from typing import Any

from agentctx.audit import AuditEventType
from agentctx.audit import AuditLogger
from agentctx.config import RankingConfig
from agentctx.config import RetrievalConfig
from agentctx.config import WorkingMemoryConfig
from agentctx.errors import StoreWriteError
from agentctx.memory.backends import InMemoryRecordStore
from agentctx.memory.backends import MemoryRecordStore
from agentctx.memory.schemas import classify_memory
from agentctx.memory.schemas import MemoryItem
from agentctx.memory.schemas import MemoryKind
from agentctx.memory.schemas import MemoryOverview
from agentctx.memory.schemas import RankedMemories
from agentctx.memory.schemas import RetrievalOptions
from agentctx.memory.schemas import ScoredMemory
from agentctx.memory.schemas import SourceFailure
from agentctx.memory.schemas import StoreResult
from agentctx.memory.schemas import WorkingMemoryItem
from agentctx.memory.scoring import keyword_similarity
from agentctx.memory.scoring import MemoryScorer
from agentctx.memory.stores import EpisodicStore
from agentctx.memory.stores import MemoryCandidate
from agentctx.memory.stores import ProceduralStore
from agentctx.memory.stores import RetrievalQuery
from agentctx.memory.stores import SemanticStore
from agentctx.memory.vector import EmbeddingService
from agentctx.memory.vector import HashingEmbedder
from agentctx.memory.vector import InMemoryVectorIndex
from agentctx.memory.vector import VectorIndex
from agentctx.memory.working import WorkingMemory
from agentctx.observability import increment_counter
from agentctx.observability import record_latency
from agentctx.tokens import CharacterTokenEstimator
from agentctx.tokens import TokenEstimator

logger = logging.getLogger(__name__)

_VECTOR_KINDS = (MemoryKind.episodic, MemoryKind.semantic)

# Access stamps follow rank order so a repeated query keeps its order.
_ACCESS_STEP = 1e-6


class MemoryManager:
    """Stores and retrieves episodic, semantic, procedural and working memory."""

    def __init__(
        self,
        records: MemoryRecordStore | None = None,
        *,
        embedder: EmbeddingService | None = None,
        vector_index: VectorIndex | None = None,
        ranking_config: RankingConfig | None = None,
        retrieval_config: RetrievalConfig | None = None,
        working_config: WorkingMemoryConfig | None = None,
        estimator: TokenEstimator | None = None,
        audit_logger: AuditLogger | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._records = records or InMemoryRecordStore()
        self._embedder = embedder or HashingEmbedder()
        self._index = vector_index or InMemoryVectorIndex()
        self._retrieval_config = retrieval_config or RetrievalConfig()
        self._scorer = MemoryScorer(ranking_config)
        self._estimator = estimator or CharacterTokenEstimator()
        self._audit = audit_logger
        self._clock = clock or time.time
        # Entries vanish once no task holds or awaits the lock.
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

        self.episodic = EpisodicStore(self._records, self._index)
        self.semantic = SemanticStore(self._records, self._index)
        self.procedural = ProceduralStore(self._records)
        self.working = WorkingMemory(
            self._records,
            config=working_config,
            estimate_tokens=self._estimator.estimate,
        )

    @property
    def scorer(self) -> MemoryScorer:
        return self._scorer

    @property
    def embedder(self) -> EmbeddingService:
        return self._embedder

    @property
    def records(self) -> MemoryRecordStore:
        return self._records

    @property
    def retrieval_config(self) -> RetrievalConfig:
        return self._retrieval_config

    def agent_lock(self, agent_id: str) -> asyncio.Lock:
        """The lock serializing writes for *agent_id*."""
        lock = self._locks.get(agent_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[agent_id] = lock
        return lock

    # ------------------------------------------------------------------
    # Retrieve
    # ------------------------------------------------------------------

    async def retrieve(
        self,
        query: str,
        agent_id: str,
        options: RetrievalOptions | None = None,
    ) -> RankedMemories:
        """Fan out to every store and merge into one ranked list."""
        start = perf_counter()
        opts = options or RetrievalOptions()
        cfg = self._retrieval_config
        now = opts.now if opts.now is not None else self._clock()
        limit = opts.limit or cfg.limit
        timeout = opts.store_timeout or cfg.store_timeout_seconds
        min_score = opts.min_score if opts.min_score is not None else cfg.min_score
        kinds = [k for k in MemoryKind if opts.kinds is None or k in opts.kinds]
        base_query = RetrievalQuery(
            text=query,
            agent_id=agent_id,
            limit=cfg.per_store_limit,
            session_id=opts.session_id,
        )

        embedding_task: asyncio.Task | None = None
        if any(k in _VECTOR_KINDS for k in kinds):
            embedding_task = asyncio.ensure_future(self._embedder.embed(query))

        jobs: dict[MemoryKind, Awaitable[list[MemoryCandidate]]] = {
            kind: self._search_kind(kind, base_query, embedding_task) for kind in kinds
        }
        try:
            outcomes = await asyncio.gather(
                *(asyncio.wait_for(job, timeout=timeout) for job in jobs.values()),
                return_exceptions=True,
            )
        finally:
            if embedding_task is not None and not embedding_task.done():
                embedding_task.cancel()

        failures: list[SourceFailure] = []
        candidates: list[MemoryCandidate] = []
        for kind, outcome in zip(jobs, outcomes):
            if isinstance(outcome, asyncio.TimeoutError):
                failures.append(
                    SourceFailure(
                        source=kind.value,
                        reason=f"timed out after {timeout:.3f}s",
                        timed_out=True,
                    )
                )
            elif isinstance(outcome, Exception):
                failures.append(SourceFailure(source=kind.value, reason=repr(outcome)))
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                candidates.extend(outcome)

        for failure in failures:
            logger.warning(
                "Memory source %s unavailable for agent %s: %s",
                failure.source,
                agent_id,
                failure.reason,
            )
        increment_counter("memory.partial_retrievals", 1 if failures else 0)

        scored = self._merge(candidates, now=now, min_score=min_score)
        selected = scored[:limit]

        if opts.track_access and selected:
            await self._record_access(agent_id, selected, now=now)

        elapsed_ms = (perf_counter() - start) * 1000
        record_latency(
            operation="memory.retrieve",
            duration_ms=elapsed_ms,
            ok=not failures,
        )
        return RankedMemories(
            query=query,
            agent_id=agent_id,
            memories=selected,
            partial=bool(failures),
            failures=failures,
            total_candidates=len(scored),
            retrieval_ms=elapsed_ms,
        )

    async def _search_kind(
        self,
        kind: MemoryKind,
        query: RetrievalQuery,
        embedding_task: asyncio.Task | None,
    ) -> list[MemoryCandidate]:
        if kind is MemoryKind.working:
            resident = await self.working.resident(query.agent_id)
            return [
                MemoryCandidate(item=i, similarity=keyword_similarity(query.text, i.content))
                for i in resident
            ]
        if kind is MemoryKind.procedural:
            return await self.procedural.search(query)

        assert embedding_task is not None
        vector = await asyncio.shield(embedding_task)
        store = self.episodic if kind is MemoryKind.episodic else self.semantic
        return await store.search(
            RetrievalQuery(
                text=query.text,
                agent_id=query.agent_id,
                limit=query.limit,
                vector=tuple(vector),
                session_id=query.session_id,
            )
        )

    def _merge(
        self,
        candidates: list[MemoryCandidate],
        *,
        now: float,
        min_score: float,
    ) -> list[ScoredMemory]:
        long_term_ids = {
            c.item.id for c in candidates if c.item.kind != MemoryKind.working.value
        }
        best: dict[str, ScoredMemory] = {}
        for candidate in candidates:
            item = candidate.item
            # Working mirrors of a retrieved long-term item are redundant.
            if isinstance(item, WorkingMemoryItem) and item.source_id in long_term_ids:
                continue
            scored = self._scorer.score_item(item, similarity=candidate.similarity, now=now)
            if scored.score < min_score:
                continue
            current = best.get(item.id)
            if current is None or scored.score > current.score:
                best[item.id] = scored
        return self._scorer.rank(list(best.values()))

    async def _record_access(
        self, agent_id: str, selected: list[ScoredMemory], *, now: float
    ) -> None:
        stamps: dict[str, float] = {}
        working_stamps: dict[str, float] = {}
        for position, scored in enumerate(selected):
            stamp = now - position * _ACCESS_STEP
            target = working_stamps if scored.source is MemoryKind.working else stamps
            target[scored.item.id] = stamp
        try:
            if stamps:
                await self._records.touch(stamps)
            if working_stamps:
                async with self.agent_lock(agent_id):
                    await self.working.touch(agent_id, working_stamps)
        except Exception:
            logger.warning(
                "Could not record memory access for agent %s", agent_id, exc_info=True
            )

    # ------------------------------------------------------------------
    # Store
    # ------------------------------------------------------------------

    async def store(
        self, item: MemoryItem | dict[str, Any], agent_id: str
    ) -> StoreResult:
        """Persist *item* for *agent_id* and refresh the working set.

        Raises:
            StoreWriteError: the item could not be persisted.
        """
        start = perf_counter()
        ok = False
        try:
            if isinstance(item, dict):
                item = classify_memory(item)
            if item.agent_id is not None and item.agent_id != agent_id:
                raise StoreWriteError(
                    f"memory {item.id} is owned by agent {item.agent_id!r}"
                )
            item = item.model_copy(update={"agent_id": agent_id})
            kind = MemoryKind(item.kind)

            async with self.agent_lock(agent_id):
                try:
                    evicted = await self._write(item, kind, agent_id)
                except StoreWriteError:
                    raise
                except Exception as exc:
                    raise StoreWriteError(
                        f"failed to store {kind.value} memory {item.id}: {exc}"
                    ) from exc

            if evicted:
                increment_counter("memory.evictions", len(evicted))
            await self._emit_store_events(agent_id, item.id, kind, evicted)
            ok = True
            return StoreResult(
                memory_id=item.id,
                kind=kind,
                evicted=[e.id for e in evicted],
            )
        finally:
            record_latency(
                operation="memory.store",
                duration_ms=(perf_counter() - start) * 1000,
                ok=ok,
            )

    async def _write(
        self, item: MemoryItem, kind: MemoryKind, agent_id: str
    ) -> list[WorkingMemoryItem]:
        now = self._clock()
        if kind is MemoryKind.working:
            assert isinstance(item, WorkingMemoryItem)
            return await self.working.admit(agent_id, item, now=now)

        if kind in _VECTOR_KINDS and item.embedding is None:
            item = item.with_embedding(await self._embedder.embed(item.text()))

        if kind is MemoryKind.episodic:
            await self.episodic.put(item)
        elif kind is MemoryKind.semantic:
            await self.semantic.put(item)
        else:
            await self.procedural.put(item)

        mirror = WorkingMemoryItem(
            agent_id=agent_id,
            session_id=item.session_id,
            content=item.text(),
            priority=item.salience(),
            source_id=item.id,
            created_at=now,
        )
        return await self.working.admit(agent_id, mirror, now=now)

    async def _emit_store_events(
        self,
        agent_id: str,
        memory_id: str,
        kind: MemoryKind,
        evicted: list[WorkingMemoryItem],
    ) -> None:
        if self._audit is None:
            return
        await self._audit.emit(
            AuditEventType.MEMORY_STORED,
            agent_id=agent_id,
            subject_id=memory_id,
            kind=kind.value,
        )
        if evicted:
            await self._audit.emit(
                AuditEventType.MEMORY_EVICTED,
                agent_id=agent_id,
                evicted=[e.id for e in evicted],
            )

    # ------------------------------------------------------------------
    # Maintenance helpers (used by consolidation)
    # ------------------------------------------------------------------

    async def list_memories(
        self,
        agent_id: str,
        kind: MemoryKind,
        *,
        session_id: str | None = None,
        include_archived: bool = False,
    ) -> list[MemoryItem]:
        return await self._records.list(
            agent_id,
            kind,
            session_id=session_id,
            include_archived=include_archived,
        )

    async def overview(self, agent_id: str) -> MemoryOverview:
        """Per-kind item counts and working memory usage for *agent_id*."""
        counts: dict[str, int] = {}
        archived = 0
        last_stored_at: float | None = None
        for kind in (MemoryKind.episodic, MemoryKind.semantic, MemoryKind.procedural):
            items = await self._records.list(agent_id, kind, include_archived=True)
            active = [item for item in items if not item.archived]
            counts[kind.value] = len(active)
            archived += len(items) - len(active)
            for item in items:
                if last_stored_at is None or item.created_at > last_stored_at:
                    last_stored_at = item.created_at

        buffer = await self.working.buffer(agent_id)
        counts[MemoryKind.working.value] = len(buffer.items)
        return MemoryOverview(
            agent_id=agent_id,
            counts=counts,
            archived=archived,
            last_stored_at=last_stored_at,
            working_items=len(buffer.items),
            working_tokens=buffer.token_usage,
            capacity_items=buffer.capacity_items,
            capacity_tokens=buffer.capacity_tokens,
            compressed=buffer.compressed,
        )

    async def archive(self, agent_id: str, memory_ids: list[str]) -> None:
        """Archive long-term items and drop their working mirrors."""
        if not memory_ids:
            return
        async with self.agent_lock(agent_id):
            try:
                await self._records.archive(memory_ids)
                for memory_id in memory_ids:
                    await self._index.delete(memory_id)
                await self.working.remove(agent_id, memory_ids)
            except Exception as exc:
                raise StoreWriteError(f"failed to archive memories: {exc}") from exc
