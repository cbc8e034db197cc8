"""AgentCtx — FastMCP v2 server exposing the context engine as MCP tools.

Call ``configure()`` before using the server.  Without a ``redis_url``
all stores are in-process.
"""

from __future__ import annotations

from time import perf_counter
from typing import Any

from fastmcp import FastMCP
from pydantic import ValidationError
from redis.asyncio import Redis  # type: ignore[import-untyped]

from agentctx.audit import AuditLogger
from agentctx.completion import build_completion_service
from agentctx.completion import CompletionSummarizer
from agentctx.config import AuditConfig
from agentctx.config import CompletionConfig
from agentctx.config import ConsolidationConfig
from agentctx.config import ContextConfig
from agentctx.config import RankingConfig
from agentctx.config import RetrievalConfig
from agentctx.config import StateConfig
from agentctx.config import WorkingMemoryConfig
from agentctx.context import ContextEngine
from agentctx.errors import AgentCtxError
from agentctx.errors import BudgetExceededError
from agentctx.errors import CheckpointNotFoundError
from agentctx.errors import ContextError
from agentctx.errors import SchemaError
from agentctx.errors import StateError
from agentctx.errors import StoreWriteError
from agentctx.errors import VersionError
from agentctx.memory import InMemoryRecordStore
from agentctx.memory import MemoryConsolidator
from agentctx.memory import MemoryKind
from agentctx.memory import MemoryManager
from agentctx.memory import RedisRecordStore
from agentctx.memory import RetrievalOptions
from agentctx.memory.consolidation import Summarizer
from agentctx.messages import MessageProcessor
from agentctx.messages import serialize
from agentctx.observability import record_latency
from agentctx.state import FieldChange
from agentctx.state import InMemoryStateStore
from agentctx.state import RedisStateStore
from agentctx.state import StateDelta
from agentctx.state import StateManager
from agentctx.state import StateOptions
from agentctx.tool_schemas import BuildContextResult
from agentctx.tool_schemas import CheckpointStateResult
from agentctx.tool_schemas import ConsolidateMemoriesResult
from agentctx.tool_schemas import ConsolidationRun
from agentctx.tool_schemas import DiffStateResult
from agentctx.tool_schemas import GetStateResult
from agentctx.tool_schemas import MemoryHit
from agentctx.tool_schemas import MemoryOverviewResult
from agentctx.tool_schemas import ProcessMessageResult
from agentctx.tool_schemas import RetrieveMemoriesResult
from agentctx.tool_schemas import StateChange
from agentctx.tool_schemas import StoreMemoryResult
from agentctx.tool_schemas import UpdateStateResult

mcp = FastMCP("AgentCtx")

# ---------------------------------------------------------------------------
# Service instances (set via configure())
# ---------------------------------------------------------------------------

_redis: Redis | None = None
_processor: MessageProcessor | None = None
_memory: MemoryManager | None = None
_state: StateManager | None = None
_engine: ContextEngine | None = None
_consolidator: MemoryConsolidator | None = None
_audit_logger: AuditLogger | None = None


async def configure(
    redis_url: str | None = None,
    *,
    working_ttl: int = 3600,
    ranking_config: RankingConfig | None = None,
    retrieval_config: RetrievalConfig | None = None,
    working_config: WorkingMemoryConfig | None = None,
    consolidation_config: ConsolidationConfig | None = None,
    state_config: StateConfig | None = None,
    context_config: ContextConfig | None = None,
    audit_config: AuditConfig | None = None,
    summarizer: Summarizer | None = None,
    completion_config: CompletionConfig | None = None,
) -> None:
    """Build the managers and engine.

    Must be called before the MCP tools can function.  With a non-noop
    *completion_config* and no explicit *summarizer*, consolidation
    summaries come from the completion provider.

    Raises:
        ValueError: *completion_config* names an unknown provider or
            lacks the credentials it needs.
    """
    global _redis, _processor, _memory, _state, _engine, _consolidator, _audit_logger
    await shutdown()

    if summarizer is None and completion_config is not None:
        if completion_config.provider.strip().lower() != "noop":
            summarizer = CompletionSummarizer(build_completion_service(completion_config))

    _audit_logger = AuditLogger(audit_config or AuditConfig())
    if redis_url is not None:
        _redis = Redis.from_url(redis_url)
        records = RedisRecordStore(_redis, working_ttl=working_ttl)
        state_store = RedisStateStore(_redis)
    else:
        records = InMemoryRecordStore()
        state_store = InMemoryStateStore()

    _processor = MessageProcessor()
    _memory = MemoryManager(
        records,
        ranking_config=ranking_config,
        retrieval_config=retrieval_config,
        working_config=working_config,
        audit_logger=_audit_logger,
    )
    _state = StateManager(state_store, config=state_config, audit_logger=_audit_logger)
    _engine = ContextEngine(
        _memory,
        _state,
        config=context_config,
        audit_logger=_audit_logger,
    )
    _consolidator = MemoryConsolidator(
        _memory,
        config=consolidation_config,
        summarizer=summarizer,
        audit_logger=_audit_logger,
    )


async def shutdown() -> None:
    """Close backend clients and release server resources."""
    global _redis, _processor, _memory, _state, _engine, _consolidator, _audit_logger
    if _redis is not None:
        try:
            await _redis.aclose()
        except RuntimeError:
            # Tests may reconfigure across event loops.
            pass
        _redis = None
    _processor = None
    _memory = None
    _state = None
    _engine = None
    _consolidator = None
    _audit_logger = None


def _require(value, name: str):
    if value is None:
        raise RuntimeError(f"{name} not configured. Call configure() first.")
    return value


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------

_ERROR_CODES: tuple[tuple[type[Exception], str], ...] = (
    (SchemaError, "schema_error"),
    (VersionError, "version_error"),
    (StoreWriteError, "store_write_error"),
    (CheckpointNotFoundError, "checkpoint_not_found"),
    (StateError, "state_error"),
    (BudgetExceededError, "budget_exceeded"),
    (ContextError, "context_error"),
    (ValidationError, "validation_error"),
    (AgentCtxError, "agentctx_error"),
    (ValueError, "validation_error"),
)


def _error_code(exc: Exception) -> str:
    for exc_type, code in _ERROR_CODES:
        if isinstance(exc, exc_type):
            return code
    return "internal_error"


def _error_message(exc: Exception) -> str:
    if isinstance(exc, ValidationError):
        err = exc.errors()[0] if exc.errors() else {}
        return str(err.get("msg", "Invalid input"))
    return str(exc)


def _rejection(exc: Exception) -> dict[str, Any]:
    return {
        "status": "rejected",
        "error_code": _error_code(exc),
        "message": _error_message(exc),
    }


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


@mcp.tool
async def process_message(
    raw: dict,
    version: str | None = None,
) -> ProcessMessageResult:
    """Validate a raw message and migrate it to the canonical schema.

    Args:
        raw: Message payload at any supported schema version.
        version: Declared schema version; defaults to the payload's own.
    """
    processor = _require(_processor, "Message processor")
    try:
        message = processor.process(raw, version=version)
    except (SchemaError, VersionError) as exc:
        return ProcessMessageResult(**_rejection(exc))
    return ProcessMessageResult(
        message_id=message.id,
        version=message.version,
        data=serialize(message),
    )


@mcp.tool
async def store_memory(agent_id: str, item: dict) -> StoreMemoryResult:
    """Store one memory item for an agent.

    Args:
        agent_id: Owning agent.
        item: Memory payload; ``kind`` is inferred from its shape when absent.
    """
    memory = _require(_memory, "Memory manager")
    try:
        result = await memory.store(item, agent_id)
    except (ValidationError, StoreWriteError) as exc:
        return StoreMemoryResult(**_rejection(exc))
    return StoreMemoryResult(
        memory_id=result.memory_id,
        kind=result.kind.value,
        evicted=result.evicted,
    )


@mcp.tool
async def retrieve_memories(
    query: str,
    agent_id: str,
    limit: int = 20,
    kinds: list[str] | None = None,
    session_id: str | None = None,
) -> RetrieveMemoriesResult:
    """Retrieve an agent's memories ranked by relevance, recency and importance.

    Args:
        query: Natural language query.
        agent_id: Agent whose memories are searched.
        limit: Max memories returned.
        kinds: Restrict to these stores (episodic, semantic, procedural, working).
        session_id: Restrict episodic and semantic hits to one session.
    """
    start = perf_counter()
    ok = False
    try:
        memory = _require(_memory, "Memory manager")
        try:
            options = RetrievalOptions(
                limit=limit,
                kinds={MemoryKind(k) for k in kinds} if kinds else None,
                session_id=session_id,
            )
        except (ValidationError, ValueError) as exc:
            return RetrieveMemoriesResult(query=query, **_rejection(exc))

        ranked = await memory.retrieve(query, agent_id, options)
        ok = True
        return RetrieveMemoriesResult(
            query=query,
            memories=[
                MemoryHit(
                    id=m.item.id,
                    kind=m.source.value,
                    text=m.item.text(),
                    score=m.score,
                    similarity=m.similarity,
                    recency=m.recency,
                    importance=m.importance,
                )
                for m in ranked.memories
            ],
            partial=ranked.partial,
            failed_sources=[f.source for f in ranked.failures],
        )
    finally:
        record_latency(
            operation="mcp.retrieve_memories",
            duration_ms=(perf_counter() - start) * 1000,
            ok=ok,
        )


@mcp.tool
async def memory_overview(agent_id: str) -> MemoryOverviewResult:
    """Summarize how much an agent remembers.

    Args:
        agent_id: Agent whose memory is summarized.
    """
    memory = _require(_memory, "Memory manager")
    overview = await memory.overview(agent_id)
    return MemoryOverviewResult(
        agent_id=overview.agent_id,
        counts=overview.counts,
        archived=overview.archived,
        last_stored_at=overview.last_stored_at,
        working_items=overview.working_items,
        working_tokens=overview.working_tokens,
        capacity_items=overview.capacity_items,
        capacity_tokens=overview.capacity_tokens,
    )


@mcp.tool
async def consolidate_memories(
    agent_id: str,
    session_id: str | None = None,
) -> ConsolidateMemoriesResult:
    """Fold old episodes into consolidated summaries.

    Args:
        agent_id: Agent whose episodes are consolidated.
        session_id: Only this session; every session when omitted.
    """
    consolidator = _require(_consolidator, "Consolidator")
    try:
        if session_id is None:
            results = await consolidator.run_all(agent_id)
        else:
            results = [await consolidator.run(agent_id, session_id)]
    except StoreWriteError as exc:
        return ConsolidateMemoriesResult(**_rejection(exc))
    return ConsolidateMemoriesResult(
        runs=[
            ConsolidationRun(
                session_id=r.session_id,
                consolidated_id=r.consolidated_id,
                archived_ids=r.archived_ids,
            )
            for r in results
            if r.consolidated_id is not None
        ]
    )


@mcp.tool
async def get_state(
    agent_id: str,
    session_id: str | None = None,
    checkpoint_id: str | None = None,
    as_of: int | None = None,
) -> GetStateResult:
    """Return an agent's state, current or historical.

    Args:
        agent_id: Agent whose state is read.
        session_id: Only include this session's state.
        checkpoint_id: Return the state captured by this checkpoint.
        as_of: Rebuild the state as of this modification number.
    """
    state = _require(_state, "State manager")
    try:
        options = StateOptions(
            session_id=session_id, checkpoint_id=checkpoint_id, as_of=as_of
        )
        result = await state.get_state(agent_id, options)
    except (ValidationError, StateError) as exc:
        return GetStateResult(**_rejection(exc))
    return GetStateResult(state=result.model_dump(mode="json"))


@mcp.tool
async def update_state(
    agent_id: str,
    changes: list[dict],
    author: str | None = None,
    session_id: str | None = None,
    timestamp: float | None = None,
) -> UpdateStateResult:
    """Apply field-level changes to an agent's state.

    Args:
        agent_id: Agent whose state is updated.
        changes: Items of ``{scope, path, value, op, timestamp}``.
        author: Writing agent; defaults to ``agent_id``.
        session_id: Required for session-scoped changes.
        timestamp: Write time for changes that carry none.
    """
    state = _require(_state, "State manager")
    try:
        delta = StateDelta(
            changes=[FieldChange.model_validate(c) for c in changes],
            author=author,
            session_id=session_id,
            timestamp=timestamp,
        )
        result = await state.update_state(agent_id, delta)
    except (ValidationError, StateError) as exc:
        return UpdateStateResult(**_rejection(exc))
    return UpdateStateResult(
        modification_count=result.modification_count,
        applied=result.applied,
        superseded=result.superseded,
        conflicts=[c.model_dump(mode="json") for c in result.conflicts],
        checkpoint_id=result.checkpoint.id if result.checkpoint else None,
    )


@mcp.tool
async def checkpoint_state(agent_id: str) -> CheckpointStateResult:
    """Snapshot an agent's state.  Unchanged state returns the previous checkpoint.

    Args:
        agent_id: Agent whose state is checkpointed.
    """
    state = _require(_state, "State manager")
    try:
        checkpoint = await state.checkpoint(agent_id)
    except StateError as exc:
        return CheckpointStateResult(**_rejection(exc))
    return CheckpointStateResult(
        checkpoint_id=checkpoint.id,
        version=checkpoint.version,
        content_hash=checkpoint.content_hash,
    )


@mcp.tool
async def diff_state(
    agent_id: str,
    from_checkpoint: str,
    to_checkpoint: str | None = None,
) -> DiffStateResult:
    """List the state fields that changed since a checkpoint.

    Args:
        agent_id: Agent whose state is compared.
        from_checkpoint: Checkpoint to compare from.
        to_checkpoint: Checkpoint to compare to; the current state when omitted.
    """
    state = _require(_state, "State manager")
    try:
        diff = await state.diff(agent_id, from_checkpoint, to_checkpoint)
    except StateError as exc:
        return DiffStateResult(**_rejection(exc))
    return DiffStateResult(
        changes=[StateChange(**c.model_dump(mode="json")) for c in diff.changes],
        additions=diff.additions,
        removals=diff.removals,
        modifications=diff.modifications,
    )


@mcp.tool
async def build_context(
    message: str,
    agent_id: str,
    session_id: str | None = None,
    token_budget: int | None = None,
    history: list[dict] | None = None,
    system_instructions: str | None = None,
    deadline_seconds: float | None = None,
) -> BuildContextResult:
    """Assemble a token-bounded context window for the next model call.

    Args:
        message: The incoming user message text.
        agent_id: Agent the context is built for.
        session_id: Conversation session.
        token_budget: Maximum tokens for the whole window.
        history: Recent conversation messages (any schema version), oldest first.
        system_instructions: Overrides the configured system instructions.
        deadline_seconds: Upper bound on memory and state retrieval.
    """
    start = perf_counter()
    ok = False
    try:
        engine = _require(_engine, "Context engine")
        processor = _require(_processor, "Message processor")
        try:
            past = [processor.process(raw) for raw in history or []]
            window = await engine.build_context(
                message,
                agent_id,
                session_id,
                token_budget,
                history=past,
                deadline=deadline_seconds,
                system_instructions=system_instructions,
            )
        except AgentCtxError as exc:
            return BuildContextResult(**_rejection(exc))
        ok = True
        return BuildContextResult(
            window=window.model_dump(mode="json"),
            rendered=window.render(),
        )
    finally:
        record_latency(
            operation="mcp.build_context",
            duration_ms=(perf_counter() - start) * 1000,
            ok=ok,
        )
