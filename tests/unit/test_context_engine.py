"""Unit tests for the context engine pipeline."""

from __future__ import annotations

import asyncio
from datetime import datetime
from datetime import timezone

import pytest

from agentctx.audit import AuditEventType
from agentctx.config import ContextConfig
from agentctx.config import RetrievalConfig
from agentctx.context import ContextEngine
from agentctx.context import SegmentType
from agentctx.context import summarize_state
from agentctx.errors import BudgetExceededError
from agentctx.errors import ContextError
from agentctx.memory import HashingEmbedder
from agentctx.memory import MemoryManager
from agentctx.messages import create_message
from agentctx.observability import counter_snapshot
from agentctx.state import AgentState
from agentctx.state import FieldChange
from agentctx.state import StateDelta

NOW = 1_700_000_000.0


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _engine(memory_manager, state_manager, clock, audit_logger=None, **config) -> ContextEngine:
    return ContextEngine(
        memory_manager,
        state_manager,
        config=ContextConfig(**config),
        audit_logger=audit_logger,
        clock=clock,
    )


async def _seed_episodes(manager, count: int = 3) -> None:
    for n in range(count):
        await manager.store(
            {
                "event": f"Deployed the billing API to production on day {n} "
                "and verified the rollout carefully.",
                "session_id": "s1",
            },
            "agent-1",
        )


async def _set_focus(state_manager, focus: str) -> None:
    await state_manager.update_state(
        "agent-1",
        StateDelta(changes=[FieldChange(scope="local", path="current_focus", value=focus)]),
    )


def _turn(role: str, text: str, n: int):
    created_at = datetime.fromtimestamp(NOW + n, tz=timezone.utc)
    return create_message(role, text, created_at=created_at)


async def _slow(*args, **kwargs):
    await asyncio.sleep(5)
    return []


class _FlakyEmbedder:
    """Fails for conversation turns, works for everything else."""

    def __init__(self) -> None:
        self._inner = HashingEmbedder()

    async def embed(self, text: str) -> list[float]:
        if text.startswith("user:"):
            raise ConnectionError("embedding service down")
        return await self._inner.embed(text)


class _HangingEmbedder(_FlakyEmbedder):
    async def embed(self, text: str) -> list[float]:
        if text.startswith("user:"):
            await asyncio.sleep(5)
        return await self._inner.embed(text)


# ---------------------------------------------------------------------------
# Summarize state
# ---------------------------------------------------------------------------


class TestSummarizeState:
    def test_empty_state_renders_nothing(self):
        assert summarize_state(AgentState(agent_id="agent-1")) == ""

    def test_focus_and_session(self):
        state = AgentState(agent_id="agent-1")
        state.local.current_focus = "billing"
        state.session = {"s1": {"step": 2}}
        text = summarize_state(state, "s1")
        assert text.startswith("Agent state:\nCurrent focus: billing")
        assert 'Session: {"step": 2}' in text


# ---------------------------------------------------------------------------
# Build
# ---------------------------------------------------------------------------


class TestBuildContext:
    async def test_window_within_budget(self, memory_manager, state_manager, clock):
        await _seed_episodes(memory_manager)
        engine = _engine(memory_manager, state_manager, clock)

        window = await engine.build_context("billing API rollout", "agent-1", token_budget=40)

        assert window.used_tokens <= 40
        assert window.used_tokens == sum(s.token_count for s in window.segments)
        assert window.segments[0].type is SegmentType.system
        assert window.dropped
        assert counter_snapshot()["context.dropped_segments"] == len(window.dropped)

    async def test_default_budget_and_instructions(self, memory_manager, state_manager, clock):
        engine = _engine(memory_manager, state_manager, clock)
        window = await engine.build_context("hello", "agent-1")
        assert window.max_tokens == ContextConfig().default_token_budget
        assert window.segments[0].content == ContextConfig().system_instructions
        assert window.partial is False

    async def test_history_segments(self, memory_manager, state_manager, clock):
        history = [_turn("user", "hello there", 0), _turn("assistant", "hi!", 1)]
        engine = _engine(memory_manager, state_manager, clock)

        window = await engine.build_context("next", "agent-1", history=history)

        contents = [s.content for s in window.segments_of(SegmentType.history)]
        assert contents == ["user: hello there", "assistant: hi!"]

    async def test_history_bounded(self, memory_manager, state_manager, clock):
        history = [_turn("user", f"turn {n}", n) for n in range(4)]
        engine = _engine(memory_manager, state_manager, clock, max_history=2)

        window = await engine.build_context("next", "agent-1", history=history)

        ids = {s.source_id for s in window.segments_of(SegmentType.history)}
        assert ids == {history[2].id, history[3].id}

    async def test_message_session_used(self, memory_manager, state_manager, clock):
        message = create_message("user", "what next?", session_id="s9")
        engine = _engine(memory_manager, state_manager, clock)
        window = await engine.build_context(message, "agent-1")
        assert window.session_id == "s9"

    async def test_state_segment_included(self, memory_manager, state_manager, clock):
        await _set_focus(state_manager, "billing migration")
        engine = _engine(memory_manager, state_manager, clock)

        window = await engine.build_context("billing", "agent-1")

        [state_segment] = [s for s in window.segments if s.source == "state"]
        assert state_segment.id == "seg_state_agent-1"
        assert "Current focus: billing migration" in state_segment.content

    async def test_empty_state_adds_no_segment(self, memory_manager, state_manager, clock):
        engine = _engine(memory_manager, state_manager, clock)
        window = await engine.build_context("billing", "agent-1")
        assert not [s for s in window.segments if s.source == "state"]

    async def test_memory_segments_typed_by_kind(self, memory_manager, state_manager, clock):
        await memory_manager.store(
            {"concept": "billing API", "definition": "Issues invoices."}, "agent-1"
        )
        await memory_manager.store(
            {"skill_name": "billing rollback", "steps": ["revert", "verify"]}, "agent-1"
        )
        engine = _engine(memory_manager, state_manager, clock)

        window = await engine.build_context("billing", "agent-1")

        by_source = {s.source: s.type for s in window.segments}
        assert by_source["semantic"] is SegmentType.knowledge
        assert by_source["procedural"] is SegmentType.tool

    async def test_build_audited(self, memory_manager, state_manager, clock, audit_logger):
        engine = _engine(memory_manager, state_manager, clock, audit_logger)
        window = await engine.build_context("hello", "agent-1")

        [event] = await audit_logger.read_events(event_type=AuditEventType.CONTEXT_BUILT)
        assert event.agent_id == "agent-1"
        assert event.payload["used_tokens"] == window.used_tokens
        assert event.payload["segments"] == [s.id for s in window.segments]


# ---------------------------------------------------------------------------
# Errors and degraded builds
# ---------------------------------------------------------------------------


class TestBuildFailures:
    @pytest.mark.parametrize("budget", [0, -5])
    async def test_non_positive_budget(self, memory_manager, state_manager, clock, budget):
        engine = _engine(memory_manager, state_manager, clock)
        with pytest.raises(ContextError):
            await engine.build_context("hello", "agent-1", token_budget=budget)

    async def test_system_instructions_over_budget(self, memory_manager, state_manager, clock):
        engine = _engine(memory_manager, state_manager, clock)
        with pytest.raises(BudgetExceededError) as exc_info:
            await engine.build_context(
                "hello", "agent-1", token_budget=50, system_instructions="word " * 100
            )
        assert exc_info.value.required == 125
        assert exc_info.value.budget == 50

    async def test_slow_memory_store_gives_partial_window(
        self, state_manager, clock, monkeypatch
    ):
        memory = MemoryManager(
            retrieval_config=RetrievalConfig(store_timeout_seconds=0.05), clock=clock
        )
        await _seed_episodes(memory, 1)
        monkeypatch.setattr(memory.semantic, "search", _slow)
        engine = _engine(memory, state_manager, clock)

        window = await engine.build_context("billing API", "agent-1")

        assert window.partial is True
        assert window.failed_sources == ["semantic"]
        assert [s for s in window.segments if s.source == "episodic"]
        assert counter_snapshot()["context.partial_builds"] == 1

    async def test_deadline_degrades_state(
        self, memory_manager, state_manager, clock, monkeypatch
    ):
        monkeypatch.setattr(state_manager, "get_state", _slow)
        engine = _engine(memory_manager, state_manager, clock)

        window = await engine.build_context("hello", "agent-1", deadline=0.1)

        assert window.partial is True
        assert "state" in window.failed_sources
        assert window.segments[0].type is SegmentType.system

    async def test_failed_segment_embedding_degrades_window(
        self, memory_manager, state_manager, clock
    ):
        await _seed_episodes(memory_manager, 1)
        engine = ContextEngine(
            memory_manager, state_manager, embedder=_FlakyEmbedder(), clock=clock
        )

        window = await engine.build_context(
            "billing API", "agent-1", history=[_turn("user", "any news?", 1)]
        )

        assert window.partial is True
        assert window.failed_sources == ["embedding"]
        [turn] = window.segments_of(SegmentType.history)
        assert turn.relevance == 0.0
        assert [s for s in window.segments if s.source == "episodic"]

    async def test_hung_segment_embedding_bounded_by_deadline(
        self, memory_manager, state_manager, clock
    ):
        engine = ContextEngine(
            memory_manager, state_manager, embedder=_HangingEmbedder(), clock=clock
        )

        window = await engine.build_context(
            "status", "agent-1", history=[_turn("user", "any news?", 1)], deadline=0.1
        )

        assert window.failed_sources == ["embedding"]
        assert len(window.segments_of(SegmentType.history)) == 1
