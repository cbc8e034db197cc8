"""Unit tests for completion adapters, factory and summarizer."""

from __future__ import annotations

import pytest

from agentctx.completion import build_completion_service
from agentctx.completion import CompletionService
from agentctx.completion import CompletionSummarizer
from agentctx.completion import NoopCompletionService
from agentctx.completion import OpenAICompatibleCompletionService
from agentctx.completion import window_to_messages
from agentctx.config import AuditConfig
from agentctx.config import CompletionConfig
from agentctx.context import ContextSegment
from agentctx.context import ContextWindow
from agentctx.context import SegmentType
from agentctx.errors import CompletionError
from agentctx.memory import EpisodicMemory
from agentctx.server import configure
from agentctx.server import shutdown


def _window(*segments: tuple[SegmentType, str]) -> ContextWindow:
    built = [
        ContextSegment(id=f"seg_{n}", type=seg_type, content=content, token_count=1)
        for n, (seg_type, content) in enumerate(segments)
    ]
    return ContextWindow(
        agent_id="agent-1", max_tokens=100, used_tokens=len(built), segments=built
    )


class _RecordingService:
    def __init__(self, reply: str) -> None:
        self.reply = reply
        self.windows: list[ContextWindow] = []

    async def complete(self, window: ContextWindow) -> str:
        self.windows.append(window)
        return self.reply


class TestBuildCompletionService:
    def test_openai_provider_requires_api_key(self) -> None:
        with pytest.raises(ValueError, match="api_key is required"):
            build_completion_service(CompletionConfig(provider="openai", api_key=None))

    def test_noop_provider_is_supported(self) -> None:
        service = build_completion_service(CompletionConfig(provider="noop"))
        assert isinstance(service, NoopCompletionService)
        assert isinstance(service, CompletionService)

    def test_openai_provider_built(self) -> None:
        service = build_completion_service(CompletionConfig(provider="OpenAI", api_key="k"))
        assert isinstance(service, OpenAICompatibleCompletionService)

    def test_unsupported_provider_rejected(self) -> None:
        with pytest.raises(ValueError, match="Unsupported completion_config.provider"):
            build_completion_service(CompletionConfig(provider="anthropic"))


class TestWindowToMessages:
    def test_system_then_body(self) -> None:
        window = _window((SegmentType.system, "Be brief."), (SegmentType.memory, "fact"))
        assert window_to_messages(window) == [
            {"role": "system", "content": "Be brief."},
            {"role": "user", "content": "## Memory\n\nfact"},
        ]

    def test_system_only(self) -> None:
        window = _window((SegmentType.system, "Be brief."))
        assert window_to_messages(window) == [{"role": "system", "content": "Be brief."}]


class TestNoopCompletionService:
    async def test_echoes_last_non_system_segment(self) -> None:
        window = _window(
            (SegmentType.system, "Be brief."),
            (SegmentType.memory, "fact"),
            (SegmentType.history, "user: hi"),
        )
        assert await NoopCompletionService().complete(window) == "user: hi"

    async def test_empty_when_only_system(self) -> None:
        window = _window((SegmentType.system, "Be brief."))
        assert await NoopCompletionService().complete(window) == ""


class TestOpenAICompatibleService:
    async def test_complete_uses_sync_path_via_thread(self, monkeypatch) -> None:
        service = OpenAICompatibleCompletionService(model="gpt-4", api_key="test")

        def _fake_sync(messages: list[dict[str, str]]) -> str:
            assert messages[0] == {"role": "system", "content": "Be brief."}
            return "done"

        monkeypatch.setattr(service, "_complete_sync", _fake_sync)

        window = _window((SegmentType.system, "Be brief."), (SegmentType.memory, "fact"))
        assert await service.complete(window) == "done"


class TestCompletionSummarizer:
    async def test_episodes_sent_and_reply_stripped(self) -> None:
        service = _RecordingService("  The team shipped billing.  ")
        summarizer = CompletionSummarizer(service)

        summary = await summarizer.summarize(
            [
                EpisodicMemory(agent_id="agent-1", event="Built billing."),
                EpisodicMemory(agent_id="agent-1", event="Shipped billing."),
            ]
        )

        assert summary == "The team shipped billing."
        [window] = service.windows
        assert window.agent_id == "agent-1"
        body = window.segments_of(SegmentType.memory)[0].content
        assert body == "- Built billing.\n- Shipped billing."

    async def test_empty_reply_rejected(self) -> None:
        summarizer = CompletionSummarizer(_RecordingService("   "))
        with pytest.raises(CompletionError, match="empty summary"):
            await summarizer.summarize([EpisodicMemory(event="Built billing.")])


class TestServerCompletionConfigGuard:
    async def test_configure_fails_fast_without_openai_api_key(self) -> None:
        with pytest.raises(ValueError, match="api_key is required"):
            await configure(completion_config=CompletionConfig(provider="openai"))
        await shutdown()

    async def test_noop_provider_accepted(self, tmp_path) -> None:
        await configure(
            completion_config=CompletionConfig(provider="noop"),
            audit_config=AuditConfig(file_path=str(tmp_path / "audit.jsonl")),
        )
        await shutdown()
