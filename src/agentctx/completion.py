"""Completion service adapters and factory helpers."""

from __future__ import annotations

import asyncio
import json
from typing import Protocol
from typing import runtime_checkable
from urllib.error import HTTPError
from urllib.error import URLError
from urllib.request import Request
from urllib.request import urlopen

from agentctx.config import CompletionConfig
from agentctx.context.schemas import ContextSegment
from agentctx.context.schemas import ContextWindow
from agentctx.context.schemas import SegmentType
from agentctx.errors import CompletionError
from agentctx.memory.schemas import EpisodicMemory
from agentctx.tokens import CharacterTokenEstimator


@runtime_checkable
class CompletionService(Protocol):
    """Consumes a context window and returns the model's reply."""

    async def complete(self, window: ContextWindow) -> str: ...


def window_to_messages(window: ContextWindow) -> list[dict[str, str]]:
    """Chat-completions messages: system segments, then everything else."""
    system = "\n\n".join(s.content for s in window.segments_of(SegmentType.system))
    body = window.render(include_system=False)
    messages = []
    if system:
        messages.append({"role": "system", "content": system})
    if body:
        messages.append({"role": "user", "content": body})
    return messages


class NoopCompletionService:
    """Deterministic service that echoes the last non-system segment."""

    async def complete(self, window: ContextWindow) -> str:
        for segment in reversed(window.segments):
            if segment.type is not SegmentType.system:
                return segment.content
        return ""


class OpenAICompatibleCompletionService:
    """OpenAI-compatible chat-completions adapter."""

    def __init__(
        self,
        *,
        model: str,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        temperature: float = 0.2,
        max_tokens: int = 1024,
        timeout_seconds: float = 30.0,
    ) -> None:
        self._model = model
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._timeout_seconds = timeout_seconds

    async def complete(self, window: ContextWindow) -> str:
        return await asyncio.to_thread(self._complete_sync, window_to_messages(window))

    def _complete_sync(self, messages: list[dict[str, str]]) -> str:
        payload = {
            "model": self._model,
            "messages": messages,
            "temperature": self._temperature,
            "max_tokens": self._max_tokens,
        }
        request = Request(
            url=f"{self._base_url}/chat/completions",
            data=json.dumps(payload).encode("utf-8"),
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        try:
            with urlopen(request, timeout=self._timeout_seconds) as response:
                raw = response.read().decode("utf-8")
        except HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace")
            raise CompletionError(f"provider HTTP {exc.code}: {detail[:200]}") from exc
        except URLError as exc:
            raise CompletionError(f"provider network error: {exc.reason}") from exc
        except OSError as exc:
            raise CompletionError(f"provider IO error: {exc}") from exc

        try:
            data = json.loads(raw)
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise CompletionError(
                "provider response missing choices[0].message.content"
            ) from exc

        if isinstance(content, str):
            return content
        raise CompletionError("provider response content must be a string")


def build_completion_service(config: CompletionConfig) -> CompletionService:
    """Create a concrete service from ``CompletionConfig``."""

    provider = config.provider.strip().lower()
    if provider == "openai":
        if not config.api_key:
            raise ValueError("completion_config.api_key is required when provider='openai'")
        return OpenAICompatibleCompletionService(
            model=config.model,
            api_key=config.api_key,
            base_url=config.base_url,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
            timeout_seconds=config.timeout_seconds,
        )
    if provider == "noop":
        return NoopCompletionService()
    raise ValueError(
        f"Unsupported completion_config.provider '{config.provider}'. "
        "Supported providers: openai, noop."
    )


_SUMMARY_INSTRUCTIONS = (
    "Summarize the following episodes into one short paragraph. "
    "Keep names, decisions and outcomes. Reply with the summary only."
)


class CompletionSummarizer:
    """Consolidation summarizer backed by a completion service."""

    def __init__(self, service: CompletionService) -> None:
        self._service = service
        self._estimator = CharacterTokenEstimator()

    async def summarize(self, episodes: list[EpisodicMemory]) -> str:
        lines = [f"- {episode.text()}" for episode in episodes]
        segments = [
            ContextSegment(
                id="seg_system",
                type=SegmentType.system,
                content=_SUMMARY_INSTRUCTIONS,
                token_count=self._estimator.estimate(_SUMMARY_INSTRUCTIONS),
            ),
            ContextSegment(
                id="seg_episodes",
                type=SegmentType.memory,
                content="\n".join(lines),
                token_count=self._estimator.estimate("\n".join(lines)),
            ),
        ]
        used = sum(s.token_count for s in segments)
        window = ContextWindow(
            agent_id=episodes[0].agent_id or "consolidation",
            max_tokens=max(used, 1),
            used_tokens=used,
            segments=segments,
        )
        summary = (await self._service.complete(window)).strip()
        if not summary:
            raise CompletionError("completion service returned an empty summary")
        return summary
