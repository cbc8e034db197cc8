"""Capacity-bounded working memory.

Each agent owns one resident set bounded by an item count and a token
ceiling.  When either bound is exceeded the lowest-priority item is
evicted; among equal priorities the least recently used goes first.

Callers must serialize mutations per agent (the memory manager holds a
per-agent lock around every call that changes the buffer).
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from collections.abc import Iterable

from agentctx.config import WorkingMemoryConfig
from agentctx.memory.backends import MemoryRecordStore
from agentctx.memory.schemas import WorkingMemoryBuffer
from agentctx.memory.schemas import WorkingMemoryItem

logger = logging.getLogger(__name__)

_TRUNCATION_MARKER = " …"


def _eviction_key(item: WorkingMemoryItem) -> tuple[float, float, str]:
    return (item.priority, item.last_accessed or 0.0, item.id)


class WorkingMemory:
    """Per-agent resident set persisted through a ``MemoryRecordStore``."""

    def __init__(
        self,
        backend: MemoryRecordStore,
        *,
        config: WorkingMemoryConfig | None = None,
        estimate_tokens: Callable[[str], int],
    ) -> None:
        self._backend = backend
        self._config = config or WorkingMemoryConfig()
        self._estimate = estimate_tokens

    @property
    def config(self) -> WorkingMemoryConfig:
        return self._config

    async def buffer(self, agent_id: str) -> WorkingMemoryBuffer:
        """Return the agent's buffer, creating an empty one if needed."""
        buffer = await self._backend.load_working(agent_id)
        if buffer is None:
            buffer = WorkingMemoryBuffer(
                agent_id=agent_id,
                capacity_items=self._config.capacity_items,
                capacity_tokens=self._config.capacity_tokens,
            )
        return buffer

    async def resident(self, agent_id: str) -> list[WorkingMemoryItem]:
        """Current resident set, highest priority first."""
        return (await self.buffer(agent_id)).by_priority()

    async def admit(
        self, agent_id: str, item: WorkingMemoryItem, *, now: float
    ) -> list[WorkingMemoryItem]:
        """Add *item* to the resident set and return any evicted items."""
        buffer = await self.buffer(agent_id)
        item = self._fit(buffer, item, now=now)
        buffer.items = [i for i in buffer.items if i.id != item.id]
        buffer.items.append(item)

        evicted: list[WorkingMemoryItem] = []
        while buffer.items and (
            len(buffer.items) > buffer.capacity_items
            or buffer.token_usage > buffer.capacity_tokens
        ):
            victim = min(buffer.items, key=_eviction_key)
            buffer.items.remove(victim)
            evicted.append(victim)

        await self._backend.save_working(buffer)
        if evicted:
            logger.info(
                "Evicted %d working memory item(s) for agent %s: %s",
                len(evicted),
                agent_id,
                ", ".join(v.id for v in evicted),
            )
        return evicted

    async def touch(self, agent_id: str, stamps: dict[str, float]) -> None:
        """Record access times for resident items."""
        buffer = await self.buffer(agent_id)
        changed = False
        for resident in buffer.items:
            stamp = stamps.get(resident.id)
            if stamp is None:
                continue
            resident.access_count += 1
            resident.last_accessed = max(stamp, resident.last_accessed or 0.0)
            changed = True
        if changed:
            await self._backend.save_working(buffer)

    async def remove(self, agent_id: str, item_ids: Iterable[str]) -> int:
        targets = set(item_ids)
        buffer = await self.buffer(agent_id)
        before = len(buffer.items)
        buffer.items = [
            i for i in buffer.items if i.id not in targets and i.source_id not in targets
        ]
        removed = before - len(buffer.items)
        if removed:
            await self._backend.save_working(buffer)
        return removed

    async def clear(self, agent_id: str) -> None:
        buffer = await self.buffer(agent_id)
        buffer.items = []
        buffer.compressed = False
        await self._backend.save_working(buffer)

    def _fit(
        self, buffer: WorkingMemoryBuffer, item: WorkingMemoryItem, *, now: float
    ) -> WorkingMemoryItem:
        """Stamp token count and truncate items larger than the whole buffer."""
        tokens = self._estimate(item.content)
        update: dict = {
            "agent_id": buffer.agent_id,
            "token_count": tokens,
            "last_accessed": now,
        }
        if tokens > buffer.capacity_tokens:
            ratio = buffer.capacity_tokens / tokens
            keep = max(int(len(item.content) * ratio) - len(_TRUNCATION_MARKER), 1)
            content = item.content[:keep].rstrip() + _TRUNCATION_MARKER
            update["content"] = content
            update["token_count"] = min(self._estimate(content), buffer.capacity_tokens)
            buffer.compressed = True
        return item.model_copy(update=update)
