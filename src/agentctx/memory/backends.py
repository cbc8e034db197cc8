"""Durable storage for memory records and working-memory buffers.

Two backends implement ``MemoryRecordStore``:

* ``InMemoryRecordStore`` — process-local dicts, the default.
* ``RedisRecordStore`` — records are JSON strings keyed by
  ``agentctx:memory:{id}``; a sorted set ``agentctx:memories:{agent}:{kind}``
  indexes each agent's records by creation time; working buffers live at
  ``agentctx:working:{agent}`` with a TTL.
"""

from __future__ import annotations

import copy
from collections.abc import Iterable
from contextlib import asynccontextmanager
from typing import Protocol
from typing import runtime_checkable

from redis.asyncio import Redis  # type: ignore[import-untyped]
from redis.exceptions import RedisError  # type: ignore[import-untyped]

from agentctx.errors import StoreUnavailableError
from agentctx.memory.schemas import MEMORY_ITEM_ADAPTER
from agentctx.memory.schemas import MemoryItem
from agentctx.memory.schemas import MemoryKind
from agentctx.memory.schemas import WorkingMemoryBuffer

# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class MemoryRecordStore(Protocol):
    """Relational/object store for memory items."""

    async def put(self, item: MemoryItem) -> None: ...

    async def get(self, memory_id: str) -> MemoryItem | None: ...

    async def get_many(self, memory_ids: Iterable[str]) -> list[MemoryItem]: ...

    async def list(
        self,
        agent_id: str,
        kind: MemoryKind,
        *,
        session_id: str | None = None,
        include_archived: bool = False,
    ) -> list[MemoryItem]: ...

    async def touch(self, stamps: dict[str, float]) -> None: ...

    async def archive(self, memory_ids: Iterable[str]) -> None: ...

    async def load_working(self, agent_id: str) -> WorkingMemoryBuffer | None: ...

    async def save_working(self, buffer: WorkingMemoryBuffer) -> None: ...


def _filter(
    items: Iterable[MemoryItem],
    *,
    session_id: str | None,
    include_archived: bool,
) -> list[MemoryItem]:
    selected = [
        item
        for item in items
        if (include_archived or not item.archived)
        and (session_id is None or item.session_id == session_id)
    ]
    selected.sort(key=lambda i: (i.created_at, i.id))
    return selected


def _touched(item: MemoryItem, stamp: float) -> MemoryItem:
    return item.model_copy(
        update={
            "access_count": item.access_count + 1,
            "last_accessed": max(stamp, item.last_accessed or 0.0),
        }
    )


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------


class InMemoryRecordStore:
    """Process-local record store.  Returned items are copies."""

    def __init__(self) -> None:
        self._items: dict[str, MemoryItem] = {}
        self._working: dict[str, WorkingMemoryBuffer] = {}

    async def put(self, item: MemoryItem) -> None:
        self._items[item.id] = item.model_copy(deep=True)

    async def get(self, memory_id: str) -> MemoryItem | None:
        item = self._items.get(memory_id)
        return item.model_copy(deep=True) if item else None

    async def get_many(self, memory_ids: Iterable[str]) -> list[MemoryItem]:
        return [
            self._items[mid].model_copy(deep=True)
            for mid in memory_ids
            if mid in self._items
        ]

    async def list(
        self,
        agent_id: str,
        kind: MemoryKind,
        *,
        session_id: str | None = None,
        include_archived: bool = False,
    ) -> list[MemoryItem]:
        owned = (
            item.model_copy(deep=True)
            for item in self._items.values()
            if item.agent_id == agent_id and item.kind == kind.value
        )
        return _filter(owned, session_id=session_id, include_archived=include_archived)

    async def touch(self, stamps: dict[str, float]) -> None:
        for memory_id, stamp in stamps.items():
            item = self._items.get(memory_id)
            if item is not None:
                self._items[memory_id] = _touched(item, stamp)

    async def archive(self, memory_ids: Iterable[str]) -> None:
        for memory_id in memory_ids:
            item = self._items.get(memory_id)
            if item is not None:
                self._items[memory_id] = item.model_copy(update={"archived": True})

    async def load_working(self, agent_id: str) -> WorkingMemoryBuffer | None:
        buffer = self._working.get(agent_id)
        return copy.deepcopy(buffer) if buffer else None

    async def save_working(self, buffer: WorkingMemoryBuffer) -> None:
        self._working[buffer.agent_id] = copy.deepcopy(buffer)


# ---------------------------------------------------------------------------
# Redis
# ---------------------------------------------------------------------------

_PREFIX = "agentctx"
_MEMORY_KEY = f"{_PREFIX}:memory"
_INDEX_KEY = f"{_PREFIX}:memories"
_WORKING_KEY = f"{_PREFIX}:working"


def _decode(raw: bytes | str) -> str:
    return raw.decode() if isinstance(raw, bytes) else raw


@asynccontextmanager
async def _reading(what: str):
    try:
        yield
    except RedisError as exc:
        raise StoreUnavailableError(f"redis read of {what} failed: {exc}") from exc


class RedisRecordStore:
    """Redis-backed record store."""

    def __init__(self, redis: Redis, *, working_ttl: int = 3600) -> None:
        self._redis = redis
        self._working_ttl = working_ttl

    # -- write --

    async def put(self, item: MemoryItem) -> None:
        pipe = self._redis.pipeline()
        pipe.set(f"{_MEMORY_KEY}:{item.id}", item.model_dump_json())
        if item.agent_id is not None:
            pipe.zadd(
                f"{_INDEX_KEY}:{item.agent_id}:{item.kind}",
                {item.id: item.created_at},
            )
        await pipe.execute()

    async def touch(self, stamps: dict[str, float]) -> None:
        items = await self.get_many(stamps)
        if not items:
            return
        pipe = self._redis.pipeline()
        for item in items:
            updated = _touched(item, stamps[item.id])
            pipe.set(f"{_MEMORY_KEY}:{item.id}", updated.model_dump_json())
        await pipe.execute()

    async def archive(self, memory_ids: Iterable[str]) -> None:
        items = await self.get_many(memory_ids)
        if not items:
            return
        pipe = self._redis.pipeline()
        for item in items:
            archived = item.model_copy(update={"archived": True})
            pipe.set(f"{_MEMORY_KEY}:{item.id}", archived.model_dump_json())
        await pipe.execute()

    # -- read --

    async def get(self, memory_id: str) -> MemoryItem | None:
        async with _reading(memory_id):
            data = await self._redis.get(f"{_MEMORY_KEY}:{memory_id}")
        if data is None:
            return None
        return MEMORY_ITEM_ADAPTER.validate_json(data)

    async def get_many(self, memory_ids: Iterable[str]) -> list[MemoryItem]:
        ids = list(memory_ids)
        if not ids:
            return []
        pipe = self._redis.pipeline()
        for mid in ids:
            pipe.get(f"{_MEMORY_KEY}:{mid}")
        async with _reading(f"{len(ids)} memories"):
            raw_results = await pipe.execute()
        return [
            MEMORY_ITEM_ADAPTER.validate_json(raw)
            for raw in raw_results
            if raw is not None
        ]

    async def list(
        self,
        agent_id: str,
        kind: MemoryKind,
        *,
        session_id: str | None = None,
        include_archived: bool = False,
    ) -> list[MemoryItem]:
        async with _reading(f"{kind.value} index of {agent_id}"):
            ids = await self._redis.zrange(
                f"{_INDEX_KEY}:{agent_id}:{kind.value}", 0, -1
            )
        items = await self.get_many(_decode(raw) for raw in ids)
        return _filter(items, session_id=session_id, include_archived=include_archived)

    # -- working memory --

    async def load_working(self, agent_id: str) -> WorkingMemoryBuffer | None:
        async with _reading(f"working memory of {agent_id}"):
            data = await self._redis.get(f"{_WORKING_KEY}:{agent_id}")
        if data is None:
            return None
        return WorkingMemoryBuffer.model_validate_json(data)

    async def save_working(self, buffer: WorkingMemoryBuffer) -> None:
        await self._redis.set(
            f"{_WORKING_KEY}:{buffer.agent_id}",
            buffer.model_dump_json(),
            ex=self._working_ttl,
        )

    async def clear(self) -> None:
        """Remove every agentctx memory key (test helper)."""
        batch: list = []
        for pattern in (f"{_MEMORY_KEY}:*", f"{_INDEX_KEY}:*", f"{_WORKING_KEY}:*"):
            async for key in self._redis.scan_iter(match=pattern):
                batch.append(key)
        if batch:
            await self._redis.delete(*batch)
