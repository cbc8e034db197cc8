"""Durable storage for agent state, workspace state, delta logs and checkpoints.

Redis layout:

* ``agentctx:state:{agent}`` — current ``AgentState`` JSON (shared values
  are not embedded; they live with the workspace)
* ``agentctx:shared:{workspace}`` — ``SharedState`` JSON
* ``agentctx:deltas:{agent}`` — sorted set of ``DeltaLogEntry`` JSON
  scored by sequence number
* ``agentctx:checkpoint:{id}`` — ``Checkpoint`` JSON, indexed per agent by
  the sorted set ``agentctx:checkpoints:{agent}`` scored by version
* ``agentctx:agents`` — set of agent ids with stored state
"""

from __future__ import annotations

from typing import Protocol
from typing import runtime_checkable

from redis.asyncio import Redis  # type: ignore[import-untyped]

from agentctx.state.schemas import AgentState
from agentctx.state.schemas import Checkpoint
from agentctx.state.schemas import DeltaLogEntry
from agentctx.state.schemas import SharedState


@runtime_checkable
class StateStore(Protocol):
    async def load_agent(self, agent_id: str) -> AgentState | None: ...

    async def save_agent(self, state: AgentState) -> None: ...

    async def list_agents(self) -> list[str]: ...

    async def load_shared(self, workspace_id: str) -> SharedState | None: ...

    async def save_shared(self, shared: SharedState) -> None: ...

    async def append_delta(self, entry: DeltaLogEntry) -> None: ...

    async def deltas(
        self, agent_id: str, *, after: int = 0, upto: int | None = None
    ) -> list[DeltaLogEntry]: ...

    async def put_checkpoint(self, checkpoint: Checkpoint) -> None: ...

    async def get_checkpoint(self, checkpoint_id: str) -> Checkpoint | None: ...

    async def list_checkpoints(self, agent_id: str) -> list[Checkpoint]: ...


def _strip_shared(state: AgentState) -> AgentState:
    return state.model_copy(update={"shared": {}}, deep=True)


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------


class InMemoryStateStore:
    """Process-local state store.  Returned models are copies."""

    def __init__(self) -> None:
        self._agents: dict[str, AgentState] = {}
        self._shared: dict[str, SharedState] = {}
        self._deltas: dict[str, list[DeltaLogEntry]] = {}
        self._checkpoints: dict[str, Checkpoint] = {}

    async def load_agent(self, agent_id: str) -> AgentState | None:
        state = self._agents.get(agent_id)
        return state.model_copy(deep=True) if state else None

    async def save_agent(self, state: AgentState) -> None:
        self._agents[state.agent_id] = _strip_shared(state)

    async def list_agents(self) -> list[str]:
        return sorted(self._agents)

    async def load_shared(self, workspace_id: str) -> SharedState | None:
        shared = self._shared.get(workspace_id)
        return shared.model_copy(deep=True) if shared else None

    async def save_shared(self, shared: SharedState) -> None:
        self._shared[shared.workspace_id] = shared.model_copy(deep=True)

    async def append_delta(self, entry: DeltaLogEntry) -> None:
        self._deltas.setdefault(entry.agent_id, []).append(entry.model_copy(deep=True))

    async def deltas(
        self, agent_id: str, *, after: int = 0, upto: int | None = None
    ) -> list[DeltaLogEntry]:
        return [
            e.model_copy(deep=True)
            for e in self._deltas.get(agent_id, [])
            if e.sequence > after and (upto is None or e.sequence <= upto)
        ]

    async def put_checkpoint(self, checkpoint: Checkpoint) -> None:
        self._checkpoints[checkpoint.id] = checkpoint.model_copy(deep=True)

    async def get_checkpoint(self, checkpoint_id: str) -> Checkpoint | None:
        checkpoint = self._checkpoints.get(checkpoint_id)
        return checkpoint.model_copy(deep=True) if checkpoint else None

    async def list_checkpoints(self, agent_id: str) -> list[Checkpoint]:
        owned = [
            c.model_copy(deep=True)
            for c in self._checkpoints.values()
            if c.agent_id == agent_id
        ]
        return sorted(owned, key=lambda c: c.version)


# ---------------------------------------------------------------------------
# Redis
# ---------------------------------------------------------------------------

_PREFIX = "agentctx"
_STATE_KEY = f"{_PREFIX}:state"
_SHARED_KEY = f"{_PREFIX}:shared"
_DELTAS_KEY = f"{_PREFIX}:deltas"
_CHECKPOINT_KEY = f"{_PREFIX}:checkpoint"
_CHECKPOINTS_KEY = f"{_PREFIX}:checkpoints"
_AGENTS_KEY = f"{_PREFIX}:agents"


def _decode(raw: bytes | str) -> str:
    return raw.decode() if isinstance(raw, bytes) else raw


class RedisStateStore:
    """Redis-backed state store."""

    def __init__(self, redis: Redis) -> None:
        self._redis = redis

    async def load_agent(self, agent_id: str) -> AgentState | None:
        data = await self._redis.get(f"{_STATE_KEY}:{agent_id}")
        if data is None:
            return None
        return AgentState.model_validate_json(data)

    async def save_agent(self, state: AgentState) -> None:
        pipe = self._redis.pipeline()
        pipe.set(f"{_STATE_KEY}:{state.agent_id}", _strip_shared(state).model_dump_json())
        pipe.sadd(_AGENTS_KEY, state.agent_id)
        await pipe.execute()

    async def list_agents(self) -> list[str]:
        members = await self._redis.smembers(_AGENTS_KEY)
        return sorted(_decode(m) for m in members)

    async def load_shared(self, workspace_id: str) -> SharedState | None:
        data = await self._redis.get(f"{_SHARED_KEY}:{workspace_id}")
        if data is None:
            return None
        return SharedState.model_validate_json(data)

    async def save_shared(self, shared: SharedState) -> None:
        await self._redis.set(
            f"{_SHARED_KEY}:{shared.workspace_id}", shared.model_dump_json()
        )

    async def append_delta(self, entry: DeltaLogEntry) -> None:
        await self._redis.zadd(
            f"{_DELTAS_KEY}:{entry.agent_id}",
            {entry.model_dump_json(): entry.sequence},
        )

    async def deltas(
        self, agent_id: str, *, after: int = 0, upto: int | None = None
    ) -> list[DeltaLogEntry]:
        raw = await self._redis.zrangebyscore(
            f"{_DELTAS_KEY}:{agent_id}",
            f"({after}",
            "+inf" if upto is None else upto,
        )
        entries = [DeltaLogEntry.model_validate_json(r) for r in raw]
        entries.sort(key=lambda e: e.sequence)
        return entries

    async def put_checkpoint(self, checkpoint: Checkpoint) -> None:
        pipe = self._redis.pipeline()
        pipe.set(f"{_CHECKPOINT_KEY}:{checkpoint.id}", checkpoint.model_dump_json())
        pipe.zadd(
            f"{_CHECKPOINTS_KEY}:{checkpoint.agent_id}",
            {checkpoint.id: checkpoint.version},
        )
        await pipe.execute()

    async def get_checkpoint(self, checkpoint_id: str) -> Checkpoint | None:
        data = await self._redis.get(f"{_CHECKPOINT_KEY}:{checkpoint_id}")
        if data is None:
            return None
        return Checkpoint.model_validate_json(data)

    async def list_checkpoints(self, agent_id: str) -> list[Checkpoint]:
        ids = await self._redis.zrange(f"{_CHECKPOINTS_KEY}:{agent_id}", 0, -1)
        if not ids:
            return []
        pipe = self._redis.pipeline()
        for cid in ids:
            pipe.get(f"{_CHECKPOINT_KEY}:{_decode(cid)}")
        raw_results = await pipe.execute()
        return [Checkpoint.model_validate_json(r) for r in raw_results if r is not None]

    async def clear(self) -> None:
        """Remove every agentctx state key (test helper)."""
        batch: list = []
        for pattern in (
            f"{_STATE_KEY}:*",
            f"{_SHARED_KEY}:*",
            f"{_DELTAS_KEY}:*",
            f"{_CHECKPOINT_KEY}:*",
            f"{_CHECKPOINTS_KEY}:*",
        ):
            async for key in self._redis.scan_iter(match=pattern):
                batch.append(key)
        batch.append(_AGENTS_KEY)
        await self._redis.delete(*batch)
