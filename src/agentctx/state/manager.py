"""State manager: versioned per-agent state with field-level merging.

Local, session and persistent state belong to one agent and are mutated
under a per-agent lock.  Shared state belongs to a workspace and is
read through a small cache whose age is bounded by
``StateConfig.shared_staleness_seconds``; reads may therefore be stale by
at most that long.  Writes are merged last-writer-wins per field using a
field clock (timestamp, then author as tie-break).  Append-only fields are
merged by concatenation with deduplication instead.

Every modification is appended to a delta log holding its resolved
effects, so any historical state can be rebuilt from the nearest
checkpoint plus the deltas after it.
"""

from __future__ import annotations

import asyncio
import logging
import time
import weakref
from collections.abc import Callable
from time import perf_counter
from typing import Any

from pydantic import ValidationError

from agentctx.audit import AuditEventType
from agentctx.audit import AuditLogger
from agentctx.config import StateConfig
from agentctx.errors import CheckpointNotFoundError
from agentctx.errors import StateError
from agentctx.observability import increment_counter
from agentctx.observability import record_latency
from agentctx.state.schemas import AgentState
from agentctx.state.schemas import canonical_json
from agentctx.state.schemas import Checkpoint
from agentctx.state.schemas import CheckpointRef
from agentctx.state.schemas import CheckpointTrigger
from agentctx.state.schemas import ConflictKind
from agentctx.state.schemas import DeltaLogEntry
from agentctx.state.schemas import DiffKind
from agentctx.state.schemas import FieldChange
from agentctx.state.schemas import FieldOp
from agentctx.state.schemas import FieldStamp
from agentctx.state.schemas import LocalState
from agentctx.state.schemas import SharedState
from agentctx.state.schemas import StateConflictNotice
from agentctx.state.schemas import StateDelta
from agentctx.state.schemas import StateDiff
from agentctx.state.schemas import StateFieldDiff
from agentctx.state.schemas import StateOptions
from agentctx.state.schemas import StateScope
from agentctx.state.schemas import StateUpdateResult
from agentctx.state.store import InMemoryStateStore
from agentctx.state.store import StateStore

logger = logging.getLogger(__name__)

_MISSING = object()


# ---------------------------------------------------------------------------
# Path helpers
# ---------------------------------------------------------------------------


def _get_path(root: dict[str, Any], parts: list[str]) -> Any:
    node: Any = root
    for part in parts:
        if not isinstance(node, dict) or part not in node:
            return _MISSING
        node = node[part]
    return node


def _set_path(root: dict[str, Any], parts: list[str], value: Any) -> None:
    node = root
    for part in parts[:-1]:
        child = node.setdefault(part, {})
        if not isinstance(child, dict):
            raise StateError(
                f"cannot write below non-object field {'.'.join(parts)!r}"
            )
        node = child
    node[parts[-1]] = value


def _delete_path(root: dict[str, Any], parts: list[str]) -> None:
    parent = _get_path(root, parts[:-1]) if len(parts) > 1 else root
    if isinstance(parent, dict):
        parent.pop(parts[-1], None)


def _item_identity(item: Any) -> str:
    if isinstance(item, dict) and "id" in item:
        return f"id:{item['id']}"
    return canonical_json(item)


def merge_append_only(existing: Any, incoming: Any) -> list[Any]:
    """Concatenate *incoming* onto *existing*, skipping items already present.

    Items are identified by their ``id`` key when they are objects that
    carry one, otherwise by their canonical JSON encoding.
    """
    current = list(existing) if isinstance(existing, list) else []
    additions = incoming if isinstance(incoming, list) else [incoming]
    seen = {_item_identity(item) for item in current}
    for item in additions:
        identity = _item_identity(item)
        if identity not in seen:
            seen.add(identity)
            current.append(item)
    return current


def _lock_for(
    locks: weakref.WeakValueDictionary[str, asyncio.Lock], key: str
) -> asyncio.Lock:
    lock = locks.get(key)
    if lock is None:
        lock = asyncio.Lock()
        locks[key] = lock
    return lock


def _diff_tree(old: Any, new: Any, prefix: str, out: list[StateFieldDiff]) -> None:
    if isinstance(old, dict) and isinstance(new, dict):
        for key in sorted(old.keys() | new.keys()):
            path = f"{prefix}.{key}"
            if key not in new:
                out.append(StateFieldDiff(path=path, kind=DiffKind.removed, old=old[key]))
            elif key not in old:
                out.append(StateFieldDiff(path=path, kind=DiffKind.added, new=new[key]))
            else:
                _diff_tree(old[key], new[key], path, out)
    elif canonical_json(old) != canonical_json(new):
        out.append(
            StateFieldDiff(path=prefix, kind=DiffKind.modified, old=old, new=new)
        )


def _loses_to(timestamp: float, author: str, stamp: FieldStamp) -> bool:
    """True when a write at (*timestamp*, *author*) is older than *stamp*."""
    if timestamp != stamp.timestamp:
        return timestamp < stamp.timestamp
    return author < stamp.author


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


class StateManager:
    """Reads, merges, checkpoints and restores agent state."""

    def __init__(
        self,
        store: StateStore | None = None,
        *,
        config: StateConfig | None = None,
        audit_logger: AuditLogger | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._store = store or InMemoryStateStore()
        self._config = config or StateConfig()
        self._audit = audit_logger
        self._clock = clock or time.time
        # Entries vanish once no task holds or awaits the lock.
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )
        self._workspace_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )
        self._shared_cache: dict[str, tuple[float, SharedState]] = {}

    @property
    def config(self) -> StateConfig:
        return self._config

    def agent_lock(self, agent_id: str) -> asyncio.Lock:
        return _lock_for(self._locks, agent_id)

    # ------------------------------------------------------------------
    # Provisioning
    # ------------------------------------------------------------------

    async def provision(
        self, agent_id: str, *, workspace_id: str = "default"
    ) -> AgentState:
        """Create the agent's state record if it does not exist yet."""
        async with self.agent_lock(agent_id):
            existing = await self._store.load_agent(agent_id)
            if existing is not None:
                return existing
            state = self._new_state(agent_id, workspace_id=workspace_id)
            await self._store.save_agent(state)
            logger.info("Provisioned state for agent %s in workspace %s", agent_id, workspace_id)
            return state

    def _new_state(self, agent_id: str, *, workspace_id: str = "default") -> AgentState:
        return AgentState(
            agent_id=agent_id,
            schema_version=self._config.schema_version,
            workspace_id=workspace_id,
            last_modified=self._clock(),
        )

    async def _load(self, agent_id: str) -> AgentState:
        state = await self._store.load_agent(agent_id)
        return state if state is not None else self._new_state(agent_id)

    # ------------------------------------------------------------------
    # Shared state
    # ------------------------------------------------------------------

    async def _load_shared(self, workspace_id: str) -> SharedState:
        shared = await self._store.load_shared(workspace_id)
        if shared is None:
            shared = SharedState(workspace_id=workspace_id)
        self._shared_cache[workspace_id] = (self._clock(), shared)
        return shared.model_copy(deep=True)

    async def _read_shared(self, workspace_id: str) -> SharedState:
        cached = self._shared_cache.get(workspace_id)
        if cached is not None:
            fetched_at, shared = cached
            if self._clock() - fetched_at <= self._config.shared_staleness_seconds:
                return shared.model_copy(deep=True)
        return await self._load_shared(workspace_id)

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def get_state(
        self, agent_id: str, options: StateOptions | None = None
    ) -> AgentState:
        """Return the agent's state merged with its workspace state.

        Raises:
            CheckpointNotFoundError: the requested checkpoint or history
                point does not exist.
        """
        start = perf_counter()
        ok = False
        opts = options or StateOptions()
        try:
            if opts.checkpoint_id is not None:
                checkpoint = await self._get_checkpoint(agent_id, opts.checkpoint_id)
                state = checkpoint.state.model_copy(deep=True)
            elif opts.as_of is not None:
                state = await self._reconstruct(agent_id, opts.as_of)
            else:
                state = await self._load(agent_id)
                if opts.include_shared:
                    shared = await self._read_shared(state.workspace_id)
                    state.shared = shared.values
                    state.field_clock = {**state.field_clock, **shared.clock}

            if not opts.include_shared:
                state.shared = {}
            if opts.session_id is not None:
                state.session = {opts.session_id: state.session.get(opts.session_id, {})}
            ok = True
            return state
        finally:
            record_latency(
                operation="state.get_state",
                duration_ms=(perf_counter() - start) * 1000,
                ok=ok,
            )

    async def _get_checkpoint(self, agent_id: str, checkpoint_id: str) -> Checkpoint:
        checkpoint = await self._store.get_checkpoint(checkpoint_id)
        if checkpoint is None or checkpoint.agent_id != agent_id:
            raise CheckpointNotFoundError(
                f"checkpoint {checkpoint_id!r} not found for agent {agent_id!r}"
            )
        return checkpoint

    async def _reconstruct(self, agent_id: str, as_of: int) -> AgentState:
        """Rebuild the state after modification *as_of*."""
        current = await self._load(agent_id)
        if as_of > current.modification_count:
            raise CheckpointNotFoundError(
                f"agent {agent_id!r} has no modification {as_of} "
                f"(latest is {current.modification_count})"
            )
        checkpoints = await self._store.list_checkpoints(agent_id)
        eligible = [c for c in checkpoints if c.modification <= as_of]
        if eligible:
            base = max(eligible, key=lambda c: (c.modification, c.version))
            state = base.state.model_copy(deep=True)
            after = base.modification
        else:
            state = self._new_state(agent_id, workspace_id=current.workspace_id)
            after = 0

        for entry in await self._store.deltas(agent_id, after=after, upto=as_of):
            self._replay(state, entry)
        state.checkpoints = [c.ref() for c in eligible]
        state.modification_count = as_of
        return state

    @staticmethod
    def _replay(state: AgentState, entry: DeltaLogEntry) -> None:
        doc = {
            "local": state.local.model_dump(mode="json"),
            "session": state.session,
            "persistent": state.persistent,
            "shared": state.shared,
        }
        for effect in entry.effects:
            parts = [effect.scope.value, *effect.path.split(".")]
            if effect.op is FieldOp.delete:
                _delete_path(doc, parts)
            else:
                _set_path(doc, parts, effect.value)
        state.local = LocalState.model_validate(doc["local"])
        state.session = doc["session"]
        state.persistent = doc["persistent"]
        state.shared = doc["shared"]
        if entry.restored_from is not None:
            state.field_clock = {}
        state.field_clock.update(
            {k: v for k, v in entry.stamps.items() if not k.startswith("shared.")}
        )
        state.modification_count = entry.sequence
        state.last_modified = entry.timestamp

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    def _is_append_only(self, key: str, op: FieldOp) -> bool:
        return op is FieldOp.append or key in self._config.append_only_fields

    async def update_state(
        self, agent_id: str, delta: StateDelta
    ) -> StateUpdateResult:
        """Apply *delta* and return what was applied.

        Never fails on a write conflict; collisions on shared fields are
        reported as ``StateConflictNotice`` entries in the result.

        Raises:
            StateError: the delta is malformed (session change without a
                session id, delete of an append-only field, or a value
                that does not fit the local state schema).
        """
        start = perf_counter()
        ok = False
        author = delta.author or agent_id
        now = self._clock()
        base_ts = delta.timestamp if delta.timestamp is not None else now
        try:
            for change in delta.changes:
                if change.scope is StateScope.session and delta.session_id is None:
                    raise StateError(f"session change {change.path!r} needs a session_id")

            async with self.agent_lock(agent_id):
                state = await self._load(agent_id)
                sequence = state.modification_count + 1
                result = StateUpdateResult(
                    agent_id=agent_id,
                    modification_count=state.modification_count,
                )
                effects: list[FieldChange] = []
                stamps: dict[str, FieldStamp] = {}
                doc = {
                    "local": state.local.model_dump(mode="json"),
                    "session": state.session,
                    "persistent": state.persistent,
                }
                shared_changes: list[tuple[FieldChange, float]] = []

                for change in delta.changes:
                    ts = change.timestamp if change.timestamp is not None else base_ts
                    if change.scope is StateScope.shared:
                        shared_changes.append((change, ts))
                        continue
                    path = change.path
                    if change.scope is StateScope.session:
                        path = f"{delta.session_id}.{change.path}"
                    parts = [change.scope.value, *path.split(".")]
                    key = ".".join(parts)
                    effect = self._resolve(
                        doc,
                        parts,
                        key,
                        change,
                        ts=ts,
                        author=author,
                        clock=state.field_clock,
                    )
                    if effect is None:
                        result.superseded.append(key)
                        continue
                    effects.append(
                        FieldChange(
                            scope=change.scope,
                            path=path,
                            value=effect[1],
                            op=effect[0],
                            timestamp=ts,
                        )
                    )
                    prev = state.field_clock.get(key)
                    stamps[key] = FieldStamp(
                        timestamp=max(ts, prev.timestamp) if prev else ts,
                        author=author,
                        modification=sequence,
                    )
                    result.applied.append(key)

                try:
                    local = LocalState.model_validate(doc["local"])
                except ValidationError as exc:
                    raise StateError(f"invalid local state update: {exc}") from exc

                if shared_changes:
                    shared_effects = await self._apply_shared(
                        state.workspace_id,
                        shared_changes,
                        author=author,
                        sequence=sequence,
                        result=result,
                    )
                    for effect_change, stamp in shared_effects:
                        effects.append(effect_change)
                        stamps[f"shared.{effect_change.path}"] = stamp

                if effects:
                    state.local = local
                    state.session = doc["session"]
                    state.persistent = doc["persistent"]
                    state.field_clock.update(
                        {k: v for k, v in stamps.items() if not k.startswith("shared.")}
                    )
                    state.modification_count = sequence
                    state.last_modified = now
                    await self._store.append_delta(
                        DeltaLogEntry(
                            agent_id=agent_id,
                            sequence=sequence,
                            timestamp=now,
                            author=author,
                            effects=effects,
                            stamps=stamps,
                        )
                    )
                    await self._store.save_agent(state)
                    result.modification_count = sequence

                    latest = state.latest_checkpoint()
                    pending = sequence - (latest.modification if latest else 0)
                    if pending >= self._config.checkpoint_delta_threshold:
                        checkpoint = await self._checkpoint_locked(
                            state, CheckpointTrigger.delta_threshold
                        )
                        result.checkpoint = checkpoint.ref()

            await self._report_update(agent_id, author, result)
            ok = True
            return result
        finally:
            record_latency(
                operation="state.update_state",
                duration_ms=(perf_counter() - start) * 1000,
                ok=ok,
            )

    def _resolve(
        self,
        doc: dict[str, Any],
        parts: list[str],
        key: str,
        change: FieldChange,
        *,
        ts: float,
        author: str,
        clock: dict[str, FieldStamp],
    ) -> tuple[FieldOp, Any] | None:
        """Apply one change to *doc*; None when it loses to a newer write."""
        if self._is_append_only(key, change.op):
            if change.op is FieldOp.delete:
                raise StateError(f"append-only field {key!r} cannot be deleted")
            existing = _get_path(doc, parts)
            merged = merge_append_only(
                None if existing is _MISSING else existing, change.value
            )
            _set_path(doc, parts, merged)
            return FieldOp.set, merged

        prev = clock.get(key)
        if prev is not None and _loses_to(ts, author, prev):
            return None
        if change.op is FieldOp.delete:
            _delete_path(doc, parts)
            return FieldOp.delete, None
        _set_path(doc, parts, change.value)
        return FieldOp.set, change.value

    async def _apply_shared(
        self,
        workspace_id: str,
        changes: list[tuple[FieldChange, float]],
        *,
        author: str,
        sequence: int,
        result: StateUpdateResult,
    ) -> list[tuple[FieldChange, FieldStamp]]:
        applied: list[tuple[FieldChange, FieldStamp]] = []
        window = self._config.conflict_window_seconds
        async with _lock_for(self._workspace_locks, workspace_id):
            shared = await self._load_shared(workspace_id)
            doc = {"shared": shared.values}
            for change, ts in changes:
                parts = ["shared", *change.path.split(".")]
                key = ".".join(parts)
                prev = shared.clock.get(key)
                collides = prev is not None and prev.author != author

                if (
                    not self._is_append_only(key, change.op)
                    and prev is not None
                    and _loses_to(ts, author, prev)
                ):
                    result.superseded.append(key)
                    if collides:
                        result.conflicts.append(
                            StateConflictNotice(
                                kind=ConflictKind.stale_write,
                                workspace_id=workspace_id,
                                path=key,
                                winning_author=prev.author,
                                losing_author=author,
                                winning_timestamp=prev.timestamp,
                                losing_timestamp=ts,
                                detected_at=self._clock(),
                            )
                        )
                    continue

                resolved = self._resolve(
                    doc, parts, key, change, ts=ts, author=author, clock={}
                )
                assert resolved is not None
                if collides and abs(ts - prev.timestamp) <= window:
                    result.conflicts.append(
                        StateConflictNotice(
                            kind=ConflictKind.concurrent_overwrite,
                            workspace_id=workspace_id,
                            path=key,
                            winning_author=author,
                            losing_author=prev.author,
                            winning_timestamp=ts,
                            losing_timestamp=prev.timestamp,
                            detected_at=self._clock(),
                        )
                    )
                stamp = FieldStamp(
                    timestamp=max(ts, prev.timestamp) if prev else ts,
                    author=author,
                    modification=sequence,
                )
                shared.clock[key] = stamp
                applied.append(
                    (
                        FieldChange(
                            scope=StateScope.shared,
                            path=change.path,
                            value=resolved[1],
                            op=resolved[0],
                            timestamp=ts,
                        ),
                        stamp,
                    )
                )
                result.applied.append(key)

            if applied:
                shared.values = doc["shared"]
                shared.version += 1
                await self._store.save_shared(shared)
                self._shared_cache[workspace_id] = (self._clock(), shared)
        return applied

    async def _report_update(
        self, agent_id: str, author: str, result: StateUpdateResult
    ) -> None:
        for notice in result.conflicts:
            logger.info(
                "Shared state conflict (%s) on %s in workspace %s: %s overwrote %s",
                notice.kind.value,
                notice.path,
                notice.workspace_id,
                notice.winning_author,
                notice.losing_author,
            )
        increment_counter("state.conflicts", len(result.conflicts))
        if self._audit is None:
            return
        if result.applied:
            await self._audit.emit(
                AuditEventType.STATE_UPDATED,
                agent_id=agent_id,
                author=author,
                modification=result.modification_count,
                paths=result.applied,
            )
        for notice in result.conflicts:
            await self._audit.emit(
                AuditEventType.STATE_CONFLICT,
                agent_id=agent_id,
                **notice.model_dump(mode="json"),
            )

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    async def checkpoint(
        self,
        agent_id: str,
        *,
        trigger: CheckpointTrigger = CheckpointTrigger.explicit,
    ) -> Checkpoint:
        """Snapshot the agent's state; unchanged state returns the last checkpoint."""
        start = perf_counter()
        ok = False
        try:
            async with self.agent_lock(agent_id):
                state = await self._load(agent_id)
                checkpoint = await self._checkpoint_locked(state, trigger)
            ok = True
            return checkpoint
        finally:
            record_latency(
                operation="state.checkpoint",
                duration_ms=(perf_counter() - start) * 1000,
                ok=ok,
            )

    async def _checkpoint_locked(
        self, state: AgentState, trigger: CheckpointTrigger
    ) -> Checkpoint:
        shared = await self._load_shared(state.workspace_id)
        snapshot = state.model_copy(
            update={"shared": shared.values, "checkpoints": []}, deep=True
        )
        digest = snapshot.content_hash()

        latest = state.latest_checkpoint()
        if latest is not None and latest.content_hash == digest:
            existing = await self._store.get_checkpoint(latest.id)
            if existing is not None:
                return existing

        checkpoint = Checkpoint(
            agent_id=state.agent_id,
            version=(latest.version if latest else 0) + 1,
            content_hash=digest,
            modification=state.modification_count,
            created_at=self._clock(),
            trigger=trigger,
            state=snapshot,
        )
        await self._store.put_checkpoint(checkpoint)
        state.checkpoints.append(checkpoint.ref())
        await self._store.save_agent(state)
        logger.info(
            "Checkpoint %s (v%d, %s) created for agent %s",
            checkpoint.id,
            checkpoint.version,
            trigger.value,
            state.agent_id,
        )
        if self._audit is not None:
            await self._audit.emit(
                AuditEventType.CHECKPOINT_CREATED,
                agent_id=state.agent_id,
                subject_id=checkpoint.id,
                version=checkpoint.version,
                content_hash=digest,
                trigger=trigger.value,
            )
        return checkpoint

    async def list_checkpoints(self, agent_id: str) -> list[CheckpointRef]:
        return [c.ref() for c in await self._store.list_checkpoints(agent_id)]

    async def diff(
        self,
        agent_id: str,
        from_checkpoint: str,
        to_checkpoint: str | None = None,
    ) -> StateDiff:
        """List the fields that differ between two checkpoints.

        Without *to_checkpoint* the comparison runs up to the current
        state, workspace values included.  Objects are compared key by
        key; any other value, lists included, is compared whole.

        Raises:
            CheckpointNotFoundError: either checkpoint is unknown for the agent.
        """
        start = perf_counter()
        ok = False
        try:
            before = (await self._get_checkpoint(agent_id, from_checkpoint)).state
            if to_checkpoint is None:
                after = await self.get_state(agent_id)
            else:
                after = (await self._get_checkpoint(agent_id, to_checkpoint)).state

            old, new = before.content(), after.content()
            changes: list[StateFieldDiff] = []
            for scope in StateScope:
                _diff_tree(old[scope.value], new[scope.value], scope.value, changes)
            ok = True
            return StateDiff(
                agent_id=agent_id,
                from_checkpoint=from_checkpoint,
                to_checkpoint=to_checkpoint,
                changes=changes,
            )
        finally:
            record_latency(
                operation="state.diff",
                duration_ms=(perf_counter() - start) * 1000,
                ok=ok,
            )

    async def run_scheduled_checkpoints(
        self, now: float | None = None
    ) -> list[Checkpoint]:
        """Checkpoint every agent whose last checkpoint is older than the interval."""
        now = now if now is not None else self._clock()
        interval = self._config.checkpoint_interval_seconds
        created: list[Checkpoint] = []
        for agent_id in await self._store.list_agents():
            async with self.agent_lock(agent_id):
                state = await self._load(agent_id)
                latest = state.latest_checkpoint()
                if latest is None:
                    due = state.modification_count > 0
                else:
                    due = now - latest.created_at >= interval
                if not due:
                    continue
                checkpoint = await self._checkpoint_locked(
                    state, CheckpointTrigger.schedule
                )
                if latest is None or checkpoint.id != latest.id:
                    created.append(checkpoint)
        return created

    async def rollback(self, agent_id: str, checkpoint_id: str) -> StateUpdateResult:
        """Make a checkpoint's local, session and persistent state current.

        Recorded as a new modification so the history stays replayable.
        Workspace state is shared with other agents and is left as is.
        """
        start = perf_counter()
        ok = False
        try:
            checkpoint = await self._get_checkpoint(agent_id, checkpoint_id)
            target = checkpoint.state
            async with self.agent_lock(agent_id):
                state = await self._load(agent_id)
                sequence = state.modification_count + 1
                now = self._clock()
                effects: list[FieldChange] = []

                local = target.local.model_dump(mode="json")
                for name, value in local.items():
                    effects.append(
                        FieldChange(scope=StateScope.local, path=name, value=value)
                    )
                for scope, current, restored in (
                    (StateScope.session, state.session, target.session),
                    (StateScope.persistent, state.persistent, target.persistent),
                ):
                    for name, value in restored.items():
                        effects.append(FieldChange(scope=scope, path=name, value=value))
                    for name in current:
                        if name not in restored:
                            effects.append(
                                FieldChange(scope=scope, path=name, op=FieldOp.delete)
                            )

                stamps = {
                    f"{e.scope.value}.{e.path}": FieldStamp(
                        timestamp=now, author=agent_id, modification=sequence
                    )
                    for e in effects
                }
                state.local = target.local.model_copy(deep=True)
                state.session = dict(target.session)
                state.persistent = dict(target.persistent)
                state.field_clock = {**target.field_clock, **stamps}
                state.modification_count = sequence
                state.last_modified = now
                await self._store.append_delta(
                    DeltaLogEntry(
                        agent_id=agent_id,
                        sequence=sequence,
                        timestamp=now,
                        author=agent_id,
                        effects=effects,
                        stamps={**target.field_clock, **stamps},
                        restored_from=checkpoint.id,
                    )
                )
                await self._store.save_agent(state)

            logger.info(
                "Agent %s restored to checkpoint %s (v%d)",
                agent_id,
                checkpoint.id,
                checkpoint.version,
            )
            if self._audit is not None:
                await self._audit.emit(
                    AuditEventType.STATE_RESTORED,
                    agent_id=agent_id,
                    subject_id=checkpoint.id,
                    modification=sequence,
                )
            ok = True
            return StateUpdateResult(
                agent_id=agent_id,
                modification_count=sequence,
                applied=sorted(stamps),
            )
        finally:
            record_latency(
                operation="state.rollback",
                duration_ms=(perf_counter() - start) * 1000,
                ok=ok,
            )
