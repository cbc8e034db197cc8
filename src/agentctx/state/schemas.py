"""Agent state data models.

``AgentState`` is a value object: managers hand out copies and accept
field-level deltas back, never shared mutable references.
"""

from __future__ import annotations

import hashlib
import json
import time
import uuid
from enum import Enum
from typing import Any

from pydantic import BaseModel
from pydantic import Field


def new_checkpoint_id() -> str:
    return f"ckpt_{uuid.uuid4().hex}"


def canonical_json(value: Any) -> str:
    """Stable JSON encoding used for hashing and identity comparison."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def content_hash(value: Any) -> str:
    return hashlib.sha256(canonical_json(value).encode()).hexdigest()


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class StateScope(str, Enum):
    """Which part of the agent state a change targets."""

    local = "local"
    shared = "shared"
    session = "session"
    persistent = "persistent"


class FieldOp(str, Enum):
    set = "set"
    append = "append"
    delete = "delete"


class ConflictKind(str, Enum):
    stale_write = "stale_write"
    concurrent_overwrite = "concurrent_overwrite"


class CheckpointTrigger(str, Enum):
    explicit = "explicit"
    delta_threshold = "delta_threshold"
    schedule = "schedule"


class DiffKind(str, Enum):
    added = "added"
    removed = "removed"
    modified = "modified"


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------


class LocalState(BaseModel):
    """State owned by exactly one agent."""

    preferences: dict[str, Any] = Field(default_factory=dict)
    learned_patterns: list[Any] = Field(default_factory=list)
    skill_levels: dict[str, float] = Field(default_factory=dict)
    error_history: list[Any] = Field(default_factory=list)
    current_focus: str | None = None


class FieldStamp(BaseModel):
    """Last write to one field: when, and by whom."""

    timestamp: float
    author: str
    modification: int = 0


class CheckpointRef(BaseModel):
    id: str
    version: int
    content_hash: str
    modification: int = 0
    created_at: float


class AgentState(BaseModel):
    """The mutable operating context of one agent."""

    agent_id: str
    schema_version: str = "1.0.0"
    workspace_id: str = Field(
        default="default",
        description="Workspace whose shared state this agent reads and writes.",
    )
    local: LocalState = Field(default_factory=LocalState)
    shared: dict[str, Any] = Field(
        default_factory=dict,
        description="Workspace state: cross-agent knowledge, collaborations, sync points.",
    )
    session: dict[str, dict[str, Any]] = Field(
        default_factory=dict,
        description="Ephemeral state keyed by session id.",
    )
    persistent: dict[str, Any] = Field(default_factory=dict)
    checkpoints: list[CheckpointRef] = Field(default_factory=list)
    last_modified: float = Field(default_factory=time.time)
    modification_count: int = Field(default=0, ge=0)
    field_clock: dict[str, FieldStamp] = Field(
        default_factory=dict,
        description="Per-field last write stamp for local, session and persistent paths.",
    )

    def content(self) -> dict[str, Any]:
        """The hashed part of the state."""
        return {
            "local": self.local.model_dump(mode="json"),
            "shared": self.shared,
            "session": self.session,
            "persistent": self.persistent,
        }

    def content_hash(self) -> str:
        return content_hash(self.content())

    def latest_checkpoint(self) -> CheckpointRef | None:
        return self.checkpoints[-1] if self.checkpoints else None


class SharedState(BaseModel):
    """Shared state of one workspace with its own field clock."""

    workspace_id: str
    values: dict[str, Any] = Field(default_factory=dict)
    clock: dict[str, FieldStamp] = Field(default_factory=dict)
    version: int = 0


# ---------------------------------------------------------------------------
# Deltas
# ---------------------------------------------------------------------------


class FieldChange(BaseModel):
    """One field-level change.

    ``path`` is dotted and relative to ``scope``, e.g. scope ``local`` with
    path ``preferences.theme``.
    """

    scope: StateScope
    path: str = Field(min_length=1)
    value: Any = None
    op: FieldOp = FieldOp.set
    timestamp: float | None = Field(
        default=None,
        description="Write time used for last-writer-wins; defaults to the delta's.",
    )


class StateDelta(BaseModel):
    """A batch of field-level changes from one author."""

    changes: list[FieldChange] = Field(min_length=1)
    author: str | None = Field(
        default=None,
        description="Writing agent; defaults to the agent being updated.",
    )
    session_id: str | None = None
    timestamp: float | None = None


class DeltaLogEntry(BaseModel):
    """Effective result of one modification, replayable on its own."""

    agent_id: str
    sequence: int
    timestamp: float
    author: str
    effects: list[FieldChange] = Field(
        default_factory=list,
        description="Resolved writes; replaying them in order rebuilds the state.",
    )
    stamps: dict[str, FieldStamp] = Field(default_factory=dict)
    restored_from: str | None = None


class Checkpoint(BaseModel):
    """Immutable snapshot of an agent's state."""

    model_config = {"frozen": True}

    id: str = Field(default_factory=new_checkpoint_id)
    agent_id: str
    version: int = Field(ge=1)
    content_hash: str
    modification: int = Field(
        ge=0,
        description="modification_count of the state when captured.",
    )
    created_at: float = Field(default_factory=time.time)
    trigger: CheckpointTrigger = CheckpointTrigger.explicit
    state: AgentState

    def ref(self) -> CheckpointRef:
        return CheckpointRef(
            id=self.id,
            version=self.version,
            content_hash=self.content_hash,
            modification=self.modification,
            created_at=self.created_at,
        )


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


class StateConflictNotice(BaseModel):
    """Informational record of a shared-field collision; never an error."""

    kind: ConflictKind
    workspace_id: str
    path: str
    winning_author: str
    losing_author: str
    winning_timestamp: float
    losing_timestamp: float
    detected_at: float = Field(default_factory=time.time)


class StateOptions(BaseModel):
    """Options for ``get_state``."""

    session_id: str | None = Field(
        default=None,
        description="Only include this session's state.",
    )
    checkpoint_id: str | None = None
    as_of: int | None = Field(
        default=None,
        ge=0,
        description="Reconstruct the state as of this modification number.",
    )
    include_shared: bool = True


class StateUpdateResult(BaseModel):
    agent_id: str
    modification_count: int
    applied: list[str] = Field(default_factory=list)
    superseded: list[str] = Field(
        default_factory=list,
        description="Paths whose write lost to a newer one.",
    )
    conflicts: list[StateConflictNotice] = Field(default_factory=list)
    checkpoint: CheckpointRef | None = None


class StateFieldDiff(BaseModel):
    path: str = Field(description="Dotted path, starting with the scope name.")
    kind: DiffKind
    old: Any = None
    new: Any = None


class StateDiff(BaseModel):
    """Field-level differences between two versions of an agent's state."""

    agent_id: str
    from_checkpoint: str
    to_checkpoint: str | None = Field(
        default=None,
        description="None when the diff runs up to the current state.",
    )
    changes: list[StateFieldDiff] = Field(default_factory=list)

    def _count(self, kind: DiffKind) -> int:
        return sum(1 for change in self.changes if change.kind == kind)

    @property
    def additions(self) -> int:
        return self._count(DiffKind.added)

    @property
    def removals(self) -> int:
        return self._count(DiffKind.removed)

    @property
    def modifications(self) -> int:
        return self._count(DiffKind.modified)
