"""State domain — agent state, field-level merging and checkpoints."""

from agentctx.state.manager import merge_append_only
from agentctx.state.manager import StateManager
from agentctx.state.schemas import AgentState
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
from agentctx.state.store import RedisStateStore
from agentctx.state.store import StateStore

__all__ = [
    "AgentState",
    "Checkpoint",
    "CheckpointRef",
    "CheckpointTrigger",
    "ConflictKind",
    "DeltaLogEntry",
    "DiffKind",
    "FieldChange",
    "FieldOp",
    "FieldStamp",
    "InMemoryStateStore",
    "LocalState",
    "RedisStateStore",
    "SharedState",
    "StateConflictNotice",
    "StateDelta",
    "StateDiff",
    "StateFieldDiff",
    "StateManager",
    "StateOptions",
    "StateScope",
    "StateStore",
    "StateUpdateResult",
    "merge_append_only",
]
