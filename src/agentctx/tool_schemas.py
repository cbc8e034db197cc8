"""Pydantic models for the MCP tool interface.

Output models shape tool responses; FastMCP serializes them
automatically.  Every result carries ``status`` and, on rejection, an
``error_code`` with a human-readable ``message``.
"""

from __future__ import annotations

from typing import Any
from typing import Literal

from pydantic import BaseModel
from pydantic import Field


class ToolResult(BaseModel):
    status: Literal["ok", "rejected", "error"] = "ok"
    error_code: str | None = Field(
        default=None,
        description="Machine-readable reason when status is not ok.",
    )
    message: str | None = None


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


class ProcessMessageResult(ToolResult):
    message_id: str = ""
    version: str | None = None
    data: dict[str, Any] | None = Field(
        default=None,
        description="The canonical message as JSON.",
    )


# ---------------------------------------------------------------------------
# Memory
# ---------------------------------------------------------------------------


class StoreMemoryResult(ToolResult):
    memory_id: str = ""
    kind: str | None = None
    evicted: list[str] = Field(default_factory=list)


class MemoryHit(BaseModel):
    id: str
    kind: str
    text: str
    score: float
    similarity: float
    recency: float
    importance: float


class RetrieveMemoriesResult(ToolResult):
    query: str = ""
    memories: list[MemoryHit] = Field(default_factory=list)
    partial: bool = False
    failed_sources: list[str] = Field(default_factory=list)


class MemoryOverviewResult(ToolResult):
    agent_id: str = ""
    counts: dict[str, int] = Field(default_factory=dict)
    archived: int = 0
    last_stored_at: float | None = None
    working_items: int = 0
    working_tokens: int = 0
    capacity_items: int = 0
    capacity_tokens: int = 0


class ConsolidationRun(BaseModel):
    session_id: str | None
    consolidated_id: str
    archived_ids: list[str]


class ConsolidateMemoriesResult(ToolResult):
    runs: list[ConsolidationRun] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------


class GetStateResult(ToolResult):
    state: dict[str, Any] | None = None


class UpdateStateResult(ToolResult):
    modification_count: int = 0
    applied: list[str] = Field(default_factory=list)
    superseded: list[str] = Field(default_factory=list)
    conflicts: list[dict[str, Any]] = Field(default_factory=list)
    checkpoint_id: str | None = None


class CheckpointStateResult(ToolResult):
    checkpoint_id: str = ""
    version: int = 0
    content_hash: str = ""


class StateChange(BaseModel):
    path: str
    kind: str
    old: Any = None
    new: Any = None


class DiffStateResult(ToolResult):
    changes: list[StateChange] = Field(default_factory=list)
    additions: int = 0
    removals: int = 0
    modifications: int = 0


# ---------------------------------------------------------------------------
# Context
# ---------------------------------------------------------------------------


class BuildContextResult(ToolResult):
    window: dict[str, Any] | None = None
    rendered: str = ""
