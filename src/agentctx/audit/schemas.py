"""Audit event types and the audit record model."""

from __future__ import annotations

import time
import uuid
from enum import Enum
from typing import Any

from pydantic import BaseModel
from pydantic import Field


def new_event_id() -> str:
    return f"evt_{uuid.uuid4().hex}"


class AuditEventType(str, Enum):
    """What changed: memory contents, agent state, or a built context."""

    MEMORY_STORED = "MEMORY_STORED"
    MEMORY_EVICTED = "MEMORY_EVICTED"
    MEMORY_CONSOLIDATED = "MEMORY_CONSOLIDATED"
    STATE_UPDATED = "STATE_UPDATED"
    STATE_CONFLICT = "STATE_CONFLICT"
    CHECKPOINT_CREATED = "CHECKPOINT_CREATED"
    STATE_RESTORED = "STATE_RESTORED"
    CONTEXT_BUILT = "CONTEXT_BUILT"


class AuditEvent(BaseModel):
    """One line of the audit log.  Never mutated after it is written."""

    model_config = {"frozen": True}

    event_id: str = Field(default_factory=new_event_id)
    timestamp: float = Field(default_factory=time.time)
    event_type: AuditEventType
    agent_id: str | None = Field(
        default=None,
        description="Agent whose memory, state or context the event concerns.",
    )
    subject_id: str | None = Field(
        default=None,
        description="Memory, checkpoint or context build the event is about.",
    )
    payload: dict[str, Any] = Field(default_factory=dict)
