"""Canonical message models.

``Message`` is the latest (canonical) schema shape.  Older payloads are
migrated forward by ``agentctx.messages.migrations`` before they are
validated here.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime
from datetime import timezone
from enum import Enum
from typing import Annotated
from typing import Any
from typing import Literal
from typing import Union

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field
from pydantic import field_validator

CANONICAL_VERSION = "3.0.0"


def new_message_id() -> str:
    return f"msg_{uuid.uuid4().hex}"


def new_conversation_id() -> str:
    return f"conv_{uuid.uuid4().hex}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class Role(str, Enum):
    """Author of a conversation turn."""

    system = "system"
    user = "user"
    assistant = "assistant"
    tool = "tool"


# ---------------------------------------------------------------------------
# Content union
# ---------------------------------------------------------------------------


class TextContent(BaseModel):
    """Plain text content."""

    type: Literal["text"] = "text"
    text: str


class StructuredContent(BaseModel):
    """Arbitrary JSON object content."""

    type: Literal["structured"] = "structured"
    data: dict[str, Any]
    schema_name: str | None = Field(
        default=None,
        description="Optional name of the schema the data conforms to.",
    )


class ContentPart(BaseModel):
    """One part of a multi-part message."""

    type: Literal["text", "image", "audio", "file", "data"] = "text"
    content: str | None = None
    url: str | None = None
    mime_type: str | None = None
    data: dict[str, Any] | None = None


class MultipartContent(BaseModel):
    """Ordered list of heterogeneous parts."""

    type: Literal["multipart"] = "multipart"
    parts: list[ContentPart] = Field(min_length=1)


MessageContent = Annotated[
    Union[TextContent, StructuredContent, MultipartContent],
    Field(discriminator="type"),
]


def coerce_content(value: Any) -> Any:
    """Coerce bare strings, dicts and lists into the tagged content union."""
    if isinstance(value, str):
        return {"type": "text", "text": value}
    if isinstance(value, list):
        return {
            "type": "multipart",
            "parts": [
                {"type": "text", "content": part} if isinstance(part, str) else part
                for part in value
            ],
        }
    if isinstance(value, dict) and "type" not in value:
        return {"type": "structured", "data": value}
    return value


# ---------------------------------------------------------------------------
# Metadata and context
# ---------------------------------------------------------------------------


class TokenCounts(BaseModel):
    prompt: int | None = Field(default=None, ge=0)
    completion: int | None = Field(default=None, ge=0)
    total: int | None = Field(default=None, ge=0)


class MessageMetadata(BaseModel):
    """Measurements attached to a message, possibly after creation."""

    model: str | None = Field(
        default=None,
        description="Model that produced the message, if any.",
    )
    token_counts: TokenCounts | None = None
    latency_ms: float | None = Field(default=None, ge=0.0)
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    extra: dict[str, Any] = Field(
        default_factory=dict,
        description="Free-form metadata not covered by the fields above.",
    )


class MessageContext(BaseModel):
    """Where a message sits in a conversation."""

    conversation_id: str
    session_id: str | None = None
    parent_message_id: str | None = None
    agent_id: str | None = None


class ToolCall(BaseModel):
    id: str = Field(default_factory=lambda: f"call_{uuid.uuid4().hex}")
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    result: Any | None = None


# ---------------------------------------------------------------------------
# Message
# ---------------------------------------------------------------------------


class Message(BaseModel):
    """A structured conversation turn in canonical form.

    ``id``, ``role`` and ``content`` cannot be reassigned after creation.
    Post-hoc measurements go through :meth:`attach_metadata`, which
    returns a new instance.
    """

    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=new_message_id, frozen=True)
    version: str = CANONICAL_VERSION
    role: Role = Field(frozen=True)
    content: MessageContent = Field(frozen=True)
    created_at: datetime = Field(default_factory=_utcnow)
    metadata: MessageMetadata = Field(default_factory=MessageMetadata)
    context: MessageContext
    tool_calls: list[ToolCall] | None = None
    memory_refs: list[str] | None = None
    state_snapshot_ref: str | None = None

    @field_validator("content", mode="before")
    @classmethod
    def _coerce_content(cls, value: Any) -> Any:
        return coerce_content(value)

    @field_validator("created_at")
    @classmethod
    def _require_timezone(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def text(self) -> str:
        """Plain-text projection used for ranking and token estimates."""
        content = self.content
        if isinstance(content, TextContent):
            return content.text
        if isinstance(content, StructuredContent):
            return json.dumps(content.data, sort_keys=True, default=str)
        pieces = [part.content for part in content.parts if part.content]
        return "\n".join(pieces)

    def attach_metadata(self, **updates: Any) -> Message:
        """Return a copy with *updates* merged into the metadata."""
        merged = self.metadata.model_dump()
        extra = dict(merged.get("extra") or {})
        for key, value in updates.items():
            if key in MessageMetadata.model_fields and key != "extra":
                merged[key] = value
            else:
                extra[key] = value
        merged["extra"] = extra
        return self.model_copy(
            update={"metadata": MessageMetadata.model_validate(merged)}
        )


def create_message(
    role: Role | str,
    content: Any,
    *,
    conversation_id: str | None = None,
    session_id: str | None = None,
    parent_message_id: str | None = None,
    agent_id: str | None = None,
    **fields: Any,
) -> Message:
    """Factory for a canonical message with a fresh id and timestamp."""
    return Message(
        role=role,
        content=content,
        context=MessageContext(
            conversation_id=conversation_id or new_conversation_id(),
            session_id=session_id,
            parent_message_id=parent_message_id,
            agent_id=agent_id,
        ),
        **fields,
    )
