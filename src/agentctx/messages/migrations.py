"""Forward-only schema migrations for incoming message payloads.

Each registered version declares its required fields and exactly one step
function to the next version.  Migrating from an old version composes the
steps in order (N -> N+1 -> ... -> canonical); there is no branching, so
adding a version means registering one more step.
"""

from __future__ import annotations

import json
import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from datetime import timezone
from typing import Any

from agentctx.errors import SchemaError
from agentctx.errors import VersionError
from agentctx.messages.schemas import CANONICAL_VERSION
from agentctx.messages.schemas import new_conversation_id
from agentctx.messages.schemas import new_message_id

Payload = dict[str, Any]
MigrationStep = Callable[[Payload], Payload]

_METADATA_RE = re.compile(r"\[METADATA:(.*?)\]", re.DOTALL)


@dataclass(frozen=True)
class SchemaVersion:
    """One registered schema version."""

    version: str
    required: tuple[str, ...]
    upgrade: MigrationStep | None = None
    next_version: str | None = None


def normalize_version(version: object) -> str:
    """Normalize ``2``, ``"2"`` and ``"2.0"`` to ``"2.0.0"``."""
    text = str(version).strip().lstrip("vV")
    parts = text.split(".")
    if not parts or not all(p.isdigit() for p in parts) or len(parts) > 3:
        raise VersionError(str(version))
    parts += ["0"] * (3 - len(parts))
    return ".".join(str(int(p)) for p in parts)


def _lookup(payload: Payload, path: str) -> Any:
    node: Any = payload
    for key in path.split("."):
        if not isinstance(node, dict) or key not in node:
            return None
        node = node[key]
    return node


class MigrationRegistry:
    """Ordered chain of schema versions ending at the canonical version."""

    def __init__(self, canonical: str = CANONICAL_VERSION) -> None:
        self._canonical = canonical
        self._versions: dict[str, SchemaVersion] = {}

    @property
    def canonical(self) -> str:
        return self._canonical

    def versions(self) -> list[str]:
        return sorted(self._versions, key=lambda v: tuple(int(p) for p in v.split(".")))

    def register(
        self,
        version: str,
        *,
        required: tuple[str, ...],
        upgrade: MigrationStep | None = None,
        next_version: str | None = None,
    ) -> None:
        """Register *version*; non-canonical versions need one upgrade step."""
        version = normalize_version(version)
        if version != self._canonical and (upgrade is None or next_version is None):
            raise ValueError(f"version {version} needs an upgrade step")
        self._versions[version] = SchemaVersion(
            version=version,
            required=required,
            upgrade=upgrade,
            next_version=normalize_version(next_version) if next_version else None,
        )

    def check_required(self, payload: Payload, version: str) -> None:
        spec = self._versions.get(version)
        if spec is None:
            raise VersionError(version)
        for path in spec.required:
            value = _lookup(payload, path)
            if value is None or value == "":
                raise SchemaError(
                    f"Missing required field {path!r} for schema version {version}",
                    field=path,
                )

    def migrate(self, payload: Payload, version: str) -> Payload:
        """Compose upgrade steps from *version* to canonical."""
        current = normalize_version(version)
        seen: set[str] = set()
        data = dict(payload)
        while True:
            self.check_required(data, current)
            if current == self._canonical:
                data["version"] = current
                return data
            spec = self._versions[current]
            if spec.next_version is None or spec.next_version in seen:
                raise VersionError(version)
            seen.add(current)
            assert spec.upgrade is not None
            data = spec.upgrade(data)
            if spec.next_version not in self._versions:
                raise VersionError(version)
            current = spec.next_version


# ---------------------------------------------------------------------------
# Built-in steps
# ---------------------------------------------------------------------------


def _utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def upgrade_v1_to_v2(payload: Payload) -> Payload:
    """Legacy ``{role, content: str}`` messages to the structured v2 shape.

    v1 clients sometimes embedded metadata as ``[METADATA:{...}]`` inside
    the text; it is lifted out into ``metadata``.
    """
    text = payload["content"]
    if not isinstance(text, str):
        raise SchemaError("v1 content must be a string", field="content")

    metadata: dict[str, Any] = {}
    match = _METADATA_RE.search(text)
    if match:
        try:
            embedded = json.loads(match.group(1))
        except ValueError:
            embedded = None
        if isinstance(embedded, dict):
            metadata.update(embedded)
            text = text.replace(match.group(0), "").strip()

    metadata["migrated_from"] = "1.0.0"
    if payload.get("agentName"):
        metadata["original_agent_name"] = payload["agentName"]

    timestamp = payload.get("timestamp") or _utc_iso()
    return {
        "id": payload.get("id") or new_message_id(),
        "version": "2.0.0",
        "role": payload["role"],
        "content": {"type": "text", "text": text},
        "timestamp": timestamp,
        "metadata": metadata,
        "context": {
            "conversation_id": payload.get("conversation_id") or new_conversation_id(),
            "session_id": payload.get("session_id"),
            "agent_id": payload.get("agent_id"),
        },
    }


_V2_METADATA_MAP = {
    "model": "model",
    "processing_time_ms": "latency_ms",
    "latency_ms": "latency_ms",
    "confidence_score": "confidence",
    "confidence": "confidence",
}


def _upgrade_v2_content(content: Any) -> Any:
    if not isinstance(content, dict):
        return content
    kind = content.get("type")
    if kind == "text":
        return {"type": "text", "text": content.get("text")}
    if kind == "structured":
        return {
            "type": "structured",
            "data": content.get("data"),
            "schema_name": content.get("schema"),
        }
    if kind == "multimodal":
        return {"type": "multipart", "parts": content.get("parts")}
    if kind == "tool_result":
        return {
            "type": "structured",
            "data": {
                "tool_name": content.get("tool_name"),
                "result": content.get("result"),
            },
            "schema_name": "tool_result",
        }
    raise SchemaError(f"Unsupported v2 content type {kind!r}", field="content.type")


def _upgrade_v2_metadata(raw: Any) -> dict[str, Any]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise SchemaError("metadata must be an object", field="metadata")

    metadata: dict[str, Any] = {"extra": {}}
    for key, value in raw.items():
        if key in _V2_METADATA_MAP:
            metadata[_V2_METADATA_MAP[key]] = value
        elif key == "tokens":
            if isinstance(value, dict):
                metadata["token_counts"] = value
            else:
                metadata["token_counts"] = {"total": value}
        else:
            metadata["extra"][key] = value
    return metadata


def upgrade_v2_to_v3(payload: Payload) -> Payload:
    """v2 to canonical v3: typed union, ``created_at``, structured metadata."""
    context = payload.get("context") or {}
    if not isinstance(context, dict):
        raise SchemaError("context must be an object", field="context")

    upgraded: Payload = {
        "id": payload["id"],
        "version": "3.0.0",
        "role": payload["role"],
        "content": _upgrade_v2_content(payload["content"]),
        "created_at": payload.get("created_at") or payload.get("timestamp") or _utc_iso(),
        "metadata": _upgrade_v2_metadata(payload.get("metadata")),
        "context": {
            "conversation_id": context.get("conversation_id"),
            "session_id": context.get("session_id"),
            "parent_message_id": context.get("parent_message_id"),
            "agent_id": context.get("agent_id"),
        },
    }
    for key in ("tool_calls", "memory_refs", "state_snapshot_ref"):
        if payload.get(key) is not None:
            upgraded[key] = payload[key]
    return upgraded


def default_registry() -> MigrationRegistry:
    """Registry with the built-in ``1.0.0 -> 2.0.0 -> 3.0.0`` chain."""
    registry = MigrationRegistry()
    registry.register(
        "1.0.0",
        required=("role", "content"),
        upgrade=upgrade_v1_to_v2,
        next_version="2.0.0",
    )
    registry.register(
        "2.0.0",
        required=("id", "role", "content", "context.conversation_id"),
        upgrade=upgrade_v2_to_v3,
        next_version="3.0.0",
    )
    registry.register(
        CANONICAL_VERSION,
        required=("id", "role", "content", "created_at", "context.conversation_id"),
    )
    return registry
