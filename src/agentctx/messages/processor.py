"""Message processor: raw payload in, canonical ``Message`` out.

Pure transformation: nothing is persisted here.  Malformed input is
reported immediately and is never retried.
"""

from __future__ import annotations

import json
import logging
from time import perf_counter
from typing import Any

from pydantic import ValidationError

from agentctx.config import MessageConfig
from agentctx.errors import MessageError
from agentctx.errors import SchemaError
from agentctx.messages.migrations import default_registry
from agentctx.messages.migrations import MigrationRegistry
from agentctx.messages.migrations import normalize_version
from agentctx.messages.schemas import Message
from agentctx.observability import record_latency

logger = logging.getLogger(__name__)


def _validation_message(exc: ValidationError) -> tuple[str, str | None]:
    errors = exc.errors()
    if not errors:
        return "Invalid message", None
    err = errors[0]
    loc = ".".join(str(part) for part in err.get("loc", ()))
    return f"{loc or 'message'}: {err.get('msg', 'invalid value')}", loc or None


def serialize(message: Message) -> dict[str, Any]:
    """Canonical JSON-compatible representation of *message*."""
    return message.model_dump(mode="json")


class MessageProcessor:
    """Parses, migrates and validates structured chat messages."""

    def __init__(
        self,
        registry: MigrationRegistry | None = None,
        config: MessageConfig | None = None,
    ) -> None:
        self._registry = registry or default_registry()
        self._config = config or MessageConfig()

    @property
    def registry(self) -> MigrationRegistry:
        return self._registry

    def process(self, raw: dict | str | bytes, version: str | None = None) -> Message:
        """Turn *raw* into a canonical ``Message``.

        The declared version comes from *version*, else the payload's
        ``version`` key, else the configured legacy default.

        Raises:
            SchemaError: required fields missing or mistyped.
            VersionError: no migration path from the declared version.
        """
        start = perf_counter()
        ok = False
        try:
            payload = self._decode(raw)
            declared = normalize_version(
                version or payload.get("version") or self._config.default_version
            )
            migrated = self._registry.migrate(payload, declared)
            message = self._validate(migrated)
            ok = True
            return message
        except MessageError as exc:
            logger.info("Rejected message: %s", exc)
            raise
        finally:
            record_latency(
                operation="messages.process",
                duration_ms=(perf_counter() - start) * 1000,
                ok=ok,
            )

    def _decode(self, raw: dict | str | bytes) -> dict[str, Any]:
        if isinstance(raw, bytes):
            try:
                raw = raw.decode("utf-8")
            except UnicodeDecodeError as exc:
                raise SchemaError(f"Message payload is not valid UTF-8: {exc}") from exc
        if isinstance(raw, str):
            if len(raw) > self._config.max_content_chars:
                raise SchemaError("Message payload exceeds maximum size")
            try:
                raw = json.loads(raw)
            except ValueError as exc:
                raise SchemaError(f"Message payload is not valid JSON: {exc}") from exc
        if not isinstance(raw, dict):
            raise SchemaError("Message payload must be a JSON object")
        return raw

    def _validate(self, payload: dict[str, Any]) -> Message:
        try:
            return Message.model_validate(payload)
        except ValidationError as exc:
            text, field = _validation_message(exc)
            raise SchemaError(text, field=field) from exc
