"""JSONL audit trail for memory, state and context changes.

One event per line, appended in emission order.  File I/O runs in a worker
thread; a single lock orders appends against reads so a reader never sees
half a line from this process.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from agentctx.audit.schemas import AuditEvent
from agentctx.audit.schemas import AuditEventType
from agentctx.config import AuditConfig

logger = logging.getLogger(__name__)


def _append_lines(path: Path, lines: list[str]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as fh:
        fh.writelines(lines)


def _read_lines(path: Path) -> list[str]:
    if not path.exists():
        return []
    with path.open(encoding="utf-8") as fh:
        return fh.readlines()


class AuditLogger:
    """Append-only audit trail shared by the managers and the context engine."""

    def __init__(self, config: AuditConfig | None = None) -> None:
        self.config = config or AuditConfig()
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return Path(self.config.file_path)

    async def log(self, *events: AuditEvent) -> None:
        """Append *events* in order.  A disabled logger drops them."""
        if not self.config.enabled or not events:
            return
        lines = [event.model_dump_json() + "\n" for event in events]
        async with self._lock:
            await asyncio.to_thread(_append_lines, self.path, lines)

    async def emit(
        self,
        event_type: AuditEventType,
        *,
        agent_id: str | None = None,
        subject_id: str | None = None,
        **payload: Any,
    ) -> AuditEvent:
        """Build, log and return one event; extra keywords become its payload."""
        event = AuditEvent(
            event_type=event_type,
            agent_id=agent_id,
            subject_id=subject_id,
            payload=payload,
        )
        await self.log(event)
        return event

    async def read_events(
        self,
        *,
        event_type: AuditEventType | None = None,
        agent_id: str | None = None,
        subject_id: str | None = None,
        since: float | None = None,
        limit: int | None = None,
    ) -> list[AuditEvent]:
        """Events matching every given filter, oldest first.

        With *limit*, only the most recent *limit* matches are returned.
        Lines that do not parse are skipped with a warning.
        """
        async with self._lock:
            lines = await asyncio.to_thread(_read_lines, self.path)

        matched: list[AuditEvent] = []
        for number, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            try:
                event = AuditEvent.model_validate_json(line)
            except ValidationError:
                logger.warning("Skipping malformed audit line %d in %s", number, self.path)
                continue
            if event_type is not None and event.event_type is not event_type:
                continue
            if agent_id is not None and event.agent_id != agent_id:
                continue
            if subject_id is not None and event.subject_id != subject_id:
                continue
            if since is not None and event.timestamp < since:
                continue
            matched.append(event)

        if limit is not None:
            return matched[-limit:] if limit > 0 else []
        return matched
