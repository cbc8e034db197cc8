"""Audit subsystem — async JSONL event logging."""

from agentctx.audit.schemas import AuditEvent
from agentctx.audit.schemas import AuditEventType
from agentctx.audit.store import AuditLogger

__all__ = [
    "AuditEvent",
    "AuditEventType",
    "AuditLogger",
]
