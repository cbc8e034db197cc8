"""Error taxonomy shared by all subsystems.

Parsing errors are surfaced immediately and never retried.  Read-side
store failures are absorbed by retrieval and reported as partial results;
write-side failures and budget overruns always propagate.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from agentctx.memory.schemas import RankedMemories


class AgentCtxError(Exception):
    """Base class for every error raised by agentctx."""


# ---------------------------------------------------------------------------
# Message processor
# ---------------------------------------------------------------------------


class MessageError(AgentCtxError):
    """Raised when an incoming message cannot be turned into a ``Message``."""


class SchemaError(MessageError):
    """Required fields are missing or have the wrong type."""

    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class VersionError(MessageError):
    """The declared schema version has no migration path to canonical."""

    def __init__(self, version: str) -> None:
        super().__init__(f"No migration path from schema version {version!r}")
        self.version = version


# ---------------------------------------------------------------------------
# Memory manager
# ---------------------------------------------------------------------------


class RetrievalError(AgentCtxError):
    """Base class for read-side memory failures."""


class StoreUnavailableError(RetrievalError):
    """A backing store could not serve a read."""


class PartialRetrievalError(RetrievalError):
    """One or more memory sources failed; ``result`` holds what succeeded."""

    def __init__(self, result: RankedMemories) -> None:
        sources = ", ".join(f.source for f in result.failures) or "unknown"
        super().__init__(f"Partial retrieval, failed sources: {sources}")
        self.result = result


class StoreWriteError(AgentCtxError):
    """A memory could not be persisted.  Always fatal for the call."""


# ---------------------------------------------------------------------------
# State manager
# ---------------------------------------------------------------------------


class StateError(AgentCtxError):
    """Base class for state manager failures."""


class CheckpointNotFoundError(StateError):
    """The requested checkpoint or history point does not exist."""


# ---------------------------------------------------------------------------
# Context engine
# ---------------------------------------------------------------------------


class ContextError(AgentCtxError):
    """Base class for context assembly failures."""


class BudgetExceededError(ContextError):
    """System instructions alone do not fit in the token budget."""

    def __init__(self, *, required: int, budget: int) -> None:
        super().__init__(
            f"System instructions need {required} tokens but the budget is {budget}"
        )
        self.required = required
        self.budget = budget


# ---------------------------------------------------------------------------
# Completion service
# ---------------------------------------------------------------------------


class CompletionError(AgentCtxError):
    """Raised by completion adapters when a call fails."""
