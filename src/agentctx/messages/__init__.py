"""Message domain — canonical schema, version migrations and processing."""

from agentctx.messages.migrations import default_registry
from agentctx.messages.migrations import MigrationRegistry
from agentctx.messages.migrations import normalize_version
from agentctx.messages.processor import MessageProcessor
from agentctx.messages.processor import serialize
from agentctx.messages.schemas import CANONICAL_VERSION
from agentctx.messages.schemas import ContentPart
from agentctx.messages.schemas import create_message
from agentctx.messages.schemas import Message
from agentctx.messages.schemas import MessageContext
from agentctx.messages.schemas import MessageMetadata
from agentctx.messages.schemas import MultipartContent
from agentctx.messages.schemas import Role
from agentctx.messages.schemas import StructuredContent
from agentctx.messages.schemas import TextContent
from agentctx.messages.schemas import TokenCounts
from agentctx.messages.schemas import ToolCall

__all__ = [
    "CANONICAL_VERSION",
    "ContentPart",
    "Message",
    "MessageContext",
    "MessageMetadata",
    "MessageProcessor",
    "MigrationRegistry",
    "MultipartContent",
    "Role",
    "StructuredContent",
    "TextContent",
    "TokenCounts",
    "ToolCall",
    "create_message",
    "default_registry",
    "normalize_version",
    "serialize",
]
