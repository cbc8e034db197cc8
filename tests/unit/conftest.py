"""Unit test fixtures — in-process FastMCP client."""

from __future__ import annotations

import pytest
from fastmcp import Client

from agentctx.config import AuditConfig


@pytest.fixture()
async def mcp_client(tmp_path):
    """Yield a FastMCP Client wired to an in-memory AgentCtx server."""
    from agentctx.server import configure
    from agentctx.server import mcp
    from agentctx.server import shutdown

    await configure(audit_config=AuditConfig(file_path=str(tmp_path / "audit.jsonl")))

    async with Client(mcp) as client:
        yield client

    await shutdown()
