"""MCP server giving a running agent its three ticket tools.

Launched per session over stdio from the session's mcp-config.json. The
ticket and persona come from the environment, so the agent can only act on
the ticket it was dispatched for.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from mcp.server.fastmcp import Context, FastMCP

from ticket_dispatcher.core.capabilities import SideChannel


@dataclass
class AppContext:
    channel: SideChannel


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    yield AppContext(channel=SideChannel.from_env())


mcp = FastMCP("ticket", lifespan=app_lifespan)


def _channel(ctx: Context) -> SideChannel:
    return ctx.request_context.lifespan_context.channel


@mcp.tool()
def report(ctx: Context, message: str) -> dict:
    """Post a short progress update to the ticket's comment thread."""
    return _channel(ctx).report(message)


@mcp.tool()
def save_document(ctx: Context, doc_type: str, file_path: str) -> dict:
    """Save a markdown file as the next version of the ticket's document.

    doc_type is "research" or "implementation_plan".
    """
    return _channel(ctx).save_document(doc_type, file_path)


@mcp.tool()
def check_criteria(ctx: Context, index: int) -> dict:
    """Tick off the acceptance criterion at this 0-based index."""
    return _channel(ctx).check_criteria(index)
