"""
mcp_server/server.py -- MCP server exposing VulnTrack lifecycle tools over stdio.

Run with:  python -m mcp_server.server
           vulntrack-mcp            (console script from pyproject.toml)

Configuration comes from the same Settings as the API: API_BASE_URL points at
a running VulnTrack API, API_KEY (optional) is sent as X-API-Key.

Logs go to stderr. stdout carries the MCP protocol stream and must stay clean.
"""

import asyncio
import logging
import sys
from typing import Any

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

from core.config import get_settings
from mcp_server.client import ApiClient
from mcp_server.tools import TOOLS, call_tool

logger = logging.getLogger("vulntrack.mcp")

SERVER_NAME = "vulntrack"


def create_server(client: ApiClient) -> Server:
    """Build the Server and register the list/call handlers against client."""
    server = Server(SERVER_NAME)

    @server.list_tools()
    async def list_tools() -> list[Tool]:
        return TOOLS

    @server.call_tool()
    async def handle_call_tool(name: str, arguments: dict[str, Any]) -> list[TextContent]:
        text = await call_tool(client, name, arguments)
        return [TextContent(type="text", text=text)]

    return server


async def run_server() -> None:
    settings = get_settings()
    client = ApiClient(settings)
    server = create_server(client)
    logger.info("VulnTrack MCP server starting (api=%s)", settings.api_base_url)
    try:
        async with stdio_server() as (read_stream, write_stream):
            await server.run(read_stream, write_stream, server.create_initialization_options())
    finally:
        await client.close()
        logger.info("VulnTrack MCP server stopped")


def main() -> None:
    """Entry point for the MCP server."""
    logging.basicConfig(
        level=logging.DEBUG if get_settings().debug else logging.INFO,
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
    )
    asyncio.run(run_server())


if __name__ == "__main__":
    main()
