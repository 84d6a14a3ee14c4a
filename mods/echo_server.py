"""Minimal stdio MCP backend used by the integration tests.

Run as ``python mods/echo_server.py``. Set ``ECHO_SERVER_NAME`` to change
the advertised server name (handy when launching two copies).
"""

import logging
import os
import sys

from mcp.server.fastmcp import FastMCP

# stdout carries the protocol; diagnostics go to stderr.
logging.basicConfig(
    level=logging.INFO,
    stream=sys.stderr,
    format="[EchoServer] %(asctime)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

mcp = FastMCP(os.environ.get("ECHO_SERVER_NAME", "Echo"))


@mcp.tool()
async def echo(msg: str) -> str:
    """Return *msg* unchanged."""
    logger.info("Tool 'echo' called with msg: '%s'", msg)
    return msg


@mcp.tool()
async def add(a: int, b: int) -> int:
    """Return the sum of two integers."""
    return a + b


@mcp.tool()
async def pid() -> int:
    """Process id of this server."""
    return os.getpid()


@mcp.resource("echo://local/greeting")
def greeting() -> str:
    """A fixed greeting."""
    return "Hello from the echo server!"


if __name__ == "__main__":
    logger.info("Starting echo MCP server with stdio transport...")
    mcp.run(transport="stdio")
