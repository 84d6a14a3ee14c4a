"""Stdio transport for backend MCP servers.

Builds the child process launch parameters from a :class:`BackendConfig`
and opens an initialized :class:`mcp.ClientSession` over the child's
stdin/stdout.
"""

import asyncio
import logging
import os
import sys
from contextlib import asynccontextmanager
from typing import Any, AsyncContextManager, AsyncIterator, Callable, Dict, List, Mapping, Optional

from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client

from mcp_switchboard.config.schema import BackendConfig
from mcp_switchboard.constants import MCP_INIT_TIMEOUT

logger = logging.getLogger(__name__)

# Relative script arguments with these suffixes are made absolute.
SCRIPT_SUFFIXES = (".js", ".mjs", ".cjs", ".py")

# (config, init_timeout) -> async context manager yielding an initialized session
SessionFactory = Callable[[BackendConfig, float], AsyncContextManager[Any]]


def build_child_env(
    overrides: Mapping[str, Optional[str]],
    base: Optional[Mapping[str, str]] = None,
) -> Dict[str, str]:
    """Current environment overlaid with *overrides*; ``None`` values are dropped."""
    merged: Dict[str, Optional[str]] = dict(os.environ if base is None else base)
    merged.update(overrides)
    return {key: value for key, value in merged.items() if value is not None}


def resolve_command(command: str) -> str:
    """Map ``python`` onto the running interpreter."""
    if command.lower() == "python":
        return sys.executable or "python"
    return command


def resolve_args(svr_name: str, args: List[str], cwd: Optional[str] = None) -> List[str]:
    """Turn relative script paths into absolute ones."""
    base_dir = cwd or os.getcwd()
    resolved: List[str] = []
    for arg in args:
        if arg.endswith(SCRIPT_SUFFIXES) and not os.path.isabs(arg) and not arg.startswith("-"):
            abs_arg = os.path.abspath(os.path.join(base_dir, arg))
            logger.debug("[%s] Resolved script arg: %s -> %s", svr_name, arg, abs_arg)
            resolved.append(abs_arg)
        else:
            resolved.append(arg)
    return resolved


def build_server_params(config: BackendConfig) -> StdioServerParameters:
    """Launch parameters for *config*'s child process."""
    return StdioServerParameters(
        command=resolve_command(config.command),
        args=resolve_args(config.name, config.args, config.cwd),
        env=build_child_env(config.env),
        cwd=config.cwd,
    )


@asynccontextmanager
async def open_stdio_session(
    config: BackendConfig, init_timeout: float = MCP_INIT_TIMEOUT
) -> AsyncIterator[ClientSession]:
    """Spawn the backend process and yield an initialized session.

    Leaving the context closes the session and terminates the process.
    """
    params = build_server_params(config)
    logger.info(
        "[%s] Starting local process: '%s' args: %s",
        config.name,
        params.command,
        params.args,
    )
    async with stdio_client(params) as (read_stream, write_stream):
        logger.debug("[%s] (stdio) transport streams established.", config.name)
        async with ClientSession(read_stream, write_stream) as session:
            logger.info(
                "[%s] Initializing MCP connection (timeout: %ss)...",
                config.name,
                init_timeout,
            )
            await asyncio.wait_for(session.initialize(), timeout=init_timeout)
            yield session
    logger.info("[%s] Local process and session closed.", config.name)
