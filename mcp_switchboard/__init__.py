"""
MCP Switchboard - one endpoint in front of many MCP backend servers.

MCP Switchboard launches stdio backend servers, namespaces their tools and
resources, and routes calls to the owning backend while supervising the
health of every connection.
"""

from mcp_switchboard.constants import SERVER_NAME, SERVER_VERSION

__version__ = SERVER_VERSION
__app_name__ = SERVER_NAME

__all__ = [
    "SERVER_NAME",
    "SERVER_VERSION",
    "__version__",
    "__app_name__",
]
