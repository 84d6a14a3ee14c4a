"""Health supervision package for backend MCP servers.

Public API
----------
- :class:`HealthSupervisor`: Background prober and reconnect scheduler
- :class:`ReconnectBackoff`: Per-backend exponential backoff schedule
"""

from mcp_switchboard.bridge.health.backoff import ReconnectBackoff
from mcp_switchboard.bridge.health.supervisor import HealthSupervisor

__all__ = [
    "HealthSupervisor",
    "ReconnectBackoff",
]
