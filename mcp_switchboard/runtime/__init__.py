"""Runtime state models for MCP Switchboard."""

from mcp_switchboard.runtime.models import (
    SERVING_STATES,
    BackendStatus,
    ConnectionState,
    ConnectionStats,
    is_valid_transition,
)

__all__ = [
    "SERVING_STATES",
    "BackendStatus",
    "ConnectionState",
    "ConnectionStats",
    "is_valid_transition",
]
