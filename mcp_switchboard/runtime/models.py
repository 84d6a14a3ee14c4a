"""Connection lifecycle states and status snapshots.

:class:`BackendStatus` doubles as the per-backend payload of
``ProxyManager.status()`` for health and ops tooling.
"""

from datetime import datetime
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, Field


class ConnectionState(str, Enum):
    """Lifecycle states of one backend connection.

    Transitions::

        DISCONNECTED → CONNECTING → CONNECTED ⇄ DEGRADED
             ↑  ↘           │            │          │
             │   FAILED ←───┘            └────┬─────┘
             └────────────────────────────────┘
    """

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DEGRADED = "degraded"
    FAILED = "failed"


# Valid connection state transitions
_CONNECTION_TRANSITIONS: Dict[ConnectionState, frozenset[ConnectionState]] = {
    ConnectionState.DISCONNECTED: frozenset({ConnectionState.CONNECTING, ConnectionState.FAILED}),
    ConnectionState.CONNECTING: frozenset(
        {ConnectionState.CONNECTED, ConnectionState.DISCONNECTED, ConnectionState.FAILED}
    ),
    ConnectionState.CONNECTED: frozenset(
        {ConnectionState.DEGRADED, ConnectionState.DISCONNECTED}
    ),
    ConnectionState.DEGRADED: frozenset(
        {ConnectionState.CONNECTED, ConnectionState.DISCONNECTED}
    ),
    # Only an explicit operator reset leaves FAILED.
    ConnectionState.FAILED: frozenset({ConnectionState.DISCONNECTED}),
}

SERVING_STATES = frozenset({ConnectionState.CONNECTED, ConnectionState.DEGRADED})


def is_valid_transition(current: ConnectionState, target: ConnectionState) -> bool:
    """Check whether a connection state transition is allowed."""
    return target in _CONNECTION_TRANSITIONS.get(current, frozenset())


class ConnectionStats(BaseModel):
    """Counters kept by a backend connection across reconnect cycles."""

    total_connections: int = 0
    successful_connections: int = 0
    failed_connections: int = 0
    last_connection_attempt: Optional[datetime] = None
    last_successful_connection: Optional[datetime] = None
    last_failure: Optional[datetime] = None
    last_failure_reason: Optional[str] = None


class BackendStatus(BaseModel):
    """Point-in-time status of one backend."""

    name: str
    state: ConnectionState
    last_error: Optional[str] = None
    ever_connected: bool = Field(
        default=False,
        description="False while the backend has never completed a handshake.",
    )
    description: Optional[str] = None
    tool_count: int = 0
    resource_count: int = 0
    consecutive_failures: int = 0
    reconnect_attempts: int = 0
    last_probe_at: Optional[datetime] = None
    stats: ConnectionStats = Field(default_factory=ConnectionStats)

    @property
    def is_serving(self) -> bool:
        """True when the backend's capabilities are listed (CONNECTED or DEGRADED)."""
        return self.state in SERVING_STATES
