"""Backend connections, capability aggregation and call routing."""

from mcp_switchboard.bridge.capability_registry import (
    CapabilityRegistry,
    RegistryEntry,
    RegistrySnapshot,
)
from mcp_switchboard.bridge.connection import BackendConnection
from mcp_switchboard.bridge.events import BackendFailed, CatalogChanged, EventBus, Subscription
from mcp_switchboard.bridge.manager import ProxyManager

__all__ = [
    "BackendConnection",
    "BackendFailed",
    "CapabilityRegistry",
    "CatalogChanged",
    "EventBus",
    "ProxyManager",
    "RegistryEntry",
    "RegistrySnapshot",
    "Subscription",
]
