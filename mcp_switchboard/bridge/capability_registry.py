"""Aggregated, namespaced capability catalog.

The registry never mutates a published snapshot. Every change builds a new
:class:`RegistrySnapshot` and swaps the reference, so readers holding a
snapshot see either the state before a rebuild or the state after it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from mcp import types as mcp_types

from mcp_switchboard.bridge.namespacing import namespace_resource, namespace_tool
from mcp_switchboard.runtime.models import SERVING_STATES

if TYPE_CHECKING:
    from mcp_switchboard.bridge.connection import BackendConnection

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RegistryEntry:
    """One exposed capability and the connection that owns it.

    ``descriptor`` is the backend's descriptor with its name (tools) or URI
    (resources) replaced by ``key``; ``original`` is what the backend uses.
    """

    key: str
    backend: str
    original: str
    connection: "BackendConnection"
    descriptor: Union[mcp_types.Tool, mcp_types.Resource]


_EMPTY: Mapping[str, RegistryEntry] = MappingProxyType({})


@dataclass(frozen=True)
class RegistrySnapshot:
    """Immutable view of the catalog at one point in time."""

    tools: Mapping[str, RegistryEntry] = field(default_factory=lambda: _EMPTY)
    resources: Mapping[str, RegistryEntry] = field(default_factory=lambda: _EMPTY)
    version: int = 0

    def tool_keys(self) -> Tuple[str, ...]:
        return tuple(self.tools)

    def resource_keys(self) -> Tuple[str, ...]:
        return tuple(self.resources)


def _tool_entries(connection: "BackendConnection") -> Dict[str, RegistryEntry]:
    entries: Dict[str, RegistryEntry] = {}
    for tool in connection.tools:
        if not tool.name:
            logger.warning("[%s] Found unnamed tool, skipped: %r", connection.name, tool)
            continue
        key = namespace_tool(connection.name, tool.name)
        if key in entries:
            logger.debug("[%s] Tool '%s' listed twice; keeping the last.", connection.name, tool.name)
        entries[key] = RegistryEntry(
            key=key,
            backend=connection.name,
            original=tool.name,
            connection=connection,
            descriptor=tool.model_copy(update={"name": key}),
        )
    return entries


def _resource_entries(connection: "BackendConnection") -> Dict[str, RegistryEntry]:
    entries: Dict[str, RegistryEntry] = {}
    for resource in connection.resources:
        original = str(resource.uri)
        key = namespace_resource(connection.name, original)
        entries[key] = RegistryEntry(
            key=key,
            backend=connection.name,
            original=original,
            connection=connection,
            # model_copy skips validation, so the key is kept verbatim
            # rather than normalised as a URL.
            descriptor=resource.model_copy(update={"uri": key}),
        )
    return entries


class CapabilityRegistry:
    """Maps namespaced keys to ``(connection, descriptor)`` entries.

    Single writer: only the proxy manager calls :meth:`register`,
    :meth:`unregister` and :meth:`rebuild_all`. Readers call
    :meth:`snapshot` (or the list/lookup helpers built on it).
    """

    def __init__(self) -> None:
        self._snapshot = RegistrySnapshot()

    def snapshot(self) -> RegistrySnapshot:
        return self._snapshot

    def _publish(
        self,
        tools: Dict[str, RegistryEntry],
        resources: Dict[str, RegistryEntry],
    ) -> RegistrySnapshot:
        self._snapshot = RegistrySnapshot(
            tools=MappingProxyType(tools),
            resources=MappingProxyType(resources),
            version=self._snapshot.version + 1,
        )
        return self._snapshot

    # ── Mutation ─────────────────────────────────────────────────────────

    def register(self, connection: "BackendConnection") -> RegistrySnapshot:
        """Replace every entry owned by *connection* with its current lists."""
        current = self._snapshot
        tools = {k: e for k, e in current.tools.items() if e.backend != connection.name}
        resources = {k: e for k, e in current.resources.items() if e.backend != connection.name}
        tools.update(_tool_entries(connection))
        resources.update(_resource_entries(connection))
        logger.info(
            "[%s] Registered %d tools and %d resources.",
            connection.name,
            len(connection.tools),
            len(connection.resources),
        )
        return self._publish(tools, resources)

    def unregister(self, backend: str) -> RegistrySnapshot:
        """Remove every entry owned by *backend*."""
        current = self._snapshot
        tools = {k: e for k, e in current.tools.items() if e.backend != backend}
        resources = {k: e for k, e in current.resources.items() if e.backend != backend}
        removed = (len(current.tools) - len(tools)) + (len(current.resources) - len(resources))
        if removed:
            logger.info("[%s] Removed %d capabilities from registry.", backend, removed)
        return self._publish(tools, resources)

    def rebuild_all(self, connections: Iterable["BackendConnection"]) -> RegistrySnapshot:
        """Rebuild from scratch over serving connections, in the given order."""
        tools: Dict[str, RegistryEntry] = {}
        resources: Dict[str, RegistryEntry] = {}
        serving = 0
        for connection in connections:
            if connection.state not in SERVING_STATES:
                continue
            serving += 1
            tools.update(_tool_entries(connection))
            resources.update(_resource_entries(connection))
        logger.info(
            "Catalog rebuilt from %d serving backend(s): %d tools, %d resources.",
            serving,
            len(tools),
            len(resources),
        )
        return self._publish(tools, resources)

    # ── Reads ────────────────────────────────────────────────────────────

    def list_tools(self) -> List[mcp_types.Tool]:
        return [e.descriptor for e in self._snapshot.tools.values()]  # type: ignore[misc]

    def list_resources(self) -> List[mcp_types.Resource]:
        return [e.descriptor for e in self._snapshot.resources.values()]  # type: ignore[misc]

    def resolve_tool(self, key: str) -> Optional[RegistryEntry]:
        return self._snapshot.tools.get(key)

    def resolve_resource(self, key: str) -> Optional[RegistryEntry]:
        return self._snapshot.resources.get(key)
