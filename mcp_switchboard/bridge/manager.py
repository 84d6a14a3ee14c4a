"""Proxy manager: the single owner of backend connections and the catalog.

Routing resolves a namespaced key against the current registry snapshot,
strips the owning backend's prefix and hands the original name to that
backend's connection. Failures of one backend are contained in that
backend's state and never fail list operations or other backends.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

from mcp import types as mcp_types

from mcp_switchboard.audit import NullRecorder, Recorder, safe_record
from mcp_switchboard.bridge.capability_registry import CapabilityRegistry, RegistrySnapshot
from mcp_switchboard.bridge.connection import BackendConnection
from mcp_switchboard.bridge.events import BackendFailed, CatalogChanged, EventBus, Subscription
from mcp_switchboard.bridge.health import HealthSupervisor
from mcp_switchboard.bridge.namespacing import (
    resource_owner,
    strip_resource,
    strip_tool,
    tool_owner,
)
from mcp_switchboard.bridge.transport import SessionFactory
from mcp_switchboard.config.schema import BackendConfig, ProxySettings, SwitchboardConfig
from mcp_switchboard.constants import EVENT_QUEUE_SIZE
from mcp_switchboard.errors import (
    DuplicateBackendError,
    NotConnectedError,
    ResourceNotFoundError,
    SwitchboardError,
    ToolNotFoundError,
)
from mcp_switchboard.runtime.models import BackendStatus, ConnectionState

logger = logging.getLogger(__name__)


class ProxyManager:
    """Aggregates many stdio MCP backends behind one catalog.

    Parameters
    ----------
    settings:
        Timeouts, health, reconnect and fan-out settings.
    recorder:
        Observability collaborator; receives every structured event.
    session_factory:
        Opens a backend session; defaults to the stdio transport.
    event_bus:
        Where :class:`CatalogChanged` / :class:`BackendFailed` are published.
    sleep, rng:
        Passed to the health supervisor's reconnect scheduling.
    """

    def __init__(
        self,
        settings: Optional[ProxySettings] = None,
        *,
        recorder: Optional[Recorder] = None,
        session_factory: Optional[SessionFactory] = None,
        event_bus: Optional[EventBus] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.settings = settings or ProxySettings()
        self._recorder: Recorder = recorder or NullRecorder()
        self._session_factory = session_factory
        self.events = event_bus or EventBus()

        # Insertion order is configuration order.
        self._connections: Dict[str, BackendConnection] = {}
        self._registry = CapabilityRegistry()
        self._supervisor = HealthSupervisor(
            self,
            health=self.settings.health,
            reconnect=self.settings.reconnect,
            sleep=sleep,
            rng=rng,
        )

    @classmethod
    def from_config(cls, config: SwitchboardConfig, **kwargs: Any) -> "ProxyManager":
        """Build a manager with every configured backend registered, none connected."""
        manager = cls(config.settings, **kwargs)
        for backend in config.backends:
            manager.register_backend(backend)
        return manager

    # ── Collaborator hooks ───────────────────────────────────────────────

    @property
    def supervisor(self) -> HealthSupervisor:
        return self._supervisor

    @property
    def registry(self) -> CapabilityRegistry:
        return self._registry

    def record(self, event: str, **fields: Any) -> None:
        safe_record(self._recorder, event, **fields)

    def connections(self) -> List[BackendConnection]:
        """All registered connections in configuration order."""
        return list(self._connections.values())

    def get_connection(self, name: str) -> Optional[BackendConnection]:
        return self._connections.get(name)

    def owns(self, conn: BackendConnection) -> bool:
        return self._connections.get(conn.name) is conn

    def subscribe(self, maxsize: int = EVENT_QUEUE_SIZE) -> Subscription:
        return self.events.subscribe(maxsize)

    # ── Catalog ──────────────────────────────────────────────────────────

    def _publish_catalog(self, snapshot: RegistrySnapshot, reason: str) -> None:
        tools, resources = snapshot.tool_keys(), snapshot.resource_keys()
        self.events.publish(CatalogChanged(tools=tools, resources=resources))
        self.record(
            "catalog.rebuilt",
            reason=reason,
            version=snapshot.version,
            tools=len(tools),
            resources=len(resources),
        )

    def rebuild_catalog(self, reason: str = "") -> RegistrySnapshot:
        """Rebuild the registry from every serving backend and announce it."""
        snapshot = self._registry.rebuild_all(self._connections.values())
        self._publish_catalog(snapshot, reason)
        return snapshot

    def list_tools(self) -> List[mcp_types.Tool]:
        return self._registry.list_tools()

    def list_resources(self) -> List[mcp_types.Resource]:
        return self._registry.list_resources()

    # ── Backend lifecycle ────────────────────────────────────────────────

    def _create_connection(self, config: BackendConfig) -> BackendConnection:
        return BackendConnection(
            config,
            timeouts=self.settings.timeouts,
            session_factory=self._session_factory,
        )

    def register_backend(self, config: BackendConfig) -> BackendConnection:
        """Create the connection for *config* without connecting it."""
        if config.name in self._connections:
            raise DuplicateBackendError(config.name)
        conn = self._create_connection(config)
        self._connections[config.name] = conn
        logger.info("[%s] Backend registered.", config.name)
        self.record("backend.added", backend=config.name, command=config.command)
        return conn

    async def add_backend(self, config: BackendConfig) -> BackendConnection:
        """Register and connect a backend, then publish the new catalog.

        An existing name raises :class:`DuplicateBackendError`, unless that
        backend is FAILED: re-adding it resets its retry budget and
        reconnects it. A connect failure is raised to the caller while the
        backend stays registered for the supervisor to retry.
        """
        existing = self._connections.get(config.name)
        if existing is None:
            conn = self.register_backend(config)
        elif existing.state == ConnectionState.FAILED:
            logger.info("[%s] Re-adding failed backend; resetting its retry budget.", config.name)
            self._supervisor.forget(config.name)
            if existing.config == config:
                existing.reset()
                conn = existing
            else:
                conn = self._create_connection(config)
                self._connections[config.name] = conn
            self.record("backend.added", backend=config.name, command=config.command, reset=True)
        else:
            raise DuplicateBackendError(config.name)

        try:
            await conn.connect()
        except SwitchboardError as exc:
            self.record("backend.connect_failed", backend=conn.name, error=str(exc))
            raise
        self.record("backend.connected", backend=conn.name, tools=len(conn.tools))
        self.rebuild_catalog(reason=f"{conn.name} added")
        return conn

    async def remove_backend(self, name: str) -> None:
        """Disconnect and unregister *name*. No-op when absent."""
        conn = self._connections.pop(name, None)
        if conn is None:
            logger.debug("[%s] remove_backend: not registered.", name)
            return
        self._supervisor.forget(name)
        self._publish_catalog(self._registry.unregister(name), reason=f"{name} removed")
        await self._bounded_disconnect(conn)
        logger.info("[%s] Backend removed.", name)
        self.record("backend.removed", backend=name)

    async def disconnect_unhealthy(self, conn: BackendConnection, error: str) -> None:
        """Take a backend out of the catalog after it crossed the unhealthy threshold."""
        self._publish_catalog(
            self._registry.unregister(conn.name), reason=f"{conn.name} unhealthy"
        )
        await self._bounded_disconnect(conn)
        conn.last_error = error
        logger.warning("[%s] Marked unhealthy and disconnected: %s", conn.name, error)
        self.record("backend.disconnected", backend=conn.name, reason="unhealthy", error=error)

    def backend_reconnected(self, conn: BackendConnection) -> None:
        logger.info("[%s] Reconnected.", conn.name)
        self.record("backend.connected", backend=conn.name, tools=len(conn.tools), reconnect=True)
        self.rebuild_catalog(reason=f"{conn.name} reconnected")

    def backend_failed(self, conn: BackendConnection, error: str) -> None:
        self.events.publish(BackendFailed(name=conn.name, error=error))
        self.record("backend.failed", backend=conn.name, error=error)

    async def _bounded_disconnect(self, conn: BackendConnection) -> None:
        timeout = conn.timeouts.shutdown
        try:
            await asyncio.wait_for(conn.disconnect(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.error(
                "[%s] Disconnect did not finish within %.1fs; aborting.", conn.name, timeout
            )
            conn.abort()

    # ── Fan-out ──────────────────────────────────────────────────────────

    async def connect_all(self) -> Dict[str, BaseException]:
        """Connect every DISCONNECTED backend with bounded concurrency.

        Returns the failures keyed by backend name; other backends are
        unaffected. One catalog rebuild follows.
        """
        pending = [c for c in self._connections.values() if c.state == ConnectionState.DISCONNECTED]
        logger.info("Starting all backend server connections (%s total)...", len(pending))
        semaphore = asyncio.Semaphore(self.settings.connect_concurrency)

        async def _connect(conn: BackendConnection) -> None:
            async with semaphore:
                await conn.connect()

        results = await asyncio.gather(*(_connect(c) for c in pending), return_exceptions=True)
        failures: Dict[str, BaseException] = {}
        for conn, result in zip(pending, results):
            if isinstance(result, BaseException):
                failures[conn.name] = result
                logger.error("[%s] Startup connect failed: %s", conn.name, result)
                self.record("backend.connect_failed", backend=conn.name, error=str(result))
            else:
                self.record("backend.connected", backend=conn.name, tools=len(conn.tools))

        self.rebuild_catalog(reason="connect_all")
        active = len(self.connected_backends())
        logger.info(
            "All backend startup attempts completed. Active servers: %s/%s",
            active,
            len(self._connections),
        )
        if failures:
            logger.warning("Some backend servers failed to connect: %s", ", ".join(failures))
        return failures

    async def disconnect_all(self) -> None:
        """Stop supervision and disconnect every backend, each bounded by its shutdown timeout."""
        await self._supervisor.stop()
        conns = list(self._connections.values())
        logger.info("Stopping all backend connections (%d)...", len(conns))
        results = await asyncio.gather(
            *(self._bounded_disconnect(c) for c in conns), return_exceptions=True
        )
        for conn, result in zip(conns, results):
            if isinstance(result, BaseException):
                logger.error("[%s] Error during shutdown: %s", conn.name, result)
            self.record("backend.disconnected", backend=conn.name, reason="shutdown")
        self.rebuild_catalog(reason="disconnect_all")

    # ── Routing ──────────────────────────────────────────────────────────

    def _not_serving(self, owner: Optional[str]) -> Optional[NotConnectedError]:
        conn = self._connections.get(owner) if owner else None
        if conn is not None and not conn.is_serving:
            return NotConnectedError(conn.name, conn.state.value)
        return None

    async def call_tool(
        self,
        name: str,
        arguments: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> mcp_types.CallToolResult:
        """Route a namespaced tool call and return the backend's result verbatim."""
        entry = self._registry.resolve_tool(name)
        if entry is None:
            err = self._not_serving(tool_owner(name))
            if err is not None:
                raise err
            raise ToolNotFoundError(name)

        original = strip_tool(entry.backend, name)
        start = time.monotonic()
        try:
            result = await entry.connection.call(original, arguments, timeout)
        except SwitchboardError as exc:
            self.record(
                "tool.called",
                backend=entry.backend,
                tool=name,
                ok=False,
                error=str(exc),
                duration_ms=round((time.monotonic() - start) * 1000.0, 2),
            )
            raise
        self.record(
            "tool.called",
            backend=entry.backend,
            tool=name,
            ok=not getattr(result, "isError", False),
            duration_ms=round((time.monotonic() - start) * 1000.0, 2),
        )
        return result

    async def read_resource(
        self, uri: str, timeout: Optional[float] = None
    ) -> mcp_types.ReadResourceResult:
        """Route a namespaced resource read and return the backend's result verbatim."""
        uri = str(uri)
        entry = self._registry.resolve_resource(uri)
        if entry is None:
            err = self._not_serving(resource_owner(uri))
            if err is not None:
                raise err
            raise ResourceNotFoundError(uri)

        original = strip_resource(entry.backend, uri)
        start = time.monotonic()
        try:
            result = await entry.connection.read(original, timeout)
        except SwitchboardError as exc:
            self.record(
                "resource.read",
                backend=entry.backend,
                uri=uri,
                ok=False,
                error=str(exc),
                duration_ms=round((time.monotonic() - start) * 1000.0, 2),
            )
            raise
        self.record(
            "resource.read",
            backend=entry.backend,
            uri=uri,
            ok=True,
            duration_ms=round((time.monotonic() - start) * 1000.0, 2),
        )
        return result

    # ── Status ───────────────────────────────────────────────────────────

    def status(self) -> Dict[str, BackendStatus]:
        """Per-backend status in configuration order."""
        return {name: conn.status() for name, conn in self._connections.items()}

    def get_backend_status(self, name: str) -> Optional[BackendStatus]:
        conn = self._connections.get(name)
        return conn.status() if conn is not None else None

    def connected_backends(self) -> List[str]:
        return [name for name, conn in self._connections.items() if conn.is_serving]

    # ── Lifecycle ────────────────────────────────────────────────────────

    def start(self) -> None:
        """Start health supervision when enabled."""
        if self.settings.health.enabled:
            self._supervisor.start()
        else:
            logger.info("Health supervision disabled by configuration.")

    async def stop(self) -> None:
        await self._supervisor.stop()

    async def __aenter__(self) -> "ProxyManager":
        await self.connect_all()
        self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.disconnect_all()
