"""Connection to a single backend MCP server.

Each :class:`BackendConnection` owns one child process and one protocol
session. The session lives inside a dedicated runner task so that the
transport's context managers are entered and exited by the same task,
whichever task asked for the connect or the disconnect.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Tuple

import anyio
from mcp import types as mcp_types
from mcp.shared.exceptions import McpError
from pydantic import AnyUrl

from mcp_switchboard.bridge.transport import SessionFactory, open_stdio_session
from mcp_switchboard.config.schema import BackendConfig, TimeoutSettings
from mcp_switchboard.errors import (
    BackendError,
    ConnectionFailedError,
    NotConnectedError,
    OperationTimeoutError,
    SwitchboardError,
)
from mcp_switchboard.runtime.models import (
    SERVING_STATES,
    BackendStatus,
    ConnectionState,
    ConnectionStats,
    is_valid_transition,
)

logger = logging.getLogger(__name__)

# Raised by the session streams once the child process or its pipes are gone.
_TRANSPORT_CLOSED = (anyio.ClosedResourceError, anyio.BrokenResourceError, anyio.EndOfStream)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _describe(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


def _as_backend_error(svr_name: str, exc: Exception) -> SwitchboardError:
    """Map a session-level exception onto the switchboard error kinds."""
    if isinstance(exc, SwitchboardError):
        return exc
    if isinstance(exc, McpError):
        return BackendError(exc.error.message, svr_name, exc)
    return BackendError(_describe(exc), svr_name, exc)


def _is_transport_closed(exc: BaseException) -> bool:
    if isinstance(exc, _TRANSPORT_CLOSED):
        return True
    return isinstance(exc, McpError) and exc.error.code == mcp_types.CONNECTION_CLOSED


class BackendConnection:
    """One backend: process, session, state, and cached raw capabilities.

    Parameters
    ----------
    config:
        Immutable launch configuration for the backend.
    timeouts:
        Global timeout settings; per-backend overrides in ``config`` win.
    session_factory:
        ``(config, init_timeout) -> async context manager`` yielding an
        initialized session. Defaults to :func:`open_stdio_session`.
    """

    def __init__(
        self,
        config: BackendConfig,
        *,
        timeouts: Optional[TimeoutSettings] = None,
        session_factory: Optional[SessionFactory] = None,
    ) -> None:
        self.config = config
        self.name = config.name
        self.timeouts = config.timeouts.apply(timeouts or TimeoutSettings())
        self._session_factory: SessionFactory = session_factory or open_stdio_session

        self._state = ConnectionState.DISCONNECTED
        self.last_error: Optional[str] = None
        self.ever_connected = False
        self.consecutive_failures = 0
        self.reconnect_attempts = 0
        self.last_probe_at: Optional[datetime] = None
        self.stats = ConnectionStats()

        self._tools: Tuple[mcp_types.Tool, ...] = ()
        self._resources: Tuple[mcp_types.Resource, ...] = ()

        self._session: Optional[Any] = None
        self._runner: Optional[asyncio.Task[None]] = None
        self._closing: Optional[asyncio.Event] = None
        self._orphans: Set[asyncio.Task[None]] = set()
        self._lost = False
        # Bumped whenever the session is replaced or torn down, so a fetch
        # that finishes late cannot repopulate caches of a dead session.
        self._generation = 0

        self._lock = asyncio.Lock()
        self._fetch_lock = asyncio.Lock()

    # ── Properties ───────────────────────────────────────────────────────

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_serving(self) -> bool:
        """True when calls may be routed here (CONNECTED or DEGRADED)."""
        return self._state in SERVING_STATES

    @property
    def session_lost(self) -> bool:
        """True when serving but the transport closed or the session runner exited."""
        return self.is_serving and (
            self._lost or self._runner is None or self._runner.done()
        )

    @property
    def tools(self) -> Tuple[mcp_types.Tool, ...]:
        """Raw (unprefixed) tools from the last successful fetch."""
        return self._tools

    @property
    def resources(self) -> Tuple[mcp_types.Resource, ...]:
        """Raw (unprefixed) resources from the last successful fetch."""
        return self._resources

    # ── State machine ────────────────────────────────────────────────────

    def _transition(self, target: ConnectionState, reason: str = "") -> None:
        if target == self._state:
            return
        if not is_valid_transition(self._state, target):
            raise ValueError(
                f"Invalid connection transition for '{self.name}': "
                f"{self._state.value} → {target.value}"
            )
        logger.info(
            "[%s] State %s → %s%s",
            self.name,
            self._state.value,
            target.value,
            f" ({reason})" if reason else "",
        )
        self._state = target

    def mark_degraded(self, reason: str) -> None:
        """CONNECTED → DEGRADED after a failed probe; cached capabilities stay."""
        if self._state == ConnectionState.CONNECTED:
            self._transition(ConnectionState.DEGRADED, reason)

    def mark_failed(self, error: str) -> None:
        """Enter the terminal FAILED state after the retry budget is spent."""
        self.last_error = error
        self._transition(ConnectionState.FAILED, error)

    def reset(self) -> None:
        """Operator recovery: FAILED → DISCONNECTED with fresh counters."""
        if self._state == ConnectionState.FAILED:
            self._transition(ConnectionState.DISCONNECTED, "reset by operator")
        self.consecutive_failures = 0
        self.reconnect_attempts = 0

    def record_probe_success(self) -> bool:
        """Clear the failure counter. Returns True if the backend recovered from DEGRADED."""
        self.last_probe_at = _utcnow()
        self.consecutive_failures = 0
        if self._state == ConnectionState.DEGRADED:
            self._transition(ConnectionState.CONNECTED, "probe succeeded")
            return True
        return False

    def record_probe_failure(self, exc: BaseException) -> int:
        """Count a failed probe and return the consecutive failure count."""
        self.last_probe_at = _utcnow()
        self.consecutive_failures += 1
        self.last_error = _describe(exc)
        return self.consecutive_failures

    # ── Connect / disconnect ─────────────────────────────────────────────

    async def connect(self) -> None:
        """Spawn the backend, open the session, and fetch capabilities.

        Returns immediately when already connected. A capability fetch
        failure is logged but does not fail the connect.
        """
        if self._state in (
            ConnectionState.CONNECTED,
            ConnectionState.CONNECTING,
            ConnectionState.DEGRADED,
        ):
            return
        async with self._lock:
            if self._state in (
                ConnectionState.CONNECTED,
                ConnectionState.CONNECTING,
                ConnectionState.DEGRADED,
            ):
                return
            if self._state == ConnectionState.FAILED:
                raise ConnectionFailedError(
                    "retry budget exhausted; re-add the backend to recover", self.name
                )

            self._transition(ConnectionState.CONNECTING)
            self.stats.total_connections += 1
            self.stats.last_connection_attempt = _utcnow()
            logger.info("[%s] Attempting connection...", self.name)

            try:
                await self._open_session()
            except asyncio.CancelledError:
                await self._abandon_connect(ConnectionFailedError("connect cancelled", self.name))
                raise
            except SwitchboardError as exc:
                await self._abandon_connect(exc)
                raise
            except Exception as exc:
                err = ConnectionFailedError(_describe(exc), self.name, exc)
                await self._abandon_connect(err)
                raise err from exc

            self._generation += 1
            self._lost = False
            self._transition(ConnectionState.CONNECTED, "handshake complete")
            self.ever_connected = True
            self.last_error = None
            self.consecutive_failures = 0
            self.stats.successful_connections += 1
            self.stats.last_successful_connection = _utcnow()
            logger.info("[%s] MCP connection initialized.", self.name)

            try:
                await self.fetch_capabilities()
            except SwitchboardError as exc:
                logger.warning("[%s] Initial capability fetch failed: %s", self.name, exc)

    async def _open_session(self) -> None:
        ready: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        closing = asyncio.Event()
        self._closing = closing
        self._runner = asyncio.create_task(
            self._run_session(ready, closing),
            name=f"switchboard-session-{self.name}",
        )
        limit = self.timeouts.connect
        try:
            self._session = await asyncio.wait_for(ready, timeout=limit)
        except asyncio.TimeoutError as exc:
            if isinstance(exc, SwitchboardError):
                raise
            raise OperationTimeoutError("connect", limit, self.name) from exc

    async def _run_session(self, ready: asyncio.Future[Any], closing: asyncio.Event) -> None:
        """Own the session context from open to close."""
        try:
            async with self._session_factory(self.config, self.timeouts.init) as session:
                if ready.done():
                    # connect() already gave up on this attempt
                    return
                ready.set_result(session)
                await closing.wait()
        except asyncio.CancelledError:
            if not ready.done():
                ready.set_exception(ConnectionFailedError("session aborted", self.name))
            raise
        except Exception as exc:
            if not ready.done():
                if isinstance(exc, asyncio.TimeoutError):
                    err: Exception = OperationTimeoutError(
                        "initialize", self.timeouts.init, self.name
                    )
                else:
                    err = ConnectionFailedError(_describe(exc), self.name, exc)
                ready.set_exception(err)
            else:
                logger.warning("[%s] Session ended unexpectedly: %s", self.name, _describe(exc))
                if self._runner is asyncio.current_task():
                    self._session = None
                    self.last_error = _describe(exc)

    async def _abandon_connect(self, exc: BaseException) -> None:
        await self._close_session(self.timeouts.shutdown)
        self.last_error = _describe(exc)
        self.stats.failed_connections += 1
        self.stats.last_failure = _utcnow()
        self.stats.last_failure_reason = self.last_error
        if self._state == ConnectionState.CONNECTING:
            self._transition(ConnectionState.DISCONNECTED, "connect failed")
        logger.error("[%s] Connection failed: %s", self.name, self.last_error)

    async def _close_session(self, timeout: float) -> None:
        """Stop the runner task, bounded by *timeout*. Never raises."""
        runner, closing = self._runner, self._closing
        self._runner = None
        self._closing = None
        self._session = None
        self._lost = False
        self._generation += 1
        if runner is None:
            return
        if closing is not None:
            closing.set()

        try:
            done, _ = await asyncio.wait({runner}, timeout=timeout)
            if not done:
                logger.warning(
                    "[%s] Session close exceeded %.1fs, cancelling.", self.name, timeout
                )
                runner.cancel()
                done, _ = await asyncio.wait({runner}, timeout=timeout)
        except asyncio.CancelledError:
            runner.cancel()
            self._keep_orphan(runner)
            raise
        if not done:
            logger.error("[%s] Session runner ignored cancellation; abandoning it.", self.name)
            self._keep_orphan(runner)
            return
        if not runner.cancelled() and runner.exception() is not None:
            logger.warning(
                "[%s] Error while closing session: %s",
                self.name,
                _describe(runner.exception()),  # type: ignore[arg-type]
            )

    def _keep_orphan(self, task: asyncio.Task[None]) -> None:
        self._orphans.add(task)
        task.add_done_callback(self._orphans.discard)

    def _mark_session_lost(self, exc: BaseException) -> NotConnectedError:
        """Drop a session whose transport closed and let the runner exit.

        The state is left alone; the supervisor disconnects the backend on
        its next tick. Returns the error to raise to the caller.
        """
        if not self._lost:
            self._lost = True
            self._session = None
            self.last_error = f"transport closed: {_describe(exc)}"
            if self._closing is not None:
                self._closing.set()
            logger.warning("[%s] Transport closed: %s", self.name, _describe(exc))
        return NotConnectedError(self.name, "session lost")

    async def disconnect(self) -> None:
        """Close the session, terminate the process, drop cached capabilities.

        Idempotent and never raises. FAILED stays FAILED.
        """
        try:
            async with self._lock:
                await self._close_session(self.timeouts.shutdown)
                self._drop_caches()
                if self._state in SERVING_STATES or self._state == ConnectionState.CONNECTING:
                    self._transition(ConnectionState.DISCONNECTED, "disconnect")
                    logger.info("[%s] Disconnected.", self.name)
        except Exception:
            logger.exception("[%s] Unexpected error during disconnect.", self.name)

    def abort(self) -> None:
        """Synchronously drop the session without waiting for it to close."""
        runner = self._runner
        self._runner = None
        self._closing = None
        self._session = None
        self._lost = False
        self._generation += 1
        if runner is not None and not runner.done():
            runner.cancel()
            self._keep_orphan(runner)
        self._drop_caches()
        if self._state in SERVING_STATES or self._state == ConnectionState.CONNECTING:
            self._transition(ConnectionState.DISCONNECTED, "aborted")
        logger.warning("[%s] Connection aborted.", self.name)

    def _drop_caches(self) -> None:
        self._tools = ()
        self._resources = ()

    # ── Capabilities ─────────────────────────────────────────────────────

    async def fetch_capabilities(self, timeout: Optional[float] = None) -> bool:
        """Re-list tools and resources from the backend.

        Replaces the cached raw lists on success and returns whether they
        changed. On failure the previous lists are kept and the error is
        raised; the connection state is not touched.
        """
        limit = self.timeouts.cap_fetch if timeout is None else timeout
        # The bound covers waiting for a fetch already in flight.
        try:
            return await asyncio.wait_for(self._fetch_locked(), timeout=limit)
        except asyncio.TimeoutError as exc:
            err = OperationTimeoutError("capability fetch", limit, self.name)
            self.last_error = str(err)
            raise err from exc

    async def _fetch_locked(self) -> bool:
        async with self._fetch_lock:
            session = self._require_session()
            generation = self._generation
            try:
                tools, resources = await self._list_capabilities(session)
            except Exception as exc:
                if _is_transport_closed(exc):
                    raise self._mark_session_lost(exc) from exc
                err = _as_backend_error(self.name, exc)
                self.last_error = str(err)
                if err is exc:
                    raise
                raise err from exc

            if generation != self._generation or not self.is_serving:
                logger.debug("[%s] Discarding capability list from a closed session.", self.name)
                return False

            changed = tools != self._tools or resources != self._resources
            self._tools = tools
            self._resources = resources
            logger.info(
                "[%s] Loaded %d tools and %d resources%s.",
                self.name,
                len(tools),
                len(resources),
                " (changed)" if changed else "",
            )
            return changed

    async def probe(self, timeout: Optional[float] = None) -> bool:
        """Health probe: a bounded capability re-list. Returns whether it changed."""
        return await self.fetch_capabilities(timeout=timeout)

    async def _list_capabilities(
        self, session: Any
    ) -> Tuple[Tuple[mcp_types.Tool, ...], Tuple[mcp_types.Resource, ...]]:
        tools = await self._list_paginated(session.list_tools, "tools")
        try:
            resources = await self._list_paginated(session.list_resources, "resources")
        except McpError as exc:
            if exc.error.code != mcp_types.METHOD_NOT_FOUND:
                raise
            logger.debug("[%s] Backend does not support resources.", self.name)
            resources = ()
        return tools, resources

    @staticmethod
    async def _list_paginated(
        list_method: Callable[..., Awaitable[Any]], attr: str
    ) -> Tuple[Any, ...]:
        items: list = []
        result = await list_method()
        while True:
            items.extend(getattr(result, attr, None) or [])
            cursor = getattr(result, "nextCursor", None)
            if not cursor:
                break
            result = await list_method(cursor=cursor)
        return tuple(items)

    # ── Call / read forwarding ───────────────────────────────────────────

    def _require_session(self) -> Any:
        if self._state not in SERVING_STATES or self._session is None:
            raise NotConnectedError(self.name, "session lost" if self._lost else self._state.value)
        return self._session

    async def call(
        self,
        original_name: str,
        arguments: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> mcp_types.CallToolResult:
        """Forward a tool call and return the backend's result verbatim."""
        session = self._require_session()
        limit = self.timeouts.call if timeout is None else timeout
        try:
            return await asyncio.wait_for(
                session.call_tool(original_name, arguments), timeout=limit
            )
        except asyncio.TimeoutError as exc:
            raise OperationTimeoutError(
                f"call_tool '{original_name}'", limit, self.name
            ) from exc
        except Exception as exc:
            if _is_transport_closed(exc):
                raise self._mark_session_lost(exc) from exc
            err = _as_backend_error(self.name, exc)
            if err is exc:
                raise
            logger.error("[%s] Error calling tool '%s': %s", self.name, original_name, err)
            raise err from exc

    async def read(
        self, original_uri: str, timeout: Optional[float] = None
    ) -> mcp_types.ReadResourceResult:
        """Forward a resource read and return the backend's result verbatim."""
        session = self._require_session()
        limit = self.timeouts.read if timeout is None else timeout
        try:
            return await asyncio.wait_for(
                session.read_resource(AnyUrl(original_uri)), timeout=limit
            )
        except asyncio.TimeoutError as exc:
            raise OperationTimeoutError(
                f"read_resource '{original_uri}'", limit, self.name
            ) from exc
        except Exception as exc:
            if _is_transport_closed(exc):
                raise self._mark_session_lost(exc) from exc
            err = _as_backend_error(self.name, exc)
            if err is exc:
                raise
            logger.error("[%s] Error reading resource '%s': %s", self.name, original_uri, err)
            raise err from exc

    # ── Status ───────────────────────────────────────────────────────────

    def status(self) -> BackendStatus:
        return BackendStatus(
            name=self.name,
            state=self._state,
            last_error=self.last_error,
            ever_connected=self.ever_connected,
            description=self.config.description,
            tool_count=len(self._tools),
            resource_count=len(self._resources),
            consecutive_failures=self.consecutive_failures,
            reconnect_attempts=self.reconnect_attempts,
            last_probe_at=self.last_probe_at,
            stats=self.stats.model_copy(),
        )

    def __repr__(self) -> str:
        return f"BackendConnection(name={self.name!r}, state={self._state.value})"
