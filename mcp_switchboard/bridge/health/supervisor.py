"""Periodic health supervision and reconnection of backend connections.

One background loop probes every serving backend each interval. Backends
that drop out get an independent reconnect task with exponential backoff;
a slow or hung backend never delays the others because every probe runs
concurrently and is bounded by the probe timeout.
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import TYPE_CHECKING, Awaitable, Callable, Dict, Optional

from mcp_switchboard.bridge.health.backoff import ReconnectBackoff
from mcp_switchboard.config.schema import HealthSettings, ReconnectSettings
from mcp_switchboard.runtime.models import ConnectionState

if TYPE_CHECKING:
    from mcp_switchboard.bridge.connection import BackendConnection
    from mcp_switchboard.bridge.manager import ProxyManager

logger = logging.getLogger(__name__)


class HealthSupervisor:
    """Background prober and reconnect scheduler.

    The supervisor only schedules work. Every catalog change goes through
    the owning :class:`ProxyManager`.

    Parameters
    ----------
    manager:
        The manager that owns the connections and the registry.
    health:
        Interval and unhealthy threshold.
    reconnect:
        Backoff schedule and attempt budget.
    sleep:
        Coroutine used to wait between reconnect attempts.
    rng:
        Jitter source handed to each backend's :class:`ReconnectBackoff`.
    """

    def __init__(
        self,
        manager: "ProxyManager",
        *,
        health: Optional[HealthSettings] = None,
        reconnect: Optional[ReconnectSettings] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._manager = manager
        self._health = health or HealthSettings()
        self._reconnect = reconnect or ReconnectSettings()
        self._sleep = sleep
        self._rng = rng

        self._backoffs: Dict[str, ReconnectBackoff] = {}
        self._reconnect_tasks: Dict[str, asyncio.Task[None]] = {}
        self._task: Optional[asyncio.Task[None]] = None
        self._stopped = asyncio.Event()

    # ── Public API ───────────────────────────────────────────────────────

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Launch the background check loop."""
        if self.is_running:
            logger.warning("Health supervisor already running.")
            return
        self._stopped.clear()
        self._task = asyncio.create_task(self._run(), name="switchboard-health")
        logger.info(
            "Health supervisor started (interval=%.0fs, unhealthy_threshold=%d)",
            self._health.interval,
            self._health.unhealthy_threshold,
        )

    async def stop(self) -> None:
        """Stop the loop and cancel every pending reconnect."""
        self._stopped.set()
        tasks = list(self._reconnect_tasks.values())
        if self._task is not None:
            tasks.append(self._task)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._task = None
        self._reconnect_tasks.clear()
        logger.info("Health supervisor stopped.")

    def forget(self, name: str) -> None:
        """Drop all supervision state for *name* (removed or re-added backend)."""
        task = self._reconnect_tasks.pop(name, None)
        if task is not None and not task.done():
            task.cancel()
        self._backoffs.pop(name, None)

    def backoff_for(self, name: str) -> ReconnectBackoff:
        backoff = self._backoffs.get(name)
        if backoff is None:
            backoff = ReconnectBackoff(name, self._reconnect, self._rng)
            self._backoffs[name] = backoff
        return backoff

    def reconnect_pending(self, name: str) -> bool:
        task = self._reconnect_tasks.get(name)
        return task is not None and not task.done()

    async def run_once(self) -> None:
        """Run one supervision tick over every backend not in FAILED."""
        connections = [
            conn for conn in self._manager.connections() if conn.state != ConnectionState.FAILED
        ]
        if not connections:
            return
        results = await asyncio.gather(
            *(self._check(conn) for conn in connections),
            return_exceptions=True,
        )
        for conn, result in zip(connections, results):
            if isinstance(result, Exception):
                logger.error(
                    "[%s] Health check raised unexpectedly: %s", conn.name, result, exc_info=result
                )

    # ── Background loop ──────────────────────────────────────────────────

    async def _run(self) -> None:
        while not self._stopped.is_set():
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self._health.interval)
                break  # stopped was set
            except asyncio.TimeoutError:
                pass  # interval elapsed
            await self.run_once()

    async def _check(self, conn: "BackendConnection") -> None:
        if conn.is_serving:
            if conn.session_lost:
                logger.warning("[%s] Session is gone; treating backend as unhealthy.", conn.name)
                await self._mark_unhealthy(conn, conn.last_error or "session closed")
                return
            await self._probe(conn)
        elif conn.state == ConnectionState.DISCONNECTED:
            self.schedule_reconnect(conn)

    async def _probe(self, conn: "BackendConnection") -> None:
        try:
            changed = await conn.probe(timeout=conn.timeouts.probe)
        except Exception as exc:
            failures = conn.record_probe_failure(exc)
            if conn.session_lost:
                logger.warning(
                    "[%s] Transport closed during health check; disconnecting.", conn.name
                )
                await self._mark_unhealthy(conn, conn.last_error or str(exc))
                return
            threshold = self._health.unhealthy_threshold
            logger.warning(
                "[%s] Health probe failed (%d/%d): %s", conn.name, failures, threshold, exc
            )
            if failures < threshold:
                if conn.state == ConnectionState.CONNECTED:
                    conn.mark_degraded(f"probe failed: {exc}")
                    self._manager.record(
                        "backend.degraded", backend=conn.name, failures=failures, error=str(exc)
                    )
                return
            await self._mark_unhealthy(conn, str(exc))
            return

        if conn.record_probe_success():
            logger.info("[%s] Recovered after failed probes.", conn.name)
            self._manager.record("backend.recovered", backend=conn.name)
        if changed:
            logger.info("[%s] Capabilities changed; rebuilding catalog.", conn.name)
            self._manager.rebuild_catalog(reason=f"{conn.name} capabilities changed")

    async def _mark_unhealthy(self, conn: "BackendConnection", error: str) -> None:
        await self._manager.disconnect_unhealthy(conn, error)
        self.schedule_reconnect(conn)

    # ── Reconnection ─────────────────────────────────────────────────────

    def schedule_reconnect(self, conn: "BackendConnection") -> None:
        """Start a reconnect task for *conn* unless one is already pending."""
        if self._stopped.is_set() or self.reconnect_pending(conn.name):
            return
        self._reconnect_tasks[conn.name] = asyncio.create_task(
            self._reconnect_loop(conn, self.backoff_for(conn.name)),
            name=f"switchboard-reconnect-{conn.name}",
        )

    async def _reconnect_loop(self, conn: "BackendConnection", backoff: ReconnectBackoff) -> None:
        try:
            while conn.state == ConnectionState.DISCONNECTED:
                if backoff.exhausted:
                    error = conn.last_error or "reconnect attempts exhausted"
                    logger.error(
                        "[%s] Giving up after %d reconnect attempts: %s",
                        conn.name,
                        backoff.attempts,
                        error,
                    )
                    conn.mark_failed(error)
                    self._manager.backend_failed(conn, error)
                    return

                delay = backoff.next_delay()
                self._manager.record(
                    "backend.reconnect_scheduled",
                    backend=conn.name,
                    attempt=backoff.attempts + 1,
                    delay=round(delay, 3),
                )
                logger.info(
                    "[%s] Reconnecting in %.1fs (attempt %d/%d)",
                    conn.name,
                    delay,
                    backoff.attempts + 1,
                    backoff.settings.max_attempts,
                )
                await self._sleep(delay)
                if conn.state != ConnectionState.DISCONNECTED or not self._manager.owns(conn):
                    return

                conn.reconnect_attempts = backoff.record_attempt()
                try:
                    await conn.connect()
                except Exception as exc:
                    self._manager.record(
                        "backend.connect_failed",
                        backend=conn.name,
                        attempt=backoff.attempts,
                        error=str(exc),
                    )
                    continue

                backoff.reset()
                conn.reconnect_attempts = 0
                self._manager.backend_reconnected(conn)
                return
        finally:
            if self._reconnect_tasks.get(conn.name) is asyncio.current_task():
                del self._reconnect_tasks[conn.name]
