"""Shared fixtures: in-memory MCP sessions injected through the session factory."""

from __future__ import annotations

import asyncio
from collections import Counter
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional, Sequence, Set

import anyio
import pytest
from mcp import types as mcp_types
from mcp.shared.exceptions import McpError

from mcp_switchboard.config.schema import (
    BackendConfig,
    HealthSettings,
    ProxySettings,
    ReconnectSettings,
    TimeoutSettings,
)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def make_tool(name: str) -> mcp_types.Tool:
    return mcp_types.Tool(name=name, description=f"{name} tool", inputSchema={"type": "object"})


def make_resource(uri: str) -> mcp_types.Resource:
    return mcp_types.Resource(uri=uri, name=uri.rsplit("/", 1)[-1] or uri)


def method_not_found() -> McpError:
    return McpError(
        mcp_types.ErrorData(code=mcp_types.METHOD_NOT_FOUND, message="Method not found")
    )


class FakeSession:
    """Stands in for ``mcp.ClientSession`` after ``initialize()``."""

    def __init__(
        self,
        tools: Sequence[str] = (),
        resources: Sequence[str] = (),
        *,
        resources_supported: bool = True,
        page_size: Optional[int] = None,
    ) -> None:
        self.tools: List[mcp_types.Tool] = [make_tool(n) for n in tools]
        self.resources: List[mcp_types.Resource] = [make_resource(u) for u in resources]
        self.resources_supported = resources_supported
        self.page_size = page_size
        self.list_error: Optional[Exception] = None
        self.list_delay = 0.0
        self.call_error: Optional[Exception] = None
        self.call_delay = 0.0
        self.calls: List[tuple] = []
        self.reads: List[str] = []
        self.list_cursors: List[Optional[str]] = []
        self.last_result: Optional[mcp_types.CallToolResult] = None

    def _page(self, items: List[Any], cursor: Optional[str]) -> tuple:
        if self.page_size is None:
            return items, None
        start = int(cursor or 0)
        end = start + self.page_size
        return items[start:end], (str(end) if end < len(items) else None)

    async def _before_list(self, cursor: Optional[str]) -> None:
        self.list_cursors.append(cursor)
        if self.list_delay:
            await asyncio.sleep(self.list_delay)
        if self.list_error is not None:
            raise self.list_error

    async def list_tools(self, cursor: Optional[str] = None) -> mcp_types.ListToolsResult:
        await self._before_list(cursor)
        page, next_cursor = self._page(self.tools, cursor)
        return mcp_types.ListToolsResult(tools=page, nextCursor=next_cursor)

    async def list_resources(self, cursor: Optional[str] = None) -> mcp_types.ListResourcesResult:
        await self._before_list(cursor)
        if not self.resources_supported:
            raise method_not_found()
        page, next_cursor = self._page(self.resources, cursor)
        return mcp_types.ListResourcesResult(resources=page, nextCursor=next_cursor)

    async def call_tool(
        self, name: str, arguments: Optional[Dict[str, Any]] = None
    ) -> mcp_types.CallToolResult:
        self.calls.append((name, arguments))
        if self.call_delay:
            await asyncio.sleep(self.call_delay)
        if self.call_error is not None:
            raise self.call_error
        self.last_result = mcp_types.CallToolResult(
            content=[mcp_types.TextContent(type="text", text=f"{name}:{arguments}")]
        )
        return self.last_result

    async def read_resource(self, uri: Any) -> mcp_types.ReadResourceResult:
        self.reads.append(str(uri))
        return mcp_types.ReadResourceResult(
            contents=[mcp_types.TextResourceContents(uri=uri, text="data", mimeType="text/plain")]
        )


class FakeBackends:
    """Session factory keyed by backend name.

    ``live`` holds the names whose fake "process" is currently open.
    """

    def __init__(self) -> None:
        self.sessions: Dict[str, FakeSession] = {}
        self.connect_errors: Dict[str, Exception] = {}
        self.hang_open: Set[str] = set()
        self.hang_close: Set[str] = set()
        self.close_errors: Dict[str, Exception] = {}
        self.open_delay = 0.0
        self.opened: Counter = Counter()
        self.live: Set[str] = set()
        self.in_flight = 0
        self.max_in_flight = 0

    def add(self, name: str, *args: Any, **kwargs: Any) -> FakeSession:
        session = FakeSession(*args, **kwargs)
        self.sessions[name] = session
        return session

    def kill(self, name: str) -> None:
        """Backend process dies: its streams close and it cannot be restarted."""
        self.sessions[name].list_error = anyio.ClosedResourceError()
        self.sessions[name].call_error = anyio.ClosedResourceError()
        self.connect_errors[name] = FileNotFoundError("backend executable vanished")

    @asynccontextmanager
    async def __call__(self, config: BackendConfig, init_timeout: float):
        name = config.name
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.open_delay:
                await asyncio.sleep(self.open_delay)
            if name in self.hang_open:
                await asyncio.sleep(3600)
            if name in self.connect_errors:
                raise self.connect_errors[name]
        finally:
            self.in_flight -= 1
        session = self.sessions.setdefault(name, FakeSession())
        self.opened[name] += 1
        self.live.add(name)
        try:
            yield session
        finally:
            try:
                if name in self.hang_close:
                    await asyncio.sleep(3600)
                if name in self.close_errors:
                    raise self.close_errors[name]
            finally:
                self.live.discard(name)


class ListRecorder:
    def __init__(self) -> None:
        self.events: List[tuple] = []

    def record(self, event: str, fields: Any) -> None:
        self.events.append((event, dict(fields)))

    def names(self) -> List[str]:
        return [name for name, _ in self.events]


def fast_settings(**overrides: Any) -> ProxySettings:
    """Settings with short timeouts for tests."""
    data: Dict[str, Any] = {
        "timeouts": TimeoutSettings(
            connect=1.0, init=1.0, cap_fetch=0.5, call=0.5, read=0.5, probe=0.2, shutdown=0.2
        ),
        "health": HealthSettings(interval=0.05, unhealthy_threshold=3),
        "reconnect": ReconnectSettings(base_delay=0.01, factor=2.0, max_delay=0.05, max_attempts=3),
    }
    data.update(overrides)
    return ProxySettings(**data)


async def wait_until(predicate: Any, timeout: float = 2.0) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(_poll(), timeout=timeout)


@pytest.fixture
def backends() -> FakeBackends:
    return FakeBackends()


@pytest.fixture
def recorder() -> ListRecorder:
    return ListRecorder()


class FakeSleep:
    """Reconnect sleep that records delays and waits until released."""

    def __init__(self) -> None:
        self.delays: List[float] = []
        self._gate = asyncio.Event()

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await self._gate.wait()

    def release(self) -> None:
        """Let every pending and future sleep return immediately."""
        self._gate.set()


@pytest.fixture
def fake_sleep() -> FakeSleep:
    return FakeSleep()
