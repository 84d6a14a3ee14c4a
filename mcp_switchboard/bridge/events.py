"""Typed proxy events and subscriber queues."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, List, Tuple, Union

from mcp_switchboard.constants import EVENT_QUEUE_SIZE
from mcp_switchboard.errors import SubscriptionClosedError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CatalogChanged:
    """The aggregated catalog was rebuilt; keys are those of the new snapshot."""

    tools: Tuple[str, ...]
    resources: Tuple[str, ...]


@dataclass(frozen=True)
class BackendFailed:
    """A backend exhausted its reconnect budget and entered FAILED."""

    name: str
    error: str


ProxyEvent = Union[CatalogChanged, BackendFailed]

_END = object()


class Subscription:
    """A bounded queue of events for one consumer.

    ``close()`` enqueues an end marker after the pending events, so a
    consumer blocked in ``async for`` drains what is left and then stops.
    """

    def __init__(self, bus: "EventBus", maxsize: int) -> None:
        self._bus = bus
        self._maxsize = maxsize
        # The bound is enforced in _offer so the end marker always fits.
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self.dropped = 0
        self.closed = False

    def _offer(self, event: ProxyEvent) -> None:
        if self.closed:
            return
        if self._maxsize > 0 and self._queue.qsize() >= self._maxsize:
            # Drop the oldest so the newest state is always delivered.
            self._queue.get_nowait()
            self.dropped += 1
            logger.warning(
                "Event subscriber is falling behind; dropped oldest event (%d dropped so far).",
                self.dropped,
            )
        self._queue.put_nowait(event)

    def _take(self, item: Any) -> Any:
        if item is _END:
            # Leave the marker for any later reader.
            self._queue.put_nowait(_END)
        return item

    async def get(self) -> ProxyEvent:
        """Wait for the next event.

        Raises :class:`SubscriptionClosedError` once closed and drained.
        """
        item = self._take(await self._queue.get())
        if item is _END:
            raise SubscriptionClosedError()
        return item

    def get_nowait(self) -> ProxyEvent:
        """Raises :class:`asyncio.QueueEmpty` when nothing is pending."""
        item = self._take(self._queue.get_nowait())
        if item is _END:
            raise asyncio.QueueEmpty()
        return item

    def pending(self) -> int:
        return self._queue.qsize() - (1 if self.closed else 0)

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._bus._remove(self)
            self._queue.put_nowait(_END)

    def __aiter__(self) -> AsyncIterator[ProxyEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[ProxyEvent]:
        while True:
            item = self._take(await self._queue.get())
            if item is _END:
                return
            yield item


class EventBus:
    """Fan-out of proxy events to subscriber queues.

    Publishing never blocks: a full subscriber queue loses its oldest event.
    """

    def __init__(self) -> None:
        self._subscribers: List[Subscription] = []

    def subscribe(self, maxsize: int = EVENT_QUEUE_SIZE) -> Subscription:
        sub = Subscription(self, maxsize)
        self._subscribers.append(sub)
        logger.debug("Event subscriber added (total: %d).", len(self._subscribers))
        return sub

    def _remove(self, sub: Subscription) -> None:
        try:
            self._subscribers.remove(sub)
            logger.debug("Event subscriber removed (total: %d).", len(self._subscribers))
        except ValueError:
            pass

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, event: ProxyEvent) -> None:
        for sub in list(self._subscribers):
            sub._offer(event)
