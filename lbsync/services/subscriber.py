"""Reconnecting, filtered pull subscription over a push event stream.

The producer task owns the connection: it reads payloads from the source,
keeps the ones matching any pattern, and reconnects when the source fails
or ends. Consumers iterate with ``async for`` and never see the reconnect,
only the events; whatever the platform emits while disconnected is lost.

The buffer is a bounded ``asyncio.Queue``. When consumers fall behind the
producer blocks on ``put``, which stops reading from the socket and lets the
transport apply back-pressure instead of growing memory.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import aclosing
from typing import Any, AsyncIterator, Callable, Mapping, Optional, Sequence

from prometheus_client import Counter

from lbsync.models.schemas import Event

log = logging.getLogger("lbsync.subscriber")

SUBSCRIPTION_EVENTS = Counter("lbsync_subscription_events_total", "Stream events seen by subscriptions", ["result"])
SUBSCRIPTION_RECONNECTS = Counter("lbsync_subscription_reconnects_total", "Event stream reconnects")

Pattern = Mapping[str, Any]
EventSource = Callable[[], AsyncIterator[dict[str, Any]]]

_CLOSED = object()

# newer engines report the lifecycle status as "Action" and the container as "Id"
_KEY_ALIASES = {"status": "Action", "id": "Id"}


def _value(payload: Mapping[str, Any], key: str) -> Any:
    value = payload.get(key)
    if value is None and key in _KEY_ALIASES:
        value = payload.get(_KEY_ALIASES[key])
    return value


def matches(payload: Mapping[str, Any], patterns: Sequence[Pattern]) -> bool:
    """True if every key of at least one pattern has the same value in payload."""
    return any(all(_value(payload, k) == v for k, v in p.items()) for p in patterns)


def status_patterns(statuses: Sequence[str]) -> list[dict[str, str]]:
    return [{"status": s} for s in statuses]


class EventSubscription:
    """Durable pull sequence of matching events."""

    def __init__(
        self,
        source: EventSource,
        patterns: Sequence[Pattern],
        maxsize: int = 1000,
        reconnect_delay_s: float = 2.0,
    ):
        self._source = source
        self._patterns = [dict(p) for p in patterns]
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=maxsize)
        self._reconnect_delay_s = reconnect_delay_s
        self._task: Optional[asyncio.Task[None]] = None
        self._closed = False
        self.reconnects = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        """Start the producer task. Idempotent; must run inside an event loop."""
        if self._task is None and not self._closed:
            self._task = asyncio.create_task(self._pump(), name="event-subscription")

    async def _pump(self) -> None:
        while not self._closed:
            try:
                async with aclosing(self._source()) as stream:
                    async for payload in stream:
                        if not matches(payload, self._patterns):
                            SUBSCRIPTION_EVENTS.labels(result="ignored").inc()
                            continue
                        SUBSCRIPTION_EVENTS.labels(result="matched").inc()
                        await self._queue.put(Event.from_payload(payload))
                log.warning("Event stream closed, reconnecting in %.1fs", self._reconnect_delay_s)
            except Exception as e:
                log.warning("Event stream failed (%s), reconnecting in %.1fs", e, self._reconnect_delay_s)
            self.reconnects += 1
            SUBSCRIPTION_RECONNECTS.inc()
            await asyncio.sleep(self._reconnect_delay_s)

    async def close(self) -> None:
        """Tear the connection down and end every pending and future iteration."""
        if self._closed:
            return
        self._closed = True
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> "EventSubscription":
        self.start()
        return self

    async def __anext__(self) -> Event:
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            # leave the marker for any other consumer blocked on get()
            self._queue.put_nowait(_CLOSED)
            raise StopAsyncIteration
        return item

    async def __aenter__(self) -> "EventSubscription":
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()
