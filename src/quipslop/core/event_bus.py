"""In-memory async event bus.

Pub/sub: the round runner and admin operations publish, the live-state
broadcaster, the Telegram bridge and SSE endpoints subscribe. Each
subscriber gets a bounded asyncio.Queue; a full queue drops the event for
that subscriber only.

The bus remembers the last envelope of each event type so a late
subscriber (a spectator that just connected) can be sent the current
``live.state`` without waiting for the next change.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import defaultdict
from typing import Any

logger = logging.getLogger(__name__)

# Event types
STATE_CHANGED = "state.changed"
VOTING_STARTED = "round.voting_started"
ROUND_COMPLETED = "round.completed"
LIVE_STATE = "live.state"


class EventBus:
    """Async pub/sub event bus.

    Usage:
        bus = EventBus()

        async with bus.subscribe(LIVE_STATE) as sub:
            async for envelope in sub:
                ...

        await bus.publish(STATE_CHANGED, {"reason": "round_started"})
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[asyncio.Queue[dict[str, Any]]]] = defaultdict(list)
        self._wildcard_subscribers: list[asyncio.Queue[dict[str, Any]]] = []
        self._latest: dict[str, dict[str, Any]] = {}

    async def publish(self, event_type: str, data: dict[str, Any]) -> int:
        """Deliver an event to subscribers of its type and to wildcard subscribers.

        Returns the number of subscribers that received it.
        """
        envelope = {"type": event_type, "data": data}
        self._latest[event_type] = envelope
        count = 0
        for queue in [*self._subscribers.get(event_type, []), *self._wildcard_subscribers]:
            try:
                queue.put_nowait(envelope)
                count += 1
            except asyncio.QueueFull:
                logger.warning("event_dropped type=%s reason=slow_subscriber", event_type)
        return count

    def latest(self, event_type: str) -> dict[str, Any] | None:
        """The most recent envelope published with *event_type*, if any."""
        return self._latest.get(event_type)

    def subscribe(self, event_type: str | None = None, max_size: int = 100) -> Subscription:
        """Subscribe to one event type, or to everything when *event_type* is None.

        Use the returned Subscription as an async context manager.
        """
        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=max_size)
        return Subscription(self, queue, event_type)

    def _register(self, queue: asyncio.Queue[dict[str, Any]], event_type: str | None) -> None:
        if event_type is None:
            self._wildcard_subscribers.append(queue)
        else:
            self._subscribers[event_type].append(queue)

    def _unregister(self, queue: asyncio.Queue[dict[str, Any]], event_type: str | None) -> None:
        targets = self._wildcard_subscribers if event_type is None else self._subscribers[event_type]
        with contextlib.suppress(ValueError):
            targets.remove(queue)

    @property
    def subscriber_count(self) -> int:
        typed = sum(len(subs) for subs in self._subscribers.values())
        return typed + len(self._wildcard_subscribers)


class Subscription:
    """An active subscription. Async context manager and async iterator."""

    def __init__(
        self,
        bus: EventBus,
        queue: asyncio.Queue[dict[str, Any]],
        event_type: str | None,
    ) -> None:
        self._bus = bus
        self._queue = queue
        self._event_type = event_type
        self._active = False

    async def __aenter__(self) -> Subscription:
        self._bus._register(self._queue, self._event_type)
        self._active = True
        return self

    async def __aexit__(self, *args: object) -> None:
        self._active = False
        self._bus._unregister(self._queue, self._event_type)

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> dict[str, Any]:
        if not self._active:
            raise StopAsyncIteration
        return await self._queue.get()

    def drain(self) -> int:
        """Discard queued events. Returns how many were dropped."""
        dropped = 0
        while not self._queue.empty():
            self._queue.get_nowait()
            dropped += 1
        return dropped

    async def get(self, timeout: float | None = None) -> dict[str, Any] | None:
        """Next event, or None after *timeout* seconds."""
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except TimeoutError:
            return None
