from __future__ import annotations

import asyncio
import itertools
import logging
from collections import deque
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional

from droidops.schemas import Event

LOGGER = logging.getLogger("droidops.events")


def _utcnow() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


class EventSubscriber:
    """Registration handle held by an observer of the bus."""

    def accept(self, event: Event) -> bool:  # pragma: no cover - interface stub
        """Deliver one event; returning False unregisters the subscriber."""
        raise NotImplementedError


class QueueSubscriber(EventSubscriber):
    """Buffers delivered events in an asyncio queue for a single consumer."""

    def __init__(self, maxsize: int = 1000) -> None:
        self._queue: "asyncio.Queue[Event]" = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def accept(self, event: Event) -> bool:
        if self._closed:
            return False
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            # A consumer that stopped reading is treated as a closed connection.
            self._closed = True
            return False
        return True

    def close(self) -> None:
        self._closed = True

    def pending(self) -> int:
        return self._queue.qsize()

    async def get(self, timeout: Optional[float] = None) -> Optional[Event]:
        """Wait for the next event; ``None`` when ``timeout`` elapses first."""
        if timeout is None:
            return await self._queue.get()
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None


class EventBus:
    """Bounded event history plus synchronous fan-out to live subscribers."""

    def __init__(self, history_limit: int = 600) -> None:
        self._history: Deque[Event] = deque(maxlen=history_limit)
        self._subscribers: Dict[int, EventSubscriber] = {}
        self._ids = itertools.count(1)

    @property
    def history_limit(self) -> int:
        return self._history.maxlen or 0

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def __len__(self) -> int:
        return len(self._history)

    def publish(self, event_type: str, message: str, data: Optional[Any] = None) -> Event:
        event = Event(id=next(self._ids), at=_utcnow(), type=event_type, message=message, data=data)
        self._history.append(event)
        for key, subscriber in list(self._subscribers.items()):
            try:
                delivered = subscriber.accept(event)
            except Exception as exc:  # noqa: BLE001 - a broken transport only drops its subscriber
                LOGGER.debug("Subscriber %s raised during delivery: %s", key, exc)
                delivered = False
            if not delivered:
                self._subscribers.pop(key, None)
                LOGGER.warning("Dropped event subscriber %s after failed delivery", key)
        return event

    def subscribe(self, subscriber: Optional[EventSubscriber] = None) -> EventSubscriber:
        handle = subscriber if subscriber is not None else QueueSubscriber()
        self._subscribers[id(handle)] = handle
        return handle

    def unsubscribe(self, handle: EventSubscriber) -> bool:
        removed = self._subscribers.pop(id(handle), None)
        if isinstance(handle, QueueSubscriber):
            handle.close()
        return removed is not None

    def history(self, limit: Optional[int] = None) -> List[Event]:
        events = list(self._history)
        if limit is None:
            return events
        if limit <= 0:
            return []
        return events[-limit:]

    def resize(self, history_limit: int) -> None:
        self._history = deque(self._history, maxlen=history_limit)

    def clear(self) -> None:
        self._history.clear()
