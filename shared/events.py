from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone

from shared.models import JSONValue

logger = logging.getLogger("ChatLink.Events")


def _utc_iso_now() -> str:
    return datetime.now(timezone.utc).isoformat()  # noqa: UP017


@dataclass(frozen=True)
class Event:
    name: str
    payload: dict[str, JSONValue]
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    ts: str = field(default_factory=_utc_iso_now)


EventCallback = Callable[[Event], None]


class Subscription:
    def __init__(self, bus: EventBus, name: str, callback: EventCallback) -> None:
        self._bus = bus
        self.name = name
        self.callback = callback
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def cancel(self) -> None:
        if not self._active:
            return
        self._active = False
        self._bus.off(self.name, self.callback)


class EventBus:
    """Минимальная шина событий: синхронные слушатели и очереди для корутин."""

    def __init__(self) -> None:
        self._listeners: dict[str, list[EventCallback]] = {}
        self._queues: dict[str, set[asyncio.Queue[Event]]] = {}

    def on(self, name: str, callback: EventCallback) -> Subscription:
        self._listeners.setdefault(name, []).append(callback)
        return Subscription(self, name, callback)

    def off(self, name: str, callback: EventCallback) -> None:
        listeners = self._listeners.get(name)
        if not listeners:
            return
        try:
            listeners.remove(callback)
        except ValueError:
            return
        if not listeners:
            del self._listeners[name]

    def subscribe_queue(self, name: str, maxsize: int = 0) -> asyncio.Queue[Event]:
        queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=maxsize)
        self._queues.setdefault(name, set()).add(queue)
        return queue

    def unsubscribe_queue(self, name: str, queue: asyncio.Queue[Event]) -> None:
        queues = self._queues.get(name)
        if queues is None:
            return
        queues.discard(queue)
        if not queues:
            del self._queues[name]

    def listener_count(self, name: str | None = None) -> int:
        if name is not None:
            return len(self._listeners.get(name, [])) + len(self._queues.get(name, set()))
        return sum(len(items) for items in self._listeners.values()) + sum(
            len(items) for items in self._queues.values()
        )

    def emit(self, name: str, payload: dict[str, JSONValue] | None = None) -> Event:
        event = Event(name=name, payload=dict(payload or {}))
        for callback in list(self._listeners.get(name, [])):
            try:
                callback(event)
            except Exception:  # noqa: BLE001
                logger.exception("event listener failed", extra={"event": name})
        for queue in list(self._queues.get(name, set())):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                continue
        return event

    def clear(self) -> None:
        self._listeners.clear()
        self._queues.clear()
