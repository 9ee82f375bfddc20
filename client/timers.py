from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from typing import Protocol

logger = logging.getLogger("ChatLink.Timers")


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle: ...

    def now(self) -> float: ...


class AsyncioScheduler:
    """Таймеры поверх event loop; loop берётся лениво при первом вызове."""

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop

    def _resolve_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None or self._loop.is_closed():
            self._loop = asyncio.get_running_loop()
        return self._loop

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        return self._resolve_loop().call_later(max(delay, 0.0), callback)

    def now(self) -> float:
        return time.monotonic()


class TimerRegistry:
    """Keyed timers with one teardown path.

    Every timer is registered under a key; scheduling under an existing key
    cancels the previous one. A fired timer drops its key before running the
    callback, so the callback may re-arm itself. After ``close()`` nothing can
    be scheduled and late firings are ignored.
    """

    def __init__(self, scheduler: Scheduler) -> None:
        self._scheduler = scheduler
        self._handles: dict[str, TimerHandle] = {}
        self._tokens: dict[str, object] = {}
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def schedule(self, key: str, delay: float, callback: Callable[[], None]) -> TimerHandle | None:
        if self._closed:
            logger.debug("timer %s rejected: registry closed", key)
            return None
        self.cancel(key)
        token = object()

        def _fire() -> None:
            if self._closed or self._tokens.get(key) is not token:
                return
            self._handles.pop(key, None)
            self._tokens.pop(key, None)
            callback()

        handle = self._scheduler.call_later(delay, _fire)
        self._handles[key] = handle
        self._tokens[key] = token
        return handle

    def cancel(self, key: str) -> bool:
        handle = self._handles.pop(key, None)
        self._tokens.pop(key, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def cancel_prefix(self, prefix: str) -> int:
        keys = [key for key in self._handles if key.startswith(prefix)]
        for key in keys:
            self.cancel(key)
        return len(keys)

    def cancel_all(self) -> int:
        return self.cancel_prefix("")

    def has(self, key: str) -> bool:
        return key in self._handles

    def active_keys(self) -> list[str]:
        return list(self._handles)

    def close(self) -> None:
        self.cancel_all()
        self._closed = True

    def __len__(self) -> int:
        return len(self._handles)
