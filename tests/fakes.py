from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import dataclass, field

from client.transport import NORMAL_CLOSURE, TransportListener
from shared.errors import StorageError, TransportError
from shared.models import JSONValue


class FakeTransport:
    def __init__(self) -> None:
        self.url: str | None = None
        self.listener: TransportListener | None = None
        self.sent: list[str] = []
        self.closed_with: tuple[int, str] | None = None
        self.fail_sends = False

    def open(self, url: str, listener: TransportListener) -> None:
        self.url = url
        self.listener = listener

    def send(self, data: str) -> None:
        if self.fail_sends:
            raise TransportError("send failed")
        self.sent.append(data)

    def close(self, code: int = NORMAL_CLOSURE, reason: str = "") -> None:
        self.closed_with = (code, reason)

    # helpers driving the listener like a real socket would
    def accept(self) -> None:
        assert self.listener is not None
        self.listener.on_open()

    def deliver(self, frame: dict[str, JSONValue] | str) -> None:
        assert self.listener is not None
        data = frame if isinstance(frame, str) else json.dumps(frame)
        self.listener.on_message(data)

    def drop(self, code: int = 1006, reason: str = "") -> None:
        assert self.listener is not None
        self.listener.on_close(code, reason)

    def fail(self, error: BaseException | None = None) -> None:
        assert self.listener is not None
        self.listener.on_error(error or TransportError("boom"))

    def sent_frames(self) -> list[dict[str, JSONValue]]:
        return [json.loads(item) for item in self.sent]


class FakeTransportFactory:
    def __init__(self) -> None:
        self.created: list[FakeTransport] = []

    def __call__(self) -> FakeTransport:
        transport = FakeTransport()
        self.created.append(transport)
        return transport

    @property
    def last(self) -> FakeTransport:
        return self.created[-1]


@dataclass
class _ManualHandle:
    due: float
    callback: Callable[[], None]
    seq: int
    cancelled: bool = False

    def cancel(self) -> None:
        self.cancelled = True


@dataclass
class ManualScheduler:
    current: float = 0.0
    handles: list[_ManualHandle] = field(default_factory=list)
    _seq: int = 0

    def call_later(self, delay: float, callback: Callable[[], None]) -> _ManualHandle:
        self._seq += 1
        handle = _ManualHandle(due=self.current + delay, callback=callback, seq=self._seq)
        self.handles.append(handle)
        return handle

    def now(self) -> float:
        return self.current

    def pending(self) -> list[_ManualHandle]:
        return [handle for handle in self.handles if not handle.cancelled]

    def delays(self) -> list[float]:
        return [handle.due - self.current for handle in self.pending()]

    def advance(self, seconds: float) -> None:
        target = self.current + seconds
        while True:
            ready = [
                handle for handle in self.pending() if handle.due <= target
            ]
            if not ready:
                break
            handle = min(ready, key=lambda item: (item.due, item.seq))
            self.handles.remove(handle)
            self.current = handle.due
            handle.callback()
        self.current = target


class FailingStorage:
    def __init__(self, *, fail_reads: bool = False, fail_writes: bool = True) -> None:
        self.fail_reads = fail_reads
        self.fail_writes = fail_writes
        self.items: dict[str, str] = {}
        self.write_attempts = 0

    def get_item(self, key: str) -> str | None:
        if self.fail_reads:
            raise StorageError("read denied")
        return self.items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self.write_attempts += 1
        if self.fail_writes:
            raise StorageError("quota exceeded")
        self.items[key] = value

    def remove_item(self, key: str) -> None:
        self.write_attempts += 1
        if self.fail_writes:
            raise StorageError("quota exceeded")
        self.items.pop(key, None)
