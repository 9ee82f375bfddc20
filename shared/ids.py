from __future__ import annotations

import itertools
import time
import uuid


def _epoch_ms() -> int:
    return int(time.time() * 1000)


class MessageIdGenerator:
    """<prefix>_<epoch_ms>_<counter>: counter keeps ids distinct within one millisecond."""

    def __init__(self, prefix: str = "msg") -> None:
        self._prefix = prefix
        self._counter = itertools.count(1)

    def next_id(self) -> str:
        return f"{self._prefix}_{_epoch_ms()}_{next(self._counter)}"


def new_session_id() -> str:
    return f"session_{_epoch_ms()}_{uuid.uuid4().hex[:9]}"
