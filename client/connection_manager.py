from __future__ import annotations

import logging
from collections import deque
from typing import Final

from client.envelope import (
    MessageType,
    build_envelope,
    encode_envelope,
    parse_envelope,
    utc_iso_now,
)
from client.timers import AsyncioScheduler, Scheduler, TimerRegistry
from client.transport import NORMAL_CLOSURE, Transport, TransportFactory
from config.chat_client_config import ConnectionConfig
from shared.errors import EnvelopeError, TransportError
from shared.events import EventBus
from shared.ids import MessageIdGenerator
from shared.models import ConnectionState, ConnectionStats, JSONValue, PendingRequest
from shared.sanitize import sanitize_record

logger = logging.getLogger("ChatLink.ConnectionManager")

_TIMER_RECONNECT: Final[str] = "reconnect"
_TIMER_CONNECT_TIMEOUT: Final[str] = "connect_timeout"
_TIMER_HEARTBEAT: Final[str] = "heartbeat"
_TIMER_MESSAGE_PREFIX: Final[str] = "message_timeout:"

_DISPATCH_EVENTS: Final[dict[str, str]] = {
    MessageType.CONNECTION: "connection_message",
    MessageType.CHAT_RESPONSE: "chat_response",
    MessageType.CHAT_ERROR: "chat_error",
    MessageType.TYPING: "typing",
    MessageType.PING: "ping",
    MessageType.PONG: "pong",
    MessageType.SYSTEM: "system_message",
    MessageType.SESSION_STARTED: "session_started",
    MessageType.SESSION_ENDED: "session_ended",
    MessageType.SESSION_RESET: "session_reset",
    MessageType.SESSION_INFO: "session_info",
    MessageType.SESSION_ERROR: "session_error",
    MessageType.ERROR: "server_error",
}
_CORRELATED_RESPONSES: Final[frozenset[str]] = frozenset(
    {
        MessageType.CHAT_RESPONSE,
        MessageType.CHAT_ERROR,
        MessageType.SESSION_STARTED,
        MessageType.SESSION_ERROR,
        MessageType.ERROR,
    }
)


def compute_backoff_delay(base_interval: float, attempt: int, max_delay: float) -> float:
    """base * 2^(attempt-1) для attempt с единицы, но не больше max_delay."""
    if attempt < 1:
        raise ValueError("attempt must be >= 1")
    exponent = min(attempt - 1, 63)
    return min(base_interval * (2**exponent), max_delay)


class _AttemptListener:
    """Привязывает колбэки транспорта к конкретной попытке соединения."""

    def __init__(self, manager: ConnectionManager, generation: int) -> None:
        self._manager = manager
        self._generation = generation

    def on_open(self) -> None:
        self._manager._on_transport_open(self._generation)

    def on_message(self, data: str) -> None:
        self._manager._on_transport_message(self._generation, data)

    def on_close(self, code: int, reason: str) -> None:
        self._manager._on_transport_close(self._generation, code, reason)

    def on_error(self, error: BaseException) -> None:
        self._manager._on_transport_error(self._generation, error)


class ConnectionManager:
    """Единственное долгоживущее соединение с бэкендом.

    Скрывает временные обрывы: пока соединения нет, исходящие кадры копятся в
    ограниченной очереди (при переполнении вытесняется самый старый), после
    переподключения очередь отправляется в порядке FIFO. Ответы сопоставляются
    с запросами по ``messageId``; для типов из ``reply_expected_types`` ведётся
    таймаут ожидания ответа. Ошибки транспорта и протокола никогда не
    выбрасываются наружу, а публикуются как события в ``events``.
    """

    def __init__(
        self,
        config: ConnectionConfig,
        *,
        transport_factory: TransportFactory,
        scheduler: Scheduler | None = None,
        events: EventBus | None = None,
        auto_connect: bool = True,
    ) -> None:
        self.config = config
        self.events = events or EventBus()
        self._transport_factory = transport_factory
        self._timers = TimerRegistry(scheduler or AsyncioScheduler())
        self._ids = MessageIdGenerator()
        self._max_reconnect_attempts = config.max_reconnect_attempts
        self._reply_expected_types = frozenset(config.reply_expected_types)
        self._state = ConnectionState.DISCONNECTED
        self._transport: Transport | None = None
        self._generation = 0
        self._reconnect_attempts = 0
        self._last_connect_time: str | None = None
        self._queue: deque[dict[str, JSONValue]] = deque()
        self._pending: dict[str, PendingRequest] = {}
        if auto_connect:
            self.connect()

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def max_reconnect_attempts(self) -> int:
        return self._max_reconnect_attempts

    @property
    def last_connect_time(self) -> str | None:
        return self._last_connect_time

    def queued_messages(self) -> list[dict[str, JSONValue]]:
        return [dict(item) for item in self._queue]

    def pending_message_ids(self) -> list[str]:
        return list(self._pending)

    def connect(self) -> None:
        if self._state is not ConnectionState.DISCONNECTED:
            return
        self._timers.cancel(_TIMER_RECONNECT)
        self._generation += 1
        generation = self._generation
        self._set_state(ConnectionState.CONNECTING)
        logger.info(
            "connecting to %s (attempt %s/%s)",
            self.config.url,
            self._reconnect_attempts,
            self._max_reconnect_attempts,
        )
        self._timers.schedule(
            _TIMER_CONNECT_TIMEOUT,
            self.config.connect_timeout,
            lambda: self._on_connect_timeout(generation),
        )
        try:
            transport = self._transport_factory()
            self._transport = transport
            transport.open(self.config.url, _AttemptListener(self, generation))
        except Exception as exc:  # noqa: BLE001
            logger.warning("transport open failed: %s", exc)
            if generation == self._generation:
                self._drop_transport(NORMAL_CLOSURE, "open failed")
                self._handle_connection_error(exc)

    def send(self, message_type: str, payload: dict[str, JSONValue] | None = None) -> str:
        message_id = self._ids.next_id()
        envelope = build_envelope(message_type, message_id, payload)
        if self._state is ConnectionState.CONNECTED and self._transport is not None:
            if self._queue:
                self._enqueue(envelope)
                self._flush_queue()
            else:
                self._transmit(envelope)
        else:
            self._enqueue(envelope)
        return message_id

    def ping(self) -> str:
        return self.send(MessageType.PING)

    def force_reconnect(self) -> None:
        if self._state is ConnectionState.CLOSED:
            return
        logger.info("forcing reconnect")
        was_connected = self._state is ConnectionState.CONNECTED
        self._timers.cancel(_TIMER_RECONNECT)
        self._timers.cancel(_TIMER_CONNECT_TIMEOUT)
        self._stop_heartbeat()
        self._drop_transport(NORMAL_CLOSURE, "forced reconnect")
        self._set_state(ConnectionState.DISCONNECTED)
        if was_connected:
            self.events.emit(
                "disconnected",
                {"code": NORMAL_CLOSURE, "reason": "forced reconnect", "was_clean": True},
            )
        self._reconnect_attempts = 0
        self.connect()

    def disconnect(self) -> None:
        if self._state is ConnectionState.CLOSED:
            return
        logger.info("disconnecting permanently")
        self._max_reconnect_attempts = 0
        self._timers.close()
        self._pending.clear()
        self._drop_transport(NORMAL_CLOSURE, "client disconnect")
        self._set_state(ConnectionState.CLOSED)
        self.events.emit(
            "disconnected",
            {
                "code": NORMAL_CLOSURE,
                "reason": "client disconnect",
                "was_clean": True,
                "permanent": True,
            },
        )

    def destroy(self) -> None:
        self.disconnect()
        self._queue.clear()
        self._pending.clear()
        self.events.clear()

    def get_stats(self) -> ConnectionStats:
        return ConnectionStats(
            state=self._state,
            is_connected=self.is_connected,
            reconnect_attempts=self._reconnect_attempts,
            max_reconnect_attempts=self._max_reconnect_attempts,
            last_connect_time=self._last_connect_time,
            queued_messages=len(self._queue),
            pending_messages=len(self._pending),
            active_timers=len(self._timers),
        )

    def _set_state(self, state: ConnectionState) -> None:
        previous = self._state
        if previous is state:
            return
        self._state = state
        logger.debug("state %s -> %s", previous.value, state.value)
        self.events.emit("state_changed", {"previous": previous.value, "state": state.value})

    def _drop_transport(self, code: int, reason: str) -> None:
        transport = self._transport
        self._transport = None
        # callbacks of the dropped transport must not reach this manager
        self._generation += 1
        if transport is None:
            return
        try:
            transport.close(code, reason)
        except Exception:  # noqa: BLE001
            logger.debug("transport close failed", exc_info=True)

    def _on_transport_open(self, generation: int) -> None:
        if generation != self._generation or self._state is not ConnectionState.CONNECTING:
            return
        self._timers.cancel(_TIMER_CONNECT_TIMEOUT)
        self._reconnect_attempts = 0
        self._last_connect_time = utc_iso_now()
        self._set_state(ConnectionState.CONNECTED)
        logger.info("connected to %s", self.config.url)
        self._start_heartbeat()
        self._flush_queue()
        self.events.emit(
            "connected",
            {"timestamp": self._last_connect_time, "reconnect_attempts": 0},
        )

    def _on_transport_message(self, generation: int, data: str) -> None:
        if generation != self._generation:
            return
        try:
            envelope = parse_envelope(data)
        except EnvelopeError as exc:
            logger.warning("dropping malformed frame: %s", exc)
            self.events.emit("message_error", {"error": str(exc), "raw": data})
            return
        message_type = str(envelope["type"])
        logger.debug("received %s", sanitize_record(envelope))
        if message_type == MessageType.PING and self._state is ConnectionState.CONNECTED:
            self.send(MessageType.PONG, {"replyTo": envelope.get("messageId")})
        event_name = _DISPATCH_EVENTS.get(message_type)
        if event_name is None:
            logger.info("unknown message type: %s", message_type)
            self.events.emit("unknown_message", {"type": message_type, "envelope": envelope})
            return
        payload: dict[str, JSONValue] = dict(envelope)
        if message_type in _CORRELATED_RESPONSES:
            message_id = envelope.get("messageId")
            payload["correlated"] = isinstance(message_id, str) and self._resolve_pending(
                message_id
            )
        self.events.emit(event_name, payload)

    def _on_transport_close(self, generation: int, code: int, reason: str) -> None:
        if generation != self._generation:
            return
        was_connecting = self._state is ConnectionState.CONNECTING
        self._transport = None
        self._generation += 1
        self._timers.cancel(_TIMER_CONNECT_TIMEOUT)
        self._stop_heartbeat()
        if was_connecting:
            self._handle_connection_error(
                TransportError(f"connection closed during handshake ({code})"),
            )
            return
        logger.info("connection closed: %s %s", code, reason)
        self._set_state(ConnectionState.DISCONNECTED)
        self.events.emit(
            "disconnected",
            {"code": code, "reason": reason, "was_clean": code == NORMAL_CLOSURE},
        )
        if code != NORMAL_CLOSURE:
            self._schedule_reconnect_or_give_up()

    def _on_transport_error(self, generation: int, error: BaseException) -> None:
        if generation != self._generation:
            return
        logger.warning("transport error: %s", error)
        if self._state is ConnectionState.CONNECTING:
            self._drop_transport(NORMAL_CLOSURE, "transport error")
            self._handle_connection_error(error)
            return
        self.events.emit(
            "connection_error",
            {"error": str(error), "attempt": self._reconnect_attempts},
        )

    def _on_connect_timeout(self, generation: int) -> None:
        if generation != self._generation or self._state is not ConnectionState.CONNECTING:
            return
        logger.warning("connect timeout after %ss", self.config.connect_timeout)
        self._drop_transport(NORMAL_CLOSURE, "connect timeout")
        self._handle_connection_error(TransportError("connect timeout"))

    def _handle_connection_error(self, error: BaseException) -> None:
        self._timers.cancel(_TIMER_CONNECT_TIMEOUT)
        self._stop_heartbeat()
        self._set_state(ConnectionState.DISCONNECTED)
        self.events.emit(
            "connection_error",
            {"error": str(error), "attempt": self._reconnect_attempts},
        )
        self._schedule_reconnect_or_give_up()

    def _schedule_reconnect_or_give_up(self) -> None:
        if self._state is ConnectionState.CLOSED:
            return
        if self._reconnect_attempts < self._max_reconnect_attempts:
            self._schedule_reconnect()
            return
        logger.error("max reconnect attempts reached (%s)", self._reconnect_attempts)
        self.events.emit(
            "max_reconnect_attempts_reached",
            {
                "attempts": self._reconnect_attempts,
                "max_attempts": self._max_reconnect_attempts,
            },
        )

    def _schedule_reconnect(self) -> None:
        self._reconnect_attempts += 1
        delay = compute_backoff_delay(
            self.config.reconnect_interval,
            self._reconnect_attempts,
            self.config.max_reconnect_delay,
        )
        logger.info(
            "reconnect %s/%s in %.2fs",
            self._reconnect_attempts,
            self._max_reconnect_attempts,
            delay,
        )
        self.events.emit(
            "reconnect_scheduled",
            {
                "attempt": self._reconnect_attempts,
                "delay": delay,
                "max_attempts": self._max_reconnect_attempts,
            },
        )
        self._timers.schedule(_TIMER_RECONNECT, delay, self._on_reconnect_timer)

    def _on_reconnect_timer(self) -> None:
        if self._state is ConnectionState.DISCONNECTED:
            self.connect()

    def _start_heartbeat(self) -> None:
        self._timers.schedule(_TIMER_HEARTBEAT, self.config.heartbeat_interval, self._on_heartbeat)

    def _stop_heartbeat(self) -> None:
        self._timers.cancel(_TIMER_HEARTBEAT)

    def _on_heartbeat(self) -> None:
        if self._state is not ConnectionState.CONNECTED:
            return
        self.ping()
        self._start_heartbeat()

    def _enqueue(self, envelope: dict[str, JSONValue], *, front: bool = False) -> None:
        if len(self._queue) >= self.config.queue_max_size:
            if front:
                # the re-queued frame is older than everything already queued
                self._emit_dropped(envelope)
                return
            self._emit_dropped(self._queue.popleft())
        if front:
            self._queue.appendleft(envelope)
        else:
            self._queue.append(envelope)
        logger.debug(
            "queued %s (%s/%s)",
            envelope.get("type"),
            len(self._queue),
            self.config.queue_max_size,
        )
        self.events.emit(
            "message_queued",
            {
                "message_id": envelope.get("messageId"),
                "type": envelope.get("type"),
                "queue_size": len(self._queue),
                "max_size": self.config.queue_max_size,
            },
        )

    def _emit_dropped(self, envelope: dict[str, JSONValue]) -> None:
        logger.warning("outbound queue full, dropping %s", envelope.get("messageId"))
        self.events.emit(
            "message_dropped",
            {
                "message_id": envelope.get("messageId"),
                "type": envelope.get("type"),
                "envelope": envelope,
            },
        )

    def _flush_queue(self) -> None:
        if not self._queue:
            return
        logger.info("flushing %s queued messages", len(self._queue))
        while self._queue and self._state is ConnectionState.CONNECTED:
            envelope = self._queue.popleft()
            if not self._transmit(envelope):
                break

    def _transmit(self, envelope: dict[str, JSONValue]) -> bool:
        transport = self._transport
        message_type = str(envelope.get("type"))
        message_id = str(envelope.get("messageId"))
        try:
            if transport is None:
                raise TransportError("no active transport")
            transport.send(encode_envelope(envelope))
        except Exception as exc:  # noqa: BLE001
            logger.warning("send of %s failed: %s", message_id, exc)
            self._enqueue(envelope, front=True)
            self.events.emit(
                "send_error",
                {"message_id": message_id, "type": message_type, "error": str(exc)},
            )
            return False
        logger.debug("sent %s", sanitize_record(envelope))
        if message_type in self._reply_expected_types:
            self._register_pending(message_id, message_type)
        self.events.emit(
            "message_sent",
            {"message_id": message_id, "type": message_type, "envelope": envelope},
        )
        return True

    def _register_pending(self, message_id: str, message_type: str) -> None:
        timer_key = f"{_TIMER_MESSAGE_PREFIX}{message_id}"
        self._pending[message_id] = PendingRequest(
            message_id=message_id,
            message_type=message_type,
            sent_at=utc_iso_now(),
            timer_key=timer_key,
        )
        self._timers.schedule(
            timer_key,
            self.config.message_timeout,
            lambda: self._on_message_timeout(message_id),
        )

    def _resolve_pending(self, message_id: str) -> bool:
        pending = self._pending.pop(message_id, None)
        if pending is None:
            return False
        self._timers.cancel(pending.timer_key)
        return True

    def _on_message_timeout(self, message_id: str) -> None:
        pending = self._pending.pop(message_id, None)
        if pending is None:
            return
        logger.warning("no response for %s within %ss", message_id, self.config.message_timeout)
        self.events.emit(
            "message_timeout",
            {
                "message_id": message_id,
                "type": pending.message_type,
                "sent_at": pending.sent_at,
                "timestamp": utc_iso_now(),
            },
        )
