from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Final

from client.connection_manager import ConnectionManager
from client.envelope import MessageType
from client.timers import Scheduler
from client.transport import AiohttpTransport, TransportFactory
from config.chat_client_config import ChatClientConfig
from memory.history_manager import HistoryManager
from memory.history_storage import KeyValueStorage, SQLiteKeyValueStorage
from shared.events import Event, EventBus
from shared.models import JSONValue

logger = logging.getLogger("ChatLink.ChatClient")

UNAVAILABLE_CONTENT: Final[str] = "Ответ недоступен"
_SCRIPT_RE: Final[re.Pattern[str]] = re.compile(
    r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE
)
_IFRAME_RE: Final[re.Pattern[str]] = re.compile(
    r"<iframe\b[^<]*(?:(?!</iframe>)<[^<]*)*</iframe>", re.IGNORECASE
)
_JS_SCHEME_RE: Final[re.Pattern[str]] = re.compile(r"javascript:", re.IGNORECASE)

_ERROR_MESSAGES: Final[dict[str, str]] = {
    "TIMEOUT": "Ответ занял больше времени, чем ожидалось. Попробуйте ещё раз.",
    "SERVICE_UNAVAILABLE": "Сервис временно недоступен.",
    "INVALID_MESSAGE": "Некорректное сообщение. Проверьте формат.",
    "INTERNAL_ERROR": "Внутренняя ошибка. Попробуйте ещё раз.",
}
_RETRY_DELAYS: Final[dict[str, float]] = {
    "TIMEOUT": 2.0,
    "SERVICE_UNAVAILABLE": 5.0,
    "INTERNAL_ERROR": 3.0,
}
DEFAULT_RETRY_DELAY: Final[float] = 1.0

# события соединения, которые клиент пробрасывает подписчикам как есть
_PASSTHROUGH_EVENTS: Final[tuple[str, ...]] = (
    "state_changed",
    "connected",
    "disconnected",
    "connection_error",
    "reconnect_scheduled",
    "max_reconnect_attempts_reached",
    "message_queued",
    "message_dropped",
    "message_timeout",
    "message_error",
    "send_error",
    "typing",
    "system_message",
    "session_ended",
    "session_error",
    "server_error",
    "unknown_message",
)


def sanitize_content(content: object) -> str:
    if not isinstance(content, str) or not content:
        return UNAVAILABLE_CONTENT
    cleaned = _SCRIPT_RE.sub("", content)
    cleaned = _IFRAME_RE.sub("", cleaned)
    cleaned = _JS_SCHEME_RE.sub("", cleaned)
    return cleaned.strip()


def normalize_usage(usage: object) -> dict[str, int] | None:
    if not isinstance(usage, dict):
        return None

    def _count(key: str) -> int:
        value = usage.get(key)
        if isinstance(value, bool) or not isinstance(value, int):
            return 0
        return value

    return {
        "promptTokens": _count("promptTokens"),
        "completionTokens": _count("completionTokens"),
        "totalTokens": _count("totalTokens"),
    }


def display_error_message(message: object, error_code: object) -> str:
    if isinstance(error_code, str) and error_code in _ERROR_MESSAGES:
        return _ERROR_MESSAGES[error_code]
    if isinstance(message, str) and message.strip():
        return message
    return "Неизвестная ошибка"


def retry_delay_for(error_code: object) -> float:
    if isinstance(error_code, str):
        return _RETRY_DELAYS.get(error_code, DEFAULT_RETRY_DELAY)
    return DEFAULT_RETRY_DELAY


@dataclass(frozen=True)
class ChatReply:
    message_id: str | None
    content: str
    usage: dict[str, int] | None
    metadata: dict[str, JSONValue]
    correlated: bool
    timestamp: str | None = None

    def to_dict(self) -> dict[str, JSONValue]:
        return asdict(self)


@dataclass(frozen=True)
class ChatFailure:
    message_id: str | None
    error_code: str | None
    message: str
    display_message: str
    can_retry: bool
    retry_delay: float
    correlated: bool

    def to_dict(self) -> dict[str, JSONValue]:
        return asdict(self)


@dataclass(frozen=True)
class SessionStartResult:
    success: bool
    session_id: str
    message_id: str
    context: dict[str, JSONValue] = field(default_factory=dict)
    error: str | None = None


class ChatClient:
    """Связка соединения и истории: отправляет реплики и сохраняет ответы."""

    def __init__(
        self,
        config: ChatClientConfig,
        *,
        transport_factory: TransportFactory | None = None,
        scheduler: Scheduler | None = None,
        storage: KeyValueStorage | None = None,
        auto_connect: bool = True,
    ) -> None:
        self.config = config
        self.events = EventBus()
        if storage is None and config.storage_path is not None:
            storage = SQLiteKeyValueStorage(Path(config.storage_path))
        self.history = HistoryManager(config.history, storage=storage)
        self.connection = ConnectionManager(
            config.connection,
            transport_factory=transport_factory or AiohttpTransport,
            scheduler=scheduler,
            auto_connect=False,
        )
        self._subscriptions = [
            self.connection.events.on("chat_response", self._on_chat_response),
            self.connection.events.on("chat_error", self._on_chat_error),
            self.connection.events.on("session_started", self._on_session_started),
            self.connection.events.on("session_reset", self._on_session_reset),
            self.connection.events.on("session_info", self._on_session_info),
        ]
        for name in _PASSTHROUGH_EVENTS:
            self._subscriptions.append(self.connection.events.on(name, self._forward))
        if auto_connect:
            self.connection.connect()

    @property
    def session_id(self) -> str | None:
        return self.history.session_id

    def send_chat_message(self, content: str) -> str | None:
        if not isinstance(content, str) or not content.strip():
            return None
        self.history.add_user_message(content)
        history_payload = self.history.prepare_api_payload()
        logger.debug("chat with %s history turns", len(history_payload))
        return self.connection.send(
            MessageType.CHAT,
            {
                "sessionId": self.history.session_id,
                "content": content.strip(),
                "history": history_payload,
            },
        )

    async def start_session(
        self,
        context: dict[str, JSONValue] | None = None,
        *,
        timeout: float | None = None,
    ) -> SessionStartResult:
        session_id = self.history.start_new_session(context)
        loop = asyncio.get_running_loop()
        outcome: asyncio.Future[tuple[str, dict[str, JSONValue]]] = loop.create_future()
        message_id = ""

        def _resolve(event: Event) -> None:
            reply_to = event.payload.get("messageId", event.payload.get("message_id"))
            if reply_to != message_id or outcome.done():
                return
            outcome.set_result((event.name, event.payload))

        subscriptions = [
            self.connection.events.on(name, _resolve)
            for name in ("session_started", "session_error", "server_error", "message_timeout")
        ]
        message_id = self.connection.send(
            MessageType.SESSION_START,
            {"sessionId": session_id, "context": dict(context or {})},
        )
        connection_config = self.config.connection
        wait_for = timeout
        if wait_for is None:
            wait_for = connection_config.connect_timeout + connection_config.message_timeout
        try:
            name, payload = await asyncio.wait_for(outcome, wait_for)
        except asyncio.TimeoutError:
            logger.warning("session_start %s got no answer in %ss", message_id, wait_for)
            return SessionStartResult(
                success=False,
                session_id=session_id,
                message_id=message_id,
                error="timeout",
            )
        finally:
            for subscription in subscriptions:
                subscription.cancel()

        if name == "session_started":
            server_context = payload.get("context")
            return SessionStartResult(
                success=True,
                session_id=session_id,
                message_id=message_id,
                context=dict(server_context) if isinstance(server_context, dict) else {},
            )
        if name == "message_timeout":
            error = "timeout"
        else:
            error_raw = payload.get("error", payload.get("message"))
            error = str(error_raw) if error_raw else "session error"
        return SessionStartResult(
            success=False,
            session_id=session_id,
            message_id=message_id,
            error=error,
        )

    def end_session(self) -> str | None:
        session_id = self.history.session_id
        self.history.end_session()
        if session_id is None:
            return None
        return self.connection.send(MessageType.SESSION_END, {"sessionId": session_id})

    def reset_session(self, context: dict[str, JSONValue] | None = None) -> str:
        session_id = self.history.start_new_session(context)
        return self.connection.send(
            MessageType.SESSION_RESET,
            {"sessionId": session_id, "context": dict(context or {})},
        )

    def update_session_context(self, updates: dict[str, JSONValue]) -> None:
        self.history.update_session_context(updates)

    def get_conversation_history(self) -> list[dict[str, str]]:
        return self.history.prepare_api_payload()

    def get_stats(self) -> dict[str, JSONValue]:
        connection = asdict(self.connection.get_stats())
        connection["state"] = self.connection.state.value
        return {
            "connection": connection,
            "history": asdict(self.history.get_session_info()),
            "persistence_enabled": self.history.persistence_enabled,
        }

    def close(self) -> None:
        for subscription in self._subscriptions:
            subscription.cancel()
        self._subscriptions.clear()
        self.connection.destroy()
        self.events.clear()

    def _forward(self, event: Event) -> None:
        self.events.emit(event.name, event.payload)

    def _on_chat_response(self, event: Event) -> None:
        payload = event.payload
        content = payload.get("content")
        message_id = payload.get("messageId")
        metadata_raw = payload.get("metadata")
        metadata: dict[str, JSONValue] = (
            {str(key): value for key, value in metadata_raw.items()}
            if isinstance(metadata_raw, dict)
            else {}
        )
        if isinstance(content, str) and content.strip():
            self.history.add_assistant_message(
                content,
                {
                    "messageId": message_id,
                    "usage": payload.get("usage"),
                    "model": metadata.get("model"),
                    "processingTime": metadata.get("processingTime"),
                },
            )
        else:
            logger.warning("chat_response %s without content", message_id)
        timestamp = payload.get("timestamp")
        reply = ChatReply(
            message_id=message_id if isinstance(message_id, str) else None,
            content=sanitize_content(content),
            usage=normalize_usage(payload.get("usage")),
            metadata=metadata,
            correlated=bool(payload.get("correlated")),
            timestamp=timestamp if isinstance(timestamp, str) else None,
        )
        self.events.emit("chat_response", reply.to_dict())

    def _on_chat_error(self, event: Event) -> None:
        payload = event.payload
        message_id = payload.get("messageId")
        error_code = payload.get("errorCode")
        message = payload.get("message", payload.get("error"))
        failure = ChatFailure(
            message_id=message_id if isinstance(message_id, str) else None,
            error_code=error_code if isinstance(error_code, str) else None,
            message=str(message) if message is not None else "",
            display_message=display_error_message(message, error_code),
            can_retry=payload.get("retryable") is not False,
            retry_delay=retry_delay_for(error_code),
            correlated=bool(payload.get("correlated")),
        )
        logger.info("chat error %s: %s", failure.error_code, failure.message)
        self.events.emit("chat_error", failure.to_dict())

    def _on_session_started(self, event: Event) -> None:
        context = event.payload.get("context")
        if isinstance(context, dict) and context:
            self.history.update_session_context({str(key): value for key, value in context.items()})
        self.events.emit("session_started", event.payload)

    def _on_session_reset(self, event: Event) -> None:
        self.history.clear_history()
        self.events.emit("session_reset", event.payload)

    def _on_session_info(self, event: Event) -> None:
        context = event.payload.get("context")
        if isinstance(context, dict):
            self.history.update_session_context({str(key): value for key, value in context.items()})
        self.events.emit("session_info", event.payload)
