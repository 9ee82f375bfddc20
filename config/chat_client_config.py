from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, replace
from pathlib import Path

DEFAULT_PATH = Path("config/chat_client.json")
DEFAULT_WS_URL = "ws://127.0.0.1:8000/ws"

DEFAULT_RECONNECT_INTERVAL = 3.0
DEFAULT_MAX_RECONNECT_DELAY = 30.0
DEFAULT_MAX_RECONNECT_ATTEMPTS = 10
DEFAULT_CONNECT_TIMEOUT = 10.0
DEFAULT_HEARTBEAT_INTERVAL = 30.0
DEFAULT_MESSAGE_TIMEOUT = 30.0
DEFAULT_QUEUE_MAX_SIZE = 100
DEFAULT_REPLY_EXPECTED_TYPES = ("chat", "session_start")

DEFAULT_MAX_TOKENS = 4000
DEFAULT_RESERVE_TOKENS = 500
DEFAULT_MAX_SESSIONS = 10
DEFAULT_STORAGE_KEY = "chatbot_history"
DEFAULT_CHARS_PER_TOKEN = 4


@dataclass(frozen=True)
class ConnectionConfig:
    url: str = DEFAULT_WS_URL
    reconnect_interval: float = DEFAULT_RECONNECT_INTERVAL
    max_reconnect_delay: float = DEFAULT_MAX_RECONNECT_DELAY
    max_reconnect_attempts: int = DEFAULT_MAX_RECONNECT_ATTEMPTS
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL
    message_timeout: float = DEFAULT_MESSAGE_TIMEOUT
    queue_max_size: int = DEFAULT_QUEUE_MAX_SIZE
    reply_expected_types: tuple[str, ...] = DEFAULT_REPLY_EXPECTED_TYPES

    def __post_init__(self) -> None:
        positive = {
            "reconnect_interval": self.reconnect_interval,
            "max_reconnect_delay": self.max_reconnect_delay,
            "connect_timeout": self.connect_timeout,
            "heartbeat_interval": self.heartbeat_interval,
            "message_timeout": self.message_timeout,
            "queue_max_size": self.queue_max_size,
        }
        for name, value in positive.items():
            if value <= 0:
                raise ValueError(f"connection.{name} должен быть положительным.")
        if self.max_reconnect_attempts < 0:
            raise ValueError("connection.max_reconnect_attempts должен быть >= 0.")

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> ConnectionConfig:
        url = data.get("url", DEFAULT_WS_URL)
        if not isinstance(url, str) or not url.strip():
            raise ValueError("connection.url должен быть непустой строкой.")
        reply_types_raw = data.get("reply_expected_types", list(DEFAULT_REPLY_EXPECTED_TYPES))
        if not isinstance(reply_types_raw, list) or not all(
            isinstance(item, str) and item.strip() for item in reply_types_raw
        ):
            raise ValueError("connection.reply_expected_types должен быть списком строк.")
        max_attempts = data.get("max_reconnect_attempts", DEFAULT_MAX_RECONNECT_ATTEMPTS)
        if not isinstance(max_attempts, int) or isinstance(max_attempts, bool) or max_attempts < 0:
            raise ValueError("connection.max_reconnect_attempts должен быть int >= 0.")
        return cls(
            url=url.strip(),
            reconnect_interval=_read_float(data, "reconnect_interval", DEFAULT_RECONNECT_INTERVAL),
            max_reconnect_delay=_read_float(
                data,
                "max_reconnect_delay",
                DEFAULT_MAX_RECONNECT_DELAY,
            ),
            max_reconnect_attempts=max_attempts,
            connect_timeout=_read_float(data, "connect_timeout", DEFAULT_CONNECT_TIMEOUT),
            heartbeat_interval=_read_float(data, "heartbeat_interval", DEFAULT_HEARTBEAT_INTERVAL),
            message_timeout=_read_float(data, "message_timeout", DEFAULT_MESSAGE_TIMEOUT),
            queue_max_size=_read_int(data, "queue_max_size", DEFAULT_QUEUE_MAX_SIZE),
            reply_expected_types=tuple(item.strip() for item in reply_types_raw),
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "url": self.url,
            "reconnect_interval": self.reconnect_interval,
            "max_reconnect_delay": self.max_reconnect_delay,
            "max_reconnect_attempts": self.max_reconnect_attempts,
            "connect_timeout": self.connect_timeout,
            "heartbeat_interval": self.heartbeat_interval,
            "message_timeout": self.message_timeout,
            "queue_max_size": self.queue_max_size,
            "reply_expected_types": list(self.reply_expected_types),
        }


@dataclass(frozen=True)
class HistoryConfig:
    max_tokens: int = DEFAULT_MAX_TOKENS
    reserve_tokens: int = DEFAULT_RESERVE_TOKENS
    max_sessions: int = DEFAULT_MAX_SESSIONS
    storage_key: str = DEFAULT_STORAGE_KEY
    chars_per_token: int = DEFAULT_CHARS_PER_TOKEN

    def __post_init__(self) -> None:
        if self.reserve_tokens < 0:
            raise ValueError("history.reserve_tokens не может быть отрицательным.")
        if self.reserve_tokens >= self.max_tokens:
            raise ValueError("history.reserve_tokens должен быть меньше max_tokens.")
        if self.max_sessions <= 0:
            raise ValueError("history.max_sessions должен быть положительным.")
        if self.chars_per_token <= 0:
            raise ValueError("history.chars_per_token должен быть положительным.")

    @property
    def token_budget(self) -> int:
        return self.max_tokens - self.reserve_tokens

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> HistoryConfig:
        storage_key = data.get("storage_key", DEFAULT_STORAGE_KEY)
        if not isinstance(storage_key, str) or not storage_key.strip():
            raise ValueError("history.storage_key должен быть непустой строкой.")
        reserve = data.get("reserve_tokens", DEFAULT_RESERVE_TOKENS)
        if not isinstance(reserve, int) or isinstance(reserve, bool):
            raise ValueError("history.reserve_tokens должен быть int.")
        return cls(
            max_tokens=_read_int(data, "max_tokens", DEFAULT_MAX_TOKENS),
            reserve_tokens=reserve,
            max_sessions=_read_int(data, "max_sessions", DEFAULT_MAX_SESSIONS),
            storage_key=storage_key.strip(),
            chars_per_token=_read_int(data, "chars_per_token", DEFAULT_CHARS_PER_TOKEN),
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "max_tokens": self.max_tokens,
            "reserve_tokens": self.reserve_tokens,
            "max_sessions": self.max_sessions,
            "storage_key": self.storage_key,
            "chars_per_token": self.chars_per_token,
        }


@dataclass(frozen=True)
class ChatClientConfig:
    connection: ConnectionConfig = field(default_factory=ConnectionConfig)
    history: HistoryConfig = field(default_factory=HistoryConfig)
    storage_path: str | None = None

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "connection": self.connection.to_dict(),
            "history": self.history.to_dict(),
        }
        if self.storage_path is not None:
            payload["storage_path"] = self.storage_path
        return payload


def load_chat_client_config(path: Path = DEFAULT_PATH) -> ChatClientConfig:
    if not path.exists():
        return ChatClientConfig()
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ValueError("chat_client.json должен содержать объект.")
        connection_raw = data.get("connection", {})
        history_raw = data.get("history", {})
        if not isinstance(connection_raw, dict) or not isinstance(history_raw, dict):
            raise ValueError("connection и history должны быть объектами.")
        storage_path = data.get("storage_path")
        if storage_path is not None and not isinstance(storage_path, str):
            raise ValueError("storage_path должен быть строкой.")
        return ChatClientConfig(
            connection=ConnectionConfig.from_dict(connection_raw),
            history=HistoryConfig.from_dict(history_raw),
            storage_path=storage_path,
        )
    except Exception as exc:  # noqa: BLE001
        raise RuntimeError(f"Ошибка чтения chat_client.json: {exc}") from exc


def save_chat_client_config(config: ChatClientConfig, path: Path = DEFAULT_PATH) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(config.to_dict(), ensure_ascii=False, indent=2), encoding="utf-8")


def resolve_chat_client_config(path: Path = DEFAULT_PATH) -> ChatClientConfig:
    config = load_chat_client_config(path)
    connection = config.connection
    history = config.history

    url_raw = os.getenv("CHATLINK_WS_URL")
    if isinstance(url_raw, str) and url_raw.strip():
        connection = replace(connection, url=url_raw.strip())

    attempts_raw = os.getenv("CHATLINK_MAX_RECONNECT_ATTEMPTS")
    if isinstance(attempts_raw, str) and attempts_raw.strip():
        try:
            attempts = int(attempts_raw.strip())
        except ValueError as exc:
            raise ValueError("CHATLINK_MAX_RECONNECT_ATTEMPTS должен быть int.") from exc
        connection = replace(connection, max_reconnect_attempts=max(attempts, 0))

    max_tokens_raw = os.getenv("CHATLINK_HISTORY_MAX_TOKENS")
    if isinstance(max_tokens_raw, str) and max_tokens_raw.strip():
        try:
            max_tokens = int(max_tokens_raw.strip())
        except ValueError as exc:
            raise ValueError("CHATLINK_HISTORY_MAX_TOKENS должен быть int.") from exc
        history = replace(history, max_tokens=max_tokens)

    return ChatClientConfig(
        connection=connection,
        history=history,
        storage_path=config.storage_path,
    )


def _read_int(data: dict[str, object], key: str, default: int) -> int:
    raw = data.get(key, default)
    if not isinstance(raw, int) or isinstance(raw, bool):
        raise ValueError(f"{key} должен быть int")
    if raw <= 0:
        raise ValueError(f"{key} должен быть положительным")
    return raw


def _read_float(data: dict[str, object], key: str, default: float) -> float:
    raw = data.get(key, default)
    if not isinstance(raw, (int, float)) or isinstance(raw, bool):
        raise ValueError(f"{key} должен быть числом")
    if raw <= 0:
        raise ValueError(f"{key} должен быть положительным")
    return float(raw)
