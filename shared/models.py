from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Literal

JSONPrimitive = str | bytes | int | float | bool | None
JSONValue = JSONPrimitive | Sequence["JSONValue"] | Mapping[str, "JSONValue"]

MessageRole = Literal["user", "assistant"]


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSED = "closed"


@dataclass(frozen=True)
class ChatTurn:
    role: Literal["system", "user", "assistant"]
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class Message:
    """Одна реплика диалога; неизменяема после создания."""

    id: str
    session_id: str
    role: str
    content: str
    timestamp: str
    token_count: int
    metadata: dict[str, JSONValue] = field(default_factory=dict)

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "id": self.id,
            "sessionId": self.session_id,
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp,
            "tokenCount": self.token_count,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Message:
        message_id = data.get("id")
        session_id = data.get("sessionId")
        role = data.get("role")
        content = data.get("content")
        timestamp = data.get("timestamp")
        token_count = data.get("tokenCount")
        metadata = data.get("metadata")
        if not isinstance(message_id, str) or not message_id.strip():
            raise ValueError("id required")
        if not isinstance(session_id, str) or not session_id.strip():
            raise ValueError("sessionId required")
        if not isinstance(role, str) or not role.strip():
            raise ValueError("role required")
        if not isinstance(content, str):
            raise ValueError("content required")
        if not isinstance(timestamp, str) or not timestamp.strip():
            raise ValueError("timestamp required")
        if not isinstance(token_count, int) or isinstance(token_count, bool) or token_count < 0:
            raise ValueError("tokenCount must be non-negative int")
        if metadata is not None and not isinstance(metadata, dict):
            raise ValueError("metadata must be object or null")
        return cls(
            id=message_id,
            session_id=session_id,
            role=role.strip(),
            content=content,
            timestamp=timestamp,
            token_count=token_count,
            metadata={str(key): value for key, value in (metadata or {}).items()},
        )


@dataclass(frozen=True)
class PersistedSession:
    session_id: str
    messages: list[Message]
    context: dict[str, JSONValue]
    created_at: str
    updated_at: str

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "id": self.session_id,
            "messages": [message.to_dict() for message in self.messages],
            "context": dict(self.context),
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass(frozen=True)
class SessionInfo:
    session_id: str | None
    message_count: int
    total_tokens: int
    context: dict[str, JSONValue]
    created_at: str | None
    updated_at: str | None


@dataclass(frozen=True)
class ConnectionStats:
    state: ConnectionState
    is_connected: bool
    reconnect_attempts: int
    max_reconnect_attempts: int
    last_connect_time: str | None
    queued_messages: int
    pending_messages: int
    active_timers: int


@dataclass(frozen=True)
class PendingRequest:
    message_id: str
    message_type: str
    sent_at: str
    timer_key: str
