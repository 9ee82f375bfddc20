from __future__ import annotations

import json
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Final

from shared.errors import EnvelopeError
from shared.models import JSONValue
from shared.sanitize import safe_json_loads


class MessageType:
    PING: Final[str] = "ping"
    PONG: Final[str] = "pong"
    CONNECTION: Final[str] = "connection"
    CHAT: Final[str] = "chat"
    CHAT_RESPONSE: Final[str] = "chat_response"
    CHAT_ERROR: Final[str] = "chat_error"
    TYPING: Final[str] = "typing"
    SESSION_START: Final[str] = "session_start"
    SESSION_STARTED: Final[str] = "session_started"
    SESSION_END: Final[str] = "session_end"
    SESSION_ENDED: Final[str] = "session_ended"
    SESSION_RESET: Final[str] = "session_reset"
    SESSION_INFO: Final[str] = "session_info"
    SESSION_ERROR: Final[str] = "session_error"
    SYSTEM: Final[str] = "system"
    ERROR: Final[str] = "error"


_TYPE_ALIASES: Final[dict[str, str]] = {"chatResponse": MessageType.CHAT_RESPONSE}
_RESERVED_KEYS: Final[frozenset[str]] = frozenset({"type", "messageId"})


def utc_iso_now() -> str:
    return datetime.now(timezone.utc).isoformat()  # noqa: UP017


def normalize_type(message_type: str) -> str:
    cleaned = message_type.strip()
    return _TYPE_ALIASES.get(cleaned, cleaned)


def build_envelope(
    message_type: str,
    message_id: str,
    payload: Mapping[str, JSONValue] | None = None,
) -> dict[str, JSONValue]:
    envelope: dict[str, JSONValue] = {
        "type": message_type,
        "messageId": message_id,
        "timestamp": utc_iso_now(),
    }
    for key, value in (payload or {}).items():
        if key in _RESERVED_KEYS:
            continue
        envelope[key] = value
    return envelope


def encode_envelope(envelope: Mapping[str, JSONValue]) -> str:
    return json.dumps(envelope, ensure_ascii=False)


def parse_envelope(raw: str | bytes) -> dict[str, JSONValue]:
    parsed = safe_json_loads(raw)
    if parsed is None:
        raise EnvelopeError("invalid JSON frame", raw=raw)
    if not isinstance(parsed, dict):
        raise EnvelopeError("frame must be a JSON object", raw=raw)
    message_type = parsed.get("type")
    if not isinstance(message_type, str) or not message_type.strip():
        raise EnvelopeError("frame has no type", raw=raw)
    envelope: dict[str, JSONValue] = {str(key): value for key, value in parsed.items()}
    envelope["type"] = normalize_type(message_type)
    return envelope
