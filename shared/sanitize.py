from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping
from typing import Any

from shared.models import JSONValue

SECRET_KEYS = {
    "api_key",
    "apikey",
    "authorization",
    "x-api-key",
    "token",
    "secret",
    "password",
}
PAYLOAD_KEYS = {"content", "history", "message", "formattedcontent"}
MAX_FIELD_PREVIEW = 120
MAX_RECORD_BYTES = 2048


def _to_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    try:
        return json.dumps(value, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(value)


def _preview(value: Any) -> dict[str, JSONValue]:
    text = _to_text(value)
    raw_bytes = text.encode("utf-8", errors="replace")
    preview = text[:MAX_FIELD_PREVIEW]
    if len(text) > MAX_FIELD_PREVIEW:
        preview += "…[truncated]"
    return {
        "preview": preview,
        "chars": len(text),
        "sha256": hashlib.sha256(raw_bytes).hexdigest()[:16],
    }


def _sanitize_value(key: str | None, value: Any) -> JSONValue:
    key_lower = key.lower() if isinstance(key, str) else ""
    if key_lower in SECRET_KEYS:
        return "[secret]"
    if key_lower in PAYLOAD_KEYS and value is not None:
        if key_lower == "history" and isinstance(value, list):
            return {"turns": len(value), **_preview(value)}
        return _preview(value)
    if isinstance(value, (bool, int, float)) or value is None:
        return value
    if isinstance(value, dict):
        return {str(k): _sanitize_value(str(k), v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize_value(key, item) for item in value]
    text = _to_text(value)
    if len(text) > MAX_FIELD_PREVIEW:
        return _preview(text)
    return text


def sanitize_record(
    record: Mapping[str, JSONValue],
    *,
    max_bytes: int = MAX_RECORD_BYTES,
) -> dict[str, JSONValue]:
    """Безопасное для логов представление кадра: контент и секреты не попадают в лог целиком."""
    sanitized = {str(k): _sanitize_value(str(k), v) for k, v in record.items()}
    encoded = json.dumps(sanitized, ensure_ascii=False).encode("utf-8", errors="replace")
    if len(encoded) <= max_bytes:
        return sanitized
    kept: dict[str, JSONValue] = {
        key: sanitized[key] for key in ("type", "messageId", "sessionId") if key in sanitized
    }
    kept["summary"] = _preview(sanitized)
    return kept


def safe_json_loads(raw: str | bytes) -> object | None:
    try:
        parsed: object = json.loads(raw)
        return parsed
    except (json.JSONDecodeError, UnicodeDecodeError, TypeError):
        return None
