from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8000
DEFAULT_MAX_MESSAGE_BYTES = 1_000_000
DEFAULT_PROVIDER = "echo"
DEFAULT_MODEL = "echo-1"
DEFAULT_PATH = Path("config/chat_server.json")
_PROVIDERS = {"echo", "openrouter", "local"}


@dataclass(frozen=True)
class ChatServerConfig:
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    max_message_bytes: int = DEFAULT_MAX_MESSAGE_BYTES
    provider: str = DEFAULT_PROVIDER
    model: str = DEFAULT_MODEL
    system_prompt: str | None = None

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "host": self.host,
            "port": self.port,
            "max_message_bytes": self.max_message_bytes,
            "provider": self.provider,
            "model": self.model,
        }
        if self.system_prompt is not None:
            payload["system_prompt"] = self.system_prompt
        return payload


def load_chat_server_config(path: Path = DEFAULT_PATH) -> ChatServerConfig:
    if not path.exists():
        return ChatServerConfig()
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except Exception as exc:  # noqa: BLE001
        raise RuntimeError(f"Ошибка чтения chat_server.json: {exc}") from exc
    if not isinstance(data, dict):
        raise ValueError("chat_server.json должен содержать объект.")
    host = data.get("host", DEFAULT_HOST)
    port = data.get("port", DEFAULT_PORT)
    max_message_bytes = data.get("max_message_bytes", DEFAULT_MAX_MESSAGE_BYTES)
    provider = data.get("provider", DEFAULT_PROVIDER)
    model = data.get("model", DEFAULT_MODEL)
    system_prompt = data.get("system_prompt")
    if not isinstance(host, str) or not host.strip():
        raise ValueError("chat_server.host должен быть непустой строкой.")
    if not isinstance(port, int):
        raise ValueError("chat_server.port должен быть int.")
    if not isinstance(max_message_bytes, int):
        raise ValueError("chat_server.max_message_bytes должен быть int.")
    if not isinstance(provider, str) or provider.strip() not in _PROVIDERS:
        raise ValueError(f"chat_server.provider должен быть одним из: {sorted(_PROVIDERS)}.")
    if not isinstance(model, str) or not model.strip():
        raise ValueError("chat_server.model должен быть непустой строкой.")
    if system_prompt is not None and not isinstance(system_prompt, str):
        raise ValueError("chat_server.system_prompt должен быть строкой.")
    return ChatServerConfig(
        host=host.strip(),
        port=port,
        max_message_bytes=max_message_bytes,
        provider=provider.strip(),
        model=model.strip(),
        system_prompt=system_prompt,
    )


def resolve_chat_server_config(path: Path = DEFAULT_PATH) -> ChatServerConfig:
    config = load_chat_server_config(path)
    host_raw = os.getenv("CHATLINK_HOST")
    port_raw = os.getenv("CHATLINK_PORT")
    provider_raw = os.getenv("AI_PROVIDER")
    model_raw = os.getenv("AI_MODEL")
    prompt_raw = os.getenv("AI_SYSTEM_PROMPT")

    host = config.host
    if isinstance(host_raw, str) and host_raw.strip():
        host = host_raw.strip()

    port = config.port
    if isinstance(port_raw, str) and port_raw.strip():
        try:
            port = int(port_raw.strip())
        except ValueError as exc:
            raise ValueError("CHATLINK_PORT должен быть int.") from exc

    provider = config.provider
    if isinstance(provider_raw, str) and provider_raw.strip():
        provider = provider_raw.strip().lower()
        if provider not in _PROVIDERS:
            raise ValueError(f"AI_PROVIDER должен быть одним из: {sorted(_PROVIDERS)}.")

    model = config.model
    if isinstance(model_raw, str) and model_raw.strip():
        model = model_raw.strip()

    system_prompt = config.system_prompt
    if isinstance(prompt_raw, str) and prompt_raw.strip():
        system_prompt = prompt_raw.strip()

    return ChatServerConfig(
        host=host,
        port=port,
        max_message_bytes=config.max_message_bytes,
        provider=provider,
        model=model,
        system_prompt=system_prompt,
    )
