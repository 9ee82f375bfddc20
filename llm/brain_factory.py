from __future__ import annotations

from config.chat_server_config import ChatServerConfig
from llm.brain_base import Brain
from llm.echo_brain import EchoBrain
from llm.local_http_brain import LocalHttpBrain
from llm.openrouter_brain import OpenRouterBrain
from llm.types import ModelConfig


def create_brain(config: ModelConfig, api_key: str | None = None) -> Brain:
    if config.provider == "echo":
        return EchoBrain(default_config=config)
    if config.provider == "openrouter":
        return OpenRouterBrain(api_key=api_key or config.api_key, default_config=config)
    if config.provider == "local":
        return LocalHttpBrain(
            default_config=config,
            base_url=config.base_url,
            api_key=api_key or config.api_key,
        )
    raise ValueError(f"Неизвестный провайдер модели: {config.provider}")


def model_config_from_server(config: ChatServerConfig) -> ModelConfig:
    if config.provider not in ("echo", "openrouter", "local"):
        raise ValueError(f"Неизвестный провайдер модели: {config.provider}")
    return ModelConfig(
        provider=config.provider,  # type: ignore[arg-type]
        model=config.model,
        system_prompt=config.system_prompt,
    )
