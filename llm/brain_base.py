from __future__ import annotations

from abc import ABC, abstractmethod

from llm.types import LLMResult, ModelConfig
from shared.models import ChatTurn


class Brain(ABC):
    """Провайдер ответов для чата (echo, OpenRouter, локальный HTTP)."""

    def __init__(self, default_config: ModelConfig) -> None:
        self.default_config = default_config

    @abstractmethod
    def generate(self, turns: list[ChatTurn], config: ModelConfig | None = None) -> LLMResult:
        """Сгенерировать ответ на последнюю реплику пользователя."""
        raise NotImplementedError

    def _resolve_config(self, override: ModelConfig | None) -> ModelConfig:
        return override or self.default_config


def with_system_prompt(turns: list[ChatTurn], system_prompt: str | None) -> list[ChatTurn]:
    # системный промпт живёт только на сервере, клиентская история его не содержит
    if system_prompt and (not turns or turns[0].role != "system"):
        return [ChatTurn(role="system", content=system_prompt), *turns]
    return turns
