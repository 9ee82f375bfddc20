from __future__ import annotations

import os
from typing import Final

from llm.openai_compatible import OpenAICompatibleBrain
from llm.types import ModelConfig

DEFAULT_LOCAL_ENDPOINT: Final[str] = "http://localhost:11434/v1/chat/completions"


class LocalHttpBrain(OpenAICompatibleBrain):
    """Локальный OpenAI-совместимый эндпоинт (Ollama, LM Studio)."""

    label = "локального LLM"

    def __init__(
        self,
        default_config: ModelConfig,
        base_url: str | None = None,
        api_key: str | None = None,
    ) -> None:
        super().__init__(default_config)
        self.base_url = (
            base_url
            or default_config.base_url
            or os.getenv("LOCAL_LLM_URL")
            or DEFAULT_LOCAL_ENDPOINT
        )
        self.api_key = api_key or default_config.api_key or os.getenv("LOCAL_LLM_API_KEY")

    def endpoint(self) -> str:
        return self.base_url

    def build_headers(self, config: ModelConfig) -> dict[str, str]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        headers.update(config.extra_headers)
        return headers
