from __future__ import annotations

import os
from typing import Final

from llm.openai_compatible import OpenAICompatibleBrain
from llm.types import ModelConfig

OPENROUTER_ENDPOINT: Final[str] = "https://openrouter.ai/api/v1/chat/completions"


class OpenRouterBrain(OpenAICompatibleBrain):
    label = "OpenRouter"

    def __init__(self, api_key: str | None, default_config: ModelConfig) -> None:
        super().__init__(default_config)
        self.api_key = api_key or os.getenv("OPENROUTER_API_KEY")

    def endpoint(self) -> str:
        return self.default_config.base_url or OPENROUTER_ENDPOINT

    def build_headers(self, config: ModelConfig) -> dict[str, str]:
        if not self.api_key:
            raise RuntimeError("Не задан OpenRouter API key (env OPENROUTER_API_KEY).")
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        headers.update(config.extra_headers)
        return headers
