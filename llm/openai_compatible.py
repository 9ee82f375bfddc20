from __future__ import annotations

from typing import Final

import requests

from llm.brain_base import Brain, with_system_prompt
from llm.types import LLMResult, LLMUsage, ModelConfig
from shared.models import ChatTurn, JSONValue

DEFAULT_TIMEOUT: Final[int] = 30


class OpenAICompatibleBrain(Brain):
    """POST /chat/completions в формате OpenAI; наследники задают адрес и заголовки."""

    label: str = "LLM"

    def endpoint(self) -> str:
        raise NotImplementedError

    def build_headers(self, config: ModelConfig) -> dict[str, str]:
        raise NotImplementedError

    def generate(self, turns: list[ChatTurn], config: ModelConfig | None = None) -> LLMResult:
        cfg = self._resolve_config(config)
        headers = self.build_headers(cfg)
        payload: dict[str, JSONValue] = {
            "model": cfg.model,
            "messages": [turn.to_dict() for turn in with_system_prompt(turns, cfg.system_prompt)],
            "temperature": cfg.temperature,
        }
        if cfg.max_tokens is not None:
            payload["max_tokens"] = cfg.max_tokens

        response = requests.post(
            self.endpoint(),
            json=payload,
            headers=headers,
            timeout=DEFAULT_TIMEOUT,
        )
        response.raise_for_status()
        return self._parse_completion(response.json(), cfg)

    def _parse_completion(self, data_json: object, config: ModelConfig) -> LLMResult:
        if not isinstance(data_json, dict):
            raise RuntimeError(f"Некорректный ответ {self.label}.")
        data: dict[str, JSONValue] = data_json
        choices_raw = data.get("choices")
        if not isinstance(choices_raw, list) or not choices_raw:
            raise RuntimeError(f"Пустой ответ {self.label}.")
        first_choice = choices_raw[0]
        if not isinstance(first_choice, dict):
            raise RuntimeError("Некорректный формат choices.")
        message_raw = first_choice.get("message")
        if not isinstance(message_raw, dict):
            raise RuntimeError("Некорректный формат message.")
        content = str(message_raw.get("content") or "")

        usage: LLMUsage | None = None
        usage_block = data.get("usage")
        if isinstance(usage_block, dict):
            usage = LLMUsage(
                prompt_tokens=int(usage_block.get("prompt_tokens", 0)),
                completion_tokens=int(usage_block.get("completion_tokens", 0)),
                total_tokens=int(usage_block.get("total_tokens", 0)),
            )
        model = data.get("model")
        return LLMResult(
            text=content,
            model=model if isinstance(model, str) and model else config.model,
            usage=usage,
            raw=data,
        )
