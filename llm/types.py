from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

from shared.models import JSONValue

ProviderName = Literal["echo", "openrouter", "local"]


@dataclass(frozen=True)
class ModelConfig:
    provider: ProviderName
    model: str
    temperature: float = 0.7
    max_tokens: int | None = None
    base_url: str | None = None
    api_key: str | None = None
    extra_headers: dict[str, str] = field(default_factory=dict)
    system_prompt: str | None = None


@dataclass(frozen=True)
class LLMUsage:
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int

    def to_dict(self) -> dict[str, int]:
        return {
            "promptTokens": self.prompt_tokens,
            "completionTokens": self.completion_tokens,
            "totalTokens": self.total_tokens,
        }


@dataclass
class LLMResult:
    text: str
    model: str
    usage: LLMUsage | None = None
    raw: dict[str, JSONValue] | None = None
