from __future__ import annotations

from llm.brain_base import Brain
from llm.types import LLMResult, LLMUsage, ModelConfig
from memory.token_estimator import estimate_tokens
from shared.models import ChatTurn


class EchoBrain(Brain):
    """Офлайн-провайдер: повторяет последнюю реплику пользователя."""

    def generate(self, turns: list[ChatTurn], config: ModelConfig | None = None) -> LLMResult:
        cfg = self._resolve_config(config)
        last_user = next((turn for turn in reversed(turns) if turn.role == "user"), None)
        if last_user is None:
            raise RuntimeError("Нет реплики пользователя для ответа.")
        text = f"echo: {last_user.content}"
        prompt_tokens = sum(estimate_tokens(turn.content) for turn in turns)
        completion_tokens = estimate_tokens(text)
        return LLMResult(
            text=text,
            model=cfg.model,
            usage=LLMUsage(
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=prompt_tokens + completion_tokens,
            ),
        )
