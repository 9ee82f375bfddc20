from __future__ import annotations

import math
from collections.abc import Iterable

from shared.models import Message

DEFAULT_CHARS_PER_TOKEN = 4


def estimate_tokens(text: str | None, chars_per_token: int = DEFAULT_CHARS_PER_TOKEN) -> int:
    # грубая оценка: ~4 символа на токен, без настоящего токенизатора
    if not text:
        return 0
    return math.ceil(len(text) / chars_per_token)


def total_tokens(messages: Iterable[Message]) -> int:
    return sum(message.token_count for message in messages)


def fit_suffix(messages: list[Message], budget: int) -> list[Message]:
    """Самый длинный хвост списка, суммарная оценка которого не превышает budget."""
    available = budget
    start = len(messages)
    for index in range(len(messages) - 1, -1, -1):
        cost = messages[index].token_count
        if cost > available:
            break
        available -= cost
        start = index
    return messages[start:]
