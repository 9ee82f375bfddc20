from __future__ import annotations

from typing import Any

import pytest

from config.chat_server_config import ChatServerConfig
from llm.brain_factory import create_brain, model_config_from_server
from llm.echo_brain import EchoBrain
from llm.local_http_brain import LocalHttpBrain
from llm.openrouter_brain import OpenRouterBrain
from llm.types import ModelConfig
from shared.models import ChatTurn


def _mock_response(payload: Any):
    class Response:
        status_code = 200

        def json(self) -> Any:
            return payload

        def raise_for_status(self) -> None:
            return None

    return Response()


def test_openrouter_generate_injects_system_prompt(monkeypatch) -> None:
    calls: dict[str, Any] = {}

    def fake_post(url, json, headers, timeout):
        calls["url"] = url
        calls["json"] = json
        calls["headers"] = headers
        return _mock_response(
            {
                "model": "vendor/test-model",
                "choices": [{"message": {"content": "hi"}}],
                "usage": {"prompt_tokens": 1, "completion_tokens": 1, "total_tokens": 2},
            }
        )

    monkeypatch.setattr("llm.openai_compatible.requests.post", fake_post)
    config = ModelConfig(
        provider="openrouter",
        model="test-model",
        temperature=0.1,
        system_prompt="Be helpful.",
    )
    brain = OpenRouterBrain(api_key="test-key", default_config=config)

    result = brain.generate([ChatTurn(role="user", content="ping")])

    assert result.text == "hi"
    assert result.model == "vendor/test-model"
    assert result.usage is not None
    assert result.usage.to_dict() == {"promptTokens": 1, "completionTokens": 1, "totalTokens": 2}
    assert calls["url"] == "https://openrouter.ai/api/v1/chat/completions"
    assert calls["headers"]["Authorization"] == "Bearer test-key"
    assert calls["json"]["model"] == "test-model"
    assert calls["json"]["messages"] == [
        {"role": "system", "content": "Be helpful."},
        {"role": "user", "content": "ping"},
    ]


def test_local_http_generate(monkeypatch) -> None:
    calls: dict[str, Any] = {}

    def fake_post(url, json, headers, timeout):
        calls["url"] = url
        calls["json"] = json
        calls["headers"] = headers
        return _mock_response({"choices": [{"message": {"content": "pong"}}]})

    monkeypatch.setattr("llm.openai_compatible.requests.post", fake_post)
    monkeypatch.delenv("LOCAL_LLM_API_KEY", raising=False)
    config = ModelConfig(
        provider="local",
        model="local-model",
        temperature=0.2,
        base_url="http://localhost:9999/v1/chat/completions",
    )
    brain = LocalHttpBrain(default_config=config)

    result = brain.generate([ChatTurn(role="user", content="hello")])

    assert result.text == "pong"
    assert result.model == "local-model"
    assert result.usage is None
    assert calls["url"] == "http://localhost:9999/v1/chat/completions"
    assert "Authorization" not in calls["headers"]


def test_malformed_completion_raises(monkeypatch) -> None:
    monkeypatch.setattr(
        "llm.openai_compatible.requests.post",
        lambda url, json, headers, timeout: _mock_response({"choices": []}),
    )
    brain = LocalHttpBrain(default_config=ModelConfig(provider="local", model="m"))
    with pytest.raises(RuntimeError):
        brain.generate([ChatTurn(role="user", content="hello")])


def test_openrouter_without_key_raises(monkeypatch) -> None:
    monkeypatch.setenv("OPENROUTER_API_KEY", "")
    config = ModelConfig(provider="openrouter", model="test-model")
    brain = OpenRouterBrain(api_key=None, default_config=config)
    with pytest.raises(RuntimeError):
        brain.generate([ChatTurn(role="user", content="ping")])


def test_echo_brain_answers_last_user_turn() -> None:
    brain = EchoBrain(default_config=ModelConfig(provider="echo", model="echo-1"))
    result = brain.generate(
        [
            ChatTurn(role="user", content="first"),
            ChatTurn(role="assistant", content="echo: first"),
            ChatTurn(role="user", content="second"),
        ]
    )
    assert result.text == "echo: second"
    assert result.model == "echo-1"
    assert result.usage is not None
    assert result.usage.total_tokens == result.usage.prompt_tokens + result.usage.completion_tokens

    with pytest.raises(RuntimeError):
        brain.generate([])


def test_factory_builds_provider_from_server_config() -> None:
    echo = create_brain(model_config_from_server(ChatServerConfig()))
    assert isinstance(echo, EchoBrain)

    openrouter = create_brain(
        model_config_from_server(ChatServerConfig(provider="openrouter", model="x/y")),
        api_key="k",
    )
    assert isinstance(openrouter, OpenRouterBrain)
    assert openrouter.api_key == "k"

    with pytest.raises(ValueError):
        model_config_from_server(ChatServerConfig(provider="xai"))
