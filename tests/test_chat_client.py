from __future__ import annotations

import asyncio

from client.chat_client import (
    UNAVAILABLE_CONTENT,
    ChatClient,
    display_error_message,
    normalize_usage,
    retry_delay_for,
    sanitize_content,
)
from config.chat_client_config import ChatClientConfig, ConnectionConfig
from memory.history_storage import InMemoryKeyValueStorage
from shared.events import Event
from shared.models import ConnectionState
from tests.fakes import FakeTransportFactory, ManualScheduler


def _make_client(
    *,
    message_timeout: float = 30.0,
) -> tuple[ChatClient, FakeTransportFactory, ManualScheduler]:
    config = ChatClientConfig(
        connection=ConnectionConfig(
            url="ws://chat.test/ws",
            heartbeat_interval=1000.0,
            message_timeout=message_timeout,
        ),
    )
    factory = FakeTransportFactory()
    scheduler = ManualScheduler()
    client = ChatClient(
        config,
        transport_factory=factory,
        scheduler=scheduler,
        storage=InMemoryKeyValueStorage(),
    )
    factory.last.accept()
    return client, factory, scheduler


def _record(client: ChatClient, *names: str) -> dict[str, list[Event]]:
    seen: dict[str, list[Event]] = {name: [] for name in names}
    for name in names:
        client.events.on(name, seen[name].append)
    return seen


def test_sanitize_content_strips_active_markup() -> None:
    raw = "Hi <script>alert(1)</script><iframe src='x'></iframe><a href='javascript:run()'>x</a>"
    assert sanitize_content(raw) == "Hi <a href='run()'>x</a>"
    assert sanitize_content(None) == UNAVAILABLE_CONTENT
    assert sanitize_content("") == UNAVAILABLE_CONTENT


def test_error_helpers() -> None:
    assert retry_delay_for("TIMEOUT") == 2.0
    assert retry_delay_for("SERVICE_UNAVAILABLE") == 5.0
    assert retry_delay_for("INTERNAL_ERROR") == 3.0
    assert retry_delay_for("WHATEVER") == 1.0
    assert retry_delay_for(None) == 1.0
    assert display_error_message("raw text", "WHATEVER") == "raw text"
    assert display_error_message(None, None) == "Неизвестная ошибка"
    assert normalize_usage({"totalTokens": 7, "promptTokens": True}) == {
        "promptTokens": 0,
        "completionTokens": 0,
        "totalTokens": 7,
    }
    assert normalize_usage(None) is None


def test_send_chat_message_records_user_turn_and_sends_history() -> None:
    client, factory, _ = _make_client()

    assert client.send_chat_message("   ") is None
    message_id = client.send_chat_message(" Hello ")

    frames = factory.last.sent_frames()
    assert len(frames) == 1
    frame = frames[0]
    assert frame["type"] == "chat"
    assert frame["messageId"] == message_id
    assert frame["sessionId"] == client.session_id
    assert frame["content"] == "Hello"
    assert frame["history"] == [{"role": "user", "content": "Hello"}]


def test_chat_response_is_stored_and_reemitted_sanitized() -> None:
    client, factory, _ = _make_client()
    seen = _record(client, "chat_response")
    message_id = client.send_chat_message("hi")

    factory.last.deliver(
        {
            "type": "chat_response",
            "messageId": message_id,
            "content": "Hello <script>x()</script>there",
            "usage": {"promptTokens": 3, "completionTokens": 2, "totalTokens": 5},
            "metadata": {"model": "echo-1", "processingTime": 4},
        }
    )

    reply = seen["chat_response"][0].payload
    assert reply["content"] == "Hello there"
    assert reply["correlated"] is True
    assert reply["usage"] == {"promptTokens": 3, "completionTokens": 2, "totalTokens": 5}
    stored = client.history.messages[-1]
    assert stored.role == "assistant"
    assert stored.metadata["model"] == "echo-1"
    assert stored.metadata["processingTime"] == 4
    assert stored.metadata["messageId"] == message_id
    assert client.get_conversation_history()[-1]["role"] == "assistant"


def test_chat_response_without_content_is_not_stored() -> None:
    client, factory, _ = _make_client()
    seen = _record(client, "chat_response")
    client.send_chat_message("hi")

    factory.last.deliver({"type": "chat_response", "messageId": "other"})

    assert seen["chat_response"][0].payload["content"] == UNAVAILABLE_CONTENT
    assert seen["chat_response"][0].payload["correlated"] is False
    assert len(client.history.messages) == 1


def test_chat_error_is_translated() -> None:
    client, factory, _ = _make_client()
    seen = _record(client, "chat_error")
    message_id = client.send_chat_message("hi")

    factory.last.deliver(
        {
            "type": "chat_error",
            "messageId": message_id,
            "errorCode": "SERVICE_UNAVAILABLE",
            "message": "provider down",
        }
    )
    factory.last.deliver(
        {
            "type": "chat_error",
            "messageId": "x",
            "errorCode": "INVALID_MESSAGE",
            "message": "bad",
            "retryable": False,
        }
    )

    first, second = (event.payload for event in seen["chat_error"])
    assert first["can_retry"] is True
    assert first["retry_delay"] == 5.0
    assert first["display_message"] == "Сервис временно недоступен."
    assert first["correlated"] is True
    assert second["can_retry"] is False
    assert second["retry_delay"] == 1.0


def test_start_session_waits_for_confirmation() -> None:
    async def run() -> None:
        client, factory, _ = _make_client()
        old_session = client.session_id

        task = asyncio.create_task(client.start_session({"page": "home"}))
        await asyncio.sleep(0)
        frame = factory.last.sent_frames()[-1]
        assert frame["type"] == "session_start"
        assert frame["context"] == {"page": "home"}
        assert frame["sessionId"] == client.session_id
        assert client.session_id != old_session

        factory.last.deliver(
            {
                "type": "session_started",
                "messageId": frame["messageId"],
                "sessionId": frame["sessionId"],
                "context": {"server": "eu-1"},
            }
        )
        result = await asyncio.wait_for(task, timeout=1)

        assert result.success
        assert result.session_id == frame["sessionId"]
        assert result.context == {"server": "eu-1"}
        assert client.history.context == {"page": "home", "server": "eu-1"}

    asyncio.run(run())


def test_start_session_reports_error_and_timeout() -> None:
    async def run() -> None:
        client, factory, scheduler = _make_client(message_timeout=5.0)

        task = asyncio.create_task(client.start_session())
        await asyncio.sleep(0)
        frame = factory.last.sent_frames()[-1]
        factory.last.deliver(
            {"type": "session_error", "messageId": frame["messageId"], "error": "denied"}
        )
        result = await asyncio.wait_for(task, timeout=1)
        assert not result.success
        assert result.error == "denied"

        task = asyncio.create_task(client.start_session())
        await asyncio.sleep(0)
        scheduler.advance(5.0)
        result = await asyncio.wait_for(task, timeout=1)
        assert not result.success
        assert result.error == "timeout"

        result = await client.start_session(timeout=0.01)
        assert not result.success
        assert client.connection.events.listener_count("session_started") == 1

    asyncio.run(run())


def test_start_session_fails_fast_on_correlated_server_error() -> None:
    async def run() -> None:
        client, factory, _ = _make_client()

        task = asyncio.create_task(client.start_session(timeout=30.0))
        await asyncio.sleep(0)
        frame = factory.last.sent_frames()[-1]
        factory.last.deliver(
            {
                "type": "error",
                "messageId": frame["messageId"],
                "errorCode": "INVALID_MESSAGE",
                "message": "session store offline",
            }
        )
        result = await asyncio.wait_for(task, timeout=1)

        assert not result.success
        assert result.error == "session store offline"
        assert client.connection.pending_message_ids() == []

    asyncio.run(run())


def test_reset_and_end_session_frames() -> None:
    client, factory, _ = _make_client()
    client.send_chat_message("hi")
    first_session = client.session_id

    client.reset_session({"reason": "user"})
    reset_frame = factory.last.sent_frames()[-1]
    assert reset_frame["type"] == "session_reset"
    assert reset_frame["sessionId"] == client.session_id
    assert client.session_id != first_session
    assert client.get_conversation_history() == []

    second_session = client.session_id
    client.end_session()
    end_frame = factory.last.sent_frames()[-1]
    assert end_frame["type"] == "session_end"
    assert end_frame["sessionId"] == second_session
    assert client.session_id is None
    assert client.end_session() is None


def test_inbound_session_frames_update_history() -> None:
    client, factory, _ = _make_client()
    client.send_chat_message("hi")

    factory.last.deliver({"type": "session_info", "context": {"plan": "pro"}})
    assert client.history.context == {"plan": "pro"}

    factory.last.deliver({"type": "session_reset", "sessionId": client.session_id})
    assert client.get_conversation_history() == []
    assert client.history.context == {"plan": "pro"}


def test_connection_events_are_forwarded_and_close_tears_down() -> None:
    client, factory, _ = _make_client()
    seen = _record(client, "disconnected", "typing")

    factory.last.deliver({"type": "typing", "isTyping": True})
    stats = client.get_stats()
    assert stats["connection"]["state"] == "connected"
    assert stats["history"]["session_id"] == client.session_id

    client.close()

    assert len(seen["typing"]) == 1
    assert client.connection.state is ConnectionState.CLOSED
    assert client.events.listener_count() == 0
    assert factory.last.closed_with is not None
