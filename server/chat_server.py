from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Coroutine
from typing import Any, Final

from aiohttp import WSMsgType, web

from client.envelope import MessageType, build_envelope, encode_envelope, parse_envelope
from config.chat_server_config import ChatServerConfig, resolve_chat_server_config
from llm.brain_base import Brain
from llm.brain_factory import create_brain, model_config_from_server
from shared.errors import EnvelopeError
from shared.ids import MessageIdGenerator, new_session_id
from shared.models import ChatTurn, JSONValue
from shared.sanitize import sanitize_record

logger = logging.getLogger("ChatLink.ChatServer")

_HISTORY_ROLES: Final[frozenset[str]] = frozenset({"user", "assistant"})

BRAIN_KEY: Final[web.AppKey[Brain]] = web.AppKey("brain", Brain)
CONFIG_KEY: Final[web.AppKey[ChatServerConfig]] = web.AppKey("config", ChatServerConfig)
CLIENTS_KEY: Final[web.AppKey[set[web.WebSocketResponse]]] = web.AppKey("clients", set)
SESSIONS_KEY: Final[web.AppKey[dict[str, dict[str, JSONValue]]]] = web.AppKey("sessions", dict)

_server_ids = MessageIdGenerator("srv")


class _ClientConnection:
    """Один подключённый websocket-клиент и его фоновые задачи."""

    def __init__(self, app: web.Application, ws: web.WebSocketResponse) -> None:
        self.app = app
        self.ws = ws
        self.client_id = _server_ids.next_id()
        self.tasks: set[asyncio.Task[None]] = set()

    async def send(
        self,
        message_type: str,
        message_id: str | None = None,
        payload: dict[str, JSONValue] | None = None,
    ) -> None:
        if self.ws.closed:
            return
        envelope = build_envelope(message_type, message_id or _server_ids.next_id(), payload)
        logger.debug("-> %s %s", self.client_id, sanitize_record(envelope))
        await self.ws.send_str(encode_envelope(envelope))

    async def send_error(self, error_code: str, message: str, message_id: str | None) -> None:
        await self.send(
            MessageType.ERROR,
            message_id,
            {"errorCode": error_code, "message": message},
        )

    async def send_typing(self, session_id: JSONValue, *, is_typing: bool) -> None:
        await self.send(MessageType.TYPING, None, {"isTyping": is_typing, "sessionId": session_id})

    def spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)

    async def cancel_tasks(self) -> None:
        for task in list(self.tasks):
            task.cancel()
        if self.tasks:
            await asyncio.gather(*self.tasks, return_exceptions=True)


def _history_turns(payload: dict[str, JSONValue]) -> list[ChatTurn]:
    turns: list[ChatTurn] = []
    history_raw = payload.get("history")
    for item in history_raw if isinstance(history_raw, list) else []:
        if not isinstance(item, dict):
            continue
        role = item.get("role")
        content = item.get("content")
        # системные реплики от клиента не принимаются
        if role not in _HISTORY_ROLES or not isinstance(content, str) or not content.strip():
            continue
        turns.append(ChatTurn(role=role, content=content))
    content = payload.get("content")
    if isinstance(content, str) and content.strip():
        if not turns or turns[-1].role != "user" or turns[-1].content != content.strip():
            turns.append(ChatTurn(role="user", content=content.strip()))
    return turns


async def _handle_chat(
    connection: _ClientConnection,
    message_id: str | None,
    payload: dict[str, JSONValue],
) -> None:
    turns = _history_turns(payload)
    session_id = payload.get("sessionId")
    if not turns:
        await connection.send(
            MessageType.CHAT_ERROR,
            message_id,
            {
                "errorCode": "INVALID_MESSAGE",
                "message": "chat requires content or history",
                "retryable": False,
            },
        )
        return
    brain = connection.app[BRAIN_KEY]
    config = connection.app[CONFIG_KEY]
    await connection.send_typing(session_id, is_typing=True)
    started = time.monotonic()
    try:
        result = await asyncio.to_thread(brain.generate, turns)
    except Exception as exc:  # noqa: BLE001
        logger.exception("provider failed for %s", message_id)
        await connection.send_typing(session_id, is_typing=False)
        await connection.send(
            MessageType.CHAT_ERROR,
            message_id,
            {
                "errorCode": "INTERNAL_ERROR",
                "message": f"provider error: {exc}",
                "retryable": True,
            },
        )
        return
    processing_ms = int((time.monotonic() - started) * 1000)
    await connection.send_typing(session_id, is_typing=False)
    await connection.send(
        MessageType.CHAT_RESPONSE,
        message_id,
        {
            "sessionId": session_id,
            "content": result.text,
            "usage": result.usage.to_dict() if result.usage is not None else None,
            "metadata": {
                "model": result.model,
                "provider": config.provider,
                "processingTime": processing_ms,
            },
        },
    )


async def _dispatch(connection: _ClientConnection, raw: str) -> None:
    try:
        envelope = parse_envelope(raw)
    except EnvelopeError as exc:
        logger.warning("malformed frame from %s: %s", connection.client_id, exc)
        await connection.send_error("INVALID_MESSAGE", str(exc), None)
        return
    message_type = str(envelope["type"])
    message_id_raw = envelope.get("messageId")
    message_id = message_id_raw if isinstance(message_id_raw, str) else None
    sessions = connection.app[SESSIONS_KEY]
    logger.debug("<- %s %s", connection.client_id, sanitize_record(envelope))

    if message_type == MessageType.PING:
        await connection.send(MessageType.PONG, message_id, {"replyTo": message_id})
    elif message_type == MessageType.PONG:
        return
    elif message_type == MessageType.CHAT:
        connection.spawn(_handle_chat(connection, message_id, envelope))
    elif message_type in (MessageType.SESSION_START, MessageType.SESSION_RESET):
        session_id = envelope.get("sessionId")
        if not isinstance(session_id, str) or not session_id.strip():
            session_id = new_session_id()
        context_raw = envelope.get("context")
        context = dict(context_raw) if isinstance(context_raw, dict) else {}
        sessions[session_id] = context
        reply_type = (
            MessageType.SESSION_STARTED
            if message_type == MessageType.SESSION_START
            else MessageType.SESSION_RESET
        )
        await connection.send(reply_type, message_id, {"sessionId": session_id, "context": context})
    elif message_type == MessageType.SESSION_END:
        session_id = envelope.get("sessionId")
        if isinstance(session_id, str):
            sessions.pop(session_id, None)
        await connection.send(MessageType.SESSION_ENDED, message_id, {"sessionId": session_id})
    else:
        logger.info("unknown message type from %s: %s", connection.client_id, message_type)
        await connection.send_error(
            "UNKNOWN_MESSAGE_TYPE",
            f"unknown message type: {message_type}",
            message_id,
        )


async def handle_ws(request: web.Request) -> web.WebSocketResponse:
    config = request.app[CONFIG_KEY]
    ws = web.WebSocketResponse(max_msg_size=config.max_message_bytes)
    await ws.prepare(request)
    connection = _ClientConnection(request.app, ws)
    clients = request.app[CLIENTS_KEY]
    clients.add(ws)
    logger.info("client %s connected (%s total)", connection.client_id, len(clients))
    await connection.send(
        MessageType.CONNECTION,
        None,
        {"status": "connected", "clientId": connection.client_id, "provider": config.provider},
    )
    try:
        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                await _dispatch(connection, msg.data)
            elif msg.type == WSMsgType.BINARY:
                await _dispatch(connection, msg.data.decode("utf-8", errors="replace"))
            elif msg.type == WSMsgType.ERROR:
                logger.warning("ws error from %s: %s", connection.client_id, ws.exception())
                break
    finally:
        await connection.cancel_tasks()
        clients.discard(ws)
        logger.info("client %s disconnected", connection.client_id)
    return ws


async def handle_health(request: web.Request) -> web.Response:
    config = request.app[CONFIG_KEY]
    return web.json_response(
        {
            "ok": True,
            "connected_clients": len(request.app[CLIENTS_KEY]),
            "provider": config.provider,
        }
    )


async def _close_clients(app: web.Application) -> None:
    for ws in list(app[CLIENTS_KEY]):
        await ws.close(code=1001, message=b"server shutdown")


def create_app(
    config: ChatServerConfig | None = None,
    *,
    brain: Brain | None = None,
) -> web.Application:
    resolved_config = config or ChatServerConfig()
    app = web.Application(client_max_size=resolved_config.max_message_bytes)
    app[CONFIG_KEY] = resolved_config
    app[BRAIN_KEY] = brain or create_brain(model_config_from_server(resolved_config))
    app[CLIENTS_KEY] = set()
    app[SESSIONS_KEY] = {}
    app.router.add_get("/ws", handle_ws)
    app.router.add_get("/health", handle_health)
    app.on_shutdown.append(_close_clients)
    return app


def run_server(config: ChatServerConfig) -> None:
    app = create_app(config)
    logger.info("starting chat server on %s:%s (%s)", config.host, config.port, config.provider)
    web.run_app(app, host=config.host, port=config.port)


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    config = resolve_chat_server_config()
    run_server(config)


if __name__ == "__main__":
    main()
